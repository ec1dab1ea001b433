"""
Shop Service — コマンドハンドラ (書き込み側)

注文のライフサイクルと在庫を結び付ける処理。
各コマンドは store に対して書き込み、最後に store.commit() で確定する。
commit されなかった書き込みはセッションを閉じた時点でロールバックされる（SQL 版）。
"""

import logging
from decimal import Decimal
from uuid import UUID

from .aggregate import ensure_cancellable, ensure_transition
from .errors import InsufficientStock, InvalidInput, InvalidTransition, NotFound
from .ledger import StockLedger
from .lookup import product_lookup, user_lookup
from .models import CENTS, Order, OrderStatus, Product, ShippingAddress, User, UserRole, utcnow

logger = logging.getLogger(__name__)


# ── 注文 ─────────────────────────────────────────


async def create_order(
    store,
    cache,
    user_id: UUID,
    product_id: UUID,
    quantity: int,
    shipping_address: ShippingAddress | None = None,
    notes: str | None = None,
) -> Order:
    """
    注文作成コマンド

    1. ユーザーを取得（キャッシュ経由）
    2. 商品を取得（キャッシュ経由）
    3. 在庫数を確認（足りなければ何も書き込まずに失敗）
    4. 合計金額を計算（作成時点の単価でスナップショット）
    5. 在庫を条件付きで減算（同時に走った注文に先を越されたらここで失敗）
    6. 注文を pending で保存し、在庫の減算と一緒に commit
    """
    if quantity < 1:
        raise InvalidInput("quantity must be at least 1")

    users = user_lookup(store, cache)
    products = product_lookup(store, cache)

    # 1. ユーザーの存在確認（論理削除済みは存在しない扱い）
    user = await users.find_by_id(user_id)
    if user.is_deleted:
        raise NotFound("User", user_id)

    # 2-3. 商品と在庫の確認
    product = await products.find_by_id(product_id)
    if product.stock < quantity:
        raise InsufficientStock(product_id, quantity, product.stock)

    # 4. 合計金額
    total_price = (product.price * quantity).quantize(CENTS)

    # 5. 在庫の条件付き減算（判定と減算を 1 回で行う）
    ledger = StockLedger(store, products)
    new_stock = await ledger.take(product_id, quantity)

    # 6. 注文を保存して commit
    now = utcnow()
    order = Order(
        user_id=user_id,
        product_id=product_id,
        quantity=quantity,
        total_price=total_price,
        status=OrderStatus.PENDING,
        notes=notes,
        shipping_address=shipping_address,
        created_at=now,
        updated_at=now,
    )
    await store.orders.save(order)
    await store.commit()

    logger.info(
        "Order created: order=%s product=%s quantity=%s stock_left=%s",
        order.id, product_id, quantity, new_stock,
    )
    return order


async def update_order_status(store, cache, order_id: UUID, status: OrderStatus | str) -> Order:
    """
    注文ステータス更新コマンド

    遷移表で到達可能なステータスにのみ変更できる。
    cancelled への変更は在庫を戻す必要があるので cancel_order に委譲する。
    """
    try:
        status = OrderStatus(status)
    except ValueError:
        raise InvalidInput(f"unknown order status: {status}") from None

    if status is OrderStatus.CANCELLED:
        return await cancel_order(store, cache, order_id)

    order = await _load_order(store, order_id)
    ensure_transition(order.status, status)

    # 読み出した時点のステータスから変わっていなければ更新する
    if not await store.orders.compare_and_set_status(order_id, order.status, status, utcnow()):
        raise InvalidTransition(
            order.status.value, status.value, "order status was changed concurrently"
        )
    await store.commit()

    logger.info("Order %s status: %s -> %s", order_id, order.status.value, status.value)
    return await _load_order(store, order_id)


async def cancel_order(store, cache, order_id: UUID) -> Order:
    """
    注文キャンセルコマンド

    1. 終端状態 (delivered / cancelled) なら InvalidTransition
    2. 在庫を戻す商品が無ければ NotFound（ここまで何も書き込まない）
    3. ステータスを cancelled に変更（読み出し時のステータスとの比較付き）
    4. 在庫台帳で注文数量を戻す
    5. commit 後に商品キャッシュを無効化

    3 で比較付き更新にしているため、同じ注文を同時に 2 回キャンセルしても
    在庫が戻るのは 1 回だけ。
    """
    order = await _load_order(store, order_id)
    ensure_cancellable(order.status)

    if await store.products.get(order.product_id) is None:
        raise NotFound("Product", order.product_id)

    if not await store.orders.compare_and_set_status(
        order_id, order.status, OrderStatus.CANCELLED, utcnow()
    ):
        raise InvalidTransition(
            order.status.value, OrderStatus.CANCELLED.value, "order already cancelled"
        )

    ledger = StockLedger(store, product_lookup(store, cache))
    new_stock = await ledger.adjust(order.product_id, order.quantity)
    await store.commit()

    logger.info(
        "Order cancelled: order=%s product=%s restored=%s stock=%s",
        order_id, order.product_id, order.quantity, new_stock,
    )
    return await _load_order(store, order_id)


async def _load_order(store, order_id: UUID) -> Order:
    order = await store.orders.get(order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


# ── 商品 ─────────────────────────────────────────


async def create_product(
    store,
    name: str,
    price: Decimal,
    stock: int = 0,
    description: str = "",
    category: str = "",
    is_available: bool = True,
) -> Product:
    """商品作成コマンド（キャッシュには読み出し時に載る）"""
    product = Product(
        name=name,
        price=price,
        stock=stock,
        description=description,
        category=category,
        is_available=is_available,
    )
    await store.products.save(product)
    await store.commit()
    logger.info("Product created: %s", product.id)
    return product


async def update_product(store, cache, product_id: UUID, patch: dict) -> Product:
    """商品の部分更新（stock は変更不可。adjust_stock を使う）"""
    return await product_lookup(store, cache).update(product_id, patch)


async def adjust_stock(store, cache, product_id: UUID, delta: int) -> int:
    """在庫調整コマンド（入荷・棚卸しなど注文以外の在庫変更）"""
    ledger = StockLedger(store, product_lookup(store, cache))
    new_stock = await ledger.adjust(product_id, delta)
    await store.commit()
    logger.info("Stock adjusted: product=%s delta=%s stock=%s", product_id, delta, new_stock)
    return new_stock


async def delete_product(store, cache, product_id: UUID) -> None:
    if not await store.products.delete(product_id):
        raise NotFound("Product", product_id)
    store.after_commit(product_lookup(store, cache).invalidate, product_id)
    await store.commit()
    logger.info("Product deleted: %s", product_id)


# ── ユーザー ─────────────────────────────────────


async def create_user(
    store,
    email: str,
    first_name: str,
    last_name: str,
    role: UserRole = UserRole.USER,
    is_active: bool = True,
) -> User:
    user = User(
        email=email,
        first_name=first_name,
        last_name=last_name,
        role=role,
        is_active=is_active,
    )
    await store.users.save(user)
    await store.commit()
    logger.info("User created: %s", user.id)
    return user


async def update_user(store, cache, user_id: UUID, patch: dict) -> User:
    return await user_lookup(store, cache).update(user_id, patch)


async def remove_user(store, cache, user_id: UUID) -> None:
    """ユーザー削除（論理削除）"""
    await user_lookup(store, cache).update(user_id, {"is_deleted": True})
    logger.info("User %s deleted", user_id)
