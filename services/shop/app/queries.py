"""
Shop Service — クエリハンドラ (読み取り側)

ユーザー・商品の単体取得はキャッシュ経由 (EntityLookup)。
一覧系はキャッシュを通さず直接ストアから読む。
"""

from datetime import datetime
from uuid import UUID

from . import config
from .errors import InvalidInput, NotFound
from .lookup import product_lookup, user_lookup
from .models import Order, OrderStatus, Product, User, utcnow


async def get_order(store, order_id: UUID) -> Order:
    order = await store.orders.get(order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


async def list_orders(
    store, status: OrderStatus | None = None, user_id: UUID | None = None
) -> list[Order]:
    """注文一覧（新しい順）。status / user_id で絞り込める。"""
    return await store.orders.find(status=status, user_id=user_id)


async def get_product(store, cache, product_id: UUID) -> Product:
    return await product_lookup(store, cache).find_by_id(product_id)


async def list_products(store, category: str | None = None) -> list[Product]:
    """商品一覧。カテゴリ指定時は販売中の商品だけを返す。"""
    if category is None:
        return await store.products.find()
    return await store.products.find(category=category, is_available=True)


async def list_low_stock(store, threshold: int | None = None) -> list[Product]:
    """在庫が threshold 未満の商品（在庫の少ない順）"""
    if threshold is None:
        threshold = config.LOW_STOCK_THRESHOLD
    return await store.products.find_low_stock(threshold)


async def get_user(store, cache, user_id: UUID) -> User:
    user = await user_lookup(store, cache).find_by_id(user_id)
    if user.is_deleted:
        raise NotFound("User", user_id)
    return user


async def list_users(
    store, page: int = 1, limit: int = 10, search: str | None = None
) -> dict:
    """
    ユーザー一覧（新しい順、ページング付き）

    search は名・姓・メールアドレスの部分一致（大文字小文字を区別しない）。
    論理削除済みのユーザーは含めない。
    """
    if page < 1:
        raise InvalidInput("page must be at least 1")
    if limit < 1:
        raise InvalidInput("limit must be at least 1")

    data = await store.users.find(
        is_deleted=False, search=search, offset=(page - 1) * limit, limit=limit
    )
    total = await store.users.count(is_deleted=False, search=search)
    return {"data": data, "total": total, "page": page, "limit": limit}


async def list_active_users(store) -> list[User]:
    return await store.users.find(is_deleted=False, is_active=True)


async def get_user_profile(store, cache, user_id: UUID) -> dict:
    """ユーザー情報にフルネームとアカウント経過期間を加えたもの"""
    user = await get_user(store, cache, user_id)
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
        "is_active": user.is_active,
        "full_name": f"{user.first_name} {user.last_name}",
        "account_age": account_age(user.created_at),
    }


def account_age(created_at: datetime, now: datetime | None = None) -> str:
    days = ((now or utcnow()) - created_at).days
    if days < 30:
        return f"{days} days"
    if days < 365:
        return f"{days // 30} months"
    return f"{days // 365} years"


async def cache_stats(cache) -> dict:
    return await cache.stats()
