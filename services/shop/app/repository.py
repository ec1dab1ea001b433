"""
Shop Service — SQL リポジトリ

AsyncSession 上で生 SQL を実行する永続化層。
commit はしない。コマンドハンドラが SqlStore.commit() でまとめて確定する。

在庫の変更はすべて 1 文の UPDATE で行う:
  - adjust_stock: stock + delta を 0 で下限クリップ
  - take_stock:   WHERE stock >= :qty 付きの条件付き減算
読み出し → 判定 → 書き込みを別々の文に分けないので、
同時に走る注文作成が同じ在庫を二重に引き当てることはない。
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable
from uuid import UUID

from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import CENTS, Order, OrderStatus, Product, ShippingAddress, User

PRICE = Numeric(10, 2)


def _decimal(value) -> Decimal:
    # SQLite は NUMERIC を int / float で返す
    return Decimal(str(value)).quantize(CENTS)


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        role=row.role,
        is_active=bool(row.is_active),
        is_deleted=bool(row.is_deleted),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description,
        category=row.category,
        price=_decimal(row.price),
        stock=row.stock,
        is_available=bool(row.is_available),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_order(row) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        product_id=row.product_id,
        quantity=row.quantity,
        total_price=_decimal(row.total_price),
        status=row.status,
        notes=row.notes,
        shipping_address=ShippingAddress.model_validate_json(row.shipping_address)
        if row.shipping_address
        else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlUserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: UUID) -> User | None:
        result = await self.session.execute(
            text("SELECT * FROM users WHERE id = :id"),
            {"id": str(user_id)},
        )
        row = result.fetchone()
        return _row_to_user(row) if row else None

    async def save(self, user: User) -> None:
        await self.session.execute(
            text("""
                INSERT INTO users
                    (id, email, first_name, last_name, role, is_active, is_deleted, created_at, updated_at)
                VALUES
                    (:id, :email, :first_name, :last_name, :role, :is_active, :is_deleted, :created_at, :updated_at)
                ON CONFLICT (id) DO UPDATE SET
                    email = excluded.email,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    role = excluded.role,
                    is_active = excluded.is_active,
                    is_deleted = excluded.is_deleted,
                    updated_at = excluded.updated_at
            """),
            {
                "id": str(user.id),
                "email": user.email,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "role": user.role.value,
                "is_active": user.is_active,
                "is_deleted": user.is_deleted,
                "created_at": user.created_at.isoformat(),
                "updated_at": user.updated_at.isoformat(),
            },
        )

    async def find(
        self,
        is_deleted: bool | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[User]:
        where, params = _user_filters(is_deleted, is_active, search)
        page = ""
        if limit is not None:
            page = "LIMIT :limit OFFSET :offset"
            params.update(limit=limit, offset=offset)
        result = await self.session.execute(
            text(f"SELECT * FROM users {where} ORDER BY created_at DESC {page}"),
            params,
        )
        return [_row_to_user(row) for row in result.fetchall()]

    async def count(
        self,
        is_deleted: bool | None = None,
        is_active: bool | None = None,
        search: str | None = None,
    ) -> int:
        where, params = _user_filters(is_deleted, is_active, search)
        result = await self.session.execute(
            text(f"SELECT COUNT(*) FROM users {where}"),
            params,
        )
        return result.scalar_one()


def _user_filters(
    is_deleted: bool | None, is_active: bool | None, search: str | None
) -> tuple[str, dict]:
    clauses = []
    params: dict = {}
    if is_deleted is not None:
        clauses.append("is_deleted = :is_deleted")
        params["is_deleted"] = is_deleted
    if is_active is not None:
        clauses.append("is_active = :is_active")
        params["is_active"] = is_active
    if search:
        # LIKE のワイルドカードは文字としてエスケープし、小文字同士で比較する
        escaped = search.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        clauses.append(
            "(LOWER(first_name) LIKE :search ESCAPE '\\'"
            " OR LOWER(last_name) LIKE :search ESCAPE '\\'"
            " OR LOWER(email) LIKE :search ESCAPE '\\')"
        )
        params["search"] = f"%{escaped}%"
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class SqlProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, product_id: UUID) -> Product | None:
        result = await self.session.execute(
            text("SELECT * FROM products WHERE id = :id"),
            {"id": str(product_id)},
        )
        row = result.fetchone()
        return _row_to_product(row) if row else None

    async def save(self, product: Product) -> None:
        """新規なら挿入、既存なら stock 以外を更新する（在庫は Ledger 専用）。"""
        await self.session.execute(
            text("""
                INSERT INTO products
                    (id, name, description, category, price, stock, is_available, created_at, updated_at)
                VALUES
                    (:id, :name, :description, :category, :price, :stock, :is_available, :created_at, :updated_at)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    category = excluded.category,
                    price = excluded.price,
                    is_available = excluded.is_available,
                    updated_at = excluded.updated_at
            """).bindparams(bindparam("price", type_=PRICE)),
            {
                "id": str(product.id),
                "name": product.name,
                "description": product.description,
                "category": product.category,
                "price": product.price,
                "stock": product.stock,
                "is_available": product.is_available,
                "created_at": product.created_at.isoformat(),
                "updated_at": product.updated_at.isoformat(),
            },
        )

    async def delete(self, product_id: UUID) -> bool:
        result = await self.session.execute(
            text("DELETE FROM products WHERE id = :id RETURNING id"),
            {"id": str(product_id)},
        )
        return result.fetchone() is not None

    async def find(
        self, category: str | None = None, is_available: bool | None = None
    ) -> list[Product]:
        clauses = []
        params: dict = {}
        if category is not None:
            clauses.append("category = :category")
            params["category"] = category
        if is_available is not None:
            clauses.append("is_available = :is_available")
            params["is_available"] = is_available
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        result = await self.session.execute(
            text(f"SELECT * FROM products {where} ORDER BY name"),
            params,
        )
        return [_row_to_product(row) for row in result.fetchall()]

    async def find_low_stock(self, threshold: int) -> list[Product]:
        result = await self.session.execute(
            text("SELECT * FROM products WHERE stock < :threshold ORDER BY stock"),
            {"threshold": threshold},
        )
        return [_row_to_product(row) for row in result.fetchall()]

    async def adjust_stock(
        self, product_id: UUID, delta: int, now: datetime
    ) -> tuple[int, bool] | None:
        """
        stock + delta を書き込む。負になる場合は 0 にクリップする。
        (新在庫, クリップしたか) を返す。商品が無ければ None。
        """
        params = {"id": str(product_id), "delta": delta, "now": now.isoformat()}
        result = await self.session.execute(
            text("""
                UPDATE products
                SET stock = stock + :delta, updated_at = :now
                WHERE id = :id AND stock + :delta >= 0
                RETURNING stock
            """),
            params,
        )
        row = result.fetchone()
        if row:
            return row.stock, False

        result = await self.session.execute(
            text("""
                UPDATE products
                SET stock = CASE WHEN stock + :delta < 0 THEN 0 ELSE stock + :delta END,
                    updated_at = :now
                WHERE id = :id
                RETURNING stock
            """),
            params,
        )
        row = result.fetchone()
        if not row:
            return None
        # 直前の UPDATE との間に入荷があれば 0 にならない
        return row.stock, row.stock == 0

    async def take_stock(self, product_id: UUID, quantity: int, now: datetime) -> int | None:
        """在庫が足りるときだけ減算する。足りない・存在しない場合は None。"""
        result = await self.session.execute(
            text("""
                UPDATE products
                SET stock = stock - :qty, updated_at = :now
                WHERE id = :id AND stock >= :qty
                RETURNING stock
            """),
            {"id": str(product_id), "qty": quantity, "now": now.isoformat()},
        )
        row = result.fetchone()
        return row.stock if row else None


class SqlOrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, order_id: UUID) -> Order | None:
        result = await self.session.execute(
            text("SELECT * FROM orders WHERE id = :id"),
            {"id": str(order_id)},
        )
        row = result.fetchone()
        return _row_to_order(row) if row else None

    async def save(self, order: Order) -> None:
        """数量・金額・作成日時は挿入時のみ書き込む。"""
        await self.session.execute(
            text("""
                INSERT INTO orders
                    (id, user_id, product_id, quantity, total_price, status, notes,
                     shipping_address, created_at, updated_at)
                VALUES
                    (:id, :user_id, :product_id, :quantity, :total_price, :status, :notes,
                     :shipping_address, :created_at, :updated_at)
                ON CONFLICT (id) DO UPDATE SET
                    status = excluded.status,
                    notes = excluded.notes,
                    shipping_address = excluded.shipping_address,
                    updated_at = excluded.updated_at
            """).bindparams(bindparam("total_price", type_=PRICE)),
            {
                "id": str(order.id),
                "user_id": str(order.user_id),
                "product_id": str(order.product_id),
                "quantity": order.quantity,
                "total_price": order.total_price,
                "status": order.status.value,
                "notes": order.notes,
                "shipping_address": json.dumps(order.shipping_address.model_dump())
                if order.shipping_address
                else None,
                "created_at": order.created_at.isoformat(),
                "updated_at": order.updated_at.isoformat(),
            },
        )

    async def find(
        self, status: OrderStatus | None = None, user_id: UUID | None = None
    ) -> list[Order]:
        clauses = []
        params: dict = {}
        if status is not None:
            clauses.append("status = :status")
            params["status"] = status.value
        if user_id is not None:
            clauses.append("user_id = :user_id")
            params["user_id"] = str(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        result = await self.session.execute(
            text(f"SELECT * FROM orders {where} ORDER BY created_at DESC"),
            params,
        )
        return [_row_to_order(row) for row in result.fetchall()]

    async def compare_and_set_status(
        self, order_id: UUID, expected: OrderStatus, status: OrderStatus, now: datetime
    ) -> bool:
        """現在のステータスが expected のときだけ更新する。"""
        result = await self.session.execute(
            text("""
                UPDATE orders
                SET status = :status, updated_at = :now
                WHERE id = :id AND status = :expected
                RETURNING id
            """),
            {
                "id": str(order_id),
                "status": status.value,
                "expected": expected.value,
                "now": now.isoformat(),
            },
        )
        return result.fetchone() is not None


class SqlStore:
    """
    1リクエスト分の作業単位（セッション + リポジトリ）

    after_commit で登録したコールバック（キャッシュ無効化など）は
    commit が成功した後に実行する。commit されずにセッションが閉じられた場合は捨てる。
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.users = SqlUserRepository(session)
        self.products = SqlProductRepository(session)
        self.orders = SqlOrderRepository(session)
        self._after_commit: list[tuple[Callable[..., Awaitable[None]], tuple]] = []

    def after_commit(self, callback: Callable[..., Awaitable[None]], *args) -> None:
        self._after_commit.append((callback, args))

    async def commit(self) -> None:
        await self.session.commit()
        callbacks, self._after_commit = self._after_commit, []
        for callback, args in callbacks:
            await callback(*args)
