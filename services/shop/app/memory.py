"""
Shop Service — プロセス内ストア

DATABASE_URL=memory:// のときに使う dict ベースの永続化層。
SQL 版 (repository.py) と同じメソッドを持つ。

各操作の先頭で latency 秒だけ await する。latency=0 でもイベントループに
制御を返すので、DB の I/O 待ちと同じ位置で他のリクエストに割り込まれる。
在庫の条件付き減算などは「判定と書き込みの間に await を挟まない」ことで原子的に行う。
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import UUID

from .models import Order, OrderStatus, Product, User


class _MemoryRepository:
    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._rows: dict[UUID, Any] = {}

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    async def get(self, entity_id: UUID):
        await self._io()
        row = self._rows.get(entity_id)
        return row.model_copy(deep=True) if row is not None else None


class MemoryUserRepository(_MemoryRepository):
    async def save(self, user: User) -> None:
        await self._io()
        existing = self._rows.get(user.id)
        if existing is not None:
            user = user.model_copy(update={"created_at": existing.created_at})
        self._rows[user.id] = user.model_copy(deep=True)

    async def find(
        self,
        is_deleted: bool | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[User]:
        await self._io()
        users = sorted(
            self._matching(is_deleted, is_active, search),
            key=lambda u: u.created_at,
            reverse=True,
        )
        end = None if limit is None else offset + limit
        return [u.model_copy(deep=True) for u in users[offset:end]]

    async def count(
        self,
        is_deleted: bool | None = None,
        is_active: bool | None = None,
        search: str | None = None,
    ) -> int:
        await self._io()
        return len(self._matching(is_deleted, is_active, search))

    def _matching(self, is_deleted, is_active, search) -> list[User]:
        # 名前・メールアドレスの部分一致（大文字小文字を区別しない）
        needle = search.lower() if search else None
        return [
            u for u in self._rows.values()
            if (is_deleted is None or u.is_deleted == is_deleted)
            and (is_active is None or u.is_active == is_active)
            and (
                needle is None
                or any(needle in value.lower() for value in (u.first_name, u.last_name, u.email))
            )
        ]


class MemoryProductRepository(_MemoryRepository):
    async def save(self, product: Product) -> None:
        """新規なら挿入、既存なら stock 以外を更新する。"""
        await self._io()
        existing = self._rows.get(product.id)
        if existing is not None:
            product = product.model_copy(
                update={"stock": existing.stock, "created_at": existing.created_at}
            )
        self._rows[product.id] = product.model_copy(deep=True)

    async def delete(self, product_id: UUID) -> bool:
        await self._io()
        return self._rows.pop(product_id, None) is not None

    async def find(
        self, category: str | None = None, is_available: bool | None = None
    ) -> list[Product]:
        await self._io()
        products = [
            p for p in self._rows.values()
            if (category is None or p.category == category)
            and (is_available is None or p.is_available == is_available)
        ]
        return [p.model_copy(deep=True) for p in sorted(products, key=lambda p: p.name)]

    async def find_low_stock(self, threshold: int) -> list[Product]:
        await self._io()
        products = [p for p in self._rows.values() if p.stock < threshold]
        return [p.model_copy(deep=True) for p in sorted(products, key=lambda p: p.stock)]

    async def adjust_stock(
        self, product_id: UUID, delta: int, now: datetime
    ) -> tuple[int, bool] | None:
        """stock + delta を 0 で下限クリップして書き込む。(新在庫, クリップしたか) を返す。"""
        await self._io()
        product = self._rows.get(product_id)
        if product is None:
            return None
        raw = product.stock + delta
        new_stock = max(0, raw)
        self._rows[product_id] = product.model_copy(
            update={"stock": new_stock, "updated_at": now}
        )
        return new_stock, raw < 0

    async def take_stock(self, product_id: UUID, quantity: int, now: datetime) -> int | None:
        """在庫が足りるときだけ減算する。足りない・存在しない場合は None。"""
        await self._io()
        product = self._rows.get(product_id)
        if product is None or product.stock < quantity:
            return None
        new_stock = product.stock - quantity
        self._rows[product_id] = product.model_copy(
            update={"stock": new_stock, "updated_at": now}
        )
        return new_stock


class MemoryOrderRepository(_MemoryRepository):
    async def save(self, order: Order) -> None:
        await self._io()
        existing = self._rows.get(order.id)
        if existing is not None:
            # 数量・金額・作成日時は作成後に変わらない
            order = order.model_copy(
                update={
                    "quantity": existing.quantity,
                    "total_price": existing.total_price,
                    "created_at": existing.created_at,
                }
            )
        self._rows[order.id] = order.model_copy(deep=True)

    async def find(
        self, status: OrderStatus | None = None, user_id: UUID | None = None
    ) -> list[Order]:
        await self._io()
        orders = [
            o for o in self._rows.values()
            if (status is None or o.status == status)
            and (user_id is None or o.user_id == user_id)
        ]
        return [o.model_copy(deep=True) for o in sorted(orders, key=lambda o: o.created_at, reverse=True)]

    async def compare_and_set_status(
        self, order_id: UUID, expected: OrderStatus, status: OrderStatus, now: datetime
    ) -> bool:
        await self._io()
        order = self._rows.get(order_id)
        if order is None or order.status != expected:
            return False
        self._rows[order_id] = order.model_copy(update={"status": status, "updated_at": now})
        return True


class MemoryDatabase:
    """プロセス全体で共有するデータ本体"""

    def __init__(self, latency: float = 0.0) -> None:
        self.users = MemoryUserRepository(latency)
        self.products = MemoryProductRepository(latency)
        self.orders = MemoryOrderRepository(latency)


class MemoryStore:
    """
    1リクエスト分の作業単位。SqlStore と同じインターフェースを持つ。

    書き込みは即時反映される（ロールバックはない）。
    after_commit で登録したコールバックは commit() 時に実行する。
    """

    def __init__(self, database: MemoryDatabase) -> None:
        self.users = database.users
        self.products = database.products
        self.orders = database.orders
        self._after_commit: list[tuple[Callable[..., Awaitable[None]], tuple]] = []

    def after_commit(self, callback: Callable[..., Awaitable[None]], *args) -> None:
        self._after_commit.append((callback, args))

    async def commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback, args in callbacks:
            await callback(*args)
