"""
Shop Service — エンティティ参照サービス (リードスルーキャッシュ)

ユーザーと商品の ID 取得をキャッシュ経由で行う。

  find_by_id: キャッシュ → (ミス時) DB → キャッシュに格納
  update:     DB から最新を読み → マージ → 保存 → commit 後にキャッシュ削除

キャッシュは自動で無効化されない。エンティティを書き換える処理は
必ずこのサービスか StockLedger を通し、invalidate を登録すること。
"""

import logging
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel

from . import config
from .errors import InvalidInput, NotFound
from .models import Product, User, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

IMMUTABLE_FIELDS = frozenset({"id", "created_at", "updated_at"})


class EntityLookup(Generic[T]):
    def __init__(
        self,
        store,
        repository,
        cache,
        prefix: str,
        model: type[T],
        ttl: float | None = None,
        protected_fields: frozenset[str] = frozenset(),
    ) -> None:
        self.store = store
        self.repository = repository
        self.cache = cache
        self.prefix = prefix
        self.model = model
        self.ttl = config.CACHE_TTL_SECONDS if ttl is None else ttl
        self.protected_fields = IMMUTABLE_FIELDS | protected_fields

    def cache_key(self, entity_id: UUID) -> str:
        return f"{self.prefix}:{entity_id}"

    async def find_by_id(self, entity_id: UUID) -> T:
        key = self.cache_key(entity_id)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug("%s retrieved from cache", key)
            return self.model.model_validate(cached)

        entity = await self.repository.get(entity_id)
        if entity is None:
            raise NotFound(self.model.__name__, entity_id)

        await self.cache.set(key, entity.model_dump(mode="json"), self.ttl)
        logger.debug("%s loaded and cached", key)
        return entity

    async def invalidate(self, entity_id: UUID) -> None:
        await self.cache.delete(self.cache_key(entity_id))

    async def update(self, entity_id: UUID, patch: dict) -> T:
        """
        部分更新

        キャッシュではなく DB から最新の値を読んでマージする。
        保護フィールド（id / タイムスタンプ / 商品の stock）を含む patch は拒否する。
        """
        rejected = self.protected_fields.intersection(patch)
        if rejected:
            raise InvalidInput(
                f"{self.model.__name__} fields cannot be updated: {', '.join(sorted(rejected))}"
            )

        current = await self.repository.get(entity_id)
        if current is None:
            raise NotFound(self.model.__name__, entity_id)

        updated = self.model.model_validate(
            {**current.model_dump(), **patch, "updated_at": utcnow()}
        )
        await self.repository.save(updated)
        self.store.after_commit(self.invalidate, entity_id)
        await self.store.commit()
        logger.info("%s updated", self.cache_key(entity_id))
        return updated


def user_lookup(store, cache) -> EntityLookup[User]:
    return EntityLookup(store, store.users, cache, "user", User)


def product_lookup(store, cache) -> EntityLookup[Product]:
    return EntityLookup(
        store, store.products, cache, "product", Product,
        protected_fields=frozenset({"stock"}),
    )
