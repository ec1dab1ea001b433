"""
Shop Service — 有効期限付きキャッシュ

エンティティ取得の前段に置くリードスルーキャッシュ。
あくまで最適化であり、正となるデータは常に DB 側にある。

- MemoryCache: プロセス内 dict。期限切れエントリは読み出し時に削除する（遅延削除）。
- RedisCache:  redis.asyncio を使うリモート実装。期限切れは Redis 側の PX で処理する。

どちらも TTL 以外の追い出しポリシー（LRU・容量上限）は持たない。
"""

import json
import time
from typing import Any, Callable

import redis.asyncio as aioredis

DEFAULT_TTL_SECONDS = 3600


class MemoryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[Any, float]] = {}
        self._clock = clock

    async def set(self, key: str, value: Any, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def get(self, key: str) -> Any | None:
        entry = self._live_entry(key)
        return entry[0] if entry else None

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    async def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    async def stats(self) -> dict:
        keys = [key for key in list(self._entries) if self._live_entry(key)]
        return {"size": len(keys), "keys": keys}

    def _live_entry(self, key: str) -> tuple[Any, float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        # now == expiry まではまだ有効
        if self._clock() > entry[1]:
            self._entries.pop(key, None)
            return None
        return entry


class RedisCache:
    """
    Redis バックエンド

    値は JSON 文字列で保存する。キーには prefix を付け、
    clear() はこのサービスのキーだけを削除する（FLUSHDB はしない）。
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "shop:") -> None:
        self.redis = redis
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def set(self, key: str, value: Any, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        ttl_ms = int(ttl_seconds * 1000)
        if ttl_ms <= 0:
            await self.redis.delete(self._key(key))
            return
        await self.redis.set(self._key(key), json.dumps(value, default=str), px=ttl_ms)

    async def get(self, key: str) -> Any | None:
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    async def clear(self) -> None:
        keys = await self._scan_keys()
        if keys:
            await self.redis.delete(*keys)

    async def has(self, key: str) -> bool:
        return bool(await self.redis.exists(self._key(key)))

    async def stats(self) -> dict:
        keys = [key[len(self.prefix):] for key in await self._scan_keys()]
        return {"size": len(keys), "keys": keys}

    async def _scan_keys(self) -> list[str]:
        return [key async for key in self.redis.scan_iter(match=f"{self.prefix}*")]
