"""RedisCacheStore — CacheStoreProtocol over redis.asyncio.

Redis failures surface as CacheUnavailableError so the balance service can
degrade to a direct chain read instead of failing.
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.tb_common.errors import CacheUnavailableError

_SCAN_BATCH = 500


class RedisCacheStore:
    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            raise CacheUnavailableError(f"GET {key} failed: {exc}") from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise CacheUnavailableError(f"SET {key} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            raise CacheUnavailableError(f"DEL {key} failed: {exc}") from exc

    async def delete_by_prefix(self, prefix: str) -> int:
        """SCAN + DEL in batches; KEYS would block Redis on a large keyspace."""
        deleted = 0
        batch: list[str] = []
        try:
            async for key in self._redis.scan_iter(match=f"{prefix}*", count=_SCAN_BATCH):
                batch.append(key)
                if len(batch) >= _SCAN_BATCH:
                    deleted += await self._redis.delete(*batch)
                    batch.clear()
            if batch:
                deleted += await self._redis.delete(*batch)
        except RedisError as exc:
            raise CacheUnavailableError(f"delete by prefix {prefix!r} failed: {exc}") from exc
        return deleted
