"""Balance cache contract and key scheme.

Cache-aside: check cache → chain on miss → populate cache.
  - Balance key:    f"token_balance:{account}:{token}"  (TTL ~5 min)
  - Token info key: f"token_info:{token}"               (TTL ~24 h)

Values are JSON strings; expired entries are simply absent. Implementations
raise CacheUnavailableError when the backing store cannot be reached.
"""

from typing import Protocol

BALANCE_CACHE_PREFIX = "token_balance:"
TOKEN_INFO_CACHE_PREFIX = "token_info:"


def balance_cache_key(account_address: str, token_address: str) -> str:
    return f"{BALANCE_CACHE_PREFIX}{account_address}:{token_address}"


def token_info_cache_key(token_address: str) -> str:
    return f"{TOKEN_INFO_CACHE_PREFIX}{token_address}"


class CacheStoreProtocol(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_by_prefix(self, prefix: str) -> int: ...
