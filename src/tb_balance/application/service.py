"""BalanceApplicationService — cache-aside balance reads over the chain adapter.

Read path for one (account, token):
  1. balance cache hit → return (no chain call, no snapshot)
  2. token metadata from its own long-TTL cache, falling back to the chain,
     then to an "Unknown Token" default
  3. raw balance from the chain through handle_retry
  4. format, write the balance cache
  5. queue the durable upsert + snapshot on the PersistWorker

Chain fetch strictly precedes the cache write, which precedes the enqueue.
Concurrent misses for the same pair may both hit the chain; the writes are
idempotent observations so no per-key lock is taken.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.tb_balance.application.schemas import (
    BalanceView,
    HistoryResponse,
    SnapshotItem,
    WatchedPairItem,
    WatchedPairsResponse,
)
from src.tb_balance.domain.cache import (
    BALANCE_CACHE_PREFIX,
    CacheStoreProtocol,
    balance_cache_key,
    token_info_cache_key,
)
from src.tb_balance.domain.formatter import format_token_balance
from src.tb_balance.domain.models import PersistJob, WatchedPair
from src.tb_balance.domain.repository import BalanceRepositoryProtocol
from src.tb_balance.infrastructure.persist_worker import PersistWorker
from src.tb_balance.infrastructure.persistence import BalanceRepository
from src.tb_chain.domain.adapter import ChainAdapterProtocol
from src.tb_chain.domain.models import TokenInfo
from src.tb_common.datetime_utils import as_utc, utc_now
from src.tb_common.errors import CacheUnavailableError, FetchError, WatchedPairNotFoundError
from src.tb_common.retry import ExponentialBackoff, handle_retry

logger = logging.getLogger(__name__)


def default_backoff() -> ExponentialBackoff:
    return ExponentialBackoff(
        settings.FETCH_BACKOFF_INITIAL_SECONDS,
        settings.FETCH_BACKOFF_MULTIPLIER,
        settings.FETCH_BACKOFF_MAX_SECONDS,
    )


def _format_latest(pair: WatchedPair) -> str | None:
    if pair.latest_balance is None:
        return None
    return format_token_balance(pair.latest_balance, pair.token_decimals)


class BalanceApplicationService:
    def __init__(
        self,
        chain: ChainAdapterProtocol,
        cache: CacheStoreProtocol,
        persister: PersistWorker,
        repo: BalanceRepositoryProtocol | None = None,
        balance_ttl: int = settings.BALANCE_CACHE_TTL_SECONDS,
        token_info_ttl: int = settings.TOKEN_INFO_CACHE_TTL_SECONDS,
        max_retries: int = settings.FETCH_MAX_RETRIES,
        backoff_factory: Callable[[], ExponentialBackoff] = default_backoff,
    ) -> None:
        self._chain = chain
        self._cache = cache
        self._persister = persister
        self._repo: BalanceRepositoryProtocol = repo or BalanceRepository()
        self._balance_ttl = balance_ttl
        self._token_info_ttl = token_info_ttl
        self._max_retries = max_retries
        self._backoff_factory = backoff_factory

    @property
    def network(self) -> str:
        return self._chain.network

    # ------------------------------------------------------------------
    # Balance reads
    # ------------------------------------------------------------------

    async def get_balance(
        self, account_address: str, token_address: str, force_refresh: bool = False
    ) -> BalanceView:
        if not force_refresh:
            cached = await self._read_cached_balance(account_address, token_address)
            if cached is not None:
                logger.debug(
                    "Returning cached balance for %s / %s", account_address, token_address
                )
                return cached
        return await self._fetch_and_store(account_address, token_address)

    async def get_multiple_balances(
        self, account_address: str, token_addresses: list[str]
    ) -> list[BalanceView]:
        """Fetch every token concurrently; failed tokens are left out."""

        async def _safe_get(token_address: str) -> BalanceView | None:
            try:
                return await self.get_balance(account_address, token_address)
            except Exception as exc:
                logger.error("Error getting balance for %s: %s", token_address, exc)
                return None

        results = await asyncio.gather(*(_safe_get(t) for t in token_addresses))
        return [view for view in results if view is not None]

    async def watch_token(
        self, account_address: str, token_address: str, is_favorite: bool | None = None
    ) -> BalanceView:
        """Forced refresh that also registers the pair (and favorite flag)."""
        return await self._fetch_and_store(account_address, token_address, is_favorite)

    async def _read_cached_balance(
        self, account_address: str, token_address: str
    ) -> BalanceView | None:
        key = balance_cache_key(account_address, token_address)
        try:
            cached = await self._cache.get(key)
        except CacheUnavailableError as exc:
            logger.warning("%s, falling back to chain", exc.message)
            return None
        if cached is None:
            return None
        try:
            return BalanceView.model_validate_json(cached)
        except ValidationError:
            logger.warning("Discarding malformed cache entry %s", key)
            return None

    async def _fetch_and_store(
        self, account_address: str, token_address: str, is_favorite: bool | None = None
    ) -> BalanceView:
        logger.debug(
            "Fetching balance from chain for %s / %s", account_address, token_address
        )
        token, metadata_known = await self._resolve_token_info(token_address)

        try:
            balance = await handle_retry(
                lambda: self._chain.get_token_balance(token_address, account_address),
                self._max_retries,
                self._backoff_factory(),
            )
        except Exception as exc:
            logger.error(
                "Error getting token balance for %s / %s: %s",
                account_address,
                token_address,
                exc,
            )
            raise FetchError(account_address, token_address, exc) from exc
        observed_at = utc_now()

        view = BalanceView(
            account_address=account_address,
            token_address=token_address,
            balance=balance,
            balance_formatted=format_token_balance(balance, token.decimals),
            token_name=token.name,
            token_symbol=token.symbol,
            token_decimals=token.decimals,
        )

        key = balance_cache_key(account_address, token_address)
        try:
            await self._cache.set(key, view.model_dump_json(), self._balance_ttl)
        except CacheUnavailableError as exc:
            logger.warning("%s, balance served uncached", exc.message)

        self._persister.submit(
            PersistJob(
                account_address=account_address,
                token_address=token_address,
                balance=balance,
                token_name=token.name,
                token_symbol=token.symbol,
                token_decimals=token.decimals,
                network=token.network,
                is_fungible=token.is_fungible,
                is_nft=token.is_nft,
                observed_at=observed_at,
                is_favorite=is_favorite,
                metadata_known=metadata_known,
            )
        )
        return view

    # ------------------------------------------------------------------
    # Token metadata
    # ------------------------------------------------------------------

    async def get_token_info(self, token_address: str) -> TokenInfo:
        """Token name/symbol/decimals; never raises.

        Metadata changes far less often than balances, so it has its own
        cache entry with a much longer TTL.
        """
        info, _ = await self._resolve_token_info(token_address)
        return info

    async def _resolve_token_info(self, token_address: str) -> tuple[TokenInfo, bool]:
        """(info, known); known is False when the Unknown Token fallback was used."""
        key = token_info_cache_key(token_address)
        try:
            cached = await self._cache.get(key)
            if cached is not None:
                return TokenInfo.from_dict(json.loads(cached)), True
        except CacheUnavailableError as exc:
            logger.warning("%s, reading token info from chain", exc.message)
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed cache entry %s", key)

        try:
            info = await self._chain.get_token_info(token_address)
        except Exception as exc:
            logger.warning("Failed to get token info for %s: %s", token_address, exc)
            return TokenInfo.unknown(token_address, self.network), False

        try:
            await self._cache.set(key, json.dumps(info.to_dict()), self._token_info_ttl)
        except CacheUnavailableError as exc:
            logger.warning("%s, token info served uncached", exc.message)
        return info, True

    # ------------------------------------------------------------------
    # Durable-store queries
    # ------------------------------------------------------------------

    async def get_historical_balances(
        self,
        db: AsyncSession,
        account_address: str,
        token_address: str,
        limit: int = 30,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> HistoryResponse:
        snapshots = await self._repo.list_snapshots(
            db,
            account_address,
            token_address,
            limit,
            order_desc=True,
            since=as_utc(since),
            until=as_utc(until),
        )
        return HistoryResponse(
            account_address=account_address,
            token_address=token_address,
            items=[SnapshotItem.from_domain(s) for s in snapshots],
        )

    async def list_watched_pairs(
        self, db: AsyncSession, account_address: str
    ) -> WatchedPairsResponse:
        pairs = await self._repo.list_watched_pairs(db, account_address)
        return WatchedPairsResponse(
            account_address=account_address,
            items=[
                WatchedPairItem.from_domain(p, _format_latest(p)) for p in pairs
            ],
        )

    async def get_watched_pair(
        self, db: AsyncSession, account_address: str, token_address: str
    ) -> WatchedPairItem:
        pair = await self._repo.find_watched_pair(
            db, account_address, token_address, self.network
        )
        if pair is None:
            raise WatchedPairNotFoundError(account_address, token_address)
        return WatchedPairItem.from_domain(pair, _format_latest(pair))

    # ------------------------------------------------------------------
    # Cache invalidation
    # ------------------------------------------------------------------

    async def clear_cache(self, account_address: str, token_address: str) -> None:
        await self._cache.delete(balance_cache_key(account_address, token_address))

    async def clear_all_caches(self) -> int:
        deleted = await self._cache.delete_by_prefix(BALANCE_CACHE_PREFIX)
        logger.info("Cleared %d balance cache entries", deleted)
        return deleted
