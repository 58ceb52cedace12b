"""Shared test fixtures: in-memory stand-ins for the chain, cache and store."""

from collections.abc import AsyncGenerator
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from src.tb_balance.domain.models import BalanceSnapshot, PersistJob, WatchedPair
from src.tb_balance.infrastructure.persist_worker import PersistWorker
from src.tb_chain.domain.models import TokenInfo
from src.tb_common.errors import CacheUnavailableError, PermanentSourceError


class InMemoryCacheStore:
    """Dict-backed CacheStoreProtocol; `available = False` simulates an outage."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailableError("connection refused")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl_seconds

    async def delete(self, key: str) -> None:
        self._check()
        self.data.pop(key, None)

    async def delete_by_prefix(self, prefix: str) -> int:
        self._check()
        keys = [k for k in self.data if k.startswith(prefix)]
        for key in keys:
            del self.data[key]
        return len(keys)


class FakeChainAdapter:
    """Scripted ChainAdapterProtocol.

    `failures[token]` is a list of exceptions raised (in order) before the
    balance call succeeds; `always_fail[token]` raises on every call.
    """

    def __init__(self, network: str = "mainnet") -> None:
        self.network = network
        self.balances: dict[tuple[str, str], str] = {}
        self.infos: dict[str, TokenInfo] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.always_fail: dict[str, Exception] = {}
        self.balance_calls = 0
        self.info_calls = 0

    def add_token(self, token: str, name: str = "Test Token", symbol: str = "TST", decimals: int = 18) -> None:
        self.infos[token] = TokenInfo(token, name, symbol, decimals, self.network)

    async def get_token_balance(self, token_address: str, account_address: str) -> str:
        self.balance_calls += 1
        if token_address in self.always_fail:
            raise self.always_fail[token_address]
        pending = self.failures.get(token_address)
        if pending:
            raise pending.pop(0)
        return self.balances.get((account_address, token_address), "0")

    async def get_token_info(self, token_address: str) -> TokenInfo:
        self.info_calls += 1
        if token_address not in self.infos:
            raise PermanentSourceError(f"No contract at {token_address}")
        return self.infos[token_address]


class InMemoryBalanceRepository:
    """BalanceRepositoryProtocol over plain lists; ignores the session."""

    def __init__(self) -> None:
        self.pairs: list[WatchedPair] = []
        self.snapshots: list[BalanceSnapshot] = []

    def add_pair(
        self,
        account: str,
        token: str,
        last_refreshed_at: datetime | None = None,
        network: str = "mainnet",
    ) -> WatchedPair:
        pair = WatchedPair(
            id=f"pair-{len(self.pairs) + 1:04d}",
            account_address=account,
            token_address=token,
            network=network,
            token_name="Test Token",
            token_symbol="TST",
            token_decimals=18,
            last_refreshed_at=last_refreshed_at,
        )
        self.pairs.append(pair)
        return pair

    async def find_watched_pair(self, db, account_address, token_address, network):  # type: ignore[no-untyped-def]
        for pair in self.pairs:
            if (pair.account_address, pair.token_address, pair.network) == (
                account_address,
                token_address,
                network,
            ):
                return pair
        return None

    async def upsert_watched_pair(self, db, job: PersistJob) -> WatchedPair:  # type: ignore[no-untyped-def]
        pair = await self.find_watched_pair(db, job.account_address, job.token_address, job.network)
        created = pair is None
        if pair is None:
            pair = self.add_pair(job.account_address, job.token_address, network=job.network)
        if created or job.metadata_known:
            pair.token_name = job.token_name
            pair.token_symbol = job.token_symbol
            pair.token_decimals = job.token_decimals
            pair.is_fungible = job.is_fungible
            pair.is_nft = job.is_nft
        pair.latest_balance = job.balance
        pair.last_refreshed_at = job.observed_at
        if job.is_favorite is not None:
            pair.is_favorite = job.is_favorite
        return pair

    async def append_snapshot(self, db, pair: WatchedPair, job: PersistJob) -> BalanceSnapshot:  # type: ignore[no-untyped-def]
        snapshot = BalanceSnapshot(
            id=len(self.snapshots) + 1,
            watched_pair_id=pair.id,
            account_address=job.account_address,
            token_address=job.token_address,
            balance=job.balance,
            observed_at=job.observed_at,
            block_number=job.block_number,
        )
        self.snapshots.append(snapshot)
        return snapshot

    async def list_oldest_pairs(self, db, limit: int) -> list[WatchedPair]:  # type: ignore[no-untyped-def]
        ordered = sorted(
            self.pairs,
            key=lambda p: (p.last_refreshed_at is not None, p.last_refreshed_at or datetime.min, p.id),
        )
        return ordered[:limit]

    async def list_snapshots(  # type: ignore[no-untyped-def]
        self, db, account_address, token_address, limit, order_desc=True, since=None, until=None
    ) -> list[BalanceSnapshot]:
        rows = [
            s
            for s in self.snapshots
            if s.account_address == account_address
            and s.token_address == token_address
            and (since is None or s.observed_at >= since)
            and (until is None or s.observed_at <= until)
        ]
        rows.sort(key=lambda s: (s.observed_at, s.id), reverse=order_desc)
        return rows[:limit]

    async def list_watched_pairs(self, db, account_address):  # type: ignore[no-untyped-def]
        return [p for p in self.pairs if p.account_address == account_address]


class FakeSession:
    def __init__(self) -> None:
        self.commit = AsyncMock()
        self.rollback = AsyncMock()

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        return False


class FakeSessionFactory:
    """Callable returning a fresh FakeSession; keeps every session it opened."""

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = FakeSession()
        self.sessions.append(session)
        return session


@pytest.fixture
def cache() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def chain() -> FakeChainAdapter:
    return FakeChainAdapter()


@pytest.fixture
def repo() -> InMemoryBalanceRepository:
    return InMemoryBalanceRepository()


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
async def persist_worker(
    repo: InMemoryBalanceRepository, session_factory: FakeSessionFactory
) -> AsyncGenerator[PersistWorker, None]:
    worker = PersistWorker(repo, session_factory)
    worker.start()
    yield worker
    await worker.stop(drain_timeout=1.0)
