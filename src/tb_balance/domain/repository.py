"""Repository Protocol — dependency inversion for testability.

Unit tests inject a mock or in-memory fake that conforms to this Protocol.
Infrastructure layer provides the real implementation.
"""

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.tb_balance.domain.models import BalanceSnapshot, PersistJob, WatchedPair


class BalanceRepositoryProtocol(Protocol):
    async def find_watched_pair(
        self, db: AsyncSession, account_address: str, token_address: str, network: str
    ) -> WatchedPair | None: ...

    async def upsert_watched_pair(self, db: AsyncSession, job: PersistJob) -> WatchedPair: ...

    async def append_snapshot(
        self, db: AsyncSession, pair: WatchedPair, job: PersistJob
    ) -> BalanceSnapshot: ...

    async def list_oldest_pairs(self, db: AsyncSession, limit: int) -> list[WatchedPair]: ...

    async def list_snapshots(
        self,
        db: AsyncSession,
        account_address: str,
        token_address: str,
        limit: int,
        order_desc: bool = True,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[BalanceSnapshot]: ...

    async def list_watched_pairs(
        self, db: AsyncSession, account_address: str
    ) -> list[WatchedPair]: ...
