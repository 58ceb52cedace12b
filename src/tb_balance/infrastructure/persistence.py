"""BalanceRepository — concrete implementation of BalanceRepositoryProtocol.

watched_pairs holds the latest known state per (account, token, network) and
is upserted on every successful chain fetch; balance_snapshots is append-only.

Transaction ownership: The CALLER (persist worker or router) is responsible for
committing via `await db.commit()`.
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.tb_balance.domain.models import BalanceSnapshot, PersistJob, WatchedPair
from src.tb_common.errors import InternalError

_PAIR_COLUMNS = """
    id, account_address, token_address, network,
    token_name, token_symbol, token_decimals,
    latest_balance, last_refreshed_at,
    is_fungible, is_nft, is_favorite, metadata AS pair_metadata,
    created_at, updated_at
"""

_SNAPSHOT_COLUMNS = """
    id, watched_pair_id, account_address, token_address,
    balance, block_number, observed_at, created_at
"""

# ---------------------------------------------------------------------------
# SQL: watched_pairs
# ---------------------------------------------------------------------------

# metadata_known = FALSE (Unknown Token fallback) keeps the stored token columns
_UPSERT_PAIR_SQL = text(f"""
    INSERT INTO watched_pairs
        (account_address, token_address, network,
         token_name, token_symbol, token_decimals,
         latest_balance, last_refreshed_at,
         is_fungible, is_nft, is_favorite)
    VALUES
        (:account_address, :token_address, :network,
         :token_name, :token_symbol, :token_decimals,
         :latest_balance, :observed_at,
         :is_fungible, :is_nft, COALESCE(:is_favorite, FALSE))
    ON CONFLICT (account_address, token_address, network) DO UPDATE
        SET token_name        = CASE WHEN :metadata_known THEN EXCLUDED.token_name ELSE watched_pairs.token_name END,
            token_symbol      = CASE WHEN :metadata_known THEN EXCLUDED.token_symbol ELSE watched_pairs.token_symbol END,
            token_decimals    = CASE WHEN :metadata_known THEN EXCLUDED.token_decimals ELSE watched_pairs.token_decimals END,
            is_fungible       = CASE WHEN :metadata_known THEN EXCLUDED.is_fungible ELSE watched_pairs.is_fungible END,
            is_nft            = CASE WHEN :metadata_known THEN EXCLUDED.is_nft ELSE watched_pairs.is_nft END,
            latest_balance    = EXCLUDED.latest_balance,
            last_refreshed_at = EXCLUDED.last_refreshed_at,
            is_favorite       = COALESCE(:is_favorite, watched_pairs.is_favorite)
    RETURNING {_PAIR_COLUMNS}
""")

_FIND_PAIR_SQL = text(f"""
    SELECT {_PAIR_COLUMNS}
    FROM watched_pairs
    WHERE account_address = :account_address
      AND token_address = :token_address
      AND network = :network
""")

# NULLS FIRST: a pair that has never been refreshed is the most overdue
_LIST_OLDEST_PAIRS_SQL = text(f"""
    SELECT {_PAIR_COLUMNS}
    FROM watched_pairs
    ORDER BY last_refreshed_at ASC NULLS FIRST, id ASC
    LIMIT :limit
""")

_LIST_ACCOUNT_PAIRS_SQL = text(f"""
    SELECT {_PAIR_COLUMNS}
    FROM watched_pairs
    WHERE account_address = :account_address
    ORDER BY last_refreshed_at DESC NULLS LAST
""")

# ---------------------------------------------------------------------------
# SQL: balance_snapshots
# ---------------------------------------------------------------------------

_INSERT_SNAPSHOT_SQL = text(f"""
    INSERT INTO balance_snapshots
        (watched_pair_id, account_address, token_address,
         balance, block_number, observed_at)
    VALUES
        (:watched_pair_id, :account_address, :token_address,
         :balance, :block_number, :observed_at)
    RETURNING {_SNAPSHOT_COLUMNS}
""")

_LIST_SNAPSHOTS_SQL = """
    SELECT {columns}
    FROM balance_snapshots
    WHERE account_address = :account_address
      AND token_address = :token_address
      AND (CAST(:since AS TIMESTAMPTZ) IS NULL OR observed_at >= :since)
      AND (CAST(:until AS TIMESTAMPTZ) IS NULL OR observed_at <= :until)
    ORDER BY observed_at {direction}, id {direction}
    LIMIT :limit
"""

_LIST_SNAPSHOTS_DESC_SQL = text(
    _LIST_SNAPSHOTS_SQL.format(columns=_SNAPSHOT_COLUMNS, direction="DESC")
)
_LIST_SNAPSHOTS_ASC_SQL = text(
    _LIST_SNAPSHOTS_SQL.format(columns=_SNAPSHOT_COLUMNS, direction="ASC")
)


def _row_to_pair(row: object) -> WatchedPair:
    metadata = row.pair_metadata  # type: ignore[attr-defined]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return WatchedPair(
        id=str(row.id),  # type: ignore[attr-defined]
        account_address=row.account_address,  # type: ignore[attr-defined]
        token_address=row.token_address,  # type: ignore[attr-defined]
        network=row.network,  # type: ignore[attr-defined]
        token_name=row.token_name,  # type: ignore[attr-defined]
        token_symbol=row.token_symbol,  # type: ignore[attr-defined]
        token_decimals=row.token_decimals,  # type: ignore[attr-defined]
        latest_balance=row.latest_balance,  # type: ignore[attr-defined]
        last_refreshed_at=row.last_refreshed_at,  # type: ignore[attr-defined]
        is_fungible=row.is_fungible,  # type: ignore[attr-defined]
        is_nft=row.is_nft,  # type: ignore[attr-defined]
        is_favorite=row.is_favorite,  # type: ignore[attr-defined]
        metadata=metadata or {},
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


def _row_to_snapshot(row: object) -> BalanceSnapshot:
    return BalanceSnapshot(
        id=row.id,  # type: ignore[attr-defined]
        watched_pair_id=str(row.watched_pair_id),  # type: ignore[attr-defined]
        account_address=row.account_address,  # type: ignore[attr-defined]
        token_address=row.token_address,  # type: ignore[attr-defined]
        balance=row.balance,  # type: ignore[attr-defined]
        block_number=row.block_number,  # type: ignore[attr-defined]
        observed_at=row.observed_at,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
    )


class BalanceRepository:
    """Concrete repository — one SQL statement per operation."""

    async def find_watched_pair(
        self, db: AsyncSession, account_address: str, token_address: str, network: str
    ) -> WatchedPair | None:
        result = await db.execute(
            _FIND_PAIR_SQL,
            {
                "account_address": account_address,
                "token_address": token_address,
                "network": network,
            },
        )
        row = result.fetchone()
        return _row_to_pair(row) if row else None

    async def upsert_watched_pair(self, db: AsyncSession, job: PersistJob) -> WatchedPair:
        result = await db.execute(
            _UPSERT_PAIR_SQL,
            {
                "account_address": job.account_address,
                "token_address": job.token_address,
                "network": job.network,
                "token_name": job.token_name,
                "token_symbol": job.token_symbol,
                "token_decimals": job.token_decimals,
                "latest_balance": job.balance,
                "observed_at": job.observed_at,
                "is_fungible": job.is_fungible,
                "is_nft": job.is_nft,
                "is_favorite": job.is_favorite,
                "metadata_known": job.metadata_known,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Watched pair upsert returned no rows — this should never happen")
        return _row_to_pair(row)

    async def append_snapshot(
        self, db: AsyncSession, pair: WatchedPair, job: PersistJob
    ) -> BalanceSnapshot:
        result = await db.execute(
            _INSERT_SNAPSHOT_SQL,
            {
                "watched_pair_id": pair.id,
                "account_address": job.account_address,
                "token_address": job.token_address,
                "balance": job.balance,
                "block_number": job.block_number,
                "observed_at": job.observed_at,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Snapshot insert returned no rows — this should never happen")
        return _row_to_snapshot(row)

    async def list_oldest_pairs(self, db: AsyncSession, limit: int) -> list[WatchedPair]:
        result = await db.execute(_LIST_OLDEST_PAIRS_SQL, {"limit": limit})
        return [_row_to_pair(row) for row in result.fetchall()]

    async def list_snapshots(
        self,
        db: AsyncSession,
        account_address: str,
        token_address: str,
        limit: int,
        order_desc: bool = True,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[BalanceSnapshot]:
        sql = _LIST_SNAPSHOTS_DESC_SQL if order_desc else _LIST_SNAPSHOTS_ASC_SQL
        result = await db.execute(
            sql,
            {
                "account_address": account_address,
                "token_address": token_address,
                "since": since,
                "until": until,
                "limit": limit,
            },
        )
        return [_row_to_snapshot(row) for row in result.fetchall()]

    async def list_watched_pairs(
        self, db: AsyncSession, account_address: str
    ) -> list[WatchedPair]:
        result = await db.execute(
            _LIST_ACCOUNT_PAIRS_SQL, {"account_address": account_address}
        )
        return [_row_to_pair(row) for row in result.fetchall()]
