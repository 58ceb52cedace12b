# tests/unit/test_balance_persistence.py
"""Unit tests for BalanceRepository using MagicMock AsyncSession."""
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.tb_balance.domain.models import PersistJob
from src.tb_balance.infrastructure.persistence import BalanceRepository
from src.tb_common.errors import InternalError


def _make_pair_row(**kwargs):
    """Build a mock watched_pairs row with all required fields."""
    row = MagicMock()
    row.id = kwargs.get("id", "0b7d7a3e-0000-0000-0000-000000000001")
    row.account_address = kwargs.get("account_address", "0xacc")
    row.token_address = kwargs.get("token_address", "0xtok")
    row.network = "mainnet"
    row.token_name = "Wrapped Ether"
    row.token_symbol = "WETH"
    row.token_decimals = 18
    row.latest_balance = kwargs.get("latest_balance", "1500000000000000000")
    row.last_refreshed_at = kwargs.get("last_refreshed_at", datetime.now(UTC))
    row.is_fungible = True
    row.is_nft = False
    row.is_favorite = kwargs.get("is_favorite", False)
    row.pair_metadata = kwargs.get("pair_metadata", {})
    row.created_at = datetime.now(UTC)
    row.updated_at = datetime.now(UTC)
    return row


def _make_snapshot_row(snapshot_id: int = 1, balance: str = "100"):
    row = MagicMock()
    row.id = snapshot_id
    row.watched_pair_id = "0b7d7a3e-0000-0000-0000-000000000001"
    row.account_address = "0xacc"
    row.token_address = "0xtok"
    row.balance = balance
    row.block_number = None
    row.observed_at = datetime.now(UTC)
    row.created_at = datetime.now(UTC)
    return row


def _make_job(is_favorite: bool | None = None) -> PersistJob:
    return PersistJob(
        account_address="0xacc",
        token_address="0xtok",
        balance="1500000000000000000",
        token_name="Wrapped Ether",
        token_symbol="WETH",
        token_decimals=18,
        network="mainnet",
        is_fungible=True,
        is_nft=False,
        observed_at=datetime.now(UTC),
        is_favorite=is_favorite,
    )


def _result(fetchone=None, fetchall=None):
    result = MagicMock()
    result.fetchone.return_value = fetchone
    result.fetchall.return_value = fetchall or []
    return result


@pytest.fixture
def db():
    return MagicMock()


class TestFindWatchedPair:
    async def test_returns_pair_when_found(self, db):
        db.execute = AsyncMock(return_value=_result(fetchone=_make_pair_row()))
        pair = await BalanceRepository().find_watched_pair(db, "0xacc", "0xtok", "mainnet")
        assert pair is not None
        assert pair.token_symbol == "WETH"
        assert pair.metadata == {}

    async def test_returns_none_when_missing(self, db):
        db.execute = AsyncMock(return_value=_result(fetchone=None))
        assert await BalanceRepository().find_watched_pair(db, "0xacc", "0xtok", "mainnet") is None

    async def test_metadata_json_string_parsed(self, db):
        row = _make_pair_row(pair_metadata='{"logo": "weth.png"}')
        db.execute = AsyncMock(return_value=_result(fetchone=row))
        pair = await BalanceRepository().find_watched_pair(db, "0xacc", "0xtok", "mainnet")
        assert pair.metadata == {"logo": "weth.png"}


class TestUpsertWatchedPair:
    async def test_passes_job_fields(self, db):
        db.execute = AsyncMock(return_value=_result(fetchone=_make_pair_row()))
        job = _make_job()

        pair = await BalanceRepository().upsert_watched_pair(db, job)

        params = db.execute.call_args.args[1]
        assert params["latest_balance"] == job.balance
        assert params["observed_at"] == job.observed_at
        assert params["is_favorite"] is None
        assert pair.id == "0b7d7a3e-0000-0000-0000-000000000001"

    async def test_fallback_metadata_does_not_overwrite(self, db):
        db.execute = AsyncMock(return_value=_result(fetchone=_make_pair_row()))
        job = _make_job()
        job.metadata_known = False

        await BalanceRepository().upsert_watched_pair(db, job)

        sql, params = db.execute.call_args.args
        assert params["metadata_known"] is False
        assert "CASE WHEN :metadata_known THEN EXCLUDED.token_decimals" in str(sql)

    async def test_no_row_raises_internal_error(self, db):
        db.execute = AsyncMock(return_value=_result(fetchone=None))
        with pytest.raises(InternalError):
            await BalanceRepository().upsert_watched_pair(db, _make_job())


class TestSnapshots:
    async def test_append_links_pair(self, db):
        db.execute = AsyncMock(return_value=_result(fetchone=_make_snapshot_row()))
        repo = BalanceRepository()
        pair = await _pair(repo)

        snapshot = await repo.append_snapshot(db, pair, _make_job())

        params = db.execute.call_args.args[1]
        assert params["watched_pair_id"] == pair.id
        assert snapshot.id == 1

    async def test_list_desc_by_default(self, db):
        rows = [_make_snapshot_row(2, "200"), _make_snapshot_row(1, "100")]
        db.execute = AsyncMock(return_value=_result(fetchall=rows))

        snapshots = await BalanceRepository().list_snapshots(db, "0xacc", "0xtok", 30)

        sql = str(db.execute.call_args.args[0])
        assert "ORDER BY observed_at DESC" in sql
        assert [s.balance for s in snapshots] == ["200", "100"]

    async def test_list_asc_with_window(self, db):
        db.execute = AsyncMock(return_value=_result(fetchall=[]))
        since = datetime(2026, 1, 1, tzinfo=UTC)

        await BalanceRepository().list_snapshots(
            db, "0xacc", "0xtok", 10, order_desc=False, since=since
        )

        sql = str(db.execute.call_args.args[0])
        params = db.execute.call_args.args[1]
        assert "ORDER BY observed_at ASC" in sql
        assert params["since"] == since
        assert params["until"] is None
        assert params["limit"] == 10


class TestListOldestPairs:
    async def test_never_refreshed_first(self, db):
        db.execute = AsyncMock(return_value=_result(fetchall=[_make_pair_row(last_refreshed_at=None)]))

        pairs = await BalanceRepository().list_oldest_pairs(db, 50)

        sql = str(db.execute.call_args.args[0])
        assert "NULLS FIRST" in sql
        assert db.execute.call_args.args[1] == {"limit": 50}
        assert pairs[0].last_refreshed_at is None


async def _pair(repo: BalanceRepository):
    db = MagicMock()
    db.execute = AsyncMock(return_value=_result(fetchone=_make_pair_row()))
    return await repo.find_watched_pair(db, "0xacc", "0xtok", "mainnet")
