"""Pydantic schemas for tb_balance API and cache payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.tb_balance.domain.models import BalanceSnapshot, WatchedPair

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class WatchTokenRequest(BaseModel):
    token_address: str = Field(..., min_length=1, description="Token contract address to watch")
    is_favorite: bool | None = Field(None, description="Mark token as favorite")


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class BalanceView(BaseModel):
    """Balance response; also the serialized form stored in the balance cache."""

    account_address: str
    token_address: str
    balance: str  # base units, integer string
    balance_formatted: str
    token_name: str
    token_symbol: str
    token_decimals: int


class WatchedPairItem(BaseModel):
    account_address: str
    token_address: str
    network: str
    token_name: str
    token_symbol: str
    token_decimals: int
    latest_balance: str | None
    latest_balance_formatted: str | None
    is_fungible: bool
    is_nft: bool
    is_favorite: bool
    metadata: dict[str, Any]
    last_refreshed_at: str | None  # ISO8601 string

    @classmethod
    def from_domain(cls, pair: WatchedPair, formatted: str | None) -> "WatchedPairItem":
        return cls(
            account_address=pair.account_address,
            token_address=pair.token_address,
            network=pair.network,
            token_name=pair.token_name,
            token_symbol=pair.token_symbol,
            token_decimals=pair.token_decimals,
            latest_balance=pair.latest_balance,
            latest_balance_formatted=formatted,
            is_fungible=pair.is_fungible,
            is_nft=pair.is_nft,
            is_favorite=pair.is_favorite,
            metadata=pair.metadata,
            last_refreshed_at=_iso(pair.last_refreshed_at),
        )


class SnapshotItem(BaseModel):
    id: int
    balance: str
    block_number: int | None
    observed_at: str  # ISO8601 string

    @classmethod
    def from_domain(cls, snapshot: BalanceSnapshot) -> "SnapshotItem":
        return cls(
            id=snapshot.id,
            balance=snapshot.balance,
            block_number=snapshot.block_number,
            observed_at=snapshot.observed_at.isoformat(),
        )


class HistoryResponse(BaseModel):
    account_address: str
    token_address: str
    items: list[SnapshotItem]


class WatchedPairsResponse(BaseModel):
    account_address: str
    items: list[WatchedPairItem]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
