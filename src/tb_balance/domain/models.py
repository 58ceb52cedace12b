"""Domain models for tb_balance — pure dataclasses, no SQLAlchemy dependency.

Balances are unsigned integers in token base units, carried as decimal strings
because they routinely exceed 64 bits.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class WatchedPair:
    id: str
    account_address: str
    token_address: str
    network: str
    token_name: str
    token_symbol: str
    token_decimals: int
    latest_balance: str | None = None
    last_refreshed_at: datetime | None = None
    is_fungible: bool = True
    is_nft: bool = False
    is_favorite: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BalanceSnapshot:
    id: int                          # BIGSERIAL
    watched_pair_id: str
    account_address: str
    token_address: str
    balance: str
    observed_at: datetime
    block_number: int | None = None
    created_at: datetime | None = None
    # NOTE: No updated_at — snapshots are append-only


@dataclass
class PersistJob:
    """One observed chain balance, queued for the durable store."""

    account_address: str
    token_address: str
    balance: str
    token_name: str
    token_symbol: str
    token_decimals: int
    network: str
    is_fungible: bool
    is_nft: bool
    observed_at: datetime
    block_number: int | None = None
    is_favorite: bool | None = None  # None leaves the stored flag untouched
    metadata_known: bool = True  # False: token fields are the Unknown Token fallback
