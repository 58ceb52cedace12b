"""Domain models for tb_chain — pure dataclasses."""

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class TokenInfo:
    address: str
    name: str
    symbol: str
    decimals: int
    network: str
    is_fungible: bool = True
    is_nft: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenInfo":
        return cls(
            address=data["address"],
            name=data["name"],
            symbol=data["symbol"],
            decimals=int(data["decimals"]),
            network=data["network"],
            is_fungible=bool(data.get("is_fungible", True)),
            is_nft=bool(data.get("is_nft", False)),
        )

    @classmethod
    def unknown(cls, address: str, network: str) -> "TokenInfo":
        """Conservative fallback used when metadata cannot be fetched."""
        return cls(
            address=address,
            name="Unknown Token",
            symbol="UNKNOWN",
            decimals=18,
            network=network,
        )
