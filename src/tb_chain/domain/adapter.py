"""Chain adapter Protocol — the only view of the blockchain the core relies on.

Implementations raise TransientSourceError / PermanentSourceError where they
can classify a failure; anything else is classified by the retry layer.
"""

from typing import Protocol

from src.tb_chain.domain.models import TokenInfo


class ChainAdapterProtocol(Protocol):
    network: str

    async def get_token_balance(self, token_address: str, account_address: str) -> str:
        """Raw balance in base units, as a decimal integer string."""
        ...

    async def get_token_info(self, token_address: str) -> TokenInfo: ...
