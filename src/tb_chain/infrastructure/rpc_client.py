"""JsonRpcChainAdapter — ERC-20 reads over an EVM-compatible JSON-RPC endpoint.

Only `eth_call` is used. Every transport or RPC failure is mapped onto
TransientSourceError (worth retrying) or PermanentSourceError (not), keeping
the upstream message so operators see the original signal.
"""

import itertools
import logging
import re
from typing import Any

import httpx

from src.tb_chain.domain.models import TokenInfo
from src.tb_common.errors import PermanentSourceError, TransientSourceError

logger = logging.getLogger(__name__)

# 4-byte function selectors
_SELECTOR_BALANCE_OF = "0x70a08231"
_SELECTOR_NAME = "0x06fdde03"
_SELECTOR_SYMBOL = "0x95d89b41"
_SELECTOR_DECIMALS = "0x313ce567"
_SELECTOR_SUPPORTS_INTERFACE = "0x01ffc9a7"
_ERC721_INTERFACE_ID = "80ac58cd"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# JSON-RPC error codes that signal an overloaded or lagging node
_TRANSIENT_RPC_CODES = {
    -32005: "RATE_LIMIT_EXCEEDED",  # limit exceeded
    -32603: "SERVICE_UNAVAILABLE",  # internal error
    -32000: None,  # generic server error; message decides
}


def validate_address(address: str) -> str:
    if not _ADDRESS_RE.match(address or ""):
        raise PermanentSourceError(f"Invalid address: {address!r}", reason="INVALID_ADDRESS")
    return address


def _encode_address(address: str) -> str:
    return address[2:].lower().rjust(64, "0")


def decode_uint(result: str) -> int:
    body = result[2:] if result.startswith("0x") else result
    if not body:
        return 0
    return int(body, 16)


def decode_string(result: str) -> str:
    """Decode an ABI `string` return value, falling back to `bytes32`."""
    body = result[2:] if result.startswith("0x") else result
    if not body:
        return ""
    raw = bytes.fromhex(body)
    if len(raw) >= 64:
        offset = int.from_bytes(raw[:32], "big")
        if offset + 32 <= len(raw):
            length = int.from_bytes(raw[offset:offset + 32], "big")
            data = raw[offset + 32:offset + 32 + length]
            if len(data) == length:
                return data.decode("utf-8", errors="replace")
    return raw[:32].rstrip(b"\x00").decode("utf-8", errors="replace")


class JsonRpcChainAdapter:
    """Concrete ChainAdapterProtocol backed by `httpx.AsyncClient`."""

    def __init__(
        self,
        rpc_url: str,
        network: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.network = network
        self._rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_token_balance(self, token_address: str, account_address: str) -> str:
        validate_address(token_address)
        validate_address(account_address)
        result = await self._eth_call(
            token_address, _SELECTOR_BALANCE_OF + _encode_address(account_address)
        )
        return str(decode_uint(result))

    async def get_token_info(self, token_address: str) -> TokenInfo:
        validate_address(token_address)
        name = decode_string(await self._eth_call(token_address, _SELECTOR_NAME))
        symbol = decode_string(await self._eth_call(token_address, _SELECTOR_SYMBOL))
        try:
            decimals = decode_uint(await self._eth_call(token_address, _SELECTOR_DECIMALS))
        except PermanentSourceError:
            # ERC-721 collections have no decimals()
            if not await self._supports_erc721(token_address):
                raise
            return TokenInfo(
                address=token_address,
                name=name,
                symbol=symbol,
                decimals=0,
                network=self.network,
                is_fungible=False,
                is_nft=True,
            )
        return TokenInfo(
            address=token_address,
            name=name,
            symbol=symbol,
            decimals=decimals,
            network=self.network,
        )

    async def _supports_erc721(self, token_address: str) -> bool:
        data = _SELECTOR_SUPPORTS_INTERFACE + _ERC721_INTERFACE_ID.ljust(64, "0")
        try:
            return decode_uint(await self._eth_call(token_address, data)) == 1
        except PermanentSourceError:
            return False

    async def _eth_call(self, to: str, data: str) -> str:
        result = await self._request("eth_call", [{"to": to, "data": data}, "latest"])
        if not isinstance(result, str):
            raise PermanentSourceError(f"Unexpected eth_call result: {result!r}")
        return result

    async def _request(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(self._rpc_url, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientSourceError(f"RPC timeout: {exc}", reason="TIMEOUT") from exc
        except httpx.ConnectError as exc:
            raise TransientSourceError(
                f"RPC connection refused: {exc}", reason="CONNECTION_REFUSED"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientSourceError(f"RPC network error: {exc}", reason="NETWORK_ERROR") from exc

        status = response.status_code
        if status == 429:
            raise TransientSourceError("RPC too many requests", reason="TOO_MANY_REQUESTS", status=status)
        if status >= 500:
            raise TransientSourceError(f"RPC server error: HTTP {status}", status=status)
        if status >= 400:
            raise PermanentSourceError(f"RPC request rejected: HTTP {status}", status=status)

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientSourceError(f"RPC server error: malformed response ({exc})") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise self._rpc_error(method, error)
        if not isinstance(body, dict) or "result" not in body:
            raise PermanentSourceError(f"RPC {method} returned no result")
        return body["result"]

    @staticmethod
    def _rpc_error(method: str, error: dict[str, Any]) -> PermanentSourceError | TransientSourceError:
        code = error.get("code")
        message = f"RPC {method} failed ({code}): {error.get('message', 'unknown error')}"
        lowered = message.lower()
        if code in _TRANSIENT_RPC_CODES:
            reason = _TRANSIENT_RPC_CODES[code]
            if reason is not None or any(
                word in lowered for word in ("rate limit", "syncing", "timeout", "busy", "unavailable")
            ):
                return TransientSourceError(message, reason=reason)
        if "syncing" in lowered:
            return TransientSourceError(message, reason="NODE_IS_SYNCING")
        logger.debug("Permanent RPC error: %s", message)
        return PermanentSourceError(message, reason="RPC_ERROR")
