"""Integer → decimal display string for token balances.

Integer arithmetic only: balances are arbitrary-precision ints, never floats.
"""

import logging

logger = logging.getLogger(__name__)


def format_token_balance(raw: str | None, decimals: int, strict: bool = False) -> str:
    """Format a base-unit balance with `decimals` places.

    "1500000000000000000", 18 -> "1.5"; "1000000000000000000", 18 -> "1".
    Empty input yields "0". Malformed input is returned unchanged so a display
    path never fails; pass strict=True to raise ValueError instead.
    """
    if not raw:
        return "0"
    try:
        # stricter than int(): plain ASCII digits only
        if not (isinstance(raw, str) and raw.isascii() and raw.isdigit()):
            raise ValueError("expected unsigned base-10 digits")
        if decimals < 0:
            raise ValueError(f"negative decimals: {decimals}")
        value = int(raw)
    except ValueError as exc:
        if strict:
            raise ValueError(f"Cannot format balance {raw!r}: {exc}") from exc
        logger.error("Error formatting balance %r: %s", raw, exc)
        return raw

    whole, fractional = divmod(value, 10**decimals)
    if decimals == 0:
        return str(whole)
    fractional_str = str(fractional).rjust(decimals, "0").rstrip("0")
    if not fractional_str:
        return str(whole)
    return f"{whole}.{fractional_str}"
