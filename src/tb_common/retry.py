"""Retry primitives for calls to the chain source.

- ExponentialBackoff: deterministic delay sequence (seconds), no jitter.
- is_retryable_error / is_chain_write_retryable: transient-failure classifiers.
- handle_retry: drives an async operation through bounded retries.

A fresh ExponentialBackoff must be used per retry session; handle_retry builds
one when none is passed, so concurrent calls never share attempt counters.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from src.tb_common.errors import PermanentSourceError, TransientSourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = frozenset({
    "NETWORK_ERROR",
    "TIMEOUT",
    "CONNECTION_REFUSED",
    "NODE_IS_SYNCING",
    "TOO_MANY_REQUESTS",
    "RATE_LIMIT_EXCEEDED",
    "SERVICE_UNAVAILABLE",
})

RETRYABLE_STATUSES = frozenset({429, 503})

_RETRYABLE_MESSAGE_FRAGMENTS = (
    "timeout",
    "network",
    "connection",
    "rate limit",
    "too many requests",
    "econnrefused",
    "socket hang up",
    "etimedout",
    "syncing",
    "service unavailable",
    "server error",
)

_CHAIN_WRITE_MESSAGE_FRAGMENTS = (
    "nonce",
    "gas",
    "pending",
    "underpriced",
    "already known",
    "replacement transaction",
    "insufficient funds",
    "not found",
)


class ExponentialBackoff:
    """delay(n) = min(initial_delay * multiplier**n, max_delay), in seconds."""

    def __init__(
        self,
        initial_delay: float,
        multiplier: float = 2,
        max_delay: float = 30.0,
    ) -> None:
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def next(self) -> float:
        delay = min(self.initial_delay * self.multiplier**self._attempt, self.max_delay)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0


def _error_code(error: BaseException) -> object:
    reason = getattr(error, "reason", None)
    if reason is not None:
        return reason
    return getattr(error, "code", None)


def _error_status(error: BaseException) -> object:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if value is not None:
            return value
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


def is_retryable_error(error: BaseException | None) -> bool:
    """True for transient failures: network, rate limit, node syncing."""
    if error is None:
        return False
    if isinstance(error, TransientSourceError):
        return True
    if isinstance(error, PermanentSourceError):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    if any(fragment in message for fragment in _RETRYABLE_MESSAGE_FRAGMENTS):
        return True
    code = _error_code(error)
    if isinstance(code, str) and code in RETRYABLE_ERRORS:
        return True
    return _error_status(error) in RETRYABLE_STATUSES


def is_chain_write_retryable(error: BaseException | None) -> bool:
    """Classifier for transaction submission.

    Nonce conflicts, underpriced gas and similar rejections usually clear
    once the network state advances, so they are retried as well.
    """
    if error is None:
        return False
    if is_retryable_error(error):
        return True
    message = str(error).lower()
    if any(fragment in message for fragment in _CHAIN_WRITE_MESSAGE_FRAGMENTS):
        return True
    return _error_code(error) == "TRANSACTION_REPLACED"


async def _abandon(work: asyncio.Future) -> None:
    """Cancel `work` and wait for its cleanup to finish."""
    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        logger.debug("Cancelled operation raised during cleanup: %s", exc)


async def _run_cancellable(
    awaitable: Awaitable[T], cancel_event: asyncio.Event | None
) -> T:
    """Await `awaitable`, aborting with CancelledError once `cancel_event` is set."""
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise asyncio.CancelledError()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _abandon(work)
        raise
    finally:
        waiter.cancel()
    if work.done():
        return work.result()
    await _abandon(work)
    raise asyncio.CancelledError()


async def handle_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    backoff: ExponentialBackoff | None = None,
    retryable: Callable[[BaseException], bool] = is_retryable_error,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Run `operation` with up to `max_retries` retries.

    The last error is re-raised unchanged once retries are exhausted or the
    classifier rejects it. CancelledError is never retried.
    """
    if backoff is None:
        backoff = ExponentialBackoff(1.0, 2)

    attempt = 0
    while True:
        if attempt > 0:
            logger.debug("Retry attempt %d/%d", attempt, max_retries)
        try:
            return await _run_cancellable(operation(), cancel_event)
        except Exception as exc:
            if attempt >= max_retries or not retryable(exc):
                raise
            delay = backoff.next()
            logger.debug("Retryable error: %s. Retrying in %.2fs...", exc, delay)
        await _run_cancellable(asyncio.sleep(delay), cancel_event)
        attempt += 1


async def retry_chain_transaction(
    tx: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    multiplier: float = 2,
    max_delay: float = 10.0,
    on_before_retry: Callable[[BaseException | None, int], Awaitable[None]] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Retry a chain write with the transaction-aware classifier.

    `on_before_retry(last_error, attempt)` runs before every retry, e.g. to
    refresh a nonce.
    """
    attempt = 0
    last_error: BaseException | None = None

    async def _attempt() -> T:
        nonlocal attempt, last_error
        if attempt > 0 and on_before_retry is not None:
            await on_before_retry(last_error, attempt)
        attempt += 1
        try:
            return await tx()
        except Exception as exc:
            last_error = exc
            raise

    return await handle_retry(
        _attempt,
        max_retries,
        ExponentialBackoff(initial_delay, multiplier, max_delay),
        is_chain_write_retryable,
        cancel_event,
    )
