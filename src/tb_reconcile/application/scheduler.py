"""ReconciliationScheduler — keeps the balance cache warm for watched pairs.

Each run takes the BATCH_SIZE least-recently-refreshed pairs, forces a refresh
of each through BalanceApplicationService in chunks of CHUNK_SIZE, and sleeps
CHUNK_DELAY between chunks. The chunk size and the pause are the only throttle
on the chain RPC for background work.

A failed pair is logged and skipped; it keeps its old last_refreshed_at and so
is picked up first by the next run. No other job state is persisted.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from config.settings import settings
from src.tb_balance.application.service import BalanceApplicationService
from src.tb_balance.domain.models import WatchedPair
from src.tb_balance.domain.repository import BalanceRepositoryProtocol
from src.tb_balance.infrastructure.persistence import BalanceRepository
from src.tb_common.datetime_utils import utc_now
from src.tb_common.enums import ReconciliationState

logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunk_list(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


@dataclass
class ReconciliationReport:
    started_at: datetime
    finished_at: datetime | None = None
    selected: int = 0
    refreshed: int = 0
    failed: int = 0
    chunks: int = 0
    cancelled: bool = False
    failures: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class TriggerResult:
    started: bool
    caches_cleared: int = 0


class ReconciliationScheduler:
    def __init__(
        self,
        balance_service: BalanceApplicationService,
        session_factory: Callable[[], Any],
        repo: BalanceRepositoryProtocol | None = None,
        interval_seconds: float = settings.RECONCILE_INTERVAL_SECONDS,
        batch_size: int = settings.RECONCILE_BATCH_SIZE,
        chunk_size: int = settings.RECONCILE_CHUNK_SIZE,
        chunk_delay_seconds: float = settings.RECONCILE_CHUNK_DELAY_SECONDS,
    ) -> None:
        self._service = balance_service
        self._session_factory = session_factory
        self._repo: BalanceRepositoryProtocol = repo or BalanceRepository()
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay_seconds

        self._state = ReconciliationState.IDLE
        self._run_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._manual_task: asyncio.Task[ReconciliationReport | None] | None = None
        self.last_report: ReconciliationReport | None = None

    @property
    def state(self) -> ReconciliationState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._loop(), name="balance-reconciliation")
        logger.info(
            "Reconciliation scheduled every %ss (batch=%d, chunk=%d, delay=%ss)",
            self._interval,
            self._batch_size,
            self._chunk_size,
            self._chunk_delay,
        )

    async def stop(self) -> None:
        """Stop between chunks; an in-flight chunk is allowed to finish."""
        self._stop_event.set()
        for task in (self._loop_task, self._manual_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self._chunk_delay + 30)
            except TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._manual_task = None

    async def trigger(self, clear_caches: bool = True) -> TriggerResult:
        """Start a run in the background now, optionally dropping cached balances first.

        A trigger while a run is active is rejected and leaves the caches alone.
        """
        if self._busy():
            return TriggerResult(started=False)
        cleared = await self._service.clear_all_caches() if clear_caches else 0
        if self._busy():
            return TriggerResult(started=False, caches_cleared=cleared)
        self._manual_task = asyncio.create_task(
            self.run_once(), name="balance-reconciliation-manual"
        )
        self._manual_task.add_done_callback(self._log_task_failure)
        return TriggerResult(started=True, caches_cleared=cleared)

    def _busy(self) -> bool:
        return self.is_running or (self._manual_task is not None and not self._manual_task.done())

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            if await self._sleep_or_stop(self._interval):
                break
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error in scheduled token balance update")

    @staticmethod
    def _log_task_failure(task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Error in manual balance refresh: %s", exc)

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    async def run_once(self) -> ReconciliationReport | None:
        """Refresh one batch. Returns None when another run holds the lock."""
        if self._run_lock.locked():
            logger.info("Reconciliation already running; skipping")
            return None
        async with self._run_lock:
            try:
                return await self._run_batch()
            finally:
                self._state = ReconciliationState.IDLE

    async def _run_batch(self) -> ReconciliationReport:
        report = ReconciliationReport(started_at=utc_now())
        started = time.perf_counter()

        self._state = ReconciliationState.FETCHING_BATCH
        async with self._session_factory() as db:
            pairs = await self._repo.list_oldest_pairs(db, self._batch_size)
        report.selected = len(pairs)

        if not pairs:
            logger.debug("No watched pairs to refresh")
            report.finished_at = utc_now()
            self.last_report = report
            return report

        logger.info("Starting scheduled token balance update for %d pairs", len(pairs))
        chunks = chunk_list(pairs, self._chunk_size)
        for index, chunk in enumerate(chunks):
            if index > 0 and await self._sleep_or_stop(self._chunk_delay):
                report.cancelled = True
                break
            self._state = ReconciliationState.PROCESSING_CHUNK
            results = await asyncio.gather(*(self._refresh(pair) for pair in chunk))
            report.chunks += 1
            for pair, error in zip(chunk, results):
                if error is None:
                    report.refreshed += 1
                else:
                    report.failed += 1
                    report.failures.append(
                        f"{pair.account_address}/{pair.token_address}: {error}"
                    )

        report.finished_at = utc_now()
        self.last_report = report
        logger.info(
            "Scheduled token balance update %s: %d refreshed, %d failed, %d/%d chunks (%.1fs)",
            "stopped" if report.cancelled else "completed",
            report.refreshed,
            report.failed,
            report.chunks,
            len(chunks),
            time.perf_counter() - started,
        )
        return report

    async def _refresh(self, pair: WatchedPair) -> str | None:
        """Force-refresh one pair; returns the error message on failure."""
        try:
            await self._service.get_balance(
                pair.account_address, pair.token_address, force_refresh=True
            )
        except Exception as exc:
            logger.error(
                "Failed to update balance for %s/%s: %s",
                pair.account_address,
                pair.token_address,
                exc,
            )
            return str(exc) or type(exc).__name__
        return None

    async def _sleep_or_stop(self, seconds: float) -> bool:
        """Sleep, waking early on stop(). True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True
