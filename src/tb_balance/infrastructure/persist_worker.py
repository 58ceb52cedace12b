"""PersistWorker — background writer for observed balances.

The read path enqueues a PersistJob and returns immediately; a single worker
task drains the bounded queue, upserting the WatchedPair and appending one
BalanceSnapshot per job in its own transaction.

Error channel: every failure (including a full queue) becomes a
DurablePersistError that is logged on `tb.persist`, counted, kept in a short
ring of recent errors and handed to the optional `on_error` callback. It never
propagates back to the read that produced the job.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.tb_balance.domain.models import PersistJob
from src.tb_balance.domain.repository import BalanceRepositoryProtocol
from src.tb_common.errors import DurablePersistError

logger = logging.getLogger("tb.persist")


@dataclass
class PersistStats:
    submitted: int = 0
    persisted: int = 0
    failed: int = 0
    dropped: int = 0
    pending: int = 0
    recent_errors: list[str] = field(default_factory=list)


class PersistWorker:
    def __init__(
        self,
        repo: BalanceRepositoryProtocol,
        session_factory: Callable[[], Any],
        maxsize: int = 1000,
        on_error: Callable[[DurablePersistError], None] | None = None,
        keep_errors: int = 20,
    ) -> None:
        self._repo = repo
        self._session_factory = session_factory
        self._queue: asyncio.Queue[PersistJob] = asyncio.Queue(maxsize=maxsize)
        self._on_error = on_error
        self._recent_errors: deque[str] = deque(maxlen=keep_errors)
        self._task: asyncio.Task[None] | None = None
        self._submitted = 0
        self._persisted = 0
        self._failed = 0
        self._dropped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, job: PersistJob) -> bool:
        """Enqueue without blocking. Returns False if the job was dropped."""
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self._dropped += 1
            self._report(
                DurablePersistError(job.account_address, job.token_address, "persist queue full")
            )
            return False
        self._submitted += 1
        return True

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="balance-persist-worker")

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except TimeoutError:
            logger.warning(
                "Persist worker stopped with %d job(s) still queued", self._queue.qsize()
            )
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def stats(self) -> PersistStats:
        return PersistStats(
            submitted=self._submitted,
            persisted=self._persisted,
            failed=self._failed,
            dropped=self._dropped,
            pending=self._queue.qsize(),
            recent_errors=list(self._recent_errors),
        )

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._persist(job)
                self._persisted += 1
            except Exception as exc:
                self._report(
                    DurablePersistError(job.account_address, job.token_address, str(exc))
                )
            finally:
                self._queue.task_done()

    async def _persist(self, job: PersistJob) -> None:
        async with self._session_factory() as db:
            try:
                pair = await self._repo.upsert_watched_pair(db, job)
                await self._repo.append_snapshot(db, pair, job)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    def _report(self, error: DurablePersistError) -> None:
        self._failed += 1
        self._recent_errors.append(error.message)
        logger.error("%s", error.message)
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception("Persist error callback failed")
