"""Buffered, non-blocking persistence of shipment results.

The pipeline hands each finished ShipmentResult to add(), which returns
immediately. Buffered results are written when batch_size results are
waiting or batch_timeout seconds have passed since the oldest unwritten
result was added, whichever comes first. Writes run as background tasks
so the pipeline never waits on storage latency; flush() must be awaited
before a job is marked terminal.

Exactly one ProgressivePersister may write for a job at a time. All
writes for the instance are serialized through one asyncio.Lock.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from shiprate.services.errors import StorageError
from shiprate.services.models import ShipmentResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_BATCH_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_FLUSH_FAILURES = 3


class ResultSink(Protocol):
    """Anything that can durably append a batch of results for a job."""

    async def append(self, job_id: str, batch: list[tuple[int, ShipmentResult]]) -> int:
        ...


class ProgressivePersister:
    """Per-job result buffer with size and age flush triggers.

    Attributes:
        job_id: Job the results belong to.
        flushed_count: Results durably written so far.
        flush_count: Successful flushes performed.
    """

    def __init__(
        self,
        job_id: str,
        sink: ResultSink,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_timeout: float = DEFAULT_BATCH_TIMEOUT_SECONDS,
        max_flush_failures: int = DEFAULT_MAX_FLUSH_FAILURES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the persister.

        Args:
            job_id: Job the results belong to.
            sink: Durable store with an async append(job_id, batch).
            batch_size: Flush once this many results are buffered.
            batch_timeout: Flush once the oldest buffered result is this old.
            max_flush_failures: Consecutive failed flushes after which
                storage is treated as persistently unavailable.
            clock: Monotonic clock (injectable for tests).
            sleep: Awaitable sleep used by the age timer.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.job_id = job_id
        self._sink = sink
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self.max_flush_failures = max_flush_failures
        self.retry_delay = min(1.0, batch_timeout)
        self._clock = clock
        self._sleep = sleep

        self._buffer: list[tuple[int, ShipmentResult]] = []
        self._oldest_added_at: float | None = None
        self._next_sequence = 1
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._timer: asyncio.Task | None = None
        self._consecutive_failures = 0
        self._fatal: StorageError | None = None
        self._closed = False

        self.flushed_count = 0
        self.flush_count = 0

    @property
    def pending_count(self) -> int:
        """Results buffered but not yet written."""
        return len(self._buffer)

    def add(self, result: ShipmentResult) -> None:
        """Buffer a result and schedule a flush if a trigger is met.

        Never waits on storage. Must be called from the event loop thread.

        Raises:
            StorageError: If storage has already failed persistently.
            RuntimeError: If the persister has been closed.
        """
        if self._fatal is not None:
            raise self._fatal
        if self._closed:
            raise RuntimeError(f"Persister for job {self.job_id} is closed")

        if not self._buffer:
            self._oldest_added_at = self._clock()
            self._start_timer()
        self._buffer.append((self._next_sequence, result))
        self._next_sequence += 1

        if self._should_flush():
            self._schedule_flush()

    def _should_flush(self) -> bool:
        # After a failed write, wait for the age timer instead of retrying on every add
        if self._consecutive_failures:
            return False
        if len(self._buffer) >= self.batch_size:
            return True
        if self._oldest_added_at is None:
            return False
        return self._clock() - self._oldest_added_at >= self.batch_timeout

    def _schedule_flush(self) -> None:
        task = asyncio.create_task(self._background_flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _start_timer(self) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._age_timer())

    async def _age_timer(self) -> None:
        """Flush once the oldest buffered result reaches batch_timeout."""
        while self._buffer and not self._closed:
            oldest = self._oldest_added_at if self._oldest_added_at is not None else self._clock()
            remaining = self.batch_timeout - (self._clock() - oldest)
            if remaining > 0:
                await self._sleep(remaining)
                continue
            await self._background_flush()
            if self._fatal is not None:
                return

    async def _background_flush(self) -> None:
        try:
            await self._flush_once()
        except StorageError as e:
            logger.warning(
                "Flush failed for job %s (%d consecutive, %d buffered): %s",
                self.job_id, self._consecutive_failures, len(self._buffer), e.message,
            )

    async def _flush_once(self) -> int:
        """Write whatever is buffered. On failure the batch is put back."""
        async with self._lock:
            if self._fatal is not None:
                raise self._fatal
            if not self._buffer:
                return 0

            batch = self._buffer
            self._buffer = []
            self._oldest_added_at = None
            try:
                await self._sink.append(self.job_id, batch)
            except StorageError as e:
                self._requeue(batch)
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.max_flush_failures:
                    self._fatal = e
                raise
            except Exception as e:
                self._requeue(batch)
                self._consecutive_failures += 1
                error = StorageError.from_code(
                    "E-4001", reason=str(e)[:200], details={"job_id": self.job_id}
                )
                if self._consecutive_failures >= self.max_flush_failures:
                    self._fatal = error
                raise error from e

            self._consecutive_failures = 0
            self.flushed_count += len(batch)
            self.flush_count += 1
            logger.debug("Flushed %d result(s) for job %s", len(batch), self.job_id)
            return len(batch)

    def _requeue(self, batch: list[tuple[int, ShipmentResult]]) -> None:
        # Failed batch goes back in front of anything added meanwhile; the
        # age timer restarts so the retry waits a full batch_timeout.
        self._buffer = batch + self._buffer
        self._oldest_added_at = self._clock()

    async def flush(self) -> int:
        """Write everything buffered now and wait for it.

        Retries up to max_flush_failures consecutive attempts in total.

        Returns:
            Number of results written by this call.

        Raises:
            StorageError: If storage is persistently unavailable.
        """
        written = 0
        while True:
            try:
                written += await self._flush_once()
            except StorageError:
                if self._fatal is not None:
                    raise self._fatal
                await self._sleep(self.retry_delay)
                continue
            if not self._buffer:
                return written

    async def wait_for_pending_flushes(self) -> None:
        """Wait for background flushes already scheduled by add()."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> int:
        """Wait for in-flight flushes, write the remainder and stop the timer.

        Returns:
            Number of results written by the final flush.

        Raises:
            StorageError: If the remaining results could not be written.
        """
        await self.wait_for_pending_flushes()
        try:
            return await self.flush()
        finally:
            self._closed = True
            await self._cancel_timer()

    async def abort(self) -> None:
        """Stop background work without writing. Used when a job fails."""
        self._closed = True
        await self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        self._timer = None
