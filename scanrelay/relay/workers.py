"""RelayWorkerPool — bounded intake queue + fixed worker pool + watchdog.

    submit(job)  → JobRecord (RECEIVED) or QueueFull (HTTP 503 QUEUE_FULL)
    workers      → fetch, then import with retries, per the JobRecord state machine
    watchdog     → a job still unfinished ``watchdog_timeout_s`` after receipt
                   is cancelled and recorded FAILED(WATCHDOG_TIMEOUT)

The watchdog cancels the job's coroutine outright; a downstream import that
was in flight is not rolled back.

Workers never let an exception escape: every failure ends as a FAILED job
record plus a log event, and the worker picks up the next job.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from scanrelay.constants import (
    RELAY_BACKOFF_BASE_S,
    RELAY_BACKOFF_CAP_S,
    RELAY_FETCH_MAX_ATTEMPTS,
    RELAY_IMPORT_MAX_ATTEMPTS,
    RELAY_QUEUE_CAPACITY,
    RELAY_WATCHDOG_TIMEOUT_S,
    RELAY_WORKERS,
)
from scanrelay.downstream.importer import DownstreamImporter
from scanrelay.errors import RelayFetchError, RelayImportError
from scanrelay.relay.fetcher import ArtifactFetcher
from scanrelay.relay.models import FailureReason, IntakeJob, JobRecord, JobState
from scanrelay.relay.results import ResultStore
from scanrelay.utils.logger import clear_job_id, get_logger, redact_url, set_job_id
from scanrelay.utils.retry import async_retrying
from scanrelay.utils.ulid import generate_ulid

logger = get_logger(__name__)


class QueueFull(Exception):
    """Intake queue at capacity; the caller should retry after a delay."""


@dataclass
class RelayCounters:
    accepted: int = 0
    rejected: int = 0
    imported: int = 0
    failed: int = 0
    watchdog_timeouts: int = 0


@dataclass
class _QueuedJob:
    record: JobRecord
    deadline: float  # time.monotonic() value


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, (RelayFetchError, RelayImportError)) and exc.retryable


class RelayWorkerPool:
    def __init__(
        self,
        *,
        fetcher: ArtifactFetcher,
        importer: DownstreamImporter,
        results: ResultStore,
        workers: int = RELAY_WORKERS,
        capacity: int = RELAY_QUEUE_CAPACITY,
        watchdog_timeout_s: float = RELAY_WATCHDOG_TIMEOUT_S,
        fetch_max_attempts: int = RELAY_FETCH_MAX_ATTEMPTS,
        import_max_attempts: int = RELAY_IMPORT_MAX_ATTEMPTS,
        backoff_base_s: float = RELAY_BACKOFF_BASE_S,
        backoff_cap_s: float = RELAY_BACKOFF_CAP_S,
    ) -> None:
        self._fetcher = fetcher
        self._importer = importer
        self._results = results
        self._workers = workers
        self._capacity = capacity
        self._watchdog_timeout_s = watchdog_timeout_s
        self._fetch_max_attempts = fetch_max_attempts
        self._import_max_attempts = import_max_attempts
        self._backoff_base_s = backoff_base_s
        self._backoff_cap_s = backoff_cap_s
        self._queue: asyncio.Queue[_QueuedJob] = asyncio.Queue(maxsize=capacity)
        self._tasks: list[asyncio.Task[None]] = []
        self._busy = 0
        self.counters = RelayCounters()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"relay-worker-{i}")
            for i in range(self._workers)
        ]
        logger.info("Relay workers started", workers=self._workers, capacity=self._capacity)

    async def stop(self) -> None:
        """Cancel all workers. Jobs still queued are left as RECEIVED."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if not self._queue.empty():
            logger.warning("Relay stopped with queued jobs", abandoned=self._queue.qsize())

    async def join(self) -> None:
        """Wait until every queued job has been processed (tests, graceful drain)."""
        await self._queue.join()

    # ── Intake ────────────────────────────────────────────────────────────────

    async def submit(self, job: IntakeJob) -> JobRecord:
        """Accept a job into the bounded queue.

        Raises:
            QueueFull: the queue is at capacity. The job is not recorded.
        """
        if self._queue.full():
            self.counters.rejected += 1
            raise QueueFull(f"relay queue at capacity ({self._capacity})")

        record = JobRecord(job_id=generate_ulid(), job=job)
        await self._results.save(record)
        try:
            self._queue.put_nowait(
                _QueuedJob(record=record, deadline=time.monotonic() + self._watchdog_timeout_s)
            )
        except asyncio.QueueFull:
            # Filled by a concurrent submit while the record was being saved.
            await self._results.delete(record.job_id)
            self.counters.rejected += 1
            raise QueueFull(f"relay queue at capacity ({self._capacity})") from None

        self.counters.accepted += 1
        logger.info(
            "Job enqueued",
            job_id=record.job_id,
            scan_type=job.scan_type,
            engagement=job.engagement,
            file_url=redact_url(job.file_url),
            queue_depth=self._queue.qsize(),
        )
        return record

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def busy(self) -> int:
        return self._busy

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ── Workers ───────────────────────────────────────────────────────────────

    async def _worker(self, index: int) -> None:
        while True:
            queued = await self._queue.get()
            self._busy += 1
            set_job_id(queued.record.job_id)
            try:
                await self._run_with_watchdog(queued)
            except Exception as exc:
                logger.error(
                    "Relay worker error",
                    worker=index,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
            finally:
                clear_job_id()
                self._busy -= 1
                self._queue.task_done()

    async def _run_with_watchdog(self, queued: _QueuedJob) -> None:
        record = queued.record
        remaining = queued.deadline - time.monotonic()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            await asyncio.wait_for(self._process(record), timeout=remaining)
        except asyncio.TimeoutError:
            self.counters.watchdog_timeouts += 1
            await self._finish_failed(
                record,
                FailureReason.WATCHDOG_TIMEOUT,
                f"job not finished within {self._watchdog_timeout_s}s of receipt "
                f"(last state {record.state.value})",
            )
        except Exception as exc:
            await self._finish_failed(record, FailureReason.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}")
            raise

    async def _process(self, record: JobRecord) -> None:
        job = record.job

        # ── Fetch ─────────────────────────────────────────────────────────────
        await self._transition(record, JobState.FETCHING)
        try:
            async for attempt in self._retrying("relay.fetch", self._fetch_max_attempts, record):
                with attempt:
                    record.fetch_attempts += 1
                    data = await self._fetcher.fetch(job.file_url)
        except RelayFetchError as exc:
            record.error = exc.message
            await self._transition(record, JobState.FETCH_FAILED)
            await self._finish_failed(record, FailureReason.FETCH_FAILED, exc.message)
            return

        record.bytes_fetched = len(data)
        await self._transition(record, JobState.FETCHED)

        # ── Import ────────────────────────────────────────────────────────────
        try:
            async for attempt in self._retrying("relay.import", self._import_max_attempts, record):
                with attempt:
                    record.import_attempts += 1
                    await self._transition(record, JobState.IMPORTING)
                    try:
                        await self._importer.import_scan(
                            scan_type=job.scan_type,
                            engagement=job.engagement,
                            file_url=job.file_url,
                            content=data,
                            filename=_filename_for(job),
                        )
                    except RelayImportError as exc:
                        record.error = exc.message
                        await self._transition(record, JobState.IMPORT_FAILED)
                        raise
        except RelayImportError as exc:
            await self._finish_failed(record, FailureReason.IMPORT_FAILED, exc.message)
            return

        record.error = None
        await self._transition(record, JobState.IMPORTED)
        self.counters.imported += 1
        logger.info(
            "Job imported",
            job_id=record.job_id,
            scan_type=job.scan_type,
            fetch_attempts=record.fetch_attempts,
            import_attempts=record.import_attempts,
            bytes=record.bytes_fetched,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _retrying(self, operation: str, max_attempts: int, record: JobRecord):
        return async_retrying(
            operation=operation,
            max_attempts=max_attempts,
            base=self._backoff_base_s,
            cap=self._backoff_cap_s,
            retry_on=_retryable,
            job_id=record.job_id,
        )

    async def _transition(self, record: JobRecord, state: JobState) -> None:
        record.transition(state)
        await self._results.save(record)

    async def _finish_failed(self, record: JobRecord, reason: FailureReason, error: Optional[str]) -> None:
        if record.terminal:
            return
        record.fail(reason, error)
        await self._results.save(record)
        self.counters.failed += 1
        logger.warning(
            "Job failed",
            job_id=record.job_id,
            scan_type=record.job.scan_type,
            reason=reason.value,
            error=error,
            fetch_attempts=record.fetch_attempts,
            import_attempts=record.import_attempts,
        )


def _filename_for(job: IntakeJob) -> str:
    path = job.file_url.split("?", 1)[0].rstrip("/")
    return path.rsplit("/", 1)[-1] or "report"
