# app/services/imports/chunk_processor.py
"""
Chunk Processor - runs one slice of the import plan against GP51.

Each item is fetched, validated and written. Transient failures are retried
with bounded exponential backoff; malformed records fail the item without a
retry; a fatal platform error stops the chunk and is handed back to the
orchestrator, which fails the job.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from app.core.config import settings
from app.core.exceptions import FatalPlatformError, RecordValidationError, RetryableError
from app.schemas.import_job import ErrorLogEntry
from app.services.health.monitor import HealthMonitor
from app.services.imports.planner import WorkItem

logger = logging.getLogger("fleetsync.imports.chunk_processor")


class ChunkCancelled(Exception):
    """Raised when an operator pause is observed while a chunk is running."""


@dataclass
class ChunkResult:
    """Result of processing a single chunk of work items."""
    chunk_index: int
    success_count: int = 0
    failure_count: int = 0
    errors: List[ErrorLogEntry] = field(default_factory=list)
    fatal_error: Optional[FatalPlatformError] = None
    processing_time_ms: float = 0.0

    @property
    def processed_count(self) -> int:
        return self.success_count + self.failure_count


@dataclass
class _ItemOutcome:
    position: int
    success: bool
    error: Optional[ErrorLogEntry] = None
    fatal: Optional[FatalPlatformError] = None
    cancelled: bool = False


class ChunkProcessor:
    """
    Executes chunks item by item under an inner concurrency bound.

    Health outcomes are recorded once per item after its retries are spent.
    """

    def __init__(
        self,
        client: Any,
        writer: Any,
        health: HealthMonitor,
        item_concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        call_timeout: Optional[float] = None,
    ):
        """
        Initialize the processor.

        Args:
            client: GP51 client exposing ``fetch_record(item)``
            writer: Record writer exposing ``apply(item, record)``
            health: Health monitor receiving one outcome per item
            item_concurrency: Items of one chunk in flight at once
            max_attempts: Attempt bound for retryable errors
            retry_base_delay: First backoff delay in seconds
            retry_max_delay: Backoff ceiling in seconds
            call_timeout: Per-call timeout in seconds
        """
        self.client = client
        self.writer = writer
        self.health = health
        self.item_concurrency = item_concurrency or settings.IMPORT_ITEM_CONCURRENCY
        self.max_attempts = max_attempts or settings.IMPORT_MAX_ATTEMPTS
        self.retry_base_delay = settings.IMPORT_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        self.retry_max_delay = settings.IMPORT_RETRY_MAX_DELAY if retry_max_delay is None else retry_max_delay
        self.call_timeout = call_timeout or settings.GP51_REQUEST_TIMEOUT

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before attempt ``attempt + 1``."""
        delay = self.retry_base_delay * (2 ** (attempt - 1))
        if retry_after:
            delay = max(delay, retry_after)
        return min(delay, self.retry_max_delay)

    async def process_chunk(
        self,
        items: List[WorkItem],
        job_id: str,
        chunk_index: int = 0,
        cancel_event: Optional[asyncio.Event] = None,
        on_item_done: Optional[Callable[[int, int], None]] = None,
    ) -> ChunkResult:
        """
        Process every item of a chunk.

        Args:
            items: Ordered work items of the chunk
            job_id: Owning job, for logging
            chunk_index: Position of the chunk in the plan
            cancel_event: Operator pause signal, checked before each attempt
            on_item_done: Called with (done, total) after each item

        Returns:
            ChunkResult: Counters and error entries in item order

        Raises:
            ChunkCancelled: If the pause signal was observed
        """
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.item_concurrency)
        stop = asyncio.Event()
        done = 0

        async def run(position: int, item: WorkItem) -> Optional[_ItemOutcome]:
            nonlocal done
            async with semaphore:
                if stop.is_set():
                    return None
                try:
                    outcome = await self._process_item(position, item, job_id, cancel_event)
                except Exception:
                    stop.set()
                    raise
                if outcome.fatal or outcome.cancelled:
                    stop.set()
                done += 1
                if on_item_done:
                    on_item_done(done, len(items))
                return outcome

        gathered = await asyncio.gather(
            *(run(i, item) for i, item in enumerate(items)), return_exceptions=True
        )
        for entry in gathered:
            if isinstance(entry, BaseException):
                logger.error(f"Job {job_id}: chunk {chunk_index} aborted: {entry}")
                raise entry
        outcomes = sorted((o for o in gathered if o is not None), key=lambda o: o.position)

        if any(o.cancelled for o in outcomes):
            logger.info(f"Job {job_id}: chunk {chunk_index} cancelled by pause request")
            raise ChunkCancelled(f"Chunk {chunk_index} cancelled")

        result = ChunkResult(chunk_index=chunk_index)
        for outcome in outcomes:
            if outcome.success:
                result.success_count += 1
            else:
                result.failure_count += 1
                result.errors.append(outcome.error)
            if outcome.fatal and result.fatal_error is None:
                result.fatal_error = outcome.fatal

        result.processing_time_ms = (time.monotonic() - started) * 1000
        logger.debug(
            f"Job {job_id}: chunk {chunk_index} done, {result.success_count} ok, "
            f"{result.failure_count} failed in {result.processing_time_ms:.0f}ms"
        )
        return result

    async def _process_item(
        self,
        position: int,
        item: WorkItem,
        job_id: str,
        cancel_event: Optional[asyncio.Event]
    ) -> _ItemOutcome:
        attempt = 0
        while True:
            attempt += 1
            if cancel_event is not None and cancel_event.is_set():
                return _ItemOutcome(position, success=False, cancelled=True)

            call_started = time.monotonic()
            try:
                try:
                    record = await asyncio.wait_for(self.client.fetch_record(item), timeout=self.call_timeout)
                except asyncio.TimeoutError as e:
                    raise RetryableError(f"GP51 call for {item.identifier} timed out", error_kind="timeout") from e
                latency = (time.monotonic() - call_started) * 1000
                await self.writer.apply(item, record)

            except RetryableError as e:
                latency = (time.monotonic() - call_started) * 1000
                if attempt < self.max_attempts:
                    delay = self.backoff_delay(attempt, e.details.get("retry_after"))
                    logger.debug(
                        f"Job {job_id}: {item.kind} {item.identifier} attempt {attempt} failed "
                        f"({e.error_kind}), retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.warning(
                    f"Job {job_id}: {item.kind} {item.identifier} failed after {attempt} attempts: {e.message}"
                )
                self.health.record_outcome(False, latency, e.error_kind)
                return _ItemOutcome(position, False, self._entry(item, e, "fetch", attempt))

            except RecordValidationError as e:
                latency = (time.monotonic() - call_started) * 1000
                logger.info(f"Job {job_id}: {item.kind} {item.identifier} rejected: {e.message}")
                self.health.record_outcome(False, latency, e.error_kind)
                return _ItemOutcome(position, False, self._entry(item, e, e.step, 1))

            except FatalPlatformError as e:
                latency = (time.monotonic() - call_started) * 1000
                logger.error(f"Job {job_id}: fatal GP51 error on {item.kind} {item.identifier}: {e.message}")
                self.health.record_outcome(False, latency, e.error_kind)
                return _ItemOutcome(position, False, self._entry(item, e, "authenticate", 1), fatal=e)

            self.health.record_outcome(True, latency)
            return _ItemOutcome(position, True)

    @staticmethod
    def _entry(item: WorkItem, error: Any, step: str, attempts: int) -> ErrorLogEntry:
        return ErrorLogEntry(
            item_identifier=item.identifier,
            item_kind=item.kind,
            error=error.message,
            error_kind=error.error_kind,
            timestamp=datetime.now(timezone.utc),
            step=step,
            attempts=attempts,
        )
