# app/services/imports/orchestrator.py
"""
Import Orchestrator - owns the import job state machine.

A job is planned once, backed up once, then executed chunk by chunk with a
bounded number of chunks in flight. Chunk results are committed strictly in
chunk-index order, so the persisted ``current_chunk`` is always a safe resume
point. The health monitor gates every dispatch: an unhealthy platform pauses
the job, a degraded one reduces concurrency.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.exceptions import (
    ExternalPlatformError,
    FleetSyncException,
    InvalidTransitionError,
    JobLockedError,
    NotFoundError,
    StructuralError,
)
from app.db.repositories.fleet import FleetRepository
from app.db.repositories.import_jobs import ImportJobRepository
from app.db.session import RepositoryContext
from app.models.import_job import (
    ImportJob,
    ImportJobStatus,
    ImportPhase,
    ImportType,
    compute_total_chunks,
)
from app.schemas.health import HealthStatus
from app.schemas.import_job import (
    ErrorLogEntry,
    ImportJobCreate,
    ImportProgress,
    StartImportRequest,
)
from app.services.event_bus.bus import EventBus, get_event_bus
from app.services.event_bus.events import EventType
from app.services.health.monitor import HealthMonitor
from app.services.imports.backup import BackupManager, RollbackResult
from app.services.imports.chunk_processor import ChunkCancelled, ChunkProcessor, ChunkResult
from app.services.imports.planner import WorkItem, build_plan, slice_chunk
from app.services.imports.writer import FleetRecordWriter

logger = logging.getLogger("fleetsync.imports.orchestrator")

OPERATOR_PAUSE_REASON = "Paused by operator"
HEALTH_PAUSE_REASON = "GP51 platform unhealthy"
LOST_LEASE_REASON = "Job was taken over or paused by another runner"


def new_runner_id() -> str:
    """Fresh lease token for one run of a job."""
    return uuid.uuid4().hex


class _Stop:
    """Why the dispatch loop stopped issuing chunks."""

    def __init__(
        self,
        status: Optional[ImportJobStatus],
        reason: str,
        error: Optional[ErrorLogEntry] = None,
        commit_below: Optional[int] = None,
    ):
        # None: the runner no longer holds the job and must leave its status alone
        self.status = status
        self.reason = reason
        self.error = error
        # Chunks with a lower index may still be committed; None means no limit
        self.commit_below = commit_below


class ImportOrchestrator:
    """
    Runs import jobs as background tasks and serves operator requests.

    One instance per process. Jobs started here are tracked in memory so a
    pause request can be delivered cooperatively; everything else goes
    through compare-and-swap on the job row.
    """

    def __init__(
        self,
        repositories: RepositoryContext,
        client: Any,
        health: HealthMonitor,
        event_bus: Optional[EventBus] = None,
        processor: Optional[ChunkProcessor] = None,
        backup_manager: Optional[BackupManager] = None,
        chunk_size: Optional[int] = None,
        max_concurrent_chunks: Optional[int] = None,
        degraded_concurrent_chunks: Optional[int] = None,
        max_failure_ratio: Optional[float] = None,
        failure_ratio_min_items: Optional[int] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            repositories: Repository context factory for the record store
            client: GP51 client used for planning and fetching
            health: Health monitor consulted before each dispatch
            event_bus: Bus receiving lifecycle events
            processor: Chunk processor; built from client and health if omitted
            backup_manager: Backup manager; built from repositories if omitted
            chunk_size: Default chunk size when the request has none
            max_concurrent_chunks: Chunks in flight while healthy
            degraded_concurrent_chunks: Chunks in flight while degraded
            max_failure_ratio: Cumulative failure ratio that fails the job
            failure_ratio_min_items: Processed items needed before the ratio applies
        """
        self.repositories = repositories
        self.client = client
        self.health = health
        self.event_bus = event_bus or get_event_bus()
        self.processor = processor or ChunkProcessor(
            client=client, writer=FleetRecordWriter(repositories), health=health
        )
        self.backup_manager = backup_manager or BackupManager(repositories)

        self.chunk_size = settings.IMPORT_CHUNK_SIZE if chunk_size is None else chunk_size
        self.max_concurrent_chunks = max_concurrent_chunks or settings.IMPORT_MAX_CONCURRENT_CHUNKS
        self.degraded_concurrent_chunks = degraded_concurrent_chunks or settings.IMPORT_DEGRADED_CONCURRENT_CHUNKS
        self.max_failure_ratio = settings.IMPORT_MAX_FAILURE_RATIO if max_failure_ratio is None else max_failure_ratio
        self.failure_ratio_min_items = (
            settings.IMPORT_FAILURE_RATIO_MIN_ITEMS if failure_ratio_min_items is None else failure_ratio_min_items
        )

        self._tasks: Dict[str, asyncio.Task] = {}
        self._pause_events: Dict[str, asyncio.Event] = {}
        # job id -> chunk index -> (items done, items in chunk)
        self._chunk_progress: Dict[str, Dict[int, Tuple[int, int]]] = {}
        self._milestones: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Operator API
    # ------------------------------------------------------------------

    async def start_import(self, request: StartImportRequest, job_name: Optional[str] = None) -> str:
        """
        Create a pending job and schedule its run.

        Returns:
            str: The new job id. Failures after this point only show up on the job record.
        """
        chunk_size = request.batch_size or self.chunk_size
        name = job_name or request.job_name or (
            f"GP51 {request.import_type.value} import "
            f"{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M')}"
        )
        options = request.model_dump(mode="json", exclude={"job_name", "batch_size"})

        async with self.repositories(ImportJobRepository) as jobs:
            job = await jobs.create_job(ImportJobCreate(
                job_name=name,
                import_type=request.import_type,
                chunk_size=chunk_size,
                options=options,
            ))

        logger.info(f"Created import job {job.id} ({request.import_type.value}, chunk size {chunk_size})")
        self._spawn(job.id, ImportJobStatus.PENDING, new_runner_id())
        return job.id

    async def pause_job(self, job_id: str, wait: bool = True) -> ImportJob:
        """
        Pause a running job.

        A job running in this process is asked to stop cooperatively and,
        with ``wait``, this returns once it has drained. A running job with
        no local runner is moved to paused directly. Pausing a paused job is
        a no-op.

        Raises:
            NotFoundError: If the job does not exist
            InvalidTransitionError: If the job is terminal
        """
        job = await self.get_job(job_id)
        if job.status == ImportJobStatus.PAUSED:
            return job

        event = self._pause_events.get(job_id)
        if event is not None and job.status in (ImportJobStatus.PENDING, ImportJobStatus.RUNNING):
            logger.info(f"Pause requested for import job {job_id}")
            event.set()
            if wait:
                await self.wait_for_job(job_id)
            return await self.get_job(job_id)

        if job.status != ImportJobStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot pause import job {job_id} in status {job.status.value}",
                details={"job_id": job_id, "status": job.status.value}
            )

        async with self.repositories(ImportJobRepository) as jobs:
            swapped = await jobs.transition_status(
                job_id, ImportJobStatus.RUNNING, ImportJobStatus.PAUSED,
                pause_reason=OPERATOR_PAUSE_REASON, current_phase=ImportPhase.PAUSED.value
            )
        if not swapped:
            raise InvalidTransitionError(f"Import job {job_id} changed status while pausing")
        await self._publish(EventType.IMPORT_PAUSED, job_id, reason=OPERATOR_PAUSE_REASON)
        return await self.get_job(job_id)

    async def resume_job(self, job_id: str) -> ImportJob:
        """
        Resume a paused job from its persisted ``current_chunk``.

        Raises:
            JobLockedError: If a runner for the job is still draining
            InvalidTransitionError: If the job is not paused
        """
        if job_id in self._tasks:
            raise JobLockedError(f"Import job {job_id} is still held by a runner")

        job = await self.get_job(job_id)
        if job.status != ImportJobStatus.PAUSED:
            raise InvalidTransitionError(
                f"Cannot resume import job {job_id} in status {job.status.value}",
                details={"job_id": job_id, "status": job.status.value}
            )

        runner_id = new_runner_id()
        async with self.repositories(ImportJobRepository) as jobs:
            swapped = await jobs.transition_status(
                job_id, ImportJobStatus.PAUSED, ImportJobStatus.RUNNING, runner_id=runner_id, pause_reason=None
            )
        if not swapped:
            raise JobLockedError(f"Import job {job_id} was claimed by another runner")

        logger.info(f"Resuming import job {job_id} at chunk {job.current_chunk}/{job.total_chunks}")
        self._spawn(job_id, None, runner_id)
        return await self.get_job(job_id)

    async def abandon_job(self, job_id: str) -> ImportJob:
        """Give up on a paused job: paused -> failed."""
        job = await self.get_job(job_id)
        if job.status != ImportJobStatus.PAUSED:
            raise InvalidTransitionError(
                f"Only paused jobs can be abandoned; {job_id} is {job.status.value}",
                details={"job_id": job_id, "status": job.status.value}
            )

        async with self.repositories(ImportJobRepository) as jobs:
            swapped = await jobs.transition_status(
                job_id, ImportJobStatus.PAUSED, ImportJobStatus.FAILED,
                errors=[self._job_error(job_id, "Abandoned by operator", "abandon", "operator").to_record()],
                current_phase=ImportPhase.FAILED.value, phase_details="Abandoned by operator"
            )
        if not swapped:
            raise InvalidTransitionError(f"Import job {job_id} changed status while abandoning")

        await self._publish(EventType.IMPORT_FAILED, job_id, reason="abandoned")
        return await self.get_job(job_id)

    async def rollback_job(self, job_id: str, dry_run: bool = False) -> RollbackResult:
        """Revert a finished job's writes from its backup."""
        result = await self.backup_manager.rollback(job_id, dry_run=dry_run)
        if result.success and not dry_run:
            await self._publish(
                EventType.IMPORT_ROLLED_BACK, job_id,
                backup_ref=result.backup_ref,
                records_restored=result.records_restored,
                records_removed=result.records_removed,
            )
        return result

    async def get_job(self, job_id: str) -> ImportJob:
        """
        Get a job record.

        Raises:
            NotFoundError: If the job does not exist
        """
        async with self.repositories(ImportJobRepository) as jobs:
            job = await jobs.get_by_id(job_id)
        if not job:
            raise NotFoundError(f"Import job {job_id} not found")
        return job

    async def list_jobs(
        self,
        status: Optional[ImportJobStatus] = None,
        skip: int = 0,
        limit: int = 20
    ) -> Tuple[List[ImportJob], int]:
        async with self.repositories(ImportJobRepository) as jobs:
            return await jobs.list_jobs(status=status, skip=skip, limit=limit)

    async def get_progress(self, job_id: str) -> ImportProgress:
        """
        Derive the progress snapshot for a job.

        ``phaseProgress`` is the fraction of the next chunk to commit that has
        already been processed here; it is 0 when no local runner holds the job.
        """
        job = await self.get_job(job_id)

        phase = ImportPhase(job.current_phase)
        overall = min(job.overall_progress, 1.0)

        if job.status in (ImportJobStatus.COMPLETED, ImportJobStatus.COMPLETED_WITH_ERRORS):
            phase_progress = 1.0
        else:
            done, size = self._chunk_progress.get(job_id, {}).get(job.current_chunk, (0, 0))
            phase_progress = done / size if size else 0.0

        if job.status == ImportJobStatus.PAUSED:
            operation = job.pause_reason or "Paused"
        elif job.phase_details:
            operation = job.phase_details
        else:
            operation = phase.value.replace("_", " ").capitalize()

        return ImportProgress(
            phase=phase,
            phase_progress=min(phase_progress, 1.0),
            overall_progress=overall,
            current_operation=operation,
            details={
                "status": job.status.value,
                "total_items": job.total_items,
                "processed_items": job.processed_items,
                "successful_items": job.successful_items,
                "failed_items": job.failed_items,
                "current_chunk": job.current_chunk,
                "total_chunks": job.total_chunks,
                "error_count": job.error_count,
            },
        )

    async def wait_for_job(self, job_id: str) -> None:
        """Wait until the local runner of a job (if any) has exited."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Ask every local runner to pause and wait for them to drain."""
        job_ids = list(self._tasks)
        for job_id in job_ids:
            event = self._pause_events.get(job_id)
            if event is not None:
                event.set()
        for job_id in job_ids:
            await self.wait_for_job(job_id)
        if job_ids:
            logger.info(f"Paused {len(job_ids)} running import jobs for shutdown")

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------

    def _spawn(self, job_id: str, claim_from: Optional[ImportJobStatus], runner_id: str) -> None:
        self._pause_events[job_id] = asyncio.Event()
        self._chunk_progress[job_id] = {}
        task = asyncio.create_task(self.run_job(job_id, claim_from, runner_id))
        self._tasks[job_id] = task

        def _forget(finished: asyncio.Task) -> None:
            if self._tasks.get(job_id) is finished:
                self._tasks.pop(job_id, None)
                self._pause_events.pop(job_id, None)
                self._chunk_progress.pop(job_id, None)
                self._milestones.pop(job_id, None)

        task.add_done_callback(_forget)

    async def run_job(
        self,
        job_id: str,
        claim_from: Optional[ImportJobStatus] = ImportJobStatus.PENDING,
        runner_id: Optional[str] = None
    ) -> None:
        """
        Execute a job until it completes, fails or pauses.

        Args:
            job_id: Job to run
            claim_from: Status to compare-and-swap to running first; None when
                the caller already moved the job to running
            runner_id: Lease token written on the job when it moved to
                running; every commit and status change of this run must
                still match it

        Never raises: failures are written to the job record.
        """
        runner_id = runner_id or new_runner_id()
        try:
            await self._run(job_id, claim_from, runner_id)
        except asyncio.CancelledError:
            logger.warning(f"Runner for import job {job_id} was cancelled")
            raise
        except StructuralError as e:
            logger.error(f"Import job {job_id} hit a structural error: {e.message}", exc_info=True)
            await self._fail(job_id, runner_id, self._job_error(job_id, e.message, "structural", "structural"))
        except ExternalPlatformError as e:
            logger.error(f"Import job {job_id} failed on GP51: {e.message}")
            await self._fail(job_id, runner_id, self._job_error(job_id, e.message, "plan", e.error_kind))
        except Exception as e:
            logger.error(f"Import job {job_id} failed unexpectedly: {e}", exc_info=True)
            await self._fail(job_id, runner_id, self._job_error(job_id, str(e), "run", "unexpected"))

    async def _run(self, job_id: str, claim_from: Optional[ImportJobStatus], runner_id: str) -> None:
        if claim_from is not None:
            async with self.repositories(ImportJobRepository) as jobs:
                if not await jobs.transition_status(job_id, claim_from, ImportJobStatus.RUNNING, runner_id=runner_id):
                    logger.warning(f"Import job {job_id} was not {claim_from.value}; another runner holds it")
                    return

        job = await self.get_job(job_id)
        await self._publish(
            EventType.IMPORT_STARTED, job_id,
            resumed=job.current_chunk > 0 or job.planned_items is not None,
            import_type=job.import_type.value,
        )

        if job.chunk_size is None or job.chunk_size <= 0:
            raise StructuralError(f"Invalid chunk size {job.chunk_size}")

        options = job.options or {}
        plan = await self._ensure_plan(job, options)
        total_chunks = compute_total_chunks(len(plan), job.chunk_size)

        if not plan:
            await self._finish(job_id, runner_id, "Nothing to import")
            return

        if not job.backup_tables:
            await self._backup_and_cleanup(job_id, plan, options)

        await self._execute(job_id, runner_id, plan, job.chunk_size, total_chunks)

    async def _ensure_plan(self, job: ImportJob, options: Dict[str, Any]) -> List[WorkItem]:
        """Load the frozen plan, or build and freeze it on first run."""
        if job.planned_items is not None:
            return [WorkItem.from_dict(entry) for entry in job.planned_items]

        await self._set_phase(job.id, ImportPhase.PLANNING, "Discovering GP51 records")
        plan = await build_plan(
            self.client,
            ImportType(job.import_type),
            options.get("selected_usernames"),
        )
        async with self.repositories(ImportJobRepository) as jobs:
            await jobs.set_plan(
                job.id,
                [item.to_dict() for item in plan],
                compute_total_chunks(len(plan), job.chunk_size),
            )
        return plan

    async def _backup_and_cleanup(self, job_id: str, plan: List[WorkItem], options: Dict[str, Any]) -> None:
        """Snapshot every key the job may touch, then run the optional cleanup."""
        cleanup_keys: List[Tuple[str, str]] = []
        if options.get("perform_cleanup"):
            preserve = options.get("preserve_admin_email") or settings.DEFAULT_PRESERVE_ADMIN_EMAIL
            async with self.repositories(FleetRepository) as fleet:
                cleanup_keys = await fleet.list_imported_keys(preserve_email=preserve)

        await self._set_phase(job_id, ImportPhase.BACKUP, "Backing up affected fleet records")
        keys = [(item.kind, item.identifier) for item in plan] + cleanup_keys
        await self.backup_manager.snapshot(job_id, keys)

        if cleanup_keys:
            await self._set_phase(job_id, ImportPhase.CLEANUP, f"Removing {len(cleanup_keys)} previously imported records")
            async with self.repositories(FleetRepository) as fleet:
                await fleet.delete_keys(cleanup_keys)

    def _concurrency_limit(self, total_chunks: int) -> int:
        if self.health.recovering:
            limit = 1
        elif self.health.status == HealthStatus.DEGRADED:
            limit = self.degraded_concurrent_chunks
        else:
            limit = self.max_concurrent_chunks
        return max(1, min(limit, total_chunks))

    async def _execute(
        self,
        job_id: str,
        runner_id: str,
        plan: List[WorkItem],
        chunk_size: int,
        total_chunks: int
    ) -> None:
        """
        Dispatch chunks, commit them in order and settle the job's status.

        At most K chunks are outstanding at once, counting both chunks in
        flight and finished chunks waiting for a lower index to commit.
        """
        job = await self.get_job(job_id)
        next_index = job.current_chunk
        commit_index = job.current_chunk
        cancel = self._pause_events.setdefault(job_id, asyncio.Event())
        progress = self._chunk_progress.setdefault(job_id, {})

        await self._set_phase(job_id, ImportPhase.IMPORTING, f"Importing chunk {commit_index + 1} of {total_chunks}")

        in_flight: Dict[asyncio.Task, int] = {}
        finished: Dict[int, ChunkResult] = {}
        stop: Optional[_Stop] = None

        try:
            while True:
                while stop is None and next_index < total_chunks and (
                    next_index - commit_index < self._concurrency_limit(total_chunks)
                ):
                    if cancel.is_set():
                        stop = _Stop(ImportJobStatus.PAUSED, OPERATOR_PAUSE_REASON)
                        break
                    if self.health.status == HealthStatus.UNHEALTHY:
                        logger.warning(f"Import job {job_id}: GP51 unhealthy, pausing before chunk {next_index}")
                        stop = _Stop(ImportJobStatus.PAUSED, HEALTH_PAUSE_REASON)
                        break

                    index = next_index
                    items = slice_chunk(plan, index, chunk_size)
                    progress[index] = (0, len(items))

                    def on_item_done(done: int, size: int, index: int = index) -> None:
                        progress[index] = (done, size)

                    task = asyncio.create_task(self.processor.process_chunk(
                        items, job_id, chunk_index=index, cancel_event=cancel, on_item_done=on_item_done
                    ))
                    in_flight[task] = index
                    next_index += 1

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: in_flight[t]):
                    index = in_flight.pop(task)
                    error = task.exception()
                    if isinstance(error, ChunkCancelled):
                        stop = stop or _Stop(ImportJobStatus.PAUSED, OPERATOR_PAUSE_REASON)
                    elif isinstance(error, StructuralError):
                        raise error
                    elif error is not None:
                        logger.error(f"Import job {job_id}: chunk {index} raised {error!r}")
                        if stop is None or stop.status != ImportJobStatus.FAILED:
                            stop = _Stop(
                                ImportJobStatus.FAILED, f"Chunk {index} failed",
                                self._job_error(job_id, f"Chunk {index} failed: {error}", "chunk", "unexpected"),
                                commit_below=index,
                            )
                    else:
                        finished[index] = task.result()

                while commit_index in finished and (
                    stop is None or stop.commit_below is None or commit_index < stop.commit_below
                ):
                    result = finished.pop(commit_index)
                    committed = await self._commit(job_id, runner_id, result, total_chunks)
                    if committed is None:
                        stop = _Stop(None, LOST_LEASE_REASON, commit_below=commit_index)
                        break
                    if result.fatal_error is not None:
                        stop = _Stop(ImportJobStatus.FAILED, result.fatal_error.message, commit_below=commit_index)
                        break
                    commit_index += 1
                    ratio_stop = self._check_failure_ratio(committed)
                    if ratio_stop is not None:
                        stop = ratio_stop
                        break
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        if stop is None:
            await self._finish(job_id, runner_id)
        elif stop.status is None:
            logger.warning(f"Runner for import job {job_id} stopped at chunk {commit_index}: {stop.reason}")
        elif stop.status == ImportJobStatus.PAUSED:
            await self._pause(job_id, runner_id, stop.reason)
        else:
            await self._fail(job_id, runner_id, stop.error, stop.reason)

    async def _commit(
        self,
        job_id: str,
        runner_id: str,
        result: ChunkResult,
        total_chunks: int
    ) -> Optional[ImportJob]:
        """
        Persist one chunk and announce it. A fatal chunk does not advance current_chunk.

        Returns None when this runner no longer holds the job.
        """
        async with self.repositories(ImportJobRepository) as jobs:
            job = await jobs.commit_chunk(
                job_id,
                result.chunk_index,
                successful=result.success_count,
                failed=result.failure_count,
                errors=[entry.to_record() for entry in result.errors],
                advance=result.fatal_error is None,
                runner_id=runner_id,
            )
            if job is not None and result.fatal_error is None and job.current_chunk < total_chunks:
                await jobs.update_phase(
                    job_id, ImportPhase.IMPORTING, f"Importing chunk {job.current_chunk + 1} of {total_chunks}"
                )
        if job is None:
            return None

        self._chunk_progress.get(job_id, {}).pop(result.chunk_index, None)
        self._log_milestone(job)
        await self._publish(
            EventType.IMPORT_CHUNK_COMMITTED, job_id,
            chunk_index=result.chunk_index,
            current_chunk=job.current_chunk,
            total_chunks=job.total_chunks,
            processed_items=job.processed_items,
            successful_items=job.successful_items,
            failed_items=job.failed_items,
            total_items=job.total_items,
            status=job.status.value,
        )
        return job

    def _check_failure_ratio(self, job: ImportJob) -> Optional[_Stop]:
        if job.processed_items < self.failure_ratio_min_items or not job.processed_items:
            return None
        ratio = job.failed_items / job.processed_items
        if ratio <= self.max_failure_ratio:
            return None
        message = (
            f"Failure ratio {ratio:.0%} exceeds {self.max_failure_ratio:.0%} "
            f"after {job.processed_items} items"
        )
        logger.error(f"Import job {job.id}: {message}")
        return _Stop(
            ImportJobStatus.FAILED, message,
            self._job_error(job.id, message, "failure_ratio", "failure_ratio"),
            commit_below=job.current_chunk,
        )

    def _log_milestone(self, job: ImportJob) -> None:
        if not job.total_items:
            return
        milestone = int(job.processed_items * 10 / job.total_items) * 10
        if milestone > self._milestones.get(job.id, 0):
            self._milestones[job.id] = milestone
            logger.info(
                f"Import job {job.id}: {milestone}% ({job.processed_items}/{job.total_items}, "
                f"{job.failed_items} failed)"
            )

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def _finish(self, job_id: str, runner_id: str, details: Optional[str] = None) -> None:
        job = await self.get_job(job_id)
        status = ImportJobStatus.COMPLETED if job.failed_items == 0 else ImportJobStatus.COMPLETED_WITH_ERRORS
        details = details or f"Imported {job.successful_items} of {job.total_items} records"

        async with self.repositories(ImportJobRepository) as jobs:
            swapped = await jobs.transition_status(
                job_id, ImportJobStatus.RUNNING, status, runner_id=runner_id,
                current_phase=ImportPhase.COMPLETED.value, phase_details=details
            )
        if swapped:
            logger.info(f"Import job {job_id} {status.value}: {details}")
            await self._publish(
                EventType.IMPORT_COMPLETED, job_id,
                status=status.value,
                successful_items=job.successful_items,
                failed_items=job.failed_items,
            )

    async def _pause(self, job_id: str, runner_id: str, reason: str) -> None:
        async with self.repositories(ImportJobRepository) as jobs:
            swapped = await jobs.transition_status(
                job_id, ImportJobStatus.RUNNING, ImportJobStatus.PAUSED, runner_id=runner_id,
                pause_reason=reason, current_phase=ImportPhase.PAUSED.value, phase_details=reason
            )
        if swapped:
            logger.info(f"Import job {job_id} paused: {reason}")
            await self._publish(EventType.IMPORT_PAUSED, job_id, reason=reason)

    async def _fail(
        self,
        job_id: str,
        runner_id: str,
        error: Optional[ErrorLogEntry],
        reason: Optional[str] = None
    ) -> None:
        """
        Move a running (or still pending) job to failed, logging the cause.

        The cause is appended in the same update as the status swap, so a
        runner that lost the job leaves no trace in its error log.
        """
        reason = reason or (error.error if error else "Import failed")
        try:
            async with self.repositories(ImportJobRepository) as jobs:
                job = await jobs.get_by_id(job_id)
                if job is None or job.status not in (ImportJobStatus.PENDING, ImportJobStatus.RUNNING):
                    return
                swapped = await jobs.transition_status(
                    job_id, job.status, ImportJobStatus.FAILED, runner_id=runner_id,
                    errors=[error.to_record()] if error is not None else None,
                    current_phase=ImportPhase.FAILED.value, phase_details=reason
                )
        except FleetSyncException as e:
            logger.error(f"Could not mark import job {job_id} failed: {e.message}")
            return

        if swapped:
            logger.error(f"Import job {job_id} failed: {reason}")
            await self._publish(EventType.IMPORT_FAILED, job_id, reason=reason)

    async def _set_phase(self, job_id: str, phase: ImportPhase, details: Optional[str] = None) -> None:
        async with self.repositories(ImportJobRepository) as jobs:
            await jobs.update_phase(job_id, phase, details)

    async def _publish(self, event_type: EventType, job_id: str, **data: Any) -> None:
        await self.event_bus.publish(event_type, {"job_id": job_id, **data})

    @staticmethod
    def _job_error(job_id: str, message: str, step: str, error_kind: str) -> ErrorLogEntry:
        return ErrorLogEntry(
            item_identifier=job_id,
            item_kind="job",
            error=message,
            error_kind=error_kind,
            timestamp=datetime.now(timezone.utc),
            step=step,
            attempts=1,
        )


# Singleton instance
_orchestrator = None

def get_import_orchestrator() -> ImportOrchestrator:
    """Get the process-wide orchestrator wired to the application services."""
    global _orchestrator
    if _orchestrator is None:
        from app.db.session import get_repository_context
        from app.services.gp51.client import get_gp51_client
        from app.services.health.monitor import get_health_monitor

        _orchestrator = ImportOrchestrator(
            repositories=get_repository_context,
            client=get_gp51_client(),
            health=get_health_monitor(),
        )
    return _orchestrator
