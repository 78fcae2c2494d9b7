"""
ImportJob repository: the durable record store for import jobs.
"""
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy import select, update, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

import logging
from app.core.exceptions import InvalidTransitionError
from app.db.repositories.base import BaseRepository
from app.models.import_job import (
    ALLOWED_TRANSITIONS,
    ImportJob,
    ImportJobStatus,
    ImportPhase,
    TERMINAL_STATUSES,
)
from app.schemas.import_job import ImportJobCreate, ImportJobUpdate
from app.utils.ids import generate_prefixed_id, IDPrefix

logger = logging.getLogger("fleetsync.db")


class ImportJobRepository(BaseRepository[ImportJob, ImportJobCreate, ImportJobUpdate]):
    """ImportJob repository for database operations."""

    def __init__(self, session: AsyncSession):
        """Initialize with session and ImportJob model."""
        super().__init__(session=session, model=ImportJob)

    async def create_job(self, job_in: ImportJobCreate) -> ImportJob:
        """
        Create a pending import job.

        Args:
            job_in: Job name, type, chunk size and request options

        Returns:
            ImportJob: The new job row
        """
        job = ImportJob(
            id=generate_prefixed_id(IDPrefix.IMPORT),
            job_name=job_in.job_name,
            import_type=job_in.import_type,
            chunk_size=job_in.chunk_size,
            options=job_in.options,
            status=ImportJobStatus.PENDING,
            current_phase=ImportPhase.INITIALIZATION.value,
            error_log=[],
            backup_tables=[],
        )
        return await self.save(job)

    async def list_jobs(
        self,
        status: Optional[ImportJobStatus] = None,
        skip: int = 0,
        limit: int = 100
    ) -> Tuple[List[ImportJob], int]:
        """
        Get import jobs with optional status filtering.

        Returns:
            Tuple[List[ImportJob], int]: (jobs, total_count)
        """
        query = select(ImportJob)
        count_query = select(func.count(ImportJob.id))

        if status:
            query = query.where(ImportJob.status == status)
            count_query = count_query.where(ImportJob.status == status)

        query = query.order_by(desc(ImportJob.created_at)).offset(skip).limit(limit)

        total_result = await self.session.execute(count_query)
        total = total_result.scalar() or 0

        result = await self.session.execute(query)
        return list(result.scalars().all()), total

    async def transition_status(
        self,
        job_id: str,
        expected: ImportJobStatus,
        new_status: ImportJobStatus,
        runner_id: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        **fields: Any
    ) -> bool:
        """
        Compare-and-swap the job status.

        The update only applies when the stored status still equals
        ``expected``; a concurrent runner that already moved the job makes
        this return False. ``started_at`` and ``completed_at`` are stamped
        here so each is written exactly once.

        Args:
            job_id: Job to move
            expected: Status the caller believes the job has
            new_status: Target status
            runner_id: Moving into running, the lease token of the new
                runner. Moving out of running, the swap also requires the
                stored lease to match, so a runner that lost the job cannot
                settle it.
            errors: Error entries appended in the same update as the swap

        Raises:
            InvalidTransitionError: If the state machine forbids the edge
        """
        if new_status not in ALLOWED_TRANSITIONS[expected]:
            raise InvalidTransitionError(
                f"Cannot move import job from {expected.value} to {new_status.value}",
                details={"job_id": job_id, "from": expected.value, "to": new_status.value}
            )

        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {"status": new_status, "updated_at": now, **fields}
        values["runner_id"] = runner_id if new_status == ImportJobStatus.RUNNING else None

        if new_status in TERMINAL_STATUSES:
            values["completed_at"] = now

        if errors:
            current = await self.session.execute(select(ImportJob.error_log).where(ImportJob.id == job_id))
            values["error_log"] = list(current.scalar() or []) + list(errors)

        conditions = [ImportJob.id == job_id, ImportJob.status == expected]
        if expected == ImportJobStatus.RUNNING and runner_id is not None:
            conditions.append(ImportJob.runner_id == runner_id)

        stmt = (
            update(ImportJob)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        swapped = result.rowcount == 1

        if swapped and new_status == ImportJobStatus.RUNNING:
            # Only the first move out of pending stamps started_at
            await self.session.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id, ImportJob.started_at.is_(None))
                .values(started_at=now)
                .execution_options(synchronize_session=False)
            )

        await self.session.commit()

        if swapped:
            logger.info(f"Import job {job_id}: {expected.value} -> {new_status.value}")
        else:
            logger.warning(
                f"Import job {job_id}: status CAS {expected.value} -> {new_status.value} lost"
            )
        return swapped

    async def set_plan(
        self,
        job_id: str,
        planned_items: List[Dict[str, str]],
        total_chunks: int
    ) -> None:
        """Freeze the work plan and chunk bookkeeping on the job."""
        await self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.planned_items.is_(None))
            .values(
                planned_items=planned_items,
                total_items=len(planned_items),
                total_chunks=total_chunks,
                updated_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def update_phase(self, job_id: str, phase: ImportPhase, details: Optional[str] = None) -> None:
        """Record the current phase and its human readable details."""
        await self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(current_phase=phase.value, phase_details=details, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def add_backup_table(self, job_id: str, backup_ref: str) -> None:
        """Append a backup reference; existing references are kept."""
        job = await self.get_by_id(job_id)
        if not job:
            return
        job.backup_tables = list(job.backup_tables or []) + [backup_ref]
        self.session.add(job)
        await self.session.commit()

    async def commit_chunk(
        self,
        job_id: str,
        chunk_index: int,
        successful: int,
        failed: int,
        errors: List[Dict[str, Any]],
        advance: bool = True,
        runner_id: Optional[str] = None
    ) -> Optional[ImportJob]:
        """
        Fold one chunk's results into the job counters.

        Counters only ever grow and the error log is only appended to. With
        ``advance`` the persisted ``current_chunk`` moves to
        ``chunk_index + 1``; callers commit chunks strictly in index order.

        The write only lands while the job is running and, when
        ``runner_id`` is given, still leased to that runner. The check and
        the write are one conditional update.

        Returns:
            ImportJob: Updated job, or None if it is missing, not running or
            held by another runner
        """
        job = await self.get_by_id(job_id)
        if not job or job.status != ImportJobStatus.RUNNING:
            return None
        if runner_id is not None and job.runner_id != runner_id:
            return None

        conditions = [ImportJob.id == job_id, ImportJob.status == ImportJobStatus.RUNNING]
        if runner_id is not None:
            conditions.append(ImportJob.runner_id == runner_id)

        values: Dict[str, Any] = {
            "successful_items": ImportJob.successful_items + successful,
            "failed_items": ImportJob.failed_items + failed,
            "processed_items": ImportJob.successful_items + ImportJob.failed_items + successful + failed,
            "updated_at": datetime.now(timezone.utc),
        }
        if errors:
            values["error_log"] = list(job.error_log or []) + list(errors)
        if advance:
            values["current_chunk"] = max(job.current_chunk, chunk_index + 1)

        result = await self.session.execute(
            update(ImportJob)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount != 1:
            logger.warning(f"Import job {job_id}: chunk {chunk_index} not committed, runner lost the job")
            return None

        await self.session.refresh(job)
        return job

    async def mark_rolled_back(self, job_id: str) -> None:
        """Stamp the job with the time its writes were reverted."""
        await self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(rolled_back_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
