# app/services/extraction/service.py
"""
Read-only vehicle extraction over a list of GP51 accounts.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.core.exceptions import ExternalPlatformError, FleetSyncException, NotFoundError
from app.db.repositories.extraction_jobs import ExtractionJobRepository
from app.db.session import RepositoryContext
from app.models.extraction_job import ExtractionJob, ExtractionStatus
from app.schemas.import_job import ErrorLogEntry
from app.services.event_bus.bus import EventBus, get_event_bus
from app.services.event_bus.events import EventType
from app.services.health.monitor import HealthMonitor

logger = logging.getLogger("fleetsync.extraction")

# Counters are written back every this many accounts
PROGRESS_INTERVAL = 5


class ExtractionService:
    """Lists the devices of each account and stores them on an extraction job."""

    def __init__(
        self,
        repositories: RepositoryContext,
        client: Any,
        health: HealthMonitor,
        event_bus: Optional[EventBus] = None,
    ):
        self.repositories = repositories
        self.client = client
        self.health = health
        self.event_bus = event_bus or get_event_bus()
        self._tasks: Dict[str, asyncio.Task] = {}

    async def start(self, job_name: str, usernames: List[str]) -> ExtractionJob:
        """Create a processing job and run it in the background."""
        async with self.repositories(ExtractionJobRepository) as repo:
            job = await repo.create_job(job_name=job_name, total_accounts=len(usernames))

        task = asyncio.create_task(self.run(job.id, usernames))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        logger.info(f"Started extraction {job.id} over {len(usernames)} accounts")
        return job

    async def wait_for_job(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def get_job(self, job_id: str) -> ExtractionJob:
        async with self.repositories(ExtractionJobRepository) as repo:
            job = await repo.get_by_id(job_id)
        if not job:
            raise NotFoundError(f"Extraction job {job_id} not found")
        return job

    async def run(self, job_id: str, usernames: List[str]) -> None:
        """
        Extract every account in order.

        A failed account is logged on the job and the run moves on; the job
        only fails when no account could be read. Anything else that breaks
        the run fails the job, keeping what was extracted so far.

        Never raises except on cancellation.
        """
        error_log: List[Dict[str, Any]] = []
        extracted: List[Dict[str, Any]] = []
        try:
            await self._run(job_id, usernames, error_log, extracted)
        except asyncio.CancelledError:
            logger.warning(f"Extraction {job_id} was cancelled")
            raise
        except Exception as e:
            logger.error(f"Extraction {job_id} failed unexpectedly: {e}", exc_info=True)
            error_log.append(ErrorLogEntry(
                item_identifier=job_id,
                item_kind="job",
                error=str(e),
                error_kind="unexpected",
                timestamp=datetime.now(timezone.utc),
                step="extract",
                attempts=1,
            ).to_record())
            try:
                async with self.repositories(ExtractionJobRepository) as repo:
                    await repo.finish(job_id, ExtractionStatus.FAILED, error_log, extracted)
            except FleetSyncException as store_error:
                logger.error(f"Could not mark extraction {job_id} failed: {store_error.message}")
                return
            await self.event_bus.publish(EventType.EXTRACTION_COMPLETED, {
                "job_id": job_id,
                "status": ExtractionStatus.FAILED.value,
                "error": str(e),
            })

    async def _run(
        self,
        job_id: str,
        usernames: List[str],
        error_log: List[Dict[str, Any]],
        extracted: List[Dict[str, Any]]
    ) -> None:
        processed = successful = failed = total_vehicles = 0
        for username in usernames:
            started = time.monotonic()
            try:
                devices = await self.client.list_account_devices(username)
            except ExternalPlatformError as e:
                latency = (time.monotonic() - started) * 1000
                self.health.record_outcome(False, latency, e.error_kind)
                failed += 1
                error_log.append(ErrorLogEntry(
                    item_identifier=username,
                    item_kind="user",
                    error=e.message,
                    error_kind=e.error_kind,
                    timestamp=datetime.now(timezone.utc),
                    step="extract",
                    attempts=1,
                ).to_record())
                logger.warning(f"Extraction {job_id}: account {username} failed: {e.message}")
            else:
                self.health.record_outcome(True, (time.monotonic() - started) * 1000)
                successful += 1
                total_vehicles += len(devices)
                extracted.append({
                    "username": username,
                    "vehicles": [device.model_dump() for device in devices],
                })
            processed += 1

            if processed % PROGRESS_INTERVAL == 0:
                async with self.repositories(ExtractionJobRepository) as repo:
                    await repo.update_progress(job_id, processed, successful, failed, total_vehicles)

        status = ExtractionStatus.FAILED if usernames and successful == 0 else ExtractionStatus.COMPLETED
        async with self.repositories(ExtractionJobRepository) as repo:
            await repo.update_progress(job_id, processed, successful, failed, total_vehicles)
            await repo.finish(job_id, status, error_log, extracted)

        logger.info(
            f"Extraction {job_id} {status.value}: {successful}/{processed} accounts, {total_vehicles} vehicles"
        )
        await self.event_bus.publish(EventType.EXTRACTION_COMPLETED, {
            "job_id": job_id,
            "status": status.value,
            "successful_accounts": successful,
            "failed_accounts": failed,
            "total_vehicles": total_vehicles,
        })


# Singleton instance
_extraction_service = None

def get_extraction_service() -> ExtractionService:
    """Get the process-wide extraction service."""
    global _extraction_service
    if _extraction_service is None:
        from app.db.session import get_repository_context
        from app.services.gp51.client import get_gp51_client
        from app.services.health.monitor import get_health_monitor

        _extraction_service = ExtractionService(
            repositories=get_repository_context,
            client=get_gp51_client(),
            health=get_health_monitor(),
        )
    return _extraction_service
