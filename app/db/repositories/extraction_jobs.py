"""
ExtractionJob repository for database operations.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.repositories.base import BaseRepository
from app.models.extraction_job import ExtractionJob, ExtractionStatus
from app.utils.ids import generate_prefixed_id, IDPrefix


class ExtractionJobRepository(BaseRepository[ExtractionJob, Any, Any]):
    """ExtractionJob repository for database operations."""

    def __init__(self, session: AsyncSession):
        """Initialize with session and ExtractionJob model."""
        super().__init__(session=session, model=ExtractionJob)

    async def create_job(self, job_name: str, total_accounts: int) -> ExtractionJob:
        """Create a processing extraction job."""
        return await self.create(obj_in={
            "id": generate_prefixed_id(IDPrefix.EXTRACTION),
            "job_name": job_name,
            "total_accounts": total_accounts,
            "status": ExtractionStatus.PROCESSING,
            "error_log": [],
        })

    async def update_progress(
        self,
        job_id: str,
        processed: int,
        successful: int,
        failed: int,
        total_vehicles: int
    ) -> Optional[ExtractionJob]:
        """Update account counters."""
        return await self.update(id=job_id, obj_in={
            "processed_accounts": processed,
            "successful_accounts": successful,
            "failed_accounts": failed,
            "total_vehicles": total_vehicles,
            "updated_at": datetime.now(timezone.utc),
        })

    async def finish(
        self,
        job_id: str,
        status: ExtractionStatus,
        error_log: List[Dict[str, Any]],
        extracted_data: List[Dict[str, Any]]
    ) -> Optional[ExtractionJob]:
        """Store the final status, error log and extracted data."""
        job = await self.get_by_id(job_id)
        if not job:
            return None
        job.status = status
        job.error_log = list(error_log)
        job.extracted_data = list(extracted_data)
        job.completed_at = datetime.now(timezone.utc)
        return await self.save(job)
