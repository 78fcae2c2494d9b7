# app/api/v1/endpoints/imports.py
"""
GP51 bulk import endpoints.

Starting an import returns the job id immediately; the run continues in the
background and callers poll the job record or its progress snapshot.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.api.v1.dependencies import get_current_admin, get_orchestrator, get_rate_limiter
from app.models.import_job import ImportJobStatus
from app.schemas.import_job import (
    ErrorLogEntry,
    ImportJobResponse,
    ImportJobSummary,
    ImportProgress,
    RollbackResponse,
    StartImportRequest,
    StartImportResponse,
)
from app.services.imports.orchestrator import ImportOrchestrator
from app.utils.pagination import PaginatedResponse, PaginationParams, paginate_response

router = APIRouter()
logger = logging.getLogger("fleetsync.api.imports")


@router.post("", response_model=StartImportResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    request: StartImportRequest,
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
    rate_limiter = Depends(get_rate_limiter),
):
    """
    Start a GP51 import.

    Returns 202 with the job id as soon as the pending job row exists.
    """
    await rate_limiter.check_rate_limit(admin["sub"], "start_import")

    job_id = await orchestrator.start_import(request)
    logger.info(f"Admin {admin['sub']} started import {job_id} ({request.import_type.value})")
    return StartImportResponse(job_id=job_id, status=ImportJobStatus.PENDING)


@router.get("", response_model=PaginatedResponse[ImportJobSummary])
async def list_imports(
    status: Optional[ImportJobStatus] = Query(None, description="Filter by job status"),
    pagination: PaginationParams = Depends(),
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """List import jobs, newest first."""
    jobs, total = await orchestrator.list_jobs(status=status, skip=pagination.skip, limit=pagination.limit)
    return paginate_response(
        items=[ImportJobSummary.model_validate(job) for job in jobs],
        total=total,
        pagination=pagination,
    )


@router.get("/{job_id}", response_model=ImportJobResponse)
async def get_import(
    job_id: str,
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Get the full job record."""
    return await orchestrator.get_job(job_id)


@router.get("/{job_id}/progress", response_model=ImportProgress, response_model_by_alias=True)
async def get_import_progress(
    job_id: str,
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Poll the progress snapshot of a job."""
    return await orchestrator.get_progress(job_id)


@router.get("/{job_id}/errors", response_model=List[ErrorLogEntry])
async def get_import_errors(
    job_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Error log entries in the order they were written."""
    job = await orchestrator.get_job(job_id)
    return [ErrorLogEntry.model_validate(entry) for entry in (job.error_log or [])[skip:skip + limit]]


@router.post("/{job_id}/pause", response_model=ImportJobResponse)
async def pause_import(
    job_id: str,
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Pause a running job after its in-flight work drains."""
    logger.info(f"Admin {admin['sub']} paused import {job_id}")
    return await orchestrator.pause_job(job_id)


@router.post("/{job_id}/resume", response_model=ImportJobResponse)
async def resume_import(
    job_id: str,
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Resume a paused job from its last committed chunk."""
    logger.info(f"Admin {admin['sub']} resumed import {job_id}")
    return await orchestrator.resume_job(job_id)


@router.post("/{job_id}/abandon", response_model=ImportJobResponse)
async def abandon_import(
    job_id: str,
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Give up on a paused job."""
    logger.info(f"Admin {admin['sub']} abandoned import {job_id}")
    return await orchestrator.abandon_job(job_id)


@router.post("/{job_id}/rollback", response_model=RollbackResponse)
async def rollback_import(
    job_id: str,
    dry_run: bool = Query(False, description="Only report what would be reverted"),
    admin: Dict[str, Any] = Depends(get_current_admin),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Revert a finished job's writes from its backup."""
    result = await orchestrator.rollback_job(job_id, dry_run=dry_run)
    return RollbackResponse(
        success=result.success,
        backup_ref=result.backup_ref,
        records_restored=result.records_restored,
        records_removed=result.records_removed,
        dry_run=result.dry_run,
        warnings=result.warnings,
        error=result.error,
    )
