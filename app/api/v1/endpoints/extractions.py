# app/api/v1/endpoints/extractions.py
"""
Read-only GP51 vehicle extraction endpoints.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from app.api.v1.dependencies import get_current_admin, get_extractions, get_rate_limiter
from app.schemas.extraction_job import ExtractionJobResponse, StartExtractionRequest
from app.services.extraction.service import ExtractionService

router = APIRouter()
logger = logging.getLogger("fleetsync.api.extractions")


@router.post("", response_model=ExtractionJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_extraction(
    request: StartExtractionRequest,
    admin: Dict[str, Any] = Depends(get_current_admin),
    extractions: ExtractionService = Depends(get_extractions),
    rate_limiter = Depends(get_rate_limiter),
):
    """Start extracting the vehicles of the given accounts."""
    await rate_limiter.check_rate_limit(admin["sub"], "start_extraction")
    job = await extractions.start(request.job_name, request.usernames)
    logger.info(f"Admin {admin['sub']} started extraction {job.id}")
    return job


@router.get("/{job_id}", response_model=ExtractionJobResponse)
async def get_extraction(
    job_id: str,
    admin: Dict[str, Any] = Depends(get_current_admin),
    extractions: ExtractionService = Depends(get_extractions),
):
    """Get an extraction job with its extracted data."""
    return await extractions.get_job(job_id)
