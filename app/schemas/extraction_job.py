"""
Pydantic schemas for extraction job API operations.
"""
from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.extraction_job import ExtractionStatus
from app.schemas.import_job import ErrorLogEntry


class StartExtractionRequest(BaseModel):
    """Schema for starting a vehicle extraction."""
    model_config = ConfigDict(populate_by_name=True)

    job_name: str = Field(..., alias="jobName", min_length=1)
    usernames: List[str] = Field(..., min_length=1, description="GP51 accounts to extract")

    @field_validator("usernames")
    def strip_usernames(cls, v: List[str]) -> List[str]:
        cleaned = [u.strip() for u in v if u and u.strip()]
        if not cleaned:
            raise ValueError("At least one username is required")
        return cleaned


class ExtractionJobResponse(BaseModel):
    """Schema for extraction job response."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_name: str
    status: ExtractionStatus
    total_accounts: int
    processed_accounts: int
    successful_accounts: int
    failed_accounts: int
    total_vehicles: int
    error_log: List[ErrorLogEntry] = Field(default_factory=list)
    extracted_data: Optional[List[Dict[str, Any]]] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
