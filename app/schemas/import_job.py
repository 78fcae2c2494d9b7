"""
Pydantic schemas for import job-related API operations.
"""
from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.import_job import ImportJobStatus, ImportPhase, ImportType


class StartImportRequest(BaseModel):
    """Schema for the start-import operation."""
    model_config = ConfigDict(populate_by_name=True)

    import_type: ImportType = Field(..., alias="importType", description="Scope of the import")
    selected_usernames: Optional[List[str]] = Field(
        None, alias="selectedUsernames", description="GP51 usernames to import"
    )
    perform_cleanup: bool = Field(
        False, alias="performCleanup", description="Delete previously imported records first"
    )
    preserve_admin_email: Optional[str] = Field(
        None, alias="preserveAdminEmail", description="Admin account kept by cleanup"
    )
    batch_size: Optional[int] = Field(
        None, alias="batchSize", ge=1, le=1000, description="Chunk size override"
    )
    job_name: Optional[str] = Field(None, alias="jobName", description="Human readable job name")

    @field_validator("selected_usernames")
    def strip_usernames(cls, v):
        """Drop blanks and duplicates while keeping order."""
        if v is None:
            return v
        seen = []
        for username in v:
            username = username.strip()
            if username and username not in seen:
                seen.append(username)
        return seen

    @model_validator(mode="after")
    def check_selective(self):
        """Selective imports need at least one username."""
        if self.import_type == ImportType.SELECTIVE and not self.selected_usernames:
            raise ValueError("selectedUsernames is required for selective imports")
        return self


class StartImportResponse(BaseModel):
    """Schema returned immediately by the start-import operation."""
    job_id: str = Field(..., description="Import job ID")
    status: ImportJobStatus = Field(..., description="Status at creation time")


class ImportJobCreate(BaseModel):
    """Schema for creating a new import job row."""
    job_name: str
    import_type: ImportType
    chunk_size: int = Field(..., description="Items per chunk, checked when the job starts")
    options: Dict[str, Any] = Field(default_factory=dict)


class ImportJobUpdate(BaseModel):
    """Schema for updating non-status fields of an import job."""
    current_phase: Optional[str] = None
    phase_details: Optional[str] = None
    total_items: Optional[int] = None
    total_chunks: Optional[int] = None
    planned_items: Optional[List[Dict[str, str]]] = None

    @field_validator("total_items", "total_chunks")
    def validate_counts(cls, v):
        """Validate counts."""
        if v is not None and v < 0:
            raise ValueError("Count cannot be negative")
        return v


class ErrorLogEntry(BaseModel):
    """One terminally failed item, as persisted in the job's error log."""
    item_identifier: str = Field(..., description="GP51 username or device id")
    item_kind: Optional[str] = Field(None, description="user or vehicle")
    error: str = Field(..., description="Error message")
    error_kind: Optional[str] = Field(None, description="Classification of the failure")
    timestamp: datetime = Field(..., description="When the item was given up on")
    step: str = Field(..., description="Pipeline step that failed")
    attempts: int = Field(..., ge=1, description="Attempts made before giving up")

    @model_validator(mode="before")
    @classmethod
    def accept_username_key(cls, data: Any) -> Any:
        """Older rows keyed the identifier as 'username'."""
        if isinstance(data, dict) and "item_identifier" not in data and "username" in data:
            data = {**data, "item_identifier": data["username"]}
        return data

    def to_record(self) -> Dict[str, Any]:
        """Serialize for the JSON error_log column."""
        return self.model_dump(mode="json")


class ImportJobResponse(BaseModel):
    """Schema for import job response."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Import job ID")
    job_name: str = Field(..., description="Job name")
    import_type: ImportType = Field(..., description="Scope of the import")
    status: ImportJobStatus = Field(..., description="Import job status")
    current_phase: str = Field(..., description="Current phase")
    phase_details: Optional[str] = Field(None, description="Phase details")
    pause_reason: Optional[str] = Field(None, description="Why the job was paused")
    total_items: int
    processed_items: int
    successful_items: int
    failed_items: int
    current_chunk: int
    total_chunks: int
    chunk_size: int
    error_log: List[ErrorLogEntry] = Field(default_factory=list)
    backup_tables: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ImportJobSummary(BaseModel):
    """Schema for import job summary (lightweight response)."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_name: str
    import_type: ImportType
    status: ImportJobStatus
    processed_items: int
    total_items: int
    failed_items: int
    created_at: datetime


class ImportProgress(BaseModel):
    """Snapshot returned by the progress poll. Never persisted."""
    model_config = ConfigDict(populate_by_name=True)

    phase: ImportPhase
    phase_progress: float = Field(..., alias="phaseProgress", ge=0, le=1)
    overall_progress: float = Field(..., alias="overallProgress", ge=0, le=1)
    current_operation: str = Field(..., alias="currentOperation")
    details: Optional[Dict[str, Any]] = None


class RollbackResponse(BaseModel):
    """Outcome of a rollback request."""
    success: bool
    backup_ref: Optional[str] = None
    records_restored: int = 0
    records_removed: int = 0
    dry_run: bool = False
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
