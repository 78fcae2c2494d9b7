"""
Database model for GP51 import job tracking.
"""
import math
from enum import Enum

from sqlalchemy import Column, String, DateTime, JSON, Integer, Text, Enum as SQLEnum

from app.models.base import Base


class ImportJobStatus(str, Enum):
    """Import job status enum."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class ImportType(str, Enum):
    """Scope of an import run."""
    USERS_ONLY = "users_only"
    VEHICLES_ONLY = "vehicles_only"
    COMPLETE_SYSTEM = "complete_system"
    SELECTIVE = "selective"


class ImportPhase(str, Enum):
    """Coarse phase of an import run, reported by the progress poll."""
    INITIALIZATION = "initialization"
    PLANNING = "planning"
    BACKUP = "backup"
    CLEANUP = "cleanup"
    IMPORTING = "importing"
    FINALIZING = "finalizing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    ImportJobStatus.COMPLETED,
    ImportJobStatus.COMPLETED_WITH_ERRORS,
    ImportJobStatus.FAILED,
})

# Allowed status transitions. Terminal statuses have no outgoing edges.
ALLOWED_TRANSITIONS = {
    ImportJobStatus.PENDING: frozenset({ImportJobStatus.RUNNING, ImportJobStatus.FAILED}),
    ImportJobStatus.RUNNING: frozenset({
        ImportJobStatus.PAUSED,
        ImportJobStatus.COMPLETED,
        ImportJobStatus.COMPLETED_WITH_ERRORS,
        ImportJobStatus.FAILED,
    }),
    ImportJobStatus.PAUSED: frozenset({ImportJobStatus.RUNNING, ImportJobStatus.FAILED}),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.COMPLETED_WITH_ERRORS: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
}


def compute_total_chunks(total_items: int, chunk_size: int) -> int:
    """Number of chunks needed to cover total_items."""
    if total_items <= 0:
        return 0
    return math.ceil(total_items / chunk_size)


class ImportJob(Base):
    """Model for tracking GP51 bulk import jobs and their progress."""

    job_name = Column(String, nullable=False)
    import_type = Column(SQLEnum(ImportType), nullable=False, default=ImportType.COMPLETE_SYSTEM)

    # Status is only changed through compare-and-swap in the repository
    status = Column(SQLEnum(ImportJobStatus), nullable=False, default=ImportJobStatus.PENDING, index=True)
    current_phase = Column(String, nullable=False, default=ImportPhase.INITIALIZATION.value)
    phase_details = Column(Text, nullable=True)
    pause_reason = Column(String, nullable=True)
    # Lease of the runner allowed to commit chunks; set on every move into running
    runner_id = Column(String, nullable=True)

    # Progress counters
    total_items = Column(Integer, default=0, nullable=False)
    processed_items = Column(Integer, default=0, nullable=False)
    successful_items = Column(Integer, default=0, nullable=False)
    failed_items = Column(Integer, default=0, nullable=False)

    # Chunk bookkeeping
    current_chunk = Column(Integer, default=0, nullable=False)
    total_chunks = Column(Integer, default=0, nullable=False)
    chunk_size = Column(Integer, nullable=False)

    # Append-only list of {item_identifier, error, timestamp, step, attempts}
    error_log = Column(JSON, nullable=False, default=list)

    # Request options and frozen work plan
    options = Column(JSON, nullable=False, default=dict)
    planned_items = Column(JSON, nullable=True)

    # Backup references created before the first mutating chunk
    backup_tables = Column(JSON, nullable=False, default=list)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    rolled_back_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a terminal status."""
        return self.status in TERMINAL_STATUSES

    @property
    def overall_progress(self) -> float:
        """Fraction of planned items processed."""
        if not self.total_items:
            return 1.0 if self.status == ImportJobStatus.COMPLETED else 0.0
        return self.processed_items / self.total_items

    @property
    def error_count(self) -> int:
        """Get the total number of logged errors."""
        return len(self.error_log) if self.error_log else 0
