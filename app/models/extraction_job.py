"""
Database model for read-only GP51 vehicle extraction jobs.
"""
from enum import Enum

from sqlalchemy import Column, String, DateTime, JSON, Integer, Enum as SQLEnum

from app.models.base import Base


class ExtractionStatus(str, Enum):
    """Extraction job status enum."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExtractionJob(Base):
    """Model for tracking a vehicle extraction over a set of GP51 accounts."""

    job_name = Column(String, nullable=False)
    status = Column(SQLEnum(ExtractionStatus), nullable=False, default=ExtractionStatus.PROCESSING, index=True)

    total_accounts = Column(Integer, default=0, nullable=False)
    processed_accounts = Column(Integer, default=0, nullable=False)
    successful_accounts = Column(Integer, default=0, nullable=False)
    failed_accounts = Column(Integer, default=0, nullable=False)
    total_vehicles = Column(Integer, default=0, nullable=False)

    error_log = Column(JSON, nullable=False, default=list)
    extracted_data = Column(JSON, nullable=True)

    completed_at = Column(DateTime(timezone=True), nullable=True)
