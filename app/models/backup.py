"""
Pre-image rows captured before an import mutates local fleet records.
"""
from sqlalchemy import Column, String, DateTime, Boolean, JSON, UniqueConstraint

from app.models.base import Base


class BackupRecord(Base):
    """One pre-image of one fleet record, grouped under a backup reference."""

    __table_args__ = (
        UniqueConstraint("backup_ref", "entity_type", "entity_key", name="uq_backup_entity"),
    )

    backup_ref = Column(String, nullable=False, index=True)
    job_id = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)  # "user" or "vehicle"
    entity_key = Column(String, nullable=False)
    existed = Column(Boolean, nullable=False, default=False)
    pre_image = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
