"""
Import all models here to ensure they are registered with SQLAlchemy.
"""
# Import Base
from app.models.base import Base

# Import pipeline models
from app.models.import_job import ImportJob
from app.models.extraction_job import ExtractionJob
from app.models.backup import BackupRecord

# Fleet records
from app.models.fleet import FleetUser, Vehicle

# This allows alembic to auto-discover all models when creating migrations
