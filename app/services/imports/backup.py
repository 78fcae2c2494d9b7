# app/services/imports/backup.py
"""
Backup/Rollback Manager.

Before an import touches the fleet tables, the pre-image of every record the
plan (and the optional cleanup) can affect is stored under a backup
reference. Rollback replays those pre-images: rows that existed get their old
values back, rows the import created are removed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import DateTime

from app.core.config import settings
from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.db.repositories.backups import BackupRepository
from app.db.repositories.fleet import ENTITY_MODELS, FleetRepository
from app.db.repositories.import_jobs import ImportJobRepository
from app.db.session import RepositoryContext
from app.utils.datetime import expires_after, from_iso, is_expired, to_iso, utc_now
from app.utils.ids import generate_prefixed_id, IDPrefix

logger = logging.getLogger("fleetsync.imports.backup")

EntityKey = Tuple[str, str]


@dataclass
class RollbackResult:
    """Outcome of a rollback request."""
    success: bool
    backup_ref: Optional[str] = None
    records_restored: int = 0
    records_removed: int = 0
    dry_run: bool = False
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


def serialize_row(row: Any) -> Dict[str, Any]:
    """Column values of a fleet row in JSON-safe form."""
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.name)
        if isinstance(value, datetime):
            value = to_iso(value)
        data[column.name] = value
    return data


def deserialize_row(entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of serialize_row for the given entity type."""
    model, _ = ENTITY_MODELS[entity_type]
    values = dict(data)
    for column in model.__table__.columns:
        if isinstance(column.type, DateTime) and isinstance(values.get(column.name), str):
            values[column.name] = from_iso(values[column.name])
    return values


class BackupManager:
    """Creates backup references for jobs and rolls jobs back from them."""

    def __init__(self, repositories: RepositoryContext, retention_days: Optional[int] = None):
        self.repositories = repositories
        self.retention_days = retention_days or settings.BACKUP_RETENTION_DAYS

    async def snapshot(self, job_id: str, keys: List[EntityKey]) -> str:
        """
        Capture pre-images for ``keys`` and attach the reference to the job.

        Args:
            job_id: Job the backup belongs to
            keys: (entity_type, entity_key) pairs the job may touch

        Returns:
            str: New backup reference
        """
        backup_ref = generate_prefixed_id(IDPrefix.BACKUP)
        expires_at = expires_after(self.retention_days)

        unique_keys = list(dict.fromkeys(keys))
        by_type: Dict[str, List[str]] = {}
        for entity_type, entity_key in unique_keys:
            by_type.setdefault(entity_type, []).append(entity_key)

        async with self.repositories(FleetRepository) as fleet:
            existing = {
                entity_type: await fleet.get_entities(entity_type, entity_keys)
                for entity_type, entity_keys in by_type.items()
            }
            records = []
            for entity_type, entity_key in unique_keys:
                row = existing[entity_type].get(entity_key)
                records.append({
                    "backup_ref": backup_ref,
                    "job_id": job_id,
                    "entity_type": entity_type,
                    "entity_key": entity_key,
                    "existed": row is not None,
                    "pre_image": serialize_row(row) if row is not None else None,
                    "expires_at": expires_at,
                })

        async with self.repositories(BackupRepository) as backups:
            await backups.add_records(records)

        async with self.repositories(ImportJobRepository) as jobs:
            await jobs.add_backup_table(job_id, backup_ref)

        logger.info(f"Job {job_id}: backed up {len(records)} fleet records under {backup_ref}")
        return backup_ref

    async def rollback(self, job_id: str, dry_run: bool = False) -> RollbackResult:
        """
        Revert a terminal job's writes from its backup.

        Nothing is changed when the backup is missing or expired.

        Raises:
            NotFoundError: If the job does not exist
            InvalidTransitionError: If the job is not terminal yet
        """
        async with self.repositories(ImportJobRepository) as jobs:
            job = await jobs.get_by_id(job_id)
            if not job:
                raise NotFoundError(f"Import job {job_id} not found")
            if not job.is_terminal:
                raise InvalidTransitionError(
                    f"Import job {job_id} is {job.status.value}; only finished jobs can be rolled back"
                )
            backup_tables = list(job.backup_tables or [])
            already_rolled_back = job.rolled_back_at is not None

        if not backup_tables:
            logger.warning(f"Job {job_id}: rollback requested but no backup reference is recorded")
            return RollbackResult(success=False, dry_run=dry_run, error="No backup reference recorded for job")

        # The first reference holds the state from before the job's first write
        backup_ref = backup_tables[0]
        async with self.repositories(BackupRepository) as backups:
            records = await backups.get_records(backup_ref)

        if not records:
            logger.warning(f"Job {job_id}: backup {backup_ref} is missing")
            return RollbackResult(
                success=False, backup_ref=backup_ref, dry_run=dry_run,
                error=f"Backup {backup_ref} not found"
            )

        now = utc_now()
        if any(is_expired(r.expires_at, now) for r in records):
            logger.warning(f"Job {job_id}: backup {backup_ref} has expired")
            return RollbackResult(
                success=False, backup_ref=backup_ref, dry_run=dry_run,
                error=f"Backup {backup_ref} has expired"
            )

        result = RollbackResult(success=True, backup_ref=backup_ref, dry_run=dry_run)
        if already_rolled_back:
            result.warnings.append("Job was already rolled back; pre-images are applied again")

        async with self.repositories(FleetRepository) as fleet:
            for record in records:
                if record.existed:
                    if not dry_run:
                        await fleet.restore_entity(
                            record.entity_type, deserialize_row(record.entity_type, record.pre_image)
                        )
                    result.records_restored += 1
                else:
                    if dry_run:
                        exists = await fleet.get_entity(record.entity_type, record.entity_key) is not None
                    else:
                        exists = await fleet.delete_entity(record.entity_type, record.entity_key)
                    if exists:
                        result.records_removed += 1

        if dry_run:
            logger.info(
                f"Job {job_id}: rollback dry run would restore {result.records_restored} "
                f"and remove {result.records_removed} records"
            )
            return result

        async with self.repositories(ImportJobRepository) as jobs:
            await jobs.mark_rolled_back(job_id)

        logger.info(
            f"Job {job_id}: rolled back from {backup_ref}, restored {result.records_restored}, "
            f"removed {result.records_removed}"
        )
        return result

    async def purge_expired(self) -> int:
        """Delete backup rows past their retention date."""
        async with self.repositories(BackupRepository) as backups:
            removed = await backups.delete_expired()
        if removed:
            logger.info(f"Purged {removed} expired backup records")
        return removed
