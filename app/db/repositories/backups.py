"""
Backup repository for pre-image rows.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

import logging
from app.db.repositories.base import BaseRepository
from app.models.backup import BackupRecord
from app.utils.datetime import utc_now

logger = logging.getLogger("fleetsync.db")


class BackupRepository(BaseRepository[BackupRecord, Any, Any]):
    """Repository for backup pre-images."""

    def __init__(self, session: AsyncSession):
        """Initialize with session and BackupRecord model."""
        super().__init__(session=session, model=BackupRecord)

    async def add_records(self, records: List[Dict[str, Any]]) -> int:
        """Insert pre-image rows in one transaction."""
        for data in records:
            self.session.add(BackupRecord(**data))
        await self.session.commit()
        return len(records)

    async def get_records(self, backup_ref: str) -> List[BackupRecord]:
        """All pre-images stored under a backup reference, in insertion order."""
        result = await self.session.execute(
            select(BackupRecord)
            .where(BackupRecord.backup_ref == backup_ref)
            .order_by(BackupRecord.created_at, BackupRecord.entity_type, BackupRecord.entity_key)
        )
        return list(result.scalars().all())

    async def count_records(self, backup_ref: str) -> int:
        result = await self.session.execute(
            select(func.count(BackupRecord.id)).where(BackupRecord.backup_ref == backup_ref)
        )
        return result.scalar() or 0

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        """Remove pre-images past their retention date."""
        now = now or utc_now()
        result = await self.session.execute(
            delete(BackupRecord).where(
                BackupRecord.expires_at.is_not(None),
                BackupRecord.expires_at < now
            )
        )
        await self.session.commit()
        return result.rowcount
