# app/services/imports/writer.py
"""
Applies validated GP51 records to the local fleet tables.
"""
from datetime import datetime, timezone
from typing import Any

from app.db.repositories.fleet import FleetRepository
from app.db.session import RepositoryContext


class FleetRecordWriter:
    """Upserts users and vehicles keyed by their GP51 identifiers."""

    def __init__(self, repositories: RepositoryContext):
        self.repositories = repositories

    async def apply(self, item: Any, record: Any) -> None:
        """Write one fetched record. Re-applying the same record is harmless."""
        if item.kind == "user":
            fields = record.to_fleet_fields()
        else:
            fields = record.to_fleet_fields(synced_at=datetime.now(timezone.utc))

        async with self.repositories(FleetRepository) as repo:
            await repo.upsert_entity(item.kind, fields)
