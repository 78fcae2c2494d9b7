"""
Fleet repository for users and vehicles mirrored from GP51.
"""
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

import logging
from app.db.repositories.base import BaseRepository
from app.models.fleet import FleetUser, Vehicle

logger = logging.getLogger("fleetsync.db")

# entity type -> (model, natural key column)
ENTITY_MODELS = {
    "user": (FleetUser, "gp51_username"),
    "vehicle": (Vehicle, "gp51_device_id"),
}


class FleetRepository(BaseRepository[FleetUser, Any, Any]):
    """Repository for fleet users and vehicles, addressed by GP51 keys."""

    def __init__(self, session: AsyncSession):
        """Initialize with session and FleetUser as the primary model."""
        super().__init__(session=session, model=FleetUser)

    async def get_entity(self, entity_type: str, key: str) -> Optional[Any]:
        """
        Get a user or vehicle by its GP51 key.

        Args:
            entity_type: "user" or "vehicle"
            key: GP51 username or device id
        """
        model, key_column = ENTITY_MODELS[entity_type]
        result = await self.session.execute(
            select(model).where(getattr(model, key_column) == key)
        )
        return result.scalar_one_or_none()

    async def get_entities(self, entity_type: str, keys: List[str]) -> Dict[str, Any]:
        """Get many records of one type, keyed by GP51 key."""
        if not keys:
            return {}
        model, key_column = ENTITY_MODELS[entity_type]
        column = getattr(model, key_column)
        result = await self.session.execute(select(model).where(column.in_(keys)))
        return {getattr(row, key_column): row for row in result.scalars().all()}

    async def upsert_entity(self, entity_type: str, fields: Dict[str, Any]) -> Any:
        """
        Insert or update a record by its GP51 key.

        Args:
            entity_type: "user" or "vehicle"
            fields: Column values including the key column

        Returns:
            The stored record
        """
        model, key_column = ENTITY_MODELS[entity_type]
        record = await self.get_entity(entity_type, fields[key_column])

        if record is None:
            record = model(**fields)
        else:
            for field, value in fields.items():
                setattr(record, field, value)

        self.session.add(record)
        await self.session.commit()
        return record

    async def restore_entity(self, entity_type: str, pre_image: Dict[str, Any]) -> None:
        """Overwrite (or recreate) a record from a captured pre-image."""
        model, key_column = ENTITY_MODELS[entity_type]
        record = await self.get_entity(entity_type, pre_image[key_column])
        columns = {c.name for c in model.__table__.columns}
        values = {k: v for k, v in pre_image.items() if k in columns}

        if record is None:
            record = model(**values)
        else:
            for field, value in values.items():
                setattr(record, field, value)

        self.session.add(record)
        await self.session.flush()

    async def delete_entity(self, entity_type: str, key: str) -> bool:
        """Delete a record by GP51 key. Returns True if a row was removed."""
        model, key_column = ENTITY_MODELS[entity_type]
        result = await self.session.execute(
            delete(model).where(getattr(model, key_column) == key)
        )
        return result.rowcount > 0

    async def list_imported_keys(self, preserve_email: Optional[str] = None) -> List[Tuple[str, str]]:
        """
        Keys of every record that a previous GP51 import created.

        The user whose email equals ``preserve_email`` is left out.
        """
        user_query = select(FleetUser.gp51_username).where(FleetUser.is_gp51_imported.is_(True))
        if preserve_email:
            user_query = user_query.where(
                or_(FleetUser.email.is_(None), FleetUser.email != preserve_email.lower())
            )
        users = await self.session.execute(user_query)

        vehicles = await self.session.execute(
            select(Vehicle.gp51_device_id).where(Vehicle.is_gp51_synced.is_(True))
        )

        keys = [("user", username) for username in users.scalars().all()]
        keys.extend(("vehicle", device_id) for device_id in vehicles.scalars().all())
        return keys

    async def delete_keys(self, keys: List[Tuple[str, str]]) -> int:
        """Delete the given records in one transaction. Returns rows removed."""
        removed = 0
        for entity_type, key in keys:
            if await self.delete_entity(entity_type, key):
                removed += 1
        await self.session.commit()
        logger.info(f"Cleanup removed {removed} imported fleet records")
        return removed
