"""
Base repository shared by the job, backup and fleet repositories.
"""
from typing import Any, Dict, Generic, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


class BaseRepository(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """
    Session-scoped access to one primary model.

    Every write commits immediately; a repository lives for exactly one
    ``RepositoryContext`` block, so there is no unit of work spanning calls.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        self.session = session
        self.model = model

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Primary-key lookup; None when absent."""
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def save(self, db_obj: ModelType) -> ModelType:
        """Add, commit and refresh a row."""
        self.session.add(db_obj)
        await self.session.commit()
        await self.session.refresh(db_obj)
        return db_obj

    async def create(self, *, obj_in: Dict[str, Any]) -> ModelType:
        """
        Insert a row built from ``obj_in``.

        Callers supply the id; job ids carry a type prefix.
        """
        return await self.save(self.model(**obj_in))

    async def update(self, *, id: str, obj_in: Dict[str, Any]) -> Optional[ModelType]:
        """
        Set the given columns on a row.

        Unknown keys are ignored. Returns None when the row does not exist.
        """
        db_obj = await self.get_by_id(id)
        if not db_obj:
            return None

        for field, value in obj_in.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)

        return await self.save(db_obj)
