"""Base repository with common CRUD operations.

Usage:
    from facturabot.db.repositories.base import BaseRepository

    class PlanRepository(BaseRepository[SubscriptionPlan, int]):
        pass

    repo = PlanRepository(db_session)
    plan = await repo.get(plan_id)
"""

from collections.abc import Sequence
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from facturabot.db.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)
PKType = TypeVar("PKType", bound=UUID | int | str)


class BaseRepository(Generic[ModelType, PKType]):
    """Generic repository for SQLAlchemy models.

    Type Parameters:
        ModelType: The SQLAlchemy model class
        PKType: The type of the primary key (UUID, int, or str)
    """

    model: type[ModelType]

    def __init__(self, db: AsyncSession):
        self.db = db

    def __init_subclass__(cls, **kwargs):
        """Extract model type from generic parameter."""
        super().__init_subclass__(**kwargs)
        for base in getattr(cls, "__orig_bases__", []):
            args = getattr(base, "__args__", None)
            if args and len(args) >= 1:
                first_arg = args[0]
                if isinstance(first_arg, type) and issubclass(first_arg, Base):
                    cls.model = first_arg
                    break

    async def get(self, pk: PKType) -> ModelType | None:
        """Get a single record by primary key."""
        return await self.db.get(self.model, pk)

    async def count(self) -> int:
        """Count total records."""
        pk_col = self.model.__mapper__.primary_key[0]
        result = await self.db.execute(select(func.count(pk_col)))
        return result.scalar() or 0

    async def create(self, obj: ModelType, *, commit: bool = True) -> ModelType:
        """Create a new record.

        Args:
            obj: Model instance to create
            commit: Whether to commit the transaction; otherwise only flush
        """
        self.db.add(obj)
        if commit:
            await self.db.commit()
            await self.db.refresh(obj)
        else:
            await self.db.flush()
        return obj

    async def create_many(
        self, objs: Sequence[ModelType], *, commit: bool = True
    ) -> list[ModelType]:
        """Create multiple records."""
        for obj in objs:
            self.db.add(obj)

        if commit:
            await self.db.commit()
            for obj in objs:
                await self.db.refresh(obj)
        else:
            await self.db.flush()

        return list(objs)

    async def update(
        self, obj: ModelType, updates: dict[str, Any], *, commit: bool = True
    ) -> ModelType:
        """Update a record with given values."""
        for field, value in updates.items():
            if hasattr(obj, field):
                setattr(obj, field, value)

        if commit:
            await self.db.commit()
            await self.db.refresh(obj)
        else:
            await self.db.flush()

        return obj
