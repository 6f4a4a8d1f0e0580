"""Base Repository Pattern.

Provides generic CRUD operations with async SQLAlchemy support.
All specialized repositories inherit from BaseRepository.
"""
from __future__ import annotations

from typing import Any, Generic, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.core.exceptions import NotFoundError
from campaign_dialer.db.base import Base

ModelT = TypeVar("ModelT", bound=Base)


def to_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class BaseRepository(Generic[ModelT]):
    """Generic base repository with async CRUD operations.

    Usage:
        class LeadRepository(BaseRepository[LeadModel]):
            not_found_error = LeadNotFoundError

            def __init__(self, session: AsyncSession):
                super().__init__(LeadModel, session)
    """

    not_found_error: type[NotFoundError] = NotFoundError

    def __init__(self, model: type[ModelT], session: AsyncSession):
        """Initialize repository with model class and session.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current database session."""
        return self._session

    # ========================================================================
    # Basic CRUD Operations
    # ========================================================================

    async def get(self, id: UUID | str) -> ModelT | None:
        """Get a single record by ID.

        Args:
            id: UUID or string primary key

        Returns:
            Model instance or None if not found
        """
        stmt = select(self._model).where(self._model.id == to_uuid(id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, id: UUID | str) -> ModelT:
        """Get a single record by ID, raising if not found.

        Raises:
            NotFoundError: (or the repository's subclass) if record not found
        """
        obj = await self.get(id)
        if obj is None:
            raise self.not_found_error(
                f"{self._model.__name__} with id {id} not found",
                details={"id": str(id)},
            )
        return obj

    async def get_multi(
        self,
        *,
        skip: int = 0,
        limit: int = 100,
    ) -> Sequence[ModelT]:
        """Get multiple records with pagination, newest first when timestamped."""
        stmt = select(self._model)
        if hasattr(self._model, "created_at"):
            stmt = stmt.order_by(self._model.created_at.desc())
        stmt = stmt.offset(skip).limit(limit)

        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(self, obj_in: ModelT) -> ModelT:
        """Create a new record.

        Args:
            obj_in: Model instance to create

        Returns:
            Created model instance with generated ID
        """
        self._session.add(obj_in)
        await self._session.flush()
        await self._session.refresh(obj_in)
        return obj_in

    async def create_multi(self, objs_in: list[ModelT]) -> list[ModelT]:
        """Create multiple records in batch."""
        self._session.add_all(objs_in)
        await self._session.flush()
        return objs_in

    async def update(self, id: UUID | str, obj_in: dict[str, Any]) -> ModelT | None:
        """Update a record by ID.

        Args:
            id: UUID or string primary key
            obj_in: Dictionary of fields to update

        Returns:
            Updated model instance or None if not found
        """
        db_obj = await self.get(id)
        if db_obj is None:
            return None

        for field, value in obj_in.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)

        await self._session.flush()
        return db_obj

    async def update_where(self, id: UUID | str, conditions: list[Any], **values: Any) -> bool:
        """Conditionally update one row.

        The row is only touched when every condition still holds at write
        time, so concurrent writers cannot clobber each other.

        Returns:
            True if the row was updated
        """
        stmt = (
            update(self._model)
            .where(self._model.id == to_uuid(id), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    # ========================================================================
    # Query Helpers
    # ========================================================================

    async def count(self, *conditions: Any) -> int:
        """Count records, optionally filtered by SQL conditions."""
        stmt = select(func.count()).select_from(self._model)
        if conditions:
            stmt = stmt.where(*conditions)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def refresh(self, obj: ModelT) -> ModelT:
        """Refresh an object from the database."""
        await self._session.refresh(obj)
        return obj
