"""Database Session Management.

Provides:
- ``Database``: the engine/session-factory registry created once at startup
  and passed by reference to every component
- Transaction context manager
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from campaign_dialer.db.base import Base
from campaign_dialer.log import get_logger

if TYPE_CHECKING:
    from campaign_dialer.config import DatabaseSettings

log = get_logger(__name__)


def _build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine with pooling suited to the backend.

    Connection pooling:
        - SQLite in-memory: one shared connection
        - SQLite file: default pool, ``check_same_thread`` disabled
        - PostgreSQL: pool_size=5, max_overflow=10, pool_timeout=30
    """
    if "sqlite" in url:
        if ":memory:" in url:
            return create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )

        if "///" in url:
            Path(url.split("///")[1]).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )

    if "postgresql" in url or "postgres" in url:
        return create_async_engine(
            url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )

    return create_async_engine(
        url,
        echo=echo,
        pool_size=3,
        max_overflow=5,
        pool_timeout=30,
        pool_pre_ping=True,
    )


class Database:
    """Connection registry shared by all components.

    Usage:
        db = Database("sqlite+aiosqlite:///:memory:")
        await db.create_all()

        async with db.session() as session:
            session.add(obj)
        # committed here, rolled back on exception
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self._engine = _build_engine(url, echo=echo)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> Database:
        return cls(settings.url, echo=settings.echo)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional session: commit on success, rollback on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create all tables. Safe to call multiple times."""
        import campaign_dialer.db.models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("Database initialized", url=self.url.split("@")[-1])

    async def drop_all(self) -> None:
        """Drop all tables. Only use in testing."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

