"""Async database engine and session management."""

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from creditflow.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def create_engine(url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    """Create an async engine.

    SQLite connections get a busy timeout and foreign keys enabled so that
    local runs and tests behave like the production Postgres database.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", 30)
        engine = create_async_engine(url, echo=echo, connect_args=connect_args, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(url, echo=echo, pool_pre_ping=True, **kwargs)


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
async_session_maker = create_session_maker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that commits on success."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models(bind: AsyncEngine = engine) -> None:
    """Create all tables. Used by local runs and tests; production uses alembic."""
    # Import models so they register on Base.metadata
    from creditflow.modules.job import models as _job_models  # noqa: F401
    from creditflow.modules.ledger import models as _ledger_models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
