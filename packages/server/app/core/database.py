"""
Store access for the membership core.

One async engine per process. A request handler gets a session whose
transaction commits when the handler returns and rolls back when it raises;
the ARQ jobs and the admin script get the same unit of work through
``get_session_context``. The lifecycle service's conditional updates assume
every caller runs in its own session.

The production schema is owned by the Alembic revisions in ``alembic/``.
``create_schema`` builds the same tables straight from the models, for
development databases (``ATOM_CREATE_SCHEMA_ON_STARTUP``) and the admin
bootstrap script.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from app.core.config import get_settings

settings = get_settings()
log = structlog.get_logger()

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# Rows stay readable after commit: services return them to the routers
async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_schema() -> None:
    """Create any missing membership tables and indexes from the models."""
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    log.info("database.schema_ensured", tables=sorted(SQLModel.metadata.tables))


async def ping() -> None:
    """Raise if the store does not answer; used by `/ready`."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work outside a request: commit on success, roll back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: the request's unit of work."""
    async with get_session_context() as session:
        yield session
