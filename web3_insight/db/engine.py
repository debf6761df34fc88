# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine (asyncpg driver) shared by the whole process. The
# engine owns the connection pool; sessions are short-lived and opened per
# index operation, never held across an embedding or LLM call.
#
# SESSION LIFECYCLE (index operations):
# 1. `async with async_session_factory() as session:`
# 2. execute statements
# 3. commit explicitly (writes); rollback happens on exception
# 4. the connection returns to the pool on exit
# =============================================================================

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from web3_insight.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo follows `debug`: logs every SQL statement during development.
# - pool_size / max_overflow bound concurrent connections across requests.
# - pool_pre_ping drops connections the server closed while idle.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

# ---------------------------------------------------------------------------
# Session Factory
# ---------------------------------------------------------------------------
# expire_on_commit=False: ORM objects stay readable after commit. Without it,
# touching `item.id` after commit would trigger a lazy refresh, which fails
# outside the session in async code.
# ---------------------------------------------------------------------------
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_database() -> None:
    """
    Create the pgvector extension, the knowledge table, and its indexes.

    Idempotent. Used by scripts/import_documents.py and, when
    CREATE_SCHEMA_ON_STARTUP is set, by the application lifespan.
    """
    # Imported here so that importing the engine never requires the models
    from web3_insight.db.models import Base

    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database schema ready (%s)", async_engine.url.render_as_string())


async def dispose_engine() -> None:
    """Close all pooled connections (application shutdown)."""
    await async_engine.dispose()
