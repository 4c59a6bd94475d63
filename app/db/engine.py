# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# One async SQLAlchemy engine (asyncpg driver) per process, plus the
# session helpers built on it.
#
# Sessions come in two flavours:
#
#   - Per request: `get_async_session` is a FastAPI dependency. Route code
#     (through CredentialStore) works inside it; it commits when the handler
#     returns and rolls back if the handler raises.
#   - Self-managed: `async_session_factory()` used directly by the memory
#     store, the usage recorder (which runs after the response went out)
#     and the service-account resolver. Those callers commit themselves.
#
# Storage failures leave this layer as DatabaseError (translate_db_errors).
# =============================================================================

import logging
from collections.abc import AsyncGenerator, Iterator
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.errors import DatabaseError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo: logs all SQL statements when debug is on.
# - command_timeout: asyncpg aborts any statement running longer than this,
#   which surfaces as a DatabaseError instead of a hung request.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    connect_args={"command_timeout": settings.db_command_timeout_seconds},
)

# ---------------------------------------------------------------------------
# Session Factory
# ---------------------------------------------------------------------------
# expire_on_commit=False: loaded rows stay readable after commit. Without
# this, touching an attribute after commit triggers a lazy refresh, which
# fails in async context outside of a session.
# ---------------------------------------------------------------------------
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@contextmanager
def translate_db_errors(operation: str) -> Iterator[None]:
    """
    Re-raise driver and SQLAlchemy failures as DatabaseError.

    Timeouts from asyncpg arrive as TimeoutError (an OSError subclass on
    current Pythons), connection drops as OSError.
    """
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database operation '%s' failed: %s", operation, e)
        raise DatabaseError(f"Database operation failed: {operation}") from e


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session: committed after the handler returns, rolled
    back if it raises.

    Wrapped by app.api.deps.get_credential_store:
        store: CredentialStore = Depends(get_credential_store)
    """
    async with async_session_factory() as session:
        try:
            yield session
            with translate_db_errors("commit"):
                await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """
    Create the pgvector extension and every table that does not exist yet.

    Called from the application lifespan when `db_auto_create_schema` is on.
    """
    from app.db.models import Base

    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def dispose_engine() -> None:
    await async_engine.dispose()
