"""
Database session management.

WHY: Async database sessions are required for FastAPI's async/await pattern.
Each request (and so each webhook delivery) gets exactly one session, which
is the transaction boundary for every subscription transition it performs.
"""

from typing import Any, AsyncGenerator, Dict
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from scribe.core.config import settings


def _engine_options(url: str) -> Dict[str, Any]:
    """
    Pool options for the configured database.

    WHY: SQLite (local development) uses a single-connection pool that
    rejects pool_size/max_overflow.
    """
    options: Dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20)
    return options


engine = create_async_engine(
    settings.async_database_url,
    **_engine_options(settings.async_database_url),
)

# WHY: expire_on_commit=False keeps returned rows readable after the route
# commits; autoflush=False gives explicit control over when SQL is sent.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session.

    WHY: Routes commit explicitly; anything still pending when the route
    returns is committed here, and any exception rolls the whole request
    back so a half-applied transition is never persisted.

    Yields:
        AsyncSession: Database session for the request
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
