"""
Database session management.

WHY: Async database sessions are required for FastAPI's async/await pattern.
The reconciler and the sweep open their own short sessions from the session
factory, one transaction per provider snapshot, so the factory is exposed
alongside the request-scoped dependency.
"""

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from entitlement_engine.core.config import settings


# WHY: pool_pre_ping recycles stale connections in long-running processes
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
)

# expire_on_commit=False prevents lazy-loading issues after commit.
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

    WHY: Each request gets its own session. Commit on success and rollback
    on error keep read-modify-write endpoints (trial start) atomic.

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


def get_session_factory() -> async_sessionmaker:
    """
    Dependency returning the session factory.

    WHY: Reconciliation owns its transaction boundaries (and retries a lost
    insert race in a fresh transaction), so it takes a factory rather than a
    request session. Tests override this with a factory bound to SQLite.
    """
    return AsyncSessionLocal
