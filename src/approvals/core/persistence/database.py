"""Async engine and session factory for the decision log and session store.

The engine keeps deciding without a database; hosts call init_database()
only when they want audit entries and session summaries to outlive the
process.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base


AsyncSessionFactory: Optional[async_sessionmaker[AsyncSession]] = None


async def init_database(db_url: str = "sqlite+aiosqlite:///approvals.db") -> AsyncEngine:
    """Initialize async database engine and create all tables.

    Args:
        db_url: SQLAlchemy database URL (default: SQLite in current directory)

    Returns:
        AsyncEngine instance
    """
    engine = create_async_engine(db_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the global async session factory.

    expire_on_commit=False keeps loaded rows usable after the commit that
    get_session() issues on exit.
    """
    global AsyncSessionFactory

    AsyncSessionFactory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return AsyncSessionFactory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error.

    Raises:
        RuntimeError: If create_session_factory() has not been called
    """
    if AsyncSessionFactory is None:
        raise RuntimeError(
            "Session factory not initialized. Call create_session_factory() first."
        )

    async with AsyncSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

