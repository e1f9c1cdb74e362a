"""
Database configuration and session management.
Uses SQLAlchemy async engine (asyncpg on PostgreSQL, aiosqlite in tests).
"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from app.config import settings
from app.models.base import Base


def build_engine(database_url: str, **kwargs):
    """Create an async engine; pool sizing only applies to server databases."""
    options = {
        "echo": False,  # Disable SQLAlchemy query logging
        "pool_pre_ping": True,
    }
    if database_url.startswith("sqlite"):
        # Concurrent writers wait on the database lock instead of failing
        options["connect_args"] = {"timeout": 30}
    else:
        options["pool_size"] = 10
        options["max_overflow"] = 20
    options.update(kwargs)
    return create_async_engine(database_url, **options)


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url)

# Create async session factory
AsyncSessionLocal = build_session_factory(engine)


async def get_db() -> AsyncSession:
    """
    Dependency for FastAPI routes to get database session.
    Usage: db: AsyncSession = Depends(get_db)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind=None):
    """
    Initialize database: create tables.
    Called on application startup (and by the test suite).
    """
    import app.models  # noqa: F401  registers every model on Base.metadata

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
