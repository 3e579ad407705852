from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.config import Settings

# Base class for models
Base = declarative_base()

engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker] = None


def create_engine_for(settings: Settings) -> AsyncEngine:
    kwargs = {"echo": settings.DEBUG}
    # SQLite (used in tests) has no connection pool sizing
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    return create_async_engine(settings.DATABASE_URL, **kwargs)


async def init_db(settings: Settings) -> None:
    """Create the engine and tables. No-op when persistence is disabled."""
    global engine, async_session_maker
    if not settings.persistence_enabled or engine is not None:
        return

    engine = create_engine_for(settings)
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """Dependency for getting async database session"""
    if async_session_maker is None:
        raise RuntimeError("Database is not configured")
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def close_db():
    """Close database engine"""
    global engine, async_session_maker
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session_maker = None
