"""
Database configuration and session management.
Uses SQLAlchemy async engine (PostgreSQL in production, SQLite for local runs).
"""
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from reviseflow.config import settings
from reviseflow.models.base import Base

_engine_kwargs = {
    "echo": False,  # Disable SQLAlchemy query logging
    "pool_pre_ping": True,
}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs.update(pool_size=10, max_overflow=20)

# Create async engine
engine = create_async_engine(settings.database_url, **_engine_kwargs)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


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


def dialect_insert(db: AsyncSession, model):
    """
    Return the dialect-specific INSERT construct for the session's backend.

    Both variants support on_conflict_do_nothing / on_conflict_do_update,
    which the counter store and webhook ledger rely on for atomic upserts.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")


async def init_db():
    """
    Initialize database: create tables.
    Called on application startup.
    """
    # Import models so they register on Base.metadata
    import reviseflow.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
