"""
OrderGuard — Database Layer
Async SQLAlchemy with asyncpg.  All ORM models import Base from here.
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from orderguard.config import settings


def _engine_options(url: str) -> dict:
    # SQLite (tests, local runs) does not accept pool sizing arguments.
    if url.startswith("sqlite"):
        return {"echo": False}
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_recycle": settings.DATABASE_POOL_RECYCLE,
        "pool_pre_ping": True,
        "echo": False,
    }


# ---------------------------------------------------------------------------
# Engine & Session
# ---------------------------------------------------------------------------
engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

AsyncSessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


# ---------------------------------------------------------------------------
# Dependency: injected into FastAPI route handlers
# ---------------------------------------------------------------------------
async def get_db() -> AsyncSession:
    """Yield a session; commit on success, roll back on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ---------------------------------------------------------------------------
# Startup helper
# ---------------------------------------------------------------------------
async def init_db():
    """Create all tables that are registered on Base.  Idempotent."""
    # Import so every model is registered on Base.metadata.
    from orderguard.models import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
