# ===========================================================================
# OrderGuard — Alembic env.py  (async-aware)
# ===========================================================================

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

# Import ORM Base and models so that every table is registered
from orderguard.config import settings
from orderguard.models import models  # noqa: F401
from orderguard.services.db import Base

# ── alembic.ini logging ────────────────────────────────────────────────────
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Target metadata (for --autogenerate)
target_metadata = Base.metadata

# The URL always comes from Settings, never from alembic.ini
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)


def run_migrations_offline():
    """Render migrations as pure SQL (no live connection)."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _do_run_migrations(conn):
    context.configure(connection=conn, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    """Run migrations against a live async engine."""
    async_engine = create_async_engine(settings.DATABASE_URL)
    async with async_engine.begin() as conn:
        await conn.run_sync(_do_run_migrations)
    await async_engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
