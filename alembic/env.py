"""Alembic environment for the collab schema.

Migrations run synchronously against DATABASE_URL with the async driver
stripped.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from src.collab.config import get_settings
from src.collab.core.database import Base

# Register every table on Base.metadata for autogenerate
from src.collab.chat import models as _chat_models  # noqa: F401
from src.collab.meetings import models as _meeting_models  # noqa: F401
from src.collab.models import user as _user_models  # noqa: F401
from src.collab.notifications import models as _notification_models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _sync_url() -> str:
    return get_settings().DATABASE_URL.replace("+asyncpg", "")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(_sync_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
