"""Alembic migration environment configuration.

This module configures how Alembic runs migrations:
- Loads SQLAlchemy models for autogenerate support
- Configures database connection from environment
- Supports both online and offline migration modes
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

# Import all models to register them with metadata
from possession.db.models import Base

# Alembic Config object for access to .ini values
config = context.config

# Set up Python logging from alembic.ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# All models inherit from Base, so Base.metadata has all tables
target_metadata = Base.metadata


def get_url() -> str:
    """Get database URL from environment or config.

    Priority:
    1. POSSESSION_DATABASE__URL environment variable
    2. sqlalchemy.url from alembic.ini
    """
    url = os.environ.get(
        "POSSESSION_DATABASE__URL", config.get_main_option("sqlalchemy.url", "")
    )
    # Migrations run synchronously; psycopg 3 serves both modes
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Generates SQL script without connecting to database.
    """
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    Creates engine and runs migrations within a transaction.
    """
    # NullPool ensures connections are closed immediately after use
    connectable = create_engine(get_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
