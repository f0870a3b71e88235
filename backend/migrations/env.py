"""
Alembic environment for the stock reservation schema.

Migrations connect through psycopg2 with a synchronous engine; the service
itself runs on asyncpg. Connection parameters come from the same DB_*
variables the service reads.
"""
import os
import sys
from logging.config import fileConfig
from pathlib import Path
from urllib.parse import quote_plus

from alembic import context
from sqlalchemy import create_engine, pool

# Repository root, so `backend.app` resolves when alembic runs from backend/
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.app.core.base import Base  # noqa: E402
from backend.app.models import reservation, stock  # noqa: E402,F401


def sync_db_url() -> str:
    return "postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}".format(
        user=os.environ.get("DB_USER", "postgres"),
        password=quote_plus(os.environ.get("DB_PASSWORD", "")),
        host=os.environ.get("DB_HOST", "localhost"),
        port=os.environ.get("DB_PORT", "5432"),
        name=os.environ.get("DB_NAME", "postgres"),
    )


config = context.config
# ConfigParser treats % as interpolation
config.set_main_option("sqlalchemy.url", sync_db_url().replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of executing it."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(sync_db_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
