import logging
from logging.config import fileConfig
import sys
from pathlib import Path

from sqlalchemy import pool
from alembic import context

# project modules live at the repository root
BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

import models  # noqa: E402
from config import get_settings  # noqa: E402
from database import build_engine  # noqa: E402


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

# `alembic -x database_url=...` migrates another database than the configured one
database_url = context.get_x_argument(as_dictionary=True).get(
    "database_url", get_settings().database_url
)
config.set_main_option("sqlalchemy.url", database_url)

target_metadata = models.Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        render_as_batch=database_url.startswith("sqlite"),
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    logger.info(f"migrations_offline: dialect={database_url.split(':', 1)[0]}")
    _configure(
        url=database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = build_engine(database_url, poolclass=pool.NullPool)
    with connectable.connect() as connection:
        logger.info(f"migrations_online: dialect={connection.dialect.name}")
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
