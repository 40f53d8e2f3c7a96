"""
Alembic environment for the dispatch schema.

Migrations always run against PostgreSQL: the enum types, the partial unique
index on open sessions and the conditional upserts of the location store
depend on it.  Test databases are built from ``Base.metadata`` directly and
never go through alembic.

The target database comes from ``settings.migration_url()``.  It can be
overridden per run, e.g. ``alembic -x db_url=postgresql+asyncpg://... upgrade head``.
"""

from __future__ import annotations

import asyncio
import logging
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import async_engine_from_config

from dispatch.core.config import settings
from dispatch.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

_url = settings.migration_url(context.get_x_argument(as_dictionary=True).get("db_url"))
# configparser interpolation would choke on '%' in passwords
config.set_main_option("sqlalchemy.url", _url.replace("%", "%%"))

target_metadata = Base.metadata


def _configure_options() -> dict[str, Any]:
    # Enum and Numeric precision changes on the request columns must show up
    # in autogenerate, so types and server defaults are compared.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
    }


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, **_configure_options())

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    logger.info("Migrating %s", make_url(_url).render_as_string(hide_password=True))
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
