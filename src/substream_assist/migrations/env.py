"""Alembic environment for the assist_ tables.

Importing substream_assist.core.models registers the six assist_ tables
(subscriptions, permissions, proposals, patches, action logs, audit logs)
on substream_assist.database.Base.metadata. That metadata is the
autogenerate target; tables without the assist_ prefix are left alone so
the service can share a database with the rest of the product.
The database URL comes from SUBSTREAM_ASSIST_DATABASE_URL via Settings.
"""

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from substream_assist.core import models  # noqa: F401
from substream_assist.database import Base
from substream_assist.settings import get_settings

TABLE_PREFIX = "assist_"

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

database_url = get_settings().database_url
target_metadata = Base.metadata


def include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """Only compare tables this service owns."""
    if type_ == "table":
        return bool(name) and name.startswith(TABLE_PREFIX)
    return True


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the assist_ schema without connecting."""
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(database_url)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
