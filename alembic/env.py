"""Alembic environment for the calendar directory tables.

Only ever invoked through ``practice_calendar.migrations.run_migrations``,
which sets ``sqlalchemy.url``, ``version_locations`` and, for a scoped
deployment, the target schema. Revisions are raw SQL (no metadata).
"""

from __future__ import annotations

from sqlalchemy import create_engine, pool

from alembic import context

from practice_calendar.db import normalize_schema_name
from practice_calendar.migrations import TARGET_SCHEMA_OPTION


def _configure_kwargs(connection) -> dict:
    kwargs = {
        "connection": connection,
        "target_metadata": None,
        "version_locations": context.config.get_main_option("version_locations"),
    }
    schema = normalize_schema_name(context.config.get_main_option(TARGET_SCHEMA_OPTION))
    if schema is not None:
        kwargs["version_table_schema"] = schema
    return kwargs


def run_migrations_online() -> None:
    url = context.config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError("sqlalchemy.url is not set; run migrations via run_migrations()")
    engine = create_engine(url, poolclass=pool.NullPool)
    schema = normalize_schema_name(context.config.get_main_option(TARGET_SCHEMA_OPTION))

    with engine.connect() as connection:
        if schema is not None:
            quoted = '"' + schema.replace('"', '""') + '"'
            # alembic_version lives in the scoped schema, so create it up front.
            connection.exec_driver_sql(f"CREATE SCHEMA IF NOT EXISTS {quoted}")
            connection.exec_driver_sql(f"SET search_path TO {quoted}, public")
            connection.commit()

        context.configure(**_configure_kwargs(connection))
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    raise RuntimeError("Offline (--sql) migrations are not supported for the calendar directory")
run_migrations_online()
