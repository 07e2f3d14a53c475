"""Programmatic Alembic migrations for the calendar directory.

``serve`` and ``migrate`` upgrade the ``core`` chain in-process; there is no
``alembic.ini`` and the Alembic CLI is never needed.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic.config import Config

from alembic import command
from practice_calendar.db import normalize_schema_name

logger = logging.getLogger(__name__)

# alembic/ sits next to src/ at the repository root
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CORE_CHAIN = "core"
HEAD_REVISION = "cal_001"
TARGET_SCHEMA_OPTION = "practice_calendar.target_schema"


def build_alembic_config(db_url: str, target_schema: str | None = None) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CORE_CHAIN))
    # Config values go through configparser interpolation.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    schema = normalize_schema_name(target_schema)
    if schema is not None:
        config.set_main_option(TARGET_SCHEMA_OPTION, schema)
    return config


async def run_migrations(db_url: str, schema: str | None = None) -> None:
    """Upgrade the calendar directory tables to ``core@head``.

    Safe to call on every start: an up-to-date database is left untouched.
    """
    config = build_alembic_config(db_url, target_schema=schema)
    logger.info(
        "Upgrading calendar directory schema (chain=%s, schema=%s)",
        CORE_CHAIN,
        normalize_schema_name(schema) or "<default>",
    )
    command.upgrade(config, f"{CORE_CHAIN}@head")
