"""CLI for the practice calendar engine: serve the API and run maintenance jobs."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click

from practice_calendar.calendar.errors import CalendarServiceError
from practice_calendar.calendar.provider import CalendarProvider
from practice_calendar.calendar.service import CalendarService
from practice_calendar.config import CONFIG_FILENAME, CalendarConfig, ConfigError, load_config
from practice_calendar.core.logging import configure_logging
from practice_calendar.core.metrics import init_metrics
from practice_calendar.core.telemetry import init_telemetry
from practice_calendar.db import Database
from practice_calendar.migrations import run_migrations
from practice_calendar.storage import CalendarDirectory, InMemoryCalendarDirectory
from practice_calendar.storage.postgres import PostgresCalendarDirectory

logger = logging.getLogger(__name__)

SERVICE_NAME = "practice-calendar"

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=Path(CONFIG_FILENAME),
    show_default=True,
    help="Path to calendar.toml (or the directory containing it)",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Practice calendar: managed practitioner calendars, availability and bookings."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


def _load(config_path: Path) -> CalendarConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


def _build_provider(config: CalendarConfig) -> CalendarProvider:
    if config.provider == "memory":
        from practice_calendar.testing import FakeCalendarProvider

        return FakeCalendarProvider()

    from practice_calendar.calendar.google import GoogleCalendarProvider

    return GoogleCalendarProvider.from_credentials_json(
        config.credentials_json or "", timezone=config.timezone
    )


def _database(config: CalendarConfig) -> Database:
    return Database.from_env(config.db.name, schema=config.db.schema_)


@asynccontextmanager
async def _open_service(config: CalendarConfig, *, migrate: bool = False) -> AsyncIterator[CalendarService]:
    """Build a ready ``CalendarService`` and release its resources on exit.

    The ``memory`` provider pairs with an in-process directory so a local run
    needs neither Google credentials nor PostgreSQL.
    """
    db: Database | None = None
    directory: CalendarDirectory
    if config.provider == "memory":
        directory = InMemoryCalendarDirectory()
    else:
        db = _database(config)
        await db.provision()
        if migrate:
            await run_migrations(db.dsn, schema=db.schema)
        await db.connect()
        directory = PostgresCalendarDirectory(db)

    try:
        service = await CalendarService.create(config, _build_provider(config), directory)
        try:
            yield service
        finally:
            await service.shutdown()
    finally:
        if db is not None:
            await db.close()


def _init_observability(config: CalendarConfig) -> None:
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=SERVICE_NAME,
    )
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)


@cli.command()
@_config_option
@click.option("--host", default=None, help="Bind address (overrides [calendar.server])")
@click.option("--port", type=int, default=None, help="Port (overrides [calendar.server])")
def serve(config_path: Path, host: str | None, port: int | None) -> None:
    """Apply migrations, then serve the HTTP API with channel renewal running."""
    config = _load(config_path)
    _init_observability(config)
    asyncio.run(_serve(config, host or config.server.host, port or config.server.port))


async def _serve(config: CalendarConfig, host: str, port: int) -> None:
    import uvicorn

    from practice_calendar.api.app import create_app

    async with _open_service(config, migrate=True) as service:
        app = create_app(service)
        server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_config=None, lifespan="on")
        )
        logger.info("Serving calendar API on %s:%d", host, port)
        await server.serve()


@cli.command()
@_config_option
def migrate(config_path: Path) -> None:
    """Create the database if needed and upgrade the calendar schema."""
    config = _load(config_path)
    if config.provider == "memory":
        click.echo("Nothing to migrate: the memory provider keeps no database")
        return
    asyncio.run(_migrate(config))
    click.echo("Migrations applied")


async def _migrate(config: CalendarConfig) -> None:
    db = _database(config)
    await db.provision()
    await run_migrations(db.dsn, schema=db.schema)


@cli.command("renew-channels")
@_config_option
@click.option("--all", "recreate_all", is_flag=True, help="Recreate every channel, not only expiring ones")
def renew_channels(config_path: Path, recreate_all: bool) -> None:
    """Renew push-notification channels that are close to expiry."""
    config = _load(config_path)
    report = asyncio.run(_renew(config, recreate_all))
    click.echo(f"Renewed {report.renewed} channel(s), {report.failed} failed")
    for error in report.errors:
        click.echo(f"  {error}", err=True)
    if report.failed:
        sys.exit(1)


async def _renew(config: CalendarConfig, recreate_all: bool):
    async with _open_service(config) as service:
        if recreate_all:
            return await service.recreate_all_channels()
        return await service.renew_expiring_channels()


@cli.command()
@_config_option
def health(config_path: Path) -> None:
    """Print the service health report; exits non-zero when unhealthy."""
    config = _load(config_path)
    try:
        report = asyncio.run(_health(config))
    except CalendarServiceError as exc:
        click.echo(f"unhealthy: {exc.message}", err=True)
        sys.exit(1)
    click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    if report.status == "unhealthy":
        sys.exit(1)


async def _health(config: CalendarConfig):
    async with _open_service(config) as service:
        return await service.health_check()


@cli.command()
@_config_option
@click.argument("practitioner_id")
@click.argument("email")
@click.option("--display-name", default=None, help="Name used in the calendar summary")
def provision(config_path: Path, practitioner_id: str, email: str, display_name: str | None) -> None:
    """Provision (or look up) the managed calendar for a practitioner."""
    config = _load(config_path)
    try:
        record = asyncio.run(_provision(config, practitioner_id, email, display_name))
    except CalendarServiceError as exc:
        click.echo(f"Provisioning failed [{exc.code}]: {exc.message}", err=True)
        sys.exit(1)
    click.echo(f"{record.practitioner_id}: {record.calendar_id} ({record.integration_status})")


async def _provision(
    config: CalendarConfig, practitioner_id: str, email: str, display_name: str | None
):
    async with _open_service(config) as service:
        return await service.create_managed_calendar(
            practitioner_id, email, display_name=display_name
        )
