"""Shared fixtures for the practice calendar test suite.

Unit tests run against ``FakeCalendarProvider`` and the in-memory directory
with manual clocks, so no network, database or real sleeping is involved.
Integration tests for the PostgreSQL directory use a testcontainers Postgres
and are skipped when Docker is unavailable.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from practice_calendar.calendar.models import EventSpec, ManagedCalendar
from practice_calendar.calendar.service import CalendarService
from practice_calendar.config import CalendarConfig
from practice_calendar.db import Database, ServerParams
from practice_calendar.migrations import run_migrations
from practice_calendar.storage import InMemoryCalendarDirectory
from practice_calendar.testing import FakeCalendarProvider

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

# A Monday morning; every test timeline is anchored here.
START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
WEBHOOK_URL = "https://practice.test/api/webhooks/calendar"
OWNER_EMAIL = "calendars@practice.test"


def at(hour: int, minute: int = 0, *, days: int = 0) -> datetime:
    """A UTC datetime on the test day (``START``'s date) at *hour*:*minute*."""
    return START.replace(hour=hour, minute=minute) + timedelta(days=days)


def session_spec(start: datetime, end: datetime, **kwargs) -> EventSpec:
    return EventSpec(summary="Therapy session", start_at=start, end_at=end, **kwargs)


class ManualClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ManualMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def make_config(**overrides) -> CalendarConfig:
    data = {
        "provider": "memory",
        "owner_account_email": OWNER_EMAIL,
        "webhook_url": WEBHOOK_URL,
    }
    data.update(overrides)
    return CalendarConfig.model_validate(data)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def monotonic() -> ManualMonotonic:
    return ManualMonotonic()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry executor, in order."""
    return []


@pytest.fixture
def provider(clock: ManualClock) -> FakeCalendarProvider:
    return FakeCalendarProvider(clock=clock)


@pytest.fixture
def directory() -> InMemoryCalendarDirectory:
    return InMemoryCalendarDirectory()


@pytest.fixture
def config() -> CalendarConfig:
    return make_config()


@pytest.fixture
def build_service(provider, directory, clock, monotonic, sleeps):
    """Factory for services sharing the test's provider, directory and clocks."""

    async def _record_sleep(delay: float) -> None:
        sleeps.append(delay)

    def _build(config: CalendarConfig | None = None, **kwargs) -> CalendarService:
        return CalendarService(
            config or make_config(),
            provider,
            directory,
            clock=clock,
            monotonic=monotonic,
            sleep=_record_sleep,
            **kwargs,
        )

    return _build


@pytest.fixture
def service(build_service, config) -> CalendarService:
    return build_service(config)


@pytest.fixture
def provision(service: CalendarService):
    """Provision a managed calendar for a practitioner through the service."""

    async def _provision(
        practitioner_id: str = "prac-1", email: str = "ada@clinic.test"
    ) -> ManagedCalendar:
        return await service.create_managed_calendar(practitioner_id, email, display_name="Dr Ada")

    return _provision


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """One Postgres server per session; every test gets its own database on it."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def migrated_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh, migrated, connected directory database.

    Usage::

        async with migrated_database(schema="calendars") as db:
            ...
    """
    server = ServerParams(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
    )

    @asynccontextmanager
    async def _open(*, schema: str | None = None) -> AsyncIterator[Database]:
        db = Database(f"cal_test_{uuid.uuid4().hex[:12]}", server, schema=schema, max_pool_size=3)
        await db.provision()
        await run_migrations(db.dsn, schema=db.schema)
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _open
