"""Persistent Calendar Directory: ManagedCalendar and appointment link storage."""

from __future__ import annotations

import abc
import asyncio
from datetime import UTC, datetime

from practice_calendar.calendar.errors import CalendarDirectoryError
from practice_calendar.calendar.models import (
    DEFAULT_INTEGRATION_MODE,
    AppointmentEventLink,
    IntegrationStatus,
    ManagedCalendar,
    WebhookChannel,
)


class CalendarDirectory(abc.ABC):
    """Storage contract for managed calendars and their webhook channels.

    Implementations must enforce that at most one ``active`` calendar exists
    per ``(practitioner_id, mode)``; ``save_calendar`` raises
    ``CalendarDirectoryError`` when a write would violate it.
    """

    @abc.abstractmethod
    async def get_active_calendar(
        self, practitioner_id: str, mode: str = DEFAULT_INTEGRATION_MODE
    ) -> ManagedCalendar | None: ...

    @abc.abstractmethod
    async def get_calendar(
        self, practitioner_id: str, mode: str = DEFAULT_INTEGRATION_MODE
    ) -> ManagedCalendar | None:
        """Most recently updated non-removed record for the practitioner."""
        ...

    @abc.abstractmethod
    async def get_by_calendar_id(self, calendar_id: str) -> ManagedCalendar | None: ...

    @abc.abstractmethod
    async def get_by_channel_id(self, channel_id: str) -> ManagedCalendar | None: ...

    @abc.abstractmethod
    async def list_calendars(
        self, *, status: IntegrationStatus | None = None
    ) -> list[ManagedCalendar]: ...

    @abc.abstractmethod
    async def list_channels_expiring_before(self, cutoff: datetime) -> list[ManagedCalendar]:
        """Active calendars whose channel expires at or before *cutoff*."""
        ...

    @abc.abstractmethod
    async def save_calendar(self, record: ManagedCalendar) -> ManagedCalendar:
        """Insert or replace *record* (keyed by ``record.id``)."""
        ...

    @abc.abstractmethod
    async def update_status(self, record_id: str, status: IntegrationStatus) -> ManagedCalendar: ...

    @abc.abstractmethod
    async def swap_channel(
        self,
        record_id: str,
        expected_channel_id: str | None,
        channel: WebhookChannel | None,
    ) -> bool:
        """Replace the channel reference only if it still equals *expected_channel_id*."""
        ...

    @abc.abstractmethod
    async def update_sync_token(self, record_id: str, sync_token: str | None) -> None: ...

    @abc.abstractmethod
    async def record_appointment_event(self, link: AppointmentEventLink) -> None: ...

    @abc.abstractmethod
    async def get_appointment_event(self, appointment_id: str) -> AppointmentEventLink | None: ...

    @abc.abstractmethod
    async def count_calendars(self, *, status: IntegrationStatus | None = None) -> int: ...


class InMemoryCalendarDirectory(CalendarDirectory):
    """Dictionary-backed directory for tests and single-process local runs."""

    def __init__(self) -> None:
        self._records: dict[str, ManagedCalendar] = {}
        self._links: dict[str, AppointmentEventLink] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    async def get_active_calendar(
        self, practitioner_id: str, mode: str = DEFAULT_INTEGRATION_MODE
    ) -> ManagedCalendar | None:
        for record in self._records.values():
            if record.practitioner_id == practitioner_id and record.mode == mode and record.is_active:
                return record.model_copy(deep=True)
        return None

    async def get_calendar(
        self, practitioner_id: str, mode: str = DEFAULT_INTEGRATION_MODE
    ) -> ManagedCalendar | None:
        candidates = [
            r
            for r in self._records.values()
            if r.practitioner_id == practitioner_id
            and r.mode == mode
            and r.integration_status != IntegrationStatus.REMOVED
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.updated_at).model_copy(deep=True)

    async def get_by_calendar_id(self, calendar_id: str) -> ManagedCalendar | None:
        for record in self._records.values():
            if record.calendar_id == calendar_id:
                return record.model_copy(deep=True)
        return None

    async def get_by_channel_id(self, channel_id: str) -> ManagedCalendar | None:
        for record in self._records.values():
            if record.channel is not None and record.channel.channel_id == channel_id:
                return record.model_copy(deep=True)
        return None

    async def list_calendars(
        self, *, status: IntegrationStatus | None = None
    ) -> list[ManagedCalendar]:
        return [
            r.model_copy(deep=True)
            for r in self._records.values()
            if status is None or r.integration_status == status
        ]

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[ManagedCalendar]:
        return [
            r.model_copy(deep=True)
            for r in self._records.values()
            if r.is_active and r.channel is not None and r.channel.expires_at <= cutoff
        ]

    async def save_calendar(self, record: ManagedCalendar) -> ManagedCalendar:
        async with self._lock:
            for other in self._records.values():
                if other.id == record.id:
                    continue
                if other.calendar_id == record.calendar_id:
                    raise CalendarDirectoryError(
                        f"Calendar id {record.calendar_id!r} is already managed by record {other.id}"
                    )
                if (
                    record.is_active
                    and other.is_active
                    and other.practitioner_id == record.practitioner_id
                    and other.mode == record.mode
                ):
                    raise CalendarDirectoryError(
                        f"Practitioner {record.practitioner_id!r} already has an active "
                        f"{record.mode} calendar"
                    )
            stored = record.model_copy(deep=True, update={"updated_at": self._now()})
            self._records[record.id] = stored
            return stored.model_copy(deep=True)

    async def update_status(self, record_id: str, status: IntegrationStatus) -> ManagedCalendar:
        record = self._records.get(record_id)
        if record is None:
            raise CalendarDirectoryError(f"Unknown calendar record {record_id!r}")
        return await self.save_calendar(record.model_copy(update={"integration_status": status}))

    async def swap_channel(
        self,
        record_id: str,
        expected_channel_id: str | None,
        channel: WebhookChannel | None,
    ) -> bool:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            current = record.channel.channel_id if record.channel is not None else None
            if current != expected_channel_id:
                return False
            self._records[record_id] = record.model_copy(
                update={"channel": channel, "updated_at": self._now()}
            )
            return True

    async def update_sync_token(self, record_id: str, sync_token: str | None) -> None:
        record = self._records.get(record_id)
        if record is None:
            raise CalendarDirectoryError(f"Unknown calendar record {record_id!r}")
        self._records[record_id] = record.model_copy(
            update={"sync_token": sync_token, "updated_at": self._now()}
        )

    async def record_appointment_event(self, link: AppointmentEventLink) -> None:
        self._links[link.appointment_id] = link

    async def get_appointment_event(self, appointment_id: str) -> AppointmentEventLink | None:
        return self._links.get(appointment_id)

    async def count_calendars(self, *, status: IntegrationStatus | None = None) -> int:
        return len(await self.list_calendars(status=status))
