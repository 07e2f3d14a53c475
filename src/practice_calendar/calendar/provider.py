"""Provider Client capability used by the calendar engine.

Implementations raise ``CalendarProviderError`` (or one of its subclasses)
for non-success responses so the Retry Executor and the managers can branch
on status without knowing the provider's wire format.
"""

from __future__ import annotations

import abc
from datetime import datetime

from practice_calendar.calendar.models import (
    AclRule,
    BusyInterval,
    CalendarCreateRequest,
    CalendarEvent,
    ChangeBatch,
    EventSpec,
    ProviderCalendar,
    WatchRequest,
    WatchResponse,
)

DEFAULT_FULL_SYNC_WINDOW_DAYS = 30


class CalendarProvider(abc.ABC):
    """Provider abstraction; any conforming implementation is substitutable."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def create_calendar(self, request: CalendarCreateRequest) -> ProviderCalendar:
        """Create a secondary calendar owned by the service account."""
        ...

    @abc.abstractmethod
    async def get_calendar(self, calendar_id: str) -> ProviderCalendar:
        """Fetch calendar metadata; raises ``CalendarNotFoundError`` when absent."""
        ...

    @abc.abstractmethod
    async def delete_calendar(self, calendar_id: str) -> None: ...

    @abc.abstractmethod
    async def list_acl(self, calendar_id: str) -> list[AclRule]: ...

    @abc.abstractmethod
    async def insert_acl(self, calendar_id: str, rule: AclRule) -> AclRule: ...

    @abc.abstractmethod
    async def query_free_busy(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[BusyInterval]:
        """Return opaque busy windows intersecting ``[start_at, end_at)``."""
        ...

    @abc.abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent: ...

    @abc.abstractmethod
    async def insert_event(self, calendar_id: str, spec: EventSpec) -> CalendarEvent: ...

    @abc.abstractmethod
    async def update_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        """Replace the stored event with *event* (full update, not a patch)."""
        ...

    @abc.abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> None: ...

    @abc.abstractmethod
    async def watch_events(self, calendar_id: str, request: WatchRequest) -> WatchResponse:
        """Open a push-notification channel for event changes on *calendar_id*."""
        ...

    @abc.abstractmethod
    async def stop_channel(self, channel_id: str, resource_id: str | None = None) -> None: ...

    @abc.abstractmethod
    async def list_changes(
        self,
        calendar_id: str,
        sync_token: str | None,
        *,
        full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS,
    ) -> ChangeBatch:
        """Fetch changes since *sync_token*, or a bounded full listing when ``None``.

        Raises:
            ``CalendarSyncTokenExpiredError`` when the provider no longer
            accepts the token; the caller should retry with ``None``.
        """
        ...

    @abc.abstractmethod
    async def probe(self) -> None:
        """Make a cheap authenticated call; raise when the provider is unusable."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...
