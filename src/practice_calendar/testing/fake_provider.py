"""In-memory ``CalendarProvider`` with failure injection.

Used by the test suite and by ``provider = "memory"`` for local runs.  Every
operation first pops any error queued for it with ``fail_next`` so tests can
script transient and terminal provider failures precisely.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter, defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from practice_calendar.calendar.errors import (
    CalendarNotFoundError,
    CalendarSyncTokenExpiredError,
)
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
    ensure_utc,
)
from practice_calendar.calendar.provider import DEFAULT_FULL_SYNC_WINDOW_DAYS, CalendarProvider


@dataclass
class _FakeCalendar:
    calendar_id: str
    summary: str
    timezone: str
    acl: list[AclRule] = field(default_factory=list)
    events: dict[str, CalendarEvent] = field(default_factory=dict)
    busy: list[BusyInterval] = field(default_factory=list)
    # (sequence, event_id) for every mutation, for sync-token listings
    changes: list[tuple[int, str]] = field(default_factory=list)


@dataclass
class FakeChannel:
    channel_id: str
    calendar_id: str
    resource_id: str
    expires_at: datetime
    token: str | None
    address: str


class FakeCalendarProvider(CalendarProvider):
    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        latency: float = 0.0,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self.latency = latency
        self.calendars: dict[str, _FakeCalendar] = {}
        self.channels: dict[str, FakeChannel] = {}
        self.stopped_channels: list[str] = []
        self.calls: Counter[str] = Counter()
        self.probe_error: BaseException | None = None
        self.sync_tokens_expired = False
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)
        self._last_seq = 0
        self.closed = False

    # -- test helpers -------------------------------------------------------

    def fail_next(self, operation: str, *errors: BaseException) -> None:
        """Queue *errors* to be raised by the next calls to *operation*, in order."""
        self._failures[operation].extend(errors)

    def add_calendar(self, calendar_id: str, *, summary: str = "", timezone: str = "UTC") -> None:
        self.calendars[calendar_id] = _FakeCalendar(calendar_id, summary, timezone)

    def add_busy(
        self, calendar_id: str, start: datetime, end: datetime, label: str | None = None
    ) -> None:
        """Add opaque busy time that is not an event (e.g. another booking system)."""
        self._calendar(calendar_id).busy.append(BusyInterval(start=start, end=end, label=label))

    def add_external_event(self, calendar_id: str, spec: EventSpec) -> CalendarEvent:
        """Create an event as if made directly in the provider UI."""
        return self._store_event(calendar_id, spec)

    def expire_sync_tokens(self) -> None:
        self.sync_tokens_expired = True

    # -- internals ----------------------------------------------------------

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    def _calendar(self, calendar_id: str) -> _FakeCalendar:
        calendar = self.calendars.get(calendar_id)
        if calendar is None:
            raise CalendarNotFoundError(calendar_id)
        return calendar

    def _record_change(self, calendar: _FakeCalendar, event_id: str) -> None:
        seq = next(self._seq)
        self._last_seq = seq
        calendar.changes.append((seq, event_id))

    def _store_event(self, calendar_id: str, spec: EventSpec) -> CalendarEvent:
        calendar = self._calendar(calendar_id)
        event_id = f"evt-{next(self._ids)}"
        event = CalendarEvent(
            event_id=event_id,
            summary=spec.summary,
            start_at=ensure_utc(spec.start_at),
            end_at=ensure_utc(spec.end_at),
            timezone=spec.timezone,
            description=spec.description,
            location=spec.location,
            attendees=list(spec.attendees),
            private_metadata=dict(spec.private_metadata),
            conference_uri=f"https://meet.example.test/{event_id}" if spec.add_conference else None,
        )
        calendar.events[event_id] = event
        self._record_change(calendar, event_id)
        return event

    # -- CalendarProvider ---------------------------------------------------

    @property
    def name(self) -> str:
        return "memory"

    async def create_calendar(self, request: CalendarCreateRequest) -> ProviderCalendar:
        await self._enter("create_calendar")
        calendar_id = f"cal-{next(self._ids)}@group.calendar.test"
        self.add_calendar(calendar_id, summary=request.summary, timezone=request.timezone)
        return ProviderCalendar(
            calendar_id=calendar_id, summary=request.summary, timezone=request.timezone
        )

    async def get_calendar(self, calendar_id: str) -> ProviderCalendar:
        await self._enter("get_calendar")
        calendar = self._calendar(calendar_id)
        return ProviderCalendar(
            calendar_id=calendar_id, summary=calendar.summary, timezone=calendar.timezone
        )

    async def delete_calendar(self, calendar_id: str) -> None:
        await self._enter("delete_calendar")
        self._calendar(calendar_id)
        del self.calendars[calendar_id]

    async def list_acl(self, calendar_id: str) -> list[AclRule]:
        await self._enter("list_acl")
        return list(self._calendar(calendar_id).acl)

    async def insert_acl(self, calendar_id: str, rule: AclRule) -> AclRule:
        await self._enter("insert_acl")
        calendar = self._calendar(calendar_id)
        granted = rule.model_copy(update={"rule_id": f"user:{rule.scope_value}"})
        calendar.acl = [r for r in calendar.acl if r.scope_value != rule.scope_value]
        calendar.acl.append(granted)
        return granted

    async def query_free_busy(
        self, calendar_id: str, start_at: datetime, end_at: datetime
    ) -> list[BusyInterval]:
        await self._enter("query_free_busy")
        calendar = self._calendar(calendar_id)
        windows = [
            BusyInterval(start=e.start_at, end=e.end_at)
            for e in calendar.events.values()
            if e.status != "cancelled"
        ]
        windows.extend(calendar.busy)
        return sorted(
            (w for w in windows if w.overlaps(start_at, end_at)),
            key=lambda w: w.start,
        )

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent:
        await self._enter("get_event")
        event = self._calendar(calendar_id).events.get(event_id)
        if event is None or event.status == "cancelled":
            raise CalendarNotFoundError(event_id)
        return event

    async def insert_event(self, calendar_id: str, spec: EventSpec) -> CalendarEvent:
        await self._enter("insert_event")
        return self._store_event(calendar_id, spec)

    async def update_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        await self._enter("update_event")
        calendar = self._calendar(calendar_id)
        if event.event_id not in calendar.events:
            raise CalendarNotFoundError(event.event_id)
        calendar.events[event.event_id] = event
        self._record_change(calendar, event.event_id)
        return event

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._enter("delete_event")
        calendar = self._calendar(calendar_id)
        event = calendar.events.get(event_id)
        if event is None or event.status == "cancelled":
            raise CalendarNotFoundError(event_id)
        calendar.events[event_id] = event.model_copy(update={"status": "cancelled"})
        self._record_change(calendar, event_id)

    async def watch_events(self, calendar_id: str, request: WatchRequest) -> WatchResponse:
        await self._enter("watch_events")
        self._calendar(calendar_id)
        ttl = request.ttl_seconds or 7 * 24 * 60 * 60
        channel = FakeChannel(
            channel_id=request.channel_id,
            calendar_id=calendar_id,
            resource_id=f"res-{next(self._ids)}",
            expires_at=self._clock() + timedelta(seconds=ttl),
            token=request.token,
            address=request.address,
        )
        self.channels[channel.channel_id] = channel
        return WatchResponse(resource_id=channel.resource_id, expires_at=channel.expires_at)

    async def stop_channel(self, channel_id: str, resource_id: str | None = None) -> None:
        await self._enter("stop_channel")
        if self.channels.pop(channel_id, None) is None:
            raise CalendarNotFoundError(channel_id)
        self.stopped_channels.append(channel_id)

    async def list_changes(
        self,
        calendar_id: str,
        sync_token: str | None,
        *,
        full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS,
    ) -> ChangeBatch:
        await self._enter("list_changes")
        calendar = self._calendar(calendar_id)
        if sync_token is not None:
            if self.sync_tokens_expired:
                raise CalendarSyncTokenExpiredError(f"Sync token expired for {calendar_id}")
            since = int(sync_token.removeprefix("sync-"))
            changed_ids = list(dict.fromkeys(eid for seq, eid in calendar.changes if seq > since))
            events = [calendar.events[eid] for eid in changed_ids]
        else:
            self.sync_tokens_expired = False
            window_start = self._clock() - timedelta(days=full_sync_window_days)
            events = [e for e in calendar.events.values() if e.end_at >= window_start]

        return ChangeBatch(
            updated=[e for e in events if e.status != "cancelled"],
            cancelled_event_ids=[e.event_id for e in events if e.status == "cancelled"],
            next_sync_token=f"sync-{self._last_seq}",
        )

    async def probe(self) -> None:
        await self._enter("probe")
        if self.probe_error is not None:
            raise self.probe_error

    async def shutdown(self) -> None:
        self.closed = True
