"""Event operations: conflict-checked creation, merge-then-update and deletion."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from practice_calendar.calendar.conflicts import ConflictDetector, overlapping
from practice_calendar.calendar.errors import CalendarNotFoundError, ConflictDetectedError
from practice_calendar.calendar.models import (
    AppointmentEventLink,
    BusyInterval,
    CalendarEvent,
    EventPatch,
    EventSpec,
    ensure_utc,
)
from practice_calendar.calendar.provider import CalendarProvider
from practice_calendar.calendar.retry import RetryExecutor
from practice_calendar.core.logging import calendar_log_context
from practice_calendar.core.metrics import MetricsRecorder
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)

APPOINTMENT_ID_PROPERTY = "appointmentId"
PRACTITIONER_ID_PROPERTY = "practitionerId"


def _cut_out(
    intervals: list[BusyInterval], start: datetime, end: datetime
) -> list[BusyInterval]:
    """*intervals* with their ``[start, end)`` portion removed."""
    remaining: list[BusyInterval] = []
    for interval in intervals:
        if not interval.overlaps(start, end):
            remaining.append(interval)
            continue
        if interval.start < start:
            remaining.append(interval.model_copy(update={"end": start}))
        if interval.end > end:
            remaining.append(interval.model_copy(update={"start": end}))
    return remaining


class EventManager:
    def __init__(
        self,
        provider: CalendarProvider,
        executor: RetryExecutor,
        conflicts: ConflictDetector,
        directory: CalendarDirectory,
        metrics: MetricsRecorder,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._conflicts = conflicts
        self._directory = directory
        self._metrics = metrics
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, calendar_id: str) -> asyncio.Lock:
        lock = self._locks.get(calendar_id)
        if lock is None:
            lock = self._locks[calendar_id] = asyncio.Lock()
        return lock

    async def create_event(self, calendar_id: str, spec: EventSpec, appointment_id: str) -> str:
        """Create the appointment event and link it to *appointment_id*.

        The slot is re-checked against fresh provider data immediately before
        insertion, with check and insert serialized per calendar.  Overlaps
        raise ``ConflictDetectedError`` and are never retried.
        """
        record = await self._directory.get_by_calendar_id(calendar_id)
        practitioner_id = record.practitioner_id if record is not None else None

        with calendar_log_context(practitioner_id=practitioner_id, calendar_id=calendar_id):
            async with self._lock_for(calendar_id):
                conflicts = await self._conflicts.find_conflicts(
                    calendar_id, spec.start_at, spec.end_at, fresh=True
                )
                if conflicts:
                    raise ConflictDetectedError(conflicts)

                metadata = {**spec.private_metadata, APPOINTMENT_ID_PROPERTY: appointment_id}
                if practitioner_id is not None:
                    metadata[PRACTITIONER_ID_PROPERTY] = practitioner_id
                request = spec.model_copy(update={"private_metadata": metadata})

                event = await self._executor.run(
                    "insert_event",
                    lambda: self._provider.insert_event(calendar_id, request),
                    calendar_id=calendar_id,
                )
                self._conflicts.invalidate(calendar_id)

            self._metrics.record_event_created()
            await self._directory.record_appointment_event(
                AppointmentEventLink(
                    appointment_id=appointment_id,
                    calendar_id=calendar_id,
                    event_id=event.event_id,
                )
            )
            logger.info("Created event %s for appointment %s", event.event_id, appointment_id)
            return event.event_id

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent:
        return await self._executor.run(
            "get_event",
            lambda: self._provider.get_event(calendar_id, event_id),
            calendar_id=calendar_id,
        )

    async def update_event(
        self, calendar_id: str, event_id: str, patch: EventPatch
    ) -> CalendarEvent:
        """Fetch the current event, merge *patch* onto it and write it back.

        Moving the event re-checks the new window against fresh busy time,
        ignoring the time the event itself occupies, under the same
        per-calendar lock as creation.
        """
        with calendar_log_context(calendar_id=calendar_id):
            async with self._lock_for(calendar_id):
                current = await self.get_event(calendar_id, event_id)
                merged = patch.apply_to(current)
                if (merged.start_at, merged.end_at) != (current.start_at, current.end_at):
                    await self._ensure_free_for_move(calendar_id, current, merged)
                updated = await self._executor.run(
                    "update_event",
                    lambda: self._provider.update_event(calendar_id, merged),
                    calendar_id=calendar_id,
                )
                self._conflicts.invalidate(calendar_id)
            logger.info("Updated event %s", event_id)
            return updated

    async def _ensure_free_for_move(
        self, calendar_id: str, current: CalendarEvent, moved: CalendarEvent
    ) -> None:
        start, end = ensure_utc(moved.start_at), ensure_utc(moved.end_at)
        busy = await self._conflicts.fetch_busy(calendar_id, start, end)
        others = _cut_out(busy, ensure_utc(current.start_at), ensure_utc(current.end_at))
        conflicts = overlapping(others, start, end)
        if conflicts:
            self._metrics.record_conflict()
            raise ConflictDetectedError(conflicts)

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete the event; returns False when it was already gone."""
        with calendar_log_context(calendar_id=calendar_id):
            try:
                await self._executor.run(
                    "delete_event",
                    lambda: self._provider.delete_event(calendar_id, event_id),
                    calendar_id=calendar_id,
                )
            except CalendarNotFoundError:
                logger.info("Event %s already deleted", event_id)
                return False
            finally:
                self._conflicts.invalidate(calendar_id)
            logger.info("Deleted event %s", event_id)
            return True
