"""Managed calendar and event endpoints.

Provides a single router mounted at ``/api/calendars``:

- ``POST /api/calendars`` provisions (or returns) a practitioner's calendar
- ``GET|DELETE /api/calendars/{practitioner_id}`` reads or tears it down
- ``GET /api/calendars/{calendar_id}/busy`` and ``/conflicts`` query free/busy
- ``POST|PATCH|DELETE /api/calendars/{calendar_id}/events[/{event_id}]``
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from practice_calendar.api.deps import get_service
from practice_calendar.api.models import (
    ApiResponse,
    ConflictCheck,
    CreateEventBody,
    EventCreated,
    EventDeleted,
    ProvisionCalendarBody,
)
from practice_calendar.calendar.models import (
    BusyInterval,
    CalendarEvent,
    EventPatch,
    ManagedCalendar,
)
from practice_calendar.calendar.service import CalendarService
from practice_calendar.core.logging import calendar_log_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendars", tags=["calendars"])


def _check_window(start_at: datetime, end_at: datetime) -> None:
    if end_at <= start_at:
        raise ValueError("end_at must be after start_at")


@router.post("", response_model=ApiResponse[ManagedCalendar], status_code=201)
async def provision_calendar(
    body: ProvisionCalendarBody,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[ManagedCalendar]:
    """Provision a managed calendar for a practitioner.

    Idempotent: a practitioner that already has an active calendar gets the
    existing record back unchanged.
    """
    with calendar_log_context(practitioner_id=body.practitioner_id):
        record = await service.create_managed_calendar(
            body.practitioner_id, body.email, display_name=body.display_name
        )
    return ApiResponse[ManagedCalendar](data=record)


@router.get("/{practitioner_id}", response_model=ApiResponse[ManagedCalendar])
async def get_calendar(
    practitioner_id: str,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[ManagedCalendar]:
    record = await service.get_calendar(practitioner_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"No active calendar for practitioner '{practitioner_id}'",
        )
    return ApiResponse[ManagedCalendar](data=record)


@router.delete("/{practitioner_id}", response_model=ApiResponse[ManagedCalendar])
async def teardown_calendar(
    practitioner_id: str,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[ManagedCalendar]:
    """Stop the channel, delete the provider calendar and mark the record removed."""
    with calendar_log_context(practitioner_id=practitioner_id):
        record = await service.teardown_calendar(practitioner_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"No calendar for practitioner '{practitioner_id}'",
        )
    return ApiResponse[ManagedCalendar](data=record)


# ---------------------------------------------------------------------------
# Free/busy
# ---------------------------------------------------------------------------


@router.get("/{calendar_id}/busy", response_model=ApiResponse[list[BusyInterval]])
async def list_busy(
    calendar_id: str,
    start_at: datetime = Query(...),
    end_at: datetime = Query(...),
    service: CalendarService = Depends(get_service),
) -> ApiResponse[list[BusyInterval]]:
    _check_window(start_at, end_at)
    with calendar_log_context(calendar_id=calendar_id):
        busy = await service.list_busy(calendar_id, start_at, end_at)
    return ApiResponse[list[BusyInterval]](data=busy)


@router.get("/{calendar_id}/conflicts", response_model=ApiResponse[ConflictCheck])
async def check_conflicts(
    calendar_id: str,
    start_at: datetime = Query(...),
    end_at: datetime = Query(...),
    service: CalendarService = Depends(get_service),
) -> ApiResponse[ConflictCheck]:
    _check_window(start_at, end_at)
    with calendar_log_context(calendar_id=calendar_id):
        has_conflicts = await service.check_conflicts(calendar_id, start_at, end_at)
    return ApiResponse[ConflictCheck](
        data=ConflictCheck(calendar_id=calendar_id, has_conflicts=has_conflicts)
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.post(
    "/{calendar_id}/events",
    response_model=ApiResponse[EventCreated],
    status_code=201,
)
async def create_event(
    calendar_id: str,
    body: CreateEventBody,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[EventCreated]:
    """Book an appointment event; answers 409 when the slot overlaps busy time."""
    with calendar_log_context(calendar_id=calendar_id):
        event_id = await service.create_event(calendar_id, body.event, body.appointment_id)
    return ApiResponse[EventCreated](
        data=EventCreated(
            event_id=event_id,
            calendar_id=calendar_id,
            appointment_id=body.appointment_id,
        )
    )


@router.patch(
    "/{calendar_id}/events/{event_id}",
    response_model=ApiResponse[CalendarEvent],
)
async def update_event(
    calendar_id: str,
    event_id: str,
    patch: EventPatch,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[CalendarEvent]:
    with calendar_log_context(calendar_id=calendar_id):
        event = await service.update_event(calendar_id, event_id, patch)
    return ApiResponse[CalendarEvent](data=event)


@router.delete(
    "/{calendar_id}/events/{event_id}",
    response_model=ApiResponse[EventDeleted],
)
async def delete_event(
    calendar_id: str,
    event_id: str,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[EventDeleted]:
    """Delete an event; an already-missing event reports ``deleted: false``."""
    with calendar_log_context(calendar_id=calendar_id):
        deleted = await service.delete_event(calendar_id, event_id)
    return ApiResponse[EventDeleted](data=EventDeleted(event_id=event_id, deleted=deleted))
