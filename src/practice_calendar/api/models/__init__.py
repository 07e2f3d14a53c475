"""Shared Pydantic request/response models for the calendar HTTP API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code", "message", "details"}}``.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from practice_calendar.calendar.models import AvailabilityRequest, EventSpec


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ProvisionCalendarBody(BaseModel):
    practitioner_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    display_name: str | None = None


class CreateEventBody(BaseModel):
    appointment_id: str = Field(min_length=1)
    event: EventSpec


class BatchAvailabilityBody(BaseModel):
    requests: list[AvailabilityRequest]


class RenewChannelsBody(BaseModel):
    """Renew one channel when ``channel_id`` is set, otherwise every expiring channel."""

    channel_id: str | None = None
    recreate_all: bool = False


# ---------------------------------------------------------------------------
# Response payloads
# ---------------------------------------------------------------------------


class EventCreated(BaseModel):
    event_id: str
    calendar_id: str
    appointment_id: str


class EventDeleted(BaseModel):
    event_id: str
    deleted: bool


class ConflictCheck(BaseModel):
    calendar_id: str
    has_conflicts: bool


class RenewalSummary(BaseModel):
    renewed: int
    failed: int
    errors: list[str] = Field(default_factory=list)
