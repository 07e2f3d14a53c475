"""Pydantic data model for managed calendars, channels, busy time and events."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_INTEGRATION_MODE = "managed"

AclRole = Literal["writer", "reader"]


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class IntegrationStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    REMOVED = "removed"


class ChannelState(StrEnum):
    """Per-calendar push subscription state."""

    NONE = "none"
    ACTIVE = "active"
    RENEWING = "renewing"
    EXPIRED = "expired"


class BusyInterval(BaseModel):
    """A half-open ``[start, end)`` busy window returned by a free/busy query."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    label: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_tz(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test: ``self.start < end and self.end > start``."""
        return self.start < ensure_utc(end) and self.end > ensure_utc(start)


class WebhookChannel(BaseModel):
    """A provider push-notification subscription bound to one calendar."""

    channel_id: str = Field(min_length=1)
    resource_id: str
    expires_at: datetime
    # Verification secret echoed back by the provider; never serialized.
    token: str | None = Field(default=None, exclude=True, repr=False)
    address: str | None = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_tz(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= ensure_utc(now)


class ManagedCalendar(BaseModel):
    """Directory record for a practitioner's dedicated provider calendar."""

    id: str = Field(min_length=1)
    practitioner_id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    mode: str = DEFAULT_INTEGRATION_MODE
    owner_account_email: str
    shared_email: str
    acl_role: AclRole = "writer"
    integration_status: IntegrationStatus = IntegrationStatus.PENDING
    sync_token: str | None = None
    channel: WebhookChannel | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.integration_status == IntegrationStatus.ACTIVE


class AclRule(BaseModel):
    """One ACL grant on a provider calendar."""

    role: str
    scope_type: str = "user"
    scope_value: str
    rule_id: str | None = None


class ProviderCalendar(BaseModel):
    """Minimal view of a calendar as the provider reports it."""

    calendar_id: str
    summary: str | None = None
    timezone: str | None = None


class CalendarCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    description: str | None = None
    timezone: str = "UTC"
    location: str | None = None


class EventAttendee(BaseModel):
    email: str = Field(min_length=3)
    display_name: str | None = None


class EventSpec(BaseModel):
    """Caller-supplied description of an appointment event to create."""

    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    description: str | None = None
    location: str | None = None
    attendees: list[EventAttendee] = Field(default_factory=list)
    add_conference: bool = True
    private_metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_window(self) -> EventSpec:
        if ensure_utc(self.end_at) <= ensure_utc(self.start_at):
            raise ValueError("end_at must be after start_at")
        return self


class CalendarEvent(BaseModel):
    """An event as stored at the provider."""

    event_id: str
    summary: str = ""
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    description: str | None = None
    location: str | None = None
    status: str = "confirmed"
    attendees: list[EventAttendee] = Field(default_factory=list)
    private_metadata: dict[str, str] = Field(default_factory=dict)
    conference_uri: str | None = None
    etag: str | None = None


class EventPatch(BaseModel):
    """Partial update merged onto the current event before it is written back."""

    model_config = ConfigDict(extra="forbid")

    summary: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[EventAttendee] | None = None
    private_metadata: dict[str, str] | None = None

    def apply_to(self, event: CalendarEvent) -> CalendarEvent:
        updates: dict[str, Any] = {
            name: value
            for name, value in self.model_dump(exclude_none=True).items()
            if name not in {"private_metadata", "attendees"}
        }
        if self.attendees is not None:
            updates["attendees"] = list(self.attendees)
        if self.private_metadata is not None:
            updates["private_metadata"] = {**event.private_metadata, **self.private_metadata}
        merged = event.model_copy(update=updates)
        if ensure_utc(merged.end_at) <= ensure_utc(merged.start_at):
            raise ValueError("end_at must be after start_at")
        return merged


class WatchRequest(BaseModel):
    """Parameters for opening a push-notification channel."""

    channel_id: str
    address: str
    token: str | None = None
    ttl_seconds: int | None = None


class WatchResponse(BaseModel):
    resource_id: str
    expires_at: datetime
    resource_uri: str | None = None


class ChangeBatch(BaseModel):
    """Result of an incremental (sync-token) listing."""

    updated: list[CalendarEvent] = Field(default_factory=list)
    cancelled_event_ids: list[str] = Field(default_factory=list)
    next_sync_token: str


class AppointmentEventLink(BaseModel):
    appointment_id: str
    calendar_id: str
    event_id: str
    linked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AvailabilityRequest(BaseModel):
    practitioner_id: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime


class AvailabilityResponse(BaseModel):
    practitioner_id: str
    available: bool
    conflicts: list[BusyInterval] | None = None
    error: str | None = None


class ChannelNotification(BaseModel):
    """An inbound push notification as delivered by the provider."""

    channel_id: str = Field(min_length=1)
    resource_id: str | None = None
    resource_state: str = "exists"
    resource_uri: str | None = None
    channel_token: str | None = None
    message_number: int | None = None
    channel_expiration: str | None = None


class SyncResult(BaseModel):
    calendar_id: str = ""
    status: Literal["synced", "acknowledged", "ignored", "skipped"] = "synced"
    events_processed: int = 0
    cancelled: int = 0
    full_sync: bool = False
    errors: list[str] = Field(default_factory=list)
