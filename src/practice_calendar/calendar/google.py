"""Google Calendar v3 provider over httpx with refresh-token OAuth.

Only transport concerns live here: authentication, request shaping and
mapping of non-success responses onto the engine's error taxonomy.  Retries
are owned by the Retry Executor; the only retry performed here is a single
forced token refresh on 401.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from practice_calendar.calendar.errors import (
    CalendarAuthError,
    CalendarCredentialError,
    CalendarNotFoundError,
    CalendarProviderError,
    CalendarSyncTokenExpiredError,
    CalendarTransportError,
    QuotaExceededError,
    sanitize_error_message,
)
from practice_calendar.calendar.models import (
    AclRule,
    BusyInterval,
    CalendarCreateRequest,
    CalendarEvent,
    ChangeBatch,
    EventAttendee,
    EventSpec,
    ProviderCalendar,
    WatchRequest,
    WatchResponse,
)
from practice_calendar.calendar.provider import DEFAULT_FULL_SYNC_WINDOW_DAYS, CalendarProvider

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# 403 reasons Google uses for rate limiting instead of a plain 429.
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}

# Reminder overrides applied to every appointment event.
EMAIL_REMINDER_MINUTES = 24 * 60
POPUP_REMINDER_MINUTES = 30


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }
        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(invalid)}"
            )

        return cls(**{key: str(value) for key, value in credential_data.items()})


def _extract_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]
    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


class GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(self, credentials: GoogleOAuthCredentials, http_client: httpx.AsyncClient):
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token
            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarAuthError(f"Google OAuth token refresh request failed: {exc}") from exc

        if not response.is_success:
            raise CalendarAuthError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarAuthError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarAuthError("Google OAuth token response is missing a non-empty access_token")

        expires_in = payload.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, int | float) or expires_in <= 0:
            expires_in = 3600
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(int(expires_in) - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    error_payload = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error_payload, dict):
        return set()
    errors = error_payload.get("errors")
    if not isinstance(errors, list):
        return set()
    return {
        item["reason"]
        for item in errors
        if isinstance(item, dict) and isinstance(item.get("reason"), str)
    }


def _parse_retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def raise_for_google_status(response: httpx.Response, *, resource: str) -> None:
    """Map a non-success Google response onto the calendar error taxonomy."""
    if response.is_success:
        return

    status = response.status_code
    message = _safe_error_message(response)
    if status in (404, 410):
        raise CalendarNotFoundError(resource, status_code=status, message=message)
    if status == 429:
        raise QuotaExceededError(
            _quota_type(response) or "rateLimitExceeded",
            retry_after=_parse_retry_after(response),
        )
    if status == 403:
        reasons = _error_reasons(response) & _RATE_LIMIT_REASONS
        if reasons:
            raise QuotaExceededError(
                sorted(reasons)[0],
                status_code=403,
                retry_after=_parse_retry_after(response),
            )
    raise CalendarProviderError(
        status_code=status,
        message=message,
        retry_after=_parse_retry_after(response),
    )


def _quota_type(response: httpx.Response) -> str | None:
    reasons = _error_reasons(response)
    return sorted(reasons)[0] if reasons else None


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _event_boundary(payload: Any) -> tuple[datetime | None, str | None]:
    if not isinstance(payload, dict):
        return None, None
    timezone = payload.get("timeZone") if isinstance(payload.get("timeZone"), str) else None
    raw = payload.get("dateTime")
    if isinstance(raw, str) and raw.strip():
        return parse_google_datetime(raw), timezone
    raw_date = payload.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        return parse_google_datetime(f"{raw_date.strip()}T00:00:00+00:00"), timezone
    return None, timezone


def google_event_to_calendar_event(payload: dict[str, Any], *, fallback_timezone: str) -> CalendarEvent:
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        raise CalendarProviderError(
            status_code=200, message="Google Calendar event payload is missing an id"
        )

    start_at, start_tz = _event_boundary(payload.get("start"))
    end_at, _ = _event_boundary(payload.get("end"))
    if start_at is None or end_at is None:
        raise CalendarProviderError(
            status_code=200, message=f"Google Calendar event {event_id!r} is missing start/end"
        )

    attendees = [
        EventAttendee(email=item["email"], display_name=item.get("displayName"))
        for item in payload.get("attendees") or []
        if isinstance(item, dict) and isinstance(item.get("email"), str)
    ]
    extended = payload.get("extendedProperties")
    private = extended.get("private") if isinstance(extended, dict) else None
    private_metadata = (
        {str(k): str(v) for k, v in private.items()} if isinstance(private, dict) else {}
    )

    conference_uri = None
    conference = payload.get("conferenceData")
    if isinstance(conference, dict):
        for entry in conference.get("entryPoints") or []:
            if isinstance(entry, dict) and entry.get("entryPointType") == "video":
                conference_uri = entry.get("uri")
                break

    return CalendarEvent(
        event_id=event_id.strip(),
        summary=payload.get("summary") or "",
        start_at=start_at,
        end_at=end_at,
        timezone=start_tz or fallback_timezone,
        description=payload.get("description"),
        location=payload.get("location"),
        status=payload.get("status") or "confirmed",
        attendees=attendees,
        private_metadata=private_metadata,
        conference_uri=conference_uri,
        etag=payload.get("etag"),
    )


def build_google_event_body(spec: EventSpec) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": spec.summary,
        "start": {"dateTime": google_rfc3339(spec.start_at), "timeZone": spec.timezone},
        "end": {"dateTime": google_rfc3339(spec.end_at), "timeZone": spec.timezone},
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": EMAIL_REMINDER_MINUTES},
                {"method": "popup", "minutes": POPUP_REMINDER_MINUTES},
            ],
        },
    }
    if spec.description is not None:
        body["description"] = spec.description
    if spec.location is not None:
        body["location"] = spec.location
    if spec.attendees:
        body["attendees"] = [_attendee_body(a) for a in spec.attendees]
    if spec.private_metadata:
        body["extendedProperties"] = {"private": dict(spec.private_metadata)}
    if spec.add_conference:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def _attendee_body(attendee: EventAttendee) -> dict[str, Any]:
    item: dict[str, Any] = {"email": attendee.email}
    if attendee.display_name:
        item["displayName"] = attendee.display_name
    return item


class GoogleCalendarProvider(CalendarProvider):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        timezone: str = "UTC",
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._timezone = timezone
        self._base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = GoogleOAuthClient(credentials, self._http_client)

    @classmethod
    def from_credentials_json(cls, raw_value: str, **kwargs: Any) -> GoogleCalendarProvider:
        return cls(GoogleOAuthCredentials.from_json(raw_value), **kwargs)

    @property
    def name(self) -> str:
        return "google"

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._base_url}{normalized_path}"

        response = await self._request_once(method, url, params, json_body, force_refresh=False)
        if response.status_code == 401:
            response = await self._request_once(method, url, params, json_body, force_refresh=True)
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise CalendarTransportError(f"Google Calendar request timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"Google Calendar request failed: {exc}") from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        resource: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(method, path, params=params, json_body=json_body)
        raise_for_google_status(response, resource=resource)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarProviderError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    # ------------------------------------------------------------------
    # Calendars and ACL
    # ------------------------------------------------------------------

    async def create_calendar(self, request: CalendarCreateRequest) -> ProviderCalendar:
        body: dict[str, Any] = {"summary": request.summary, "timeZone": request.timezone}
        if request.description is not None:
            body["description"] = request.description
        if request.location is not None:
            body["location"] = request.location
        payload = await self._request_json("POST", "/calendars", resource="calendars", json_body=body)
        calendar_id = payload.get("id")
        if not isinstance(calendar_id, str) or not calendar_id.strip():
            raise CalendarProviderError(
                status_code=200, message="Google Calendar create response is missing an id"
            )
        return ProviderCalendar(
            calendar_id=calendar_id, summary=payload.get("summary"), timezone=payload.get("timeZone")
        )

    async def get_calendar(self, calendar_id: str) -> ProviderCalendar:
        payload = await self._request_json(
            "GET", f"/calendars/{quote(calendar_id, safe='')}", resource=calendar_id
        )
        return ProviderCalendar(
            calendar_id=payload.get("id") or calendar_id,
            summary=payload.get("summary"),
            timezone=payload.get("timeZone"),
        )

    async def delete_calendar(self, calendar_id: str) -> None:
        await self._request_json(
            "DELETE", f"/calendars/{quote(calendar_id, safe='')}", resource=calendar_id
        )

    async def list_acl(self, calendar_id: str) -> list[AclRule]:
        path = f"/calendars/{quote(calendar_id, safe='')}/acl"
        rules: list[AclRule] = []
        params: dict[str, Any] = {}
        while True:
            payload = await self._request_json("GET", path, resource=calendar_id, params=params)
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                scope = item.get("scope") if isinstance(item.get("scope"), dict) else {}
                value = scope.get("value")
                if not isinstance(value, str):
                    continue
                rules.append(
                    AclRule(
                        role=str(item.get("role", "")),
                        scope_type=str(scope.get("type", "user")),
                        scope_value=value,
                        rule_id=item.get("id"),
                    )
                )
            page_token = payload.get("nextPageToken")
            if not page_token:
                return rules
            params = {"pageToken": page_token}

    async def insert_acl(self, calendar_id: str, rule: AclRule) -> AclRule:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/acl",
            resource=calendar_id,
            json_body={"role": rule.role, "scope": {"type": rule.scope_type, "value": rule.scope_value}},
        )
        return rule.model_copy(update={"rule_id": payload.get("id")})

    # ------------------------------------------------------------------
    # Free/busy
    # ------------------------------------------------------------------

    async def query_free_busy(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[BusyInterval]:
        payload = await self._request_json(
            "POST",
            "/freeBusy",
            resource=calendar_id,
            json_body={
                "timeMin": google_rfc3339(start_at),
                "timeMax": google_rfc3339(end_at),
                "items": [{"id": calendar_id}],
            },
        )
        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            raise CalendarProviderError(
                status_code=200, message="freeBusy response missing calendars object"
            )
        calendar_payload = calendars_payload.get(calendar_id)
        if not isinstance(calendar_payload, dict):
            raise CalendarNotFoundError(calendar_id)

        errors = calendar_payload.get("errors")
        if isinstance(errors, list) and errors:
            reasons = {e.get("reason") for e in errors if isinstance(e, dict)}
            if "notFound" in reasons:
                raise CalendarNotFoundError(calendar_id)
            raise CalendarProviderError(
                status_code=503 if "backendError" in reasons else 400,
                message=f"freeBusy errors for calendar: {', '.join(sorted(map(str, reasons)))}",
            )

        intervals: list[BusyInterval] = []
        for window in calendar_payload.get("busy") or []:
            if not isinstance(window, dict):
                continue
            start_raw, end_raw = window.get("start"), window.get("end")
            if not isinstance(start_raw, str) or not isinstance(end_raw, str):
                continue
            start, end = parse_google_datetime(start_raw), parse_google_datetime(end_raw)
            if end > start:
                intervals.append(BusyInterval(start=start, end=end))
        return intervals

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _events_path(self, calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            path = f"{path}/{quote(event_id, safe='')}"
        return path

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent:
        payload = await self._request_json(
            "GET", self._events_path(calendar_id, event_id), resource=event_id
        )
        return google_event_to_calendar_event(payload, fallback_timezone=self._timezone)

    async def insert_event(self, calendar_id: str, spec: EventSpec) -> CalendarEvent:
        payload = await self._request_json(
            "POST",
            self._events_path(calendar_id),
            resource=calendar_id,
            params={"conferenceDataVersion": 1} if spec.add_conference else None,
            json_body=build_google_event_body(spec),
        )
        return google_event_to_calendar_event(payload, fallback_timezone=spec.timezone)

    async def update_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        body: dict[str, Any] = {
            "summary": event.summary,
            "start": {"dateTime": google_rfc3339(event.start_at), "timeZone": event.timezone},
            "end": {"dateTime": google_rfc3339(event.end_at), "timeZone": event.timezone},
            "status": event.status,
            "attendees": [_attendee_body(a) for a in event.attendees],
            "extendedProperties": {"private": dict(event.private_metadata)},
        }
        if event.description is not None:
            body["description"] = event.description
        if event.location is not None:
            body["location"] = event.location
        payload = await self._request_json(
            "PUT",
            self._events_path(calendar_id, event.event_id),
            resource=event.event_id,
            json_body=body,
        )
        return google_event_to_calendar_event(payload, fallback_timezone=event.timezone)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._request_json(
            "DELETE", self._events_path(calendar_id, event_id), resource=event_id
        )

    # ------------------------------------------------------------------
    # Push channels
    # ------------------------------------------------------------------

    async def watch_events(self, calendar_id: str, request: WatchRequest) -> WatchResponse:
        body: dict[str, Any] = {
            "id": request.channel_id,
            "type": "web_hook",
            "address": request.address,
        }
        if request.token is not None:
            body["token"] = request.token
        if request.ttl_seconds is not None:
            body["params"] = {"ttl": str(request.ttl_seconds)}
        payload = await self._request_json(
            "POST",
            f"{self._events_path(calendar_id)}/watch",
            resource=calendar_id,
            json_body=body,
        )
        resource_id = payload.get("resourceId")
        expiration = payload.get("expiration")
        if not isinstance(resource_id, str) or expiration is None:
            raise CalendarProviderError(
                status_code=200, message="watch response missing resourceId/expiration"
            )
        # Google reports expiration as milliseconds since the epoch (string).
        expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=UTC)
        return WatchResponse(
            resource_id=resource_id,
            expires_at=expires_at,
            resource_uri=payload.get("resourceUri"),
        )

    async def stop_channel(self, channel_id: str, resource_id: str | None = None) -> None:
        await self._request_json(
            "POST",
            "/channels/stop",
            resource=channel_id,
            json_body={"id": channel_id, "resourceId": resource_id or ""},
        )

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def list_changes(
        self,
        calendar_id: str,
        sync_token: str | None,
        *,
        full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS,
    ) -> ChangeBatch:
        params: dict[str, Any] = {"showDeleted": True, "singleEvents": True}
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            window_start = datetime.now(UTC) - timedelta(days=full_sync_window_days)
            params["timeMin"] = google_rfc3339(window_start)

        batch_updated: list[CalendarEvent] = []
        cancelled: list[str] = []
        next_sync_token: str | None = None

        while True:
            response = await self._request("GET", self._events_path(calendar_id), params=params)
            if response.status_code == 410:
                raise CalendarSyncTokenExpiredError(
                    f"Sync token expired for calendar '{calendar_id}'; full re-sync required"
                )
            raise_for_google_status(response, resource=calendar_id)
            try:
                payload = response.json()
            except ValueError as exc:
                raise CalendarProviderError(
                    status_code=response.status_code,
                    message="Google Calendar sync response returned invalid JSON",
                ) from exc

            for item in payload.get("items") or []:
                if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                    continue
                if str(item.get("status", "")).lower() == "cancelled":
                    cancelled.append(item["id"])
                    continue
                try:
                    batch_updated.append(
                        google_event_to_calendar_event(item, fallback_timezone=self._timezone)
                    )
                except CalendarProviderError:
                    logger.debug("Skipping unparseable event %s in %s", item["id"], calendar_id)

            candidate = payload.get("nextSyncToken")
            if isinstance(candidate, str) and candidate.strip():
                next_sync_token = candidate.strip()
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = {key: value for key, value in params.items() if key != "pageToken"}
            params["pageToken"] = page_token

        if next_sync_token is None:
            raise CalendarProviderError(
                status_code=200,
                message=f"sync response for '{calendar_id}' did not return nextSyncToken",
            )
        return ChangeBatch(
            updated=batch_updated,
            cancelled_event_ids=cancelled,
            next_sync_token=next_sync_token,
        )

    async def probe(self) -> None:
        await self._request_json(
            "GET", "/users/me/calendarList", resource="calendarList", params={"maxResults": 1}
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
