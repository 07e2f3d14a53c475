"""Error taxonomy for the calendar integration engine.

Every error raised by the engine derives from ``CalendarServiceError`` and
carries a stable ``code`` plus a ``retryable`` flag.  The Retry Executor only
consults ``retryable`` (and, for transport failures, a fixed set of transient
message markers); callers branch on the concrete class.

Kinds:
- not-found: ``CalendarNotFoundError`` (benign for delete-style operations)
- conflict: ``ConflictDetectedError`` (carries the overlapping busy windows)
- quota: ``QuotaExceededError`` (retried, surfaced after exhaustion)
- configuration: ``CalendarConfigurationError`` (never retried)
- transient transport: ``CalendarTransportError`` / 5xx ``CalendarProviderError``
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from practice_calendar.calendar.models import BusyInterval

# Transport failures whose message contains one of these markers are retried.
TRANSIENT_ERROR_MARKERS = (
    "backend error",
    "internal error",
    "service unavailable",
    "timeout",
    "timed out",
    "connection reset",
)

_MAX_ERROR_MESSAGE_CHARS = 200


def sanitize_error_message(message: str) -> str:
    """Redact credential values, normalize whitespace and truncate to 200 chars."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*[=:]\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return " ".join(redacted.split())[:_MAX_ERROR_MESSAGE_CHARS]


class CalendarServiceError(RuntimeError):
    """Base error raised by the calendar engine."""

    default_code = "CALENDAR_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.retryable = retryable
        # Set by the Retry Executor when the error is re-raised after the
        # final allowed attempt.
        self.retry_exhausted = False
        self.attempts = 0
        super().__init__(message)


class CalendarProviderError(CalendarServiceError):
    """The calendar provider answered with a non-success HTTP-like status."""

    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        *,
        status_code: int,
        message: str,
        retry_after: float | None = None,
        code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        retryable = status_code == 429 or 500 <= status_code < 600
        super().__init__(
            f"Calendar provider request failed ({status_code}): {message}",
            code=code,
            retryable=retryable,
        )
        # Keep the provider's own text on .message rather than the prefixed form.
        self.message = message


class CalendarNotFoundError(CalendarProviderError):
    """The calendar, event or channel does not exist at the provider."""

    default_code = "CALENDAR_NOT_FOUND"

    def __init__(self, resource: str, *, status_code: int = 404, message: str | None = None):
        self.resource = resource
        super().__init__(status_code=status_code, message=message or f"Not found: {resource}")


class QuotaExceededError(CalendarProviderError):
    """Provider rate limit or quota exhausted."""

    default_code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        quota_type: str,
        *,
        status_code: int = 429,
        retry_after: float | None = None,
    ) -> None:
        self.quota_type = quota_type
        super().__init__(
            status_code=status_code,
            message=f"Calendar quota exceeded: {quota_type}",
            retry_after=retry_after,
        )
        self.retryable = True


class CalendarTransportError(CalendarServiceError):
    """The request never produced a provider response (timeout, reset, DNS...)."""

    default_code = "TRANSPORT_ERROR"

    def __init__(self, message: str) -> None:
        lowered = message.lower()
        retryable = any(marker in lowered for marker in TRANSIENT_ERROR_MARKERS)
        super().__init__(message, retryable=retryable)


class CalendarAuthError(CalendarServiceError):
    """Credential or token-refresh failure against the provider."""

    default_code = "AUTH_ERROR"


class CalendarCredentialError(CalendarAuthError):
    """Provider credential JSON is missing or malformed."""


class CalendarConfigurationError(CalendarServiceError):
    """Required setup is missing; indicates a deployment defect, never retried."""

    default_code = "CONFIG_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class CalendarInitializationError(CalendarServiceError):
    """Raised by ``CalendarService.create`` when the service cannot be made ready."""

    default_code = "INIT_ERROR"


class CalendarCreateError(CalendarServiceError):
    """Provisioning a managed calendar failed."""

    default_code = "CALENDAR_CREATE_ERROR"


class ConflictDetectedError(CalendarServiceError):
    """The requested slot overlaps existing busy time.

    Never retried automatically; the caller must re-query availability and
    present the conflicting windows to the end user.
    """

    default_code = "CONFLICTS_DETECTED"

    def __init__(self, conflicts: list[BusyInterval]) -> None:
        self.conflicts = list(conflicts)
        super().__init__(
            f"Calendar conflicts detected: {len(self.conflicts)} conflicts",
            retryable=False,
        )


class CalendarSyncTokenExpiredError(CalendarServiceError):
    """The stored sync token is no longer valid; a full sync is required."""

    default_code = "SYNC_TOKEN_EXPIRED"


class WebhookAuthenticationError(CalendarServiceError):
    """An inbound notification carried a token that does not match its channel."""

    default_code = "WEBHOOK_UNAUTHORIZED"


class CalendarDirectoryError(CalendarServiceError):
    """The persistent calendar directory rejected a write."""

    default_code = "DIRECTORY_ERROR"


def is_retryable_error(exc: BaseException) -> bool:
    """Return True when *exc* is a transient condition worth retrying."""
    if isinstance(exc, ConflictDetectedError | CalendarConfigurationError):
        return False
    if isinstance(exc, CalendarServiceError):
        return exc.retryable
    if isinstance(exc, TimeoutError):
        return True
    lowered = str(exc).lower()
    return any(marker in lowered for marker in TRANSIENT_ERROR_MARKERS)
