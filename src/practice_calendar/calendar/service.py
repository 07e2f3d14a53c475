"""CalendarService: the explicitly constructed facade over the calendar engine.

Each instance owns its cache, metrics, locks and managers; there is no
module-level state.  Use ``CalendarService.create`` to obtain a service whose
provider credentials have been verified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel

from practice_calendar.calendar.batch import BatchAvailabilityChecker
from practice_calendar.calendar.cache import TTLCache
from practice_calendar.calendar.channels import ChannelHealth, ChannelManager, RenewalReport
from practice_calendar.calendar.conflicts import ConflictDetector
from practice_calendar.calendar.errors import CalendarInitializationError, CalendarServiceError
from practice_calendar.calendar.events import EventManager
from practice_calendar.calendar.lifecycle import CalendarLifecycleManager
from practice_calendar.calendar.models import (
    AclRole,
    AclRule,
    AvailabilityRequest,
    AvailabilityResponse,
    BusyInterval,
    CalendarEvent,
    ChannelNotification,
    EventPatch,
    EventSpec,
    IntegrationStatus,
    ManagedCalendar,
    SyncResult,
    WebhookChannel,
)
from practice_calendar.calendar.notifications import ChangeListener, NotificationHandler
from practice_calendar.calendar.provider import CalendarProvider
from practice_calendar.calendar.renewal import RenewalScheduler
from practice_calendar.calendar.retry import RetryExecutor, SleepFn
from practice_calendar.config import CalendarConfig
from practice_calendar.core.metrics import MetricsRecorder
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)

_SAMPLE_CACHE_KEYS = 5

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


class ServiceMetrics(BaseModel):
    # every record that is not removed: pending, active and error
    total_calendars: int
    active_channels: int
    events_created: int
    conflicts_detected: int
    api_calls_today: int
    error_rate: float
    average_response_time_ms: float
    cache_hit_ratio: float
    last_updated: datetime


class HealthReport(BaseModel):
    status: HealthStatus
    details: dict[str, Any]


class CalendarService:
    def __init__(
        self,
        config: CalendarConfig,
        provider: CalendarProvider,
        directory: CalendarDirectory,
        *,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
        sleep: SleepFn | None = None,
        change_listener: ChangeListener | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.directory = directory
        self._clock = clock or (lambda: datetime.now(UTC))

        self.metrics = MetricsRecorder(clock=self._clock)
        self.cache = TTLCache(
            default_ttl=config.cache.default_ttl_seconds,
            max_entries=config.cache.max_entries,
            compact_to=config.cache.compact_to,
            clock=monotonic,
        )
        self.executor = RetryExecutor(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay_seconds,
            jitter_ratio=config.retry.jitter_ratio,
            metrics=self.metrics,
            sleep=sleep,
        )
        self.conflicts = ConflictDetector(
            provider,
            self.executor,
            self.cache,
            directory,
            self.metrics,
            busy_ttl_seconds=config.cache.busy_ttl_seconds,
        )
        self.channels = ChannelManager(
            provider,
            self.executor,
            directory,
            self.metrics,
            webhook_url=config.webhook_url,
            ttl_seconds=config.channels.ttl_seconds,
            renewal_margin=timedelta(hours=config.channels.renewal_margin_hours),
            clock=self._clock,
        )
        self.lifecycle = CalendarLifecycleManager(
            provider,
            self.executor,
            directory,
            self.channels,
            owner_account_email=config.owner_account_email,
            timezone=config.timezone,
            mode=config.mode,
        )
        self.events = EventManager(provider, self.executor, self.conflicts, directory, self.metrics)
        self.batch = BatchAvailabilityChecker(
            directory, self.conflicts, batch_size=config.batch.size, mode=config.mode
        )
        self.notifications = NotificationHandler(
            provider,
            self.executor,
            directory,
            self.conflicts,
            listener=change_listener,
        )
        self.scheduler = RenewalScheduler(
            self.channels,
            self.notifications,
            cron=config.channels.renewal_cron,
            clock=self._clock,
        )

    @classmethod
    async def create(
        cls,
        config: CalendarConfig,
        provider: CalendarProvider,
        directory: CalendarDirectory,
        **kwargs: Any,
    ) -> CalendarService:
        """Return a ready service, or raise ``CalendarInitializationError``.

        The provider is probed once so that bad credentials fail at startup
        rather than on the first booking.
        """
        try:
            await provider.probe()
        except CalendarServiceError as exc:
            raise CalendarInitializationError(
                f"Calendar provider {provider.name!r} failed its startup probe: {exc.message}",
                code=exc.code,
            ) from exc
        service = cls(config, provider, directory, **kwargs)
        logger.info(
            "Calendar service ready (provider=%s, webhooks=%s)",
            provider.name,
            "enabled" if config.webhook_url else "disabled",
        )
        return service

    # -- lifecycle ----------------------------------------------------------

    async def create_managed_calendar(
        self, practitioner_id: str, practitioner_email: str, *, display_name: str | None = None
    ) -> ManagedCalendar:
        return await self.lifecycle.create_managed_calendar(
            practitioner_id, practitioner_email, display_name=display_name
        )

    async def get_calendar(self, practitioner_id: str) -> ManagedCalendar | None:
        return await self.lifecycle.get_calendar(practitioner_id)

    async def verify_calendar_access(self, calendar_id: str) -> bool:
        return await self.lifecycle.verify_calendar_access(calendar_id)

    async def ensure_acl(self, calendar_id: str, email: str, role: AclRole) -> AclRule:
        return await self.lifecycle.ensure_acl(calendar_id, email, role)

    async def delete_calendar(self, calendar_id: str) -> None:
        await self.lifecycle.delete_calendar(calendar_id)

    async def teardown_calendar(self, practitioner_id: str) -> ManagedCalendar | None:
        record = await self.lifecycle.teardown_calendar(practitioner_id)
        if record is not None:
            self.cache.invalidate(record.calendar_id)
            self.cache.invalidate(practitioner_id)
        return record

    # -- availability -------------------------------------------------------

    async def list_busy(
        self, calendar_id: str, start_at: datetime, end_at: datetime
    ) -> list[BusyInterval]:
        return await self.conflicts.list_busy(calendar_id, start_at, end_at)

    async def find_conflicts(
        self, calendar_id: str, start_at: datetime, end_at: datetime
    ) -> list[BusyInterval]:
        return await self.conflicts.find_conflicts(calendar_id, start_at, end_at)

    async def check_conflicts(self, calendar_id: str, start_at: datetime, end_at: datetime) -> bool:
        return await self.conflicts.check_conflicts(calendar_id, start_at, end_at)

    async def batch_check_availability(
        self, requests: list[AvailabilityRequest]
    ) -> list[AvailabilityResponse]:
        return await self.batch.batch_check_availability(requests)

    def invalidate(self, scope: str) -> int:
        return self.cache.invalidate(scope)

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Calendar cache cleared")

    # -- events -------------------------------------------------------------

    async def create_event(self, calendar_id: str, spec: EventSpec, appointment_id: str) -> str:
        return await self.events.create_event(calendar_id, spec, appointment_id)

    async def update_event(
        self, calendar_id: str, event_id: str, patch: EventPatch
    ) -> CalendarEvent:
        return await self.events.update_event(calendar_id, event_id, patch)

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        return await self.events.delete_event(calendar_id, event_id)

    # -- channels -----------------------------------------------------------

    async def watch_calendar(self, calendar_id: str) -> WebhookChannel:
        return await self.channels.watch_calendar(calendar_id)

    async def renew_channel(self, channel_id: str) -> WebhookChannel:
        return await self.channels.renew_channel(channel_id)

    async def stop_watch(self, channel_id: str) -> None:
        await self.channels.stop_watch(channel_id)

    async def renew_expiring_channels(self) -> RenewalReport:
        return await self.channels.renew_expiring_channels()

    async def recreate_all_channels(self) -> RenewalReport:
        return await self.channels.recreate_all_channels()

    async def channel_health(self) -> ChannelHealth:
        return await self.channels.channel_health()

    async def handle_notification(self, notification: ChannelNotification) -> SyncResult:
        return await self.notifications.handle(notification)

    # -- monitoring ---------------------------------------------------------

    async def _directory_counts(self) -> tuple[int, int]:
        """Managed (not removed) calendars, and live channels on active ones."""
        records = [
            r
            for r in await self.directory.list_calendars()
            if r.integration_status != IntegrationStatus.REMOVED
        ]
        now = self._clock()
        live = sum(
            1
            for r in records
            if r.is_active and r.channel is not None and not r.channel.is_expired(now)
        )
        return len(records), live

    async def get_metrics(self) -> ServiceMetrics:
        total_calendars, active_channels = await self._directory_counts()
        snapshot = self.metrics.snapshot()
        return ServiceMetrics(
            total_calendars=total_calendars,
            active_channels=active_channels,
            events_created=snapshot.events_created,
            conflicts_detected=snapshot.conflicts_detected,
            api_calls_today=snapshot.api_calls_today,
            error_rate=snapshot.error_rate,
            average_response_time_ms=snapshot.average_response_time_ms,
            cache_hit_ratio=self.cache.stats().hit_ratio,
            last_updated=snapshot.last_updated,
        )

    async def health_check(self) -> HealthReport:
        status: HealthStatus = "healthy"
        details: dict[str, Any] = {"provider": self.provider.name}
        try:
            await self.provider.probe()
        except CalendarServiceError as exc:
            status = "unhealthy"
            details["provider_error"] = exc.message
            logger.error("Calendar provider health probe failed: %s", exc)

        health = await self.channels.channel_health()
        if status == "healthy" and health.degraded:
            status = "degraded"

        details["channels"] = {
            "total": health.stats.total,
            "active": health.stats.active,
            "expiring": health.stats.expiring,
            "expired": health.stats.expired,
            "error": health.stats.error,
            "degraded_calendar_ids": health.degraded_calendar_ids,
        }
        details["metrics"] = (await self.get_metrics()).model_dump(mode="json")
        details["cache_size"] = len(self.cache)
        details["cache_keys"] = self.cache.keys(limit=_SAMPLE_CACHE_KEYS)
        return HealthReport(status=status, details=details)

    # -- process lifecycle --------------------------------------------------

    def start_background_tasks(self) -> None:
        self.scheduler.start()

    async def stop_background_tasks(self) -> None:
        await self.scheduler.stop()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.provider.shutdown()


