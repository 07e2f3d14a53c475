"""Webhook Channel Manager: push-notification channel lifecycle and health.

Per-calendar channel state::

    none -> active -> (renewing) -> active | expired

Renewal opens the replacement channel first, compare-and-swaps the
persisted reference (expecting the old channel id) and only then stops the
old channel.  If the swap loses, the new channel is stopped and the old
reference is left untouched, so the directory never points at a channel
that was already replaced.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from practice_calendar.calendar.errors import (
    CalendarConfigurationError,
    CalendarDirectoryError,
    CalendarNotFoundError,
    CalendarServiceError,
)
from practice_calendar.calendar.models import (
    ChannelState,
    IntegrationStatus,
    ManagedCalendar,
    WatchRequest,
    WebhookChannel,
)
from practice_calendar.calendar.provider import CalendarProvider
from practice_calendar.calendar.retry import RetryExecutor
from practice_calendar.core.logging import calendar_log_context
from practice_calendar.core.metrics import MetricsRecorder
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_RENEWAL_MARGIN = timedelta(hours=24)


def new_channel_id() -> str:
    return f"cal-{uuid.uuid4().hex}"


def new_channel_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class RenewalReport:
    renewed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ChannelStats:
    total: int = 0
    active: int = 0
    expiring: int = 0
    expired: int = 0
    error: int = 0


@dataclass
class ChannelHealth:
    stats: ChannelStats
    degraded_calendar_ids: list[str]

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_calendar_ids)


class ChannelManager:
    def __init__(
        self,
        provider: CalendarProvider,
        executor: RetryExecutor,
        directory: CalendarDirectory,
        metrics: MetricsRecorder,
        *,
        webhook_url: str | None,
        ttl_seconds: int = DEFAULT_CHANNEL_TTL_SECONDS,
        renewal_margin: timedelta = DEFAULT_RENEWAL_MARGIN,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] = new_channel_id,
        token_factory: Callable[[], str] = new_channel_token,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._directory = directory
        self._metrics = metrics
        self.webhook_url = webhook_url
        self.ttl_seconds = ttl_seconds
        self.renewal_margin = renewal_margin
        self._clock = clock or (lambda: datetime.now(UTC))
        self._id_factory = id_factory
        self._token_factory = token_factory
        self._locks: dict[str, asyncio.Lock] = {}
        self._renewing: set[str] = set()

    def _lock_for(self, calendar_id: str) -> asyncio.Lock:
        lock = self._locks.get(calendar_id)
        if lock is None:
            lock = self._locks[calendar_id] = asyncio.Lock()
        return lock

    def _require_webhook_url(self) -> str:
        if not self.webhook_url:
            raise CalendarConfigurationError(
                "Webhook notification address is not configured; cannot open push channels"
            )
        return self.webhook_url

    def channel_state(self, record: ManagedCalendar) -> ChannelState:
        if record.calendar_id in self._renewing:
            return ChannelState.RENEWING
        if record.channel is None:
            return ChannelState.NONE
        if record.channel.is_expired(self._clock()):
            return ChannelState.EXPIRED
        return ChannelState.ACTIVE

    async def _open_channel(self, calendar_id: str) -> WebhookChannel:
        address = self._require_webhook_url()
        request = WatchRequest(
            channel_id=self._id_factory(),
            address=address,
            token=self._token_factory(),
            ttl_seconds=self.ttl_seconds,
        )
        response = await self._executor.run(
            "watch_events",
            lambda: self._provider.watch_events(calendar_id, request),
            calendar_id=calendar_id,
        )
        return WebhookChannel(
            channel_id=request.channel_id,
            resource_id=response.resource_id,
            expires_at=response.expires_at,
            token=request.token,
            address=address,
        )

    async def _stop_quietly(self, channel: WebhookChannel, *, reason: str) -> None:
        """Stop *channel*, treating not-found as success and logging other failures."""
        try:
            await self._executor.run(
                "stop_channel",
                lambda: self._provider.stop_channel(channel.channel_id, channel.resource_id),
            )
        except CalendarNotFoundError:
            logger.info("Channel %s already gone at provider (%s)", channel.channel_id, reason)
        except CalendarServiceError as exc:
            logger.warning("Failed to stop channel %s (%s): %s", channel.channel_id, reason, exc)

    async def watch_calendar(self, calendar_id: str) -> WebhookChannel:
        """Ensure *calendar_id* has a live push channel and return it."""
        self._require_webhook_url()
        record = await self._directory.get_by_calendar_id(calendar_id)
        if record is None:
            raise CalendarNotFoundError(calendar_id, message=f"Unmanaged calendar: {calendar_id}")

        with calendar_log_context(practitioner_id=record.practitioner_id, calendar_id=calendar_id):
            async with self._lock_for(calendar_id):
                record = await self._directory.get_by_calendar_id(calendar_id) or record
                old = record.channel
                if old is not None and not old.is_expired(self._clock()):
                    return old

                channel = await self._open_channel(calendar_id)
                swapped = await self._directory.swap_channel(
                    record.id, old.channel_id if old else None, channel
                )
                if not swapped:
                    await self._stop_quietly(channel, reason="lost channel swap")
                    raise CalendarDirectoryError(
                        f"Channel reference for calendar {calendar_id} changed concurrently"
                    )
                if old is not None:
                    await self._stop_quietly(old, reason="expired channel replaced")
                logger.info(
                    "Opened push channel %s for calendar %s (expires %s)",
                    channel.channel_id,
                    calendar_id,
                    channel.expires_at.isoformat(),
                )
                return channel

    async def renew_channel(self, channel_id: str) -> WebhookChannel:
        """Replace the channel *channel_id* with a fresh one."""
        record = await self._directory.get_by_channel_id(channel_id)
        if record is None or record.channel is None:
            raise CalendarNotFoundError(channel_id, message=f"Unknown channel: {channel_id}")

        calendar_id = record.calendar_id
        with calendar_log_context(practitioner_id=record.practitioner_id, calendar_id=calendar_id):
            async with self._lock_for(calendar_id):
                current = await self._directory.get_by_channel_id(channel_id)
                if current is None or current.channel is None:
                    raise CalendarNotFoundError(
                        channel_id, message=f"Channel {channel_id} was already replaced"
                    )
                old = current.channel
                self._renewing.add(calendar_id)
                try:
                    new = await self._open_channel(calendar_id)
                    if not await self._directory.swap_channel(current.id, old.channel_id, new):
                        await self._stop_quietly(new, reason="lost channel swap")
                        raise CalendarDirectoryError(
                            f"Channel {channel_id} was replaced concurrently during renewal"
                        )
                except CalendarServiceError:
                    self._metrics.record_renewal(success=False)
                    raise
                finally:
                    self._renewing.discard(calendar_id)

                await self._stop_quietly(old, reason="renewed")
                self._metrics.record_renewal(success=True)
                logger.info(
                    "Renewed push channel for calendar %s: %s -> %s",
                    calendar_id,
                    old.channel_id,
                    new.channel_id,
                )
                return new

    async def stop_watch(self, channel_id: str) -> None:
        """Stop channel *channel_id*; unknown or already-stopped channels are ignored."""
        record = await self._directory.get_by_channel_id(channel_id)
        if record is None or record.channel is None:
            logger.info("stop_watch: channel %s is not tracked; nothing to do", channel_id)
            return
        await self.remove_channel(record)

    async def remove_channel(self, record: ManagedCalendar) -> None:
        """Stop and forget the channel attached to *record*, if any."""
        channel = record.channel
        if channel is None:
            return
        async with self._lock_for(record.calendar_id):
            await self._stop_quietly(channel, reason="stop requested")
            await self._directory.swap_channel(record.id, channel.channel_id, None)
        logger.info("Stopped push channel %s for calendar %s", channel.channel_id, record.calendar_id)

    async def renew_expiring_channels(self, margin: timedelta | None = None) -> RenewalReport:
        """Renew every active channel expiring within *margin* of now."""
        cutoff = self._clock() + (self.renewal_margin if margin is None else margin)
        report = RenewalReport()
        for record in await self._directory.list_channels_expiring_before(cutoff):
            assert record.channel is not None
            try:
                await self.renew_channel(record.channel.channel_id)
                report.renewed += 1
            except CalendarServiceError as exc:
                report.failed += 1
                report.errors.append(f"{record.calendar_id}: {exc}")
                logger.error(
                    "Channel renewal failed for calendar %s (channel %s): %s",
                    record.calendar_id,
                    record.channel.channel_id,
                    exc,
                )
        if report.renewed or report.failed:
            logger.info(
                "Channel renewal pass complete: renewed=%d failed=%d",
                report.renewed,
                report.failed,
            )
        return report

    async def recreate_all_channels(self) -> RenewalReport:
        """Admin operation: replace the channel of every active calendar."""
        self._require_webhook_url()
        report = RenewalReport()
        for record in await self._directory.list_calendars(status=IntegrationStatus.ACTIVE):
            try:
                if record.channel is not None:
                    await self.renew_channel(record.channel.channel_id)
                else:
                    await self.watch_calendar(record.calendar_id)
                report.renewed += 1
            except CalendarServiceError as exc:
                report.failed += 1
                report.errors.append(f"{record.calendar_id}: {exc}")
                logger.error("Channel recreation failed for calendar %s: %s", record.calendar_id, exc)
        return report

    async def degraded_calendars(self) -> list[ManagedCalendar]:
        """Active calendars without a live channel; these fall back to polling."""
        if not self.webhook_url:
            return []
        now = self._clock()
        return [
            record
            for record in await self._directory.list_calendars(status=IntegrationStatus.ACTIVE)
            if record.channel is None or record.channel.is_expired(now)
        ]

    async def channel_health(self) -> ChannelHealth:
        now = self._clock()
        expiring_cutoff = now + self.renewal_margin
        stats = ChannelStats()
        for record in await self._directory.list_calendars():
            if record.integration_status == IntegrationStatus.ERROR:
                stats.error += 1
            if not record.is_active or record.channel is None:
                continue
            stats.total += 1
            if record.channel.is_expired(now):
                stats.expired += 1
                continue
            stats.active += 1
            if record.channel.expires_at <= expiring_cutoff:
                stats.expiring += 1
        degraded = [record.calendar_id for record in await self.degraded_calendars()]
        if stats.expired:
            logger.error("%d push channel(s) have expired without renewal", stats.expired)
        return ChannelHealth(stats=stats, degraded_calendar_ids=degraded)
