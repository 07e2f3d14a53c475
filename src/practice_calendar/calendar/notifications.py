"""Inbound push-notification handling and sync-token incremental pulls."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Awaitable, Callable

from practice_calendar.calendar.conflicts import ConflictDetector
from practice_calendar.calendar.errors import (
    CalendarSyncTokenExpiredError,
    WebhookAuthenticationError,
)
from practice_calendar.calendar.models import (
    ChangeBatch,
    ChannelNotification,
    ManagedCalendar,
    SyncResult,
)
from practice_calendar.calendar.provider import DEFAULT_FULL_SYNC_WINDOW_DAYS, CalendarProvider
from practice_calendar.calendar.retry import RetryExecutor
from practice_calendar.core.logging import calendar_log_context
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ManagedCalendar, ChangeBatch], Awaitable[None]]

# Provider handshake state sent once when a channel is created.
SYNC_STATE = "sync"


class NotificationHandler:
    """Validate channel notifications and pull the changes they announce.

    Notifications for one calendar never sync concurrently: a notification
    that arrives while a sync is running marks the calendar dirty and the
    running sync performs one more pass before returning.
    """

    def __init__(
        self,
        provider: CalendarProvider,
        executor: RetryExecutor,
        directory: CalendarDirectory,
        conflicts: ConflictDetector,
        *,
        full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS,
        listener: ChangeListener | None = None,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._directory = directory
        self._conflicts = conflicts
        self.full_sync_window_days = full_sync_window_days
        self.listener = listener
        self._in_progress: set[str] = set()
        self._dirty: set[str] = set()

    async def handle(self, notification: ChannelNotification) -> SyncResult:
        record = await self._directory.get_by_channel_id(notification.channel_id)
        if record is None or record.channel is None:
            logger.info("Ignoring notification for unknown channel %s", notification.channel_id)
            return SyncResult(status="ignored")

        channel = record.channel
        if notification.resource_id and notification.resource_id != channel.resource_id:
            logger.info(
                "Ignoring notification for stale resource %s on channel %s",
                notification.resource_id,
                channel.channel_id,
            )
            return SyncResult(calendar_id=record.calendar_id, status="ignored")

        if channel.token is not None and not secrets.compare_digest(
            (notification.channel_token or "").encode(), channel.token.encode()
        ):
            raise WebhookAuthenticationError(
                f"Channel token mismatch for channel {notification.channel_id}"
            )

        if notification.resource_state == SYNC_STATE:
            logger.debug("Channel %s handshake acknowledged", channel.channel_id)
            return SyncResult(calendar_id=record.calendar_id, status="acknowledged")

        self._conflicts.invalidate(record.practitioner_id)
        self._conflicts.invalidate(record.calendar_id)
        return await self.sync_calendar(record)

    async def sync_calendar(self, record: ManagedCalendar) -> SyncResult:
        """Pull changes for *record*, coalescing with any sync already running."""
        calendar_id = record.calendar_id
        if calendar_id in self._in_progress:
            self._dirty.add(calendar_id)
            return SyncResult(calendar_id=calendar_id, status="skipped")

        self._in_progress.add(calendar_id)
        total = SyncResult(calendar_id=calendar_id)
        try:
            with calendar_log_context(practitioner_id=record.practitioner_id, calendar_id=calendar_id):
                while True:
                    self._dirty.discard(calendar_id)
                    current = await self._directory.get_by_calendar_id(calendar_id) or record
                    result = await self._pull_once(current)
                    total.events_processed += result.events_processed
                    total.cancelled += result.cancelled
                    total.full_sync = total.full_sync or result.full_sync
                    total.errors.extend(result.errors)
                    if calendar_id not in self._dirty:
                        break
        finally:
            self._in_progress.discard(calendar_id)
            self._dirty.discard(calendar_id)
        return total

    async def _pull_once(self, record: ManagedCalendar) -> SyncResult:
        calendar_id = record.calendar_id
        full_sync = record.sync_token is None
        try:
            batch = await self._list_changes(calendar_id, record.sync_token)
        except CalendarSyncTokenExpiredError:
            logger.info("Sync token expired for calendar %s; running full sync", calendar_id)
            full_sync = True
            batch = await self._list_changes(calendar_id, None)

        await self._directory.update_sync_token(record.id, batch.next_sync_token)
        result = SyncResult(
            calendar_id=calendar_id,
            events_processed=len(batch.updated),
            cancelled=len(batch.cancelled_event_ids),
            full_sync=full_sync,
        )

        if self.listener is not None:
            try:
                await self.listener(record, batch)
            except Exception as exc:
                logger.exception("Change listener failed for calendar %s", calendar_id)
                result.errors.append(f"listener: {exc}")

        logger.info(
            "Synced calendar %s: %d updated, %d cancelled%s",
            calendar_id,
            result.events_processed,
            result.cancelled,
            " (full sync)" if full_sync else "",
        )
        return result

    async def _list_changes(self, calendar_id: str, sync_token: str | None) -> ChangeBatch:
        return await self._executor.run(
            "list_changes",
            lambda: self._provider.list_changes(
                calendar_id, sync_token, full_sync_window_days=self.full_sync_window_days
            ),
            calendar_id=calendar_id,
        )
