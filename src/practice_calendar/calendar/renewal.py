"""Cron-driven channel renewal and degraded-mode polling.

At each ``tick()`` the scheduler renews channels expiring within the renewal
margin and then polls every calendar that has no live channel, so a lapsed
subscription degrades to polling instead of silently missing changes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from croniter import croniter

from practice_calendar.calendar.channels import ChannelManager, RenewalReport
from practice_calendar.calendar.errors import CalendarServiceError
from practice_calendar.calendar.notifications import NotificationHandler

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_CRON = "0 */6 * * *"


def next_run(cron: str, *, now: datetime | None = None) -> datetime:
    """Compute the next run time for a cron expression from now (UTC)."""
    anchor = now or datetime.now(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


@dataclass
class TickResult:
    renewal: RenewalReport
    polled: int = 0
    poll_errors: list[str] = field(default_factory=list)


class RenewalScheduler:
    def __init__(
        self,
        channels: ChannelManager,
        notifications: NotificationHandler,
        *,
        cron: str = DEFAULT_RENEWAL_CRON,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid renewal cron expression: {cron!r}")
        self._channels = channels
        self._notifications = notifications
        self.cron = cron
        self._clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task[None] | None = None

    async def tick(self) -> TickResult:
        result = TickResult(renewal=await self._channels.renew_expiring_channels())
        for record in await self._channels.degraded_calendars():
            try:
                await self._notifications.sync_calendar(record)
                result.polled += 1
            except CalendarServiceError as exc:
                result.poll_errors.append(f"{record.calendar_id}: {exc}")
                logger.warning("Polling sync failed for calendar %s: %s", record.calendar_id, exc)
        if result.polled:
            logger.info("Polled %d calendar(s) running without a push channel", result.polled)
        return result

    async def _run(self) -> None:
        while True:
            now = self._clock()
            delay = max((next_run(self.cron, now=now) - now).total_seconds(), 0.0)
            await asyncio.sleep(delay)
            try:
                await self.tick()
            except Exception:
                logger.exception("Channel renewal tick failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="calendar-channel-renewal")
            logger.info("Channel renewal scheduler started (cron=%s)", self.cron)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
