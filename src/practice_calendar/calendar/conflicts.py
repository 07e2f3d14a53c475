"""Conflict Detector: busy-time lookup and half-open overlap checks."""

from __future__ import annotations

import logging
from datetime import datetime

from practice_calendar.calendar.cache import BUSY_TTL_SECONDS, TTLCache, busy_cache_key
from practice_calendar.calendar.errors import CalendarServiceError
from practice_calendar.calendar.models import BusyInterval, ensure_utc
from practice_calendar.calendar.provider import CalendarProvider
from practice_calendar.calendar.retry import RetryExecutor
from practice_calendar.core.metrics import MetricsRecorder
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)


def overlapping(
    intervals: list[BusyInterval], start_at: datetime, end_at: datetime
) -> list[BusyInterval]:
    """Return the intervals satisfying ``interval.start < end and interval.end > start``.

    A zero-length or inverted window overlaps nothing.
    """
    start, end = ensure_utc(start_at), ensure_utc(end_at)
    if end <= start:
        return []
    return [interval for interval in intervals if interval.overlaps(start, end)]


class ConflictDetector:
    def __init__(
        self,
        provider: CalendarProvider,
        executor: RetryExecutor,
        cache: TTLCache,
        directory: CalendarDirectory,
        metrics: MetricsRecorder,
        *,
        busy_ttl_seconds: float = BUSY_TTL_SECONDS,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._cache = cache
        self._directory = directory
        self._metrics = metrics
        self._busy_ttl = busy_ttl_seconds

    async def _scopes_for(self, calendar_id: str) -> tuple[str, ...]:
        record = await self._directory.get_by_calendar_id(calendar_id)
        if record is None:
            return (calendar_id,)
        return (calendar_id, record.practitioner_id)

    async def fetch_busy(
        self, calendar_id: str, start_at: datetime, end_at: datetime
    ) -> list[BusyInterval]:
        """Query the provider directly (no cache read) and refresh the cache entry.

        Provider failures propagate to the caller.
        """
        start, end = ensure_utc(start_at), ensure_utc(end_at)
        intervals = await self._executor.run(
            "freebusy",
            lambda: self._provider.query_free_busy(calendar_id, start, end),
            calendar_id=calendar_id,
        )
        self._cache.set(
            busy_cache_key(calendar_id, start, end),
            list(intervals),
            ttl=self._busy_ttl,
            scopes=await self._scopes_for(calendar_id),
        )
        return list(intervals)

    async def list_busy(
        self, calendar_id: str, start_at: datetime, end_at: datetime
    ) -> list[BusyInterval]:
        """Busy intervals for the window, served from cache when fresh.

        When the provider cannot be reached the window is reported as free
        (empty list); that fallback is logged and never cached.
        """
        start, end = ensure_utc(start_at), ensure_utc(end_at)
        if end <= start:
            return []

        cached = self._cache.get(busy_cache_key(calendar_id, start, end))
        self._metrics.record_cache_lookup(hit=cached is not None)
        if cached is not None:
            return list(cached)

        try:
            return await self.fetch_busy(calendar_id, start, end)
        except CalendarServiceError as exc:
            logger.warning(
                "Free/busy lookup failed for calendar %s; assuming free: %s",
                calendar_id,
                exc,
            )
            return []

    async def find_conflicts(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
        *,
        fresh: bool = False,
    ) -> list[BusyInterval]:
        """Busy intervals overlapping the window.

        With ``fresh=True`` the cache is bypassed and provider errors are
        raised instead of being treated as "free".
        """
        start, end = ensure_utc(start_at), ensure_utc(end_at)
        if end <= start:
            return []
        if fresh:
            busy = await self.fetch_busy(calendar_id, start, end)
        else:
            busy = await self.list_busy(calendar_id, start, end)
        conflicts = overlapping(busy, start, end)
        if conflicts:
            self._metrics.record_conflict()
            logger.info(
                "Detected %d conflicting busy interval(s) on calendar %s",
                len(conflicts),
                calendar_id,
            )
        return conflicts

    async def check_conflicts(
        self, calendar_id: str, start_at: datetime, end_at: datetime
    ) -> bool:
        return bool(await self.find_conflicts(calendar_id, start_at, end_at))

    def invalidate(self, scope: str) -> int:
        return self._cache.invalidate(scope)
