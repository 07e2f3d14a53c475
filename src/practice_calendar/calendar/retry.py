"""Retry Executor: bounded exponential backoff around provider calls."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from practice_calendar.calendar.errors import CalendarServiceError, is_retryable_error
from practice_calendar.core.metrics import MetricsRecorder
from practice_calendar.core.telemetry import provider_span

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0

SleepFn = Callable[[float], Awaitable[None]]


class RetryExecutor:
    """Run provider operations with ``base * 2**(attempt-1)`` backoff.

    Only errors classified by ``is_retryable_error`` are retried; anything
    else propagates after the first attempt.  When the last allowed attempt
    fails, the same exception object is re-raised with ``retry_exhausted``
    and ``attempts`` set (for ``CalendarServiceError`` instances).

    A provider-supplied ``retry_after`` hint acts as a floor on the delay.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        jitter_ratio: float = 0.0,
        metrics: MetricsRecorder | None = None,
        sleep: SleepFn | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if jitter_ratio < 0:
            raise ValueError("jitter_ratio must be >= 0")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.jitter_ratio = jitter_ratio
        self._metrics = metrics
        self._sleep = sleep or asyncio.sleep
        self._rng = rng

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay to wait after failed *attempt* (1-based) before the next one."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.jitter_ratio:
            delay += delay * self.jitter_ratio * self._rng()
        retry_after = getattr(error, "retry_after", None)
        if isinstance(retry_after, int | float) and retry_after > delay:
            delay = float(retry_after)
        return delay

    async def run(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        *,
        calendar_id: str | None = None,
    ) -> T:
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            if self._metrics is not None:
                self._metrics.record_api_call(operation)
            try:
                with provider_span(operation, attempt=attempt, calendar_id=calendar_id):
                    result = await func()
            except Exception as exc:
                retryable = is_retryable_error(exc)
                if not retryable or attempt >= self.max_attempts:
                    if retryable and isinstance(exc, CalendarServiceError):
                        exc.retry_exhausted = True
                    if isinstance(exc, CalendarServiceError):
                        exc.attempts = attempt
                    self._record(operation, started, success=False)
                    if retryable:
                        logger.warning(
                            "Calendar operation %s failed after %d attempts: %s",
                            operation,
                            attempt,
                            exc,
                        )
                    raise
                delay = self.delay_for(attempt, exc)
                logger.warning(
                    "Calendar operation %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    operation,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                continue
            self._record(operation, started, success=True)
            return result

    def _record(self, operation: str, started: float, *, success: bool) -> None:
        if self._metrics is None:
            return
        duration_ms = (time.monotonic() - started) * 1000
        self._metrics.record_operation(operation, duration_ms=duration_ms, success=success)
