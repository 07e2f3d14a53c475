"""Batch Availability Checker: bounded fan-out of availability requests."""

from __future__ import annotations

import asyncio
import logging

from practice_calendar.calendar.conflicts import ConflictDetector
from practice_calendar.calendar.models import (
    DEFAULT_INTEGRATION_MODE,
    AvailabilityRequest,
    AvailabilityResponse,
)
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class BatchAvailabilityChecker:
    """Check many practitioner windows: chunks run sequentially, requests within
    a chunk run concurrently, and responses keep the input order."""

    def __init__(
        self,
        directory: CalendarDirectory,
        conflicts: ConflictDetector,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        mode: str = DEFAULT_INTEGRATION_MODE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._directory = directory
        self._conflicts = conflicts
        self.batch_size = batch_size
        self.mode = mode

    async def check_one(self, request: AvailabilityRequest) -> AvailabilityResponse:
        record = await self._directory.get_active_calendar(request.practitioner_id, self.mode)
        if record is None:
            return AvailabilityResponse(
                practitioner_id=request.practitioner_id,
                available=False,
                error="No active calendar for practitioner",
            )
        conflicts = await self._conflicts.find_conflicts(
            record.calendar_id, request.start_at, request.end_at
        )
        return AvailabilityResponse(
            practitioner_id=request.practitioner_id,
            available=not conflicts,
            conflicts=conflicts or None,
        )

    async def batch_check_availability(
        self, requests: list[AvailabilityRequest]
    ) -> list[AvailabilityResponse]:
        responses: list[AvailabilityResponse] = []
        for offset in range(0, len(requests), self.batch_size):
            chunk = requests[offset : offset + self.batch_size]
            results = await asyncio.gather(
                *(self.check_one(request) for request in chunk),
                return_exceptions=True,
            )
            for request, result in zip(chunk, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.warning(
                        "Availability check failed for practitioner %s: %s",
                        request.practitioner_id,
                        result,
                    )
                    responses.append(
                        AvailabilityResponse(
                            practitioner_id=request.practitioner_id,
                            available=False,
                            error=str(result) or type(result).__name__,
                        )
                    )
                else:
                    responses.append(result)
        return responses
