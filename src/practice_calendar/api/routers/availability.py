"""Batch availability endpoint used by the booking search."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from practice_calendar.api.deps import get_service
from practice_calendar.api.models import ApiMeta, ApiResponse, BatchAvailabilityBody
from practice_calendar.calendar.models import AvailabilityResponse
from practice_calendar.calendar.service import CalendarService

router = APIRouter(prefix="/api/availability", tags=["availability"])


@router.post("/batch", response_model=ApiResponse[list[AvailabilityResponse]])
async def batch_check_availability(
    body: BatchAvailabilityBody,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[list[AvailabilityResponse]]:
    """Check many practitioner windows at once.

    Results come back in request order.  A failure for one practitioner is
    reported in that entry's ``error`` and never fails the whole batch.
    """
    results = await service.batch_check_availability(body.requests)
    failed = sum(1 for r in results if r.error is not None)
    return ApiResponse[list[AvailabilityResponse]](
        data=results,
        meta=ApiMeta(total=len(results), failed=failed),
    )
