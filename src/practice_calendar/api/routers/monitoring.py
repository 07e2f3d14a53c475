"""Health and metrics endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from practice_calendar.api.deps import get_service
from practice_calendar.api.models import ApiResponse
from practice_calendar.calendar.service import CalendarService, HealthReport, ServiceMetrics

router = APIRouter(prefix="/api", tags=["monitoring"])


@router.get("/health", response_model=ApiResponse[HealthReport])
async def health(service: CalendarService = Depends(get_service)):
    """Report provider reachability and channel coverage.

    ``unhealthy`` answers 503 so load balancers can act on the status code;
    ``degraded`` still answers 200 because bookings keep working.
    """
    report = await service.health_check()
    body = ApiResponse[HealthReport](data=report)
    if report.status == "unhealthy":
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return body


@router.get("/metrics", response_model=ApiResponse[ServiceMetrics])
async def metrics(service: CalendarService = Depends(get_service)) -> ApiResponse[ServiceMetrics]:
    return ApiResponse[ServiceMetrics](data=await service.get_metrics())
