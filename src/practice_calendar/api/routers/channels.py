"""Push-notification channel maintenance endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from practice_calendar.api.deps import get_service
from practice_calendar.api.models import ApiResponse, RenewalSummary, RenewChannelsBody
from practice_calendar.calendar.service import CalendarService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/channels", tags=["channels"])


@router.post("/renew", response_model=ApiResponse[RenewalSummary])
async def renew_channels(
    body: RenewChannelsBody | None = None,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[RenewalSummary]:
    """Renew one channel, every expiring channel, or recreate them all."""
    body = body or RenewChannelsBody()
    if body.channel_id is not None:
        await service.renew_channel(body.channel_id)
        return ApiResponse[RenewalSummary](data=RenewalSummary(renewed=1, failed=0))

    if body.recreate_all:
        report = await service.recreate_all_channels()
    else:
        report = await service.renew_expiring_channels()
    return ApiResponse[RenewalSummary](
        data=RenewalSummary(renewed=report.renewed, failed=report.failed, errors=report.errors)
    )


@router.get("/health", response_model=ApiResponse[dict])
async def channel_health(
    service: CalendarService = Depends(get_service),
) -> ApiResponse[dict]:
    health = await service.channel_health()
    return ApiResponse[dict](
        data={
            "total": health.stats.total,
            "active": health.stats.active,
            "expiring": health.stats.expiring,
            "expired": health.stats.expired,
            "error": health.stats.error,
            "degraded": health.degraded,
            "degraded_calendar_ids": health.degraded_calendar_ids,
        }
    )
