"""Inbound push notifications from the calendar provider.

Google delivers change notifications as an empty POST whose meaning lives
entirely in ``X-Goog-*`` headers.  The handler answers 200 for anything it
accepted (including notifications for channels we no longer know about, so
the provider stops retrying) and 401 for a token mismatch.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header

from practice_calendar.api.deps import get_service
from practice_calendar.api.models import ApiResponse
from practice_calendar.calendar.models import ChannelNotification, SyncResult
from practice_calendar.calendar.service import CalendarService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _parse_message_number(raw: str | None) -> int | None:
    if raw is None or not raw.strip().isdigit():
        return None
    return int(raw.strip())


@router.post("/calendar", response_model=ApiResponse[SyncResult])
async def calendar_notification(
    channel_id: str = Header(..., alias="X-Goog-Channel-ID", min_length=1),
    resource_id: str | None = Header(None, alias="X-Goog-Resource-ID"),
    resource_state: str = Header("exists", alias="X-Goog-Resource-State"),
    resource_uri: str | None = Header(None, alias="X-Goog-Resource-URI"),
    channel_token: str | None = Header(None, alias="X-Goog-Channel-Token"),
    message_number: str | None = Header(None, alias="X-Goog-Message-Number"),
    channel_expiration: str | None = Header(None, alias="X-Goog-Channel-Expiration"),
    service: CalendarService = Depends(get_service),
) -> ApiResponse[SyncResult]:
    notification = ChannelNotification(
        channel_id=channel_id,
        resource_id=resource_id,
        resource_state=resource_state,
        resource_uri=resource_uri,
        channel_token=channel_token,
        message_number=_parse_message_number(message_number),
        channel_expiration=channel_expiration,
    )
    result = await service.handle_notification(notification)
    logger.debug(
        "Notification %s on channel %s -> %s",
        notification.message_number,
        channel_id,
        result.status,
    )
    return ApiResponse[SyncResult](data=result)
