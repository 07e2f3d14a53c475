"""Service dependency wiring for the calendar HTTP API.

Routers declare ``Depends(get_service)``; ``wire_service`` overrides that stub
with the running ``CalendarService`` at startup (or in tests).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import FastAPI

    from practice_calendar.calendar.service import CalendarService

logger = logging.getLogger(__name__)


def get_service() -> CalendarService:
    """Dependency stub -- overridden at app startup or in tests."""
    raise RuntimeError("CalendarService not initialized")


def wire_service(app: FastAPI, service: CalendarService) -> None:
    """Bind *service* as the singleton behind ``get_service``."""
    app.state.calendar_service = service
    app.dependency_overrides[get_service] = lambda: service
    logger.info("CalendarService wired (provider=%s)", service.provider.name)
