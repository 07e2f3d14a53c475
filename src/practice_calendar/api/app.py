"""Calendar API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that starts and stops background channel renewal
- Health and metrics endpoints at GET /api/health and GET /api/metrics
- Calendar, event, availability, channel and webhook routers

The ``CalendarService`` is owned by the caller (the ``serve`` command or a
test fixture); the app never closes the provider itself.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from practice_calendar.api.deps import wire_service
from practice_calendar.api.middleware import register_error_handlers
from practice_calendar.api.routers.availability import router as availability_router
from practice_calendar.api.routers.calendars import router as calendars_router
from practice_calendar.api.routers.channels import router as channels_router
from practice_calendar.api.routers.monitoring import router as monitoring_router
from practice_calendar.api.routers.webhooks import router as webhooks_router
from practice_calendar.calendar.service import CalendarService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start channel renewal on startup and stop it on shutdown."""
    service: CalendarService | None = getattr(app.state, "calendar_service", None)
    run_background = service is not None and app.state.background_tasks

    if run_background:
        service.start_background_tasks()

    yield

    if run_background:
        await service.stop_background_tasks()
        logger.info("Channel renewal scheduler stopped")


def create_app(
    service: CalendarService | None = None,
    *,
    cors_origins: list[str] | None = None,
    background_tasks: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        A ready ``CalendarService``.  When omitted, routes answer 500 until
        ``wire_service`` is called (tests may also override ``get_service``).
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]``.
    background_tasks:
        Start the channel renewal scheduler on startup.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="Practice Calendar API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.background_tasks = background_tasks

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(monitoring_router)
    app.include_router(calendars_router)
    app.include_router(availability_router)
    app.include_router(channels_router)
    app.include_router(webhooks_router)

    if service is not None:
        wire_service(app, service)

    return app
