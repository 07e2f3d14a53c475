"""Structured logging for the calendar engine.

Uses structlog's ProcessorFormatter so every plain
``logging.getLogger(__name__)`` call site emits structured records.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The practitioner and calendar being worked on, plus the OTel trace context,
are injected automatically from ContextVars and the current span.

Log directory layout (when ``log_root`` is set)::

    logs/
      calendar/         # Engine application logs (JSON)
        practice-calendar.log
      uvicorn/          # HTTP server and client transport logs (JSON)
        practice-calendar.log
"""

from __future__ import annotations

import contextlib
import logging
import sys
from collections.abc import Iterator
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Operation context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_practitioner_context: ContextVar[str | None] = ContextVar("practitioner_id", default=None)
_calendar_context: ContextVar[str | None] = ContextVar("calendar_id", default=None)


def get_practitioner_context() -> str | None:
    return _practitioner_context.get()


def get_calendar_context() -> str | None:
    return _calendar_context.get()


@contextlib.contextmanager
def calendar_log_context(
    *,
    practitioner_id: str | None = None,
    calendar_id: str | None = None,
) -> Iterator[None]:
    """Bind practitioner/calendar ids to every record emitted inside the block.

    Values left as ``None`` inherit whatever the enclosing context set.
    """
    tokens = []
    if practitioner_id is not None:
        tokens.append((_practitioner_context, _practitioner_context.set(practitioner_id)))
    if calendar_id is not None:
        tokens.append((_calendar_context, _calendar_context.set(calendar_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_calendar_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``practitioner_id`` / ``calendar_id`` from the ContextVars."""
    practitioner_id = _practitioner_context.get()
    calendar_id = _calendar_context.get()
    if practitioner_id is not None:
        event_dict.setdefault("practitioner_id", practitioner_id)
    if calendar_id is not None:
        event_dict.setdefault("calendar_id", calendar_id)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_DIR_CALENDAR = "calendar"
_DIR_UVICORN = "uvicorn"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_calendar_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str = "practice-calendar",
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format, ``"text"`` for colored console or ``"json"`` for JSON lines.
    log_root:
        Root directory for structured log files.  When set, creates
        ``{log_root}/calendar/{service_name}.log`` for engine logs and
        ``{log_root}/uvicorn/{service_name}.log`` for transport logs.
    service_name:
        Used for log file naming.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")

        for subdir in (_DIR_CALENDAR, _DIR_UVICORN):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        root.addHandler(
            _make_file_handler(log_root / _DIR_CALENDAR / f"{service_name}.log", file_processors)
        )

        transport_handler = _make_file_handler(
            log_root / _DIR_UVICORN / f"{service_name}.log",
            file_processors,
        )
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport_handler)

    # Configure structlog itself (for direct structlog.get_logger() usage)
    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
