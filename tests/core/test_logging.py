"""Tests for structured logging and calendar log context."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from practice_calendar.core.logging import (
    _NOISE_LOGGERS,
    add_calendar_context,
    add_otel_context,
    calendar_log_context,
    configure_logging,
    get_calendar_context,
    get_practitioner_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()
    structlog.reset_defaults()


class TestCalendarLogContext:
    def test_binds_and_restores(self):
        assert get_practitioner_context() is None

        with calendar_log_context(practitioner_id="prac-1", calendar_id="cal-1"):
            assert get_practitioner_context() == "prac-1"
            assert get_calendar_context() == "cal-1"

        assert get_practitioner_context() is None
        assert get_calendar_context() is None

    def test_nested_blocks_inherit_unset_values(self):
        with calendar_log_context(practitioner_id="prac-1"):
            with calendar_log_context(calendar_id="cal-1"):
                assert get_practitioner_context() == "prac-1"
                assert get_calendar_context() == "cal-1"
            assert get_calendar_context() is None

    def test_processor_injects_bound_ids(self):
        with calendar_log_context(practitioner_id="prac-1", calendar_id="cal-1"):
            result = add_calendar_context(None, "info", {"event": "x"})

        assert result["practitioner_id"] == "prac-1"
        assert result["calendar_id"] == "cal-1"

    def test_processor_leaves_unbound_ids_out(self):
        result = add_calendar_context(None, "info", {"event": "x"})

        assert "practitioner_id" not in result
        assert "calendar_id" not in result


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})

        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestConfigureLogging:
    def test_sets_level_and_quiets_noise(self):
        configure_logging(level="DEBUG", fmt="text")

        assert logging.getLogger().level == logging.DEBUG
        assert len(logging.getLogger().handlers) == 1
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging(fmt="text")
        configure_logging(fmt="json")

        assert len(logging.getLogger().handlers) == 1

    def test_log_root_writes_json_lines(self, tmp_path):
        configure_logging(fmt="json", log_root=tmp_path, service_name="cal-test")

        with calendar_log_context(calendar_id="cal-1"):
            logging.getLogger("practice_calendar.test").warning("renewal failed")
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_file = tmp_path / "calendar" / "cal-test.log"
        assert (tmp_path / "uvicorn").is_dir()
        record = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert record["event"] == "renewal failed"
        assert record["calendar_id"] == "cal-1"
        assert record["level"] == "warning"
