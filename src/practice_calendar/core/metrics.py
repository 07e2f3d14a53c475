"""OpenTelemetry metrics instruments and the in-process metrics snapshot.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  calendar.provider.calls          Counter   (labels: operation, outcome)
  calendar.provider.latency_ms     Histogram (label: operation)
  calendar.conflicts.detected      Counter
  calendar.events.created          Counter
  calendar.cache.lookups           Counter   (label: result=hit|miss)
  calendar.channels.renewals       Counter   (label: outcome)

``MetricsRecorder`` mirrors the same recordings into per-instance counters
so ``CalendarService.get_metrics()`` can report them without an exporter.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "practice_calendar"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _provider_calls() -> metrics.Counter:
    return get_meter().create_counter(
        name="calendar.provider.calls",
        description="Calendar provider attempts by operation and outcome",
        unit="calls",
    )


def _provider_latency_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calendar.provider.latency_ms",
        description="Calendar provider attempt latency in milliseconds",
        unit="ms",
    )


def _conflicts_detected() -> metrics.Counter:
    return get_meter().create_counter(
        name="calendar.conflicts.detected",
        description="Availability checks that found overlapping busy time",
        unit="conflicts",
    )


def _events_created() -> metrics.Counter:
    return get_meter().create_counter(
        name="calendar.events.created",
        description="Appointment events created at the provider",
        unit="events",
    )


def _cache_lookups() -> metrics.Counter:
    return get_meter().create_counter(
        name="calendar.cache.lookups",
        description="Busy-time cache lookups (label: result=hit|miss)",
        unit="lookups",
    )


def _channel_renewals() -> metrics.Counter:
    return get_meter().create_counter(
        name="calendar.channels.renewals",
        description="Push channel renewal attempts by outcome",
        unit="renewals",
    )


@dataclass
class MetricsSnapshot:
    events_created: int
    conflicts_detected: int
    api_calls_today: int
    error_rate: float
    average_response_time_ms: float
    last_updated: datetime


class MetricsRecorder:
    """Per-service counters plus lazily created OTel instruments.

    Create one instance per ``CalendarService``.  It is safe to construct
    before ``init_metrics`` is called; OTel recordings are no-ops until a
    real provider is installed.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._events_created = 0
        self._conflicts_detected = 0
        self._operations = 0
        self._failed_operations = 0
        self._total_duration_ms = 0.0
        self._api_calls_today = 0
        self._api_calls_day: date = self._clock().date()
        self._last_updated = self._clock()

        self.__provider_calls: metrics.Counter | None = None
        self.__provider_latency: metrics.Histogram | None = None
        self.__conflicts: metrics.Counter | None = None
        self.__events: metrics.Counter | None = None
        self.__cache_lookups: metrics.Counter | None = None
        self.__renewals: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _provider_calls(self) -> metrics.Counter:
        if self.__provider_calls is None:
            self.__provider_calls = _provider_calls()
        return self.__provider_calls

    @property
    def _provider_latency(self) -> metrics.Histogram:
        if self.__provider_latency is None:
            self.__provider_latency = _provider_latency_ms()
        return self.__provider_latency

    @property
    def _conflicts(self) -> metrics.Counter:
        if self.__conflicts is None:
            self.__conflicts = _conflicts_detected()
        return self.__conflicts

    @property
    def _events(self) -> metrics.Counter:
        if self.__events is None:
            self.__events = _events_created()
        return self.__events

    @property
    def _cache_lookups(self) -> metrics.Counter:
        if self.__cache_lookups is None:
            self.__cache_lookups = _cache_lookups()
        return self.__cache_lookups

    @property
    def _renewals(self) -> metrics.Counter:
        if self.__renewals is None:
            self.__renewals = _channel_renewals()
        return self.__renewals

    # -- recording helpers ---------------------------------------------------

    def _roll_day(self) -> None:
        today = self._clock().date()
        if today != self._api_calls_day:
            self._api_calls_day = today
            self._api_calls_today = 0

    def record_api_call(self, operation: str) -> None:
        """Count one provider attempt toward today's API call total."""
        self._roll_day()
        self._api_calls_today += 1
        self._last_updated = self._clock()

    def record_operation(self, operation: str, *, duration_ms: float, success: bool) -> None:
        """Record the outcome of one executor-wrapped operation (all attempts)."""
        self._operations += 1
        if not success:
            self._failed_operations += 1
        self._total_duration_ms += duration_ms
        self._last_updated = self._clock()
        attrs = {"operation": operation, "outcome": "success" if success else "error"}
        self._provider_calls.add(1, attrs)
        self._provider_latency.record(duration_ms, {"operation": operation})

    def record_conflict(self) -> None:
        self._conflicts_detected += 1
        self._last_updated = self._clock()
        self._conflicts.add(1)

    def record_event_created(self) -> None:
        self._events_created += 1
        self._last_updated = self._clock()
        self._events.add(1)

    def record_cache_lookup(self, *, hit: bool) -> None:
        self._cache_lookups.add(1, {"result": "hit" if hit else "miss"})

    def record_renewal(self, *, success: bool) -> None:
        self._renewals.add(1, {"outcome": "success" if success else "error"})

    def snapshot(self) -> MetricsSnapshot:
        self._roll_day()
        error_rate = self._failed_operations / self._operations if self._operations else 0.0
        average = self._total_duration_ms / self._operations if self._operations else 0.0
        return MetricsSnapshot(
            events_created=self._events_created,
            conflicts_detected=self._conflicts_detected,
            api_calls_today=self._api_calls_today,
            error_rate=error_rate,
            average_response_time_ms=average,
            last_updated=self._last_updated,
        )
