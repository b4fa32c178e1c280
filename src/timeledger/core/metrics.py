"""OpenTelemetry metrics instruments for calendar synchronization.

Instruments
-----------
  timeledger.sync.runs_total            Counter  (labels: provider, status)
      Completed connection sync runs by outcome.

  timeledger.sync.run_duration_ms       Histogram (label: provider)
      End-to-end duration of a connection sync run.

  timeledger.sync.mutations_total       Counter  (labels: provider, kind)
      Applied mutations (local_create, local_update, local_delete,
      remote_create, remote_update, remote_delete).

  timeledger.credentials.refresh_total  Counter  (labels: provider, result)
      OAuth token refresh attempts (success / rejected / transport_error).

Instruments are created lazily from the global MeterProvider.  When
OTEL_EXPORTER_OTLP_ENDPOINT is not set the global no-op provider is used and
all recordings are silent.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "timeledger"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the sync service.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
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


class SyncMetrics:
    """Lazily-created sync instruments with small recording helpers."""

    def __init__(self) -> None:
        self.__runs: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None
        self.__mutations: metrics.Counter | None = None
        self.__refreshes: metrics.Counter | None = None

    @property
    def _runs(self) -> metrics.Counter:
        if self.__runs is None:
            self.__runs = get_meter().create_counter(
                name="timeledger.sync.runs_total",
                description="Completed connection sync runs by outcome",
                unit="runs",
            )
        return self.__runs

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = get_meter().create_histogram(
                name="timeledger.sync.run_duration_ms",
                description="End-to-end connection sync run duration in milliseconds",
                unit="ms",
            )
        return self.__duration

    @property
    def _mutations(self) -> metrics.Counter:
        if self.__mutations is None:
            self.__mutations = get_meter().create_counter(
                name="timeledger.sync.mutations_total",
                description="Applied sync mutations by kind",
                unit="mutations",
            )
        return self.__mutations

    @property
    def _refreshes(self) -> metrics.Counter:
        if self.__refreshes is None:
            self.__refreshes = get_meter().create_counter(
                name="timeledger.credentials.refresh_total",
                description="OAuth token refresh attempts by result",
                unit="refreshes",
            )
        return self.__refreshes

    def record_run(self, provider: str, status: str, duration_ms: float) -> None:
        self._runs.add(1, {"provider": provider, "status": status})
        self._duration.record(duration_ms, {"provider": provider})

    def record_mutations(self, provider: str, counts: dict[str, int]) -> None:
        for kind, count in counts.items():
            if count:
                self._mutations.add(count, {"provider": provider, "kind": kind})

    def record_refresh(self, provider: str, result: str) -> None:
        self._refreshes.add(1, {"provider": provider, "result": result})


sync_metrics = SyncMetrics()
