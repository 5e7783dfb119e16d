"""OpenTelemetry metrics instruments for the action gate.

Instruments
-----------
  actiongate.gate.decisions_total       Counter (labels: decision, method)
      Final decisions returned by the execution gate.

  actiongate.semantic.checks_total      Counter (label: verdict)
      Semantic checker outcomes, including ``unknown`` for timeouts/errors.

  actiongate.approvals.resolved_total   Counter (label: status)
      Approval requests reaching a terminal status (incl. ``expired``).

  actiongate.gate.process_latency_ms    Histogram
      End-to-end duration of one ``process`` invocation.

Instruments are created lazily from the global MeterProvider, so it is safe
to construct GateMetrics before ``init_metrics`` is called.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "actiongate"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for a gateway process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global no-op
    MeterProvider is used and all recordings are silent.
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
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


class GateMetrics:
    """Lazily-created instruments shared by the gate, validator and workflow."""

    def __init__(self) -> None:
        self._decisions: metrics.Counter | None = None
        self._semantic: metrics.Counter | None = None
        self._resolved: metrics.Counter | None = None
        self._latency: metrics.Histogram | None = None

    @property
    def _decisions_counter(self) -> metrics.Counter:
        if self._decisions is None:
            self._decisions = get_meter().create_counter(
                name="actiongate.gate.decisions_total",
                description="Final decisions returned by the execution gate",
                unit="decisions",
            )
        return self._decisions

    @property
    def _semantic_counter(self) -> metrics.Counter:
        if self._semantic is None:
            self._semantic = get_meter().create_counter(
                name="actiongate.semantic.checks_total",
                description="Semantic relevance checker outcomes",
                unit="checks",
            )
        return self._semantic

    @property
    def _resolved_counter(self) -> metrics.Counter:
        if self._resolved is None:
            self._resolved = get_meter().create_counter(
                name="actiongate.approvals.resolved_total",
                description="Approval requests reaching a terminal status",
                unit="requests",
            )
        return self._resolved

    @property
    def _latency_histogram(self) -> metrics.Histogram:
        if self._latency is None:
            self._latency = get_meter().create_histogram(
                name="actiongate.gate.process_latency_ms",
                description="Duration of one execution gate invocation in milliseconds",
                unit="ms",
            )
        return self._latency

    def record_decision(self, decision: str, method: str | None) -> None:
        self._decisions_counter.add(1, {"decision": decision, "method": method or "none"})

    def record_semantic_check(self, verdict: str) -> None:
        self._semantic_counter.add(1, {"verdict": verdict})

    def record_approval_resolved(self, status: str) -> None:
        self._resolved_counter.add(1, {"status": status})

    def record_process_latency(self, latency_ms: float) -> None:
        self._latency_histogram.record(latency_ms)


gate_metrics = GateMetrics()
