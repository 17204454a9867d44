"""
Observability Module
-------------------
This module provides observability features including Prometheus metrics,
component health tracking, and OpenTelemetry integration.
"""

import logging
from typing import Dict, Any, Optional
from datetime import datetime

from fastapi import FastAPI
from prometheus_client import Counter, Histogram, Gauge, Info
from starlette_exporter import PrometheusMiddleware, handle_metrics
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

from driftwatch.core.config import settings

# Set up logging
logger = logging.getLogger(__name__)

# Prometheus metrics
COMPARISON_COUNTER = Counter(
    'driftwatch_comparisons_total',
    'Total number of desired/live comparisons',
    ['outcome']
)

DRIFT_OPENED_COUNTER = Counter(
    'driftwatch_drift_opened_total',
    'Total number of drift records opened',
    ['drift_class']
)

DRIFT_CLASSIFIED_COUNTER = Counter(
    'driftwatch_drift_classified_total',
    'Total number of drift classifications',
    ['severity', 'strategy']
)

DEGRADED_SCORING_COUNTER = Counter(
    'driftwatch_degraded_scoring_total',
    'Scorer failures that fell back to the rule-based classifier',
    ['reason']
)

COMPARISON_DURATION = Histogram(
    'driftwatch_comparison_duration_seconds',
    'Duration of a single resource comparison pass in seconds',
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5)
)

REMEDIATION_COUNTER = Counter(
    'driftwatch_remediations_total',
    'Remediation decisions by action and outcome',
    ['action', 'outcome']
)

EVENTS_PUBLISHED_COUNTER = Counter(
    'driftwatch_events_published_total',
    'Drift lifecycle events appended to the event log',
    ['event_type']
)

COMPONENT_HEALTH_GAUGE = Gauge(
    'driftwatch_component_healthy',
    'Whether a component reports ok (1) or not (0)',
    ['component']
)

SYSTEM_INFO = Info(
    'driftwatch_system_info',
    'Information about the Driftwatch engine'
)

SYSTEM_INFO.info({
    'version': settings.VERSION,
    'environment': settings.ENVIRONMENT,
    'start_time': datetime.now().isoformat()
})


class HealthStatus:
    OK = "ok"
    DEGRADED = "degraded"
    ERROR = "error"


class HealthMonitor:
    """Tracks per-component health; degraded signals are never silent."""

    def __init__(self):
        self._components: Dict[str, Dict[str, Any]] = {}

    def mark_ok(self, component: str, details: Optional[str] = None) -> None:
        self._set(component, HealthStatus.OK, details)

    def mark_degraded(self, component: str, reason: str) -> None:
        previous = self._components.get(component, {}).get("status")
        if previous != HealthStatus.DEGRADED:
            logger.warning(f"Component {component} degraded: {reason}")
        self._set(component, HealthStatus.DEGRADED, reason)

    def mark_error(self, component: str, reason: str) -> None:
        logger.error(f"Component {component} error: {reason}")
        self._set(component, HealthStatus.ERROR, reason)

    def status_of(self, component: str) -> str:
        return self._components.get(component, {}).get("status", HealthStatus.OK)

    def is_ok(self, component: str) -> bool:
        return self.status_of(component) == HealthStatus.OK

    def snapshot(self) -> Dict[str, Any]:
        statuses = [c["status"] for c in self._components.values()]
        if HealthStatus.ERROR in statuses:
            overall = HealthStatus.ERROR
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.OK
        return {
            "status": overall,
            "components": {name: dict(state) for name, state in self._components.items()},
            "timestamp": datetime.now().isoformat(),
        }

    def _set(self, component: str, status: str, details: Optional[str]) -> None:
        self._components[component] = {
            "status": status,
            "details": details,
            "since": datetime.now().isoformat(),
        }
        COMPONENT_HEALTH_GAUGE.labels(component=component).set(1 if status == HealthStatus.OK else 0)


# OpenTelemetry setup
def setup_tracing():
    """Initialize OpenTelemetry tracing"""
    if not settings.ENABLE_TRACING:
        logger.info("OpenTelemetry tracing is disabled")
        return None

    trace.set_tracer_provider(TracerProvider())
    tracer = trace.get_tracer(__name__)

    otlp_exporter = OTLPSpanExporter(endpoint=settings.OTLP_ENDPOINT, insecure=True)
    span_processor = BatchSpanProcessor(otlp_exporter)
    trace.get_tracer_provider().add_span_processor(span_processor)

    logger.info(f"OpenTelemetry tracing initialized with endpoint {settings.OTLP_ENDPOINT}")
    return tracer


tracer = trace.get_tracer("driftwatch")


def initialize_metrics(app: FastAPI) -> None:
    """
    Initialize metrics and expose a /metrics endpoint

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(
        PrometheusMiddleware,
        app_name="driftwatch",
        prefix="driftwatch",
        group_paths=True
    )
    app.add_route("/metrics", handle_metrics)

    logger.info("Prometheus metrics initialized")
