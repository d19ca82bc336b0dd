"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

EXTRACTIONS = Counter(
    "retrievald_extractions_total",
    "File extractions by terminal outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

DOCUMENTS_PERSISTED = Counter(
    "retrievald_documents_persisted_total",
    "Documents written to the store",
    labelnames=("source_type",),
    registry=REGISTRY,
)

SUGGEST_LATENCY = Histogram(
    "retrievald_suggest_latency_seconds",
    "Latency of suggest queries",
    labelnames=("mode",),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=REGISTRY,
)

INGEST_DURATION = Histogram(
    "retrievald_ingest_duration_seconds",
    "Per-event ingestion duration",
    labelnames=("source_type",),
    registry=REGISTRY,
)

QUEUE_DEPTH = Gauge(
    "retrievald_queue_depth",
    "Pending ingestion events",
    registry=REGISTRY,
)

REQUEST_COUNT = Counter(
    "retrievald_http_requests_total",
    "Total HTTP requests",
    labelnames=("endpoint", "method", "status"),
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "EXTRACTIONS",
    "DOCUMENTS_PERSISTED",
    "SUGGEST_LATENCY",
    "INGEST_DURATION",
    "QUEUE_DEPTH",
    "REQUEST_COUNT",
    "metrics_response",
]
