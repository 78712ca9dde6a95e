"""Trace retrieval and normalization."""

from .index import (
    TelemetryIndex,
    logs_by_service,
    metric_series,
    normalize_telemetry,
    spans_by_service,
)

__all__ = [
    "TelemetryIndex",
    "logs_by_service",
    "metric_series",
    "normalize_telemetry",
    "spans_by_service",
]
