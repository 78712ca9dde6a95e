"""Common utilities for RCA agent tools."""

from .cache import TelemetryCache
from .decorators import traced_operation
from .telemetry import get_meter, get_tracer, set_span_attribute
from .timestamps import normalize_timestamp

__all__ = [
    "TelemetryCache",
    "get_meter",
    "get_tracer",
    "normalize_timestamp",
    "set_span_attribute",
    "traced_operation",
]
