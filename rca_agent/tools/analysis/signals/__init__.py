"""Per-service anomaly signals.

Importing this package registers the built-in extractors.
"""

from .base import (
    SignalExtractor,
    SignalMap,
    available_extractors,
    build_extractors,
    register_extractor,
    run_extractors,
)
from .error_propagation import ErrorPropagationSignal
from .log_anomaly import LogAnomalySignal
from .metric_anomaly import MetricAnomalySignal

__all__ = [
    "ErrorPropagationSignal",
    "LogAnomalySignal",
    "MetricAnomalySignal",
    "SignalExtractor",
    "SignalMap",
    "available_extractors",
    "build_extractors",
    "register_extractor",
    "run_extractors",
]
