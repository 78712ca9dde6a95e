"""Latency / metric anomaly signal.

For every metric series of a service, the mean inside the incident window
(trace time bounds widened by a padding) is compared against a trailing
baseline window of the same series via a z-score. Positive z (worse than
baseline) is squashed into [0, 1] with ``tanh(z / scale)``; for metrics where
lower is worse (throughput, success rate) the sign is flipped first. The
service value is its most anomalous series.

Services with no metric history, or with too few baseline points, score 0.
"""

import logging
import math
from collections.abc import Sequence

from ....schema import LogRecord, MetricPoint, Span, TimeRange
from ...common.timestamps import NANOS_PER_SECOND
from ...config import SignalConfig
from ...trace.index import metric_series
from ..correlation.dependencies import ServiceGraph
from ..metrics.statistics import window_zscore
from .base import SignalMap, register_extractor

logger = logging.getLogger(__name__)


def incident_window(spans: Sequence[Span], padding_seconds: float) -> TimeRange | None:
    if not spans:
        return None
    pad = int(padding_seconds * NANOS_PER_SECOND)
    return TimeRange(
        start=min(s.start_time for s in spans) - pad,
        end=max(max(s.end_time, s.start_time) for s in spans) + pad,
    )


def normalize_zscore(z: float, scale: float) -> float:
    """Saturating map of a z-score onto [0, 1]; non-positive z maps to 0."""
    return math.tanh(max(z, 0.0) / scale)


class MetricAnomalySignal:
    """Metric anomaly signal extractor."""

    name = "metric_anomaly"

    def __init__(
        self,
        window_padding_seconds: float = 60.0,
        baseline_seconds: float = 900.0,
        saturation_scale: float = 3.0,
        min_baseline_points: int = 3,
        lower_is_worse: Sequence[str] = (),
    ) -> None:
        self.window_padding_seconds = window_padding_seconds
        self.baseline_seconds = baseline_seconds
        self.saturation_scale = saturation_scale
        self.min_baseline_points = min_baseline_points
        self.lower_is_worse = tuple(m.lower() for m in lower_is_worse)

    def _is_lower_worse(self, metric_name: str) -> bool:
        name = metric_name.lower()
        return any(marker in name for marker in self.lower_is_worse)

    def series_zscores(
        self, spans: Sequence[Span], metrics: Sequence[MetricPoint]
    ) -> dict[str, dict[str, float]]:
        """Oriented z-score per ``{service: {metric_name: z}}``.

        Series without enough baseline or window points are omitted.
        """
        window = incident_window(spans, self.window_padding_seconds)
        if window is None or not metrics:
            return {}
        baseline_start = window.start - int(self.baseline_seconds * NANOS_PER_SECOND)

        result: dict[str, dict[str, float]] = {}
        for service, by_metric in metric_series(metrics).items():
            for metric_name, points in by_metric.items():
                baseline = [
                    p.value for p in points if baseline_start <= p.timestamp < window.start
                ]
                current = [p.value for p in points if window.contains(p.timestamp)]
                if len(baseline) < self.min_baseline_points:
                    continue
                z = window_zscore(baseline, current)
                if z is None:
                    continue
                if self._is_lower_worse(metric_name):
                    z = -z
                result.setdefault(service, {})[metric_name] = z
        return result

    def extract(
        self,
        graph: ServiceGraph,
        spans: Sequence[Span],
        logs: Sequence[LogRecord],
        metrics: Sequence[MetricPoint],
    ) -> SignalMap:
        scores = {node: 0.0 for node in graph.nodes}
        for service, by_metric in self.series_zscores(spans, metrics).items():
            if service not in scores:
                continue
            scores[service] = max(
                normalize_zscore(z, self.saturation_scale) for z in by_metric.values()
            )
        return scores

    @classmethod
    def from_config(cls, config: SignalConfig) -> "MetricAnomalySignal":
        return cls(
            window_padding_seconds=config.metric_window_padding_seconds,
            baseline_seconds=config.metric_baseline_seconds,
            saturation_scale=config.zscore_saturation_scale,
            min_baseline_points=config.min_baseline_points,
            lower_is_worse=config.lower_is_worse_metrics,
        )


register_extractor(MetricAnomalySignal.name)(MetricAnomalySignal.from_config)
