"""Log-anomaly signal: the simple rule-based baseline.

Score = anomalous log lines / all log lines for a service within the trace's
time span. A line is anomalous if its severity is WARN or worse, or if its
message contains one of the configured keywords. Services without logs in the
window score 0.
"""

from collections.abc import Sequence

from ....schema import LogRecord, MetricPoint, Span
from ...config import SignalConfig
from ...trace.index import logs_by_service
from ..correlation.dependencies import ServiceGraph
from .base import SignalMap, register_extractor
from .metric_anomaly import incident_window

ANOMALOUS_SEVERITIES = frozenset({"WARN", "ERROR", "FATAL"})


class LogAnomalySignal:
    """Log anomaly signal extractor."""

    name = "log_anomaly"

    def __init__(
        self, keywords: Sequence[str] = (), window_padding_seconds: float = 1.0
    ) -> None:
        self.keywords = tuple(k.lower() for k in keywords if k)
        self.window_padding_seconds = window_padding_seconds

    def is_anomalous(self, record: LogRecord) -> bool:
        if record.severity in ANOMALOUS_SEVERITIES:
            return True
        message = record.message.lower()
        return any(k in message for k in self.keywords)

    def extract(
        self,
        graph: ServiceGraph,
        spans: Sequence[Span],
        logs: Sequence[LogRecord],
        metrics: Sequence[MetricPoint],
    ) -> SignalMap:
        scores = {node: 0.0 for node in graph.nodes}
        window = incident_window(spans, self.window_padding_seconds)
        if window is None or not logs:
            return scores

        for service, records in logs_by_service(logs, window).items():
            if service not in scores or not records:
                continue
            anomalous = sum(1 for r in records if self.is_anomalous(r))
            scores[service] = anomalous / len(records)
        return scores

    @classmethod
    def from_config(cls, config: SignalConfig) -> "LogAnomalySignal":
        return cls(
            keywords=config.log_anomaly_keywords,
            window_padding_seconds=config.log_window_padding_seconds,
        )


register_extractor(LogAnomalySignal.name)(LogAnomalySignal.from_config)

