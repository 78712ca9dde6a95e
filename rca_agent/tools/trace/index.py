"""Telemetry Index: bounded, cached retrieval and normalization.

Retrieval goes through the external ``TelemetryStore``; every answer is
normalized into a ``TelemetryBundle``:

- timestamps become epoch nanoseconds (see ``tools.common.timestamps``)
- spans sharing ``(trace_id, span_id)`` and metric points sharing
  ``(service, metric_name, timestamp)`` are deduplicated, latest write wins
- malformed records are dropped with a warning instead of failing the request

Trace-scoped retrievals are cached per trace id for the cache TTL, with at
most one store query in flight per trace id.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from ...exceptions import RetrievalTimeoutError, TraceNotFoundError
from ...schema import LogRecord, MetricPoint, Span, TelemetryBundle, TimeRange
from ..clients.store import RawRecord, TelemetryStore
from ..common import TelemetryCache, traced_operation
from ..common.telemetry import get_meter
from ..common.timestamps import NANOS_PER_SECOND
from ..config import RetrievalConfig

logger = logging.getLogger(__name__)

meter = get_meter(__name__)

dropped_records = meter.create_counter(
    name="rca_agent.index.dropped_records",
    description="Telemetry records dropped during normalization",
    unit="1",
)


def _parse_all(model: Any, records: Iterable[RawRecord], kind: str) -> list[Any]:
    parsed = []
    for raw in records:
        try:
            parsed.append(model.model_validate(raw))
        except ValidationError as e:
            dropped_records.add(1, {"kind": kind})
            logger.warning(f"Dropping malformed {kind} record: {e.error_count()} errors")
    return parsed


def dedupe_spans(spans: Iterable[Span]) -> list[Span]:
    """Keep the last-written span per (trace_id, span_id), ordered by start time."""
    latest: dict[tuple[str, str], Span] = {}
    for span in spans:
        latest[(span.trace_id, span.span_id)] = span
    return sorted(latest.values(), key=lambda s: (s.start_time, s.trace_id, s.span_id))


def dedupe_metrics(points: Iterable[MetricPoint]) -> list[MetricPoint]:
    """Keep the last-written point per (service, metric_name, timestamp)."""
    latest: dict[tuple[str, str, int], MetricPoint] = {}
    for point in points:
        latest[(point.service_name, point.metric_name, point.timestamp)] = point
    return sorted(
        latest.values(), key=lambda p: (p.service_name, p.metric_name, p.timestamp)
    )


def normalize_telemetry(
    spans: Iterable[RawRecord] = (),
    logs: Iterable[RawRecord] = (),
    metrics: Iterable[RawRecord] = (),
) -> TelemetryBundle:
    """Parse, deduplicate and order raw store records into a bundle."""
    parsed_logs: list[LogRecord] = _parse_all(LogRecord, logs, "log")
    return TelemetryBundle(
        spans=dedupe_spans(_parse_all(Span, spans, "span")),
        logs=sorted(parsed_logs, key=lambda r: (r.timestamp, r.service_name)),
        metrics=dedupe_metrics(_parse_all(MetricPoint, metrics, "metric")),
    )


# =============================================================================
# Lookup helpers
# =============================================================================


def spans_by_service(spans: Iterable[Span]) -> dict[str, list[Span]]:
    grouped: dict[str, list[Span]] = defaultdict(list)
    for span in spans:
        grouped[span.service_name].append(span)
    return dict(grouped)


def logs_by_service(
    logs: Iterable[LogRecord], window: TimeRange | None = None
) -> dict[str, list[LogRecord]]:
    grouped: dict[str, list[LogRecord]] = defaultdict(list)
    for record in logs:
        if window is None or window.contains(record.timestamp):
            grouped[record.service_name].append(record)
    return dict(grouped)


def metric_series(
    points: Iterable[MetricPoint],
) -> dict[str, dict[str, list[MetricPoint]]]:
    """Group metric points as ``{service: {metric_name: [points by time]}}``."""
    series: dict[str, dict[str, list[MetricPoint]]] = defaultdict(
        lambda: defaultdict(list)
    )
    for point in points:
        series[point.service_name][point.metric_name].append(point)
    for by_metric in series.values():
        for pts in by_metric.values():
            pts.sort(key=lambda p: p.timestamp)
    return {svc: dict(by_metric) for svc, by_metric in series.items()}


# =============================================================================
# Index
# =============================================================================


class TelemetryIndex:
    """Retrieves and normalizes telemetry for one trace or a time window.

    Args:
        store: The external telemetry store.
        cache: Per-trace read-through cache. Owned by the caller, who is
            responsible for closing it on shutdown.
        config: Retrieval settings (timeout, metric lookback).
    """

    def __init__(
        self,
        store: TelemetryStore,
        cache: TelemetryCache | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or RetrievalConfig()
        self.cache = cache or TelemetryCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
        )

    @traced_operation
    async def retrieve(self, trace_id: str) -> TelemetryBundle:
        """Return spans, logs and metrics for one trace.

        Raises:
            TraceNotFoundError: The store holds no spans for ``trace_id``.
            RetrievalTimeoutError: The store did not answer in time.
        """
        return await self.cache.get_or_fetch(
            trace_id,
            lambda: self._bounded(self._fetch_trace(trace_id), f"trace {trace_id}"),
        )

    @traced_operation
    async def retrieve_window(
        self, services: set[str], time_range: TimeRange
    ) -> TelemetryBundle:
        """Return telemetry for a set of services inside a time range.

        Out-of-band logs (no trace id) are included. Metrics extend back by the
        configured lookback so the anomaly signal has a baseline.

        Raises:
            TraceNotFoundError: No spans exist for the services in the range.
            RetrievalTimeoutError: The store did not answer in time.
        """
        return await self._bounded(
            self._fetch_window(set(services), time_range),
            f"window {sorted(services)}",
        )

    async def _bounded(self, coro: Any, what: str) -> TelemetryBundle:
        try:
            return await asyncio.wait_for(coro, timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(
                f"Retrieval of {what} exceeded {self.config.timeout_seconds}s timeout"
            )
            raise RetrievalTimeoutError(
                f"Retrieval of {what} timed out after {self.config.timeout_seconds}s"
            ) from e

    def _metric_range(self, bounds: TimeRange) -> tuple[int, int]:
        return (
            bounds.start - int(self.config.metric_lookback_seconds * NANOS_PER_SECOND),
            bounds.end + int(self.config.metric_lookahead_seconds * NANOS_PER_SECOND),
        )

    async def _fetch_trace(self, trace_id: str) -> TelemetryBundle:
        raw = await self.store.fetch_trace(trace_id)
        partial = normalize_telemetry(raw.get("spans", []), raw.get("logs", []))
        bounds = partial.time_bounds()
        if bounds is None:
            raise TraceNotFoundError(f"No spans found for trace {trace_id}")

        # Out-of-band logs are excluded from trace-scoped retrieval.
        logs = [r for r in partial.logs if r.trace_id == trace_id]
        start, end = self._metric_range(bounds)
        raw_metrics = await self.store.fetch_metrics(partial.services, start, end)
        bundle = TelemetryBundle(
            spans=partial.spans,
            logs=logs,
            metrics=dedupe_metrics(_parse_all(MetricPoint, raw_metrics, "metric")),
        )
        logger.info(
            f"Retrieved trace {trace_id}: {len(bundle.spans)} spans, "
            f"{len(bundle.logs)} logs, {len(bundle.metrics)} metric points"
        )
        return bundle

    async def _fetch_window(
        self, services: set[str], time_range: TimeRange
    ) -> TelemetryBundle:
        raw = await self.store.fetch_window(services, time_range.start, time_range.end)
        partial = normalize_telemetry(raw.get("spans", []), raw.get("logs", []))
        if not partial.spans:
            raise TraceNotFoundError(
                f"No spans found for services {sorted(services)} in window"
            )
        start, end = self._metric_range(time_range)
        raw_metrics = await self.store.fetch_metrics(services, start, end)
        bundle = TelemetryBundle(
            spans=partial.spans,
            logs=partial.logs,
            metrics=dedupe_metrics(_parse_all(MetricPoint, raw_metrics, "metric")),
        )
        logger.info(
            f"Retrieved window for {len(services)} services: {len(bundle.spans)} spans "
            f"across {len(bundle.trace_ids)} traces"
        )
        return bundle

    def close(self) -> None:
        """Release the cache held by this index."""
        self.cache.close()
