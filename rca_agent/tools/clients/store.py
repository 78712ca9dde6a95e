"""Telemetry store clients.

The engine consumes an external, queryable trace/log/metric store through
the ``TelemetryStore`` protocol. Records come back as raw mappings in
whatever shape the store uses; normalization happens in the TelemetryIndex.

``InMemoryTelemetryStore`` implements the protocol over Python lists. It backs
the simulator, the tests, and offline analysis of exported telemetry files.
"""

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ...schema import LogRecord, MetricPoint, Span
from ..common.timestamps import normalize_timestamp

logger = logging.getLogger(__name__)

RawRecord = dict[str, Any]
RawTelemetry = dict[str, list[RawRecord]]


@runtime_checkable
class TelemetryStore(Protocol):
    """Retrieval interface of the external telemetry store."""

    async def fetch_trace(self, trace_id: str) -> RawTelemetry:
        """Return ``{"spans": [...], "logs": [...]}`` for one trace."""
        ...

    async def fetch_window(
        self, services: set[str], start_ns: int, end_ns: int
    ) -> RawTelemetry:
        """Return spans, logs and metrics for services inside a time range."""
        ...

    async def fetch_metrics(
        self, services: set[str], start_ns: int, end_ns: int
    ) -> list[RawRecord]:
        """Return metric points for services inside a time range."""
        ...


def _as_raw(record: Any) -> RawRecord:
    if hasattr(record, "model_dump"):
        return record.model_dump()
    return dict(record)


class InMemoryTelemetryStore:
    """List-backed TelemetryStore.

    Records are kept in write order so the index's "latest write wins"
    deduplication sees them in the order they were appended.

    Args:
        spans: Initial span records (dicts or Span models).
        logs: Initial log records.
        metrics: Initial metric points.
        latency_seconds: Artificial delay per query, for timeout testing.
    """

    def __init__(
        self,
        spans: list[Any] | None = None,
        logs: list[Any] | None = None,
        metrics: list[Any] | None = None,
        latency_seconds: float = 0.0,
    ) -> None:
        self._lock = threading.Lock()
        self._spans: list[RawRecord] = [_as_raw(s) for s in spans or []]
        self._logs: list[RawRecord] = [_as_raw(r) for r in logs or []]
        self._metrics: list[RawRecord] = [_as_raw(m) for m in metrics or []]
        self.latency_seconds = latency_seconds
        self.query_count = 0

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryTelemetryStore":
        """Load an exported ``{"spans", "logs", "metrics"}`` JSON document."""
        with open(path) as f:
            data = json.load(f)
        store = cls(
            spans=data.get("spans", []),
            logs=data.get("logs", []),
            metrics=data.get("metrics", []),
        )
        logger.info(
            f"Loaded telemetry export {path}: {len(store._spans)} spans, "
            f"{len(store._logs)} logs, {len(store._metrics)} metric points"
        )
        return store

    def add_spans(self, spans: list[Span | RawRecord]) -> None:
        with self._lock:
            self._spans.extend(_as_raw(s) for s in spans)

    def add_logs(self, logs: list[LogRecord | RawRecord]) -> None:
        with self._lock:
            self._logs.extend(_as_raw(r) for r in logs)

    def add_metrics(self, points: list[MetricPoint | RawRecord]) -> None:
        with self._lock:
            self._metrics.extend(_as_raw(p) for p in points)

    async def _simulate_latency(self) -> None:
        self.query_count += 1
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

    async def fetch_trace(self, trace_id: str) -> RawTelemetry:
        await self._simulate_latency()
        with self._lock:
            return {
                "spans": [dict(s) for s in self._spans if s.get("trace_id") == trace_id],
                "logs": [dict(r) for r in self._logs if r.get("trace_id") == trace_id],
            }

    async def fetch_window(
        self, services: set[str], start_ns: int, end_ns: int
    ) -> RawTelemetry:
        await self._simulate_latency()
        with self._lock:
            spans = [
                dict(s)
                for s in self._spans
                if s.get("service_name") in services
                and _overlaps(s, start_ns, end_ns)
            ]
            logs = [
                dict(r)
                for r in self._logs
                if r.get("service_name") in services
                and _within(r.get("timestamp"), start_ns, end_ns)
            ]
        metrics = await self.fetch_metrics(services, start_ns, end_ns)
        return {"spans": spans, "logs": logs, "metrics": metrics}

    async def fetch_metrics(
        self, services: set[str], start_ns: int, end_ns: int
    ) -> list[RawRecord]:
        with self._lock:
            return [
                dict(m)
                for m in self._metrics
                if m.get("service_name") in services
                and _within(m.get("timestamp"), start_ns, end_ns)
            ]


def _within(value: Any, start_ns: int, end_ns: int) -> bool:
    if value is None:
        return False
    try:
        ts = normalize_timestamp(value)
    except ValueError:
        return False
    return start_ns <= ts <= end_ns


def _overlaps(span: RawRecord, start_ns: int, end_ns: int) -> bool:
    try:
        s_start = normalize_timestamp(span.get("start_time"))
        s_end = normalize_timestamp(span.get("end_time", span.get("start_time")))
    except ValueError:
        return False
    return s_start <= end_ns and s_end >= start_ns
