import json

import pytest

from rca_agent.tools.clients.store import InMemoryTelemetryStore, TelemetryStore
from rca_agent.tools.common.timestamps import normalize_timestamp
from tests.fixtures.synthetic_otel_data import SAMPLE_TRACE_ID, sample_incident_trace


def test_implements_store_protocol():
    assert isinstance(InMemoryTelemetryStore(), TelemetryStore)


@pytest.mark.asyncio
async def test_fetch_trace_filters_by_trace_id(sample_trace_spans, chain_trace_spans):
    store = InMemoryTelemetryStore(spans=sample_trace_spans + chain_trace_spans)
    raw = await store.fetch_trace(SAMPLE_TRACE_ID)
    assert len(raw["spans"]) == 2
    assert raw["logs"] == []
    assert store.query_count == 1


@pytest.mark.asyncio
async def test_fetch_window_filters_services_and_time(chain_trace_spans, incident_logs):
    store = InMemoryTelemetryStore(spans=chain_trace_spans, logs=incident_logs)
    start = normalize_timestamp("2024-01-01T09:59:00Z")
    end = normalize_timestamp("2024-01-01T10:01:00Z")

    raw = await store.fetch_window({"payments"}, start, end)
    assert {s["service_name"] for s in raw["spans"]} == {"payments"}
    assert len(raw["logs"]) == 3

    later = normalize_timestamp("2024-01-01T11:00:00Z")
    empty = await store.fetch_window({"payments"}, later, later + 1)
    assert empty["spans"] == []


@pytest.mark.asyncio
async def test_fetch_metrics_range(latency_spike_metrics):
    store = InMemoryTelemetryStore(metrics=latency_spike_metrics)
    start = normalize_timestamp("2024-01-01T09:59:00Z")
    end = normalize_timestamp("2024-01-01T10:01:00Z")
    points = await store.fetch_metrics({"payments"}, start, end)
    assert [p["value"] for p in points] == [850.0, 870.0]


@pytest.mark.asyncio
async def test_from_file_and_append(tmp_path):
    path = tmp_path / "export.json"
    path.write_text(json.dumps({"spans": sample_incident_trace()}))

    store = InMemoryTelemetryStore.from_file(path)
    raw = await store.fetch_trace(SAMPLE_TRACE_ID)
    assert len(raw["spans"]) == 2

    store.add_logs(
        [
            {
                "trace_id": SAMPLE_TRACE_ID,
                "service_name": "checkout-service",
                "timestamp": "2024-01-01T10:00:00Z",
                "severity": "ERROR",
                "message": "Timeout calling payment-service",
            }
        ]
    )
    raw = await store.fetch_trace(SAMPLE_TRACE_ID)
    assert len(raw["logs"]) == 1
