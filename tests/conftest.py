"""Shared test fixtures for RCA agent tests."""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from rca_agent.agent import RootCauseOrchestrator
from rca_agent.schema import Span
from rca_agent.services.reasoning import HeuristicReasoningBackend
from rca_agent.tools.clients.store import InMemoryTelemetryStore
from rca_agent.tools.common.cache import TelemetryCache
from rca_agent.tools.config import RcaConfig
from rca_agent.tools.trace.index import TelemetryIndex
from tests.fixtures.synthetic_otel_data import (
    LogRecordGenerator,
    MetricSeriesGenerator,
    TraceGenerator,
    sample_incident_trace,
)

# ============================================================================
# Raw telemetry fixtures
# ============================================================================


@pytest.fixture
def sample_trace_spans() -> list[dict[str, Any]]:
    """The two-span checkout incident trace."""
    return sample_incident_trace()


@pytest.fixture
def chain_trace_spans() -> list[dict[str, Any]]:
    """gateway -> orders -> payments -> ledger, failing in payments."""
    return TraceGenerator().create_chain_trace(
        ["gateway", "orders", "payments", "ledger"],
        failing_service="payments",
        trace_id="c" * 32,
    )


@pytest.fixture
def fanout_trace_spans() -> list[dict[str, Any]]:
    return TraceGenerator().create_fanout_trace(
        "frontend",
        ["cart", "catalog", "recommendations"],
        failing_child="cart",
        trace_id="f" * 32,
    )


@pytest.fixture
def incident_logs() -> list[dict[str, Any]]:
    gen = LogRecordGenerator()
    return [
        gen.create_log("payments", "charge failed: connection refused", "ERROR", "c" * 32),
        gen.create_log("payments", "charge failed: connection refused", "ERROR", "c" * 32),
        gen.create_log("payments", "retrying charge", "INFO", "c" * 32),
        gen.create_log("orders", "order accepted", "INFO", "c" * 32),
        gen.create_log("orders", "order accepted", "INFO", "c" * 32),
    ]


@pytest.fixture
def latency_spike_metrics() -> list[dict[str, Any]]:
    gen = MetricSeriesGenerator()
    return gen.create_series(
        "payments",
        "latency_p95_ms",
        baseline=[100.0, 102.0, 98.0, 101.0, 99.0],
        incident=[850.0, 870.0],
    ) + gen.create_series(
        "orders",
        "latency_p95_ms",
        baseline=[50.0, 51.0, 49.0, 50.0, 50.0],
        incident=[50.0, 51.0],
    )


# ============================================================================
# Component fixtures
# ============================================================================


@pytest.fixture
def parsed_sample_spans(sample_trace_spans) -> list[Span]:
    return [Span.model_validate(s) for s in sample_trace_spans]


@pytest.fixture
def config() -> RcaConfig:
    config = RcaConfig()
    config.reasoning.backend = "heuristic"
    config.reasoning.deadline_seconds = 5.0
    config.retrieval.timeout_seconds = 2.0
    config.signals.extractor_timeout_seconds = 2.0
    return config


@pytest.fixture
def store(
    sample_trace_spans, chain_trace_spans, incident_logs, latency_spike_metrics
) -> InMemoryTelemetryStore:
    return InMemoryTelemetryStore(
        spans=sample_trace_spans + chain_trace_spans,
        logs=incident_logs,
        metrics=latency_spike_metrics,
    )


@pytest.fixture
def index(store, config) -> TelemetryIndex:
    index = TelemetryIndex(
        store, cache=TelemetryCache(ttl_seconds=60), config=config.retrieval
    )
    yield index
    index.close()


@pytest.fixture
def orchestrator(index, config) -> RootCauseOrchestrator:
    return RootCauseOrchestrator(index, HeuristicReasoningBackend(), config=config)


@pytest.fixture
def mock_reasoner() -> AsyncMock:
    """Reasoning backend whose answers tests script via ``side_effect``."""
    reasoner = AsyncMock()
    reasoner.reason = AsyncMock()
    return reasoner
