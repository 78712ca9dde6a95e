"""End-to-end: the checkout incident trace through the whole pipeline."""

import json

import pytest

from rca_agent.agent import RootCauseOrchestrator
from rca_agent.schema import OrchestratorState
from rca_agent.services.reasoning import HeuristicReasoningBackend
from rca_agent.tools.clients.store import InMemoryTelemetryStore
from rca_agent.tools.config import FusionStrategyName, load_config
from rca_agent.tools.trace.index import TelemetryIndex
from tests.fixtures.synthetic_otel_data import SAMPLE_TRACE_ID, sample_incident_trace


@pytest.fixture
def export_file(tmp_path):
    path = tmp_path / "export.json"
    path.write_text(json.dumps({"spans": sample_incident_trace(), "logs": [], "metrics": []}))
    return path


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", list(FusionStrategyName))
async def test_checkout_incident(export_file, monkeypatch, strategy):
    monkeypatch.setenv("RCA_REASONING_BACKEND", "heuristic")
    monkeypatch.setenv("RCA_FUSION_STRATEGY", strategy.value)
    config = load_config()

    store = InMemoryTelemetryStore.from_file(export_file)
    orchestrator = RootCauseOrchestrator(
        TelemetryIndex(store, config=config.retrieval),
        HeuristicReasoningBackend(),
        config=config,
    )
    try:
        result = await orchestrator.analyze(SAMPLE_TRACE_ID)
    finally:
        orchestrator.close()

    assert result.state is OrchestratorState.DONE
    names = [s.service_name for s in result.suspects]
    assert names.index("checkout-service") < names.index("frontend")
    assert result.suspects[0].span_id == "a1b2c3d4e5f60002"
    assert "checkout-service" in result.verdict.affected_services
    assert result.graph_edges == [
        {
            "source": "frontend",
            "target": "checkout-service",
            "call_count": 1,
            "error_count": 1,
            "error_rate": 1.0,
        }
    ]
