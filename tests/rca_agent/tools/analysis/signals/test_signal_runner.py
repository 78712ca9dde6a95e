"""Tests for extractor registration and the concurrent runner."""

import time

import pytest

from rca_agent.schema import TelemetryBundle
from rca_agent.tools.analysis.correlation.dependencies import build_service_graph
from rca_agent.tools.analysis.signals import (
    ErrorPropagationSignal,
    LogAnomalySignal,
    MetricAnomalySignal,
    available_extractors,
    build_extractors,
    run_extractors,
)
from rca_agent.tools.analysis.signals.base import complete_signal
from rca_agent.tools.config import SignalConfig


class SlowSignal:
    name = "slow"

    def extract(self, graph, spans, logs, metrics):
        time.sleep(0.5)
        return {node: 1.0 for node in graph.nodes}


class BrokenSignal:
    name = "broken"

    def extract(self, graph, spans, logs, metrics):
        raise ZeroDivisionError("bad math")


class OutOfRangeSignal:
    name = "loud"

    def extract(self, graph, spans, logs, metrics):
        return {"checkout-service": 7.0, "ghost": 1.0}


@pytest.fixture
def sample(parsed_sample_spans):
    return build_service_graph(parsed_sample_spans), TelemetryBundle(spans=parsed_sample_spans)


def test_builtin_extractors_are_registered():
    assert available_extractors() == ["error_propagation", "log_anomaly", "metric_anomaly"]
    extractors = build_extractors(SignalConfig())
    assert [type(e) for e in extractors] == [
        ErrorPropagationSignal,
        MetricAnomalySignal,
        LogAnomalySignal,
    ]


def test_unknown_signal_is_rejected():
    with pytest.raises(ValueError, match="Unknown signal"):
        build_extractors(SignalConfig(enabled_signals=["error_propagation", "vibes"]))


def test_complete_signal_clamps_and_fills(sample):
    graph, _ = sample
    assert complete_signal(graph, {"frontend": -1.0, "checkout-service": float("nan")}) == {
        "checkout-service": 0.0,
        "frontend": 0.0,
    }


class TestRunExtractors:
    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_neutral(self, sample):
        graph, bundle = sample
        signals = await run_extractors(
            [SlowSignal(), ErrorPropagationSignal()], graph, bundle, timeout=0.05
        )

        assert signals["slow"] == {"checkout-service": 0.0, "frontend": 0.0}
        assert signals["error_propagation"]["checkout-service"] == 1.0

    @pytest.mark.asyncio
    async def test_exception_falls_back_to_neutral(self, sample):
        graph, bundle = sample
        signals = await run_extractors([BrokenSignal()], graph, bundle, timeout=1.0)
        assert signals == {"broken": {"checkout-service": 0.0, "frontend": 0.0}}

    @pytest.mark.asyncio
    async def test_values_are_clamped_to_graph_nodes(self, sample):
        graph, bundle = sample
        signals = await run_extractors([OutOfRangeSignal()], graph, bundle, timeout=1.0)
        assert signals["loud"] == {"checkout-service": 1.0, "frontend": 0.0}

    @pytest.mark.asyncio
    async def test_preserves_extractor_order(self, sample):
        graph, bundle = sample
        extractors = build_extractors(SignalConfig())
        signals = await run_extractors(extractors, graph, bundle, timeout=1.0)
        assert list(signals) == ["error_propagation", "metric_anomaly", "log_anomaly"]
