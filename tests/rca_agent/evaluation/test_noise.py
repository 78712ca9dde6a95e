"""Tests for telemetry dropout."""

import numpy as np
import pytest

from rca_agent.evaluation import TelemetryDropout, drop_telemetry
from rca_agent.schema import LogRecord, MetricPoint, Span, TelemetryBundle
from tests.fixtures.synthetic_otel_data import TraceGenerator


@pytest.fixture
def bundle(incident_logs, latency_spike_metrics):
    gen = TraceGenerator()
    spans = []
    for i in range(10):
        spans += gen.create_chain_trace(
            ["gateway", "orders", "payments", "ledger"],
            failing_service="payments",
            trace_id=f"{i:032x}",
        )
    return TelemetryBundle(
        spans=[Span.model_validate(s) for s in spans],
        logs=[LogRecord.model_validate(r) for r in incident_logs],
        metrics=[MetricPoint.model_validate(m) for m in latency_spike_metrics],
    )


def span_ids(bundle):
    return {(s.trace_id, s.span_id) for s in bundle.spans}


def test_zero_fraction_keeps_everything(bundle):
    assert drop_telemetry(bundle, 0.0, np.random.default_rng(1)) is bundle


def test_drop_sets_are_nested(bundle):
    dropout = TelemetryDropout(bundle, np.random.default_rng(42))
    kept = [span_ids(dropout.apply(f)) for f in (0.1, 0.3, 0.5, 0.9)]
    for lighter, heavier in zip(kept, kept[1:]):
        assert heavier <= lighter
    assert len(kept[-1]) < len(bundle.spans)


def test_every_modality_is_thinned(bundle):
    dropped = drop_telemetry(bundle, 0.99, np.random.default_rng(0))
    assert len(dropped.spans) < len(bundle.spans)
    assert len(dropped.metrics) < len(bundle.metrics)


def test_same_seed_same_result(bundle):
    a = drop_telemetry(bundle, 0.4, np.random.default_rng(7))
    b = drop_telemetry(bundle, 0.4, np.random.default_rng(7))
    assert a.model_dump() == b.model_dump()


@pytest.mark.parametrize("fraction", [-0.1, 1.0, 1.5])
def test_invalid_fraction(bundle, fraction):
    with pytest.raises(ValueError, match="drop fraction"):
        TelemetryDropout(bundle, np.random.default_rng(0)).apply(fraction)
