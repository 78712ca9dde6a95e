"""Tests for the simulated fault-injection target."""

import pytest

from rca_agent.evaluation import DEFAULT_TOPOLOGY, ServiceSpec, SimulatedTarget
from rca_agent.schema import FaultSpec, FaultType, Span
from rca_agent.tools.clients.fault_injection import FaultInjector
from rca_agent.tools.clients.store import InMemoryTelemetryStore

ALL_SERVICES = {s.name for s in DEFAULT_TOPOLOGY}
FOREVER = (0, 2**62)


async def all_spans(store):
    raw = await store.fetch_window(ALL_SERVICES, *FOREVER)
    return [Span.model_validate(s) for s in raw["spans"]]


def test_is_a_fault_injector():
    assert isinstance(SimulatedTarget(InMemoryTelemetryStore()), FaultInjector)


def test_rejects_empty_topology():
    with pytest.raises(ValueError, match="at least one service"):
        SimulatedTarget(InMemoryTelemetryStore(), topology=())


@pytest.mark.asyncio
async def test_healthy_traffic_visits_every_service():
    store = InMemoryTelemetryStore()
    target = SimulatedTarget(store, seed=1)

    trace_ids = target.emit_healthy_traffic(3)
    spans = await all_spans(store)

    assert len(set(trace_ids)) == 3
    assert len(spans) == 3 * len(DEFAULT_TOPOLOGY)
    assert not any(s.is_error for s in spans)


@pytest.mark.asyncio
async def test_error_fault_stops_the_request_at_the_target():
    store = InMemoryTelemetryStore()
    target = SimulatedTarget(store, seed=1, traces_per_fault=4)
    spec = FaultSpec(
        target_service="payment-service",
        fault_type=FaultType.ERROR,
        magnitude=1.0,
        duration_seconds=60,
    )

    handle = await target.inject_fault(spec)
    spans = await all_spans(store)

    assert handle.spec == spec
    assert {s.service_name for s in spans} == {
        "frontend",
        "checkout-service",
        "payment-service",
    }
    payment = [s for s in spans if s.service_name == "payment-service"]
    assert len(payment) == 4
    assert all("Internal error" in s.error_message for s in payment)
    checkout = [s for s in spans if s.service_name == "checkout-service"]
    assert all(s.error_message == "Timeout calling payment-service" for s in checkout)

    raw = await store.fetch_metrics({"payment-service"}, *FOREVER)
    rates = [m for m in raw if m["metric_name"] == "error_rate"]
    assert max(m["value"] for m in rates) == 1.0

    await target.clear_fault(handle)
    await target.clear_fault(handle)
    assert target.active == {}


@pytest.mark.asyncio
async def test_latency_fault_slows_the_target():
    store = InMemoryTelemetryStore()
    target = SimulatedTarget(store, seed=2, traces_per_fault=2)
    await target.inject_fault(
        FaultSpec(
            target_service="inventory-db",
            fault_type=FaultType.LATENCY,
            magnitude=500,
            duration_seconds=30,
        )
    )
    spans = await all_spans(store)
    db = [s for s in spans if s.service_name == "inventory-db"]
    assert all(s.duration_ms > 500 for s in db)
    assert not any(s.is_error for s in spans)


@pytest.mark.asyncio
async def test_operation_filter():
    store = InMemoryTelemetryStore()
    target = SimulatedTarget(store, seed=2, traces_per_fault=2)
    await target.inject_fault(
        FaultSpec(
            target_service="payment-service",
            fault_type=FaultType.ERROR,
            magnitude=1.0,
            duration_seconds=30,
            target_operation="Refund",
        )
    )
    assert not any(s.is_error for s in await all_spans(store))


@pytest.mark.asyncio
async def test_unknown_target():
    target = SimulatedTarget(InMemoryTelemetryStore())
    spec = FaultSpec(
        target_service="nope", fault_type=FaultType.ERROR, magnitude=0.5, duration_seconds=5
    )
    with pytest.raises(ValueError, match="Unknown service"):
        await target.inject_fault(spec)


@pytest.mark.asyncio
async def test_same_seed_same_telemetry():
    topology = (ServiceSpec("a", "op", 5.0, ("b",)), ServiceSpec("b", "op", 5.0))
    spec = FaultSpec(
        target_service="b",
        fault_type=FaultType.RESOURCE_EXHAUSTION,
        magnitude=0.9,
        duration_seconds=20,
    )
    dumps = []
    for _ in range(2):
        store = InMemoryTelemetryStore()
        await SimulatedTarget(store, topology=topology, seed=11).inject_fault(spec)
        dumps.append(await store.fetch_window({"a", "b"}, *FOREVER))
    assert dumps[0] == dumps[1]
