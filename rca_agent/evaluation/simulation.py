"""Simulated microservice target for fault-injection experiments.

``SimulatedTarget`` implements the ``FaultInjector`` interface against a
synthetic service topology. Injecting a fault writes, into an
``InMemoryTelemetryStore``:

- a healthy metric baseline preceding the fault
- a burst of request traces during the fault window
- per-service metrics during the fault window

Fault effects:
- latency: the target's spans take ``magnitude`` ms longer, callers wait for
  it, the target logs slow-operation warnings and its latency metric rises.
- error: each request to the target fails with probability ``magnitude``;
  callers fail with "Timeout calling <target>" and error rates rise.
- resource-exhaustion: CPU/memory of the target approach ``magnitude`` and a
  fraction of its requests fail with "resource exhausted".

The simulation runs on a virtual clock and a seeded numpy generator, so the
same seed yields byte-identical telemetry.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from ..schema import FaultSpec, FaultType, SpanStatus
from ..tools.clients.fault_injection import FaultHandle
from ..tools.clients.store import InMemoryTelemetryStore
from ..tools.common.timestamps import NANOS_PER_MILLI, NANOS_PER_SECOND

logger = logging.getLogger(__name__)

# 2023-11-14T22:13:20Z
DEFAULT_START_NS = 1_700_000_000 * NANOS_PER_SECOND


@dataclass(frozen=True)
class ServiceSpec:
    """One simulated service."""

    name: str
    operation: str
    base_latency_ms: float
    calls: tuple[str, ...] = ()


DEFAULT_TOPOLOGY: tuple[ServiceSpec, ...] = (
    ServiceSpec("frontend", "GET /checkout", 12.0, ("checkout-service", "product-catalog")),
    ServiceSpec(
        "checkout-service", "PlaceOrder", 20.0, ("payment-service", "inventory-service")
    ),
    ServiceSpec("payment-service", "Charge", 35.0),
    ServiceSpec("inventory-service", "Reserve", 15.0, ("inventory-db",)),
    ServiceSpec("inventory-db", "SELECT stock", 4.0),
    ServiceSpec("product-catalog", "ListProducts", 8.0),
)


@dataclass
class _Request:
    spans: list[dict[str, Any]] = field(default_factory=list)
    logs: list[dict[str, Any]] = field(default_factory=list)


class SimulatedTarget:
    """Synthetic system under test that honours injected faults.

    Args:
        store: Store receiving the generated telemetry.
        topology: Services; the first entry is the entry point.
        seed: Random seed.
        start_ns: Initial virtual clock value.
        traces_per_fault: Requests generated during each fault window.
        metric_interval_seconds: Spacing of metric samples.
        baseline_seconds: Healthy metric history written before each fault.
    """

    def __init__(
        self,
        store: InMemoryTelemetryStore,
        topology: tuple[ServiceSpec, ...] = DEFAULT_TOPOLOGY,
        seed: int = 0,
        start_ns: int = DEFAULT_START_NS,
        traces_per_fault: int = 8,
        metric_interval_seconds: float = 15.0,
        baseline_seconds: float = 900.0,
    ) -> None:
        if not topology:
            raise ValueError("topology must contain at least one service")
        self.store = store
        self.services = {s.name: s for s in topology}
        self.entry = topology[0].name
        self.rng = np.random.default_rng(seed)
        self.clock_ns = start_ns
        self.traces_per_fault = traces_per_fault
        self.metric_interval_ns = int(metric_interval_seconds * NANOS_PER_SECOND)
        self.baseline_ns = int(baseline_seconds * NANOS_PER_SECOND)
        self.active: dict[str, tuple[FaultSpec, int, int]] = {}
        self._fault_seq = 0

    # ------------------------------------------------------------------
    # FaultInjector interface
    # ------------------------------------------------------------------

    async def inject_fault(self, spec: FaultSpec) -> FaultHandle:
        if spec.target_service not in self.services:
            raise ValueError(f"Unknown service '{spec.target_service}'")

        self._fault_seq += 1
        fault_id = f"fault-{self._fault_seq}"
        start = self.clock_ns + self.baseline_ns
        end = start + int(spec.duration_seconds * NANOS_PER_SECOND)
        self.active[fault_id] = (spec, start, end)

        self._emit_metrics(self.clock_ns, start)
        spacing = (end - start) // max(self.traces_per_fault, 1)
        for i in range(self.traces_per_fault):
            self.emit_request(start + i * spacing)
        self._emit_metrics(start, end)
        self.clock_ns = end + NANOS_PER_SECOND

        logger.info(
            f"💥 Injected {spec.fault_type.value} fault {fault_id} into "
            f"{spec.target_service} (magnitude {spec.magnitude})"
        )
        return FaultHandle(fault_id=fault_id, spec=spec, started_at_ns=start)

    async def clear_fault(self, handle: FaultHandle) -> None:
        if self.active.pop(handle.fault_id, None) is not None:
            logger.info(f"🧹 Cleared fault {handle.fault_id}")

    # ------------------------------------------------------------------
    # Traffic
    # ------------------------------------------------------------------

    def _faults_for(self, service: str, at_ns: int) -> list[FaultSpec]:
        return [
            spec
            for spec, start, end in self.active.values()
            if spec.target_service == service
            and spec.target_operation in (None, self.services[service].operation)
            and start <= at_ns <= end
        ]

    def _new_id(self, nbytes: int) -> str:
        return self.rng.bytes(nbytes).hex()

    def emit_request(self, at_ns: int) -> str:
        """Generate one end-to-end request starting at ``at_ns``; returns its trace id."""
        trace_id = self._new_id(16)
        request = _Request()
        self._call(request, trace_id, self.entry, None, at_ns)
        self.store.add_spans(request.spans)
        self.store.add_logs(request.logs)
        return trace_id

    def emit_healthy_traffic(self, count: int, spacing_seconds: float = 1.0) -> list[str]:
        """Generate ``count`` requests with no fault effects, advancing the clock."""
        trace_ids = []
        for _ in range(count):
            trace_ids.append(self.emit_request(self.clock_ns))
            self.clock_ns += int(spacing_seconds * NANOS_PER_SECOND)
        return trace_ids

    def _call(
        self,
        request: _Request,
        trace_id: str,
        service_name: str,
        parent_id: str | None,
        start_ns: int,
    ) -> tuple[int, bool]:
        """Simulate one service call; returns (end time, failed)."""
        service = self.services[service_name]
        span_id = self._new_id(8)
        faults = self._faults_for(service_name, start_ns)

        own_ms = service.base_latency_ms * float(self.rng.uniform(0.8, 1.2))
        own_error: str | None = None
        warning: str | None = None
        for fault in faults:
            if fault.fault_type is FaultType.LATENCY:
                own_ms += fault.magnitude
                warning = f"slow {service.operation} took {own_ms:.0f}ms"
            elif fault.fault_type is FaultType.ERROR:
                if self.rng.random() < fault.magnitude:
                    own_error = f"Internal error in {service_name}: {service.operation} failed"
            elif fault.fault_type is FaultType.RESOURCE_EXHAUSTION:
                own_ms += 200.0 * fault.magnitude
                warning = f"memory pressure at {fault.magnitude:.0%}"
                if self.rng.random() < fault.magnitude / 2:
                    own_error = f"{service_name} resource exhausted"

        cursor = start_ns + int(own_ms / 2 * NANOS_PER_MILLI)
        failed_child: str | None = None
        if own_error is None:
            for callee in service.calls:
                child_end, child_failed = self._call(
                    request, trace_id, callee, span_id, cursor
                )
                cursor = child_end
                if child_failed:
                    failed_child = callee
                    break
        end_ns = cursor + int(own_ms / 2 * NANOS_PER_MILLI)

        message = own_error or (f"Timeout calling {failed_child}" if failed_child else None)
        events = []
        if message:
            events.append(
                {
                    "name": "exception",
                    "timestamp": end_ns,
                    "attributes": {"exception.message": message},
                }
            )
            severity, text = "ERROR", message
        elif warning:
            severity, text = "WARN", warning
        else:
            severity, text = "INFO", f"{service.operation} ok"
        request.logs.append(
            self._log(trace_id, span_id, service_name, end_ns, severity, text)
        )

        request.spans.append(
            {
                "trace_id": trace_id,
                "span_id": span_id,
                "parent_id": parent_id,
                "service_name": service_name,
                "operation_name": service.operation,
                "start_time": start_ns,
                "end_time": end_ns,
                "status": SpanStatus.ERROR.value if message else SpanStatus.OK.value,
                "attributes": {"service.name": service_name},
                "events": events,
            }
        )
        return end_ns, message is not None

    @staticmethod
    def _log(
        trace_id: str, span_id: str, service: str, ts: int, severity: str, message: str
    ) -> dict[str, Any]:
        return {
            "trace_id": trace_id,
            "span_id": span_id,
            "service_name": service,
            "timestamp": ts,
            "severity": severity,
            "message": message,
        }

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _emit_metrics(self, start_ns: int, end_ns: int) -> None:
        points = []
        for ts in range(start_ns, end_ns, self.metric_interval_ns):
            for service in self.services.values():
                latency = service.base_latency_ms * float(self.rng.normal(1.0, 0.05))
                error_rate = max(float(self.rng.normal(0.002, 0.001)), 0.0)
                cpu = min(max(float(self.rng.normal(0.35, 0.03)), 0.0), 1.0)
                memory = min(max(float(self.rng.normal(0.5, 0.02)), 0.0), 1.0)

                for fault in self._faults_for(service.name, ts):
                    if fault.fault_type is FaultType.LATENCY:
                        latency += fault.magnitude
                    elif fault.fault_type is FaultType.ERROR:
                        error_rate = fault.magnitude
                    else:
                        cpu = max(cpu, fault.magnitude)
                        memory = max(memory, fault.magnitude)
                        error_rate = fault.magnitude / 2

                points.extend(
                    {
                        "service_name": service.name,
                        "metric_name": name,
                        "timestamp": ts,
                        "value": value,
                    }
                    for name, value in (
                        ("latency_p95_ms", latency),
                        ("error_rate", error_rate),
                        ("cpu_utilization", cpu),
                        ("memory_utilization", memory),
                    )
                )
        self.store.add_metrics(points)
