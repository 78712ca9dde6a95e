"""Fault-injection client interface.

The evaluation harness drives controlled incidents through this interface.
Concrete injectors talk to a chaos tool, a service mesh or, in tests, to the
in-process ``SimulatedTarget`` (see ``rca_agent.evaluation.simulation``).
"""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ...schema import FaultSpec


@dataclass(frozen=True)
class FaultHandle:
    """Opaque reference to an active fault."""

    fault_id: str
    spec: FaultSpec
    started_at_ns: int
    # Span the injector knows it targeted, when it can tell
    target_span_id: str | None = field(default=None)


@runtime_checkable
class FaultInjector(Protocol):
    """Fault-injection interface consumed by the harness."""

    async def inject_fault(self, spec: FaultSpec) -> FaultHandle:
        """Start a fault and return a handle for clearing it."""
        ...

    async def clear_fault(self, handle: FaultHandle) -> None:
        """Stop a previously injected fault. Must be idempotent."""
        ...
