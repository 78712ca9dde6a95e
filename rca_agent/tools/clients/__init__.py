"""External collaborator clients: telemetry store and fault injector."""

from .fault_injection import FaultHandle, FaultInjector
from .store import InMemoryTelemetryStore, TelemetryStore

__all__ = [
    "FaultHandle",
    "FaultInjector",
    "InMemoryTelemetryStore",
    "TelemetryStore",
]
