"""Fault-injection and evaluation harness."""

from .harness import EvaluationHarness, targets_are_disjoint, validate_fault_spec
from .metrics import ground_truth_rank, mean_reciprocal_rank, top_k_accuracy
from .noise import TelemetryDropout, drop_telemetry
from .simulation import DEFAULT_TOPOLOGY, ServiceSpec, SimulatedTarget

__all__ = [
    "DEFAULT_TOPOLOGY",
    "EvaluationHarness",
    "ServiceSpec",
    "SimulatedTarget",
    "TelemetryDropout",
    "drop_telemetry",
    "ground_truth_rank",
    "mean_reciprocal_rank",
    "targets_are_disjoint",
    "top_k_accuracy",
    "validate_fault_spec",
]
