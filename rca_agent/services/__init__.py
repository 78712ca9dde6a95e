"""Services consumed by the Agent Orchestrator."""

from .reasoning import (
    AdkReasoningBackend,
    HeuristicReasoningBackend,
    ReasoningBackend,
    build_reasoning_backend,
)

__all__ = [
    "AdkReasoningBackend",
    "HeuristicReasoningBackend",
    "ReasoningBackend",
    "build_reasoning_backend",
]
