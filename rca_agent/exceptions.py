"""Error taxonomy for the root cause localization engine.

Every failure surfaced to a caller carries a machine-readable ``kind`` so that
the orchestrator, the HTTP layer and the evaluation harness can report it
without string matching.
"""

from enum import Enum
from typing import Any

__all__ = [
    "ErrorKind",
    "IncidentNotObservedError",
    "InvalidFaultSpecError",
    "MalformedReasoningOutputError",
    "RcaError",
    "ReasoningTimeoutError",
    "RetrievalTimeoutError",
    "TraceNotFoundError",
]


class ErrorKind(str, Enum):
    """Machine-readable failure kinds."""

    NOT_FOUND = "NotFound"
    RETRIEVAL_TIMEOUT = "RetrievalTimeout"
    MALFORMED_REASONING_OUTPUT = "MalformedReasoningOutput"
    REASONING_TIMEOUT = "ReasoningTimeout"
    INCIDENT_NOT_OBSERVED = "IncidentNotObserved"
    INVALID_FAULT_SPEC = "InvalidFaultSpec"
    INTERNAL = "Internal"


class RcaError(Exception):
    """Base exception for all root cause analysis errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TraceNotFoundError(RcaError):
    """No spans exist for the requested trace or window."""

    kind = ErrorKind.NOT_FOUND


class RetrievalTimeoutError(RcaError):
    """The telemetry store did not answer within the retrieval budget."""

    kind = ErrorKind.RETRIEVAL_TIMEOUT


class MalformedReasoningOutputError(RcaError):
    """The reasoning component twice returned output missing required fields."""

    kind = ErrorKind.MALFORMED_REASONING_OUTPUT

    def __init__(
        self,
        message: str,
        raw_response: str | None = None,
        missing_fields: list[str] | None = None,
    ) -> None:
        super().__init__(message, {"missing_fields": missing_fields or []})
        self.raw_response = raw_response
        self.missing_fields = missing_fields or []


class ReasoningTimeoutError(RcaError):
    """The reasoning call exceeded its deadline and was cancelled."""

    kind = ErrorKind.REASONING_TIMEOUT


class IncidentNotObservedError(RcaError):
    """Injected fault never produced telemetry in the store."""

    kind = ErrorKind.INCIDENT_NOT_OBSERVED


class InvalidFaultSpecError(RcaError):
    """Fault spec failed validation or overlaps another scheduled fault."""

    kind = ErrorKind.INVALID_FAULT_SPEC
