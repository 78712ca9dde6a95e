"""Pydantic schemas for the root cause localization engine.

This module defines Pydantic schemas for:
- Telemetry entities (Span, LogRecord, MetricPoint) normalized from the store
- Ranking outputs (SuspectScore) and the reasoning verdict (Verdict)
- Orchestration results (AnalysisResult, AnalysisFailure)
- Fault injection and evaluation records (FaultSpec, Incident, EvaluationResult)

All models are frozen: they are value objects that are built once per
analysis request and never mutated afterwards.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .exceptions import ErrorKind
from .tools.common.timestamps import NANOS_PER_MILLI, normalize_timestamp

Scalar = str | int | float | bool | None


class SpanStatus(str, Enum):
    """Span status as seen by the engine (UNSET collapses into OK)."""

    OK = "OK"
    ERROR = "ERROR"


_ERROR_STATUS_VALUES = {"error", "status_code_error", "2"}


def _coerce_status(value: Any) -> Any:
    if isinstance(value, SpanStatus):
        return value
    if isinstance(value, dict):
        value = value.get("code", value.get("status_code", "OK"))
    if str(value).strip().lower() in _ERROR_STATUS_VALUES:
        return SpanStatus.ERROR
    return SpanStatus.OK


# =============================================================================
# Telemetry Schemas
# =============================================================================


class SpanEvent(BaseModel):
    """A timestamped event recorded on a span (exceptions, log events)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Event name, e.g. 'exception'")
    timestamp: int = Field(
        validation_alias=AliasChoices("timestamp", "time"),
        description="Event time in epoch nanoseconds",
    )
    attributes: dict[str, Scalar] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_time(cls, v: Any) -> int:
        return normalize_timestamp(v)


class Span(BaseModel):
    """One unit of work within a trace."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    trace_id: str = Field(description="Trace identifier")
    span_id: str = Field(description="Span identifier, unique within the trace")
    parent_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("parent_id", "parent_span_id"),
        description="Parent span ID; None for root spans",
    )
    service_name: str = Field(description="Emitting service (resource service.name)")
    operation_name: str = Field(
        validation_alias=AliasChoices("operation_name", "name"),
        description="Span name / operation",
    )
    start_time: int = Field(description="Start in epoch nanoseconds")
    end_time: int = Field(description="End in epoch nanoseconds")
    status: SpanStatus = Field(default=SpanStatus.OK)
    attributes: dict[str, Scalar] = Field(default_factory=dict)
    events: list[SpanEvent] = Field(default_factory=list)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _normalize_times(cls, v: Any) -> int:
        return normalize_timestamp(v)

    @field_validator("parent_id", mode="before")
    @classmethod
    def _empty_parent_is_root(cls, v: Any) -> Any:
        if v in ("", "0", "0000000000000000"):
            return None
        return v

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: Any) -> Any:
        return _coerce_status(v)

    @property
    def is_error(self) -> bool:
        return self.status is SpanStatus.ERROR

    @property
    def duration_ms(self) -> float:
        return max(self.end_time - self.start_time, 0) / NANOS_PER_MILLI

    @property
    def error_message(self) -> str | None:
        """Best-effort error description from exception events or attributes."""
        for event in self.events:
            if event.name == "exception":
                msg = event.attributes.get("exception.message")
                if msg:
                    return str(msg)
        for key in ("error.message", "status.message", "exception.message"):
            if self.attributes.get(key):
                return str(self.attributes[key])
        return None


_SEVERITY_ALIASES = {
    "WARNING": "WARN",
    "ERR": "ERROR",
    "CRITICAL": "FATAL",
    "ALERT": "FATAL",
    "EMERGENCY": "FATAL",
    "NOTICE": "INFO",
    "DEFAULT": "INFO",
}


def _severity_from_number(number: int) -> str:
    # OpenTelemetry SeverityNumber ranges.
    if number >= 21:
        return "FATAL"
    if number >= 17:
        return "ERROR"
    if number >= 13:
        return "WARN"
    if number >= 9:
        return "INFO"
    if number >= 5:
        return "DEBUG"
    return "TRACE"


class LogRecord(BaseModel):
    """A log line, optionally correlated with a trace and span."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    trace_id: str | None = Field(default=None)
    span_id: str | None = Field(default=None)
    service_name: str
    timestamp: int = Field(description="Epoch nanoseconds")
    severity: str = Field(default="INFO", description="Upper-case severity text")
    message: str = Field(
        default="", validation_alias=AliasChoices("message", "body", "textPayload")
    )
    attributes: dict[str, Scalar] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_time(cls, v: Any) -> int:
        return normalize_timestamp(v)

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, v: Any) -> str:
        if v is None:
            return "INFO"
        if isinstance(v, int) and not isinstance(v, bool):
            return _severity_from_number(v)
        text = str(v).strip().upper()
        return _SEVERITY_ALIASES.get(text, text or "INFO")

    @field_validator("trace_id", "span_id", mode="before")
    @classmethod
    def _blank_is_none(cls, v: Any) -> Any:
        return v or None


class MetricPoint(BaseModel):
    """A single sample of a service metric time series."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    metric_name: str
    timestamp: int = Field(description="Epoch nanoseconds")
    value: float
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_time(cls, v: Any) -> int:
        return normalize_timestamp(v)


class TimeRange(BaseModel):
    """Closed time interval in epoch nanoseconds."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @field_validator("start", "end", mode="before")
    @classmethod
    def _normalize_bounds(cls, v: Any) -> int:
        return normalize_timestamp(v)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.end < self.start:
            raise ValueError("time range end precedes start")
        return self

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp <= self.end


class TelemetryBundle(BaseModel):
    """Spans, logs and metrics retrieved for one analysis request."""

    model_config = ConfigDict(frozen=True)

    spans: list[Span] = Field(default_factory=list)
    logs: list[LogRecord] = Field(default_factory=list)
    metrics: list[MetricPoint] = Field(default_factory=list)

    @property
    def services(self) -> set[str]:
        return {s.service_name for s in self.spans}

    @property
    def trace_ids(self) -> list[str]:
        return sorted({s.trace_id for s in self.spans})

    def time_bounds(self) -> TimeRange | None:
        if not self.spans:
            return None
        return TimeRange(
            start=min(s.start_time for s in self.spans),
            end=max(max(s.end_time, s.start_time) for s in self.spans),
        )


# =============================================================================
# Ranking & Verdict Schemas
# =============================================================================


class SignalContribution(BaseModel):
    """One signal's part in a suspect's fused score."""

    model_config = ConfigDict(frozen=True)

    signal_name: str
    raw_value: float
    weight: float


class SuspectScore(BaseModel):
    """A ranked suspect service (optionally narrowed to a span)."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    span_id: str | None = Field(
        default=None, description="Most suspicious span in the service, if any"
    )
    score: float = Field(ge=0.0, le=1.0)
    contributing_signals: list[SignalContribution] = Field(default_factory=list)


EvidenceKind = Literal["span", "log", "metric", "service", "edge", "text"]


class EvidenceRef(BaseModel):
    """Reference from the verdict back into the analyzed telemetry."""

    model_config = ConfigDict(frozen=True)

    kind: EvidenceKind = Field(default="text")
    ref: str = Field(description="Identifier: span_id, service name, 'a->b', ...")
    note: str | None = None


class Verdict(BaseModel):
    """Structured root-cause conclusion returned to the operator."""

    model_config = ConfigDict(frozen=True)

    root_cause_summary: str = Field(min_length=1)
    affected_services: list[str] = Field(
        description="Set of affected services (deduplicated, order preserved)"
    )
    supporting_evidence: list[EvidenceRef] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("affected_services", mode="after")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class ReasoningRequest(BaseModel):
    """Payload handed to the external reasoning component."""

    model_config = ConfigDict(frozen=True)

    instructions: str
    context: dict[str, Any]


# =============================================================================
# Orchestration Schemas
# =============================================================================


class OrchestratorState(str, Enum):
    """States of one root cause analysis run."""

    IDLE = "Idle"
    RETRIEVING = "Retrieving"
    GRAPH_BUILDING = "GraphBuilding"
    RANKING = "Ranking"
    PROMPT_ASSEMBLY = "PromptAssembly"
    AWAITING_REASONING = "AwaitingReasoning"
    PARSING = "Parsing"
    DONE = "Done"
    FAILED = "Failed"


class AnalysisFailure(BaseModel):
    """Failure surfaced to the caller together with partial evidence."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    last_completed_state: OrchestratorState
    suspects: list[SuspectScore] = Field(default_factory=list)
    graph_edges: list[dict[str, Any]] = Field(default_factory=list)
    raw_response: str | None = Field(
        default=None, description="Unparsed reasoning output kept for inspection"
    )


class AnalysisResult(BaseModel):
    """Outcome of ``analyze``: a verdict on success, a failure otherwise."""

    model_config = ConfigDict(frozen=True)

    trace_id: str
    state: OrchestratorState
    transitions: list[OrchestratorState] = Field(default_factory=list)
    verdict: Verdict | None = None
    failure: AnalysisFailure | None = None
    suspects: list[SuspectScore] = Field(default_factory=list)
    graph_edges: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is OrchestratorState.DONE


# =============================================================================
# Fault Injection & Evaluation Schemas
# =============================================================================


class FaultType(str, Enum):
    """Kinds of fault the harness can inject."""

    LATENCY = "latency"
    ERROR = "error"
    RESOURCE_EXHAUSTION = "resource-exhaustion"


class FaultSpec(BaseModel):
    """Declarative description of a fault to inject."""

    model_config = ConfigDict(frozen=True)

    target_service: str = Field(min_length=1)
    fault_type: FaultType
    magnitude: float = Field(
        gt=0.0,
        description="Added latency in ms (latency), error probability in (0, 1] "
        "(error) or utilization in (0, 1] (resource-exhaustion)",
    )
    duration_seconds: float = Field(gt=0.0, le=3600.0)
    target_operation: str | None = Field(
        default=None, description="Restrict the fault to one operation"
    )

    @model_validator(mode="after")
    def _check_magnitude(self) -> "FaultSpec":
        if self.fault_type is not FaultType.LATENCY and self.magnitude > 1.0:
            raise ValueError(
                f"magnitude for {self.fault_type.value} faults must be in (0, 1]"
            )
        return self


class Incident(BaseModel):
    """Ground-truth record of one injected fault."""

    model_config = ConfigDict(frozen=True)

    fault_spec: FaultSpec
    injection_window: TimeRange
    ground_truth_service: str
    ground_truth_span: str | None = None
    trace_ids: list[str] = Field(default_factory=list)


class TraceEvaluation(BaseModel):
    """Ranking quality for one captured trace."""

    model_config = ConfigDict(frozen=True)

    trace_id: str
    ground_truth_rank: int | None = Field(
        default=None, description="1-based rank of the ground truth, None if absent"
    )
    top_suspects: list[str] = Field(default_factory=list)
    analysis_state: OrchestratorState


class EvaluationResult(BaseModel):
    """Scores for one experiment."""

    model_config = ConfigDict(frozen=True)

    incident: Incident
    k: int
    top1_accuracy: float
    topk_accuracy: float
    mrr: float
    per_noise_level_accuracy: dict[float, float] = Field(default_factory=dict)
    traces: list[TraceEvaluation] = Field(default_factory=list)
