"""Root Cause Localization Agent - orchestrates the analysis pipeline.

One ``analyze(trace_id)`` call walks a strictly sequential state machine:

    Idle -> Retrieving -> GraphBuilding -> Ranking -> PromptAssembly
         -> AwaitingReasoning -> Parsing -> Done | Failed

Retrieval, graph and ranking failures jump straight to Failed without calling
the reasoning component. A reasoning answer missing required fields gets one
corrective retry (Parsing -> AwaitingReasoning -> Parsing); a second bad
answer fails with MalformedReasoningOutput and the raw text is kept. Every
failure carries its kind, the last completed state and whatever evidence was
gathered (ranking, graph edges).

The orchestrator keeps no per-request state on ``self``; concurrent analyses
share only the Telemetry Index cache.
"""

import asyncio
import json
import logging
import re
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from .exceptions import (
    ErrorKind,
    MalformedReasoningOutputError,
    RcaError,
    ReasoningTimeoutError,
)
from .prompt import CORRECTIVE_INSTRUCTION, INVESTIGATION_REQUEST, VERDICT_OUTPUT_INSTRUCTIONS
from .schema import (
    AnalysisFailure,
    AnalysisResult,
    OrchestratorState,
    ReasoningRequest,
    SuspectScore,
    TelemetryBundle,
    TimeRange,
    Verdict,
)
from .services.reasoning import ReasoningBackend
from .tools.analysis.correlation.dependencies import ServiceGraph, build_service_graph
from .tools.analysis.logs.patterns import summarize_log_patterns
from .tools.analysis.ranking.fusion import FusionStrategy, build_strategy, rank
from .tools.analysis.signals import (
    MetricAnomalySignal,
    SignalExtractor,
    build_extractors,
    run_extractors,
)
from .tools.common.decorators import traced_operation
from .tools.common.telemetry import get_meter, set_span_attribute
from .tools.config import RcaConfig
from .tools.trace.index import TelemetryIndex

logger = logging.getLogger(__name__)

meter = get_meter(__name__)

analysis_outcomes = meter.create_counter(
    name="rca_agent.analysis.outcomes",
    description="Terminal states of analyze() runs",
    unit="1",
)

REQUIRED_VERDICT_FIELDS = (
    "root_cause_summary",
    "affected_services",
    "supporting_evidence",
    "recommended_actions",
)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_EVIDENCE_KINDS = ("span", "log", "metric", "service", "edge", "text")


# =============================================================================
# Verdict parsing
# =============================================================================


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Pull the first JSON object out of free text (code fences allowed)."""
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)] + [text]
    for candidate in candidates:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end <= start:
            continue
        try:
            data = json.loads(candidate[start : end + 1])
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _coerce_evidence(item: Any) -> Any:
    if isinstance(item, str):
        kind, sep, ref = item.partition(":")
        if sep and kind.strip().lower() in _EVIDENCE_KINDS and ref.strip():
            return {"kind": kind.strip().lower(), "ref": ref.strip()}
        return {"kind": "text", "ref": item}
    if isinstance(item, dict) and str(item.get("kind", "text")).lower() not in _EVIDENCE_KINDS:
        return {**item, "kind": "text"}
    return item


def parse_verdict(text: str, default_confidence: float = 0.0) -> Verdict:
    """Validates a reasoning answer against the Verdict schema.

    Args:
        text: Raw reasoning output.
        default_confidence: Used when the answer omits ``confidence``.

    Raises:
        MalformedReasoningOutputError: The answer has no JSON object, lacks
            required fields, or holds values of the wrong shape.
    """
    data = extract_json_object(text or "")
    if data is None:
        raise MalformedReasoningOutputError(
            "Reasoning output contains no JSON object",
            raw_response=text,
            missing_fields=list(REQUIRED_VERDICT_FIELDS),
        )

    missing = [f for f in REQUIRED_VERDICT_FIELDS if f not in data]
    if missing:
        raise MalformedReasoningOutputError(
            f"Reasoning output is missing {', '.join(missing)}",
            raw_response=text,
            missing_fields=missing,
        )

    affected = data["affected_services"]
    if isinstance(affected, str):
        affected = [affected]
    actions = data["recommended_actions"]
    if isinstance(actions, str):
        actions = [actions]
    evidence = data["supporting_evidence"]
    if not isinstance(evidence, list):
        evidence = [evidence]

    confidence = data.get("confidence")
    try:
        return Verdict(
            root_cause_summary=data["root_cause_summary"],
            affected_services=affected,
            supporting_evidence=[_coerce_evidence(e) for e in evidence],
            recommended_actions=actions,
            confidence=default_confidence if confidence is None else confidence,
        )
    except ValidationError as e:
        bad_fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        raise MalformedReasoningOutputError(
            f"Reasoning output has invalid {', '.join(bad_fields)}",
            raw_response=text,
            missing_fields=bad_fields,
        ) from e


# =============================================================================
# Orchestrator
# =============================================================================


class _StageFailure(Exception):
    """Internal: carries a failure out of a pipeline stage."""

    def __init__(
        self, kind: ErrorKind, message: str, raw_response: str | None = None
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.raw_response = raw_response


class _Run:
    """Mutable bookkeeping for one analyze() call."""

    def __init__(self, trace_id: str) -> None:
        self.trace_id = trace_id
        self.state = OrchestratorState.IDLE
        self.transitions: list[OrchestratorState] = [OrchestratorState.IDLE]
        self.last_completed = OrchestratorState.IDLE
        self.suspects: list[SuspectScore] = []
        self.graph_edges: list[dict[str, Any]] = []

    def enter(self, state: OrchestratorState) -> None:
        if self.state is not OrchestratorState.IDLE:
            self.last_completed = self.state
        self.state = state
        self.transitions.append(state)
        logger.debug(f"[{self.trace_id}] -> {state.value}")

    def done(self, verdict: Verdict) -> AnalysisResult:
        self.enter(OrchestratorState.DONE)
        return AnalysisResult(
            trace_id=self.trace_id,
            state=OrchestratorState.DONE,
            transitions=self.transitions,
            verdict=verdict,
            suspects=self.suspects,
            graph_edges=self.graph_edges,
        )

    def fail(self, failure: _StageFailure) -> AnalysisResult:
        # The stage that raised did not complete.
        last_completed = self.last_completed
        self.state = OrchestratorState.FAILED
        self.transitions.append(OrchestratorState.FAILED)
        return AnalysisResult(
            trace_id=self.trace_id,
            state=OrchestratorState.FAILED,
            transitions=self.transitions,
            failure=AnalysisFailure(
                kind=failure.kind,
                message=failure.message,
                last_completed_state=last_completed,
                suspects=self.suspects,
                graph_edges=self.graph_edges,
                raw_response=failure.raw_response,
            ),
            suspects=self.suspects,
            graph_edges=self.graph_edges,
        )


class RootCauseOrchestrator:
    """Runs retrieval, graph building, ranking and reasoning for a trace.

    Args:
        index: Telemetry Index (owns the per-trace cache).
        reasoner: External reasoning backend.
        config: Engine configuration; defaults if None.
        extractors: Signal extractors; built from ``config.signals`` if None.
        strategy: Fusion strategy; built from ``config.fusion`` if None.
    """

    def __init__(
        self,
        index: TelemetryIndex,
        reasoner: ReasoningBackend,
        config: RcaConfig | None = None,
        extractors: Sequence[SignalExtractor] | None = None,
        strategy: FusionStrategy | None = None,
    ) -> None:
        self.index = index
        self.reasoner = reasoner
        self.config = config or RcaConfig()
        self.extractors = (
            list(extractors)
            if extractors is not None
            else build_extractors(self.config.signals)
        )
        self.strategy = strategy or build_strategy(self.config.fusion)

    async def rank_bundle(
        self, bundle: TelemetryBundle
    ) -> tuple[ServiceGraph, dict[str, dict[str, float]], list[SuspectScore]]:
        """Graph + signals + ranking over an already retrieved bundle."""
        graph = build_service_graph(bundle.spans)
        signals = await run_extractors(
            self.extractors,
            graph,
            bundle,
            timeout=self.config.signals.extractor_timeout_seconds,
        )
        suspects = rank(graph, signals, self.strategy, bundle.spans)
        return graph, signals, suspects

    @traced_operation
    async def analyze(self, trace_id: str) -> AnalysisResult:
        """Localizes the root cause of the incident captured in ``trace_id``.

        Never raises for pipeline failures: the result's ``failure`` carries
        the error kind and partial evidence instead.
        """
        run = _Run(trace_id)
        try:
            result = await self._analyze(run)
        except _StageFailure as failure:
            log = logger.error if failure.kind is ErrorKind.INTERNAL else logger.warning
            log(
                f"❌ Analysis of {trace_id} failed in {run.state.value}: "
                f"{failure.kind.value}: {failure.message}"
            )
            result = run.fail(failure)
        set_span_attribute("rca.analysis.state", result.state.value)
        analysis_outcomes.add(
            1,
            {
                "state": result.state.value,
                "kind": result.failure.kind.value if result.failure else "",
            },
        )
        return result

    async def _stage(self, run: _Run, coro: Any) -> Any:
        """Await a stage, converting errors into a _StageFailure."""
        try:
            return await coro
        except RcaError as e:
            raise _StageFailure(e.kind, e.message) from e
        except Exception as e:
            logger.error(
                f"Unexpected error during {run.state.value}: {e}", exc_info=True
            )
            raise _StageFailure(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}") from e

    async def _analyze(self, run: _Run) -> AnalysisResult:
        run.enter(OrchestratorState.RETRIEVING)
        bundle: TelemetryBundle = await self._stage(
            run, self.index.retrieve(run.trace_id)
        )

        run.enter(OrchestratorState.GRAPH_BUILDING)
        graph: ServiceGraph = await self._stage(
            run, asyncio.to_thread(build_service_graph, bundle.spans)
        )
        run.graph_edges = graph.to_edge_list()

        run.enter(OrchestratorState.RANKING)
        signals = await self._stage(
            run,
            run_extractors(
                self.extractors,
                graph,
                bundle,
                timeout=self.config.signals.extractor_timeout_seconds,
            ),
        )
        run.suspects = await self._stage(
            run,
            asyncio.to_thread(rank, graph, signals, self.strategy, bundle.spans),
        )

        run.enter(OrchestratorState.PROMPT_ASSEMBLY)
        context = await self._stage(
            run, asyncio.to_thread(self.assemble_context, run, bundle, graph)
        )

        verdict = await self._reason(run, context)
        logger.info(
            f"✅ Analysis of {run.trace_id} done: {verdict.root_cause_summary[:120]}"
        )
        return run.done(verdict)

    def assemble_context(
        self, run: _Run, bundle: TelemetryBundle, graph: ServiceGraph
    ) -> dict[str, Any]:
        """Bounded evidence blob handed to the reasoning component."""
        limits = self.config.reasoning
        suspects = run.suspects[: limits.max_suspects]
        suspect_names = [s.service_name for s in suspects]

        error_spans = [s for s in bundle.spans if s.is_error]
        failing_parents = {(s.trace_id, s.parent_id) for s in error_spans}
        # Spans that failed on their own first, then symptoms.
        error_spans.sort(
            key=lambda s: ((s.trace_id, s.span_id) in failing_parents, s.start_time)
        )

        metric_z = MetricAnomalySignal.from_config(self.config.signals).series_zscores(
            bundle.spans, bundle.metrics
        )

        return {
            "trace_id": run.trace_id,
            "suspects": [s.model_dump(mode="json") for s in suspects],
            "edges": graph.to_edge_list(),
            "roots": list(graph.roots),
            "error_spans": [
                {
                    "span_id": s.span_id,
                    "service_name": s.service_name,
                    "operation_name": s.operation_name,
                    "duration_ms": round(s.duration_ms, 3),
                    "message": s.error_message,
                }
                for s in error_spans[: limits.max_error_spans]
            ],
            "log_patterns": summarize_log_patterns(
                bundle.logs,
                services=suspect_names,
                max_patterns=limits.max_log_patterns,
            ),
            "metric_zscores": {
                svc: {name: round(z, 3) for name, z in sorted(series.items())}
                for svc, series in sorted(metric_z.items())
                if svc in suspect_names
            },
            "data_quality": {
                "orphan_span_ids": list(graph.orphan_span_ids),
                "skewed_span_count": graph.skewed_span_count,
                "span_count": graph.span_count,
                "log_count": len(bundle.logs),
                "metric_point_count": len(bundle.metrics),
            },
        }

    async def _reason(self, run: _Run, context: dict[str, Any]) -> Verdict:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.reasoning.deadline_seconds
        default_confidence = run.suspects[0].score if run.suspects else 0.0
        instructions = (
            INVESTIGATION_REQUEST.format(trace_id=run.trace_id)
            + VERDICT_OUTPUT_INSTRUCTIONS
        )
        attempts = 1 + max(self.config.reasoning.max_corrective_retries, 0)

        for attempt in range(attempts):
            run.enter(OrchestratorState.AWAITING_REASONING)
            request = ReasoningRequest(instructions=instructions, context=context)
            raw = await self._call_reasoner(run, request, deadline - loop.time())

            run.enter(OrchestratorState.PARSING)
            try:
                return parse_verdict(raw, default_confidence)
            except MalformedReasoningOutputError as e:
                if attempt + 1 >= attempts:
                    raise _StageFailure(e.kind, e.message, raw_response=raw) from e
                logger.warning(
                    f"Reasoning output for {run.trace_id} incomplete "
                    f"({', '.join(e.missing_fields)}); retrying with correction"
                )
                instructions = (
                    INVESTIGATION_REQUEST.format(trace_id=run.trace_id)
                    + VERDICT_OUTPUT_INSTRUCTIONS
                    + "\n"
                    + CORRECTIVE_INSTRUCTION.format(fields=", ".join(e.missing_fields))
                )
                context = {**context, "previous_response": raw}

        raise _StageFailure(ErrorKind.INTERNAL, "reasoning loop exhausted")

    async def _call_reasoner(
        self, run: _Run, request: ReasoningRequest, remaining: float
    ) -> str:
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError()
            return await asyncio.wait_for(self.reasoner.reason(request), remaining)
        except asyncio.TimeoutError as e:
            err = ReasoningTimeoutError(
                f"Reasoning exceeded {self.config.reasoning.deadline_seconds}s deadline"
            )
            raise _StageFailure(err.kind, err.message) from e
        except Exception as e:
            logger.error(f"Reasoning backend error: {e}", exc_info=True)
            raise _StageFailure(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}") from e

    @traced_operation
    async def analyze_window(
        self, services: set[str], time_range: TimeRange
    ) -> list[SuspectScore]:
        """Ranks suspects over every trace of ``services`` inside ``time_range``.

        Raises:
            TraceNotFoundError: No spans in the window.
            RetrievalTimeoutError: The store did not answer in time.
        """
        bundle = await self.index.retrieve_window(services, time_range)
        graph, _, suspects = await self.rank_bundle(bundle)
        if graph.has_cycle():
            logger.info("Window graph contains call cycles across traces")
        return suspects

    def close(self) -> None:
        self.index.close()

