"""Fault-Injection & Evaluation Harness.

``run_experiment(fault_spec)``:
1. validate the fault spec and inject the fault
2. record the ground truth (target service, and span when the injector knows it)
3. poll the store until traces touching the target appear in the injection
   window, failing with IncidentNotObserved after the observation timeout
4. run the full pipeline over every captured trace and score the rankings
5. robustness mode: re-rank each captured trace with growing fractions of its
   telemetry dropped, over several seeded trials per fraction
6. clear the fault, whatever happened

Experiments run sequentially by default. ``run_experiments(..., concurrent=True)``
schedules them together only when their target services are pairwise disjoint.
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Any

import numpy as np
from pydantic import ValidationError

from ..agent import RootCauseOrchestrator
from ..exceptions import IncidentNotObservedError, InvalidFaultSpecError, RcaError
from ..schema import (
    EvaluationResult,
    FaultSpec,
    Incident,
    TimeRange,
    TraceEvaluation,
)
from ..tools.clients.fault_injection import FaultHandle, FaultInjector
from ..tools.clients.store import TelemetryStore
from ..tools.common.decorators import traced_operation
from ..tools.common.telemetry import get_meter, set_span_attribute
from ..tools.common.timestamps import NANOS_PER_SECOND
from ..tools.config import HarnessConfig
from .metrics import ground_truth_rank, summarize_ranks
from .noise import TelemetryDropout

logger = logging.getLogger(__name__)

meter = get_meter(__name__)

experiment_outcomes = meter.create_counter(
    name="rca_agent.harness.experiments",
    description="Experiments run by the evaluation harness",
    unit="1",
)


def validate_fault_spec(spec: FaultSpec | dict[str, Any]) -> FaultSpec:
    """Coerce and validate a fault spec.

    Raises:
        InvalidFaultSpecError: If the spec does not validate.
    """
    if isinstance(spec, FaultSpec):
        return spec
    try:
        return FaultSpec.model_validate(spec)
    except ValidationError as e:
        raise InvalidFaultSpecError(
            f"Invalid fault spec: {e.error_count()} error(s)",
            {"errors": [err["msg"] for err in e.errors()]},
        ) from e


def targets_are_disjoint(specs: Sequence[FaultSpec]) -> bool:
    targets = [s.target_service for s in specs]
    return len(targets) == len(set(targets))


class EvaluationHarness:
    """Drives controlled incidents and scores the pipeline's rankings.

    Args:
        orchestrator: Pipeline under evaluation.
        injector: Fault-injection interface of the target system.
        store: Telemetry store the target writes into (polled for traces).
        config: Harness settings; defaults if None.
    """

    def __init__(
        self,
        orchestrator: RootCauseOrchestrator,
        injector: FaultInjector,
        store: TelemetryStore,
        config: HarnessConfig | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.injector = injector
        self.store = store
        self.config = config or HarnessConfig()

    @traced_operation
    async def run_experiment(self, fault_spec: FaultSpec | dict[str, Any]) -> EvaluationResult:
        """Inject one fault, capture its traces and score the rankings.

        Raises:
            InvalidFaultSpecError: The spec does not validate.
            IncidentNotObservedError: No traces appeared before the timeout.
        """
        spec = validate_fault_spec(fault_spec)
        handle = await self.injector.inject_fault(spec)
        error: BaseException | None = None
        try:
            result = await self._evaluate(spec, handle)
        except RcaError as e:
            experiment_outcomes.add(1, {"outcome": e.kind.value})
            error = e
            raise
        except BaseException as e:
            error = e
            raise
        finally:
            try:
                await self.injector.clear_fault(handle)
            except Exception:
                if error is None:
                    raise
                # Keep the experiment failure; the clear failure is only logged.
                logger.error(
                    f"❌ Failed to clear fault {handle.fault_id} after "
                    f"{type(error).__name__}",
                    exc_info=True,
                )

        experiment_outcomes.add(1, {"outcome": "completed"})
        set_span_attribute("rca.experiment.top1_accuracy", result.top1_accuracy)
        logger.info(
            f"📊 Experiment on {spec.target_service} ({spec.fault_type.value}): "
            f"top1={result.top1_accuracy:.2f} top{result.k}={result.topk_accuracy:.2f} "
            f"mrr={result.mrr:.3f}"
        )
        return result

    async def _evaluate(self, spec: FaultSpec, handle: FaultHandle) -> EvaluationResult:
        window = TimeRange(
            start=handle.started_at_ns,
            end=handle.started_at_ns + int(spec.duration_seconds * NANOS_PER_SECOND),
        )
        trace_ids = await self.await_traces(spec.target_service, window)
        incident = Incident(
            fault_spec=spec,
            injection_window=window,
            ground_truth_service=spec.target_service,
            ground_truth_span=handle.target_span_id,
            trace_ids=trace_ids,
        )

        evaluations = []
        for trace_id in trace_ids:
            result = await self.orchestrator.analyze(trace_id)
            evaluations.append(
                TraceEvaluation(
                    trace_id=trace_id,
                    ground_truth_rank=ground_truth_rank(
                        result.suspects, incident.ground_truth_service
                    ),
                    top_suspects=[
                        s.service_name for s in result.suspects[: self.config.top_k]
                    ],
                    analysis_state=result.state,
                )
            )

        summary = summarize_ranks(
            [e.ground_truth_rank for e in evaluations], self.config.top_k
        )
        return EvaluationResult(
            incident=incident,
            k=self.config.top_k,
            top1_accuracy=summary["top1_accuracy"],
            topk_accuracy=summary["topk_accuracy"],
            mrr=summary["mrr"],
            per_noise_level_accuracy=await self.measure_robustness(incident),
            traces=evaluations,
        )

    async def await_traces(self, service: str, window: TimeRange) -> list[str]:
        """Poll the store for traces of ``service`` inside ``window``.

        Raises:
            IncidentNotObservedError: Nothing appeared within the timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.observation_timeout_seconds
        while True:
            raw = await self.store.fetch_window({service}, window.start, window.end)
            trace_ids = sorted(
                {s["trace_id"] for s in raw.get("spans", []) if s.get("trace_id")}
            )
            if trace_ids:
                return trace_ids[: self.config.max_traces_per_incident]
            if loop.time() >= deadline:
                raise IncidentNotObservedError(
                    f"No traces for {service} appeared within "
                    f"{self.config.observation_timeout_seconds}s"
                )
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def measure_robustness(self, incident: Incident) -> dict[float, float]:
        """Top-1 accuracy per drop fraction, averaged over traces and trials."""
        hits: dict[float, list[float]] = {level: [] for level in self.config.noise_levels}
        for trace_index, trace_id in enumerate(incident.trace_ids):
            try:
                bundle = await self.orchestrator.index.retrieve(trace_id)
            except RcaError as e:
                logger.warning(f"Skipping {trace_id} in robustness mode: {e.message}")
                continue
            for trial in range(self.config.trials_per_noise_level):
                rng = np.random.default_rng([self.config.seed, trace_index, trial])
                dropout = TelemetryDropout(bundle, rng)
                for level in self.config.noise_levels:
                    _, _, suspects = await self.orchestrator.rank_bundle(
                        dropout.apply(level)
                    )
                    rank = ground_truth_rank(suspects, incident.ground_truth_service)
                    hits[level].append(1.0 if rank == 1 else 0.0)

        return {
            level: float(np.mean(values)) if values else 0.0
            for level, values in hits.items()
        }

    async def run_experiments(
        self, specs: Iterable[FaultSpec | dict[str, Any]], concurrent: bool = False
    ) -> list[EvaluationResult]:
        """Run several experiments, concurrently only when targets are disjoint."""
        validated = [validate_fault_spec(s) for s in specs]
        if concurrent and not targets_are_disjoint(validated):
            logger.warning(
                "Fault specs share target services; running experiments sequentially"
            )
            concurrent = False

        if not concurrent:
            return [await self.run_experiment(spec) for spec in validated]

        results = await asyncio.gather(
            *(self.run_experiment(spec) for spec in validated),
            return_exceptions=True,
        )
        for spec, outcome in zip(validated, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Experiment on {spec.target_service} failed: {outcome}")
                raise outcome
        return list(results)  # type: ignore[arg-type]
