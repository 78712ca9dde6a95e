"""Error-propagation signal.

Each service first gets its error fraction: ERROR spans over all of its spans
in the trace. A symptom discount is then applied: an ERROR span with an
ERROR child only failed because a callee failed, so it counts with
``symptom_weight`` (default 0) instead of 1. With a weight of 1 the local
score is the plain error fraction.

Scores then flow upstream along cross-service edges. A caller receives its
callee's score scaled by the share of the caller's outgoing calls that reach
that callee and by a per-hop decay. The closest common ancestor of a failure
therefore scores high, and root services several hops away receive
geometrically decayed scores. A node keeps the larger of its local and
propagated score.

Ordering uses span parent/child structure only; wall-clock timestamps are
never consulted, so clock skew between services cannot reorder causality.
"""

import logging
from collections import defaultdict
from collections.abc import Sequence

from ....schema import LogRecord, MetricPoint, Span
from ...config import SignalConfig
from ..correlation.dependencies import ServiceGraph
from .base import SignalMap, register_extractor

logger = logging.getLogger(__name__)


def error_fraction(spans: Sequence[Span]) -> SignalMap:
    """ERROR spans over total spans, per service."""
    totals: dict[str, int] = defaultdict(int)
    errors: dict[str, int] = defaultdict(int)
    for s in spans:
        totals[s.service_name] += 1
        if s.is_error:
            errors[s.service_name] += 1
    return {svc: errors[svc] / count for svc, count in totals.items()}


def local_error_scores(
    spans: Sequence[Span], symptom_weight: float = 0.0
) -> SignalMap:
    """Error fraction with ERROR spans that have an ERROR child discounted.

    ``symptom_weight=1.0`` returns exactly :func:`error_fraction`.
    """
    failing_parents: set[tuple[str, str]] = {
        (s.trace_id, s.parent_id) for s in spans if s.is_error and s.parent_id
    }
    fraction = error_fraction(spans)
    totals: dict[str, int] = defaultdict(int)
    symptoms: dict[str, int] = defaultdict(int)
    for s in spans:
        totals[s.service_name] += 1
        if s.is_error and (s.trace_id, s.span_id) in failing_parents:
            symptoms[s.service_name] += 1
    return {
        svc: fraction[svc] - (1.0 - symptom_weight) * symptoms[svc] / count
        for svc, count in totals.items()
    }


def propagate_upstream(
    graph: ServiceGraph, local: SignalMap, decay: float
) -> SignalMap:
    """Push scores from callees to callers, keeping the best path per node.

    Values only ever shrink along a path (decay < 1 or call share < 1), so
    relaxing while strictly improving terminates even on cyclic graphs.
    """
    best = {node: local.get(node, 0.0) for node in graph.nodes}
    pending = [node for node in graph.nodes if best[node] > 0]
    while pending:
        node = pending.pop()
        value = best[node]
        for edge in graph.incoming(node):
            caller = edge.source
            total = graph.outgoing_call_count(caller)
            if total <= 0:
                continue
            candidate = value * (edge.call_count / total) * decay
            if candidate > best.get(caller, 0.0) + 1e-12:
                best[caller] = candidate
                pending.append(caller)
    return best


class ErrorPropagationSignal:
    """Error-propagation signal extractor."""

    name = "error_propagation"

    def __init__(
        self, decay_per_hop: float = 0.7, symptom_weight: float = 0.0
    ) -> None:
        self.decay_per_hop = decay_per_hop
        self.symptom_weight = symptom_weight

    def extract(
        self,
        graph: ServiceGraph,
        spans: Sequence[Span],
        logs: Sequence[LogRecord],
        metrics: Sequence[MetricPoint],
    ) -> SignalMap:
        if not spans:
            return {node: 0.0 for node in graph.nodes}
        local = local_error_scores(spans, self.symptom_weight)
        scores = propagate_upstream(graph, local, self.decay_per_hop)
        logger.debug(f"Error propagation scores: {scores}")
        return scores

    @classmethod
    def from_config(cls, config: SignalConfig) -> "ErrorPropagationSignal":
        return cls(
            decay_per_hop=config.error_decay_per_hop,
            symptom_weight=config.error_symptom_weight,
        )


register_extractor(ErrorPropagationSignal.name)(ErrorPropagationSignal.from_config)
