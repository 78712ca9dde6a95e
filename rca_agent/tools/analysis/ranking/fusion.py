"""Fusion Ranker: combines per-service signals into one ranked suspect list.

Strategies are interchangeable implementations of one capability, scoring a
node from the signal maps:

- ``rule_based``: the single strongest signal wins (max).
- ``weighted_sum``: normalized per-signal weights, equal by default.
- ``graph_aware``: weighted sum boosted by the node's outgoing call volume, so
  upstream services with many dependents are not penalized for distance from
  the failing leaf.

Ranking is total and deterministic: every graph node is listed exactly once,
ordered by score (descending), then depth from root (ascending), then
service name. Scores are rounded so repeated runs are byte-equal.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Protocol

from ....schema import SignalContribution, Span, SuspectScore
from ...common.decorators import traced_operation
from ...config import FusionConfig, FusionStrategyName
from ..correlation.dependencies import ServiceGraph

logger = logging.getLogger(__name__)

Signals = Mapping[str, Mapping[str, float]]

SCORE_PRECISION = 6


class FusionStrategy(Protocol):
    """One way of turning signal values into a node score."""

    name: str

    def score(
        self, node: str, signals: Signals, graph: ServiceGraph
    ) -> tuple[float, list[SignalContribution]]: ...


def _value(signals: Signals, signal_name: str, node: str) -> float:
    return float(signals.get(signal_name, {}).get(node, 0.0))


def normalize_weights(
    signal_names: Sequence[str], weights: Mapping[str, float] | None = None
) -> dict[str, float]:
    """Weights for ``signal_names`` normalized to sum to 1.

    Signals missing from ``weights`` get 0; if nothing is configured (or
    everything is 0) every signal is weighted equally.
    """
    if not signal_names:
        return {}
    raw = {name: float((weights or {}).get(name, 0.0)) for name in signal_names}
    total = sum(raw.values())
    if not weights or total <= 0:
        return {name: 1.0 / len(signal_names) for name in signal_names}
    return {name: value / total for name, value in raw.items()}


class RuleBasedFusion:
    """Max over the raw signals."""

    name = FusionStrategyName.RULE_BASED.value

    def score(
        self, node: str, signals: Signals, graph: ServiceGraph
    ) -> tuple[float, list[SignalContribution]]:
        values = [(name, _value(signals, name, node)) for name in signals]
        if not values:
            return 0.0, []
        winner, best = max(values, key=lambda item: item[1])
        contributions = [
            SignalContribution(
                signal_name=name,
                raw_value=value,
                weight=1.0 if name == winner and best > 0 else 0.0,
            )
            for name, value in values
        ]
        return best, contributions


class WeightedSumFusion:
    """Sum of weight * signal, weights normalized to 1."""

    name = FusionStrategyName.WEIGHTED_SUM.value

    def __init__(self, weights: Mapping[str, float] | None = None) -> None:
        self.weights = dict(weights or {})

    def score(
        self, node: str, signals: Signals, graph: ServiceGraph
    ) -> tuple[float, list[SignalContribution]]:
        weights = normalize_weights(list(signals), self.weights)
        contributions = [
            SignalContribution(
                signal_name=name,
                raw_value=_value(signals, name, node),
                weight=weights[name],
            )
            for name in signals
        ]
        return sum(c.raw_value * c.weight for c in contributions), contributions


class GraphAwareFusion(WeightedSumFusion):
    """Weighted sum scaled up by fan-out-weighted centrality."""

    name = FusionStrategyName.GRAPH_AWARE.value

    def __init__(
        self, weights: Mapping[str, float] | None = None, centrality_boost: float = 0.25
    ) -> None:
        super().__init__(weights)
        self.centrality_boost = centrality_boost

    def score(
        self, node: str, signals: Signals, graph: ServiceGraph
    ) -> tuple[float, list[SignalContribution]]:
        base, contributions = super().score(node, signals, graph)
        centrality = graph.centrality.get(node, 0.0)
        contributions.append(
            SignalContribution(
                signal_name="centrality",
                raw_value=centrality,
                weight=self.centrality_boost,
            )
        )
        return min(1.0, base * (1.0 + self.centrality_boost * centrality)), contributions


def build_strategy(config: FusionConfig | None = None) -> FusionStrategy:
    """Instantiate the strategy named in ``config``."""
    config = config or FusionConfig()
    strategy = FusionStrategyName(config.strategy)
    if strategy is FusionStrategyName.RULE_BASED:
        return RuleBasedFusion()
    if strategy is FusionStrategyName.GRAPH_AWARE:
        return GraphAwareFusion(config.weights, config.centrality_boost)
    return WeightedSumFusion(config.weights)


def attribute_span(spans: Sequence[Span], service: str) -> str | None:
    """Pick the most suspicious span of ``service``.

    The earliest span that failed without a failing child wins; otherwise the
    longest span of the service.
    """
    own = [s for s in spans if s.service_name == service]
    if not own:
        return None
    failing_parents = {(s.trace_id, s.parent_id) for s in spans if s.is_error}
    for s in own:
        if s.is_error and (s.trace_id, s.span_id) not in failing_parents:
            return s.span_id
    return max(own, key=lambda s: (s.end_time - s.start_time, s.span_id)).span_id


@traced_operation
def rank(
    graph: ServiceGraph,
    signals: Signals,
    strategy: FusionStrategy | None = None,
    spans: Sequence[Span] = (),
) -> list[SuspectScore]:
    """Ranks every service in ``graph`` by fused suspicion.

    Args:
        graph: Service graph; its node set defines the ranked services.
        signals: ``{signal_name: {service_name: value in [0, 1]}}``. Missing
            signals or services count as 0.
        strategy: Fusion strategy; weighted-sum with equal weights if None.
        spans: Spans used to attribute each suspect to a span, optional.

    Returns:
        One SuspectScore per graph node, highest score first.
    """
    strategy = strategy or WeightedSumFusion()
    depth = graph.depth_from_root()

    scored = []
    for node in graph.nodes:
        value, contributions = strategy.score(node, signals, graph)
        score = round(max(0.0, min(1.0, value)), SCORE_PRECISION)
        scored.append((score, depth.get(node, 0), node, contributions))

    scored.sort(key=lambda item: (-item[0], item[1], item[2]))
    ranking = [
        SuspectScore(
            service_name=node,
            span_id=attribute_span(spans, node) if spans else None,
            score=score,
            contributing_signals=contributions,
        )
        for score, _, node, contributions in scored
    ]
    if ranking:
        logger.info(
            f"🏁 Ranked {len(ranking)} services with {strategy.name}; "
            f"top suspect {ranking[0].service_name} ({ranking[0].score:.3f})"
        )
    return ranking
