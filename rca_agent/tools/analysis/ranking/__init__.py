"""Suspect ranking."""

from .fusion import (
    FusionStrategy,
    GraphAwareFusion,
    RuleBasedFusion,
    WeightedSumFusion,
    build_strategy,
    rank,
)

__all__ = [
    "FusionStrategy",
    "GraphAwareFusion",
    "RuleBasedFusion",
    "WeightedSumFusion",
    "build_strategy",
    "rank",
]
