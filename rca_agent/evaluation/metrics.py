"""Ranking quality metrics: top-1, top-k and mean reciprocal rank."""

from collections.abc import Sequence

import numpy as np

from ..schema import SuspectScore


def ground_truth_rank(suspects: Sequence[SuspectScore], service: str) -> int | None:
    """1-based position of ``service`` in the ranking, None if absent."""
    for position, suspect in enumerate(suspects, start=1):
        if suspect.service_name == service:
            return position
    return None


def reciprocal_rank(rank: int | None) -> float:
    return 1.0 / rank if rank else 0.0


def top_k_accuracy(ranks: Sequence[int | None], k: int) -> float:
    """Fraction of rankings with the ground truth within the first ``k``."""
    if not ranks:
        return 0.0
    return float(np.mean([1.0 if r is not None and r <= k else 0.0 for r in ranks]))


def mean_reciprocal_rank(ranks: Sequence[int | None]) -> float:
    if not ranks:
        return 0.0
    return float(np.mean([reciprocal_rank(r) for r in ranks]))


def summarize_ranks(ranks: Sequence[int | None], k: int) -> dict[str, float]:
    return {
        "top1_accuracy": top_k_accuracy(ranks, 1),
        "topk_accuracy": top_k_accuracy(ranks, k),
        "mrr": mean_reciprocal_rank(ranks),
    }
