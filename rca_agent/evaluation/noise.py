"""Noise injection: random dropout of spans, logs and metric points.

Each record gets one uniform draw per trial, and a record is dropped when its
draw falls below the drop fraction. Reusing the draws across fractions makes
the dropped sets nested (everything dropped at 10% is also dropped at 20%),
so accuracy curves compare like with like.
"""

import numpy as np

from ..schema import TelemetryBundle


class TelemetryDropout:
    """Coupled dropout over one bundle for a single random trial."""

    def __init__(self, bundle: TelemetryBundle, rng: np.random.Generator) -> None:
        self.bundle = bundle
        self._span_draws = rng.random(len(bundle.spans))
        self._log_draws = rng.random(len(bundle.logs))
        self._metric_draws = rng.random(len(bundle.metrics))

    def apply(self, fraction: float) -> TelemetryBundle:
        if not 0.0 <= fraction < 1.0:
            raise ValueError(f"drop fraction must be in [0, 1), got {fraction}")
        if fraction == 0.0:
            return self.bundle
        return TelemetryBundle(
            spans=[s for s, u in zip(self.bundle.spans, self._span_draws) if u >= fraction],
            logs=[r for r, u in zip(self.bundle.logs, self._log_draws) if u >= fraction],
            metrics=[
                m for m, u in zip(self.bundle.metrics, self._metric_draws) if u >= fraction
            ],
        )


def drop_telemetry(
    bundle: TelemetryBundle, fraction: float, rng: np.random.Generator
) -> TelemetryBundle:
    """Return a copy of ``bundle`` with about ``fraction`` of every modality dropped."""
    return TelemetryDropout(bundle, rng).apply(fraction)
