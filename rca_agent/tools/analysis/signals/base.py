"""Signal extractor contract and the concurrent extraction runner.

An extractor is any object with a ``name`` and an ``extract`` method mapping
``(graph, spans, logs, metrics)`` to ``{service_name: value in [0, 1]}``.
Extractors are pure: they never mutate their inputs or shared state.

``run_extractors`` executes every extractor concurrently over the same
immutable inputs. An extractor that raises, or exceeds its individual
timeout, contributes a neutral 0 for every service instead of failing the
request.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from ....schema import LogRecord, MetricPoint, Span, TelemetryBundle
from ...common.telemetry import get_meter
from ...config import SignalConfig
from ..correlation.dependencies import ServiceGraph

logger = logging.getLogger(__name__)

meter = get_meter(__name__)

extractor_fallbacks = meter.create_counter(
    name="rca_agent.signals.fallbacks",
    description="Extractor runs replaced by a neutral score",
    unit="1",
)

SignalMap = dict[str, float]


@runtime_checkable
class SignalExtractor(Protocol):
    """Produces one per-service anomaly signal."""

    name: str

    def extract(
        self,
        graph: ServiceGraph,
        spans: Sequence[Span],
        logs: Sequence[LogRecord],
        metrics: Sequence[MetricPoint],
    ) -> SignalMap: ...


def clamp_unit(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, float(value)))


def neutral_signal(graph: ServiceGraph) -> SignalMap:
    return {node: 0.0 for node in graph.nodes}


def complete_signal(graph: ServiceGraph, values: SignalMap) -> SignalMap:
    """Clamp values into [0, 1] and give every graph node an entry."""
    return {node: clamp_unit(values.get(node, 0.0)) for node in graph.nodes}


_REGISTRY: dict[str, Callable[[SignalConfig], SignalExtractor]] = {}


def register_extractor(
    name: str,
) -> Callable[[Callable[[SignalConfig], SignalExtractor]], Callable[[SignalConfig], SignalExtractor]]:
    """Registers an extractor factory under ``name``."""

    def decorator(
        factory: Callable[[SignalConfig], SignalExtractor],
    ) -> Callable[[SignalConfig], SignalExtractor]:
        _REGISTRY[name] = factory
        return factory

    return decorator


def available_extractors() -> list[str]:
    return sorted(_REGISTRY)


def build_extractors(config: SignalConfig) -> list[SignalExtractor]:
    """Instantiate the extractors enabled in ``config``.

    Raises:
        ValueError: If an enabled signal has no registered extractor.
    """
    extractors = []
    for name in config.enabled_signals:
        factory = _REGISTRY.get(name)
        if factory is None:
            raise ValueError(
                f"Unknown signal '{name}'. Available: {available_extractors()}"
            )
        extractors.append(factory(config))
    return extractors


async def _run_one(
    extractor: SignalExtractor,
    graph: ServiceGraph,
    bundle: TelemetryBundle,
    timeout: float,
) -> SignalMap:
    try:
        raw = await asyncio.wait_for(
            asyncio.to_thread(
                extractor.extract, graph, bundle.spans, bundle.logs, bundle.metrics
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        extractor_fallbacks.add(1, {"signal": extractor.name, "reason": "timeout"})
        logger.warning(
            f"⏱️ Signal '{extractor.name}' exceeded {timeout}s; using neutral score"
        )
        return neutral_signal(graph)
    except Exception as e:
        extractor_fallbacks.add(1, {"signal": extractor.name, "reason": "error"})
        logger.warning(
            f"⚠️ Signal '{extractor.name}' failed ({type(e).__name__}: {e}); "
            f"using neutral score",
            exc_info=True,
        )
        return neutral_signal(graph)
    return complete_signal(graph, raw)


async def run_extractors(
    extractors: Sequence[SignalExtractor],
    graph: ServiceGraph,
    bundle: TelemetryBundle,
    timeout: float,
) -> dict[str, SignalMap]:
    """Run all extractors concurrently, each under its own timeout.

    Returns:
        ``{signal_name: {service_name: value}}`` in extractor order, with every
        graph node present in every signal map.
    """
    results = await asyncio.gather(
        *(_run_one(e, graph, bundle, timeout) for e in extractors)
    )
    return {e.name: values for e, values in zip(extractors, results)}
