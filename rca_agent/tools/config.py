"""Configuration management for the RCA agent.

Configuration is assembled from three layers, later layers winning:
1. Dataclass defaults below
2. An optional JSON file (``RCA_CONFIG_PATH`` or an explicit path)
3. ``RCA_*`` environment variables for the most common knobs

There is no module-level config instance; callers build one with
``load_config()`` and pass it to the components they construct.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "RCA_CONFIG_PATH"


class FusionStrategyName(str, Enum):
    """Available fusion strategies."""

    RULE_BASED = "rule_based"
    WEIGHTED_SUM = "weighted_sum"
    GRAPH_AWARE = "graph_aware"


@dataclass
class RetrievalConfig:
    """Telemetry Index settings."""

    timeout_seconds: float = 10.0
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 1024
    # Metric history pulled around a trace for the anomaly baseline
    metric_lookback_seconds: float = 960.0
    metric_lookahead_seconds: float = 60.0


@dataclass
class SignalConfig:
    """Signal extractor settings."""

    extractor_timeout_seconds: float = 5.0
    error_decay_per_hop: float = 0.7
    error_symptom_weight: float = 0.0
    # Incident window = trace bounds widened by this much on each side
    metric_window_padding_seconds: float = 60.0
    metric_baseline_seconds: float = 900.0
    zscore_saturation_scale: float = 3.0
    min_baseline_points: int = 3
    lower_is_worse_metrics: list[str] = field(
        default_factory=lambda: ["throughput", "success", "availability", "qps"]
    )
    log_window_padding_seconds: float = 1.0
    log_anomaly_keywords: list[str] = field(
        default_factory=lambda: [
            "exception",
            "timeout",
            "timed out",
            "refused",
            "failed",
            "unavailable",
            "panic",
            "oom",
        ]
    )
    enabled_signals: list[str] = field(
        default_factory=lambda: ["error_propagation", "metric_anomaly", "log_anomaly"]
    )


@dataclass
class FusionConfig:
    """Fusion Ranker settings."""

    strategy: FusionStrategyName = FusionStrategyName.WEIGHTED_SUM
    # Empty means equal weighting over the signals present
    weights: dict[str, float] = field(default_factory=dict)
    centrality_boost: float = 0.25


@dataclass
class ReasoningConfig:
    """Reasoning component settings."""

    # "adk" (LLM via google-adk) or "heuristic" (offline, evidence only)
    backend: str = "adk"
    model: str = "gemini-2.5-flash"
    deadline_seconds: float = 60.0
    max_suspects: int = 10
    max_error_spans: int = 20
    max_log_patterns: int = 10
    max_corrective_retries: int = 1


@dataclass
class HarnessConfig:
    """Fault-injection and evaluation settings."""

    top_k: int = 3
    noise_levels: list[float] = field(
        default_factory=lambda: [0.0, 0.1, 0.2, 0.3, 0.4, 0.5]
    )
    trials_per_noise_level: int = 5
    seed: int = 7
    poll_interval_seconds: float = 1.0
    observation_timeout_seconds: float = 30.0
    max_traces_per_incident: int = 20


@dataclass
class RcaConfig:
    """Top-level configuration tree."""

    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    reasoning: ReasoningConfig = field(default_factory=ReasoningConfig)
    harness: HarnessConfig = field(default_factory=HarnessConfig)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["fusion"]["strategy"] = self.fusion.strategy.value
        return data

    def validate(self) -> None:
        """Raise ValueError on out-of-range settings."""
        if self.retrieval.timeout_seconds <= 0:
            raise ValueError("retrieval.timeout_seconds must be positive")
        if self.retrieval.cache_ttl_seconds < 0:
            raise ValueError("retrieval.cache_ttl_seconds must be non-negative")
        if not 0 < self.signals.error_decay_per_hop <= 1:
            raise ValueError("signals.error_decay_per_hop must be in (0, 1]")
        if not 0 <= self.signals.error_symptom_weight <= 1:
            raise ValueError("signals.error_symptom_weight must be in [0, 1]")
        if self.signals.extractor_timeout_seconds <= 0:
            raise ValueError("signals.extractor_timeout_seconds must be positive")
        if self.signals.zscore_saturation_scale <= 0:
            raise ValueError("signals.zscore_saturation_scale must be positive")
        if any(w < 0 for w in self.fusion.weights.values()):
            raise ValueError("fusion.weights must be non-negative")
        if self.reasoning.deadline_seconds <= 0:
            raise ValueError("reasoning.deadline_seconds must be positive")
        if self.reasoning.backend not in ("adk", "heuristic"):
            raise ValueError("reasoning.backend must be 'adk' or 'heuristic'")
        if self.harness.top_k < 1:
            raise ValueError("harness.top_k must be >= 1")
        if any(not 0 <= n < 1 for n in self.harness.noise_levels):
            raise ValueError("harness.noise_levels must be in [0, 1)")


def _merge(target: Any, overrides: dict[str, Any]) -> None:
    valid = {f.name: f for f in fields(target)}
    for key, value in overrides.items():
        if key not in valid:
            raise ValueError(f"Unknown config key: {type(target).__name__}.{key}")
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, dict):
            _merge(current, value)
        elif isinstance(current, Enum):
            setattr(target, key, type(current)(value))
        else:
            setattr(target, key, value)


_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "RCA_RETRIEVAL_TIMEOUT": ("retrieval", "timeout_seconds", float),
    "RCA_CACHE_TTL": ("retrieval", "cache_ttl_seconds", float),
    "RCA_EXTRACTOR_TIMEOUT": ("signals", "extractor_timeout_seconds", float),
    "RCA_DECAY": ("signals", "error_decay_per_hop", float),
    "RCA_FUSION_STRATEGY": ("fusion", "strategy", FusionStrategyName),
    "RCA_REASONING_BACKEND": ("reasoning", "backend", str),
    "RCA_REASONING_MODEL": ("reasoning", "model", str),
    "RCA_REASONING_DEADLINE": ("reasoning", "deadline_seconds", float),
    "RCA_TOP_K": ("harness", "top_k", int),
    "RCA_SEED": ("harness", "seed", int),
}


def load_config(path: str | Path | None = None) -> RcaConfig:
    """Build an RcaConfig from defaults, an optional JSON file and the environment.

    Args:
        path: JSON file to read. Defaults to ``$RCA_CONFIG_PATH`` if set.

    Returns:
        A validated RcaConfig.

    Raises:
        ValueError: On unknown keys or invalid values.
    """
    config = RcaConfig()

    config_path = path or os.environ.get(CONFIG_PATH_ENV)
    if config_path:
        file_path = Path(config_path)
        if file_path.exists():
            with open(file_path) as f:
                _merge(config, json.load(f))
            logger.info(f"Loaded RCA configuration from {file_path}")
        else:
            logger.warning(f"Config file {file_path} not found, using defaults")

    for env_name, (section, key, caster) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            setattr(getattr(config, section), key, caster(raw))
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from e

    config.validate()
    return config
