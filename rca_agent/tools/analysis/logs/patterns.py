"""Log pattern extraction using the Drain3 algorithm.

Error and warning logs of a suspect service are usually thousands of
near-identical lines. Drain3 clusters them into templates so the reasoning
context carries one line per distinct failure mode instead of raw logs.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from drain3 import TemplateMiner
from drain3.masking import MaskingInstruction
from drain3.template_miner_config import TemplateMinerConfig

from ....schema import LogRecord

logger = logging.getLogger(__name__)

_MASKS = [
    (r"\b\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z?", "TIMESTAMP"),
    (r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", "UUID"),
    (r"\b[0-9a-f]{16,}\b", "ID"),
    (r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}(:\d+)?\b", "IP"),
    (r"\b\d+(\.\d+)?ms\b", "DURATION"),
    (r"\b\d+(\.\d+)?\b", "NUM"),
]


@dataclass
class LogPattern:
    """A discovered log template with its occurrence statistics."""

    template: str
    count: int = 0
    services: set[str] = field(default_factory=set)
    severity_counts: dict[str, int] = field(default_factory=dict)
    sample: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "template": self.template,
            "count": self.count,
            "services": sorted(self.services),
            "severity_counts": dict(sorted(self.severity_counts.items())),
            "sample": self.sample,
        }


class LogPatternExtractor:
    """Clusters log messages into templates with Drain3.

    Args:
        depth: Depth of the Drain parse tree.
        sim_th: Similarity threshold for joining a cluster (0-1).
        max_clusters: Maximum number of templates tracked.
    """

    def __init__(self, depth: int = 4, sim_th: float = 0.4, max_clusters: int = 1000):
        config = TemplateMinerConfig()
        config.drain_depth = depth
        config.drain_sim_th = sim_th
        config.drain_max_clusters = max_clusters
        config.masking_instructions = [
            MaskingInstruction(pattern, mask) for pattern, mask in _MASKS
        ]
        self.miner = TemplateMiner(config=config)
        self._stats: dict[int, LogPattern] = {}

    def add(self, record: LogRecord) -> None:
        message = record.message.strip()
        if not message:
            return
        result = self.miner.add_log_message(message)
        cluster_id = result["cluster_id"]
        pattern = self._stats.setdefault(cluster_id, LogPattern(template=""))
        pattern.count += 1
        pattern.services.add(record.service_name)
        pattern.severity_counts[record.severity] = (
            pattern.severity_counts.get(record.severity, 0) + 1
        )
        if pattern.sample is None:
            pattern.sample = message[:200]

    def patterns(self) -> list[LogPattern]:
        """Patterns ordered by count (descending), then template."""
        # Templates keep generalizing as lines arrive; read the final form.
        templates = {c.cluster_id: c.get_template() for c in self.miner.drain.clusters}
        result = []
        for cluster_id, pattern in self._stats.items():
            pattern.template = templates.get(cluster_id, pattern.sample or "")
            result.append(pattern)
        return sorted(result, key=lambda p: (-p.count, p.template))


def summarize_log_patterns(
    logs: Iterable[LogRecord],
    services: Iterable[str] | None = None,
    severities: Iterable[str] = ("WARN", "ERROR", "FATAL"),
    max_patterns: int = 10,
) -> list[dict[str, Any]]:
    """Top log templates for the given services and severities.

    Args:
        logs: Log records to mine.
        services: Restrict to these services; all services if None.
        severities: Severities to include.
        max_patterns: Maximum number of templates returned.

    Returns:
        Pattern dictionaries ordered by frequency.
    """
    wanted_services = set(services) if services is not None else None
    wanted_severities = {s.upper() for s in severities}

    extractor: LogPatternExtractor | None = None
    for record in logs:
        if record.severity not in wanted_severities:
            continue
        if wanted_services is not None and record.service_name not in wanted_services:
            continue
        if extractor is None:
            extractor = LogPatternExtractor()
        extractor.add(record)

    if extractor is None:
        return []
    patterns = extractor.patterns()
    logger.debug(f"Mined {len(patterns)} log templates")
    return [p.to_dict() for p in patterns[:max_patterns]]
