"""Service dependency graph construction from span parent/child relations.

Traces reveal the true runtime topology of a distributed system. This module
turns a set of spans (one trace, or every trace in a window) into a
``ServiceGraph``: nodes are the services that emitted spans, edges are
``parent.service -> child.service`` calls weighted by call count and error
count.

The graph is a plain value. Both the ranking pipeline and anything that
renders the topology for a human consume the same artifact.

Structural rules:
- A span whose parent_id is missing or does not resolve to a span of the
  same trace is a root. Unresolvable parents are listed as orphans.
- Self-edges (parent and child in the same service) are recorded but are
  excluded from every cross-service traversal.
- Aggregated window graphs may contain cycles; every traversal tolerates them.
- Child spans starting before, or ending after, their parent are counted as
  clock-skewed. Structure wins over wall-clock order; skew is only reported.
"""

import logging
from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

from ....schema import Span
from ...common.telemetry import get_meter, get_tracer

logger = logging.getLogger(__name__)

tracer = get_tracer(__name__)
meter = get_meter(__name__)

dependency_operations = meter.create_counter(
    name="rca_agent.dependency.operations",
    description="Count of dependency graph builds",
    unit="1",
)


@dataclass(frozen=True)
class ServiceEdge:
    """Directed call relation between two services."""

    source: str
    target: str
    call_count: int
    error_count: int

    @property
    def error_rate(self) -> float:
        return self.error_count / self.call_count if self.call_count else 0.0

    @property
    def is_self_edge(self) -> bool:
        return self.source == self.target

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "call_count": self.call_count,
            "error_count": self.error_count,
            "error_rate": round(self.error_rate, 4),
        }


@dataclass(frozen=True)
class ServiceGraph:
    """Directed service-call graph for one trace or an aggregated window."""

    nodes: tuple[str, ...]
    edges: tuple[ServiceEdge, ...]
    roots: tuple[str, ...] = ()
    orphan_span_ids: tuple[str, ...] = ()
    skewed_span_count: int = 0
    span_count: int = 0
    _out: dict[str, list[ServiceEdge]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _in: dict[str, list[ServiceEdge]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        out: dict[str, list[ServiceEdge]] = defaultdict(list)
        inc: dict[str, list[ServiceEdge]] = defaultdict(list)
        for edge in self.edges:
            if edge.is_self_edge:
                continue
            out[edge.source].append(edge)
            inc[edge.target].append(edge)
        # Frozen dataclass: populate the adjacency caches in place.
        self._out.update(out)
        self._in.update(inc)

    def edge(self, source: str, target: str) -> ServiceEdge | None:
        for e in self.edges:
            if e.source == source and e.target == target:
                return e
        return None

    def outgoing(self, service: str) -> list[ServiceEdge]:
        """Cross-service edges leaving ``service``."""
        return list(self._out.get(service, []))

    def incoming(self, service: str) -> list[ServiceEdge]:
        """Cross-service edges entering ``service``."""
        return list(self._in.get(service, []))

    def children(self, service: str) -> list[str]:
        return [e.target for e in self.outgoing(service)]

    def parents(self, service: str) -> list[str]:
        return [e.source for e in self.incoming(service)]

    def outgoing_call_count(self, service: str) -> int:
        return sum(e.call_count for e in self.outgoing(service))

    def depth_from_root(self) -> dict[str, int]:
        """Shortest cross-service hop count from any root service.

        Nodes unreachable from a root (possible only in malformed input) get a
        depth one larger than the deepest reachable node.
        """
        depth: dict[str, int] = {}
        queue: deque[str] = deque()
        for root in self.roots:
            if root not in depth:
                depth[root] = 0
                queue.append(root)
        while queue:
            current = queue.popleft()
            for child in self.children(current):
                if child not in depth:
                    depth[child] = depth[current] + 1
                    queue.append(child)

        unreachable = max(depth.values(), default=-1) + 1
        return {node: depth.get(node, unreachable) for node in self.nodes}

    def weighted_fan_out(self) -> dict[str, float]:
        """Outgoing cross-service call volume per node, scaled into [0, 1]."""
        raw = {node: float(self.outgoing_call_count(node)) for node in self.nodes}
        peak = max(raw.values(), default=0.0)
        if peak <= 0:
            return {node: 0.0 for node in self.nodes}
        return {node: value / peak for node, value in raw.items()}

    @cached_property
    def centrality(self) -> dict[str, float]:
        return self.weighted_fan_out()

    def has_cycle(self) -> bool:
        """True if cross-service edges form a cycle."""
        visiting: set[str] = set()
        done: set[str] = set()

        for start in self.nodes:
            if start in done:
                continue
            stack: list[tuple[str, int]] = [(start, 0)]
            visiting.add(start)
            while stack:
                node, idx = stack[-1]
                children = self.children(node)
                if idx < len(children):
                    stack[-1] = (node, idx + 1)
                    child = children[idx]
                    if child in visiting:
                        return True
                    if child not in done:
                        visiting.add(child)
                        stack.append((child, 0))
                else:
                    stack.pop()
                    visiting.discard(node)
                    done.add(node)
        return False

    def to_edge_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.edges]

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for the HTTP surface and reasoning context."""
        return {
            "nodes": list(self.nodes),
            "edges": self.to_edge_list(),
            "roots": list(self.roots),
            "orphan_span_ids": list(self.orphan_span_ids),
            "skewed_span_count": self.skewed_span_count,
            "span_count": self.span_count,
        }


def build_service_graph(spans: Iterable[Span]) -> ServiceGraph:
    """Builds the service dependency graph for a set of spans.

    Pure function: the same spans always yield an equal graph, and nothing is
    retained between calls. An empty input yields an empty graph; a single
    span yields one node and no edges.

    Args:
        spans: Spans of one trace, or of several traces for a window graph.

    Returns:
        The ServiceGraph over every service that emitted a span.
    """
    with tracer.start_as_current_span("build_service_graph") as otel_span:
        dependency_operations.add(1, {"type": "build_graph"})

        span_list = list(spans)
        span_map: dict[tuple[str, str], Span] = {
            (s.trace_id, s.span_id): s for s in span_list
        }

        calls: dict[tuple[str, str], int] = defaultdict(int)
        errors: dict[tuple[str, str], int] = defaultdict(int)
        nodes: set[str] = set()
        roots: set[str] = set()
        orphans: list[str] = []
        skewed = 0

        for s in span_list:
            nodes.add(s.service_name)
            parent = (
                span_map.get((s.trace_id, s.parent_id)) if s.parent_id else None
            )
            if parent is None:
                roots.add(s.service_name)
                if s.parent_id:
                    orphans.append(s.span_id)
                continue

            key = (parent.service_name, s.service_name)
            calls[key] += 1
            if s.is_error:
                errors[key] += 1
            if s.start_time < parent.start_time or s.end_time > parent.end_time:
                skewed += 1

        edges = tuple(
            ServiceEdge(
                source=src,
                target=dst,
                call_count=count,
                error_count=errors.get((src, dst), 0),
            )
            for (src, dst), count in sorted(calls.items())
        )

        if orphans:
            logger.warning(
                f"{len(orphans)} span(s) reference a parent absent from the "
                f"trace; treating them as roots"
            )
        if skewed:
            logger.info(f"{skewed} span(s) fall outside their parent's time range")

        graph = ServiceGraph(
            nodes=tuple(sorted(nodes)),
            edges=edges,
            roots=tuple(sorted(roots)),
            orphan_span_ids=tuple(sorted(orphans)),
            skewed_span_count=skewed,
            span_count=len(span_list),
        )
        otel_span.set_attribute("rca.graph.nodes", len(graph.nodes))
        otel_span.set_attribute("rca.graph.edges", len(graph.edges))
        return graph
