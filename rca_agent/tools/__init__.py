"""RCA Agent Tools - telemetry retrieval, signal extraction and ranking.

Clients (tools.clients):
    - TelemetryStore protocol and the in-memory store
    - FaultInjector protocol used by the evaluation harness

Trace Tools (tools.trace):
    - TelemetryIndex: bounded, cached retrieval and normalization

Analysis Tools (tools.analysis):
    - Service dependency graph construction (correlation.dependencies)
    - Series statistics for metric baselines (metrics.statistics)
    - Error propagation, metric anomaly and log anomaly signals (signals)
    - Drain3 log pattern summaries for reasoning context (logs.patterns)
    - Fusion ranking strategies (ranking.fusion)

Common (tools.common):
    - Telemetry setup, tracing decorator, cache, timestamp normalization

Submodules are imported directly; this package does not re-export them.
"""
