"""Tests for Drain3 log pattern summaries."""

from rca_agent.schema import LogRecord
from rca_agent.tools.analysis.logs.patterns import (
    LogPatternExtractor,
    summarize_log_patterns,
)


def log(service, message, severity="ERROR"):
    return LogRecord(service_name=service, timestamp=0, severity=severity, message=message)


class TestLogPatternExtractor:
    def test_variable_tokens_collapse_into_one_template(self):
        extractor = LogPatternExtractor()
        for order_id in (1001, 1002, 1003):
            extractor.add(log("payments", f"charge failed for order {order_id}"))
        extractor.add(log("payments", "connection pool exhausted"))

        patterns = extractor.patterns()

        assert len(patterns) == 2
        top = patterns[0]
        assert top.count == 3
        assert "charge failed for order" in top.template
        assert "1001" not in top.template
        assert top.services == {"payments"}
        assert top.severity_counts == {"ERROR": 3}
        assert top.sample == "charge failed for order 1001"

    def test_blank_messages_are_skipped(self):
        extractor = LogPatternExtractor()
        extractor.add(log("payments", "   "))
        assert extractor.patterns() == []


def test_summary_filters_services_and_severities():
    logs = [
        log("payments", "timeout after 300ms talking to ledger"),
        log("payments", "timeout after 450ms talking to ledger"),
        log("payments", "request served", severity="INFO"),
        log("orders", "stock check failed", severity="WARN"),
    ]

    summary = summarize_log_patterns(logs, services=["payments"])
    assert len(summary) == 1
    assert summary[0]["count"] == 2
    assert summary[0]["services"] == ["payments"]

    everything = summarize_log_patterns(logs)
    assert sum(p["count"] for p in everything) == 3


def test_summary_limits_and_empty_input():
    logs = [log("svc", f"distinct failure mode number {word}") for word in ("alpha", "beta")]
    assert len(summarize_log_patterns(logs, max_patterns=1)) == 1
    assert summarize_log_patterns([]) == []
