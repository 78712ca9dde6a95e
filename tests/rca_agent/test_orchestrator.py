"""Tests for the Agent Orchestrator state machine."""

import asyncio
import json
from datetime import timedelta

import pytest

from rca_agent.agent import RootCauseOrchestrator
from rca_agent.exceptions import ErrorKind, TraceNotFoundError
from rca_agent.schema import OrchestratorState as S
from rca_agent.schema import TimeRange
from rca_agent.services.reasoning import HeuristicReasoningBackend
from rca_agent.tools.analysis.signals import ErrorPropagationSignal
from rca_agent.tools.clients.store import InMemoryTelemetryStore
from rca_agent.tools.trace.index import TelemetryIndex
from tests.fixtures.synthetic_otel_data import BASE_TIME, SAMPLE_TRACE_ID

CHAIN_TRACE_ID = "c" * 32

GOOD_ANSWER = json.dumps(
    {
        "root_cause_summary": "checkout-service timed out calling payment-service",
        "affected_services": ["checkout-service", "frontend"],
        "supporting_evidence": [{"kind": "span", "ref": "a1b2c3d4e5f60002"}],
        "recommended_actions": ["Check payment-service health"],
        "confidence": 0.8,
    }
)
INCOMPLETE_ANSWER = json.dumps({"root_cause_summary": "checkout-service"})


class BrokenSignal:
    name = "broken"

    def extract(self, graph, spans, logs, metrics):
        raise RuntimeError("extractor bug")


@pytest.fixture
def scripted(index, config, mock_reasoner):
    return RootCauseOrchestrator(index, mock_reasoner, config=config)


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator):
        result = await orchestrator.analyze(SAMPLE_TRACE_ID)

        assert result.ok
        assert result.transitions == [
            S.IDLE,
            S.RETRIEVING,
            S.GRAPH_BUILDING,
            S.RANKING,
            S.PROMPT_ASSEMBLY,
            S.AWAITING_REASONING,
            S.PARSING,
            S.DONE,
        ]
        assert result.suspects[0].service_name == "checkout-service"
        assert result.verdict.affected_services == ["checkout-service", "frontend"]
        assert result.graph_edges[0]["source"] == "frontend"

    @pytest.mark.asyncio
    async def test_not_found_skips_reasoning(self, scripted, mock_reasoner):
        result = await scripted.analyze("does-not-exist")

        assert result.state is S.FAILED
        assert result.failure.kind is ErrorKind.NOT_FOUND
        assert result.failure.last_completed_state is S.IDLE
        assert result.transitions == [S.IDLE, S.RETRIEVING, S.FAILED]
        mock_reasoner.reason.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retrieval_timeout(self, config, mock_reasoner):
        config.retrieval.timeout_seconds = 0.05
        slow = InMemoryTelemetryStore(latency_seconds=1.0)
        orchestrator = RootCauseOrchestrator(
            TelemetryIndex(slow, config=config.retrieval), mock_reasoner, config=config
        )

        result = await orchestrator.analyze(SAMPLE_TRACE_ID)

        assert result.failure.kind is ErrorKind.RETRIEVAL_TIMEOUT
        mock_reasoner.reason.assert_not_awaited()
        orchestrator.close()

    @pytest.mark.asyncio
    async def test_corrective_retry(self, scripted, mock_reasoner):
        mock_reasoner.reason.side_effect = [INCOMPLETE_ANSWER, GOOD_ANSWER]

        result = await scripted.analyze(SAMPLE_TRACE_ID)

        assert result.ok
        assert result.transitions[-5:] == [
            S.AWAITING_REASONING,
            S.PARSING,
            S.AWAITING_REASONING,
            S.PARSING,
            S.DONE,
        ]
        retry_request = mock_reasoner.reason.await_args_list[1].args[0]
        assert "missing field affected_services" in retry_request.instructions
        assert retry_request.context["previous_response"] == INCOMPLETE_ANSWER

    @pytest.mark.asyncio
    async def test_malformed_twice(self, scripted, mock_reasoner):
        mock_reasoner.reason.side_effect = ["no json here", INCOMPLETE_ANSWER]

        result = await scripted.analyze(SAMPLE_TRACE_ID)

        assert result.state is S.FAILED
        assert result.failure.kind is ErrorKind.MALFORMED_REASONING_OUTPUT
        assert result.failure.last_completed_state is S.AWAITING_REASONING
        assert result.failure.raw_response == INCOMPLETE_ANSWER
        assert result.failure.suspects[0].service_name == "checkout-service"
        assert result.failure.graph_edges
        assert mock_reasoner.reason.await_count == 2

    @pytest.mark.asyncio
    async def test_reasoning_timeout(self, scripted, mock_reasoner, config):
        config.reasoning.deadline_seconds = 0.05

        async def hang(request):
            await asyncio.sleep(5)

        mock_reasoner.reason.side_effect = hang

        result = await scripted.analyze(SAMPLE_TRACE_ID)

        assert result.failure.kind is ErrorKind.REASONING_TIMEOUT
        assert result.failure.last_completed_state is S.PROMPT_ASSEMBLY
        assert result.suspects

    @pytest.mark.asyncio
    async def test_reasoner_exception_is_internal(self, scripted, mock_reasoner):
        mock_reasoner.reason.side_effect = ConnectionError("model endpoint down")

        result = await scripted.analyze(SAMPLE_TRACE_ID)

        assert result.failure.kind is ErrorKind.INTERNAL
        assert "model endpoint down" in result.failure.message

    @pytest.mark.asyncio
    async def test_default_confidence_is_top_score(self, scripted, mock_reasoner):
        answer = json.loads(GOOD_ANSWER)
        del answer["confidence"]
        mock_reasoner.reason.return_value = json.dumps(answer)

        result = await scripted.analyze(SAMPLE_TRACE_ID)

        assert result.verdict.confidence == result.suspects[0].score

    @pytest.mark.asyncio
    async def test_idempotent_and_cached(self, orchestrator, store):
        first = await orchestrator.analyze(SAMPLE_TRACE_ID)
        second = await orchestrator.analyze(SAMPLE_TRACE_ID)

        assert first.model_dump() == second.model_dump()
        assert store.query_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_analyses(self, orchestrator):
        sample, chain = await asyncio.gather(
            orchestrator.analyze(SAMPLE_TRACE_ID), orchestrator.analyze(CHAIN_TRACE_ID)
        )
        assert sample.suspects[0].service_name == "checkout-service"
        assert chain.suspects[0].service_name == "payments"

    @pytest.mark.asyncio
    async def test_spans_only_trace(self, sample_trace_spans, config):
        orchestrator = RootCauseOrchestrator(
            TelemetryIndex(InMemoryTelemetryStore(spans=sample_trace_spans)),
            HeuristicReasoningBackend(),
            config=config,
        )
        result = await orchestrator.analyze(SAMPLE_TRACE_ID)
        assert result.ok
        orchestrator.close()

    @pytest.mark.asyncio
    async def test_broken_extractor_is_absorbed(self, index, config):
        orchestrator = RootCauseOrchestrator(
            index,
            HeuristicReasoningBackend(),
            config=config,
            extractors=[ErrorPropagationSignal(), BrokenSignal()],
        )
        result = await orchestrator.analyze(CHAIN_TRACE_ID)

        assert result.ok
        assert result.suspects[0].service_name == "payments"


class TestAssembleContext:
    @pytest.mark.asyncio
    async def test_context_contents(self, scripted, mock_reasoner):
        mock_reasoner.reason.return_value = GOOD_ANSWER

        await scripted.analyze(CHAIN_TRACE_ID)
        context = mock_reasoner.reason.await_args.args[0].context

        assert context["trace_id"] == CHAIN_TRACE_ID
        assert context["suspects"][0]["service_name"] == "payments"
        # own failures come before the timeouts they caused upstream
        assert context["error_spans"][0]["service_name"] == "payments"
        assert context["metric_zscores"]["payments"]["latency_p95_ms"] > 3
        assert any("payments" in p["services"] for p in context["log_patterns"])
        assert context["data_quality"]["span_count"] == 4
        assert context["roots"] == ["gateway"]

    @pytest.mark.asyncio
    async def test_context_is_bounded(self, scripted, mock_reasoner, config):
        config.reasoning.max_suspects = 2
        config.reasoning.max_error_spans = 1
        mock_reasoner.reason.return_value = GOOD_ANSWER

        await scripted.analyze(CHAIN_TRACE_ID)
        context = mock_reasoner.reason.await_args.args[0].context

        assert len(context["suspects"]) == 2
        assert len(context["error_spans"]) == 1


class TestAnalyzeWindow:
    @pytest.mark.asyncio
    async def test_ranks_window(self, orchestrator):
        window = TimeRange(
            start=BASE_TIME - timedelta(minutes=1), end=BASE_TIME + timedelta(minutes=1)
        )
        suspects = await orchestrator.analyze_window(
            {"gateway", "orders", "payments", "ledger"}, window
        )
        assert suspects[0].service_name == "payments"
        assert {s.service_name for s in suspects} == {
            "gateway",
            "orders",
            "payments",
            "ledger",
        }

    @pytest.mark.asyncio
    async def test_empty_window_raises(self, orchestrator):
        window = TimeRange(
            start=BASE_TIME + timedelta(days=1), end=BASE_TIME + timedelta(days=2)
        )
        with pytest.raises(TraceNotFoundError):
            await orchestrator.analyze_window({"payments"}, window)
