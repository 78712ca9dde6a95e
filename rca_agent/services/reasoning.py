"""Reasoning backends for the Agent Orchestrator.

The orchestrator talks to exactly one capability: ``reason(request) -> str``.
A request carries instructions plus a structured context blob; the answer is
free text expected to contain a Verdict JSON object. Parsing and validation
stay in the orchestrator, so every backend is interchangeable.

Backends:
- ``AdkReasoningBackend``: an ADK ``LlmAgent`` run through an ADK ``Runner``
  with an in-memory session per request.
- ``HeuristicReasoningBackend``: offline backend that restates the top of the
  ranking as a verdict. Used for experiments and local runs without an LLM.
"""

import json
import logging
from typing import Any, Protocol, runtime_checkable

from google.adk.agents import LlmAgent
from google.adk.runners import Runner
from google.adk.sessions import InMemorySessionService
from google.genai import types

from ..prompt import ROOT_CAUSE_REASONER_PROMPT
from ..schema import ReasoningRequest
from ..tools.config import ReasoningConfig

logger = logging.getLogger(__name__)

APP_NAME = "rca_agent"


@runtime_checkable
class ReasoningBackend(Protocol):
    """External reasoning component."""

    async def reason(self, request: ReasoningRequest) -> str:
        """Return the raw text answer for ``request``."""
        ...


def render_request(request: ReasoningRequest) -> str:
    """Flatten a request into the single user message sent to a model."""
    context = json.dumps(request.context, indent=2, sort_keys=True, default=str)
    return f"{request.instructions.strip()}\n\ncontext:\n```json\n{context}\n```"


class AdkReasoningBackend:
    """Runs the Root Cause Reasoner LlmAgent for each request.

    A fresh in-memory session is created per call so concurrent analyses
    never share conversation state.
    """

    def __init__(self, model: str = "gemini-2.5-flash", user_id: str = "rca") -> None:
        self.agent = LlmAgent(
            name="root_cause_reasoner",
            model=model,
            description="Turns ranked root cause evidence into a structured verdict.",
            instruction=ROOT_CAUSE_REASONER_PROMPT,
        )
        self.session_service = InMemorySessionService()  # type: ignore[no-untyped-call]
        self.runner = Runner(
            agent=self.agent,
            app_name=APP_NAME,
            session_service=self.session_service,
        )
        self.user_id = user_id
        logger.info(f"AdkReasoningBackend initialized with model {model}")

    async def reason(self, request: ReasoningRequest) -> str:
        session = await self.session_service.create_session(
            app_name=APP_NAME, user_id=self.user_id
        )
        message = types.Content(
            role="user", parts=[types.Part(text=render_request(request))]
        )

        chunks: list[str] = []
        async for event in self.runner.run_async(
            user_id=self.user_id, session_id=session.id, new_message=message
        ):
            if not event.is_final_response():
                continue
            if not event.content or not event.content.parts:
                continue
            for part in event.content.parts:
                if part.text:
                    chunks.append(part.text)

        text = "".join(chunks)
        logger.debug(f"Reasoner returned {len(text)} characters")
        return text


class HeuristicReasoningBackend:
    """Builds a verdict straight from the ranked evidence, without an LLM."""

    async def reason(self, request: ReasoningRequest) -> str:
        context: dict[str, Any] = request.context
        suspects = context.get("suspects", [])
        if not suspects:
            return json.dumps(
                {
                    "root_cause_summary": "No suspect services were identified.",
                    "affected_services": [],
                    "supporting_evidence": [],
                    "recommended_actions": [],
                    "confidence": 0.0,
                }
            )

        top = suspects[0]
        service = top["service_name"]
        evidence = [
            {
                "kind": "service",
                "ref": service,
                "note": f"top fused score {top['score']}",
            }
        ]
        if top.get("span_id"):
            evidence.append(
                {"kind": "span", "ref": top["span_id"], "note": "most suspicious span"}
            )
        action = f"Inspect recent changes and health of {service}"
        for err in context.get("error_spans", []):
            if err.get("service_name") == service and err.get("message"):
                evidence.append(
                    {"kind": "span", "ref": err["span_id"], "note": err["message"]}
                )
                target = " ".join(filter(None, [service, err.get("operation_name")]))
                action = f"Inspect {target}: {err['message']}"
                break

        affected = [service] + [
            e["source"]
            for e in context.get("edges", [])
            if e.get("target") == service and e.get("error_count", 0) > 0
        ]
        return json.dumps(
            {
                "root_cause_summary": f"{service} is the most likely origin of the failure.",
                "affected_services": affected,
                "supporting_evidence": evidence,
                "recommended_actions": [action],
                "confidence": top["score"],
            }
        )


def build_reasoning_backend(config: ReasoningConfig | None = None) -> ReasoningBackend:
    config = config or ReasoningConfig()
    if config.backend == "heuristic":
        return HeuristicReasoningBackend()
    return AdkReasoningBackend(model=config.model)
