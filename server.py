import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from rca_agent.agent import RootCauseOrchestrator
from rca_agent.evaluation import EvaluationHarness, SimulatedTarget
from rca_agent.exceptions import ErrorKind, RcaError
from rca_agent.schema import AnalysisResult, EvaluationResult, SuspectScore, TimeRange
from rca_agent.services import build_reasoning_backend
from rca_agent.tools.clients.store import InMemoryTelemetryStore
from rca_agent.tools.common.telemetry import setup_telemetry
from rca_agent.tools.config import load_config
from rca_agent.tools.trace.index import TelemetryIndex

logger = logging.getLogger(__name__)

TELEMETRY_FILE_ENV = "RCA_TELEMETRY_FILE"

_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RETRIEVAL_TIMEOUT: 504,
    ErrorKind.REASONING_TIMEOUT: 504,
    ErrorKind.MALFORMED_REASONING_OUTPUT: 502,
    ErrorKind.INCIDENT_NOT_OBSERVED: 504,
    ErrorKind.INVALID_FAULT_SPEC: 422,
}


def build_store() -> InMemoryTelemetryStore:
    path = os.getenv(TELEMETRY_FILE_ENV)
    if path:
        return InMemoryTelemetryStore.from_file(path)
    logger.warning(f"{TELEMETRY_FILE_ENV} not set; starting with an empty telemetry store")
    return InMemoryTelemetryStore()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Construct the pipeline components for the process and tear them down."""
    config = load_config()
    store = getattr(app.state, "store", None) or build_store()
    index = TelemetryIndex(store, config=config.retrieval)
    orchestrator = RootCauseOrchestrator(
        index,
        getattr(app.state, "reasoner", None) or build_reasoning_backend(config.reasoning),
        config=config,
    )
    target = SimulatedTarget(store, seed=config.harness.seed)

    app.state.config = config
    app.state.store = store
    app.state.orchestrator = orchestrator
    app.state.harness = EvaluationHarness(orchestrator, target, store, config.harness)
    logger.info(
        f"🚀 RCA pipeline ready (fusion={config.fusion.strategy.value}, "
        f"reasoning={config.reasoning.backend})"
    )
    try:
        yield
    finally:
        orchestrator.close()
        logger.info("🛑 RCA pipeline shut down")


app = FastAPI(title="Root Cause Localization API", lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next: Any) -> Any:
    """Middleware to log all HTTP requests."""
    logger.debug(f"👉 Request started: {request.method} {request.url}")
    try:
        response = await call_next(request)
        logger.debug(
            f"✅ Request finished: {request.method} {request.url} - Status: {response.status_code}"
        )
        return response
    except Exception as e:
        logger.error(
            f"❌ Request failed: {request.method} {request.url} - Error: {e}",
            exc_info=True,
        )
        raise


@app.exception_handler(RcaError)
async def rca_error_handler(request: Request, exc: RcaError) -> JSONResponse:
    logger.warning(f"{exc.kind.value} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=_STATUS_BY_KIND.get(exc.kind, 500),
        content={"kind": exc.kind.value, "message": exc.message, "details": exc.details},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global handler for unhandled exceptions."""
    logger.error(f"🔥 Global exception handler caught: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "Internal Server Error", "detail": str(exc)},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class WindowRequest(BaseModel):
    """Request model for window analysis."""

    services: list[str] = Field(min_length=1)
    start: Any = Field(description="Epoch seconds/ms/ns or ISO-8601")
    end: Any = Field(description="Epoch seconds/ms/ns or ISO-8601")


class ExperimentRequest(BaseModel):
    """Request model for fault-injection experiments."""

    fault_specs: list[dict[str, Any]] = Field(min_length=1)
    concurrent: bool = False


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok", "cache": app.state.orchestrator.index.cache.stats()}


@app.get("/api/analyze/{trace_id}")
async def analyze_trace(trace_id: str) -> AnalysisResult:
    """Localize the root cause of one trace.

    Pipeline failures are part of the result (``state == "Failed"``) and are
    returned with status 200 so callers keep the partial evidence.
    """
    return await app.state.orchestrator.analyze(trace_id)


@app.post("/api/analyze/window")
async def analyze_window(payload: WindowRequest) -> list[SuspectScore]:
    """Rank suspects over every trace of the given services in a time range."""
    try:
        time_range = TimeRange(start=payload.start, end=payload.end)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return await app.state.orchestrator.analyze_window(set(payload.services), time_range)


@app.post("/api/experiments")
async def run_experiments(payload: ExperimentRequest) -> list[EvaluationResult]:
    """Inject faults into the simulated target and score the rankings."""
    return await app.state.harness.run_experiments(
        payload.fault_specs, concurrent=payload.concurrent
    )


if __name__ == "__main__":
    setup_telemetry()
    port = int(os.getenv("PORT", 8001))
    print(f"🚀 Starting Root Cause Localization API on http://0.0.0.0:{port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
