"""Decorators for pipeline operations with OpenTelemetry instrumentation."""

import functools
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("rca_agent.pipeline")
meter = metrics.get_meter("rca_agent.pipeline")

operation_duration = meter.create_histogram(
    name="rca_agent.operation.duration",
    description="Duration of pipeline operations",
    unit="ms",
)
operation_count = meter.create_counter(
    name="rca_agent.operation.count",
    description="Total number of pipeline operation calls",
    unit="1",
)


def _describe_args(
    func: Callable[..., Any], span: trace.Span, args: Any, kwargs: Any
) -> str:
    try:
        bound = inspect.signature(func).bind(*args, **kwargs)
        bound.apply_defaults()
    except TypeError:
        return f"args={args}, kwargs={kwargs}"

    for k, v in bound.arguments.items():
        if k == "self":
            continue
        # Truncate long values to stay under span attribute limits
        val_str = str(v)
        if len(val_str) > 1000:
            val_str = val_str[:1000] + "...(truncated)"
        span.set_attribute(f"arg.{k}", val_str)

    return ", ".join(
        f"{k}={repr(v)[:200]}" for k, v in bound.arguments.items() if k != "self"
    )


def _record(name: str, start_time: float, success: bool) -> float:
    duration_ms = (time.time() - start_time) * 1000
    attributes = {"operation.name": name, "success": str(success)}
    operation_duration.record(duration_ms, attributes)
    operation_count.add(1, attributes)
    return duration_ms


def traced_operation(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator that instruments a pipeline operation.

    This decorator provides:
    - An OTel span for every execution
    - OTel metrics (count and duration)
    - Standardized logging of arguments and outcome
    - Errors are recorded on the span and re-raised unchanged

    Example:
        @traced_operation
        async def retrieve(self, trace_id: str) -> TelemetryBundle:
            ...
    """
    name = func.__qualname__

    @functools.wraps(func)
    async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        with tracer.start_as_current_span(name) as span:
            span.set_attribute("code.function", name)
            arg_str = _describe_args(func, span, args, kwargs)
            logger.debug(f"🛠️  Operation: '{name}' | Args: {arg_str}")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = _record(name, start_time, success=False)
                logger.warning(
                    f"❌ Operation Failed: '{name}' | Duration: {duration_ms:.2f}ms | Error: {e}"
                )
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            duration_ms = _record(name, start_time, success=True)
            logger.debug(f"✅ Operation Success: '{name}' | Duration: {duration_ms:.2f}ms")
            return result

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        with tracer.start_as_current_span(name) as span:
            span.set_attribute("code.function", name)
            arg_str = _describe_args(func, span, args, kwargs)
            logger.debug(f"🛠️  Operation: '{name}' | Args: {arg_str}")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration_ms = _record(name, start_time, success=False)
                logger.warning(
                    f"❌ Operation Failed: '{name}' | Duration: {duration_ms:.2f}ms | Error: {e}"
                )
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            duration_ms = _record(name, start_time, success=True)
            logger.debug(f"✅ Operation Success: '{name}' | Duration: {duration_ms:.2f}ms")
            return result

    if inspect.iscoroutinefunction(func):
        return async_wrapper
    return sync_wrapper
