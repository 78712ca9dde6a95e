"""Root Cause Localization Engine.

Given a trace id (or an incident window), retrieves the relevant telemetry,
rebuilds the service dependency graph, fuses error, metric and log signals
into a ranked suspect list, and asks a reasoning backend for a structured
verdict.
"""

from .agent import RootCauseOrchestrator
from .exceptions import ErrorKind, RcaError

__all__ = ["ErrorKind", "RcaError", "RootCauseOrchestrator"]
