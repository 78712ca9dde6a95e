"""Correlation tools for distributed trace analysis."""

from .dependencies import ServiceEdge, ServiceGraph, build_service_graph

__all__ = ["ServiceEdge", "ServiceGraph", "build_service_graph"]
