"""Metric statistics helpers."""
