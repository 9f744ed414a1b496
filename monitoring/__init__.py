"""Prometheus metrics for the explorer cache."""
