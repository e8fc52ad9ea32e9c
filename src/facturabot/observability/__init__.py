"""Observability module for facturabot.

Prometheus metrics for lock contention, outbound queue saturation and
invoice operation outcomes.

Usage:
    from facturabot.observability import get_metrics

    payload = get_metrics()  # Prometheus exposition format
"""

from facturabot.observability.metrics import (
    MetricsConfig,
    MetricsManager,
    create_metrics_manager,
    get_metrics,
    get_metrics_manager,
)

__all__ = [
    "MetricsConfig",
    "MetricsManager",
    "create_metrics_manager",
    "get_metrics",
    "get_metrics_manager",
]
