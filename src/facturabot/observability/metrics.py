"""Prometheus metrics for facturabot observability.

This module provides Prometheus metrics for monitoring:
- Distributed lock contention
- Outbound queue saturation (depth, in-flight, wait time, outcomes)
- Invoice operation outcomes and quota denials
- Folio allocation, folio gaps and cross-system inconsistencies
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

__all__ = [
    "MetricsConfig",
    "MetricsManager",
    "LOCK_ACQUISITIONS",
    "QUEUE_DEPTH",
    "QUEUE_IN_FLIGHT",
    "QUEUE_REQUESTS",
    "QUEUE_WAIT_SECONDS",
    "INVOICE_OPERATIONS",
    "QUOTA_DENIALS",
    "FOLIOS_ALLOCATED",
    "FOLIO_GAPS",
    "PERSISTENCE_INCONSISTENCIES",
    "get_metrics",
    "create_metrics_manager",
]


@dataclass
class MetricsConfig:
    """Configuration for Prometheus metrics.

    Attributes:
        enabled: Whether metrics collection is enabled.
        prefix: Prefix for all metric names.
    """

    enabled: bool = True
    prefix: str = "facturabot"

    @classmethod
    def from_env(cls) -> MetricsConfig:
        """Create configuration from environment variables."""
        return cls(
            enabled=os.getenv("METRICS_ENABLED", "true").lower() == "true",
            prefix=os.getenv("METRICS_PREFIX", "facturabot"),
        )


_config = MetricsConfig()

# ============================================================================
# Lock Metrics
# ============================================================================

LOCK_ACQUISITIONS = Counter(
    f"{_config.prefix}_lock_acquisitions_total",
    "Lock acquisition attempts by outcome",
    ["backend", "outcome"],
)

# ============================================================================
# Outbound Queue Metrics
# ============================================================================

QUEUE_DEPTH = Gauge(
    f"{_config.prefix}_outbound_queue_depth",
    "Requests waiting in the outbound invoicing queue",
)

QUEUE_IN_FLIGHT = Gauge(
    f"{_config.prefix}_outbound_queue_in_flight",
    "Requests currently executing against the invoicing API",
)

QUEUE_REQUESTS = Counter(
    f"{_config.prefix}_outbound_queue_requests_total",
    "Outbound queue requests by operation type and outcome",
    ["operation_type", "outcome"],
)

QUEUE_WAIT_SECONDS = Histogram(
    f"{_config.prefix}_outbound_queue_wait_seconds",
    "Time requests spent queued before starting",
    ["operation_type"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# ============================================================================
# Invoice Metrics
# ============================================================================

INVOICE_OPERATIONS = Counter(
    f"{_config.prefix}_invoice_operations_total",
    "Guarded invoice operations by outcome",
    ["outcome"],
)

QUOTA_DENIALS = Counter(
    f"{_config.prefix}_quota_denials_total",
    "Quota checks that denied invoice creation",
    ["reason"],
)

FOLIOS_ALLOCATED = Counter(
    f"{_config.prefix}_folios_allocated_total",
    "Folio numbers handed out",
    ["strategy"],
)

FOLIO_GAPS = Counter(
    f"{_config.prefix}_folio_gaps_total",
    "Folios consumed without a resulting invoice",
)

PERSISTENCE_INCONSISTENCIES = Counter(
    f"{_config.prefix}_persistence_inconsistencies_total",
    "External invoices created but not persisted locally",
)


class MetricsManager:
    """Manages Prometheus metrics export.

    A custom registry can be passed for testing.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.config = config or MetricsConfig()
        self.registry = registry or REGISTRY

    def get_metrics(self) -> bytes:
        """Generate metrics output in Prometheus format."""
        return generate_latest(self.registry)


_metrics_manager: MetricsManager | None = None


def get_metrics_manager() -> MetricsManager:
    """Get the global metrics manager instance."""
    global _metrics_manager
    if _metrics_manager is None:
        _metrics_manager = MetricsManager(MetricsConfig.from_env())
    return _metrics_manager


def create_metrics_manager(
    config: MetricsConfig | None = None,
    registry: CollectorRegistry | None = None,
) -> MetricsManager:
    """Create and register a new metrics manager."""
    global _metrics_manager
    _metrics_manager = MetricsManager(config, registry)
    return _metrics_manager


def get_metrics() -> bytes:
    """Get current metrics in Prometheus format."""
    return get_metrics_manager().get_metrics()


# ============================================================================
# Convenience Functions for Recording Metrics
# ============================================================================


def record_lock_acquisition(backend: str, outcome: str) -> None:
    """Record a lock acquisition attempt.

    Args:
        backend: "redis" or "memory".
        outcome: "acquired", "contended", "error", or "lost" when an
            extension found the lock already expired.
    """
    LOCK_ACQUISITIONS.labels(backend=backend, outcome=outcome).inc()


def set_queue_state(depth: int, in_flight: int) -> None:
    """Mirror the outbound queue's depth and in-flight count."""
    QUEUE_DEPTH.set(depth)
    QUEUE_IN_FLIGHT.set(in_flight)


def record_queue_request(operation_type: str, outcome: str) -> None:
    """Record an outbound queue request outcome.

    Args:
        operation_type: Timeout tier of the request.
        outcome: "success", "failed", "retried", "rejected" or "cleared".
    """
    QUEUE_REQUESTS.labels(operation_type=operation_type, outcome=outcome).inc()


def observe_queue_wait(operation_type: str, wait_seconds: float) -> None:
    """Record how long a request waited before starting."""
    QUEUE_WAIT_SECONDS.labels(operation_type=operation_type).observe(wait_seconds)


def record_invoice_operation(outcome: str) -> None:
    """Record the final outcome of a guarded invoice operation."""
    INVOICE_OPERATIONS.labels(outcome=outcome).inc()


def record_quota_denial(reason: str) -> None:
    """Record a quota denial by reason code."""
    QUOTA_DENIALS.labels(reason=reason).inc()


def record_folio_allocated(strategy: str, count: int = 1) -> None:
    """Record folios handed out by the allocator."""
    FOLIOS_ALLOCATED.labels(strategy=strategy).inc(count)


def record_folio_gap() -> None:
    """Record a folio consumed without a resulting invoice."""
    FOLIO_GAPS.inc()


def record_persistence_inconsistency() -> None:
    """Record an external invoice that could not be persisted locally."""
    PERSISTENCE_INCONSISTENCIES.inc()
