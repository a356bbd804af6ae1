"""
Metrics Collection with Prometheus.

Exposes entitlement, purchase and restore metrics for monitoring.
"""

import time
from enum import Enum
from typing import Callable

from prometheus_client import Counter, Histogram, Info

from entitlement_engine.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    MODE = "mode"
    GRANTED = "granted"
    OUTCOME = "outcome"
    LIMITED = "limited"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlement engine.

    Covers:
    - Feature access checks (sync/async, granted/denied)
    - Purchase attempts (outcome, duration)
    - Verification failures (rate limited or not)
    - Restore runs (outcome, restored purchases)
    - Errors by type
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "entitlement_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Access Check Metrics
        # ====================================================================
        self.entitlement_checks_total = Counter(
            "entitlement_checks_total",
            "Total feature access checks",
            [MetricLabels.MODE, MetricLabels.GRANTED],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.purchase_attempts_total = Counter(
            "entitlement_purchase_attempts_total",
            "Total purchase attempts by final state",
            [MetricLabels.OUTCOME],
        )

        self.purchase_duration_seconds = Histogram(
            "entitlement_purchase_duration_seconds",
            "Purchase attempt duration in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.verification_failures_total = Counter(
            "entitlement_verification_failures_total",
            "Receipt verification failures",
            [MetricLabels.LIMITED],
        )

        # ====================================================================
        # Restore Metrics
        # ====================================================================
        self.restores_total = Counter(
            "entitlement_restores_total",
            "Total restore runs by outcome",
            [MetricLabels.OUTCOME],
        )

        self.restored_purchases_total = Counter(
            "entitlement_restored_purchases_total",
            "Purchases inserted, updated or deleted by restore",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Offline Verification Metrics
        # ====================================================================
        self.offline_verifications_total = Counter(
            "entitlement_offline_verifications_total",
            "Cached verification lookups while the verifier was unreachable",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "entitlement_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_access_check(self, mode: str, granted: bool) -> None:
        """Record a feature access decision."""
        if not settings.metrics_enabled:
            return
        self.entitlement_checks_total.labels(mode=mode, granted=str(granted)).inc()

    def record_purchase(self, outcome: str, duration: float) -> None:
        """Record the final state of a purchase attempt."""
        if not settings.metrics_enabled:
            return
        self.purchase_attempts_total.labels(outcome=outcome).inc()
        self.purchase_duration_seconds.observe(duration)

    def record_verification_failure(self, limited: bool) -> None:
        """Record a receipt verification failure."""
        if not settings.metrics_enabled:
            return
        self.verification_failures_total.labels(limited=str(limited)).inc()

    def record_restore(
        self,
        outcome: str,
        new_count: int = 0,
        updated_count: int = 0,
        deleted_count: int = 0,
    ) -> None:
        """Record a restore run."""
        if not settings.metrics_enabled:
            return
        self.restores_total.labels(outcome=outcome).inc()
        if new_count:
            self.restored_purchases_total.labels(operation="insert").inc(new_count)
        if updated_count:
            self.restored_purchases_total.labels(operation="update").inc(updated_count)
        if deleted_count:
            self.restored_purchases_total.labels(operation="delete").inc(deleted_count)

    def record_offline_verification(self, outcome: str) -> None:
        """Record an offline cache lookup (hit, miss or expired)."""
        if not settings.metrics_enabled:
            return
        self.offline_verifications_total.labels(outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        if not settings.metrics_enabled:
            return
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()


class track_duration:
    """
    Context manager measuring elapsed wall time.

    Usage:
        with track_duration() as timer:
            # ... perform purchase
        metrics.record_purchase("unlocked", timer.elapsed)
    """

    def __init__(self) -> None:
        self.start_time: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> "track_duration":
        """Start timing."""
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Stop timing."""
        self.elapsed = time.monotonic() - self.start_time


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get a Prometheus exposition handler for the host application.

    Usage:
        handler = get_metrics_handler()
        body = handler()
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
