"""
============================================================================
Budget Request Service - Prometheus Metrics
============================================================================

Input Constraints: All currency values must be Decimal
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- budget_requests_created_total: Requests created, by department
- budget_request_transitions_total: Status transitions, by from/to status
- budget_sync_outcomes_total: Mirror sync outcomes (cache_hit|live|stale|synthetic)
- budget_synthetic_fallback_total: Synthetic budget activations, by department
- side_effect_deliveries_total: Side-effect deliveries, by kind and result
- side_effect_failures_total: Side-effect deliveries that exhausted retries
- budget_reserved_amount: Distribution of approved reservation totals
- budget_cache_operations_total: Response cache hits/misses/errors

Decimal values are converted to float ONLY at the Prometheus boundary.
Recorders never raise: a metric failure is logged and swallowed.

============================================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from prometheus_client import Counter, Histogram

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

REQUESTS_CREATED = Counter(
    "budget_requests_created_total",
    "Total number of budget requests created",
    ["department"]
)

STATUS_TRANSITIONS = Counter(
    "budget_request_transitions_total",
    "Total number of budget request status transitions",
    ["from_status", "to_status"]
)

SYNC_OUTCOMES = Counter(
    "budget_sync_outcomes_total",
    "Department budget sync outcomes",
    ["outcome"]
)

SYNTHETIC_FALLBACKS = Counter(
    "budget_synthetic_fallback_total",
    "Times a synthetic department budget was substituted for Finance data",
    ["department"]
)

SIDE_EFFECT_DELIVERIES = Counter(
    "side_effect_deliveries_total",
    "Side-effect delivery attempts by kind and result",
    ["kind", "result"]
)

SIDE_EFFECT_FAILURES = Counter(
    "side_effect_failures_total",
    "Side-effect intents that exhausted their retries",
    ["kind"]
)

RESERVED_AMOUNT_HISTOGRAM = Histogram(
    "budget_reserved_amount",
    "Distribution of approved reservation totals",
    ["department"],
    buckets=[1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000, 10000000]
)

CACHE_OPERATIONS = Counter(
    "budget_cache_operations_total",
    "Response cache operations",
    ["operation", "result"]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_request_created(department: str, correlation_id: Optional[str] = None) -> None:
    try:
        REQUESTS_CREATED.labels(department=department).inc()
        logger.debug(
            "Metric: request_created | department=%s | correlation_id=%s",
            department, correlation_id
        )
    except Exception as e:
        logger.error("[OBS-001] Failed to record request_created metric | error=%s", str(e))


def record_transition(
    from_status: str,
    to_status: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Record a status transition.

    Args:
        from_status: Status before the transition
        to_status: Status after the transition
        correlation_id: Optional tracking ID
    """
    try:
        STATUS_TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc()
        logger.debug(
            "Metric: transition | %s -> %s | correlation_id=%s",
            from_status, to_status, correlation_id
        )
    except Exception as e:
        logger.error("[OBS-002] Failed to record transition metric | error=%s", str(e))


def record_sync_outcome(outcome: str) -> None:
    try:
        SYNC_OUTCOMES.labels(outcome=outcome).inc()
    except Exception as e:
        logger.error("[OBS-003] Failed to record sync_outcome metric | error=%s", str(e))


def record_synthetic_fallback(department: str) -> None:
    try:
        SYNTHETIC_FALLBACKS.labels(department=department).inc()
    except Exception as e:
        logger.error("[OBS-004] Failed to record synthetic_fallback metric | error=%s", str(e))


def record_side_effect(kind: str, result: str) -> None:
    try:
        SIDE_EFFECT_DELIVERIES.labels(kind=kind, result=result).inc()
    except Exception as e:
        logger.error("[OBS-005] Failed to record side_effect metric | error=%s", str(e))


def record_side_effect_failure(kind: str) -> None:
    try:
        SIDE_EFFECT_FAILURES.labels(kind=kind).inc()
    except Exception as e:
        logger.error("[OBS-006] Failed to record side_effect_failure metric | error=%s", str(e))


def record_reserved_amount(department: str, amount: Decimal) -> None:
    """
    Record an approved reservation total.

    Zero-float mandate: amount stays Decimal until this boundary.
    """
    try:
        RESERVED_AMOUNT_HISTOGRAM.labels(department=department).observe(float(amount))
    except Exception as e:
        logger.error("[OBS-007] Failed to record reserved_amount metric | error=%s", str(e))


def record_cache_operation(operation: str, result: str) -> None:
    try:
        CACHE_OPERATIONS.labels(operation=operation, result=result).inc()
    except Exception as e:
        logger.error("[OBS-008] Failed to record cache_operation metric | error=%s", str(e))


__all__ = [
    "REQUESTS_CREATED",
    "STATUS_TRANSITIONS",
    "SYNC_OUTCOMES",
    "SYNTHETIC_FALLBACKS",
    "SIDE_EFFECT_DELIVERIES",
    "SIDE_EFFECT_FAILURES",
    "RESERVED_AMOUNT_HISTOGRAM",
    "CACHE_OPERATIONS",
    "record_request_created",
    "record_transition",
    "record_sync_outcome",
    "record_synthetic_fallback",
    "record_side_effect",
    "record_side_effect_failure",
    "record_reserved_amount",
    "record_cache_operation",
]
