"""
============================================================================
Budget Request Service
Observability Module - Prometheus Metrics
============================================================================
"""

from app.observability.metrics import (
    REQUESTS_CREATED,
    STATUS_TRANSITIONS,
    SYNC_OUTCOMES,
    SYNTHETIC_FALLBACKS,
    SIDE_EFFECT_DELIVERIES,
    SIDE_EFFECT_FAILURES,
    RESERVED_AMOUNT_HISTOGRAM,
    CACHE_OPERATIONS,
    record_request_created,
    record_transition,
    record_sync_outcome,
    record_synthetic_fallback,
    record_side_effect,
    record_side_effect_failure,
    record_reserved_amount,
    record_cache_operation,
)

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
