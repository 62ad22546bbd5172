"""
============================================================================
Budget Request Lifecycle State Machine
============================================================================

Traceability: All operations include correlation_id for audit

BUDGET REQUEST STATE MACHINE:
    Every request follows a strict state machine with SUBMITTED as the
    mandatory review gate:

    DRAFT → SUBMITTED (requester submits for review)
    SUBMITTED → APPROVED (Finance approves, reservation computed)
    SUBMITTED → REJECTED (Finance rejects with review notes)
    DRAFT | SUBMITTED → CANCELLED (declared, no operation drives it yet)

    Terminal States: APPROVED, REJECTED, CANCELLED

ERROR CODES:
    - BRQ-030: Invalid state transition attempted

============================================================================
"""

from typing import Optional, Dict, List, Tuple
import logging

from services.budget_request_errors import BudgetRequestErrorCode, InvalidTransition

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# VALID_TRANSITIONS Constant
# =============================================================================

VALID_TRANSITIONS: Dict[str, List[str]] = {
    "DRAFT": ["SUBMITTED", "CANCELLED"],
    "SUBMITTED": ["APPROVED", "REJECTED", "CANCELLED"],
    "APPROVED": [],  # Terminal state - no outbound transitions
    "REJECTED": [],  # Terminal state - no outbound transitions
    "CANCELLED": [],  # Terminal state - no outbound transitions
}

# Terminal states (no outbound transitions)
TERMINAL_STATES: List[str] = ["APPROVED", "REJECTED", "CANCELLED"]

# All valid states
VALID_STATES: List[str] = list(VALID_TRANSITIONS.keys())

# Status each engine operation requires
REQUIRED_STATUS: Dict[str, str] = {
    "SUBMITTED": "DRAFT",
    "APPROVED": "SUBMITTED",
    "REJECTED": "SUBMITTED",
}


# =============================================================================
# validate_transition() Function
# =============================================================================

def validate_transition(
    current_state: str,
    target_state: str,
    correlation_id: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    """
    Validate if a status transition is allowed.

    ============================================================================
    VALIDATION PROCEDURE:
    ============================================================================
    1. Check if current_state is a valid state
    2. Check if target_state is a valid state
    3. Check if transition from current_state to target_state is in VALID_TRANSITIONS
    4. If invalid, log BRQ-030 error with correlation_id
    5. Return (is_valid, error_code) tuple
    ============================================================================

    Args:
        current_state: Current status of the request
        target_state: Target status to transition to
        correlation_id: Optional correlation ID for audit logging

    Returns:
        (True, None) if transition is valid
        (False, "BRQ-030") if transition is invalid
    """
    code = BudgetRequestErrorCode.INVALID_TRANSITION

    if current_state not in VALID_STATES:
        logger.error(
            f"[{code}] Invalid current state: {current_state}. "
            f"Valid states: {VALID_STATES}. "
            f"correlation_id={correlation_id}"
        )
        return (False, code)

    if target_state not in VALID_STATES:
        logger.error(
            f"[{code}] Invalid target state: {target_state}. "
            f"Valid states: {VALID_STATES}. "
            f"correlation_id={correlation_id}"
        )
        return (False, code)

    valid_targets = VALID_TRANSITIONS.get(current_state, [])

    if target_state not in valid_targets:
        valid_str = "/".join(valid_targets) if valid_targets else "NONE (terminal state)"
        logger.error(
            f"[{code}] Invalid state transition: {current_state} → {target_state}. "
            f"Valid transitions from {current_state}: {valid_str}. "
            f"correlation_id={correlation_id}"
        )
        return (False, code)

    logger.debug(
        f"[BR-STATE] Transition validated: {current_state} → {target_state} | "
        f"correlation_id={correlation_id}"
    )
    return (True, None)


def ensure_transition(
    current_state: str,
    target_state: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Raise InvalidTransition unless current_state → target_state is allowed.

    The raised error names the status the operation required, so callers
    can tell the user what the request must be in (e.g. "must be SUBMITTED").
    """
    is_valid, _ = validate_transition(current_state, target_state, correlation_id)
    if not is_valid:
        raise InvalidTransition(
            current_status=current_state,
            target_status=target_state,
            required_status=REQUIRED_STATUS.get(target_state),
        )


# =============================================================================
# Utility Functions
# =============================================================================

def get_valid_transitions(state: str) -> List[str]:
    """Valid target states from a given state (empty for terminal states)."""
    return VALID_TRANSITIONS.get(state, [])


def is_terminal_state(state: str) -> bool:
    return state in TERMINAL_STATES


def is_valid_state(state: str) -> bool:
    return state in VALID_STATES


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "VALID_STATES",
    "REQUIRED_STATUS",
    "validate_transition",
    "ensure_transition",
    "get_valid_transitions",
    "is_terminal_state",
    "is_valid_state",
]
