"""
Unit Tests for the Budget Request Lifecycle State Machine

Tests:
- VALID_TRANSITIONS constant
- validate_transition() function
- ensure_transition() function
- utility helpers
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.budget_request_errors import BudgetRequestErrorCode, InvalidTransition
from services.budget_request_models import BudgetRequestStatus
from services.budget_request_state_machine import (
    REQUIRED_STATUS,
    TERMINAL_STATES,
    VALID_STATES,
    VALID_TRANSITIONS,
    ensure_transition,
    get_valid_transitions,
    is_terminal_state,
    is_valid_state,
    validate_transition,
)


# =============================================================================
# Test VALID_TRANSITIONS Constant
# =============================================================================

class TestValidTransitionsConstant:

    def test_draft_transitions(self) -> None:
        """DRAFT may be submitted (or cancelled)."""
        assert "SUBMITTED" in VALID_TRANSITIONS["DRAFT"]
        assert "APPROVED" not in VALID_TRANSITIONS["DRAFT"]
        assert "REJECTED" not in VALID_TRANSITIONS["DRAFT"]

    def test_submitted_transitions(self) -> None:
        targets = VALID_TRANSITIONS["SUBMITTED"]
        assert "APPROVED" in targets
        assert "REJECTED" in targets
        assert "DRAFT" not in targets

    def test_terminal_states_have_no_targets(self) -> None:
        for state in ("APPROVED", "REJECTED", "CANCELLED"):
            assert VALID_TRANSITIONS[state] == []
            assert state in TERMINAL_STATES

    def test_all_statuses_defined(self) -> None:
        for status in BudgetRequestStatus:
            assert status.value in VALID_TRANSITIONS

    def test_required_status_per_operation(self) -> None:
        assert REQUIRED_STATUS["SUBMITTED"] == "DRAFT"
        assert REQUIRED_STATUS["APPROVED"] == "SUBMITTED"
        assert REQUIRED_STATUS["REJECTED"] == "SUBMITTED"


# =============================================================================
# Test validate_transition() Function
# =============================================================================

class TestValidateTransition:

    @pytest.mark.parametrize("current,target", [
        ("DRAFT", "SUBMITTED"),
        ("SUBMITTED", "APPROVED"),
        ("SUBMITTED", "REJECTED"),
    ])
    def test_valid_transitions(self, current: str, target: str) -> None:
        is_valid, error = validate_transition(current, target, "test-corr-id")
        assert is_valid is True
        assert error is None

    @pytest.mark.parametrize("current,target", [
        ("DRAFT", "APPROVED"),
        ("DRAFT", "REJECTED"),
        ("REJECTED", "APPROVED"),
        ("APPROVED", "REJECTED"),
        ("APPROVED", "SUBMITTED"),
        ("SUBMITTED", "DRAFT"),
    ])
    def test_invalid_transitions(self, current: str, target: str) -> None:
        is_valid, error = validate_transition(current, target, "test-corr-id")
        assert is_valid is False
        assert error == BudgetRequestErrorCode.INVALID_TRANSITION

    def test_unknown_current_state(self) -> None:
        is_valid, error = validate_transition("ARCHIVED", "SUBMITTED")
        assert is_valid is False
        assert error == "BRQ-030"

    def test_unknown_target_state(self) -> None:
        is_valid, error = validate_transition("DRAFT", "PUBLISHED")
        assert is_valid is False
        assert error == "BRQ-030"

    def test_invalid_transition_is_logged_with_correlation_id(self, caplog) -> None:
        with caplog.at_level("ERROR"):
            validate_transition("REJECTED", "APPROVED", "corr-xyz")
        assert "BRQ-030" in caplog.text
        assert "corr-xyz" in caplog.text


# =============================================================================
# Test ensure_transition() Function
# =============================================================================

class TestEnsureTransition:

    def test_allowed_transition_returns_none(self) -> None:
        assert ensure_transition("DRAFT", "SUBMITTED") is None

    def test_approving_rejected_request_names_required_status(self) -> None:
        with pytest.raises(InvalidTransition) as exc_info:
            ensure_transition("REJECTED", "APPROVED")
        error = exc_info.value
        assert error.current_status == "REJECTED"
        assert error.required_status == "SUBMITTED"
        assert error.error_code == "BRQ-030"
        assert error.details["required_status"] == "SUBMITTED"

    def test_submitting_submitted_request(self) -> None:
        with pytest.raises(InvalidTransition) as exc_info:
            ensure_transition("SUBMITTED", "SUBMITTED")
        assert exc_info.value.required_status == "DRAFT"


# =============================================================================
# Test Utility Functions
# =============================================================================

class TestUtilityFunctions:

    def test_get_valid_transitions_unknown_state(self) -> None:
        assert get_valid_transitions("UNKNOWN") == []

    def test_is_terminal_state(self) -> None:
        assert is_terminal_state("APPROVED") is True
        assert is_terminal_state("DRAFT") is False

    def test_is_valid_state(self) -> None:
        assert all(is_valid_state(s) for s in VALID_STATES)
        assert is_valid_state("PENDING") is False
