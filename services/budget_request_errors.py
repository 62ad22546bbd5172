"""
============================================================================
Budget Request Service - Error Taxonomy
============================================================================

Every failure the lifecycle can surface to a caller is one of the typed
errors below. Each carries a stable error code for logs and API responses.

ERROR CODES:
    - BRQ-010: Validation failed (malformed or out-of-range input)
    - BRQ-020: Budget request not found (missing or soft-deleted)
    - BRQ-030: Invalid state transition
    - BRQ-040: Actor lacks department/role scope
    - BRQ-050: Department budget unavailable (sync and all fallbacks failed)
    - BRQ-060: Downstream delivery failed (audit/webhook/email/finance)
    - BRQ-070: Required configuration missing or invalid

Propagation:
    BRQ-010..BRQ-050 abort the operation before any write.
    BRQ-060 is always caught inside the side-effect dispatcher.

============================================================================
"""

from typing import Any, Dict, Optional


class BudgetRequestErrorCode:
    """Error codes for audit logging and API error payloads."""
    VALIDATION_FAILED = "BRQ-010"
    NOT_FOUND = "BRQ-020"
    INVALID_TRANSITION = "BRQ-030"
    FORBIDDEN = "BRQ-040"
    BUDGET_UNAVAILABLE = "BRQ-050"
    DOWNSTREAM_DELIVERY_FAILED = "BRQ-060"
    CONFIG_MISSING = "BRQ-070"


class BudgetRequestError(Exception):
    """
    Base class for all budget request errors.

    Args:
        message: Human-readable error message
        error_code: BRQ error code
        details: Structured context (field name, statuses, ids)
    """

    error_code: str = "BRQ-000"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(f"[{self.error_code}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationFailed(BudgetRequestError):
    """Malformed or out-of-range input, rejected before persistence."""

    error_code = BudgetRequestErrorCode.VALIDATION_FAILED

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message, details={"field": field})


class NotFound(BudgetRequestError):
    """Referenced record does not exist or is soft-deleted."""

    error_code = BudgetRequestErrorCode.NOT_FOUND

    def __init__(self, resource: str, resource_id: Any) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource} {resource_id} not found",
            details={"resource": resource, "id": resource_id},
        )


class InvalidTransition(BudgetRequestError):
    """Transition attempted from a status that does not permit it."""

    error_code = BudgetRequestErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        current_status: str,
        target_status: str,
        required_status: Optional[str] = None,
    ) -> None:
        self.current_status = current_status
        self.target_status = target_status
        self.required_status = required_status
        message = f"Cannot move budget request from {current_status} to {target_status}"
        if required_status:
            message += f"; required status is {required_status}"
        super().__init__(
            message,
            details={
                "current_status": current_status,
                "target_status": target_status,
                "required_status": required_status,
            },
        )


class Forbidden(BudgetRequestError):
    """Actor lacks department/role scope for the action."""

    error_code = BudgetRequestErrorCode.FORBIDDEN

    def __init__(self, message: str, action: Optional[str] = None) -> None:
        super().__init__(message, details={"action": action} if action else None)


class BudgetUnavailable(BudgetRequestError):
    """Live sync, the persisted mirror and synthesis all failed."""

    error_code = BudgetRequestErrorCode.BUDGET_UNAVAILABLE

    def __init__(self, department: str, fiscal_year: int, fiscal_period: str, reason: str) -> None:
        super().__init__(
            f"Budget for {department} {fiscal_year} {fiscal_period} unavailable: {reason}",
            details={
                "department": department,
                "fiscal_year": fiscal_year,
                "fiscal_period": fiscal_period,
            },
        )


class DownstreamDeliveryFailed(BudgetRequestError):
    """Audit/webhook/email/finance delivery failure. Never reaches callers."""

    error_code = BudgetRequestErrorCode.DOWNSTREAM_DELIVERY_FAILED

    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        super().__init__(message, details={"channel": channel})


class BudgetConfigurationError(BudgetRequestError):
    """Raised at startup when required configuration is missing (fail closed)."""

    error_code = BudgetRequestErrorCode.CONFIG_MISSING

    def __init__(self, message: str) -> None:
        super().__init__(message)


__all__ = [
    "BudgetRequestErrorCode",
    "BudgetRequestError",
    "ValidationFailed",
    "NotFound",
    "InvalidTransition",
    "Forbidden",
    "BudgetUnavailable",
    "DownstreamDeliveryFailed",
    "BudgetConfigurationError",
]
