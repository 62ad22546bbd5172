"""
============================================================================
Budget Request Service - Services Layer
============================================================================

Budget cache mirror, request store, response cache, lifecycle engine and
the side-effect dispatcher with its audit, webhook and email channels.

============================================================================
"""

from services.budget_request_errors import (
    BudgetRequestError,
    BudgetRequestErrorCode,
    ValidationFailed,
    NotFound,
    InvalidTransition,
    Forbidden,
    BudgetUnavailable,
    DownstreamDeliveryFailed,
    BudgetConfigurationError,
)

from services.budget_request_models import (
    ActorContext,
    BudgetRequestStatus,
    Department,
    DepartmentBudget,
)

from services.budget_request_lifecycle import BudgetRequestLifecycle

__all__ = [
    # Errors
    "BudgetRequestError",
    "BudgetRequestErrorCode",
    "ValidationFailed",
    "NotFound",
    "InvalidTransition",
    "Forbidden",
    "BudgetUnavailable",
    "DownstreamDeliveryFailed",
    "BudgetConfigurationError",
    # Models
    "ActorContext",
    "BudgetRequestStatus",
    "Department",
    "DepartmentBudget",
    # Lifecycle
    "BudgetRequestLifecycle",
]
