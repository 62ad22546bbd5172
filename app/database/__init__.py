# ============================================================================
# Budget Request Service
# Database Module - Async SQLAlchemy Engine, Sessions and ORM Models
# ============================================================================

from app.database.session import Database, get_database_url
from app.database.models import (
    Base,
    BudgetRequest,
    BudgetRequestItemAllocation,
    BudgetRequestApprovalHistory,
    CachedDepartmentBudget,
    BudgetRequestNotification,
    SystemConfig,
    HistoryImmutableError,
)

__all__ = [
    "Database",
    "get_database_url",
    "Base",
    "BudgetRequest",
    "BudgetRequestItemAllocation",
    "BudgetRequestApprovalHistory",
    "CachedDepartmentBudget",
    "BudgetRequestNotification",
    "SystemConfig",
    "HistoryImmutableError",
]
