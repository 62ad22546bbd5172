"""
============================================================================
Budget Request Service - Core Domain Types
============================================================================

Decimal Integrity: All monetary values use decimal.Decimal with ROUND_HALF_EVEN
Traceability: All lifecycle operations carry a correlation_id

This module defines the domain vocabulary shared by every service:
- Enums for statuses, departments, priorities, history actions, events
- ActorContext: who is performing an operation
- Canonical input records produced by the payload normalizer
- DepartmentBudget: the mirror's answer for one department/period
- BudgetJSONEncoder: Decimal/datetime-safe JSON for caches and payloads

============================================================================
"""

from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, date
from enum import Enum
import json
import uuid


# =============================================================================
# Constants
# =============================================================================

# Matches NUMERIC(18,2)
PRECISION_MONEY = Decimal("0.01")
PRECISION_PERCENT = Decimal("0.01")

MAX_AMOUNT_REQUESTED = Decimal("10000000")
MIN_PURPOSE_LENGTH = 10

# Number of history rows embedded in a detail read
DETAIL_HISTORY_LIMIT = 10


# =============================================================================
# Enums
# =============================================================================

class BudgetRequestStatus(str, Enum):
    """
    Budget request lifecycle status.

    DRAFT -> SUBMITTED -> APPROVED | REJECTED
    CANCELLED is modeled but not driven by any operation.
    """
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class Department(str, Enum):
    FINANCE = "finance"
    HR = "hr"
    INVENTORY = "inventory"
    OPERATIONS = "operations"


class RequestPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RequestCategory(str, Enum):
    OPERATIONAL = "operational"
    CAPITAL = "capital"
    ADMINISTRATIVE = "administrative"
    EMERGENCY = "emergency"


class ItemPriority(str, Enum):
    MUST_HAVE = "must_have"
    SHOULD_HAVE = "should_have"
    NICE_TO_HAVE = "nice_to_have"


class HistoryAction(str, Enum):
    """Action label recorded on each approval-history row."""
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ActorRoleType(str, Enum):
    ADMIN = "ADMIN"
    NON_ADMIN = "NON_ADMIN"


class WebhookEvent(str, Enum):
    CREATED = "budget_request.created"
    SUBMITTED = "budget_request.submitted"
    APPROVED = "budget_request.approved"
    REJECTED = "budget_request.rejected"


class NotificationType(str, Enum):
    REQUEST_SUBMITTED = "REQUEST_SUBMITTED"
    REQUEST_APPROVED = "REQUEST_APPROVED"
    REQUEST_REJECTED = "REQUEST_REJECTED"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    VIEW = "VIEW"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    DELETE = "DELETE"


# =============================================================================
# Custom JSON Encoder for Decimal and datetime
# =============================================================================

class BudgetJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for budget data types.

    Handles:
    - Decimal -> str (preserves precision)
    - datetime/date -> ISO format string
    - UUID -> str
    - Enum -> value
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def dumps(value: Any) -> str:
    """Canonical JSON (sorted keys) using BudgetJSONEncoder."""
    return json.dumps(value, cls=BudgetJSONEncoder, sort_keys=True)


# =============================================================================
# Decimal Helpers
# =============================================================================

def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert a raw value to Decimal without passing through float.

    Returns None for None. Raises InvalidOperation/TypeError for garbage,
    which callers translate into ValidationFailed.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("boolean is not a monetary value")
    if isinstance(value, (int, str)):
        return Decimal(str(value).strip())
    if isinstance(value, float):
        # repr() gives the shortest round-tripping literal
        return Decimal(repr(value))
    raise TypeError(f"unsupported numeric type: {type(value).__name__}")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN)


def format_money(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(quantize_money(value))


# =============================================================================
# ActorContext
# =============================================================================

@dataclass(frozen=True)
class ActorContext:
    """
    The authenticated caller, as established by the surrounding auth layer.

    Role strings follow the upstream identity provider ("Finance Admin",
    "Operations Staff", "SuperAdmin").
    """

    user_id: str
    username: str
    role: str
    department: str
    email: Optional[str] = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == "SuperAdmin"

    @property
    def is_admin(self) -> bool:
        return "admin" in self.role.lower()

    @property
    def is_finance(self) -> bool:
        return self.department == Department.FINANCE.value

    @property
    def is_finance_admin(self) -> bool:
        return self.is_finance and self.is_admin

    @property
    def role_type(self) -> ActorRoleType:
        return ActorRoleType.ADMIN if self.is_admin else ActorRoleType.NON_ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "role": self.role,
            "department": self.department,
            "email": self.email,
        }


# =============================================================================
# Canonical Input Records
# =============================================================================

@dataclass
class ItemAllocationInput:
    """One normalized line item of a budget request."""

    item_name: str
    quantity: int
    unit_cost: Decimal
    total_cost: Decimal
    item_code: Optional[str] = None
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    item_priority: str = ItemPriority.MUST_HAVE.value
    is_essential: bool = True


@dataclass
class BudgetRequestInput:
    """Normalized create payload."""

    department: str
    amount_requested: Decimal
    purpose: str
    justification: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    urgency_reason: Optional[str] = None
    fiscal_year: Optional[int] = None
    fiscal_period: Optional[str] = None
    created_by_email: Optional[str] = None
    linked_purchase_request_id: Optional[int] = None
    linked_purchase_request_ref_no: Optional[str] = None
    initial_status: str = BudgetRequestStatus.DRAFT.value
    items: List[ItemAllocationInput] = field(default_factory=list)


@dataclass
class ApprovalInput:
    review_notes: Optional[str] = None
    reserved_amount: Optional[Decimal] = None
    buffer_percentage: Optional[Decimal] = None


@dataclass
class RejectionInput:
    review_notes: str
    rejection_reason: Optional[str] = None


@dataclass
class BudgetRequestFilters:
    """
    List filters. Every field participates in the list cache key, so two
    callers with different filter sets never share a cached page.
    """

    status: Optional[str] = None
    department: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None
    page: int = 1
    limit: int = 20

    def to_cache_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "department": self.department,
            "priority": self.priority,
            "category": self.category,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "search": self.search,
            "page": self.page,
            "limit": self.limit,
        }


# =============================================================================
# DepartmentBudget
# =============================================================================

@dataclass(frozen=True)
class DepartmentBudget:
    """
    Budget mirror answer for one (department, fiscal_year, fiscal_period).

    is_stale is advisory: callers display it but never block on it.
    A negative budget_id marks a synthetic record.
    """

    budget_id: int
    department: str
    fiscal_year: int
    fiscal_period: str
    allocated_amount: Decimal
    used_amount: Decimal
    reserved_amount: Decimal
    remaining_amount: Decimal
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    last_synced_at: Optional[datetime]
    is_stale: bool

    @property
    def is_synthetic(self) -> bool:
        return self.budget_id < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "budget_id": self.budget_id,
            "department": self.department,
            "fiscal_year": self.fiscal_year,
            "fiscal_period": self.fiscal_period,
            "allocated_amount": str(self.allocated_amount),
            "used_amount": str(self.used_amount),
            "reserved_amount": str(self.reserved_amount),
            "remaining_amount": str(self.remaining_amount),
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "is_stale": self.is_stale,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DepartmentBudget":
        def _dt(value: Any) -> Optional[datetime]:
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return cls(
            budget_id=int(data["budget_id"]),
            department=data["department"],
            fiscal_year=int(data["fiscal_year"]),
            fiscal_period=data["fiscal_period"],
            allocated_amount=Decimal(str(data["allocated_amount"])),
            used_amount=Decimal(str(data["used_amount"])),
            reserved_amount=Decimal(str(data["reserved_amount"])),
            remaining_amount=Decimal(str(data["remaining_amount"])),
            period_start=_dt(data.get("period_start")),
            period_end=_dt(data.get("period_end")),
            last_synced_at=_dt(data.get("last_synced_at")),
            is_stale=bool(data.get("is_stale", False)),
        )


__all__ = [
    "PRECISION_MONEY",
    "PRECISION_PERCENT",
    "MAX_AMOUNT_REQUESTED",
    "MIN_PURPOSE_LENGTH",
    "DETAIL_HISTORY_LIMIT",
    "BudgetRequestStatus",
    "Department",
    "RequestPriority",
    "RequestCategory",
    "ItemPriority",
    "HistoryAction",
    "ActorRoleType",
    "WebhookEvent",
    "NotificationType",
    "DeliveryStatus",
    "AuditAction",
    "BudgetJSONEncoder",
    "dumps",
    "to_decimal",
    "quantize_money",
    "format_money",
    "ActorContext",
    "ItemAllocationInput",
    "BudgetRequestInput",
    "ApprovalInput",
    "RejectionInput",
    "BudgetRequestFilters",
    "DepartmentBudget",
]
