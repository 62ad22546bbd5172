"""
============================================================================
Budget Request Service - ORM Models
============================================================================

Decimal Integrity: Money columns are NUMERIC(18,2) mapped to decimal.Decimal
Input Constraints: Timestamps are stored and returned as UTC-aware datetimes

TABLES:
    - budget_requests                   (BudgetRequest)
    - budget_request_item_allocations   (BudgetRequestItemAllocation)
    - budget_request_approval_history   (BudgetRequestApprovalHistory, append-only)
    - cached_department_budgets         (CachedDepartmentBudget)
    - budget_request_notifications      (BudgetRequestNotification)
    - system_config                     (SystemConfig)

DATABASE INVARIANTS:
    - budget_shortfall >= 0
    - reserved_amount IS NOT NULL exactly when status = 'APPROVED'
    - one cached budget row per (department, fiscal_year, fiscal_period)
    - approval history rows are never updated or deleted (ORM listeners)

============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

logger = logging.getLogger(__name__)


# =============================================================================
# Column Types
# =============================================================================

class UTCDateTime(TypeDecorator):
    """
    Timezone-aware DateTime that always returns UTC.

    SQLite drops tzinfo on the way in; this puts it back on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def Money() -> Numeric:
    return Numeric(18, 2, asdecimal=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# =============================================================================
# BudgetRequest
# =============================================================================

class BudgetRequest(Base):
    __tablename__ = "budget_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_code: Mapped[Optional[str]] = mapped_column(String(32), unique=True)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    created_by_email: Mapped[Optional[str]] = mapped_column(String(255))
    created_by_role: Mapped[Optional[str]] = mapped_column(String(64))

    department: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_requested: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    justification: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Optional[str]] = mapped_column(String(32))
    priority: Mapped[Optional[str]] = mapped_column(String(16))
    urgency_reason: Mapped[Optional[str]] = mapped_column(Text)

    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[str] = mapped_column(String(16), nullable=False)

    linked_purchase_request_id: Mapped[Optional[int]] = mapped_column(Integer)
    linked_purchase_request_ref_no: Mapped[Optional[str]] = mapped_column(String(64))

    # Snapshot of the budget mirror at creation time
    department_budget_remaining: Mapped[Optional[Decimal]] = mapped_column(Money())
    budget_shortfall: Mapped[Decimal] = mapped_column(Money(), nullable=False, default=Decimal("0"))
    budget_before: Mapped[Optional[Decimal]] = mapped_column(Money())
    budget_snapshot_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64))
    reviewed_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    review_notes: Mapped[Optional[str]] = mapped_column(Text)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)

    reserved_amount: Mapped[Optional[Decimal]] = mapped_column(Money())
    buffer_amount: Mapped[Optional[Decimal]] = mapped_column(Money())
    buffer_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2, asdecimal=True))
    reservation_expiry: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    is_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reserved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    approved_by: Mapped[Optional[str]] = mapped_column(String(64))
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    rejected_by: Mapped[Optional[str]] = mapped_column(String(64))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(64))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Schema-only; nothing drives escalation or SLA tracking yet
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sla_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    is_overdue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64))
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_by: Mapped[Optional[str]] = mapped_column(String(64))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    items: Mapped[List["BudgetRequestItemAllocation"]] = relationship(
        back_populates="budget_request",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BudgetRequestItemAllocation.id",
    )

    __table_args__ = (
        CheckConstraint("budget_shortfall >= 0", name="chk_br_shortfall_non_negative"),
        CheckConstraint(
            "(status = 'APPROVED' AND reserved_amount IS NOT NULL) OR "
            "(status <> 'APPROVED' AND reserved_amount IS NULL)",
            name="chk_br_reserved_iff_approved",
        ),
        CheckConstraint(
            "status IN ('DRAFT', 'SUBMITTED', 'APPROVED', 'REJECTED', 'CANCELLED')",
            name="chk_br_status",
        ),
        Index("idx_br_department_status", "department", "status"),
        Index("idx_br_created_by", "created_by"),
        Index("idx_br_created_at", "created_at"),
    )


class BudgetRequestItemAllocation(Base):
    __tablename__ = "budget_request_item_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    budget_request_id: Mapped[int] = mapped_column(
        ForeignKey("budget_requests.id", ondelete="CASCADE"), nullable=False
    )
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    item_code: Mapped[Optional[str]] = mapped_column(String(64))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    supplier_id: Mapped[Optional[str]] = mapped_column(String(64))
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255))
    item_priority: Mapped[str] = mapped_column(String(16), nullable=False, default="must_have")
    is_essential: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    budget_request: Mapped["BudgetRequest"] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_item_quantity_positive"),
        CheckConstraint("unit_cost >= 0", name="chk_item_unit_cost_non_negative"),
        CheckConstraint("total_cost >= 0", name="chk_item_total_cost_non_negative"),
        Index("idx_item_budget_request", "budget_request_id"),
    )


class BudgetRequestApprovalHistory(Base):
    __tablename__ = "budget_request_approval_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    budget_request_id: Mapped[int] = mapped_column(
        ForeignKey("budget_requests.id"), nullable=False
    )
    status_from: Mapped[str] = mapped_column(String(16), nullable=False)
    status_to: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    changed_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    changed_by_role: Mapped[str] = mapped_column(String(16), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    comments: Mapped[Optional[str]] = mapped_column(Text)
    amount_before: Mapped[Optional[Decimal]] = mapped_column(Money())
    amount_after: Mapped[Optional[Decimal]] = mapped_column(Money())
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "changed_by_role IN ('ADMIN', 'NON_ADMIN')", name="chk_history_role"
        ),
        Index("idx_history_request_changed_at", "budget_request_id", "changed_at"),
    )


class CachedDepartmentBudget(Base):
    __tablename__ = "cached_department_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # External Finance id; negative for synthetic rows
    budget_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    department: Mapped[str] = mapped_column(String(32), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[str] = mapped_column(String(16), nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    used_amount: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    reserved_amount: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    period_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_synced_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint(
            "department", "fiscal_year", "fiscal_period",
            name="uq_cached_budget_dept_year_period",
        ),
    )


class BudgetRequestNotification(Base):
    __tablename__ = "budget_request_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    budget_request_id: Mapped[int] = mapped_column(
        ForeignKey("budget_requests.id"), nullable=False
    )
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(64))
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_name: Mapped[Optional[str]] = mapped_column(String(255))
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    delivery_error: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "delivery_status IN ('pending', 'sent', 'failed')",
            name="chk_notification_status",
        ),
        Index("idx_notification_request", "budget_request_id"),
    )


class SystemConfig(Base):
    __tablename__ = "system_config"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )


# =============================================================================
# Approval History Immutability
# =============================================================================

class HistoryImmutableError(Exception):
    """Raised when code attempts to modify or delete an approval history row."""

    def __init__(self, history_id: Optional[int], operation: str) -> None:
        self.history_id = history_id
        self.operation = operation
        super().__init__(
            f"Approval history row {history_id} is append-only; {operation} refused"
        )


@event.listens_for(BudgetRequestApprovalHistory, "before_update")
def _block_history_update(mapper, connection, target):
    logger.error(
        f"[BR-HISTORY] Immutability violation blocked | "
        f"history_id={target.id} | operation=UPDATE"
    )
    raise HistoryImmutableError(target.id, "UPDATE")


@event.listens_for(BudgetRequestApprovalHistory, "before_delete")
def _block_history_delete(mapper, connection, target):
    logger.error(
        f"[BR-HISTORY] Immutability violation blocked | "
        f"history_id={target.id} | operation=DELETE"
    )
    raise HistoryImmutableError(target.id, "DELETE")


__all__ = [
    "Base",
    "UTCDateTime",
    "utc_now",
    "BudgetRequest",
    "BudgetRequestItemAllocation",
    "BudgetRequestApprovalHistory",
    "CachedDepartmentBudget",
    "BudgetRequestNotification",
    "SystemConfig",
    "HistoryImmutableError",
]
