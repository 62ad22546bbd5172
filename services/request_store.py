"""
============================================================================
Budget Request Service - Request Store
============================================================================

Decimal Integrity: Money serialized as quantized decimal strings
Traceability: Writes logged with correlation_id

RESPONSIBILITIES:
    - create(): budget snapshot + request + items in ONE transaction
    - find_by_id(): detail read-through cache, items + 10 newest history rows
    - find_many(): user-scoped list cache, role-based department filter,
                   filters, search, pagination, newest first
    - get_history(): full approval history, newest first
    - load_for_update() / append_history(): helpers the lifecycle engine
      runs inside its own transaction

SOFT DELETE:
    Rows with is_deleted = True are invisible to every read here.

SERIALIZATION:
    Every public read returns plain JSON-safe dicts (snake_case keys,
    Decimal -> str, datetime -> ISO-8601) so cached and fresh answers are
    byte-for-byte the same shape.

============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import math

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import (
    BudgetRequest,
    BudgetRequestApprovalHistory,
    BudgetRequestItemAllocation,
)
from app.database.session import Database
from services.budget_cache_mirror import BudgetCacheMirror, current_fiscal_period
from services.budget_request_config import BudgetServiceConfig
from services.budget_request_errors import NotFound, ValidationFailed
from services.budget_request_models import (
    DETAIL_HISTORY_LIMIT,
    ActorContext,
    BudgetRequestFilters,
    BudgetRequestInput,
    BudgetRequestStatus,
    format_money,
)
from services.reservation_calculator import calculate_shortfall
from services.response_cache import (
    LIST_PREFIX,
    ResponseCache,
    detail_key,
    generate_user_cache_key,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Serialization
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return format_money(Decimal(value)) if value is not None else None


def serialize_item(item: BudgetRequestItemAllocation) -> Dict[str, Any]:
    return {
        "id": item.id,
        "item_name": item.item_name,
        "item_code": item.item_code,
        "quantity": item.quantity,
        "unit_cost": _money(item.unit_cost),
        "total_cost": _money(item.total_cost),
        "allocated_amount": _money(item.allocated_amount),
        "supplier_id": item.supplier_id,
        "supplier_name": item.supplier_name,
        "item_priority": item.item_priority,
        "is_essential": item.is_essential,
    }


def serialize_history(entry: BudgetRequestApprovalHistory) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "budget_request_id": entry.budget_request_id,
        "status_from": entry.status_from,
        "status_to": entry.status_to,
        "changed_by": entry.changed_by,
        "changed_by_name": entry.changed_by_name,
        "changed_by_role": entry.changed_by_role,
        "action": entry.action,
        "comments": entry.comments,
        "amount_before": _money(entry.amount_before),
        "amount_after": _money(entry.amount_after),
        "changed_at": _iso(entry.changed_at),
    }


def serialize_request(
    request: BudgetRequest,
    history: Optional[List[BudgetRequestApprovalHistory]] = None,
) -> Dict[str, Any]:
    data = {
        "id": request.id,
        "request_code": request.request_code,
        "created_by": request.created_by,
        "created_by_name": request.created_by_name,
        "created_by_email": request.created_by_email,
        "created_by_role": request.created_by_role,
        "department": request.department,
        "amount_requested": _money(request.amount_requested),
        "purpose": request.purpose,
        "justification": request.justification,
        "category": request.category,
        "priority": request.priority,
        "urgency_reason": request.urgency_reason,
        "fiscal_year": request.fiscal_year,
        "fiscal_period": request.fiscal_period,
        "linked_purchase_request_id": request.linked_purchase_request_id,
        "linked_purchase_request_ref_no": request.linked_purchase_request_ref_no,
        "department_budget_remaining": _money(request.department_budget_remaining),
        "budget_shortfall": _money(request.budget_shortfall),
        "budget_before": _money(request.budget_before),
        "budget_snapshot_stale": request.budget_snapshot_stale,
        "status": request.status,
        "reviewed_by": request.reviewed_by,
        "reviewed_by_name": request.reviewed_by_name,
        "review_notes": request.review_notes,
        "reviewed_at": _iso(request.reviewed_at),
        "rejection_reason": request.rejection_reason,
        "reserved_amount": _money(request.reserved_amount),
        "buffer_amount": _money(request.buffer_amount),
        "buffer_percentage": _money(request.buffer_percentage),
        "reservation_expiry": _iso(request.reservation_expiry),
        "is_reserved": request.is_reserved,
        "reserved_at": _iso(request.reserved_at),
        "submitted_at": _iso(request.submitted_at),
        "approved_by": request.approved_by,
        "approved_at": _iso(request.approved_at),
        "rejected_by": request.rejected_by,
        "rejected_at": _iso(request.rejected_at),
        "cancelled_by": request.cancelled_by,
        "cancelled_at": _iso(request.cancelled_at),
        "cancellation_reason": request.cancellation_reason,
        "escalation_level": request.escalation_level,
        "sla_deadline": _iso(request.sla_deadline),
        "is_overdue": request.is_overdue,
        "created_at": _iso(request.created_at),
        "updated_by": request.updated_by,
        "updated_at": _iso(request.updated_at),
        "items": [serialize_item(item) for item in request.items],
    }
    if history is not None:
        data["approval_history"] = [serialize_history(entry) for entry in history]
    return data


def request_code_for(fiscal_year: int, request_id: int) -> str:
    return f"BR-{fiscal_year}-{request_id:05d}"


# =============================================================================
# RequestStore
# =============================================================================

class RequestStore:
    """Persistence and read-through caching for budget requests."""

    def __init__(
        self,
        database: Database,
        cache: ResponseCache,
        mirror: BudgetCacheMirror,
        config: BudgetServiceConfig,
    ) -> None:
        self.database = database
        self.cache = cache
        self.mirror = mirror
        self.config = config

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(
        self,
        data: BudgetRequestInput,
        actor: ActorContext,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a DRAFT request and its items atomically.

        Budget sync happens before the transaction opens; if it raises
        BudgetUnavailable nothing is written. Any failure inside the
        transaction rolls back the request and every item.
        """
        now = datetime.now(timezone.utc)
        fiscal_year = data.fiscal_year or now.year
        fiscal_period = data.fiscal_period or current_fiscal_period(now)

        budget = await self.mirror.sync_department_budget(
            data.department, fiscal_year, fiscal_period, correlation_id=correlation_id
        )
        shortfall = calculate_shortfall(data.amount_requested, budget.remaining_amount)

        try:
            async with self.database.session() as session:
                request = BudgetRequest(
                    created_by=actor.user_id,
                    created_by_name=actor.username,
                    created_by_email=data.created_by_email or actor.email,
                    created_by_role=actor.role,
                    department=data.department,
                    amount_requested=data.amount_requested,
                    purpose=data.purpose,
                    justification=data.justification,
                    category=data.category,
                    priority=data.priority,
                    urgency_reason=data.urgency_reason,
                    fiscal_year=fiscal_year,
                    fiscal_period=fiscal_period,
                    linked_purchase_request_id=data.linked_purchase_request_id,
                    linked_purchase_request_ref_no=data.linked_purchase_request_ref_no,
                    department_budget_remaining=budget.remaining_amount,
                    budget_shortfall=shortfall,
                    budget_before=budget.remaining_amount,
                    budget_snapshot_stale=budget.is_stale,
                    status=BudgetRequestStatus.DRAFT.value,
                    created_at=now,
                    updated_at=now,
                    items=[
                        BudgetRequestItemAllocation(
                            item_name=item.item_name,
                            item_code=item.item_code,
                            quantity=item.quantity,
                            unit_cost=item.unit_cost,
                            total_cost=item.total_cost,
                            allocated_amount=item.total_cost,
                            supplier_id=item.supplier_id,
                            supplier_name=item.supplier_name,
                            item_priority=item.item_priority,
                            is_essential=item.is_essential,
                            created_at=now,
                        )
                        for item in data.items
                    ],
                )
                session.add(request)
                await session.flush()

                request.request_code = request_code_for(fiscal_year, request.id)
                await session.flush()
        except IntegrityError as e:
            logger.error(
                f"[BR-STORE] Create rejected by database constraints | "
                f"department={data.department} | error={e.orig} | "
                f"correlation_id={correlation_id}"
            )
            raise ValidationFailed("budget_request", f"constraint violation: {e.orig}") from e

        logger.info(
            f"[BR-STORE] Budget request created | id={request.id} | "
            f"request_code={request.request_code} | department={request.department} | "
            f"amount={request.amount_requested} | shortfall={shortfall} | "
            f"budget_stale={budget.is_stale} | items={len(data.items)} | "
            f"correlation_id={correlation_id}"
        )
        return serialize_request(request, history=[])

    async def load_for_update(self, session: AsyncSession, request_id: int) -> BudgetRequest:
        """
        Load a live request inside the caller's transaction, row-locked
        where the dialect supports it.

        Raises:
            NotFound: missing or soft-deleted
        """
        result = await session.execute(
            select(BudgetRequest)
            .where(BudgetRequest.id == request_id)
            .where(BudgetRequest.is_deleted.is_(False))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFound("BudgetRequest", request_id)
        return request

    async def append_history(
        self,
        session: AsyncSession,
        request: BudgetRequest,
        status_from: str,
        status_to: str,
        action: str,
        actor: ActorContext,
        comments: Optional[str] = None,
        amount_before: Optional[Decimal] = None,
        amount_after: Optional[Decimal] = None,
        changed_at: Optional[datetime] = None,
    ) -> BudgetRequestApprovalHistory:
        entry = BudgetRequestApprovalHistory(
            budget_request_id=request.id,
            status_from=status_from,
            status_to=status_to,
            changed_by=actor.user_id,
            changed_by_name=actor.username,
            changed_by_role=actor.role_type.value,
            action=action,
            comments=comments,
            amount_before=amount_before,
            amount_after=amount_after,
            changed_at=changed_at or datetime.now(timezone.utc),
        )
        session.add(entry)
        await session.flush()
        return entry

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def find_by_id(self, request_id: int) -> Optional[Dict[str, Any]]:
        """Detail read with items and the newest history rows, or None."""

        async def _load() -> Optional[Dict[str, Any]]:
            async with self.database.session() as session:
                result = await session.execute(
                    select(BudgetRequest)
                    .where(BudgetRequest.id == request_id)
                    .where(BudgetRequest.is_deleted.is_(False))
                )
                request = result.scalar_one_or_none()
                if request is None:
                    return None
                history = await self._history(session, request_id, limit=DETAIL_HISTORY_LIMIT)
                return serialize_request(request, history=history)

        return await self.cache.with_cache(
            detail_key(request_id), _load, self.config.detail_cache_ttl
        )

    async def find_many(
        self,
        filters: BudgetRequestFilters,
        actor: ActorContext,
    ) -> Dict[str, Any]:
        """
        Filtered, paginated list, newest first.

        Finance and super admins see every department; everyone else is
        pinned to their own department whatever filter they pass.
        """
        key = generate_user_cache_key(
            LIST_PREFIX, actor.user_id, actor.role, filters.to_cache_dict()
        )

        async def _load() -> Dict[str, Any]:
            conditions = self._conditions(filters, actor)
            async with self.database.session() as session:
                total = await session.scalar(
                    select(func.count()).select_from(BudgetRequest).where(*conditions)
                )
                result = await session.execute(
                    select(BudgetRequest)
                    .where(*conditions)
                    .order_by(BudgetRequest.created_at.desc(), BudgetRequest.id.desc())
                    .offset((filters.page - 1) * filters.limit)
                    .limit(filters.limit)
                )
                rows = result.scalars().all()
            total = int(total or 0)
            return {
                "items": [serialize_request(row) for row in rows],
                "pagination": {
                    "page": filters.page,
                    "limit": filters.limit,
                    "total": total,
                    "total_pages": math.ceil(total / filters.limit) if total else 0,
                },
            }

        return await self.cache.with_cache(key, _load, self.config.list_cache_ttl)

    async def get_history(self, request_id: int) -> List[Dict[str, Any]]:
        async with self.database.session() as session:
            exists = await session.scalar(
                select(BudgetRequest.id)
                .where(BudgetRequest.id == request_id)
                .where(BudgetRequest.is_deleted.is_(False))
            )
            if exists is None:
                raise NotFound("BudgetRequest", request_id)
            history = await self._history(session, request_id)
        return [serialize_history(entry) for entry in history]

    async def _history(
        self,
        session: AsyncSession,
        request_id: int,
        limit: Optional[int] = None,
    ) -> List[BudgetRequestApprovalHistory]:
        stmt = (
            select(BudgetRequestApprovalHistory)
            .where(BudgetRequestApprovalHistory.budget_request_id == request_id)
            .order_by(
                BudgetRequestApprovalHistory.changed_at.desc(),
                BudgetRequestApprovalHistory.id.desc(),
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _conditions(filters: BudgetRequestFilters, actor: ActorContext) -> list:
        conditions = [BudgetRequest.is_deleted.is_(False)]

        if actor.is_finance or actor.is_super_admin:
            if filters.department:
                conditions.append(BudgetRequest.department == filters.department)
        else:
            conditions.append(BudgetRequest.department == actor.department)

        if filters.status:
            conditions.append(BudgetRequest.status == filters.status)
        if filters.priority:
            conditions.append(BudgetRequest.priority == filters.priority)
        if filters.category:
            conditions.append(BudgetRequest.category == filters.category)
        if filters.date_from:
            conditions.append(BudgetRequest.created_at >= filters.date_from)
        if filters.date_to:
            conditions.append(BudgetRequest.created_at <= filters.date_to)
        if filters.search:
            pattern = f"%{filters.search.lower()}%"
            conditions.append(
                or_(
                    func.lower(BudgetRequest.purpose).like(pattern),
                    func.lower(func.coalesce(BudgetRequest.justification, "")).like(pattern),
                    func.lower(func.coalesce(BudgetRequest.request_code, "")).like(pattern),
                )
            )
        return conditions


__all__ = [
    "serialize_item",
    "serialize_history",
    "serialize_request",
    "request_code_for",
    "RequestStore",
]
