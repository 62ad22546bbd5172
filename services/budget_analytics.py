"""
============================================================================
Budget Request Service - Analytics
============================================================================

Decimal Integrity: Money summed as Decimal, quantized with ROUND_HALF_EVEN
Side Effects: Read-only; results cached under the analytics: namespace

REPORTS:
    department_summary()   counts per status, total requested, total
                           reserved, approval rate
    spending_trends()      approved spend grouped by day/week/month/
                           quarter/year of creation
    approval_metrics()     decision counts, approval/rejection rates,
                           approval rate by amount, mean decision time
    top_requesters()       requesters ranked by request count
    category_breakdown()   approved spend per category

    Every request mutation invalidates analytics:* so no report outlives
    a write.

ACCESS:
    Finance and super admins may query any department, and with no
    department given they see every department. Everyone else is pinned
    to their own department (Forbidden for any other).

============================================================================
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func, select

from app.database.models import BudgetRequest
from app.database.session import Database
from services.budget_request_config import BudgetServiceConfig
from services.budget_request_errors import Forbidden
from services.budget_request_models import (
    PRECISION_PERCENT,
    ActorContext,
    BudgetRequestStatus,
    format_money,
    to_decimal,
)
from services.response_cache import ANALYTICS_PREFIX, ResponseCache, generate_cache_key
from services.payload_normalizer import (
    normalize_date_range,
    normalize_department,
    normalize_group_by,
    normalize_limit,
)

logger = logging.getLogger(__name__)

DEPARTMENT_SUMMARY_PREFIX = f"{ANALYTICS_PREFIX}:department_summary"
SPENDING_TRENDS_PREFIX = f"{ANALYTICS_PREFIX}:spending_trends"
APPROVAL_METRICS_PREFIX = f"{ANALYTICS_PREFIX}:approval_metrics"
TOP_REQUESTERS_PREFIX = f"{ANALYTICS_PREFIX}:top_requesters"
CATEGORY_BREAKDOWN_PREFIX = f"{ANALYTICS_PREFIX}:category_breakdown"

UNCATEGORIZED = "uncategorized"
SECONDS_PER_HOUR = Decimal("3600")
ZERO = Decimal("0")


# =============================================================================
# Helpers
# =============================================================================

def rate(part: int, whole: int) -> Decimal:
    """part / whole as a percentage, 2 dp; 0.00 when whole is 0."""
    if whole == 0:
        return Decimal("0.00")
    return (Decimal(part) * 100 / Decimal(whole)).quantize(PRECISION_PERCENT)


def approval_rate(approved: int, rejected: int) -> Decimal:
    return rate(approved, approved + rejected)


def average(total: Decimal, count: int) -> Decimal:
    if count == 0:
        return Decimal("0.00")
    return (total / count).quantize(PRECISION_PERCENT)


def trend_period(moment: datetime, group_by: str) -> str:
    """
    Bucket label for a creation timestamp.

    Weeks start on Sunday and are labelled by that Sunday's date.
    """
    if group_by == "day":
        return moment.date().isoformat()
    if group_by == "week":
        start = moment.date() - timedelta(days=(moment.weekday() + 1) % 7)
        return start.isoformat()
    if group_by == "quarter":
        return f"{moment.year}-Q{(moment.month - 1) // 3 + 1}"
    if group_by == "year":
        return str(moment.year)
    return f"{moment.year}-{moment.month:02d}"


def _hours(delta: timedelta) -> Decimal:
    return Decimal(str(delta.total_seconds())) / SECONDS_PER_HOUR


def _money(value: Any) -> Decimal:
    return to_decimal(value) or ZERO


# =============================================================================
# Analytics
# =============================================================================

class BudgetAnalytics:
    """Request statistics for dashboards, scoped by department."""

    def __init__(
        self,
        database: Database,
        cache: ResponseCache,
        config: BudgetServiceConfig,
    ) -> None:
        self.database = database
        self.cache = cache
        self.config = config

    def _scope(self, department: Optional[str], actor: ActorContext) -> Optional[str]:
        """
        Resolve the department a report covers; None means every department.

        Raises:
            ValidationFailed: unknown department
            Forbidden: actor may not see this department
        """
        sees_all = actor.is_finance or actor.is_super_admin
        if department is None or department == "":
            return None if sees_all else actor.department

        department = normalize_department(department)
        if not sees_all and actor.department != department:
            raise Forbidden(
                f"User from {actor.department} cannot view analytics for {department}",
                action="analytics",
            )
        return department

    async def _cached(self, prefix: str, params: Dict[str, Any], compute) -> Any:
        key = generate_cache_key(prefix, params)
        return await self.cache.with_cache(key, compute, self.config.analytics_cache_ttl)

    @staticmethod
    def _conditions(
        department: Optional[str],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> list:
        conditions = [BudgetRequest.is_deleted.is_(False)]
        if department is not None:
            conditions.append(BudgetRequest.department == department)
        if start_date is not None:
            conditions.append(BudgetRequest.created_at >= start_date)
        if end_date is not None:
            conditions.append(BudgetRequest.created_at <= end_date)
        return conditions

    # -------------------------------------------------------------------------
    # Department summary
    # -------------------------------------------------------------------------

    async def department_summary(
        self,
        department: str,
        actor: ActorContext,
        fiscal_year: Optional[int] = None,
        fiscal_period: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Raises:
            ValidationFailed: unknown department
            Forbidden: actor may not see this department
        """
        department = self._scope(normalize_department(department), actor)

        params = {
            "department": department,
            "fiscal_year": fiscal_year,
            "fiscal_period": fiscal_period,
        }

        async def _load() -> Dict[str, Any]:
            return await self._compute_summary(department, fiscal_year, fiscal_period)

        return await self._cached(DEPARTMENT_SUMMARY_PREFIX, params, _load)

    async def _compute_summary(
        self,
        department: str,
        fiscal_year: Optional[int],
        fiscal_period: Optional[str],
    ) -> Dict[str, Any]:
        conditions = self._conditions(department)
        if fiscal_year is not None:
            conditions.append(BudgetRequest.fiscal_year == fiscal_year)
        if fiscal_period:
            conditions.append(BudgetRequest.fiscal_period == fiscal_period)

        async with self.database.session() as session:
            result = await session.execute(
                select(
                    BudgetRequest.status,
                    func.count(BudgetRequest.id),
                    func.coalesce(func.sum(BudgetRequest.amount_requested), 0),
                    func.coalesce(func.sum(BudgetRequest.reserved_amount), 0),
                )
                .where(*conditions)
                .group_by(BudgetRequest.status)
            )
            rows = result.all()

        counts = {status.value: 0 for status in BudgetRequestStatus}
        total_requested = ZERO
        total_reserved = ZERO
        for status, count, requested, reserved in rows:
            counts[status] = int(count)
            total_requested += _money(requested)
            total_reserved += _money(reserved)

        approved = counts[BudgetRequestStatus.APPROVED.value]
        rejected = counts[BudgetRequestStatus.REJECTED.value]
        summary = {
            "department": department,
            "fiscal_year": fiscal_year,
            "fiscal_period": fiscal_period,
            "total_requests": sum(counts.values()),
            "status_counts": counts,
            "total_requested": format_money(total_requested),
            "total_reserved": format_money(total_reserved),
            "approval_rate": str(approval_rate(approved, rejected)),
        }
        logger.debug(
            f"[BR-ANALYTICS] Department summary computed | department={department} | "
            f"total_requests={summary['total_requests']} | approval_rate={summary['approval_rate']}"
        )
        return summary

    # -------------------------------------------------------------------------
    # Spending trends
    # -------------------------------------------------------------------------

    async def spending_trends(
        self,
        actor: ActorContext,
        department: Optional[str] = None,
        start_date: Any = None,
        end_date: Any = None,
        group_by: Any = None,
    ) -> Dict[str, Any]:
        """
        Approved spend bucketed by creation date, oldest bucket first.

        Raises:
            ValidationFailed: unknown department, bad dates or grouping
            Forbidden: actor may not see this department
        """
        department = self._scope(department, actor)
        start, end = normalize_date_range(start_date, end_date)
        grouping = normalize_group_by(group_by)

        params = {
            "department": department,
            "start_date": start.isoformat() if start else None,
            "end_date": end.isoformat() if end else None,
            "group_by": grouping,
        }

        async def _load() -> Dict[str, Any]:
            conditions = self._conditions(department, start, end)
            conditions.append(BudgetRequest.status == BudgetRequestStatus.APPROVED.value)
            async with self.database.session() as session:
                result = await session.execute(
                    select(
                        BudgetRequest.created_at,
                        BudgetRequest.amount_requested,
                        BudgetRequest.reserved_amount,
                    )
                    .where(*conditions)
                    .order_by(BudgetRequest.created_at.asc(), BudgetRequest.id.asc())
                )
                rows = result.all()

            buckets: Dict[str, Dict[str, Any]] = {}
            for created_at, requested, reserved in rows:
                period = trend_period(created_at, grouping)
                bucket = buckets.setdefault(
                    period,
                    {"period": period, "request_count": 0, "requested": ZERO, "reserved": ZERO},
                )
                bucket["request_count"] += 1
                bucket["requested"] += _money(requested)
                bucket["reserved"] += _money(reserved)

            trends = [
                {
                    "period": bucket["period"],
                    "request_count": bucket["request_count"],
                    "total_requested": format_money(bucket["requested"]),
                    "total_reserved": format_money(bucket["reserved"]),
                }
                for bucket in buckets.values()
            ]
            return {"department": department, "group_by": grouping, "trends": trends}

        return await self._cached(SPENDING_TRENDS_PREFIX, params, _load)

    # -------------------------------------------------------------------------
    # Approval metrics
    # -------------------------------------------------------------------------

    async def approval_metrics(
        self,
        actor: ActorContext,
        department: Optional[str] = None,
        start_date: Any = None,
        end_date: Any = None,
    ) -> Dict[str, Any]:
        """
        Decision counts, rates and mean time from creation to decision.

        Raises:
            ValidationFailed: unknown department or bad dates
            Forbidden: actor may not see this department
        """
        department = self._scope(department, actor)
        start, end = normalize_date_range(start_date, end_date)

        params = {
            "department": department,
            "start_date": start.isoformat() if start else None,
            "end_date": end.isoformat() if end else None,
        }

        async def _load() -> Dict[str, Any]:
            return await self._compute_approval_metrics(department, start, end)

        return await self._cached(APPROVAL_METRICS_PREFIX, params, _load)

    async def _compute_approval_metrics(
        self,
        department: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> Dict[str, Any]:
        conditions = self._conditions(department, start, end)
        approved_status = BudgetRequestStatus.APPROVED.value
        rejected_status = BudgetRequestStatus.REJECTED.value

        async with self.database.session() as session:
            decided = (
                await session.execute(
                    select(
                        BudgetRequest.status,
                        BudgetRequest.created_at,
                        BudgetRequest.approved_at,
                        BudgetRequest.rejected_at,
                        BudgetRequest.amount_requested,
                    ).where(
                        *conditions,
                        BudgetRequest.status.in_([approved_status, rejected_status]),
                    )
                )
            ).all()
            pending = await session.scalar(
                select(func.count(BudgetRequest.id)).where(
                    *conditions, BudgetRequest.status == BudgetRequestStatus.SUBMITTED.value
                )
            )
            overdue = await session.scalar(
                select(func.count(BudgetRequest.id)).where(
                    *conditions, BudgetRequest.is_overdue.is_(True)
                )
            )
            escalated = await session.scalar(
                select(func.count(BudgetRequest.id)).where(
                    *conditions, BudgetRequest.escalation_level > 0
                )
            )

        approved = rejected = 0
        approved_amount = rejected_amount = ZERO
        approval_hours: List[Decimal] = []
        rejection_hours: List[Decimal] = []
        for status, created_at, approved_at, rejected_at, amount in decided:
            if status == approved_status:
                approved += 1
                approved_amount += _money(amount)
                if approved_at is not None:
                    approval_hours.append(_hours(approved_at - created_at))
            else:
                rejected += 1
                rejected_amount += _money(amount)
                if rejected_at is not None:
                    rejection_hours.append(_hours(rejected_at - created_at))

        decided_amount = approved_amount + rejected_amount
        by_amount = (
            (approved_amount * 100 / decided_amount).quantize(PRECISION_PERCENT)
            if decided_amount > 0
            else Decimal("0.00")
        )
        all_hours = approval_hours + rejection_hours

        return {
            "department": department,
            "counts": {
                "approved": approved,
                "rejected": rejected,
                "pending": int(pending or 0),
                "overdue": int(overdue or 0),
                "escalated": int(escalated or 0),
            },
            "rates": {
                "approval_rate": str(rate(approved, approved + rejected)),
                "rejection_rate": str(rate(rejected, approved + rejected)),
                "approval_rate_by_amount": str(by_amount),
            },
            "timing": {
                "avg_approval_time_hours": str(average(sum(approval_hours, ZERO), len(approval_hours))),
                "avg_rejection_time_hours": str(average(sum(rejection_hours, ZERO), len(rejection_hours))),
                "avg_response_time_hours": str(average(sum(all_hours, ZERO), len(all_hours))),
            },
            "amounts": {
                "total_approved": format_money(approved_amount),
                "total_rejected": format_money(rejected_amount),
                "avg_approved_amount": str(average(approved_amount, approved)),
            },
        }

    # -------------------------------------------------------------------------
    # Top requesters
    # -------------------------------------------------------------------------

    async def top_requesters(
        self,
        actor: ActorContext,
        department: Optional[str] = None,
        limit: Any = None,
    ) -> List[Dict[str, Any]]:
        """
        Requesters ranked by request count, then by total requested.

        Raises:
            ValidationFailed: unknown department or bad limit
            Forbidden: actor may not see this department
        """
        department = self._scope(department, actor)
        limit = normalize_limit(limit)
        params = {"department": department, "limit": limit}

        async def _load() -> List[Dict[str, Any]]:
            request_count = func.count(BudgetRequest.id)
            total_requested = func.coalesce(func.sum(BudgetRequest.amount_requested), 0)
            async with self.database.session() as session:
                result = await session.execute(
                    select(
                        BudgetRequest.created_by,
                        func.max(BudgetRequest.created_by_name),
                        request_count,
                        total_requested,
                    )
                    .where(*self._conditions(department))
                    .group_by(BudgetRequest.created_by)
                    .order_by(request_count.desc(), total_requested.desc(), BudgetRequest.created_by)
                    .limit(limit)
                )
                rows = result.all()

            return [
                {
                    "user_id": user_id,
                    "user_name": user_name or "Unknown",
                    "request_count": int(count),
                    "total_requested": format_money(_money(total)),
                    "avg_request_amount": str(average(_money(total), int(count))),
                }
                for user_id, user_name, count, total in rows
            ]

        return await self._cached(TOP_REQUESTERS_PREFIX, params, _load)

    # -------------------------------------------------------------------------
    # Category breakdown
    # -------------------------------------------------------------------------

    async def category_breakdown(
        self,
        actor: ActorContext,
        department: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Approved spend per category, largest first.

        Raises:
            ValidationFailed: unknown department
            Forbidden: actor may not see this department
        """
        department = self._scope(department, actor)
        params = {"department": department}

        async def _load() -> List[Dict[str, Any]]:
            conditions = self._conditions(department)
            conditions.append(BudgetRequest.status == BudgetRequestStatus.APPROVED.value)
            total_amount = func.coalesce(func.sum(BudgetRequest.amount_requested), 0)
            async with self.database.session() as session:
                result = await session.execute(
                    select(
                        BudgetRequest.category,
                        func.count(BudgetRequest.id),
                        total_amount,
                    )
                    .where(*conditions)
                    .group_by(BudgetRequest.category)
                    .order_by(total_amount.desc())
                )
                rows = result.all()

            return [
                {
                    "category": category or UNCATEGORIZED,
                    "request_count": int(count),
                    "total_amount": format_money(_money(total)),
                    "avg_amount": str(average(_money(total), int(count))),
                }
                for category, count, total in rows
            ]

        return await self._cached(CATEGORY_BREAKDOWN_PREFIX, params, _load)


__all__ = [
    "DEPARTMENT_SUMMARY_PREFIX",
    "SPENDING_TRENDS_PREFIX",
    "APPROVAL_METRICS_PREFIX",
    "TOP_REQUESTERS_PREFIX",
    "CATEGORY_BREAKDOWN_PREFIX",
    "approval_rate",
    "average",
    "rate",
    "trend_period",
    "BudgetAnalytics",
]
