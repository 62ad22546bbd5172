"""
============================================================================
Budget Request Service - Budget Cache Mirror
============================================================================

Decimal Integrity: All amounts are decimal.Decimal quantized to 0.01
Traceability: sync outcomes logged with correlation_id

SYNC PROCEDURE (sync_department_budget):
    1. Short-TTL response cache hit        -> return it          (cache_hit)
    2. Live Finance fetch succeeds          -> upsert, cache, return (live)
    3. Live fetch fails, persisted row exists -> mark stale, return (stale)
    4. Nothing persisted                    -> synthesize, upsert, return (synthetic)

    Only step 2 results go into the short-TTL cache. Stale and synthetic
    answers are always re-evaluated on the next call.

SYNTHETIC BUDGET:
    allocation  = BUDGET_SYNTHETIC_ALLOCATION (default 10,000,000)
    used/reserved = 0, is_stale = True, bounds = fiscal year bounds
    budget_id   = -(year*10000 + period_number*10 + department_hash)
    Re-synthesizing an existing row only refreshes last_synced_at/is_stale.

ERROR CODES:
    - BRQ-050: BudgetUnavailable when even the fallback cannot be persisted

============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import re

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import CachedDepartmentBudget
from app.database.session import Database
from app.observability.metrics import record_sync_outcome, record_synthetic_fallback
from services.budget_request_config import BudgetServiceConfig
from services.budget_request_errors import BudgetUnavailable
from services.budget_request_models import DepartmentBudget, quantize_money
from services.finance_client import FinanceClient
from services.response_cache import ResponseCache, department_budget_key

logger = logging.getLogger(__name__)

_MONTH_PERIOD = re.compile(r"^\d{4}-\d{2}$")

UNIQUE_COLUMNS = ["department", "fiscal_year", "fiscal_period"]


# =============================================================================
# Fiscal Period Helpers
# =============================================================================

def current_fiscal_period(now: Optional[datetime] = None) -> str:
    """Calendar quarter label, "Q1".."Q4"."""
    now = now or datetime.now(timezone.utc)
    return f"Q{(now.month - 1) // 3 + 1}"


def _char_sum(text: str) -> int:
    return sum(ord(ch) for ch in text)


def period_number(fiscal_period: str) -> int:
    """
    Map a fiscal period label onto a small integer.

    Qn -> n, Hn -> n + 4, YYYY-MM -> month + 10, anything else
    -> 90 + (character sum % 10).
    """
    if "Q" in fiscal_period:
        try:
            return int(fiscal_period.replace("Q", ""))
        except ValueError:
            return 0
    if "H" in fiscal_period:
        try:
            return int(fiscal_period.replace("H", "")) + 4
        except ValueError:
            return 5
    if _MONTH_PERIOD.match(fiscal_period):
        return int(fiscal_period.split("-")[1]) + 10
    return 90 + (_char_sum(fiscal_period) % 10)


def synthetic_budget_id(department: str, fiscal_year: int, fiscal_period: str) -> int:
    """
    Deterministic negative id for a synthetic budget row.

    The year is scaled by 10000 so every period number (at most 99) and
    department hash fit below it without colliding across years.
    """
    department_hash = _char_sum(department) % 10
    return -(fiscal_year * 10000 + period_number(fiscal_period) * 10 + department_hash)


def fiscal_year_bounds(fiscal_year: int):
    start = datetime(fiscal_year, 1, 1, tzinfo=timezone.utc)
    end = datetime(fiscal_year, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    return start, end


def _to_view(row: CachedDepartmentBudget, is_stale: Optional[bool] = None) -> DepartmentBudget:
    return DepartmentBudget(
        budget_id=int(row.budget_id),
        department=row.department,
        fiscal_year=row.fiscal_year,
        fiscal_period=row.fiscal_period,
        allocated_amount=quantize_money(Decimal(row.allocated_amount)),
        used_amount=quantize_money(Decimal(row.used_amount)),
        reserved_amount=quantize_money(Decimal(row.reserved_amount)),
        remaining_amount=quantize_money(Decimal(row.remaining_amount)),
        period_start=row.period_start,
        period_end=row.period_end,
        last_synced_at=row.last_synced_at,
        is_stale=row.is_stale if is_stale is None else is_stale,
    )


# =============================================================================
# Upsert
# =============================================================================

async def upsert_cached_budget(
    session: AsyncSession,
    values: Dict[str, Any],
    update_columns: List[str],
) -> None:
    """
    Insert or update the (department, fiscal_year, fiscal_period) row.

    Uses ON CONFLICT DO UPDATE on PostgreSQL and SQLite, select-then-write
    elsewhere.
    """
    dialect = session.get_bind().dialect.name
    set_values = {column: values[column] for column in update_columns}

    if dialect in ("postgresql", "sqlite"):
        insert_fn = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert_fn(CachedDepartmentBudget).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=UNIQUE_COLUMNS, set_=set_values)
        await session.execute(stmt)
        return

    existing = await _load_row(session, values["department"], values["fiscal_year"], values["fiscal_period"])
    if existing is None:
        session.add(CachedDepartmentBudget(**values))
    else:
        for column, value in set_values.items():
            setattr(existing, column, value)
    await session.flush()


async def _load_row(
    session: AsyncSession, department: str, fiscal_year: int, fiscal_period: str
) -> Optional[CachedDepartmentBudget]:
    result = await session.execute(
        select(CachedDepartmentBudget)
        .where(CachedDepartmentBudget.department == department)
        .where(CachedDepartmentBudget.fiscal_year == fiscal_year)
        .where(CachedDepartmentBudget.fiscal_period == fiscal_period)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# =============================================================================
# BudgetCacheMirror
# =============================================================================

class BudgetCacheMirror:
    """
    Possibly-stale local mirror of Finance department budgets.

    sync_department_budget never raises for Finance problems; it degrades
    to stale or synthetic data and flags it. Only a failure to persist the
    fallback raises BudgetUnavailable.
    """

    def __init__(
        self,
        database: Database,
        finance_client: FinanceClient,
        cache: ResponseCache,
        config: BudgetServiceConfig,
    ) -> None:
        self.database = database
        self.finance_client = finance_client
        self.cache = cache
        self.config = config

    async def sync_department_budget(
        self,
        department: str,
        fiscal_year: int,
        fiscal_period: str,
        correlation_id: Optional[str] = None,
    ) -> DepartmentBudget:
        key = department_budget_key(department, fiscal_year, fiscal_period)

        # Step 1: short-TTL cache
        cached = await self.cache.get_json(key)
        if cached is not None:
            try:
                budget = DepartmentBudget.from_dict(cached)
                record_sync_outcome("cache_hit")
                return budget
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    f"[BR-SYNC] Dropping unreadable cached budget | key={key} | error={e}"
                )
                await self.cache.delete(key)

        # Step 2: live Finance fetch
        try:
            budget = await self._sync_live(department, fiscal_year, fiscal_period)
        except Exception as e:
            logger.warning(
                f"[BR-SYNC] Live budget sync failed, falling back | "
                f"department={department} | fiscal_year={fiscal_year} | "
                f"fiscal_period={fiscal_period} | error={e} | "
                f"correlation_id={correlation_id}"
            )
        else:
            await self.cache.set_json(key, budget.to_dict(), self.config.department_cache_ttl)
            record_sync_outcome("live")
            return budget

        # Steps 3 and 4 share the fallback path
        try:
            stale = await self._load_stale(department, fiscal_year, fiscal_period)
            if stale is not None:
                logger.info(
                    f"[BR-SYNC] Using stale mirrored budget | "
                    f"department={department} | budget_id={stale.budget_id} | "
                    f"last_synced_at={stale.last_synced_at} | "
                    f"correlation_id={correlation_id}"
                )
                record_sync_outcome("stale")
                return stale

            budget = await self._synthesize(department, fiscal_year, fiscal_period)
        except Exception as e:
            logger.error(
                f"[BR-SYNC] Budget fallback failed | department={department} | "
                f"fiscal_year={fiscal_year} | fiscal_period={fiscal_period} | "
                f"error={e} | correlation_id={correlation_id}"
            )
            raise BudgetUnavailable(department, fiscal_year, fiscal_period, str(e)) from e

        logger.warning(
            f"[BR-SYNC] SYNTHETIC budget in use | department={department} | "
            f"fiscal_year={fiscal_year} | fiscal_period={fiscal_period} | "
            f"budget_id={budget.budget_id} | allocated={budget.allocated_amount} | "
            f"correlation_id={correlation_id}"
        )
        record_sync_outcome("synthetic")
        record_synthetic_fallback(department)
        return budget

    async def _sync_live(
        self, department: str, fiscal_year: int, fiscal_period: str
    ) -> DepartmentBudget:
        snapshot = await self.finance_client.get_department_budget(
            department, fiscal_year, fiscal_period
        )
        now = datetime.now(timezone.utc)
        values = {
            "budget_id": snapshot.budget_id,
            "department": department,
            "fiscal_year": fiscal_year,
            "fiscal_period": fiscal_period,
            "allocated_amount": quantize_money(snapshot.allocated_amount),
            "used_amount": quantize_money(snapshot.used_amount),
            "reserved_amount": quantize_money(snapshot.reserved_amount),
            "remaining_amount": quantize_money(snapshot.remaining_amount),
            "period_start": snapshot.period_start,
            "period_end": snapshot.period_end,
            "last_synced_at": now,
            "is_stale": False,
        }
        async with self.database.session() as session:
            await upsert_cached_budget(
                session,
                values,
                update_columns=[
                    "budget_id",
                    "allocated_amount",
                    "used_amount",
                    "reserved_amount",
                    "remaining_amount",
                    "period_start",
                    "period_end",
                    "last_synced_at",
                    "is_stale",
                ],
            )
            row = await _load_row(session, department, fiscal_year, fiscal_period)
            return _to_view(row)

    async def _load_stale(
        self, department: str, fiscal_year: int, fiscal_period: str
    ) -> Optional[DepartmentBudget]:
        async with self.database.session() as session:
            row = await _load_row(session, department, fiscal_year, fiscal_period)
            if row is None:
                return None
            await session.execute(
                update(CachedDepartmentBudget)
                .where(CachedDepartmentBudget.id == row.id)
                .values(is_stale=True)
            )
            return _to_view(row, is_stale=True)

    async def _synthesize(
        self, department: str, fiscal_year: int, fiscal_period: str
    ) -> DepartmentBudget:
        allocation = quantize_money(self.config.synthetic_allocation)
        zero = quantize_money(Decimal("0"))
        period_start, period_end = fiscal_year_bounds(fiscal_year)
        values = {
            "budget_id": synthetic_budget_id(department, fiscal_year, fiscal_period),
            "department": department,
            "fiscal_year": fiscal_year,
            "fiscal_period": fiscal_period,
            "allocated_amount": allocation,
            "used_amount": zero,
            "reserved_amount": zero,
            "remaining_amount": allocation,
            "period_start": period_start,
            "period_end": period_end,
            "last_synced_at": datetime.now(timezone.utc),
            "is_stale": True,
        }
        async with self.database.session() as session:
            await upsert_cached_budget(
                session, values, update_columns=["last_synced_at", "is_stale"]
            )
            row = await _load_row(session, department, fiscal_year, fiscal_period)
            return _to_view(row)

    async def get_persisted(
        self, department: str, fiscal_year: int, fiscal_period: str
    ) -> Optional[DepartmentBudget]:
        """Read the mirror row without touching Finance or staleness."""
        async with self.database.session() as session:
            row = await _load_row(session, department, fiscal_year, fiscal_period)
            return _to_view(row) if row is not None else None


__all__ = [
    "current_fiscal_period",
    "period_number",
    "synthetic_budget_id",
    "fiscal_year_bounds",
    "upsert_cached_budget",
    "BudgetCacheMirror",
]
