"""
============================================================================
Budget Request Service - Reservation Calculator
============================================================================

Decimal Integrity: All calculations use decimal.Decimal with ROUND_HALF_EVEN

RESERVATION FORMULA:
    base   = reserved_amount override, or amount_requested
    pct    = buffer_percentage, default 0, must lie in [0, 100]
    buffer = base x pct / 100
    total  = base + buffer

    Every figure is quantized to 0.01 before it is persisted.

ERROR CODES:
    - BRQ-010: buffer percentage out of range, base not in (0, MAX_AMOUNT_REQUESTED]

============================================================================
"""

from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional, Dict, Any
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from services.budget_request_errors import ValidationFailed
from services.budget_request_models import MAX_AMOUNT_REQUESTED, PRECISION_MONEY, PRECISION_PERCENT
from services.payload_normalizer import normalize_buffer_percentage

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Reservation:
    """Computed reservation figures for one approval."""

    base_amount: Decimal
    buffer_percentage: Decimal
    buffer_amount: Decimal
    total_reserved: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_amount": str(self.base_amount),
            "buffer_percentage": str(self.buffer_percentage),
            "buffer_amount": str(self.buffer_amount),
            "total_reserved": str(self.total_reserved),
        }


def calculate_reservation(
    amount_requested: Decimal,
    reserved_override: Optional[Decimal] = None,
    buffer_percentage: Optional[Decimal] = None,
) -> Reservation:
    """
    Compute base, buffer and total reservation for an approval.

    Example:
        calculate_reservation(Decimal("50000"), Decimal("50000"), Decimal("5"))
        -> buffer 2500.00, total 52500.00
    """
    base = reserved_override if reserved_override is not None else amount_requested
    if base is None:
        raise ValidationFailed("reserved_amount", "reservation base is required")
    if base > MAX_AMOUNT_REQUESTED:
        raise ValidationFailed(
            "reserved_amount", f"reservation base must not exceed {MAX_AMOUNT_REQUESTED}"
        )
    base = base.quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN)
    if base <= 0:
        raise ValidationFailed("reserved_amount", "reservation base must be positive")

    pct = normalize_buffer_percentage(buffer_percentage)
    pct = pct.quantize(PRECISION_PERCENT, rounding=ROUND_HALF_EVEN)
    buffer = (base * pct / HUNDRED).quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN)
    total = (base + buffer).quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN)

    return Reservation(
        base_amount=base,
        buffer_percentage=pct,
        buffer_amount=buffer,
        total_reserved=total,
    )


def calculate_shortfall(amount_requested: Decimal, remaining: Decimal) -> Decimal:
    """max(0, amount_requested - remaining), quantized."""
    shortfall = amount_requested - remaining
    if shortfall < 0:
        shortfall = Decimal("0")
    return shortfall.quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN)


def reservation_expiry(now: Optional[datetime] = None, days: int = 30) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=days)


__all__ = [
    "Reservation",
    "calculate_reservation",
    "calculate_shortfall",
    "reservation_expiry",
]
