"""
============================================================================
Budget Request Service - Payload Normalizer
============================================================================

Input Constraints: Raw mapping from the caller (JSON body)
Side Effects: None (pure)

The frontend historically sent both camelCase and snake_case spellings of
the same field, sometimes within one payload. This module is the single
boundary step that merges both spellings into one canonical record:

    raw dict -> BudgetRequestInput / ItemAllocationInput
             -> ApprovalInput / RejectionInput

MERGE RULE:
    For each canonical field the aliases are tried in order and the first
    present, non-None value wins. camelCase spellings are listed first.

ERROR CODES:
    - BRQ-010: Validation failed (raised as ValidationFailed naming the field)

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from datetime import datetime, timezone
import logging

from services.budget_request_errors import ValidationFailed
from services.budget_request_models import (
    ApprovalInput,
    BudgetRequestFilters,
    BudgetRequestInput,
    BudgetRequestStatus,
    Department,
    ItemAllocationInput,
    ItemPriority,
    MAX_AMOUNT_REQUESTED,
    MIN_PURPOSE_LENGTH,
    PRECISION_MONEY,
    RejectionInput,
    RequestCategory,
    RequestPriority,
    quantize_money,
    to_decimal,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Field Aliases
# =============================================================================

REQUEST_ALIASES: Dict[str, Sequence[str]] = {
    "department": ("department",),
    "amount_requested": ("amountRequested", "amount_requested"),
    "purpose": ("purpose",),
    "justification": ("justification",),
    "category": ("category",),
    "priority": ("priority",),
    "urgency_reason": ("urgencyReason", "urgency_reason"),
    "fiscal_year": ("fiscalYear", "fiscal_year"),
    "fiscal_period": ("fiscalPeriod", "fiscal_period"),
    "created_by_email": ("createdByEmail", "created_by_email"),
    "linked_purchase_request_id": ("linkedPurchaseRequestId", "linked_purchase_request_id"),
    "linked_purchase_request_ref_no": ("linkedPurchaseRequestRefNo", "linked_purchase_request_ref_no"),
    "status": ("status",),
    "items": ("items",),
}

ITEM_ALIASES: Dict[str, Sequence[str]] = {
    "item_name": ("itemName", "item_name"),
    "item_code": ("itemCode", "item_code"),
    "quantity": ("quantity",),
    "unit_cost": ("unitCost", "unit_cost"),
    "total_cost": ("totalCost", "subtotal", "total_cost"),
    "supplier_id": ("supplierId", "supplier_id"),
    "supplier_name": ("supplierName", "supplier", "supplier_name"),
    "item_priority": ("itemPriority", "item_priority"),
    "is_essential": ("isEssential", "is_essential"),
}

APPROVAL_ALIASES: Dict[str, Sequence[str]] = {
    "review_notes": ("reviewNotes", "review_notes"),
    "reserved_amount": ("reservedAmount", "reserved_amount"),
    "buffer_percentage": ("bufferPercentage", "buffer_percentage"),
}

REJECTION_ALIASES: Dict[str, Sequence[str]] = {
    "review_notes": ("reviewNotes", "review_notes"),
    "rejection_reason": ("rejectionReason", "rejection_reason"),
}

FILTER_ALIASES: Dict[str, Sequence[str]] = {
    "status": ("status",),
    "department": ("department",),
    "priority": ("priority",),
    "category": ("category",),
    "date_from": ("dateFrom", "date_from"),
    "date_to": ("dateTo", "date_to"),
    "search": ("search",),
    "page": ("page",),
    "limit": ("limit",),
}

MAX_PAGE_LIMIT = 100

_DEPARTMENTS = [d.value for d in Department]
_CATEGORIES = [c.value for c in RequestCategory]
_PRIORITIES = [p.value for p in RequestPriority]
_ITEM_PRIORITIES = [p.value for p in ItemPriority]
_STATUSES = [s.value for s in BudgetRequestStatus]
_INITIAL_STATUSES = [BudgetRequestStatus.DRAFT.value, BudgetRequestStatus.SUBMITTED.value]


# =============================================================================
# Merge Helpers
# =============================================================================

def merge_aliases(raw: Mapping[str, Any], aliases: Mapping[str, Sequence[str]]) -> Dict[str, Any]:
    """
    Collapse alias spellings into canonical keys.

    Unknown keys are dropped. A canonical key is present in the result
    only when one of its aliases carried a non-None value.
    """
    merged: Dict[str, Any] = {}
    for canonical, names in aliases.items():
        for name in names:
            value = raw.get(name)
            if value is not None:
                merged[canonical] = value
                break
    return merged


def _decimal_field(value: Any, field_name: str) -> Decimal:
    try:
        result = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationFailed(field_name, f"{field_name} must be a number")
    if result is None or not result.is_finite():
        raise ValidationFailed(field_name, f"{field_name} must be a number")
    return result


def _money_field(value: Any, field_name: str, label: str) -> Decimal:
    """
    Positive money amount, capped at MAX_AMOUNT_REQUESTED.

    The positive check runs on the quantized value, so sub-cent inputs
    such as 0.004 are rejected instead of being stored as 0.00.
    """
    amount = _decimal_field(value, field_name)
    if amount > MAX_AMOUNT_REQUESTED:
        raise ValidationFailed(field_name, f"{label} must not exceed {MAX_AMOUNT_REQUESTED}")
    amount = quantize_money(amount)
    if amount <= 0:
        raise ValidationFailed(field_name, f"{label} must be at least {PRECISION_MONEY}")
    return amount


def _int_field(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationFailed(field_name, f"{field_name} must be an integer")
    number = _decimal_field(value, field_name)
    if number != number.to_integral_value():
        raise ValidationFailed(field_name, f"{field_name} must be an integer")
    return int(number)


def _optional_str(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationFailed(field_name, f"{field_name} must be a string")
    value = value.strip()
    return value or None


def _choice(value: Any, field_name: str, choices: List[str]) -> Optional[str]:
    text = _optional_str(value, field_name)
    if text is None:
        return None
    if text not in choices:
        raise ValidationFailed(
            field_name, f"{field_name} must be one of {choices}, got: {text}"
        )
    return text


def _bool_field(value: Any, field_name: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationFailed(field_name, f"{field_name} must be a boolean")


def _datetime_field(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationFailed(field_name, f"{field_name} must be an ISO-8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Item Normalization
# =============================================================================

def normalize_item(raw: Mapping[str, Any], index: int = 0) -> ItemAllocationInput:
    """
    Normalize one line item.

    Missing total cost defaults to quantity x unit cost.
    """
    if not isinstance(raw, Mapping):
        raise ValidationFailed(f"items[{index}]", "item must be an object")

    data = merge_aliases(raw, ITEM_ALIASES)
    prefix = f"items[{index}]"

    item_name = _optional_str(data.get("item_name"), f"{prefix}.item_name")
    if not item_name:
        raise ValidationFailed(f"{prefix}.item_name", "item name is required")

    if "quantity" not in data:
        raise ValidationFailed(f"{prefix}.quantity", "quantity is required")
    quantity = _int_field(data["quantity"], f"{prefix}.quantity")
    if quantity <= 0:
        raise ValidationFailed(f"{prefix}.quantity", "quantity must be positive")

    if "unit_cost" not in data:
        raise ValidationFailed(f"{prefix}.unit_cost", "unit cost is required")
    unit_cost = _decimal_field(data["unit_cost"], f"{prefix}.unit_cost")
    if unit_cost < 0:
        raise ValidationFailed(f"{prefix}.unit_cost", "unit cost must not be negative")

    if "total_cost" in data:
        total_cost = _decimal_field(data["total_cost"], f"{prefix}.total_cost")
        if total_cost < 0:
            raise ValidationFailed(f"{prefix}.total_cost", "total cost must not be negative")
    else:
        total_cost = unit_cost * quantity

    return ItemAllocationInput(
        item_name=item_name,
        quantity=quantity,
        unit_cost=quantize_money(unit_cost),
        total_cost=quantize_money(total_cost),
        item_code=_optional_str(data.get("item_code"), f"{prefix}.item_code"),
        supplier_id=_optional_str(
            None if data.get("supplier_id") is None else str(data["supplier_id"]),
            f"{prefix}.supplier_id",
        ),
        supplier_name=_optional_str(data.get("supplier_name"), f"{prefix}.supplier_name"),
        item_priority=_choice(
            data.get("item_priority"), f"{prefix}.item_priority", _ITEM_PRIORITIES
        ) or ItemPriority.MUST_HAVE.value,
        is_essential=_bool_field(data.get("is_essential"), f"{prefix}.is_essential", True),
    )


# =============================================================================
# Request Normalization
# =============================================================================

def normalize_budget_request(raw: Mapping[str, Any]) -> BudgetRequestInput:
    """
    Normalize a create payload into a BudgetRequestInput.

    Raises:
        ValidationFailed: naming the first offending field
    """
    if not isinstance(raw, Mapping):
        raise ValidationFailed("body", "request body must be an object")

    data = merge_aliases(raw, REQUEST_ALIASES)

    department = _choice(data.get("department"), "department", _DEPARTMENTS)
    if department is None:
        raise ValidationFailed("department", "department is required")

    if "amount_requested" not in data:
        raise ValidationFailed("amount_requested", "amount requested is required")
    amount = _money_field(data["amount_requested"], "amount_requested", "amount requested")

    purpose = _optional_str(data.get("purpose"), "purpose") or ""
    if len(purpose) < MIN_PURPOSE_LENGTH:
        raise ValidationFailed(
            "purpose", f"purpose must be at least {MIN_PURPOSE_LENGTH} characters"
        )

    fiscal_year = None
    if data.get("fiscal_year") is not None:
        fiscal_year = _int_field(data["fiscal_year"], "fiscal_year")
        if fiscal_year < 1900 or fiscal_year > 9999:
            raise ValidationFailed("fiscal_year", "fiscal year out of range")

    linked_id = None
    if data.get("linked_purchase_request_id") is not None:
        linked_id = _int_field(data["linked_purchase_request_id"], "linked_purchase_request_id")

    raw_items = data.get("items") or []
    if not isinstance(raw_items, list):
        raise ValidationFailed("items", "items must be a list")
    items = [normalize_item(item, index) for index, item in enumerate(raw_items)]

    initial_status = _choice(data.get("status"), "status", _INITIAL_STATUSES)

    return BudgetRequestInput(
        department=department,
        amount_requested=amount,
        purpose=purpose,
        justification=_optional_str(data.get("justification"), "justification"),
        category=_choice(data.get("category"), "category", _CATEGORIES),
        priority=_choice(data.get("priority"), "priority", _PRIORITIES),
        urgency_reason=_optional_str(data.get("urgency_reason"), "urgency_reason"),
        fiscal_year=fiscal_year,
        fiscal_period=_optional_str(data.get("fiscal_period"), "fiscal_period"),
        created_by_email=_optional_str(data.get("created_by_email"), "created_by_email"),
        linked_purchase_request_id=linked_id,
        linked_purchase_request_ref_no=_optional_str(
            data.get("linked_purchase_request_ref_no"), "linked_purchase_request_ref_no"
        ),
        initial_status=initial_status or BudgetRequestStatus.DRAFT.value,
        items=items,
    )


def normalize_department(value: Any) -> str:
    """Department path/query value, case-insensitive."""
    text = _optional_str(value, "department")
    if text is None:
        raise ValidationFailed("department", "department is required")
    return _choice(text.lower(), "department", _DEPARTMENTS)


# =============================================================================
# Review Normalization
# =============================================================================

def normalize_buffer_percentage(value: Any) -> Decimal:
    """
    Buffer percentage defaults to 0 and must lie in [0, 100].

    Used again by the reservation calculator, which must not trust
    that the boundary ran.
    """
    if value is None:
        return Decimal("0")
    pct = _decimal_field(value, "buffer_percentage")
    if pct < 0 or pct > 100:
        raise ValidationFailed(
            "buffer_percentage", f"buffer percentage must be between 0 and 100, got: {pct}"
        )
    return pct


def normalize_approval(raw: Optional[Mapping[str, Any]]) -> ApprovalInput:
    data = merge_aliases(raw or {}, APPROVAL_ALIASES)

    reserved = None
    if data.get("reserved_amount") is not None:
        reserved = _money_field(data["reserved_amount"], "reserved_amount", "reserved amount")

    buffer_pct = None
    if data.get("buffer_percentage") is not None:
        buffer_pct = normalize_buffer_percentage(data["buffer_percentage"])

    return ApprovalInput(
        review_notes=_optional_str(data.get("review_notes"), "review_notes"),
        reserved_amount=reserved,
        buffer_percentage=buffer_pct,
    )


def normalize_rejection(raw: Optional[Mapping[str, Any]]) -> RejectionInput:
    data = merge_aliases(raw or {}, REJECTION_ALIASES)
    notes = _optional_str(data.get("review_notes"), "review_notes")
    if not notes:
        raise ValidationFailed("review_notes", "review notes are required when rejecting")
    return RejectionInput(
        review_notes=notes,
        rejection_reason=_optional_str(data.get("rejection_reason"), "rejection_reason"),
    )


# =============================================================================
# Filter Normalization
# =============================================================================

def normalize_filters(raw: Optional[Mapping[str, Any]]) -> BudgetRequestFilters:
    data = merge_aliases(raw or {}, FILTER_ALIASES)

    page = _int_field(data["page"], "page") if "page" in data else 1
    limit = _int_field(data["limit"], "limit") if "limit" in data else 20
    if page < 1:
        raise ValidationFailed("page", "page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise ValidationFailed("limit", f"limit must be between 1 and {MAX_PAGE_LIMIT}")

    return BudgetRequestFilters(
        status=_choice(data.get("status"), "status", _STATUSES),
        department=_choice(data.get("department"), "department", _DEPARTMENTS),
        priority=_choice(data.get("priority"), "priority", _PRIORITIES),
        category=_choice(data.get("category"), "category", _CATEGORIES),
        date_from=_datetime_field(data.get("date_from"), "date_from"),
        date_to=_datetime_field(data.get("date_to"), "date_to"),
        search=_optional_str(data.get("search"), "search"),
        page=page,
        limit=limit,
    )


# =============================================================================
# Analytics Normalization
# =============================================================================

TREND_GROUPINGS = ("day", "week", "month", "quarter", "year")
MAX_TOP_REQUESTERS = 100


def normalize_date_range(start: Any, end: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Optional ISO-8601 bounds; start must not be after end."""
    start_date = _datetime_field(start, "start_date")
    end_date = _datetime_field(end, "end_date")
    if start_date and end_date and start_date > end_date:
        raise ValidationFailed("start_date", "start date must not be after end date")
    return start_date, end_date


def normalize_group_by(value: Any) -> str:
    text = _optional_str(value, "group_by")
    if text is None:
        return "month"
    return _choice(text.lower(), "group_by", list(TREND_GROUPINGS))


def normalize_limit(value: Any, default: int = 10, maximum: int = MAX_TOP_REQUESTERS) -> int:
    if value is None:
        return default
    limit = _int_field(value, "limit")
    if limit < 1 or limit > maximum:
        raise ValidationFailed("limit", f"limit must be between 1 and {maximum}")
    return limit


__all__ = [
    "TREND_GROUPINGS",
    "MAX_TOP_REQUESTERS",
    "normalize_date_range",
    "normalize_group_by",
    "normalize_limit",
    "REQUEST_ALIASES",
    "ITEM_ALIASES",
    "APPROVAL_ALIASES",
    "REJECTION_ALIASES",
    "FILTER_ALIASES",
    "MAX_PAGE_LIMIT",
    "merge_aliases",
    "normalize_department",
    "normalize_item",
    "normalize_budget_request",
    "normalize_buffer_percentage",
    "normalize_approval",
    "normalize_rejection",
    "normalize_filters",
]
