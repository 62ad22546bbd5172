"""
Unit Tests for the Payload Normalizer

Covers alias merging (camelCase first), defaults and every validation
failure raised at the boundary.
"""

from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.budget_request_errors import ValidationFailed
from services.payload_normalizer import (
    ITEM_ALIASES,
    merge_aliases,
    normalize_approval,
    normalize_budget_request,
    normalize_buffer_percentage,
    normalize_department,
    normalize_filters,
    normalize_item,
    normalize_rejection,
)


def _payload(**overrides):
    payload = {
        "department": "operations",
        "amountRequested": "10000",
        "purpose": "Replace warehouse forklift batteries",
    }
    payload.update(overrides)
    return payload


# =============================================================================
# Alias Merging
# =============================================================================

class TestMergeAliases:

    def test_camel_case_wins_over_snake_case(self) -> None:
        merged = merge_aliases({"unitCost": "5", "unit_cost": "7"}, ITEM_ALIASES)
        assert merged["unit_cost"] == "5"

    def test_none_falls_through_to_next_alias(self) -> None:
        merged = merge_aliases({"itemName": None, "item_name": "Desk"}, ITEM_ALIASES)
        assert merged["item_name"] == "Desk"

    def test_unknown_keys_dropped(self) -> None:
        merged = merge_aliases({"color": "red"}, ITEM_ALIASES)
        assert merged == {}

    def test_subtotal_is_total_cost_alias(self) -> None:
        merged = merge_aliases({"subtotal": "12"}, ITEM_ALIASES)
        assert merged["total_cost"] == "12"


# =============================================================================
# Items
# =============================================================================

class TestNormalizeItem:

    def test_mixed_spellings_in_one_item(self) -> None:
        item = normalize_item(
            {"itemName": "Chair", "quantity": 3, "unit_cost": "49.99", "supplier": "Acme"}
        )
        assert item.item_name == "Chair"
        assert item.quantity == 3
        assert item.unit_cost == Decimal("49.99")
        assert item.supplier_name == "Acme"

    def test_total_defaults_to_quantity_times_unit_cost(self) -> None:
        item = normalize_item({"item_name": "Chair", "quantity": 3, "unitCost": "49.99"})
        assert item.total_cost == Decimal("149.97")

    def test_explicit_total_kept(self) -> None:
        item = normalize_item(
            {"itemName": "Chair", "quantity": 3, "unitCost": "50", "totalCost": "140"}
        )
        assert item.total_cost == Decimal("140.00")

    def test_defaults(self) -> None:
        item = normalize_item({"itemName": "Chair", "quantity": 1, "unitCost": "1"})
        assert item.item_priority == "must_have"
        assert item.is_essential is True

    def test_missing_name(self) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_item({"quantity": 1, "unitCost": "1"}, index=2)
        assert exc_info.value.field == "items[2].item_name"

    @pytest.mark.parametrize("quantity", [0, -1, "1.5", 2.5])
    def test_bad_quantity(self, quantity) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_item({"itemName": "Chair", "quantity": quantity, "unitCost": "1"})
        assert exc_info.value.field == "items[0].quantity"

    def test_negative_unit_cost(self) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_item({"itemName": "Chair", "quantity": 1, "unitCost": "-1"})
        assert exc_info.value.field == "items[0].unit_cost"

    def test_negative_total_cost(self) -> None:
        with pytest.raises(ValidationFailed):
            normalize_item(
                {"itemName": "Chair", "quantity": 1, "unitCost": "1", "totalCost": "-5"}
            )

    def test_unknown_item_priority(self) -> None:
        with pytest.raises(ValidationFailed):
            normalize_item(
                {"itemName": "Chair", "quantity": 1, "unitCost": "1", "itemPriority": "maybe"}
            )


# =============================================================================
# Requests
# =============================================================================

class TestNormalizeBudgetRequest:

    def test_valid_payload(self) -> None:
        data = normalize_budget_request(_payload(fiscalYear="2026", fiscal_period="Q3"))
        assert data.department == "operations"
        assert data.amount_requested == Decimal("10000.00")
        assert data.fiscal_year == 2026
        assert data.fiscal_period == "Q3"
        assert data.initial_status == "DRAFT"
        assert data.items == []

    def test_snake_case_amount(self) -> None:
        payload = _payload()
        del payload["amountRequested"]
        payload["amount_requested"] = 250
        assert normalize_budget_request(payload).amount_requested == Decimal("250.00")

    def test_float_amount_does_not_drift(self) -> None:
        data = normalize_budget_request(_payload(amountRequested=0.1))
        assert data.amount_requested == Decimal("0.10")

    def test_items_normalized(self) -> None:
        data = normalize_budget_request(
            _payload(items=[{"itemName": "Battery", "quantity": 4, "unitCost": "2500"}])
        )
        assert len(data.items) == 1
        assert data.items[0].total_cost == Decimal("10000.00")

    def test_unknown_department(self) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_budget_request(_payload(department="marketing"))
        assert exc_info.value.field == "department"

    def test_missing_department(self) -> None:
        payload = _payload()
        del payload["department"]
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_budget_request(payload)
        assert exc_info.value.field == "department"

    @pytest.mark.parametrize("amount", ["0", "-5", "10000000.01", "abc", True])
    def test_amount_out_of_range(self, amount) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_budget_request(_payload(amountRequested=amount))
        assert exc_info.value.field == "amount_requested"

    @pytest.mark.parametrize("amount", ["0.004", "0.001", "0.005"])
    def test_sub_cent_amount_rejected(self, amount) -> None:
        # 0.005 rounds half-even to 0.00
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_budget_request(_payload(amountRequested=amount))
        assert exc_info.value.field == "amount_requested"

    def test_amount_rounded_before_storage(self) -> None:
        data = normalize_budget_request(_payload(amountRequested="0.006"))
        assert data.amount_requested == Decimal("0.01")

    def test_amount_at_maximum_accepted(self) -> None:
        data = normalize_budget_request(_payload(amountRequested="10000000"))
        assert data.amount_requested == Decimal("10000000.00")

    def test_purpose_too_short(self) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_budget_request(_payload(purpose="short"))
        assert exc_info.value.field == "purpose"
        assert exc_info.value.error_code == "BRQ-010"

    def test_initial_status_submitted(self) -> None:
        assert normalize_budget_request(_payload(status="SUBMITTED")).initial_status == "SUBMITTED"

    def test_initial_status_approved_rejected(self) -> None:
        with pytest.raises(ValidationFailed):
            normalize_budget_request(_payload(status="APPROVED"))

    def test_body_must_be_mapping(self) -> None:
        with pytest.raises(ValidationFailed):
            normalize_budget_request(["not", "a", "dict"])

    def test_items_must_be_list(self) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_budget_request(_payload(items={"itemName": "x"}))
        assert exc_info.value.field == "items"


# =============================================================================
# Reviews
# =============================================================================

class TestReviewNormalization:

    def test_buffer_defaults_to_zero(self) -> None:
        assert normalize_buffer_percentage(None) == Decimal("0")

    @pytest.mark.parametrize("pct", ["-0.01", "100.01", "250"])
    def test_buffer_out_of_range(self, pct) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_buffer_percentage(pct)
        assert exc_info.value.field == "buffer_percentage"

    @pytest.mark.parametrize("pct", ["0", "50", "100"])
    def test_buffer_bounds_inclusive(self, pct) -> None:
        assert normalize_buffer_percentage(pct) == Decimal(pct)

    def test_approval_aliases(self) -> None:
        approval = normalize_approval(
            {"reviewNotes": "ok", "bufferPercentage": 10, "reserved_amount": "9000"}
        )
        assert approval.review_notes == "ok"
        assert approval.buffer_percentage == Decimal("10")
        assert approval.reserved_amount == Decimal("9000")

    def test_approval_body_optional(self) -> None:
        approval = normalize_approval(None)
        assert approval.reserved_amount is None
        assert approval.buffer_percentage is None

    def test_non_positive_reserved_override(self) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_approval({"reservedAmount": "0"})
        assert exc_info.value.field == "reserved_amount"

    @pytest.mark.parametrize("override", ["0.001", "0.004", "-0.01"])
    def test_sub_cent_reserved_override_rejected(self, override) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_approval({"reservedAmount": override})
        assert exc_info.value.field == "reserved_amount"

    @pytest.mark.parametrize("override", ["10000000.01", "99999999999999999999"])
    def test_reserved_override_capped(self, override) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_approval({"reservedAmount": override})
        assert exc_info.value.field == "reserved_amount"

    def test_reserved_override_quantized(self) -> None:
        approval = normalize_approval({"reservedAmount": "50000.004"})
        assert approval.reserved_amount == Decimal("50000.00")

    def test_rejection_requires_notes(self) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            normalize_rejection({"rejectionReason": "too expensive"})
        assert exc_info.value.field == "review_notes"

    def test_rejection_blank_notes(self) -> None:
        with pytest.raises(ValidationFailed):
            normalize_rejection({"reviewNotes": "   "})

    def test_rejection_valid(self) -> None:
        rejection = normalize_rejection({"review_notes": "Over budget", "rejectionReason": "cost"})
        assert rejection.review_notes == "Over budget"
        assert rejection.rejection_reason == "cost"


# =============================================================================
# Filters and departments
# =============================================================================

class TestFilters:

    def test_defaults(self) -> None:
        filters = normalize_filters(None)
        assert filters.page == 1
        assert filters.limit == 20

    def test_query_strings_parsed(self) -> None:
        filters = normalize_filters(
            {"page": "2", "limit": "5", "status": "SUBMITTED", "dateFrom": "2026-01-01"}
        )
        assert filters.page == 2
        assert filters.limit == 5
        assert filters.status == "SUBMITTED"
        assert filters.date_from.year == 2026
        assert filters.date_from.tzinfo is not None

    @pytest.mark.parametrize("raw", [{"page": "0"}, {"limit": "0"}, {"limit": "101"}])
    def test_bad_pagination(self, raw) -> None:
        with pytest.raises(ValidationFailed):
            normalize_filters(raw)

    def test_bad_status(self) -> None:
        with pytest.raises(ValidationFailed):
            normalize_filters({"status": "PENDING"})

    def test_department_case_insensitive(self) -> None:
        assert normalize_department("Operations") == "operations"

    def test_department_unknown(self) -> None:
        with pytest.raises(ValidationFailed):
            normalize_department("marketing")
