"""
============================================================================
Integration Tests for the Budget Request Lifecycle
============================================================================

Full create -> submit -> approve/reject flows against SQLite, the mocked
Finance/audit/webhook endpoints and the in-memory email transport.
Side effects are delivered with services.dispatcher.drain().

============================================================================
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import ADMIN_EMAIL, request_payload
from services.budget_request_errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from services.finance_client import generate_idempotency_key
from services.response_cache import detail_key
from services.webhook_dispatcher import WebhookSubscription


async def _submitted(services, actor, **overrides):
    created = await services.lifecycle.create(request_payload(**overrides), actor)
    return await services.lifecycle.submit(created["id"], actor)


# =============================================================================
# Create
# =============================================================================

class TestCreate:

    async def test_create_snapshots_budget_and_shortfall(self, services, operations_staff) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)

        assert created["status"] == "DRAFT"
        assert created["request_code"] == f"BR-2026-{created['id']:05d}"
        assert created["amount_requested"] == "10000.00"
        assert created["department_budget_remaining"] == "8000.00"
        assert created["budget_before"] == "8000.00"
        assert created["budget_shortfall"] == "2000.00"
        assert created["budget_snapshot_stale"] is False
        assert created["created_by"] == "u-ops-1"
        assert created["created_by_email"] == "olivia@example.com"
        assert len(created["items"]) == 1
        assert created["items"][0]["total_cost"] == "10000.00"
        assert created["approval_history"] == []

    async def test_within_budget_has_no_shortfall(self, services, hr_staff) -> None:
        created = await services.lifecycle.create(
            request_payload(department="hr", amountRequested="5000", items=[]), hr_staff
        )
        assert created["budget_shortfall"] == "0.00"

    async def test_create_as_submitted(self, services, operations_staff) -> None:
        created = await services.lifecycle.create(
            request_payload(status="SUBMITTED"), operations_staff
        )
        assert created["status"] == "SUBMITTED"
        history = await services.lifecycle.get_history(created["id"], operations_staff)
        assert [h["action"] for h in history] == ["SUBMITTED"]

    async def test_create_for_other_department_forbidden(self, services, operations_staff) -> None:
        with pytest.raises(Forbidden):
            await services.lifecycle.create(request_payload(department="hr"), operations_staff)

    async def test_finance_admin_may_create_for_any_department(self, services, finance_admin) -> None:
        created = await services.lifecycle.create(request_payload(department="hr"), finance_admin)
        assert created["department"] == "hr"

    async def test_validation_failure_writes_nothing(self, services, operations_staff, finance_staff) -> None:
        with pytest.raises(ValidationFailed):
            await services.lifecycle.create(
                request_payload(items=[{"itemName": "x", "quantity": 0, "unitCost": "1"}]),
                operations_staff,
            )
        listing = await services.lifecycle.list(None, finance_staff)
        assert listing["pagination"]["total"] == 0

    @pytest.mark.parametrize("amount", ["0.004", "0.001"])
    async def test_sub_cent_amount_rejected_before_write(
        self, services, operations_staff, finance_staff, amount
    ) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await services.lifecycle.create(
                request_payload(amountRequested=amount, items=[]), operations_staff
            )
        assert exc_info.value.field == "amount_requested"
        listing = await services.lifecycle.list(None, finance_staff)
        assert listing["pagination"]["total"] == 0

    async def test_finance_outage_falls_back_to_synthetic(
        self, services, external, operations_staff
    ) -> None:
        external.finance_available = False

        created = await services.lifecycle.create(request_payload(), operations_staff)

        assert created["budget_snapshot_stale"] is True
        assert created["department_budget_remaining"] == "10000000.00"
        assert created["budget_shortfall"] == "0.00"

    async def test_finance_outage_uses_stale_mirror(
        self, services, external, operations_staff
    ) -> None:
        await services.lifecycle.create(request_payload(), operations_staff)
        await services.cache.invalidate_department_budget("operations", 2026, "Q2")
        external.finance_available = False

        created = await services.lifecycle.create(request_payload(), operations_staff)

        assert created["budget_snapshot_stale"] is True
        assert created["department_budget_remaining"] == "8000.00"


# =============================================================================
# Submit / Approve / Reject
# =============================================================================

class TestTransitions:

    async def test_submit_appends_history(self, services, operations_staff) -> None:
        submitted = await _submitted(services, operations_staff)

        assert submitted["status"] == "SUBMITTED"
        assert submitted["submitted_at"] is not None
        history = await services.lifecycle.get_history(submitted["id"], operations_staff)
        assert len(history) == 1
        assert history[0]["status_from"] == "DRAFT"
        assert history[0]["status_to"] == "SUBMITTED"
        assert history[0]["changed_by_role"] == "NON_ADMIN"

    async def test_submit_twice_is_invalid(self, services, operations_staff) -> None:
        submitted = await _submitted(services, operations_staff)
        with pytest.raises(InvalidTransition) as exc_info:
            await services.lifecycle.submit(submitted["id"], operations_staff)
        assert exc_info.value.required_status == "DRAFT"

    async def test_colleague_cannot_submit(
        self, services, operations_staff, operations_colleague
    ) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        with pytest.raises(Forbidden):
            await services.lifecycle.submit(created["id"], operations_colleague)

    async def test_department_admin_can_submit(
        self, services, operations_staff, operations_admin
    ) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        submitted = await services.lifecycle.submit(created["id"], operations_admin)
        history = await services.lifecycle.get_history(created["id"], operations_admin)
        assert submitted["status"] == "SUBMITTED"
        assert history[0]["changed_by_role"] == "ADMIN"

    async def test_approve_reserves_with_buffer(
        self, services, operations_staff, finance_admin
    ) -> None:
        submitted = await _submitted(services, operations_staff)

        approved = await services.lifecycle.approve(
            submitted["id"], {"reviewNotes": "ok", "bufferPercentage": 10}, finance_admin
        )

        assert approved["status"] == "APPROVED"
        assert approved["reserved_amount"] == "11000.00"
        assert approved["buffer_amount"] == "1000.00"
        assert approved["buffer_percentage"] == "10.00"
        assert approved["is_reserved"] is True
        assert approved["review_notes"] == "ok"
        assert approved["approved_by"] == "u-fin-admin"
        expiry = datetime.fromisoformat(approved["reservation_expiry"])
        approved_at = datetime.fromisoformat(approved["approved_at"])
        assert expiry - approved_at == timedelta(days=30)

        history = await services.lifecycle.get_history(submitted["id"], finance_admin)
        latest = history[0]
        assert latest["action"] == "APPROVED"
        assert latest["comments"] == "ok"
        assert latest["amount_before"] == "10000.00"
        assert latest["amount_after"] == "11000.00"
        assert len(history) == 2

    async def test_approve_with_override(self, services, operations_staff, finance_admin) -> None:
        submitted = await _submitted(services, operations_staff, amountRequested="60000", items=[])
        approved = await services.lifecycle.approve(
            submitted["id"], {"reservedAmount": "50000", "bufferPercentage": "5"}, finance_admin
        )
        assert approved["reserved_amount"] == "52500.00"

    async def test_approve_without_body(self, services, operations_staff, finance_staff) -> None:
        submitted = await _submitted(services, operations_staff)
        approved = await services.lifecycle.approve(submitted["id"], None, finance_staff)
        assert approved["reserved_amount"] == "10000.00"
        assert approved["buffer_amount"] == "0.00"

    async def test_approve_draft_is_invalid(self, services, operations_staff, finance_admin) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        with pytest.raises(InvalidTransition) as exc_info:
            await services.lifecycle.approve(created["id"], None, finance_admin)
        assert exc_info.value.current_status == "DRAFT"
        assert exc_info.value.required_status == "SUBMITTED"

        current = await services.lifecycle.get(created["id"], finance_admin)
        assert current["status"] == "DRAFT"
        assert current["reserved_amount"] is None
        assert current["is_reserved"] is False
        assert current["approved_at"] is None
        assert await services.lifecycle.get_history(created["id"], finance_admin) == []

    async def test_non_finance_cannot_approve(
        self, services, operations_staff, operations_admin
    ) -> None:
        submitted = await _submitted(services, operations_staff)
        with pytest.raises(Forbidden):
            await services.lifecycle.approve(submitted["id"], None, operations_admin)

    async def test_buffer_out_of_range_writes_nothing(
        self, services, operations_staff, finance_admin
    ) -> None:
        submitted = await _submitted(services, operations_staff)
        with pytest.raises(ValidationFailed):
            await services.lifecycle.approve(
                submitted["id"], {"bufferPercentage": 150}, finance_admin
            )
        current = await services.lifecycle.get(submitted["id"], finance_admin)
        assert current["status"] == "SUBMITTED"

    async def test_reject_then_approve_is_invalid(
        self, services, operations_staff, finance_admin
    ) -> None:
        submitted = await _submitted(services, operations_staff)

        rejected = await services.lifecycle.reject(
            submitted["id"], {"reviewNotes": "Over budget"}, finance_admin
        )
        assert rejected["status"] == "REJECTED"
        assert rejected["rejection_reason"] == "Over budget"
        assert rejected["reserved_amount"] is None
        assert rejected["rejected_by"] == "u-fin-admin"
        assert rejected["rejected_at"] is not None
        assert rejected["reviewed_at"] is not None

        with pytest.raises(InvalidTransition) as exc_info:
            await services.lifecycle.approve(submitted["id"], None, finance_admin)
        assert exc_info.value.current_status == "REJECTED"
        assert exc_info.value.required_status == "SUBMITTED"

        history = await services.lifecycle.get_history(submitted["id"], finance_admin)
        assert len(history) == 2

        current = await services.lifecycle.get(submitted["id"], finance_admin)
        assert current["status"] == "REJECTED"
        assert current["reserved_amount"] is None
        assert current["approved_at"] is None

    async def test_reject_requires_notes(self, services, operations_staff, finance_admin) -> None:
        submitted = await _submitted(services, operations_staff)
        with pytest.raises(ValidationFailed):
            await services.lifecycle.reject(submitted["id"], {}, finance_admin)

    async def test_sub_cent_override_leaves_request_submitted(
        self, services, operations_staff, finance_admin
    ) -> None:
        submitted = await _submitted(services, operations_staff)
        with pytest.raises(ValidationFailed) as exc_info:
            await services.lifecycle.approve(
                submitted["id"], {"reservedAmount": "0.001"}, finance_admin
            )
        assert exc_info.value.field == "reserved_amount"

        current = await services.lifecycle.get(submitted["id"], finance_admin)
        assert current["status"] == "SUBMITTED"
        assert current["reserved_amount"] is None
        assert len(await services.lifecycle.get_history(submitted["id"], finance_admin)) == 1

    async def test_oversized_override_rejected(
        self, services, operations_staff, finance_admin
    ) -> None:
        submitted = await _submitted(services, operations_staff)
        with pytest.raises(ValidationFailed):
            await services.lifecycle.approve(
                submitted["id"], {"reservedAmount": "99999999999999999999"}, finance_admin
            )
        current = await services.lifecycle.get(submitted["id"], finance_admin)
        assert current["status"] == "SUBMITTED"

    async def test_unknown_request(self, services, finance_admin) -> None:
        with pytest.raises(NotFound):
            await services.lifecycle.approve(99999, None, finance_admin)


# =============================================================================
# Reads and access
# =============================================================================

class TestReads:

    async def test_creator_and_finance_can_view(
        self, services, operations_staff, finance_staff
    ) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        assert (await services.lifecycle.get(created["id"], operations_staff))["id"] == created["id"]
        assert (await services.lifecycle.get(created["id"], finance_staff))["id"] == created["id"]

    async def test_colleague_cannot_view_but_admin_can(
        self, services, operations_staff, operations_colleague, operations_admin
    ) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        with pytest.raises(Forbidden):
            await services.lifecycle.get(created["id"], operations_colleague)
        assert (await services.lifecycle.get(created["id"], operations_admin))["id"] == created["id"]

    async def test_other_department_cannot_view(self, services, operations_staff, hr_staff) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        with pytest.raises(Forbidden):
            await services.lifecycle.get(created["id"], hr_staff)

    async def test_list_is_department_scoped(
        self, services, operations_staff, hr_staff, finance_staff
    ) -> None:
        await services.lifecycle.create(request_payload(), operations_staff)
        await services.lifecycle.create(
            request_payload(department="hr", items=[]), hr_staff
        )

        hr_view = await services.lifecycle.list({"department": "operations"}, hr_staff)
        assert [r["department"] for r in hr_view["items"]] == ["hr"]

        finance_view = await services.lifecycle.list(None, finance_staff)
        assert finance_view["pagination"]["total"] == 2

        filtered = await services.lifecycle.list({"department": "hr"}, finance_staff)
        assert filtered["pagination"]["total"] == 1

    async def test_list_filters_and_pagination(self, services, operations_staff, finance_staff) -> None:
        for n in range(3):
            await services.lifecycle.create(
                request_payload(purpose=f"Forklift maintenance batch {n}"), operations_staff
            )
        submitted = await _submitted(services, operations_staff, purpose="Pallet racking repairs")

        page = await services.lifecycle.list({"limit": "2", "page": "1"}, finance_staff)
        assert len(page["items"]) == 2
        assert page["pagination"]["total"] == 4
        assert page["pagination"]["total_pages"] == 2

        by_status = await services.lifecycle.list({"status": "SUBMITTED"}, finance_staff)
        assert [r["id"] for r in by_status["items"]] == [submitted["id"]]

        by_search = await services.lifecycle.list({"search": "RACKING"}, finance_staff)
        assert [r["id"] for r in by_search["items"]] == [submitted["id"]]

    async def test_detail_includes_history(self, services, operations_staff) -> None:
        submitted = await _submitted(services, operations_staff)
        detail = await services.lifecycle.get(submitted["id"], operations_staff)
        assert [h["action"] for h in detail["approval_history"]] == ["SUBMITTED"]


# =============================================================================
# Delete
# =============================================================================

class TestDelete:

    async def test_soft_delete_draft(self, services, operations_staff, finance_staff) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)

        result = await services.lifecycle.delete(created["id"], operations_staff)

        assert result == {"id": created["id"], "request_code": created["request_code"], "deleted": True}
        with pytest.raises(NotFound):
            await services.lifecycle.get(created["id"], finance_staff)
        with pytest.raises(NotFound):
            await services.lifecycle.get_history(created["id"], finance_staff)
        listing = await services.lifecycle.list(None, finance_staff)
        assert listing["pagination"]["total"] == 0

    async def test_cannot_delete_submitted(self, services, operations_staff) -> None:
        submitted = await _submitted(services, operations_staff)
        with pytest.raises(InvalidTransition) as exc_info:
            await services.lifecycle.delete(submitted["id"], operations_staff)
        assert exc_info.value.target_status == "DELETED"

    async def test_colleague_cannot_delete(
        self, services, operations_staff, operations_colleague
    ) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        with pytest.raises(Forbidden):
            await services.lifecycle.delete(created["id"], operations_colleague)

    async def test_deleted_request_cannot_be_submitted(self, services, operations_staff) -> None:
        created = await services.lifecycle.create(request_payload(), operations_staff)
        await services.lifecycle.delete(created["id"], operations_staff)
        with pytest.raises(NotFound):
            await services.lifecycle.submit(created["id"], operations_staff)


# =============================================================================
# Cache consistency
# =============================================================================

class TestCacheConsistency:

    async def test_detail_refreshed_after_transition(
        self, services, operations_staff, finance_admin
    ) -> None:
        submitted = await _submitted(services, operations_staff)
        before = await services.lifecycle.get(submitted["id"], finance_admin)
        assert before["status"] == "SUBMITTED"
        assert await services.cache.get_json(detail_key(submitted["id"])) is not None

        await services.lifecycle.approve(submitted["id"], None, finance_admin)

        after = await services.lifecycle.get(submitted["id"], finance_admin)
        assert after["status"] == "APPROVED"

    async def test_list_refreshed_after_create(self, services, operations_staff) -> None:
        first = await services.lifecycle.list(None, operations_staff)
        assert first["pagination"]["total"] == 0

        await services.lifecycle.create(request_payload(), operations_staff)

        second = await services.lifecycle.list(None, operations_staff)
        assert second["pagination"]["total"] == 1

    async def test_list_refreshed_after_approve_and_reject(
        self, services, operations_staff, finance_admin
    ) -> None:
        first = await _submitted(services, operations_staff)
        second = await _submitted(services, operations_staff)

        pending = await services.lifecycle.list({"status": "SUBMITTED"}, finance_admin)
        assert pending["pagination"]["total"] == 2
        everything = await services.lifecycle.list(None, finance_admin)
        assert {r["status"] for r in everything["items"]} == {"SUBMITTED"}

        await services.lifecycle.approve(first["id"], None, finance_admin)

        pending = await services.lifecycle.list({"status": "SUBMITTED"}, finance_admin)
        approved = await services.lifecycle.list({"status": "APPROVED"}, finance_admin)
        assert pending["pagination"]["total"] == 1
        assert approved["pagination"]["total"] == 1
        assert approved["items"][0]["id"] == first["id"]
        assert approved["items"][0]["reserved_amount"] == "10000.00"

        await services.lifecycle.reject(second["id"], {"reviewNotes": "Defer"}, finance_admin)

        everything = await services.lifecycle.list(None, finance_admin)
        counts = {}
        for row in everything["items"]:
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        assert counts == {"APPROVED": 1, "REJECTED": 1}
        pending = await services.lifecycle.list({"status": "SUBMITTED"}, finance_admin)
        assert pending["pagination"]["total"] == 0

        # the requester's own cached view refreshes too
        own = await services.lifecycle.list(None, operations_staff)
        assert sorted(r["status"] for r in own["items"]) == ["APPROVED", "REJECTED"]

    async def test_list_cache_keyed_by_filters(self, services, operations_staff) -> None:
        await _submitted(services, operations_staff)
        drafts = await services.lifecycle.list({"status": "DRAFT"}, operations_staff)
        submitted = await services.lifecycle.list({"status": "SUBMITTED"}, operations_staff)
        assert drafts["pagination"]["total"] == 0
        assert submitted["pagination"]["total"] == 1


# =============================================================================
# Side effects
# =============================================================================

class TestSideEffects:

    async def test_full_flow_side_effects(
        self, services, external, email_transport, operations_staff, finance_admin
    ) -> None:
        await services.webhooks.set_subscriptions(
            "budget_request.approved", [WebhookSubscription("http://hooks.test/approved", "s3cret")]
        )

        submitted = await _submitted(services, operations_staff)
        approved = await services.lifecycle.approve(
            submitted["id"], {"reviewNotes": "ok", "bufferPercentage": 10}, finance_admin
        )
        await services.dispatcher.drain()

        actions = [record["action"] for record in external.audit_records]
        assert actions == ["CREATE", "SUBMIT", "APPROVE"]
        assert external.audit_records[-1]["userId"] == "u-fin-admin"
        assert external.audit_records[-1]["details"]["reserved_amount"] == "11000.00"

        assert len(external.reservations) == 1
        reservation = external.reservations[0]
        assert reservation["budgetRequestId"] == approved["id"]
        assert reservation["amount"] == "11000.00"
        assert reservation["idempotencyKey"] == generate_idempotency_key(
            "budget", "reserve", approved["id"]
        )

        assert [r.url.path for r in external.webhook_deliveries] == ["/approved"]

        recipients = [message.to for message in email_transport.sent]
        assert recipients == [ADMIN_EMAIL, "olivia@example.com"]

    async def test_downstream_failures_do_not_fail_operations(
        self, services, external, email_transport, operations_staff, finance_admin
    ) -> None:
        external.audit_status = 500
        external.reserve_status = 503
        email_transport.fail_times = 100

        submitted = await _submitted(services, operations_staff)
        approved = await services.lifecycle.approve(submitted["id"], None, finance_admin)
        await services.dispatcher.drain()

        assert approved["status"] == "APPROVED"
        reserve_calls = [
            r for r in external.requests if r.url.path == "/api/integration/budgets/reserve"
        ]
        assert len(reserve_calls) == 3
        current = await services.lifecycle.get(submitted["id"], finance_admin)
        assert current["status"] == "APPROVED"

    async def test_same_correlation_id_across_intents(
        self, services, operations_staff
    ) -> None:
        await services.lifecycle.create(request_payload(), operations_staff, correlation_id="corr-42")
        intents = []
        while not services.outbox.empty():
            intents.append(services.outbox.get_nowait())
            services.outbox.task_done()
        assert len(intents) == 2
        assert {intent.correlation_id for intent in intents} == {"corr-42"}
