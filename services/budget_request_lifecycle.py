"""
============================================================================
Budget Request Service - Lifecycle Engine
============================================================================

Decimal Integrity: Reservation figures from ReservationCalculator (ROUND_HALF_EVEN)
Traceability: Every operation runs under one correlation_id, shared by its
              logs and every side-effect intent it enqueues

LIFECYCLE:
    DRAFT -> SUBMITTED (creator, department admin, super admin)
    SUBMITTED -> APPROVED | REJECTED (Finance department only)
    APPROVED, REJECTED are terminal

TRANSACTION SHAPE (submit / approve / reject / delete):
    1. Load the live record row-locked inside one session
    2. Check access and the transition BEFORE any write
    3. Update status fields and append the history row in the same
       transaction
    4. Commit
    5. Invalidate the response cache
    6. Enqueue side-effect intents (never awaited, never raised)

ERROR CODES:
    - BRQ-010: ValidationFailed (from the normalizer / calculator)
    - BRQ-020: NotFound
    - BRQ-030: InvalidTransition
    - BRQ-040: Forbidden

============================================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union
import logging
import uuid

from app.database.models import BudgetRequest
from app.database.session import Database
from app.observability.metrics import (
    record_request_created,
    record_reserved_amount,
    record_transition,
)
from services.budget_request_config import BudgetServiceConfig
from services.budget_request_errors import Forbidden, InvalidTransition, NotFound
from services.budget_request_models import (
    ActorContext,
    ApprovalInput,
    AuditAction,
    BudgetRequestFilters,
    BudgetRequestInput,
    BudgetRequestStatus,
    HistoryAction,
    NotificationType,
    RejectionInput,
    WebhookEvent,
)
from services.budget_request_state_machine import ensure_transition
from services.finance_client import generate_idempotency_key
from services.payload_normalizer import (
    normalize_approval,
    normalize_budget_request,
    normalize_filters,
    normalize_rejection,
)
from services.request_store import RequestStore, serialize_request
from services.reservation_calculator import calculate_reservation, reservation_expiry
from services.response_cache import ResponseCache
from services.side_effect_dispatcher import SideEffectKind, SideEffectOutbox

logger = logging.getLogger(__name__)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Access Rules
# =============================================================================

def can_view(actor: ActorContext, request: Mapping[str, Any]) -> bool:
    if actor.is_super_admin or actor.is_finance:
        return True
    if actor.is_admin and actor.department == request.get("department"):
        return True
    return actor.user_id == request.get("created_by")


def can_create_for(actor: ActorContext, department: str) -> bool:
    if department == actor.department:
        return True
    return actor.is_finance_admin or actor.is_super_admin


def can_submit(actor: ActorContext, request: BudgetRequest) -> bool:
    if actor.is_super_admin or actor.user_id == request.created_by:
        return True
    return actor.is_admin and actor.department == request.department


def can_review(actor: ActorContext) -> bool:
    return actor.is_finance


def can_delete(actor: ActorContext, request: BudgetRequest) -> bool:
    if actor.is_super_admin or actor.is_finance_admin:
        return True
    if actor.user_id == request.created_by:
        return True
    return actor.is_admin and actor.department == request.department


# =============================================================================
# BudgetRequestLifecycle
# =============================================================================

class BudgetRequestLifecycle:
    """
    Public operations on budget requests.

    Every operation returns JSON-safe dicts. Side effects go through the
    outbox after the commit, so a failing audit service, webhook or SMTP
    server can never roll back or fail an operation.
    """

    def __init__(
        self,
        database: Database,
        store: RequestStore,
        cache: ResponseCache,
        outbox: SideEffectOutbox,
        config: BudgetServiceConfig,
    ) -> None:
        self.database = database
        self.store = store
        self.cache = cache
        self.outbox = outbox
        self.config = config

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self,
        payload: Union[Mapping[str, Any], BudgetRequestInput],
        actor: ActorContext,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a DRAFT request (and submit it straight away when the
        payload asks for status SUBMITTED).

        Raises:
            ValidationFailed: bad payload
            Forbidden: department out of the actor's scope
            BudgetUnavailable: no budget snapshot could be produced
        """
        correlation_id = correlation_id or new_correlation_id()
        data = payload if isinstance(payload, BudgetRequestInput) else normalize_budget_request(payload)

        if not can_create_for(actor, data.department):
            logger.warning(
                f"[BR-LIFECYCLE] Create denied | user_id={actor.user_id} | "
                f"actor_department={actor.department} | department={data.department} | "
                f"correlation_id={correlation_id}"
            )
            raise Forbidden(
                f"User from {actor.department} cannot create budget requests for {data.department}",
                action="create",
            )

        created = await self.store.create(data, actor, correlation_id=correlation_id)
        record_request_created(created["department"], correlation_id)
        await self.cache.invalidate_after_mutation(created["id"], correlation_id)

        self._audit(AuditAction.CREATE, created, actor, correlation_id)
        self._webhook(WebhookEvent.CREATED, created, correlation_id)

        logger.info(
            f"[BR-LIFECYCLE] Budget request created | id={created['id']} | "
            f"request_code={created['request_code']} | department={created['department']} | "
            f"initial_status={data.initial_status} | correlation_id={correlation_id}"
        )

        if data.initial_status == BudgetRequestStatus.SUBMITTED.value:
            return await self.submit(created["id"], actor, correlation_id=correlation_id)
        return created

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(
        self,
        request_id: int,
        actor: ActorContext,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Raises:
            NotFound: missing or soft-deleted
            Forbidden: actor may not see this request
        """
        correlation_id = correlation_id or new_correlation_id()
        request = await self._readable(request_id, actor, "view")
        self._audit(AuditAction.VIEW, request, actor, correlation_id)
        return request

    async def list(
        self,
        filters: Union[Mapping[str, Any], BudgetRequestFilters, None],
        actor: ActorContext,
    ) -> Dict[str, Any]:
        if not isinstance(filters, BudgetRequestFilters):
            filters = normalize_filters(filters)
        return await self.store.find_many(filters, actor)

    async def get_history(self, request_id: int, actor: ActorContext) -> list:
        await self._readable(request_id, actor, "view_history")
        return await self.store.get_history(request_id)

    async def _readable(self, request_id: int, actor: ActorContext, action: str) -> Dict[str, Any]:
        request = await self.store.find_by_id(request_id)
        if request is None:
            raise NotFound("BudgetRequest", request_id)
        if not can_view(actor, request):
            raise Forbidden("You do not have access to this budget request", action=action)
        return request

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def submit(
        self,
        request_id: int,
        actor: ActorContext,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        DRAFT -> SUBMITTED.

        Raises:
            NotFound, Forbidden, InvalidTransition
        """
        correlation_id = correlation_id or new_correlation_id()
        target = BudgetRequestStatus.SUBMITTED.value

        async with self.database.session() as session:
            request = await self.store.load_for_update(session, request_id)
            if not can_submit(actor, request):
                raise Forbidden(
                    "Only the creator or a department admin can submit this request",
                    action="submit",
                )
            ensure_transition(request.status, target, correlation_id)

            now = datetime.now(timezone.utc)
            status_from = request.status
            request.status = target
            request.submitted_at = now
            request.updated_by = actor.user_id
            request.updated_at = now
            await self.store.append_history(
                session,
                request,
                status_from=status_from,
                status_to=target,
                action=HistoryAction.SUBMITTED.value,
                actor=actor,
                changed_at=now,
            )
            result = serialize_request(request)

        await self._after_transition(result, status_from, correlation_id)
        self._email(NotificationType.REQUEST_SUBMITTED, result, correlation_id)
        self._audit(AuditAction.SUBMIT, result, actor, correlation_id)
        self._webhook(WebhookEvent.SUBMITTED, result, correlation_id)
        return result

    async def approve(
        self,
        request_id: int,
        approval: Union[Mapping[str, Any], ApprovalInput, None],
        actor: ActorContext,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        SUBMITTED -> APPROVED, reserving base + buffer.

        Raises:
            ValidationFailed: buffer outside [0, 100] or bad override
            NotFound, Forbidden, InvalidTransition
        """
        correlation_id = correlation_id or new_correlation_id()
        if not isinstance(approval, ApprovalInput):
            approval = normalize_approval(approval)
        if not can_review(actor):
            raise Forbidden("Only Finance can approve budget requests", action="approve")

        target = BudgetRequestStatus.APPROVED.value

        async with self.database.session() as session:
            request = await self.store.load_for_update(session, request_id)
            ensure_transition(request.status, target, correlation_id)

            reservation = calculate_reservation(
                request.amount_requested,
                reserved_override=approval.reserved_amount,
                buffer_percentage=approval.buffer_percentage,
            )

            now = datetime.now(timezone.utc)
            status_from = request.status
            request.status = target
            request.reviewed_by = actor.user_id
            request.reviewed_by_name = actor.username
            request.review_notes = approval.review_notes
            request.reviewed_at = now
            request.approved_by = actor.user_id
            request.approved_at = now
            request.reserved_amount = reservation.total_reserved
            request.buffer_amount = reservation.buffer_amount
            request.buffer_percentage = reservation.buffer_percentage
            request.is_reserved = True
            request.reserved_at = now
            request.reservation_expiry = reservation_expiry(now, self.config.reservation_expiry_days)
            request.updated_by = actor.user_id
            request.updated_at = now
            await self.store.append_history(
                session,
                request,
                status_from=status_from,
                status_to=target,
                action=HistoryAction.APPROVED.value,
                actor=actor,
                comments=approval.review_notes,
                amount_before=request.amount_requested,
                amount_after=reservation.total_reserved,
                changed_at=now,
            )
            result = serialize_request(request)

        await self._after_transition(result, status_from, correlation_id)
        record_reserved_amount(result["department"], reservation.total_reserved)

        logger.info(
            f"[BR-LIFECYCLE] Reservation computed | id={request_id} | "
            f"base={reservation.base_amount} | buffer_pct={reservation.buffer_percentage} | "
            f"buffer={reservation.buffer_amount} | total={reservation.total_reserved} | "
            f"correlation_id={correlation_id}"
        )

        self.outbox.emit(
            SideEffectKind.FINANCE_RESERVATION,
            {
                "budget_request_id": result["id"],
                "department": result["department"],
                "fiscal_year": result["fiscal_year"],
                "fiscal_period": result["fiscal_period"],
                "amount": result["reserved_amount"],
                "request_code": result["request_code"],
                "expires_at": result["reservation_expiry"],
                "idempotency_key": generate_idempotency_key("budget", "reserve", result["id"]),
            },
            correlation_id,
        )
        self._email(NotificationType.REQUEST_APPROVED, result, correlation_id)
        self._audit(AuditAction.APPROVE, result, actor, correlation_id)
        self._webhook(WebhookEvent.APPROVED, result, correlation_id)
        return result

    async def reject(
        self,
        request_id: int,
        rejection: Union[Mapping[str, Any], RejectionInput, None],
        actor: ActorContext,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        SUBMITTED -> REJECTED.

        Raises:
            ValidationFailed: review notes missing
            NotFound, Forbidden, InvalidTransition
        """
        correlation_id = correlation_id or new_correlation_id()
        if not isinstance(rejection, RejectionInput):
            rejection = normalize_rejection(rejection)
        if not can_review(actor):
            raise Forbidden("Only Finance can reject budget requests", action="reject")

        target = BudgetRequestStatus.REJECTED.value

        async with self.database.session() as session:
            request = await self.store.load_for_update(session, request_id)
            ensure_transition(request.status, target, correlation_id)

            now = datetime.now(timezone.utc)
            status_from = request.status
            request.status = target
            request.reviewed_by = actor.user_id
            request.reviewed_by_name = actor.username
            request.review_notes = rejection.review_notes
            request.reviewed_at = now
            request.rejection_reason = rejection.rejection_reason or rejection.review_notes
            request.rejected_by = actor.user_id
            request.rejected_at = now
            request.updated_by = actor.user_id
            request.updated_at = now
            await self.store.append_history(
                session,
                request,
                status_from=status_from,
                status_to=target,
                action=HistoryAction.REJECTED.value,
                actor=actor,
                comments=rejection.review_notes,
                amount_before=request.amount_requested,
                changed_at=now,
            )
            result = serialize_request(request)

        await self._after_transition(result, status_from, correlation_id)
        self._email(NotificationType.REQUEST_REJECTED, result, correlation_id)
        self._audit(AuditAction.REJECT, result, actor, correlation_id)
        self._webhook(WebhookEvent.REJECTED, result, correlation_id)
        return result

    async def delete(
        self,
        request_id: int,
        actor: ActorContext,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Soft delete a DRAFT request.

        Raises:
            NotFound, Forbidden, InvalidTransition (not DRAFT)
        """
        correlation_id = correlation_id or new_correlation_id()

        async with self.database.session() as session:
            request = await self.store.load_for_update(session, request_id)
            if not can_delete(actor, request):
                raise Forbidden(
                    "Only the creator or a department admin can delete this request",
                    action="delete",
                )
            if request.status != BudgetRequestStatus.DRAFT.value:
                raise InvalidTransition(
                    current_status=request.status,
                    target_status="DELETED",
                    required_status=BudgetRequestStatus.DRAFT.value,
                )

            now = datetime.now(timezone.utc)
            request.is_deleted = True
            request.deleted_by = actor.user_id
            request.deleted_at = now
            request.updated_by = actor.user_id
            request.updated_at = now
            result = serialize_request(request)

        await self.cache.invalidate_after_mutation(request_id, correlation_id)
        self._audit(AuditAction.DELETE, result, actor, correlation_id)

        logger.info(
            f"[BR-LIFECYCLE] Budget request deleted | id={request_id} | "
            f"deleted_by={actor.user_id} | correlation_id={correlation_id}"
        )
        return {"id": request_id, "request_code": result["request_code"], "deleted": True}

    # -------------------------------------------------------------------------
    # Post-commit helpers
    # -------------------------------------------------------------------------

    async def _after_transition(
        self,
        result: Dict[str, Any],
        status_from: str,
        correlation_id: str,
    ) -> None:
        record_transition(status_from, result["status"], correlation_id)
        await self.cache.invalidate_after_mutation(result["id"], correlation_id)
        logger.info(
            f"[BR-LIFECYCLE] Status changed | id={result['id']} | "
            f"{status_from} -> {result['status']} | correlation_id={correlation_id}"
        )

    def _audit(
        self,
        action: AuditAction,
        request: Dict[str, Any],
        actor: ActorContext,
        correlation_id: str,
    ) -> None:
        details = {
            "id": request.get("id"),
            "request_code": request.get("request_code"),
            "department": request.get("department"),
            "status": request.get("status"),
            "amount_requested": request.get("amount_requested"),
            "reserved_amount": request.get("reserved_amount"),
        }
        self.outbox.emit(
            SideEffectKind.AUDIT,
            {
                "action": action.value,
                "details": details,
                "actor": actor.to_dict(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            correlation_id,
        )

    def _webhook(self, event: WebhookEvent, request: Dict[str, Any], correlation_id: str) -> None:
        self.outbox.emit(
            SideEffectKind.WEBHOOK, {"event": event.value, "data": request}, correlation_id
        )

    def _email(
        self,
        notification_type: NotificationType,
        request: Dict[str, Any],
        correlation_id: str,
    ) -> None:
        self.outbox.emit(
            SideEffectKind.EMAIL,
            {"type": notification_type.value, "request": request},
            correlation_id,
        )


__all__ = [
    "new_correlation_id",
    "can_view",
    "can_create_for",
    "can_submit",
    "can_review",
    "can_delete",
    "BudgetRequestLifecycle",
]
