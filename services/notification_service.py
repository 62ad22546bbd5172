"""
============================================================================
Budget Request Service - Notification Service
============================================================================

Side Effects: budget_request_notifications rows, outbound email

NOTIFICATIONS:
    REQUEST_SUBMITTED  -> every configured admin recipient
    REQUEST_APPROVED   -> the requester
    REQUEST_REJECTED   -> the requester

DELIVERY BOOKKEEPING:
    1. A row is written as 'pending' BEFORE the send is attempted
    2. Success -> 'sent' + sent_at
    3. Failure -> retry_count / next_retry_at / delivery_error updated and
       the send retried up to BUDGET_EMAIL_MAX_ATTEMPTS times
    4. Last attempt failed -> 'failed'
    With no transport configured the row stays 'pending'.

Email failures are recorded on the row and never raised to the caller.

============================================================================
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage as MimeMessage
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
import smtplib

from app.database.models import BudgetRequestNotification
from app.database.session import Database
from services.budget_request_config import BudgetServiceConfig
from services.budget_request_models import DeliveryStatus, NotificationType
from services.side_effect_dispatcher import SideEffectIntent

logger = logging.getLogger(__name__)


# =============================================================================
# Transports
# =============================================================================

@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: str


class EmailTransport:
    """Sends one message. Raises on failure."""

    async def send(self, message: EmailMessage) -> None:
        raise NotImplementedError


class SmtpEmailTransport(EmailTransport):
    """smtplib in a worker thread; STARTTLS and login when a user is set."""

    def __init__(self, config: BudgetServiceConfig, timeout_seconds: float = 10.0) -> None:
        self.host = config.smtp_host
        self.port = config.smtp_port
        self.user = config.smtp_user
        self.password = config.smtp_password
        self.sender = config.sender_address
        self.timeout_seconds = timeout_seconds

    def _send_sync(self, message: EmailMessage) -> None:
        mime = MimeMessage()
        mime["From"] = self.sender
        mime["To"] = message.to
        mime["Subject"] = message.subject
        mime.set_content(message.text)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
            if self.user:
                smtp.starttls()
                smtp.login(self.user, self.password or "")
            smtp.send_message(mime)

    async def send(self, message: EmailMessage) -> None:
        await asyncio.to_thread(self._send_sync, message)


def create_email_transport(config: BudgetServiceConfig) -> Optional[EmailTransport]:
    if not config.smtp_host:
        logger.info("[BR-NOTIFY] SMTP not configured, notifications will stay pending")
        return None
    return SmtpEmailTransport(config)


# =============================================================================
# Templates
# =============================================================================

def request_link(frontend_url: str, request_id: Any) -> str:
    return f"{frontend_url.rstrip('/')}/budget-requests/{request_id}"


def _label(request: Dict[str, Any]) -> str:
    return request.get("request_code") or f"#{request.get('id')}"


def render_submitted(request: Dict[str, Any], frontend_url: str) -> EmailMessage:
    subject = f"New budget request {_label(request)} awaiting review"
    text = (
        f"A budget request has been submitted for review.\n\n"
        f"Request: {_label(request)}\n"
        f"Department: {request.get('department')}\n"
        f"Requested by: {request.get('created_by_name') or request.get('created_by')}\n"
        f"Amount requested: {request.get('amount_requested')}\n"
        f"Purpose: {request.get('purpose')}\n\n"
        f"Review it here: {request_link(frontend_url, request.get('id'))}\n"
    )
    return EmailMessage(to="", subject=subject, text=text)


def render_approved(request: Dict[str, Any], frontend_url: str) -> EmailMessage:
    subject = f"Budget request {_label(request)} approved"
    text = (
        f"Your budget request {_label(request)} has been approved.\n\n"
        f"Amount requested: {request.get('amount_requested')}\n"
        f"Amount reserved: {request.get('reserved_amount')}\n"
        f"Reservation expires: {request.get('reservation_expiry')}\n"
        f"Review notes: {request.get('review_notes') or '-'}\n\n"
        f"Details: {request_link(frontend_url, request.get('id'))}\n"
    )
    return EmailMessage(to="", subject=subject, text=text)


def render_rejected(request: Dict[str, Any], frontend_url: str) -> EmailMessage:
    subject = f"Budget request {_label(request)} rejected"
    text = (
        f"Your budget request {_label(request)} has been rejected.\n\n"
        f"Reason: {request.get('rejection_reason') or request.get('review_notes')}\n"
        f"Review notes: {request.get('review_notes') or '-'}\n\n"
        f"Details: {request_link(frontend_url, request.get('id'))}\n"
    )
    return EmailMessage(to="", subject=subject, text=text)


# =============================================================================
# NotificationService
# =============================================================================

class NotificationService:
    """Email notifications with per-recipient delivery rows."""

    def __init__(
        self,
        database: Database,
        config: BudgetServiceConfig,
        transport: Optional[EmailTransport] = None,
        retry_base_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.database = database
        self.config = config
        self.transport = transport
        self.retry_base_seconds = (
            config.side_effect_retry_base_seconds
            if retry_base_seconds is None else retry_base_seconds
        )
        self._sleep = sleep

    async def notify_admins_new_request(self, request: Dict[str, Any]) -> List[str]:
        """Returns the final delivery status per admin recipient."""
        if not self.config.admin_recipients:
            logger.warning(
                f"[BR-NOTIFY] No admin recipients configured | request_id={request.get('id')}"
            )
            return []

        template = render_submitted(request, self.config.frontend_url)
        statuses = []
        for name, email in self.config.admin_recipients:
            statuses.append(
                await self._deliver(
                    request["id"],
                    NotificationType.REQUEST_SUBMITTED,
                    recipient_id=None,
                    recipient_email=email,
                    recipient_name=name,
                    template=template,
                )
            )
        return statuses

    async def notify_request_approved(self, request: Dict[str, Any]) -> Optional[str]:
        return await self._notify_requester(
            request,
            NotificationType.REQUEST_APPROVED,
            render_approved(request, self.config.frontend_url),
        )

    async def notify_request_rejected(self, request: Dict[str, Any]) -> Optional[str]:
        return await self._notify_requester(
            request,
            NotificationType.REQUEST_REJECTED,
            render_rejected(request, self.config.frontend_url),
        )

    async def _notify_requester(
        self,
        request: Dict[str, Any],
        notification_type: NotificationType,
        template: EmailMessage,
    ) -> Optional[str]:
        email = request.get("created_by_email")
        if not email:
            logger.warning(
                f"[BR-NOTIFY] Requester has no email, notification skipped | "
                f"request_id={request.get('id')} | type={notification_type.value}"
            )
            return None
        return await self._deliver(
            request["id"],
            notification_type,
            recipient_id=request.get("created_by"),
            recipient_email=email,
            recipient_name=request.get("created_by_name"),
            template=template,
        )

    async def _deliver(
        self,
        request_id: int,
        notification_type: NotificationType,
        recipient_id: Optional[str],
        recipient_email: str,
        recipient_name: Optional[str],
        template: EmailMessage,
    ) -> str:
        async with self.database.session() as session:
            row = BudgetRequestNotification(
                budget_request_id=request_id,
                notification_type=notification_type.value,
                recipient_id=recipient_id,
                recipient_email=recipient_email,
                recipient_name=recipient_name,
                subject=template.subject,
                message=template.text,
                delivery_status=DeliveryStatus.PENDING.value,
                retry_count=0,
                created_at=datetime.now(timezone.utc),
            )
            session.add(row)
            await session.flush()
            notification_id = row.id

        if self.transport is None:
            logger.info(
                f"[BR-NOTIFY] No email transport, notification left pending | "
                f"notification_id={notification_id} | type={notification_type.value}"
            )
            return DeliveryStatus.PENDING.value

        message = EmailMessage(to=recipient_email, subject=template.subject, text=template.text)
        max_attempts = max(1, self.config.email_max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                await self.transport.send(message)
            except Exception as e:
                final = attempt >= max_attempts
                backoff = self.retry_base_seconds * (2 ** (attempt - 1))
                await self._update(
                    notification_id,
                    retry_count=attempt,
                    delivery_error=str(e),
                    next_retry_at=None if final else (
                        datetime.now(timezone.utc) + timedelta(seconds=backoff)
                    ),
                    delivery_status=(
                        DeliveryStatus.FAILED.value if final else DeliveryStatus.PENDING.value
                    ),
                )
                logger.warning(
                    f"[BR-NOTIFY] Email send failed | notification_id={notification_id} | "
                    f"attempt={attempt}/{max_attempts} | error={e}"
                )
                if final:
                    return DeliveryStatus.FAILED.value
                await self._sleep(backoff)
                continue

            await self._update(
                notification_id,
                delivery_status=DeliveryStatus.SENT.value,
                sent_at=datetime.now(timezone.utc),
                next_retry_at=None,
            )
            logger.info(
                f"[BR-NOTIFY] Email sent | notification_id={notification_id} | "
                f"type={notification_type.value} | request_id={request_id}"
            )
            return DeliveryStatus.SENT.value

        return DeliveryStatus.FAILED.value

    async def _update(self, notification_id: int, **values: Any) -> None:
        async with self.database.session() as session:
            row = await session.get(BudgetRequestNotification, notification_id)
            if row is None:
                return
            for key, value in values.items():
                setattr(row, key, value)

    async def handle(self, intent: SideEffectIntent) -> None:
        """Dispatcher handler for EMAIL intents."""
        notification_type = NotificationType(intent.payload["type"])
        request = intent.payload["request"]
        if notification_type == NotificationType.REQUEST_SUBMITTED:
            await self.notify_admins_new_request(request)
        elif notification_type == NotificationType.REQUEST_APPROVED:
            await self.notify_request_approved(request)
        else:
            await self.notify_request_rejected(request)


__all__ = [
    "EmailMessage",
    "EmailTransport",
    "SmtpEmailTransport",
    "create_email_transport",
    "request_link",
    "NotificationService",
]
