"""
============================================================================
Budget Request Service - Audit Logger
============================================================================

Side Effects: HTTP POST to the external audit-log service

PAYLOAD:
    {service, action, userId, username, userRole, resourceType,
     resourceId, details, timestamp}

    POST {AUDIT_LOGS_API_URL}/api/audit-logs with x-api-key header.
    When no audit URL is configured the record is logged locally and
    skipped.

ERROR CODES:
    - BRQ-060: Failures raise DownstreamDeliveryFailed(channel="audit") so
               the dispatcher can retry; they never reach the caller.

============================================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json
import logging

import httpx

from services.budget_request_errors import DownstreamDeliveryFailed
from services.budget_request_models import ActorContext, BudgetJSONEncoder
from services.side_effect_dispatcher import SideEffectIntent

logger = logging.getLogger(__name__)

SERVICE_NAME = "budget-request-microservice"
RESOURCE_TYPE = "BudgetRequest"
AUDIT_PATH = "/api/audit-logs"


def build_audit_payload(
    action: str,
    details: Dict[str, Any],
    actor: ActorContext,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "service": SERVICE_NAME,
        "action": action,
        "userId": actor.user_id,
        "username": actor.username,
        "userRole": actor.role,
        "resourceType": RESOURCE_TYPE,
        "resourceId": details.get("id", details.get("budget_request_id")),
        "details": details,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }


class AuditLogger:
    """Posts audit records to the external audit-log service."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def log(
        self,
        action: str,
        details: Dict[str, Any],
        actor: ActorContext,
        timestamp: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Deliver one audit record.

        Returns False when skipped (no URL configured), True when delivered.

        Raises:
            DownstreamDeliveryFailed: transport error or non-2xx response
        """
        payload = build_audit_payload(action, details, actor, timestamp)

        if not self.base_url:
            logger.debug(
                f"[BR-AUDIT] Audit service not configured, skipped | action={action} | "
                f"resource_id={payload['resourceId']} | correlation_id={correlation_id}"
            )
            return False

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        body = json.dumps(payload, cls=BudgetJSONEncoder)
        url = f"{self.base_url}{AUDIT_PATH}"

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, content=body, headers=headers, timeout=self.timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise DownstreamDeliveryFailed("audit", f"Audit request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise DownstreamDeliveryFailed(
                "audit", f"Audit service returned HTTP {response.status_code}"
            )

        logger.info(
            f"[BR-AUDIT] Audit record delivered | action={action} | "
            f"resource_id={payload['resourceId']} | correlation_id={correlation_id}"
        )
        return True

    async def handle(self, intent: SideEffectIntent) -> None:
        """Dispatcher handler for AUDIT intents."""
        payload = intent.payload
        await self.log(
            payload["action"],
            payload.get("details") or {},
            ActorContext(**payload["actor"]),
            timestamp=payload.get("timestamp"),
            correlation_id=intent.correlation_id,
        )


__all__ = [
    "SERVICE_NAME",
    "RESOURCE_TYPE",
    "build_audit_payload",
    "AuditLogger",
]
