"""
============================================================================
Budget Request Service - Webhook Dispatcher
============================================================================

Side Effects: Concurrent HTTP POSTs to subscriber URLs

SUBSCRIPTIONS:
    system_config row "webhook_subscriptions_<event>" holds a JSON list of
    {"url": ..., "secret": ...}. secret is optional.

DELIVERY:
    - Payload {event, timestamp, data} is serialized ONCE; the same bytes
      are signed and sent to every subscriber
    - Headers: Content-Type, X-Webhook-Event, and X-Webhook-Signature
      (hex HMAC-SHA256 of the body) when the subscriber has a secret
    - All subscribers in parallel (asyncio.gather, return_exceptions=True)
    - One subscriber failing never affects another; failures are logged,
      not retried

============================================================================
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import json
import logging

import httpx
from sqlalchemy import select

from app.auth.security import EVENT_HEADER, SIGNATURE_HEADER, compute_hmac_signature
from app.database.models import SystemConfig
from app.database.session import Database
from services.budget_request_models import BudgetJSONEncoder
from services.side_effect_dispatcher import SideEffectIntent

logger = logging.getLogger(__name__)

SUBSCRIPTION_KEY_PREFIX = "webhook_subscriptions_"


def subscription_key(event: str) -> str:
    return f"{SUBSCRIPTION_KEY_PREFIX}{event}"


@dataclass(frozen=True)
class WebhookSubscription:
    url: str
    secret: Optional[str] = None


@dataclass(frozen=True)
class WebhookResult:
    url: str
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def parse_subscriptions(raw: Optional[str]) -> List[WebhookSubscription]:
    """Parse a system_config value; malformed entries are skipped."""
    if not raw:
        return []
    try:
        entries = json.loads(raw)
    except ValueError:
        logger.warning("[BR-WEBHOOK] Subscription config is not valid JSON")
        return []
    if not isinstance(entries, list):
        return []

    subscriptions = []
    for entry in entries:
        if isinstance(entry, dict) and isinstance(entry.get("url"), str) and entry["url"]:
            secret = entry.get("secret")
            subscriptions.append(
                WebhookSubscription(url=entry["url"], secret=secret if secret else None)
            )
    return subscriptions


def serialize_webhook_body(event: str, data: Dict[str, Any], timestamp: Optional[str] = None) -> bytes:
    payload = {
        "event": event,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    return json.dumps(payload, cls=BudgetJSONEncoder, separators=(",", ":")).encode("utf-8")


class WebhookDispatcher:
    """Fan-out of lifecycle events to configured subscribers."""

    def __init__(
        self,
        database: Database,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.database = database
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def get_subscriptions(self, event: str) -> List[WebhookSubscription]:
        try:
            async with self.database.session() as session:
                raw = await session.scalar(
                    select(SystemConfig.value).where(SystemConfig.key == subscription_key(event))
                )
        except Exception as e:
            logger.error(f"[BR-WEBHOOK] Failed to load subscriptions | event={event} | error={e}")
            return []
        return parse_subscriptions(raw)

    async def set_subscriptions(self, event: str, subscriptions: List[WebhookSubscription]) -> None:
        value = json.dumps(
            [{"url": s.url, "secret": s.secret} if s.secret else {"url": s.url} for s in subscriptions]
        )
        async with self.database.session() as session:
            existing = await session.get(SystemConfig, subscription_key(event))
            if existing is None:
                session.add(SystemConfig(key=subscription_key(event), value=value))
            else:
                existing.value = value

    async def dispatch(
        self,
        event: str,
        data: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> List[WebhookResult]:
        """Deliver one event to every subscriber. Never raises."""
        subscriptions = await self.get_subscriptions(event)
        if not subscriptions:
            return []

        body = serialize_webhook_body(event, data)
        outcomes = await asyncio.gather(
            *(self._send(sub, event, body) for sub in subscriptions),
            return_exceptions=True,
        )

        results: List[WebhookResult] = []
        for sub, outcome in zip(subscriptions, outcomes):
            if isinstance(outcome, BaseException):
                outcome = WebhookResult(url=sub.url, delivered=False, error=str(outcome))
            results.append(outcome)
            if outcome.delivered:
                logger.info(
                    f"[BR-WEBHOOK] Delivered | event={event} | url={sub.url} | "
                    f"correlation_id={correlation_id}"
                )
            else:
                logger.warning(
                    f"[BR-WEBHOOK] Delivery failed | event={event} | url={sub.url} | "
                    f"status={outcome.status_code} | error={outcome.error} | "
                    f"correlation_id={correlation_id}"
                )
        return results

    async def _send(self, sub: WebhookSubscription, event: str, body: bytes) -> WebhookResult:
        headers = {"Content-Type": "application/json", EVENT_HEADER: event}
        if sub.secret:
            headers[SIGNATURE_HEADER] = compute_hmac_signature(body, sub.secret)

        try:
            if self._client is not None:
                response = await self._client.post(
                    sub.url, content=body, headers=headers, timeout=self.timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(sub.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            return WebhookResult(url=sub.url, delivered=False, error=f"{type(e).__name__}: {e}")

        delivered = 200 <= response.status_code < 300
        return WebhookResult(
            url=sub.url,
            delivered=delivered,
            status_code=response.status_code,
            error=None if delivered else f"HTTP {response.status_code}",
        )

    async def handle(self, intent: SideEffectIntent) -> None:
        """Dispatcher handler for WEBHOOK intents."""
        await self.dispatch(
            intent.payload["event"],
            intent.payload.get("data") or {},
            correlation_id=intent.correlation_id,
        )


__all__ = [
    "SUBSCRIPTION_KEY_PREFIX",
    "subscription_key",
    "WebhookSubscription",
    "WebhookResult",
    "parse_subscriptions",
    "serialize_webhook_body",
    "WebhookDispatcher",
]
