"""
============================================================================
Budget Request Service - Finance System Client
============================================================================

Decimal Integrity: Amounts parsed via Decimal(str(value)), never float math
Side Effects: HTTP calls to the external Finance system

ENDPOINTS CONSUMED:
    GET  {FINANCE_API_URL}/api/budgets/department/{department}
         ?fiscalYear=..&fiscalPeriod=..
         -> {data: {id, allocatedAmount, usedAmount, reservedAmount,
                    remainingAmount, periodStart, periodEnd}}
    POST {FINANCE_API_URL}/api/integration/budgets/reserve
         {budgetRequestId, department, fiscalYear, fiscalPeriod, amount,
          requestCode, expiresAt, idempotencyKey}
         header Idempotency-Key: same key

AUTH:
    x-api-key header on every call.

ERROR CODES:
    - BRQ-060: Any transport error, timeout, non-2xx or malformed body
               surfaces as DownstreamDeliveryFailed(channel="finance")

============================================================================
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
import hashlib
import logging

import httpx

from services.budget_request_errors import DownstreamDeliveryFailed
from services.side_effect_dispatcher import SideEffectIntent

logger = logging.getLogger(__name__)

BUDGET_PATH = "/api/budgets/department/{department}"
RESERVE_PATH = "/api/integration/budgets/reserve"


# =============================================================================
# Idempotency
# =============================================================================

def generate_idempotency_key(entity_type: str, action: str, entity_id: Any) -> str:
    """
    Deterministic idempotency key for (entity_type, action, entity_id).

    The same triple always yields the same key, so the Finance system can
    deduplicate re-deliveries of one reservation notice.
    """
    material = f"{entity_type}:{action}:{entity_id}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class FinanceBudgetSnapshot:
    """Department budget as reported by the Finance system."""

    budget_id: int
    allocated_amount: Decimal
    used_amount: Decimal
    reserved_amount: Decimal
    remaining_amount: Decimal
    period_start: Optional[datetime]
    period_end: Optional[datetime]


@dataclass(frozen=True)
class ReservationNotice:
    budget_request_id: int
    department: str
    fiscal_year: int
    fiscal_period: str
    amount: Decimal
    request_code: Optional[str]
    expires_at: Optional[datetime]
    idempotency_key: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "budgetRequestId": self.budget_request_id,
            "department": self.department,
            "fiscalYear": self.fiscal_year,
            "fiscalPeriod": self.fiscal_period,
            "amount": str(self.amount),
            "requestCode": self.request_code,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "idempotencyKey": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReservationNotice":
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            budget_request_id=int(data["budget_request_id"]),
            department=data["department"],
            fiscal_year=int(data["fiscal_year"]),
            fiscal_period=data["fiscal_period"],
            amount=Decimal(str(data["amount"])),
            request_code=data.get("request_code"),
            expires_at=expires_at,
            idempotency_key=data["idempotency_key"],
        )


# =============================================================================
# Parsing Helpers
# =============================================================================

def _parse_amount(data: Dict[str, Any], key: str) -> Decimal:
    value = data.get(key)
    if value is None or isinstance(value, bool):
        raise ValueError(f"missing {key}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"invalid {key}: {value!r}")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_budget_snapshot(body: Any) -> FinanceBudgetSnapshot:
    """
    Parse a Finance budget response. Accepts the enveloped {data: {...}}
    shape and the bare object.

    Raises:
        ValueError: If the body is malformed
    """
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        body = body["data"]
    if not isinstance(body, dict):
        raise ValueError("budget response is not an object")
    if body.get("id") is None:
        raise ValueError("missing id")

    return FinanceBudgetSnapshot(
        budget_id=int(body["id"]),
        allocated_amount=_parse_amount(body, "allocatedAmount"),
        used_amount=_parse_amount(body, "usedAmount"),
        reserved_amount=_parse_amount(body, "reservedAmount"),
        remaining_amount=_parse_amount(body, "remainingAmount"),
        period_start=_parse_datetime(body.get("periodStart")),
        period_end=_parse_datetime(body.get("periodEnd")),
    )


# =============================================================================
# FinanceClient
# =============================================================================

class FinanceClient:
    """
    httpx client for the Finance system.

    A shared httpx.AsyncClient may be injected (tests pass one built on
    httpx.MockTransport); otherwise each call opens a short-lived client.
    """

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

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self.base_url:
            raise DownstreamDeliveryFailed("finance", "FINANCE_API_URL is not configured")

        url = f"{self.base_url}{path}"
        headers = self._headers()
        headers.update(kwargs.pop("headers", {}))

        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, headers=headers, timeout=self.timeout_seconds, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise DownstreamDeliveryFailed(
                "finance", f"Finance request failed: {type(e).__name__}: {e}"
            ) from e

        if response.status_code < 200 or response.status_code >= 300:
            raise DownstreamDeliveryFailed(
                "finance",
                f"Finance returned HTTP {response.status_code}: {response.text[:200]}",
            )
        return response

    async def get_department_budget(
        self,
        department: str,
        fiscal_year: int,
        fiscal_period: str,
    ) -> FinanceBudgetSnapshot:
        """
        Fetch the live department budget.

        Raises:
            DownstreamDeliveryFailed: On any failure, including a malformed body
        """
        response = await self._request(
            "GET",
            BUDGET_PATH.format(department=department),
            params={"fiscalYear": fiscal_year, "fiscalPeriod": fiscal_period},
        )
        try:
            snapshot = parse_budget_snapshot(response.json())
        except ValueError as e:
            raise DownstreamDeliveryFailed(
                "finance", f"Malformed Finance budget response: {e}"
            ) from e

        logger.info(
            f"[BR-FINANCE] Budget retrieved | department={department} | "
            f"fiscal_year={fiscal_year} | fiscal_period={fiscal_period} | "
            f"remaining={snapshot.remaining_amount}"
        )
        return snapshot

    async def notify_reservation(self, notice: ReservationNotice) -> None:
        """
        POST a reservation notice. Fire-and-forget from the engine's point
        of view; the dispatcher retries this call on failure.
        """
        await self._request(
            "POST",
            RESERVE_PATH,
            json=notice.to_payload(),
            headers={"Idempotency-Key": notice.idempotency_key},
        )
        logger.info(
            f"[BR-FINANCE] Reservation notified | "
            f"budget_request_id={notice.budget_request_id} | "
            f"amount={notice.amount} | idempotency_key={notice.idempotency_key[:12]}"
        )

    async def handle_reservation(self, intent: SideEffectIntent) -> None:
        """Dispatcher handler for FINANCE_RESERVATION intents."""
        await self.notify_reservation(ReservationNotice.from_dict(intent.payload))


__all__ = [
    "generate_idempotency_key",
    "FinanceBudgetSnapshot",
    "ReservationNotice",
    "parse_budget_snapshot",
    "FinanceClient",
]
