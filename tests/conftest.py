"""
Shared fixtures for the budget request service tests.

The database is SQLite in memory (aiosqlite). Finance, the audit-log
service and webhook subscribers are all served by one httpx.MockTransport
backed by FakeExternalSystems; email goes to an in-memory transport.
"""

import json
import os
import sys
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.main import ServiceContainer
from services.budget_request_config import BudgetServiceConfig
from services.budget_request_models import ActorContext
from services.notification_service import EmailMessage, EmailTransport
from services.response_cache import InMemoryCacheBackend


FINANCE_URL = "http://finance.test"
AUDIT_URL = "http://audit.test"
FRONTEND_URL = "http://frontend.test"
ADMIN_EMAIL = "finance.admin@example.com"


# =============================================================================
# Fakes
# =============================================================================

class FakeExternalSystems:
    """Finance, audit and webhook endpoints behind one MockTransport."""

    def __init__(self) -> None:
        self.budgets: Dict[str, dict] = {}
        self.finance_available = True
        self.reserve_status = 200
        self.audit_status = 201
        self.webhook_status: Dict[str, int] = {}
        self.requests: List[httpx.Request] = []
        self.reservations: List[dict] = []
        self.audit_records: List[dict] = []
        self.webhook_deliveries: List[httpx.Request] = []

    def set_budget(
        self,
        department: str,
        remaining: str,
        allocated: Optional[str] = None,
        budget_id: int = 101,
    ) -> None:
        allocated = allocated or remaining
        used = str(Decimal(allocated) - Decimal(remaining))
        self.budgets[department] = {
            "id": budget_id,
            "allocatedAmount": allocated,
            "usedAmount": used,
            "reservedAmount": "0",
            "remainingAmount": remaining,
            "periodStart": "2026-01-01T00:00:00Z",
            "periodEnd": "2026-12-31T23:59:59Z",
        }

    def finance_calls(self) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.host == "finance.test" and r.url.path.startswith("/api/budgets/")
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host == "finance.test":
            if request.url.path.startswith("/api/budgets/department/"):
                if not self.finance_available:
                    return httpx.Response(503, json={"error": "unavailable"})
                department = request.url.path.rsplit("/", 1)[-1]
                budget = self.budgets.get(department)
                if budget is None:
                    return httpx.Response(404, json={"error": "not found"})
                return httpx.Response(200, json={"data": budget})
            if request.url.path == "/api/integration/budgets/reserve":
                self.reservations.append(json.loads(request.content))
                return httpx.Response(self.reserve_status, json={"success": True})
            return httpx.Response(404)

        if host == "audit.test":
            self.audit_records.append(json.loads(request.content))
            return httpx.Response(self.audit_status, json={"success": True})

        self.webhook_deliveries.append(request)
        status = self.webhook_status.get(str(request.url), 200)
        if status == 0:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status)


class InMemoryEmailTransport(EmailTransport):
    """Collects sent messages; fails the first `fail_times` sends."""

    def __init__(self, fail_times: int = 0) -> None:
        self.sent: List[EmailMessage] = []
        self.fail_times = fail_times
        self.attempts = 0

    async def send(self, message: EmailMessage) -> None:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("SMTP unavailable")
        self.sent.append(message)


# =============================================================================
# Configuration and collaborators
# =============================================================================

def make_config(**overrides) -> BudgetServiceConfig:
    values = dict(
        database_url="sqlite+aiosqlite://",
        finance_api_url=FINANCE_URL,
        finance_api_key="finance-test-key",
        audit_logs_api_url=AUDIT_URL,
        audit_api_key="audit-test-key",
        frontend_url=FRONTEND_URL,
        side_effect_retry_base_seconds=0.0,
        admin_recipients=[("Finance Admin", ADMIN_EMAIL)],
    )
    values.update(overrides)
    return BudgetServiceConfig(**values)


@pytest.fixture
def config() -> BudgetServiceConfig:
    return make_config()


@pytest.fixture
def external() -> FakeExternalSystems:
    systems = FakeExternalSystems()
    systems.set_budget("operations", remaining="8000", allocated="50000")
    systems.set_budget("hr", remaining="100000", budget_id=202)
    systems.set_budget("finance", remaining="500000", budget_id=303)
    systems.set_budget("inventory", remaining="250000", budget_id=404)
    return systems


@pytest.fixture
async def http_client(external):
    client = httpx.AsyncClient(transport=httpx.MockTransport(external.handler))
    yield client
    await client.aclose()


@pytest.fixture
def email_transport() -> InMemoryEmailTransport:
    return InMemoryEmailTransport()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def no_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
async def services(config, http_client, email_transport, no_sleep):
    """
    Fully wired container with the dispatcher NOT running; tests call
    services.dispatcher.drain() to deliver queued side effects inline.
    """
    container = ServiceContainer.build(
        config,
        cache_backend=InMemoryCacheBackend(),
        http_client=http_client,
        email_transport=email_transport,
        sleep=no_sleep,
    )
    await container.start(run_dispatcher=False)
    yield container
    await container.stop()


# =============================================================================
# Actors
# =============================================================================

@pytest.fixture
def operations_staff() -> ActorContext:
    return ActorContext(
        user_id="u-ops-1",
        username="Olivia Ops",
        role="Operations Staff",
        department="operations",
        email="olivia@example.com",
    )


@pytest.fixture
def operations_colleague() -> ActorContext:
    return ActorContext(
        user_id="u-ops-2",
        username="Oscar Ops",
        role="Operations Staff",
        department="operations",
        email="oscar@example.com",
    )


@pytest.fixture
def operations_admin() -> ActorContext:
    return ActorContext(
        user_id="u-ops-admin",
        username="Omar Admin",
        role="Operations Admin",
        department="operations",
        email="omar@example.com",
    )


@pytest.fixture
def finance_admin() -> ActorContext:
    return ActorContext(
        user_id="u-fin-admin",
        username="Fiona Finance",
        role="Finance Admin",
        department="finance",
        email=ADMIN_EMAIL,
    )


@pytest.fixture
def finance_staff() -> ActorContext:
    return ActorContext(
        user_id="u-fin-1",
        username="Felix Finance",
        role="Finance Staff",
        department="finance",
        email="felix@example.com",
    )


@pytest.fixture
def hr_staff() -> ActorContext:
    return ActorContext(
        user_id="u-hr-1",
        username="Hana HR",
        role="HR Staff",
        department="hr",
        email="hana@example.com",
    )


@pytest.fixture
def super_admin() -> ActorContext:
    return ActorContext(
        user_id="u-root",
        username="Root",
        role="SuperAdmin",
        department="operations",
        email="root@example.com",
    )


def request_payload(**overrides) -> dict:
    """A valid camelCase create payload for operations."""
    payload = {
        "department": "operations",
        "amountRequested": "10000",
        "purpose": "Replace warehouse forklift batteries",
        "justification": "Current batteries fail mid-shift",
        "category": "operational",
        "priority": "high",
        "fiscalYear": 2026,
        "fiscalPeriod": "Q2",
        "items": [
            {
                "itemName": "Forklift battery",
                "quantity": 4,
                "unitCost": "2500",
                "supplierName": "PowerCo",
            }
        ],
    }
    payload.update(overrides)
    return payload
