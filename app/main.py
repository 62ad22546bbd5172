"""
============================================================================
Budget Request Service - FastAPI Application Entry Point
============================================================================

Input Constraints: Requests arrive through the API gateway (JWT verified
                   upstream, identity forwarded in X-User-* headers)
Side Effects: Database, cache, background side-effect dispatcher

LIFECYCLE:
    No module-level engine or client. create_app() wires a ServiceContainer
    which the lifespan starts (connect DB, create tables, connect cache,
    start dispatcher) and stops in reverse order.

ERROR MAPPING:
    ValidationFailed     BRQ-010 -> 400
    NotFound             BRQ-020 -> 404
    InvalidTransition    BRQ-030 -> 409
    Forbidden            BRQ-040 -> 403
    BudgetUnavailable    BRQ-050 -> 503
    anything else                -> 500

============================================================================
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
import asyncio
import logging
import os

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import httpx

from app.api.budget_requests import router as budget_requests_router
from app.database.session import Database
from services.audit_logger import AuditLogger
from services.budget_analytics import BudgetAnalytics
from services.budget_cache_mirror import BudgetCacheMirror
from services.budget_request_config import BudgetServiceConfig, get_budget_config
from services.budget_request_errors import (
    BudgetRequestError,
    BudgetUnavailable,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from services.budget_request_lifecycle import BudgetRequestLifecycle
from services.finance_client import FinanceClient
from services.notification_service import (
    EmailTransport,
    NotificationService,
    create_email_transport,
)
from services.request_store import RequestStore
from services.response_cache import CacheBackend, ResponseCache, create_cache_backend
from services.side_effect_dispatcher import (
    SideEffectDispatcher,
    SideEffectKind,
    SideEffectOutbox,
)
from services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
HTTP_MAX_CONNECTIONS = 50

ERROR_STATUS_CODES = {
    ValidationFailed: 400,
    NotFound: 404,
    InvalidTransition: 409,
    Forbidden: 403,
    BudgetUnavailable: 503,
}


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def status_code_for(exc: BudgetRequestError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


# ============================================================================
# SERVICE CONTAINER
# ============================================================================

@dataclass
class ServiceContainer:
    """Every collaborator the API needs, wired once per application."""

    config: BudgetServiceConfig
    database: Database
    cache: ResponseCache
    finance_client: FinanceClient
    mirror: BudgetCacheMirror
    store: RequestStore
    outbox: SideEffectOutbox
    dispatcher: SideEffectDispatcher
    audit_logger: AuditLogger
    webhooks: WebhookDispatcher
    notifications: NotificationService
    analytics: BudgetAnalytics
    lifecycle: BudgetRequestLifecycle
    http_client: httpx.AsyncClient
    owns_http_client: bool = False

    @classmethod
    def build(
        cls,
        config: BudgetServiceConfig,
        database: Optional[Database] = None,
        cache_backend: Optional[CacheBackend] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        email_transport: Optional[EmailTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "ServiceContainer":
        """
        Wire the service graph.

        http_client is shared by the Finance, audit and webhook clients;
        tests pass one built on httpx.MockTransport. When none is given the
        container opens one pooled client and closes it in stop().
        """
        owns_http_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(
                timeout=config.finance_timeout_seconds,
                limits=httpx.Limits(max_connections=HTTP_MAX_CONNECTIONS),
            )

        database = database or Database(config.database_url)
        cache = ResponseCache(cache_backend or create_cache_backend(config.redis_url))

        finance_client = FinanceClient(
            config.finance_api_url,
            api_key=config.finance_api_key,
            timeout_seconds=config.finance_timeout_seconds,
            client=http_client,
        )
        mirror = BudgetCacheMirror(database, finance_client, cache, config)
        store = RequestStore(database, cache, mirror, config)

        audit_logger = AuditLogger(
            config.audit_logs_api_url,
            api_key=config.audit_api_key,
            timeout_seconds=config.finance_timeout_seconds,
            client=http_client,
        )
        webhooks = WebhookDispatcher(
            database, timeout_seconds=config.webhook_timeout_seconds, client=http_client
        )
        notifications = NotificationService(
            database,
            config,
            transport=email_transport if email_transport is not None else create_email_transport(config),
            sleep=sleep,
        )

        outbox = SideEffectOutbox()
        dispatcher = SideEffectDispatcher(
            outbox,
            handlers={
                SideEffectKind.AUDIT: audit_logger.handle,
                SideEffectKind.WEBHOOK: webhooks.handle,
                SideEffectKind.EMAIL: notifications.handle,
                SideEffectKind.FINANCE_RESERVATION: finance_client.handle_reservation,
            },
            max_attempts={
                SideEffectKind.AUDIT: config.side_effect_max_attempts,
                SideEffectKind.FINANCE_RESERVATION: config.side_effect_max_attempts,
            },
            retry_base_seconds=config.side_effect_retry_base_seconds,
            sleep=sleep,
        )

        analytics = BudgetAnalytics(database, cache, config)
        lifecycle = BudgetRequestLifecycle(database, store, cache, outbox, config)

        return cls(
            config=config,
            database=database,
            cache=cache,
            finance_client=finance_client,
            mirror=mirror,
            store=store,
            outbox=outbox,
            dispatcher=dispatcher,
            audit_logger=audit_logger,
            webhooks=webhooks,
            notifications=notifications,
            analytics=analytics,
            lifecycle=lifecycle,
            http_client=http_client,
            owns_http_client=owns_http_client,
        )

    async def start(self, run_dispatcher: bool = True) -> None:
        await self.database.connect()
        await self.database.create_all()
        await self.cache.connect()
        if run_dispatcher:
            await self.dispatcher.start()
        logger.info(f"[BR-APP] Services started | config={self.config.to_dict()}")

    async def stop(self) -> None:
        await self.dispatcher.stop()
        if self.owns_http_client:
            await self.http_client.aclose()
        await self.cache.close()
        await self.database.disconnect()
        logger.info("[BR-APP] Services stopped")


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    config: Optional[BudgetServiceConfig] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Configuration is resolved at startup, not import, so importing this
    module never requires a complete environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container = services or ServiceContainer.build(config or get_budget_config())
        await container.start()
        app.state.services = container
        logger.info(f"[BR-APP] Budget request service online | started_at={datetime.now(timezone.utc).isoformat()}")
        try:
            yield
        finally:
            await container.stop()

    app = FastAPI(
        title="Budget Request Service",
        description=(
            "Department budget requests: create, submit, Finance approval with "
            "buffered reservations against a mirrored department budget."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.exception_handler(BudgetRequestError)
    async def budget_request_error_handler(request: Request, exc: BudgetRequestError):
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            f"[{exc.error_code}] {exc.message} | method={request.method} | "
            f"path={request.url.path} | status={status_code}"
        )
        return JSONResponse(
            status_code=status_code,
            content={
                "success": False,
                "error_code": exc.error_code,
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_code = "SYS-500"
        logger.exception(f"[{error_code}] Unhandled exception | path={request.url.path} | error={exc}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error_code": error_code,
                "message": "Internal server error. This incident has been logged.",
                "details": {"timestamp": datetime.now(timezone.utc).isoformat()},
            },
        )

    app.include_router(budget_requests_router)

    @app.get("/health", summary="Health Check", tags=["System"])
    async def health_check(request: Request):
        try:
            await request.app.state.services.database.check_connection()
            return {"status": "healthy", "database": "connected"}
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": "disconnected", "error": str(e)},
            )

    @app.get("/metrics", summary="Prometheus Metrics", tags=["Observability"])
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


configure_logging()
app = create_app()


__all__ = [
    "ServiceContainer",
    "create_app",
    "configure_logging",
    "status_code_for",
    "app",
]
