"""
============================================================================
Budget Request Service - Side-Effect Outbox and Dispatcher
============================================================================

Traceability: Every intent carries the correlation_id of its operation
Side Effects: Audit, webhook, email and Finance reservation deliveries

OUTBOX MODEL:
    The lifecycle engine commits its transaction, then enqueues one
    SideEffectIntent per downstream effect. enqueue() never blocks and never
    raises into the caller. A background worker takes intents off the queue
    and delivers each one in its own task, so a slow webhook never delays
    an audit record.

RETRY POLICY (per kind):
    AUDIT                3 attempts, exponential backoff
    FINANCE_RESERVATION  3 attempts, exponential backoff
    EMAIL                1 attempt (NotificationService retries internally)
    WEBHOOK              1 attempt (fan-out failures are logged, not retried)

    backoff = retry_base_seconds * 2 ** (attempt - 1)

ERROR CODES:
    - BRQ-060: DownstreamDeliveryFailed logged when retries are exhausted.
               It is never raised out of the dispatcher.

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set
import asyncio
import logging
import uuid

from app.observability.metrics import record_side_effect, record_side_effect_failure
from services.budget_request_errors import DownstreamDeliveryFailed

logger = logging.getLogger(__name__)


# =============================================================================
# Intents
# =============================================================================

class SideEffectKind(str, Enum):
    AUDIT = "AUDIT"
    WEBHOOK = "WEBHOOK"
    EMAIL = "EMAIL"
    FINANCE_RESERVATION = "FINANCE_RESERVATION"


DEFAULT_MAX_ATTEMPTS: Dict[SideEffectKind, int] = {
    SideEffectKind.AUDIT: 3,
    SideEffectKind.FINANCE_RESERVATION: 3,
    SideEffectKind.EMAIL: 1,
    SideEffectKind.WEBHOOK: 1,
}


@dataclass
class SideEffectIntent:
    """One downstream effect to deliver after a committed transaction."""

    kind: SideEffectKind
    payload: Dict[str, Any]
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    intent_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[SideEffectIntent], Awaitable[None]]


# =============================================================================
# SideEffectOutbox
# =============================================================================

class SideEffectOutbox:
    """In-process queue of intents awaiting delivery."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "asyncio.Queue[SideEffectIntent]" = asyncio.Queue(maxsize=maxsize)

    def enqueue(self, intent: SideEffectIntent) -> bool:
        """
        Queue an intent. Returns False (and logs) if the queue is full;
        never raises.
        """
        try:
            self._queue.put_nowait(intent)
        except asyncio.QueueFull:
            logger.error(
                f"[BR-OUTBOX] Outbox full, intent dropped | kind={intent.kind.value} | "
                f"intent_id={intent.intent_id} | correlation_id={intent.correlation_id}"
            )
            record_side_effect_failure(intent.kind.value)
            return False
        logger.debug(
            f"[BR-OUTBOX] Intent queued | kind={intent.kind.value} | "
            f"intent_id={intent.intent_id} | correlation_id={intent.correlation_id}"
        )
        return True

    def emit(
        self,
        kind: SideEffectKind,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> bool:
        intent = SideEffectIntent(kind=kind, payload=payload)
        if correlation_id:
            intent.correlation_id = correlation_id
        return self.enqueue(intent)

    async def get(self) -> SideEffectIntent:
        return await self._queue.get()

    def get_nowait(self) -> SideEffectIntent:
        return self._queue.get_nowait()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


# =============================================================================
# SideEffectDispatcher
# =============================================================================

class SideEffectDispatcher:
    """
    Background worker that delivers outbox intents.

    Usage:
        dispatcher = SideEffectDispatcher(outbox, handlers)
        await dispatcher.start()
        ...
        await dispatcher.drain()   # wait for everything queued so far
        await dispatcher.stop()
    """

    def __init__(
        self,
        outbox: SideEffectOutbox,
        handlers: Optional[Dict[SideEffectKind, Handler]] = None,
        max_attempts: Optional[Dict[SideEffectKind, int]] = None,
        retry_base_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.outbox = outbox
        self._handlers: Dict[SideEffectKind, Handler] = dict(handlers or {})
        self._max_attempts: Dict[SideEffectKind, int] = dict(DEFAULT_MAX_ATTEMPTS)
        self._max_attempts.update(max_attempts or {})
        self._retry_base_seconds = retry_base_seconds
        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    def register(self, kind: SideEffectKind, handler: Handler) -> None:
        self._handlers[kind] = handler

    def max_attempts_for(self, kind: SideEffectKind) -> int:
        return max(1, self._max_attempts.get(kind, 1))

    def backoff_seconds(self, attempt: int) -> float:
        return self._retry_base_seconds * (2 ** (attempt - 1))

    async def start(self) -> None:
        if self._running:
            logger.warning("[BR-OUTBOX] Dispatcher already running, ignoring start request")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"[BR-OUTBOX] Dispatcher started | handlers={sorted(k.value for k in self._handlers)}"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        if self.outbox.pending:
            logger.warning(
                f"[BR-OUTBOX] Dispatcher stopped with undelivered intents | "
                f"pending={self.outbox.pending}"
            )
        logger.info("[BR-OUTBOX] Dispatcher stopped")

    async def drain(self) -> None:
        """
        Deliver everything queued so far.

        With the worker running this waits for the queue to empty; without
        it the intents are delivered inline, which is what tests use.
        """
        if self._running:
            await self.outbox.join()
            return
        while not self.outbox.empty():
            intent = self.outbox.get_nowait()
            try:
                await self.deliver(intent)
            finally:
                self.outbox.task_done()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                intent = await self.outbox.get()
            except asyncio.CancelledError:
                break
            task = asyncio.create_task(self.deliver(intent))
            self._inflight.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self.outbox.task_done()

    async def deliver(self, intent: SideEffectIntent) -> bool:
        """
        Deliver one intent with the kind's retry policy.

        Returns True on success, False once retries are exhausted. Never
        raises.
        """
        handler = self._handlers.get(intent.kind)
        if handler is None:
            logger.warning(
                f"[BR-OUTBOX] No handler registered, intent skipped | "
                f"kind={intent.kind.value} | correlation_id={intent.correlation_id}"
            )
            record_side_effect(intent.kind.value, "skipped")
            return False

        max_attempts = self.max_attempts_for(intent.kind)
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            try:
                await handler(intent)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                record_side_effect(intent.kind.value, "error")
                logger.warning(
                    f"[BR-OUTBOX] Delivery attempt failed | kind={intent.kind.value} | "
                    f"attempt={attempt}/{max_attempts} | error={e} | "
                    f"correlation_id={intent.correlation_id}"
                )
                if attempt < max_attempts:
                    await self._sleep(self.backoff_seconds(attempt))
                continue

            record_side_effect(intent.kind.value, "ok")
            logger.debug(
                f"[BR-OUTBOX] Delivered | kind={intent.kind.value} | attempt={attempt} | "
                f"correlation_id={intent.correlation_id}"
            )
            return True

        failure = DownstreamDeliveryFailed(
            intent.kind.value.lower(),
            f"{intent.kind.value} delivery failed after {max_attempts} attempt(s): {last_error}",
        )
        logger.error(
            f"[{failure.error_code}] {failure.message} | intent_id={intent.intent_id} | "
            f"correlation_id={intent.correlation_id}"
        )
        record_side_effect_failure(intent.kind.value)
        return False


__all__ = [
    "SideEffectKind",
    "DEFAULT_MAX_ATTEMPTS",
    "SideEffectIntent",
    "Handler",
    "SideEffectOutbox",
    "SideEffectDispatcher",
]
