"""Best-effort customer notifications: late returns and installment notices.

Delivery is fire-and-forget from the caller's point of view: ``dispatch_*``
schedules a background task and returns immediately. Each attempt is bounded
by a timeout and retried with backoff through a ``CircuitBreaker``. Whatever
still fails lands in the ``DeadLetterQueue`` for later redelivery.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Coroutine, Optional

import httpx

from core.resilience.circuit_breaker import CircuitBreaker
from core.resilience.dlq import DeadLetterQueue
from engine.config import NotificationConfig
from engine.errors import NotFound
from engine.models import Reservation, ScheduledNotification
from engine.stores import ReservationStore

logger = logging.getLogger(__name__)

LATE_RETURN_QUEUE = "late_return_notifications"
INSTALLMENT_QUEUE = "installment_notifications"


class CustomerNotifier(ABC):
    """Delivery channel for customer notices (SMS, email, WhatsApp...)."""

    @abstractmethod
    async def notify_late_return(self, reservation: Reservation) -> None: ...

    @abstractmethod
    async def notify_installment(self, notice: ScheduledNotification) -> None: ...


class LoggingNotifier(CustomerNotifier):
    """Writes the notice to the log. Default when no channel is configured."""

    async def notify_late_return(self, reservation: Reservation) -> None:
        logger.info(
            "Late return notice for reservation %s (order %s): fee %s",
            reservation.id, reservation.order_id, reservation.late_fee,
        )

    async def notify_installment(self, notice: ScheduledNotification) -> None:
        logger.info("%s for order %s: %s", notice.kind, notice.order_id, notice.message)


class WebhookNotifier(CustomerNotifier):
    """POSTs each notice to a delivery service endpoint."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, payload: dict[str, Any]) -> None:
        response = await self._client.post(self.url, json=payload)
        response.raise_for_status()

    async def notify_late_return(self, reservation: Reservation) -> None:
        await self._post({"event": "reservation.late", "reservation": reservation.to_dict()})

    async def notify_installment(self, notice: ScheduledNotification) -> None:
        await self._post({"event": notice.kind, "notification": notice.to_dict()})

    async def close(self) -> None:
        await self._client.aclose()


class NotificationDispatcher:
    """Schedules deliveries in the background so callers never block on them."""

    def __init__(
        self,
        notifier: Optional[CustomerNotifier] = None,
        config: Optional[NotificationConfig] = None,
        dlq: Optional[DeadLetterQueue] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.notifier = notifier or LoggingNotifier()
        self.config = config or NotificationConfig()
        self.dlq = dlq if dlq is not None else DeadLetterQueue()
        self.breaker = breaker or CircuitBreaker(
            name="customer_notifier",
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
            backoff_max=self.config.backoff_max,
            timeout=self.config.timeout_seconds,
        )
        self._tasks: set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    def _track(self, coro: Coroutine[Any, Any, bool]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def dispatch_late_return(self, reservation: Reservation) -> asyncio.Task:
        """Start delivery in the background and return its task."""
        return self._track(self._deliver(
            LATE_RETURN_QUEUE, reservation.id, "reservation.late", reservation.to_dict(),
            self.notifier.notify_late_return, reservation,
        ))

    def dispatch_installment_notice(self, notice: ScheduledNotification) -> asyncio.Task:
        return self._track(self._deliver(
            INSTALLMENT_QUEUE, notice.installment_id, notice.kind, notice.to_dict(),
            self.notifier.notify_installment, notice,
        ))

    async def _deliver(
        self,
        queue: str,
        subject_id: str,
        event_type: str,
        payload: dict[str, Any],
        send: Callable[..., Awaitable[None]],
        *args: Any,
    ) -> bool:
        try:
            await self.breaker.call(send, *args)
        except Exception as e:
            self.failed += 1
            logger.error("%s for %s failed, moved to DLQ: %r", event_type, subject_id, e)
            self.dlq.enqueue(
                queue_name=queue,
                subject_id=subject_id,
                event_type=event_type,
                payload=payload,
                error=repr(e),
                max_retries=self.config.max_retries,
            )
            return False
        self.delivered += 1
        return True

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight delivery (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def redeliver_dead_letters(self, reservations: ReservationStore, limit: int = 50) -> int:
        """Retry parked notices once each. Returns how many went through."""
        resolved = 0
        for letter in self.dlq.list_pending(LATE_RETURN_QUEUE, limit=limit):
            if not self.dlq.mark_retrying(letter.id):
                continue
            try:
                reservation = await reservations.get_reservation(letter.subject_id)
                await self.breaker.call(self.notifier.notify_late_return, reservation)
            except NotFound:
                self.dlq.mark_failed_again(letter.id, "reservation no longer exists")
            except Exception as e:
                self.dlq.mark_failed_again(letter.id, repr(e))
            else:
                self.dlq.mark_resolved(letter.id)
                resolved += 1
        return resolved

    async def redeliver_installment_notices(self, limit: int = 50) -> int:
        """Retry parked installment notices from their stored payload."""
        resolved = 0
        for letter in self.dlq.list_pending(INSTALLMENT_QUEUE, limit=limit):
            if not self.dlq.mark_retrying(letter.id):
                continue
            try:
                notice = ScheduledNotification.from_dict(letter.payload)
                await self.breaker.call(self.notifier.notify_installment, notice)
            except Exception as e:
                self.dlq.mark_failed_again(letter.id, repr(e))
            else:
                self.dlq.mark_resolved(letter.id)
                resolved += 1
        return resolved
