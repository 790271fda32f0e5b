"""Scheduled late-return sweep.

Scans rentals that are out with customers, marks the ones past their grace
period as late (through the same per-reservation lock as interactive
calls), and fires a notification for each. One bad record never aborts the
batch; the caller gets a summary.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from core.observability.otel_setup import traced_span
from engine.config import RentalConfig
from engine.errors import InvalidTransition
from engine.lifecycle import LifecycleService, TransitionContext, is_overdue
from engine.models import Reservation, ReservationStatus, utcnow
from engine.notifications import NotificationDispatcher
from engine.stores import ReservationStore
from engine.timeutils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    scanned: int = 0
    marked_late: int = 0
    failed: int = 0
    skipped: int = 0
    notifications_dispatched: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "marked_late": self.marked_late,
            "failed": self.failed,
            "skipped": self.skipped,
            "notifications_dispatched": self.notifications_dispatched,
            "errors": self.errors,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


class LateReturnSweeper:
    """Marks overdue rentals late and notifies customers.

    Usage::

        sweeper = LateReturnSweeper(reservations, lifecycle, dispatcher)
        summary = await sweeper.sweep()
    """

    def __init__(
        self,
        reservations: ReservationStore,
        lifecycle: LifecycleService,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[RentalConfig] = None,
        tracer=None,
    ):
        self.reservations = reservations
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.config = config or lifecycle.config
        self.tracer = tracer

    async def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        now = ensure_utc(now or utcnow())
        summary = SweepSummary(started_at=now)

        with traced_span(self.tracer, "rental.late_sweep") as span:
            candidates = await self.reservations.list_reservations(status=self.config.sweeper.statuses)
            summary.scanned = len(candidates)
            overdue = [
                r for r in candidates
                if r.status != ReservationStatus.LATE
                and is_overdue(r.end_at, now, self.config.lifecycle)
            ]

            semaphore = asyncio.Semaphore(max(1, self.config.sweeper.concurrency))

            async def process(reservation: Reservation) -> None:
                async with semaphore:
                    await self._process_one(reservation, now, summary)

            await asyncio.gather(*(process(r) for r in overdue))

            if span is not None:
                span.set_attribute("rental.sweep.marked_late", summary.marked_late)
                span.set_attribute("rental.sweep.failed", summary.failed)

        logger.info(
            "Late sweep done: scanned=%d marked_late=%d failed=%d",
            summary.scanned, summary.marked_late, summary.failed,
        )
        return summary

    async def _process_one(self, reservation: Reservation, now: datetime, summary: SweepSummary) -> None:
        try:
            result = await self.lifecycle.transition(
                reservation.id,
                ReservationStatus.LATE,
                TransitionContext(now=now, actor="late_sweeper"),
            )
        except InvalidTransition as e:
            # Returned or extended between the scan and the lock.
            summary.skipped += 1
            logger.info("Skipping %s: %s", reservation.id, e)
            return
        except Exception as e:
            summary.failed += 1
            summary.errors[reservation.id] = repr(e)
            logger.exception("Failed to mark reservation %s late", reservation.id)
            return

        if not result.changed:
            return
        summary.marked_late += 1
        try:
            self.dispatcher.dispatch_late_return(result.reservation)
            summary.notifications_dispatched += 1
        except Exception:
            logger.exception("Could not schedule late notice for %s", reservation.id)

    async def run_forever(self, interval: Optional[float] = None) -> None:
        """Sweep on a fixed interval until cancelled."""
        interval = interval if interval is not None else self.config.sweeper.interval_seconds
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Late sweep crashed, retrying next interval")
            await asyncio.sleep(interval)
