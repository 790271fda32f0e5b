"""Enum-based reservation lifecycle state machine.

Two layers:
- ``apply_transition`` is pure: it validates the move, computes fees, refunds
  and extension charges, and returns an updated copy plus the audit event.
- ``LifecycleService`` serializes transitions per reservation, persists the
  copy with a version check, then appends the audit event. If the audit
  append fails the reservation is restored, so a transition commits whole or
  not at all.

Transition table::

    reserved  -> picked_up | cancelled
    picked_up -> returned | late | extended
    extended  -> returned | late | extended
    late      -> returned | late (no-op)
    returned, cancelled: terminal
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from core.observability.otel_setup import traced_span
from core.resilience.locks import KeyedLock
from engine.availability import check_quantity_available
from engine.config import LifecycleConfig, RentalConfig
from engine.errors import InvalidTransition, LimitExceeded, ValidationError
from engine.models import LifecycleEvent, Reservation, ReservationStatus, utcnow
from engine.pricing import PricingCalculator, round_money
from engine.stores import AuditLog, ProductCatalog, ReservationStore
from engine.timeutils import ONE_DAY, ensure_utc, whole_days_between

logger = logging.getLogger(__name__)

S = ReservationStatus

# Allowed transitions: {current_state: [allowed_next_states]}
_TRANSITIONS: dict[ReservationStatus, list[ReservationStatus]] = {
    S.RESERVED: [S.PICKED_UP, S.CANCELLED],
    S.PICKED_UP: [S.RETURNED, S.LATE, S.EXTENDED],
    S.EXTENDED: [S.RETURNED, S.LATE, S.EXTENDED],
    S.LATE: [S.RETURNED, S.LATE],
    S.RETURNED: [],   # terminal
    S.CANCELLED: [],  # terminal
}

ExtensionPricer = Callable[[Reservation, datetime], Decimal]


def allowed_targets(current: ReservationStatus) -> list[ReservationStatus]:
    return list(_TRANSITIONS[current])


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in _TRANSITIONS[current]


def is_terminal(status: ReservationStatus) -> bool:
    return not _TRANSITIONS[status]


# ---------------------------------------------------------------------------
# Context & result
# ---------------------------------------------------------------------------

@dataclass
class TransitionContext:
    """Caller-supplied inputs for a transition."""

    now: Optional[datetime] = None
    actor: str = "system"
    deductions: Decimal = Decimal("0")  # damage/condition deductions on return
    condition: Optional[str] = None
    new_end_at: Optional[datetime] = None  # required for extended
    reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionResult:
    reservation: Reservation
    previous_status: ReservationStatus
    event: Optional[LifecycleEvent]
    changed: bool = True
    late_fee: Decimal = Decimal("0")
    deposit_refund: Optional[Decimal] = None
    additional_charge: Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# Fee math
# ---------------------------------------------------------------------------

def is_overdue(end_at: datetime, now: datetime, config: LifecycleConfig) -> bool:
    return ensure_utc(now) > ensure_utc(end_at) + config.grace_period


def days_late(end_at: datetime, now: datetime, config: LifecycleConfig) -> int:
    """Whole days past ``end_at`` minus the grace period, never negative."""
    return max(0, whole_days_between(ensure_utc(end_at), ensure_utc(now)) - config.grace_period_days)


def compute_late_fee(end_at: datetime, now: datetime, config: LifecycleConfig) -> Decimal:
    return days_late(end_at, now, config) * config.late_fee_per_day


def compute_deposit_refund(deposit: Decimal, deductions: Decimal = Decimal("0")) -> Decimal:
    if deductions < 0:
        raise ValidationError("deductions cannot be negative", deductions=str(deductions))
    return max(Decimal("0"), deposit - deductions)


def heuristic_extension_charge(reservation: Reservation, new_end_at: datetime, config: LifecycleConfig) -> Decimal:
    """Legacy pricing: a fixed share of the order total per extra day."""
    extra = ensure_utc(new_end_at) - ensure_utc(reservation.end_at)
    extra_days = max(1, math.ceil(extra / ONE_DAY))
    daily_rate = reservation.price * config.extension_daily_rate
    return round_money(daily_rate * extra_days)


# ---------------------------------------------------------------------------
# Pure transition
# ---------------------------------------------------------------------------

def _mark_picked_up(r: Reservation, ctx: TransitionContext, now: datetime, **_) -> dict[str, Any]:
    r.picked_up_at = now
    return {}


def _mark_returned(r: Reservation, ctx: TransitionContext, now: datetime, **_) -> dict[str, Any]:
    refund = compute_deposit_refund(r.deposit, ctx.deductions)
    r.deductions = ctx.deductions
    r.deposit_refund = refund
    r.condition = ctx.condition or "good"
    r.returned_at = now
    return {"deposit_refund": refund, "deductions": ctx.deductions, "condition": r.condition}


def _mark_late(r: Reservation, ctx: TransitionContext, now: datetime, config: LifecycleConfig, **_) -> dict[str, Any]:
    if not is_overdue(r.end_at, now, config):
        raise InvalidTransition(
            f"Reservation {r.id} is not past its grace period",
            reservation_id=r.id,
            end_at=r.end_at.isoformat(),
            grace_period_days=config.grace_period_days,
        )
    late = days_late(r.end_at, now, config)
    r.late_fee = late * config.late_fee_per_day
    r.marked_late_at = now
    return {"days_late": late, "late_fee": r.late_fee}


def _mark_extended(
    r: Reservation,
    ctx: TransitionContext,
    now: datetime,
    config: LifecycleConfig,
    pricer: Optional[ExtensionPricer] = None,
) -> dict[str, Any]:
    if ctx.new_end_at is None:
        raise ValidationError("new_end_at is required to extend", reservation_id=r.id)
    new_end = ensure_utc(ctx.new_end_at)
    if new_end <= ensure_utc(r.end_at):
        raise ValidationError(
            "new_end_at must be after the current end_at",
            reservation_id=r.id,
            end_at=r.end_at.isoformat(),
            new_end_at=new_end.isoformat(),
        )
    if pricer is not None:
        charge = pricer(r, new_end)
    else:
        charge = heuristic_extension_charge(r, new_end, config)
    previous_end = r.end_at
    r.end_at = new_end
    r.additional_charges = r.additional_charges + charge
    return {
        "previous_end_at": previous_end.isoformat(),
        "new_end_at": new_end.isoformat(),
        "additional_charge": charge,
    }


def _mark_cancelled(r: Reservation, ctx: TransitionContext, now: datetime, **_) -> dict[str, Any]:
    r.cancelled_at = now
    return {"reason": ctx.reason} if ctx.reason else {}


# Side effects per target state. RESERVED is only ever the initial state.
_EFFECTS: dict[ReservationStatus, Callable[..., dict[str, Any]]] = {
    S.PICKED_UP: _mark_picked_up,
    S.RETURNED: _mark_returned,
    S.LATE: _mark_late,
    S.EXTENDED: _mark_extended,
    S.CANCELLED: _mark_cancelled,
}


def _event_value(value: Any) -> Any:
    return str(value) if isinstance(value, Decimal) else value


def apply_transition(
    reservation: Reservation,
    target: ReservationStatus | str,
    context: Optional[TransitionContext] = None,
    config: Optional[LifecycleConfig] = None,
    pricer: Optional[ExtensionPricer] = None,
) -> TransitionResult:
    """Compute the outcome of moving ``reservation`` to ``target``.

    Never mutates ``reservation``. Raises ``InvalidTransition`` for moves the
    table forbids and ``ValidationError`` for bad context.
    """
    ctx = context or TransitionContext()
    config = config or LifecycleConfig()
    try:
        target = ReservationStatus(target)
    except ValueError:
        raise ValidationError(f"Unknown reservation status {target!r}") from None

    current = reservation.status
    if not can_transition(current, target):
        allowed = [s.value for s in _TRANSITIONS[current]]
        raise InvalidTransition(
            f"Cannot transition from {current.value} to {target.value}. Allowed: {allowed}",
            reservation_id=reservation.id,
            from_status=current.value,
            to_status=target.value,
        )

    # Marking late is idempotent: the fee was fixed when first marked.
    if current == S.LATE and target == S.LATE:
        return TransitionResult(
            reservation=reservation,
            previous_status=current,
            event=None,
            changed=False,
            late_fee=reservation.late_fee,
        )

    now = ensure_utc(ctx.now or utcnow())
    updated = replace(reservation)
    effects = _EFFECTS[target](updated, ctx, now, config=config, pricer=pricer)
    updated.status = target
    updated.updated_at = now

    event = LifecycleEvent(
        reservation_id=reservation.id,
        from_status=current,
        to_status=target,
        timestamp=now,
        actor=ctx.actor,
        metadata={**ctx.metadata, **{k: _event_value(v) for k, v in effects.items()}},
    )
    return TransitionResult(
        reservation=updated,
        previous_status=current,
        event=event,
        late_fee=updated.late_fee,
        deposit_refund=effects.get("deposit_refund"),
        additional_charge=effects.get("additional_charge", Decimal("0")),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class LifecycleService:
    """Serialized, persisted lifecycle transitions.

    Usage::

        service = LifecycleService(reservations, audit_log, catalog)
        await service.transition("RES-1", ReservationStatus.PICKED_UP)
        result = await service.mark_returned("RES-1", deductions=Decimal("200"))
        result.deposit_refund
    """

    def __init__(
        self,
        reservations: ReservationStore,
        audit_log: AuditLog,
        catalog: Optional[ProductCatalog] = None,
        config: Optional[RentalConfig] = None,
        pricing: Optional[PricingCalculator] = None,
        locks: Optional[KeyedLock] = None,
        tracer=None,
    ):
        self.reservations = reservations
        self.audit_log = audit_log
        self.catalog = catalog
        self.config = config or RentalConfig.default()
        self.pricing = pricing or PricingCalculator(self.config.pricing)
        self.locks = locks or KeyedLock("reservations")
        self.tracer = tracer

    async def transition(
        self,
        reservation_id: str,
        target: ReservationStatus | str,
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        ctx = context or TransitionContext()
        with traced_span(self.tracer, "rental.transition", reservation_id=reservation_id, target=str(target)):
            async with self.locks.hold(reservation_id):
                current = await self.reservations.get_reservation(reservation_id)
                pricer = await self._extension_pricer(current, target)
                result = apply_transition(current, target, ctx, self.config.lifecycle, pricer)
                if not result.changed:
                    logger.info("Reservation %s already %s, nothing to do", reservation_id, current.status.value)
                    return result

                if result.reservation.status == S.EXTENDED:
                    await self._check_extension_window(current, result.reservation)

                saved = await self.reservations.update_reservation(
                    result.reservation, expected_version=current.version
                )
                try:
                    await self.audit_log.append_lifecycle_event(result.event)
                except Exception:
                    logger.exception("Audit append failed for %s, restoring previous state", reservation_id)
                    await self.reservations.update_reservation(current, expected_version=saved.version)
                    raise

        logger.info(
            "Reservation %s: %s -> %s",
            reservation_id, result.previous_status.value, saved.status.value,
        )
        return replace(result, reservation=saved)

    async def _extension_pricer(
        self, reservation: Reservation, target: ReservationStatus | str
    ) -> Optional[ExtensionPricer]:
        if target != S.EXTENDED or self.config.lifecycle.extension_pricing != "repricing":
            return None
        if self.catalog is None:
            logger.warning("No catalog wired, extension of %s priced by heuristic", reservation.id)
            return None
        product = await self.catalog.get_product(reservation.product_id)

        def reprice(r: Reservation, new_end_at: datetime) -> Decimal:
            quote = self.pricing.calculate_price(product, r.tenure_unit, r.end_at, new_end_at, r.pricelist)
            return quote.price * r.quantity

        return reprice

    async def _check_extension_window(self, before: Reservation, after: Reservation) -> None:
        if self.catalog is None:
            return
        product = await self.catalog.get_product(before.product_id)
        others = await self.reservations.list_reservations(product_id=before.product_id)
        rule = check_quantity_available(
            product, others, before.end_at, after.end_at,
            quantity=before.quantity, exclude_id=before.id,
        )
        if not rule.passed:
            raise LimitExceeded(
                f"Cannot extend {before.id}: {rule.message}",
                reservation_id=before.id,
                **rule.details,
            )

    # -- Convenience wrappers --

    async def mark_picked_up(self, reservation_id: str, actor: str = "system") -> TransitionResult:
        return await self.transition(reservation_id, S.PICKED_UP, TransitionContext(actor=actor))

    async def mark_returned(
        self,
        reservation_id: str,
        deductions: Decimal = Decimal("0"),
        condition: Optional[str] = None,
        actor: str = "system",
    ) -> TransitionResult:
        ctx = TransitionContext(actor=actor, deductions=deductions, condition=condition)
        return await self.transition(reservation_id, S.RETURNED, ctx)

    async def mark_late(self, reservation_id: str, now: Optional[datetime] = None) -> TransitionResult:
        return await self.transition(reservation_id, S.LATE, TransitionContext(now=now, actor="late_sweeper"))

    async def extend(self, reservation_id: str, new_end_at: datetime, actor: str = "system") -> TransitionResult:
        return await self.transition(reservation_id, S.EXTENDED, TransitionContext(actor=actor, new_end_at=new_end_at))

    async def cancel(self, reservation_id: str, reason: Optional[str] = None, actor: str = "system") -> TransitionResult:
        return await self.transition(reservation_id, S.CANCELLED, TransitionContext(actor=actor, reason=reason))

    async def history(self, reservation_id: str) -> list[LifecycleEvent]:
        await self.reservations.get_reservation(reservation_id)
        return await self.audit_log.list_events(reservation_id)
