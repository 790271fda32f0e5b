"""Test the reservation lifecycle state machine and its service."""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from engine.config import LifecycleConfig, RentalConfig
from engine.errors import ConcurrentUpdate, InvalidTransition, LimitExceeded, ValidationError
from engine.lifecycle import (
    LifecycleService,
    TransitionContext,
    allowed_targets,
    apply_transition,
    compute_deposit_refund,
    compute_late_fee,
    is_terminal,
)
from engine.models import Product, Reservation, ReservationStatus
from engine.stores import InMemoryAuditLog, InMemoryProductCatalog, InMemoryReservationStore

S = ReservationStatus
NOW = datetime(2025, 8, 20, 12, 0, tzinfo=timezone.utc)


def make_reservation(status=S.RESERVED, end_at=None, product_id="P-CAM", **kwargs) -> Reservation:
    end_at = end_at or NOW + timedelta(days=3)
    return Reservation(
        product_id=product_id,
        order_id="ORD-1",
        start_at=end_at - timedelta(days=3),
        end_at=end_at,
        price=Decimal("4500"),
        deposit=Decimal("2500"),
        status=status,
        **kwargs,
    )


async def make_service(*reservations, catalog=None, audit_log=None, config=None):
    store = InMemoryReservationStore()
    for r in reservations:
        await store.create_reservation(r)
    audit_log = audit_log or InMemoryAuditLog()
    service = LifecycleService(store, audit_log, catalog=catalog, config=config)
    return service, store, audit_log


class FailingAuditLog(InMemoryAuditLog):
    async def append_lifecycle_event(self, event):
        raise RuntimeError("audit store down")


# -- Transition table --

def test_terminal_states_have_no_exits():
    assert is_terminal(S.RETURNED)
    assert is_terminal(S.CANCELLED)
    assert not is_terminal(S.LATE)
    assert allowed_targets(S.RESERVED) == [S.PICKED_UP, S.CANCELLED]


def test_reserved_to_returned_is_rejected_without_mutation():
    r = make_reservation()
    with pytest.raises(InvalidTransition):
        apply_transition(r, S.RETURNED, TransitionContext(now=NOW))
    assert r.status == S.RESERVED
    assert r.returned_at is None


def test_unknown_target_is_validation_error():
    with pytest.raises(ValidationError):
        apply_transition(make_reservation(), "lost")


def test_apply_transition_returns_copy_and_event():
    r = make_reservation()
    result = apply_transition(r, S.PICKED_UP, TransitionContext(now=NOW, actor="clerk"))
    assert r.status == S.RESERVED
    assert result.reservation.status == S.PICKED_UP
    assert result.reservation.picked_up_at == NOW
    assert result.event.from_status == S.RESERVED
    assert result.event.to_status == S.PICKED_UP
    assert result.event.actor == "clerk"


def test_deposit_refund_clamped_and_validated():
    assert compute_deposit_refund(Decimal("2500"), Decimal("300")) == Decimal("2200")
    assert compute_deposit_refund(Decimal("2500"), Decimal("9000")) == Decimal("0")
    with pytest.raises(ValidationError):
        compute_deposit_refund(Decimal("2500"), Decimal("-1"))


def test_extension_heuristic_without_pricer():
    r = make_reservation(status=S.PICKED_UP)
    ctx = TransitionContext(now=NOW, new_end_at=r.end_at + timedelta(hours=30))
    result = apply_transition(r, S.EXTENDED, ctx, LifecycleConfig(extension_pricing="order_total_heuristic"))
    # ceil(30h) = 2 days x 4500 x 0.06
    assert result.additional_charge == Decimal("540")
    assert result.reservation.additional_charges == Decimal("540")


def test_extension_must_move_end_forward():
    r = make_reservation(status=S.PICKED_UP)
    with pytest.raises(ValidationError):
        apply_transition(r, S.EXTENDED, TransitionContext(now=NOW, new_end_at=r.end_at))


# -- Service --

@pytest.mark.asyncio
async def test_pickup_then_return_with_deductions():
    r = make_reservation()
    service, store, audit = await make_service(r)

    await service.mark_picked_up(r.id)
    result = await service.mark_returned(r.id, deductions=Decimal("400"), condition="scratched")

    assert result.deposit_refund == Decimal("2100")
    saved = await store.get_reservation(r.id)
    assert saved.status == S.RETURNED
    assert saved.condition == "scratched"
    assert saved.version == 3
    events = await service.history(r.id)
    assert [e.to_status for e in events] == [S.PICKED_UP, S.RETURNED]
    assert events[1].metadata["deposit_refund"] == "2100"


@pytest.mark.asyncio
async def test_returned_is_terminal():
    r = make_reservation(status=S.RETURNED)
    service, store, audit = await make_service(r)
    with pytest.raises(InvalidTransition):
        await service.transition(r.id, S.PICKED_UP)
    assert audit.events == []


@pytest.mark.asyncio
async def test_mark_late_is_idempotent():
    r = make_reservation(status=S.PICKED_UP, end_at=NOW - timedelta(days=2))
    service, store, audit = await make_service(r)

    first = await service.mark_late(r.id, now=NOW)
    second = await service.mark_late(r.id, now=NOW + timedelta(days=3))

    assert first.changed and first.late_fee == Decimal("100")
    assert not second.changed
    assert second.late_fee == Decimal("100")
    assert (await store.get_reservation(r.id)).late_fee == Decimal("100")
    assert len(audit.events) == 1


@pytest.mark.asyncio
async def test_mark_late_inside_grace_period_is_rejected():
    r = make_reservation(status=S.PICKED_UP, end_at=NOW - timedelta(hours=12))
    service, store, audit = await make_service(r)
    with pytest.raises(InvalidTransition):
        await service.mark_late(r.id, now=NOW)
    assert (await store.get_reservation(r.id)).status == S.PICKED_UP


@pytest.mark.asyncio
async def test_cancel_records_reason():
    r = make_reservation()
    service, store, audit = await make_service(r)
    await service.cancel(r.id, reason="customer changed plans")
    saved = await store.get_reservation(r.id)
    assert saved.status == S.CANCELLED
    assert saved.cancelled_at is not None
    assert audit.events[0].metadata["reason"] == "customer changed plans"


@pytest.mark.asyncio
async def test_extension_is_repriced_through_the_calculator():
    catalog = InMemoryProductCatalog([Product(id="P-CAM", base_price=Decimal("25000"), quantity_on_hand=1)])
    r = make_reservation(status=S.PICKED_UP)
    service, store, audit = await make_service(r, catalog=catalog)

    result = await service.extend(r.id, r.end_at + timedelta(days=2))

    # standard daily 0.06 x 25000 x 2 days
    assert result.additional_charge == Decimal("3000")
    saved = await store.get_reservation(r.id)
    assert saved.status == S.EXTENDED
    assert saved.end_at == r.end_at + timedelta(days=2)


@pytest.mark.asyncio
async def test_extension_that_would_overbook_is_rejected():
    catalog = InMemoryProductCatalog([Product(id="P-CAM", base_price=Decimal("25000"), quantity_on_hand=1)])
    mine = make_reservation(status=S.PICKED_UP)
    next_customer = make_reservation(end_at=mine.end_at + timedelta(days=4))  # starts 1 day after mine ends
    service, store, audit = await make_service(mine, next_customer, catalog=catalog)

    with pytest.raises(LimitExceeded):
        await service.extend(mine.id, mine.end_at + timedelta(days=3))

    saved = await store.get_reservation(mine.id)
    assert saved.status == S.PICKED_UP
    assert saved.end_at == mine.end_at
    assert audit.events == []


@pytest.mark.asyncio
async def test_audit_failure_restores_reservation():
    r = make_reservation()
    service, store, audit = await make_service(r, audit_log=FailingAuditLog())

    with pytest.raises(RuntimeError, match="audit store down"):
        await service.mark_picked_up(r.id)

    saved = await store.get_reservation(r.id)
    assert saved.status == S.RESERVED
    assert saved.picked_up_at is None


@pytest.mark.asyncio
async def test_concurrent_transitions_are_serialized():
    r = make_reservation()
    service, store, audit = await make_service(r)

    results = await asyncio.gather(
        service.mark_picked_up(r.id),
        service.mark_picked_up(r.id),
        return_exceptions=True,
    )

    failures = [x for x in results if isinstance(x, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidTransition)
    assert len(audit.events) == 1
    assert (await store.get_reservation(r.id)).version == 2


@pytest.mark.asyncio
async def test_store_rejects_stale_version():
    r = make_reservation()
    store = InMemoryReservationStore()
    await store.create_reservation(r)
    current = await store.get_reservation(r.id)
    await store.update_reservation(current, expected_version=1)
    with pytest.raises(ConcurrentUpdate):
        await store.update_reservation(current, expected_version=1)


@pytest.mark.asyncio
async def test_grace_period_from_config():
    r = make_reservation(status=S.PICKED_UP, end_at=NOW - timedelta(days=2))
    config = RentalConfig(lifecycle=LifecycleConfig(grace_period_days=0, late_fee_per_day=Decimal("150")))
    service, store, audit = await make_service(r, config=config)
    result = await service.mark_late(r.id, now=NOW)
    assert result.late_fee == Decimal("300")


def test_late_fee_counts_whole_days_past_grace_and_never_goes_negative():
    config = LifecycleConfig(grace_period_days=1, late_fee_per_day=Decimal("100"))
    end = NOW - timedelta(days=3, hours=20)
    assert compute_late_fee(end, NOW, config) == Decimal("200")
    assert compute_late_fee(NOW - timedelta(hours=30), NOW, config) == Decimal("0")
    assert compute_late_fee(NOW - timedelta(hours=5), NOW, config) == Decimal("0")
