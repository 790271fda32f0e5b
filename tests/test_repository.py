"""Test the SQLAlchemy stores against an in-memory SQLite database."""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

pytest.importorskip("aiosqlite")

from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.database import init_db, make_session_factory  # noqa: E402
from engine.errors import ConcurrentUpdate, LimitExceeded, NotFound  # noqa: E402
from engine.installments import InstallmentService  # noqa: E402
from engine.lifecycle import LifecycleService  # noqa: E402
from engine.models import (  # noqa: E402
    InstallmentStatus,
    PlanStatus,
    Product,
    PromoCode,
    PromoType,
    Reservation,
    ReservationStatus,
)
from engine.promos import PromoService  # noqa: E402
from rentals.repository import sql_stores  # noqa: E402

START = datetime(2025, 8, 10, 10, 0, tzinfo=timezone.utc)


async def make_stores() -> dict:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    return sql_stores(make_session_factory(engine))


def reservation(**overrides) -> Reservation:
    fields = dict(
        product_id="P-CAM",
        order_id="ORD-1",
        start_at=START,
        end_at=START + timedelta(days=3),
        price=Decimal("4500"),
        deposit=Decimal("2500"),
    )
    fields.update(overrides)
    return Reservation(**fields)


@pytest.mark.asyncio
async def test_product_round_trip():
    stores = await make_stores()
    await stores["catalog"].add_product(Product(id="P-CAM", base_price=Decimal("25000"), quantity_on_hand=2))
    product = await stores["catalog"].get_product("P-CAM")
    assert product.base_price == Decimal("25000")
    with pytest.raises(NotFound):
        await stores["catalog"].get_product("P-404")


@pytest.mark.asyncio
async def test_reservation_versioned_update():
    stores = await make_stores()
    repo = stores["reservations"]
    created = await repo.create_reservation(reservation())
    assert created.version == 1
    assert created.start_at == START

    created.status = ReservationStatus.PICKED_UP
    updated = await repo.update_reservation(created, expected_version=1)
    assert updated.version == 2
    assert updated.status == ReservationStatus.PICKED_UP

    with pytest.raises(ConcurrentUpdate):
        await repo.update_reservation(created, expected_version=1)


@pytest.mark.asyncio
async def test_list_reservations_filters_by_status_and_product():
    stores = await make_stores()
    repo = stores["reservations"]
    await repo.create_reservation(reservation())
    await repo.create_reservation(reservation(status=ReservationStatus.PICKED_UP))
    await repo.create_reservation(reservation(product_id="P-OTHER", status=ReservationStatus.PICKED_UP))

    assert len(await repo.list_reservations(status="picked_up")) == 2
    assert len(await repo.list_reservations(status=("picked_up", "reserved"), product_id="P-CAM")) == 2
    assert len(await repo.list_reservations(product_id="P-OTHER")) == 1


@pytest.mark.asyncio
async def test_lifecycle_with_sql_audit_log():
    stores = await make_stores()
    service = LifecycleService(stores["reservations"], stores["audit_log"])
    r = await stores["reservations"].create_reservation(reservation())

    await service.mark_picked_up(r.id)
    await service.mark_returned(r.id, deductions=Decimal("500"))

    saved = await stores["reservations"].get_reservation(r.id)
    assert saved.status == ReservationStatus.RETURNED
    assert saved.deposit_refund == Decimal("2000")
    events = await service.history(r.id)
    assert [e.to_status for e in events] == [ReservationStatus.PICKED_UP, ReservationStatus.RETURNED]
    assert Decimal(events[1].metadata["deposit_refund"]) == Decimal("2000")


@pytest.mark.asyncio
async def test_promo_guarded_increment():
    stores = await make_stores()
    service = PromoService(stores["promo_store"])
    await service.create(PromoCode(code="Once", type=PromoType.FIXED, value=Decimal("100"), usage_limit=1))

    results = await asyncio.gather(
        service.apply("ONCE"),
        service.apply("once"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, LimitExceeded) for r in results) == 1
    assert (await stores["promo_store"].get_by_code("once")).used_count == 1
    with pytest.raises(NotFound):
        await service.apply("missing")


@pytest.mark.asyncio
async def test_installment_plan_round_trip():
    stores = await make_stores()
    service = InstallmentService(stores["plan_store"])
    plan = await service.create_plan("ORD-1", Decimal("10000"), "3-months", now=START)

    loaded = await service.get_plan_for_order("ORD-1")
    assert [i.amount for i in loaded.installments] == [Decimal("3334"), Decimal("3333"), Decimal("3333")]

    for inst in plan.installments:
        result = await service.mark_paid(inst.id, paid_at=START)
    assert result.status == PlanStatus.COMPLETED
    assert all(i.status == InstallmentStatus.PAID for i in result.installments)


@pytest.mark.asyncio
async def test_promo_release_gives_back_one_use():
    stores = await make_stores()
    service = PromoService(stores["promo_store"])
    await service.create(PromoCode(code="ONCE", type=PromoType.FIXED, value=Decimal("100"), usage_limit=1))

    await service.apply("ONCE")
    assert (await service.release("once")).used_count == 0
    assert (await service.release("ONCE")).used_count == 0
    assert (await service.apply("ONCE")).used_count == 1


@pytest.mark.asyncio
async def test_installment_notice_flags_persist():
    stores = await make_stores()
    service = InstallmentService(stores["plan_store"])
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=START)

    run = await service.send_due_notices(now=plan.installments[0].due_date + timedelta(days=2))
    await service.dispatcher.drain()

    assert run.overdue_notices == 1
    saved = await service.get_plan_for_order("ORD-1")
    assert saved.installments[0].status == InstallmentStatus.OVERDUE
    assert saved.installments[0].overdue_notice_sent
    assert not saved.installments[1].overdue_notice_sent
