"""Test availability: overlap rules and the green/yellow/red status."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from engine.availability import (
    check_availability,
    check_quantity_available,
    free_quantity,
    reserved_quantity,
    windows_overlap,
)
from engine.errors import ValidationError
from engine.models import AvailabilityStatus, Product, Reservation, ReservationStatus


def day(d: int) -> datetime:
    return datetime(2025, 8, d, tzinfo=timezone.utc)


def booking(product_id: str, start: datetime, end: datetime, quantity: int = 1,
            status: ReservationStatus = ReservationStatus.RESERVED) -> Reservation:
    return Reservation(
        product_id=product_id,
        order_id="ORD-1",
        start_at=start,
        end_at=end,
        price=Decimal("100"),
        deposit=Decimal("500"),
        quantity=quantity,
        status=status,
    )


def test_request_inside_existing_booking_is_red():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=1)
    existing = [booking("P-1", day(10), day(15))]
    assert check_availability(product, existing, day(12), day(14)) == AvailabilityStatus.RED


def test_identical_windows_overlap():
    assert windows_overlap(day(10), day(12), day(10), day(12))


def test_touching_windows_do_not_overlap():
    assert not windows_overlap(day(10), day(12), day(12), day(14))


def test_status_by_booked_quantity():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=3)
    # Non-overlapping with each other, all overlapping the request.
    full = [
        booking("P-1", day(1), day(11), quantity=2),
        booking("P-1", day(11), day(20), quantity=1),
    ]
    assert check_availability(product, full, day(10), day(12)) == AvailabilityStatus.RED
    assert check_availability(product, full[:1], day(10), day(12)) == AvailabilityStatus.YELLOW
    assert check_availability(product, [], day(10), day(12)) == AvailabilityStatus.GREEN


def test_released_reservations_do_not_occupy():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=1)
    existing = [
        booking("P-1", day(10), day(15), status=ReservationStatus.RETURNED),
        booking("P-1", day(10), day(15), status=ReservationStatus.CANCELLED),
    ]
    assert check_availability(product, existing, day(12), day(14)) == AvailabilityStatus.GREEN


def test_picked_up_late_and_extended_still_occupy():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=3)
    existing = [
        booking("P-1", day(10), day(15), status=ReservationStatus.PICKED_UP),
        booking("P-1", day(10), day(15), status=ReservationStatus.LATE),
        booking("P-1", day(10), day(15), status=ReservationStatus.EXTENDED),
    ]
    assert reserved_quantity(product, existing, day(12), day(14)) == 3


def test_other_products_are_ignored():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=1)
    existing = [booking("P-2", day(10), day(15))]
    assert free_quantity(product, existing, day(12), day(14)) == 1


def test_zero_stock_is_always_red():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=0)
    assert check_availability(product, []) == AvailabilityStatus.RED


def test_no_window_single_unit_out_now_is_yellow():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=1)
    existing = [booking("P-1", day(10), day(15))]
    assert check_availability(product, existing, now=day(12)) == AvailabilityStatus.YELLOW
    assert check_availability(product, existing, now=day(20)) == AvailabilityStatus.GREEN


def test_window_requires_both_bounds_in_order():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=1)
    with pytest.raises(ValidationError):
        check_availability(product, [], day(10), None)
    with pytest.raises(ValidationError):
        check_availability(product, [], day(12), day(10))


def test_quantity_gate_reports_details():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=2)
    existing = [booking("P-1", day(10), day(15))]
    result = check_quantity_available(product, existing, day(11), day(12), quantity=2)
    assert not result.passed
    assert result.details["available"] == 1
    assert result.details["requested"] == 2


def test_quantity_gate_excludes_the_reservation_itself():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=1)
    mine = booking("P-1", day(10), day(15))
    result = check_quantity_available(product, [mine], day(15), day(17), exclude_id=mine.id)
    assert result.passed


def test_quantity_must_be_positive():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=1)
    with pytest.raises(ValidationError):
        check_quantity_available(product, [], day(10), day(12), quantity=0)


def test_window_edges_property():
    product = Product(id="P-1", base_price=Decimal("1000"), quantity_on_hand=4)
    for q in range(1, 5):
        existing = [booking("P-1", day(1), day(28), quantity=q)]
        status = check_availability(product, existing, day(5), day(6))
        expected = AvailabilityStatus.RED if q >= 4 else AvailabilityStatus.YELLOW
        assert status == expected
