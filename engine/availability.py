"""Availability checks over reservation windows.

Pure functions: (product, reservations, window) -> result. No storage, no
hidden clock reads except "now" when no window is requested, and even that
can be injected. Identical inputs always give identical outputs.

Two shapes of answer:
- ``check_availability`` gives the tri-state status shown to customers
- ``check_quantity_available`` gives a ``RuleResult`` used to gate checkout
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from engine.errors import ValidationError
from engine.models import AvailabilityStatus, Product, Reservation, ReservationStatus, utcnow
from engine.timeutils import ensure_utc

# Statuses whose units are still out of stock for their window.
OCCUPYING_STATUSES = frozenset({
    ReservationStatus.RESERVED,
    ReservationStatus.PICKED_UP,
    ReservationStatus.EXTENDED,
    ReservationStatus.LATE,
})


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RuleResult:
    """Outcome of a single rule evaluation."""

    passed: bool
    rule_name: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Window helpers
# ---------------------------------------------------------------------------

def windows_overlap(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """True when the windows share an instant. Identical windows always overlap."""
    a_start, a_end = ensure_utc(a_start), ensure_utc(a_end)
    b_start, b_end = ensure_utc(b_start), ensure_utc(b_end)
    if a_start == b_start and a_end == b_end:
        return True
    return a_start < b_end and a_end > b_start


def _validate_window(start: Optional[datetime], end: Optional[datetime]) -> None:
    if (start is None) != (end is None):
        raise ValidationError("Both requested_start and requested_end are required for a window check")
    if start is not None and ensure_utc(end) <= ensure_utc(start):
        raise ValidationError(
            "requested_end must be after requested_start",
            requested_start=start.isoformat(),
            requested_end=end.isoformat(),
        )


def _occupying(product: Product, reservations: Iterable[Reservation], exclude_id: Optional[str]) -> list[Reservation]:
    return [
        r for r in reservations
        if r.product_id == product.id
        and r.status in OCCUPYING_STATUSES
        and r.id != exclude_id
    ]


def reserved_quantity(
    product: Product,
    reservations: Iterable[Reservation],
    requested_start: datetime,
    requested_end: datetime,
    exclude_id: Optional[str] = None,
) -> int:
    """Units already booked during the requested window."""
    _validate_window(requested_start, requested_end)
    return sum(
        r.quantity
        for r in _occupying(product, reservations, exclude_id)
        if windows_overlap(requested_start, requested_end, r.start_at, r.end_at)
    )


def free_quantity(
    product: Product,
    reservations: Iterable[Reservation],
    requested_start: datetime,
    requested_end: datetime,
    exclude_id: Optional[str] = None,
) -> int:
    """Units still bookable during the requested window."""
    booked = reserved_quantity(product, reservations, requested_start, requested_end, exclude_id)
    return max(0, product.quantity_on_hand - booked)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def check_availability(
    product: Product,
    reservations: Iterable[Reservation],
    requested_start: Optional[datetime] = None,
    requested_end: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    exclude_id: Optional[str] = None,
) -> AvailabilityStatus:
    """Tri-state availability of ``product``.

    Without a window, answers "is the single unit out right now". With a
    window, compares booked units against stock on hand.
    """
    _validate_window(requested_start, requested_end)
    if product.quantity_on_hand == 0:
        return AvailabilityStatus.RED

    reservations = list(reservations)

    if requested_start is None:
        current = ensure_utc(now or utcnow())
        out_now = any(
            ensure_utc(r.start_at) <= current <= ensure_utc(r.end_at)
            for r in _occupying(product, reservations, exclude_id)
        )
        if out_now and product.quantity_on_hand == 1:
            return AvailabilityStatus.YELLOW
        return AvailabilityStatus.GREEN

    booked = reserved_quantity(product, reservations, requested_start, requested_end, exclude_id)
    if booked >= product.quantity_on_hand:
        return AvailabilityStatus.RED
    if booked > 0:
        return AvailabilityStatus.YELLOW
    return AvailabilityStatus.GREEN


def check_quantity_available(
    product: Product,
    reservations: Iterable[Reservation],
    requested_start: datetime,
    requested_end: datetime,
    quantity: int = 1,
    exclude_id: Optional[str] = None,
) -> RuleResult:
    """Check that ``quantity`` more units fit in the window."""
    if quantity < 1:
        raise ValidationError("quantity must be >= 1", quantity=quantity)

    available = free_quantity(product, reservations, requested_start, requested_end, exclude_id)
    passed = available >= quantity

    return RuleResult(
        passed=passed,
        rule_name="quantity_available",
        message=(
            f"Available: {available} of {product.quantity_on_hand} units"
            if passed
            else f"Insufficient stock: {available} available, {quantity} requested"
        ),
        details={
            "product_id": product.id,
            "available": available,
            "requested": quantity,
            "on_hand": product.quantity_on_hand,
        },
    )
