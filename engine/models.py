"""Domain values used by the rental engine.

Plain dataclasses with no persistence concerns. Stores translate to and from
their own row types; the decision functions only ever see these.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TenureUnit(str, Enum):
    """Billing granularity of a rental."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class DiscountType(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class AvailabilityStatus(str, Enum):
    GREEN = "green"    # fully available
    YELLOW = "yellow"  # partially booked
    RED = "red"        # fully booked


class ReservationStatus(str, Enum):
    """Physical lifecycle of a reservation."""

    RESERVED = "reserved"
    PICKED_UP = "picked_up"
    EXTENDED = "extended"
    LATE = "late"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class InstallmentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


class PromoType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# ---------------------------------------------------------------------------
# Catalog & pricing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Product:
    """A rentable product, read-only to the engine."""

    id: str
    base_price: Decimal
    quantity_on_hand: int
    name: str = ""


@dataclass(frozen=True)
class Discount:
    type: DiscountType
    value: Decimal
    code: str = ""


@dataclass(frozen=True)
class PricelistRule:
    """Rate multipliers (fractions of base price) per tenure unit."""

    name: str
    hourly: Decimal
    daily: Decimal
    weekly: Decimal
    monthly: Decimal
    discounts: tuple[Discount, ...] = ()

    def rate_for(self, unit: TenureUnit) -> Decimal:
        return {
            TenureUnit.HOUR: self.hourly,
            TenureUnit.DAY: self.daily,
            TenureUnit.WEEK: self.weekly,
            TenureUnit.MONTH: self.monthly,
        }[unit]


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    deposit: Decimal
    duration: int = 1
    unit_rate: Decimal = Decimal("0")
    pricelist: str = "standard"


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------

@dataclass
class Reservation:
    """A reservation of ``quantity`` units of one product for a window."""

    product_id: str
    order_id: str
    start_at: datetime
    end_at: datetime
    price: Decimal
    deposit: Decimal
    quantity: int = 1
    status: ReservationStatus = ReservationStatus.RESERVED
    tenure_unit: TenureUnit = TenureUnit.DAY
    pricelist: str = "standard"
    id: str = field(default_factory=lambda: new_id("RES"))
    late_fee: Decimal = Decimal("0")
    additional_charges: Decimal = Decimal("0")
    deductions: Decimal = Decimal("0")
    deposit_refund: Optional[Decimal] = None
    condition: Optional[str] = None
    picked_up_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    marked_late_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ReservationStatus.RETURNED, ReservationStatus.CANCELLED)

    @property
    def total_due(self) -> Decimal:
        """Rent plus everything charged after checkout."""
        return self.price + self.late_fee + self.additional_charges

    def to_dict(self) -> dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "product_id": self.product_id,
            "order_id": self.order_id,
            "quantity": self.quantity,
            "start_at": iso(self.start_at),
            "end_at": iso(self.end_at),
            "status": self.status.value,
            "tenure_unit": self.tenure_unit.value,
            "pricelist": self.pricelist,
            "price": str(self.price),
            "deposit": str(self.deposit),
            "late_fee": str(self.late_fee),
            "additional_charges": str(self.additional_charges),
            "deductions": str(self.deductions),
            "deposit_refund": str(self.deposit_refund) if self.deposit_refund is not None else None,
            "condition": self.condition,
            "picked_up_at": iso(self.picked_up_at),
            "returned_at": iso(self.returned_at),
            "marked_late_at": iso(self.marked_late_at),
            "cancelled_at": iso(self.cancelled_at),
            "version": self.version,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


@dataclass(frozen=True)
class LifecycleEvent:
    """Immutable audit record of one committed transition."""

    reservation_id: str
    from_status: ReservationStatus
    to_status: ReservationStatus
    timestamp: datetime
    actor: str = "system"
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "metadata": self.metadata,
        }


# ---------------------------------------------------------------------------
# Installments
# ---------------------------------------------------------------------------

@dataclass
class Installment:
    sequence: int
    amount: Decimal
    due_date: datetime
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_at: Optional[datetime] = None
    reminder_sent: bool = False
    overdue_notice_sent: bool = False
    id: str = field(default_factory=lambda: new_id("INST"))


@dataclass
class InstallmentPlan:
    order_id: str
    total_amount: Decimal
    installments: list[Installment]
    status: PlanStatus = PlanStatus.ACTIVE
    id: str = field(default_factory=lambda: new_id("PLAN"))
    created_at: datetime = field(default_factory=utcnow)

    def find(self, installment_id: str) -> Optional[Installment]:
        return next((i for i in self.installments if i.id == installment_id), None)

    @property
    def all_paid(self) -> bool:
        return all(i.status == InstallmentStatus.PAID for i in self.installments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "installments": [
                {
                    "id": i.id,
                    "sequence": i.sequence,
                    "amount": str(i.amount),
                    "due_date": i.due_date.isoformat(),
                    "status": i.status.value,
                    "paid_at": i.paid_at.isoformat() if i.paid_at else None,
                    "reminder_sent": i.reminder_sent,
                    "overdue_notice_sent": i.overdue_notice_sent,
                }
                for i in self.installments
            ],
        }


NOTICE_REMINDER = "installment_reminder"
NOTICE_OVERDUE = "installment_overdue"


@dataclass(frozen=True)
class ScheduledNotification:
    """A customer notice about one installment, due at ``send_at``."""

    kind: str  # NOTICE_REMINDER | NOTICE_OVERDUE
    order_id: str
    installment_id: str
    send_at: datetime
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "order_id": self.order_id,
            "installment_id": self.installment_id,
            "send_at": self.send_at.isoformat(),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduledNotification":
        return cls(
            kind=data["kind"],
            order_id=data["order_id"],
            installment_id=data["installment_id"],
            send_at=datetime.fromisoformat(data["send_at"]),
            message=data["message"],
        )


# ---------------------------------------------------------------------------
# Promo codes
# ---------------------------------------------------------------------------

@dataclass
class PromoCode:
    code: str
    type: PromoType
    value: Decimal
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    min_order_amount: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    used_count: int = 0
    is_active: bool = True
    description: str = ""
    id: str = field(default_factory=lambda: new_id("PROMO"))

    @property
    def key(self) -> str:
        return self.code.lower()

    @property
    def has_uses_left(self) -> bool:
        return self.usage_limit is None or self.used_count < self.usage_limit
