"""SQLAlchemy models for the rentals vertical.

Rows mirror the engine's dataclasses. ``to_domain()`` and ``from_domain()``
are the only translation points; repositories never hand rows to services.
Money columns are ``Numeric`` so amounts round-trip as ``Decimal``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.models.base import AuditMixin, Base
from engine.models import (
    Installment,
    InstallmentPlan,
    InstallmentStatus,
    LifecycleEvent,
    PlanStatus,
    Product,
    PromoCode,
    PromoType,
    Reservation,
    ReservationStatus,
    TenureUnit,
)
from engine.timeutils import ensure_utc

Money = Numeric(14, 2)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back.
    return ensure_utc(value) if value is not None else None


class ProductRow(AuditMixin, Base):
    """A rentable product."""

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    base_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    quantity_on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_domain(self) -> Product:
        return Product(
            id=self.id,
            name=self.name,
            base_price=Decimal(self.base_price),
            quantity_on_hand=self.quantity_on_hand,
        )

    @classmethod
    def from_domain(cls, product: Product) -> "ProductRow":
        return cls(
            id=product.id,
            name=product.name,
            base_price=product.base_price,
            quantity_on_hand=product.quantity_on_hand,
        )


class ReservationRow(AuditMixin, Base):
    """A reservation of one product for a window. ``version`` guards updates."""

    __tablename__ = "reservations"

    product_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    tenure_unit: Mapped[str] = mapped_column(String(10), nullable=False, default="day")
    pricelist: Mapped[str] = mapped_column(String(50), nullable=False, default="standard")
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    deposit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    late_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    additional_charges: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    deductions: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    deposit_refund: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    condition: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    marked_late_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Columns a transition may change. id, product_id, order_id, quantity and
    # created_at are fixed at checkout.
    MUTABLE = (
        "start_at", "end_at", "status", "price", "deposit", "late_fee",
        "additional_charges", "deductions", "deposit_refund", "condition",
        "picked_up_at", "returned_at", "marked_late_at", "cancelled_at",
    )

    @staticmethod
    def values_from(reservation: Reservation) -> dict[str, Any]:
        values = {name: getattr(reservation, name) for name in ReservationRow.MUTABLE}
        values["status"] = reservation.status.value
        return values

    def to_domain(self) -> Reservation:
        return Reservation(
            id=self.id,
            product_id=self.product_id,
            order_id=self.order_id,
            quantity=self.quantity,
            start_at=_utc(self.start_at),
            end_at=_utc(self.end_at),
            status=ReservationStatus(self.status),
            tenure_unit=TenureUnit(self.tenure_unit),
            pricelist=self.pricelist,
            price=Decimal(self.price),
            deposit=Decimal(self.deposit),
            late_fee=Decimal(self.late_fee),
            additional_charges=Decimal(self.additional_charges),
            deductions=Decimal(self.deductions),
            deposit_refund=Decimal(self.deposit_refund) if self.deposit_refund is not None else None,
            condition=self.condition,
            picked_up_at=_utc(self.picked_up_at),
            returned_at=_utc(self.returned_at),
            marked_late_at=_utc(self.marked_late_at),
            cancelled_at=_utc(self.cancelled_at),
            version=self.version,
            created_at=_utc(self.created_at),
            updated_at=_utc(self.updated_at),
        )

    @classmethod
    def from_domain(cls, reservation: Reservation) -> "ReservationRow":
        return cls(
            id=reservation.id,
            product_id=reservation.product_id,
            order_id=reservation.order_id,
            quantity=reservation.quantity,
            tenure_unit=reservation.tenure_unit.value,
            pricelist=reservation.pricelist,
            version=reservation.version,
            created_at=reservation.created_at,
            updated_at=reservation.updated_at,
            **cls.values_from(reservation),
        )


class LifecycleEventRow(Base):
    """Append-only audit trail of reservation transitions."""

    __tablename__ = "reservation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reservation_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False, default="system")
    # "metadata" is reserved on declarative classes.
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    def to_domain(self) -> LifecycleEvent:
        return LifecycleEvent(
            reservation_id=self.reservation_id,
            from_status=ReservationStatus(self.from_status),
            to_status=ReservationStatus(self.to_status),
            timestamp=_utc(self.timestamp),
            actor=self.actor,
            metadata=dict(self.event_metadata or {}),
        )

    @classmethod
    def from_domain(cls, event: LifecycleEvent) -> "LifecycleEventRow":
        return cls(
            reservation_id=event.reservation_id,
            from_status=event.from_status.value,
            to_status=event.to_status.value,
            timestamp=event.timestamp,
            actor=event.actor,
            event_metadata=dict(event.metadata),
        )


class PromoCodeRow(AuditMixin, Base):
    """A promo code. ``code_key`` is the lowercased code for lookups."""

    __tablename__ = "promo_codes"

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    code_key: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    min_order_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    max_discount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    EDITABLE = (
        "code", "value", "valid_from", "valid_until", "min_order_amount",
        "max_discount", "usage_limit", "is_active", "description",
    )

    def to_domain(self) -> PromoCode:
        return PromoCode(
            id=self.id,
            code=self.code,
            type=PromoType(self.type),
            value=Decimal(self.value),
            valid_from=_utc(self.valid_from),
            valid_until=_utc(self.valid_until),
            min_order_amount=Decimal(self.min_order_amount) if self.min_order_amount is not None else None,
            max_discount=Decimal(self.max_discount) if self.max_discount is not None else None,
            usage_limit=self.usage_limit,
            used_count=self.used_count,
            is_active=self.is_active,
            description=self.description,
        )

    def update_from(self, promo: PromoCode) -> None:
        # used_count only moves through the guarded increment.
        for name in self.EDITABLE:
            setattr(self, name, getattr(promo, name))
        self.type = promo.type.value

    @classmethod
    def from_domain(cls, promo: PromoCode) -> "PromoCodeRow":
        row = cls(id=promo.id, code_key=promo.key, used_count=promo.used_count)
        row.update_from(promo)
        return row


class InstallmentPlanRow(AuditMixin, Base):
    """An installment plan for one order."""

    __tablename__ = "installment_plans"

    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    installments: Mapped[list["InstallmentRow"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="InstallmentRow.sequence",
        lazy="selectin",
    )

    def to_domain(self) -> InstallmentPlan:
        return InstallmentPlan(
            id=self.id,
            order_id=self.order_id,
            total_amount=Decimal(self.total_amount),
            status=PlanStatus(self.status),
            created_at=_utc(self.created_at),
            installments=[row.to_domain() for row in self.installments],
        )

    def update_from(self, plan: InstallmentPlan) -> None:
        self.status = plan.status.value
        by_id = {row.id: row for row in self.installments}
        for inst in plan.installments:
            row = by_id.get(inst.id)
            if row is None:
                self.installments.append(InstallmentRow.from_domain(inst))
                continue
            row.status = inst.status.value
            row.paid_at = inst.paid_at
            row.reminder_sent = inst.reminder_sent
            row.overdue_notice_sent = inst.overdue_notice_sent

    @classmethod
    def from_domain(cls, plan: InstallmentPlan) -> "InstallmentPlanRow":
        return cls(
            id=plan.id,
            order_id=plan.order_id,
            total_amount=plan.total_amount,
            status=plan.status.value,
            created_at=plan.created_at,
            installments=[InstallmentRow.from_domain(i) for i in plan.installments],
        )


class InstallmentRow(Base):
    """One scheduled payment within a plan."""

    __tablename__ = "installments"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    plan_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("installment_plans.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    overdue_notice_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    plan: Mapped["InstallmentPlanRow"] = relationship(back_populates="installments")

    def to_domain(self) -> Installment:
        return Installment(
            id=self.id,
            sequence=self.sequence,
            amount=Decimal(self.amount),
            due_date=_utc(self.due_date),
            status=InstallmentStatus(self.status),
            paid_at=_utc(self.paid_at),
            reminder_sent=self.reminder_sent,
            overdue_notice_sent=self.overdue_notice_sent,
        )

    @classmethod
    def from_domain(cls, installment: Installment) -> "InstallmentRow":
        return cls(
            id=installment.id,
            sequence=installment.sequence,
            amount=installment.amount,
            due_date=installment.due_date,
            status=installment.status.value,
            paid_at=installment.paid_at,
            reminder_sent=installment.reminder_sent,
            overdue_notice_sent=installment.overdue_notice_sent,
        )
