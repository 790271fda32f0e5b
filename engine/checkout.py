"""Checkout: turn a cart line into a priced, stock-checked reservation.

Flow, all under one per-product lock so two checkouts cannot both take the
last unit::

    availability gate -> price x quantity -> promo validate -> build plan
    -> promo apply -> create reservation (reserved) -> save plan

A failed write undoes the ones before it: the redemption is released and
the reservation is cancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from core.observability.otel_setup import traced_span
from core.resilience.locks import KeyedLock
from engine.availability import check_quantity_available
from engine.config import RentalConfig
from engine.errors import ExpiredOrInactive, InvalidPlanType, LimitExceeded, ValidationError
from engine.installments import InstallmentService
from engine.models import InstallmentPlan, Reservation, ReservationStatus, TenureUnit, new_id, utcnow
from engine.pricing import PricingCalculator, validate_rental_window, validate_tenure_unit
from engine.promos import REASON_EXPIRED, REASON_INVALID, PromoService, PromoValidation
from engine.stores import ProductCatalog, ReservationStore
from engine.timeutils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class CheckoutRequest:
    product_id: str
    start_at: datetime
    end_at: datetime
    quantity: int = 1
    tenure_unit: TenureUnit | str = TenureUnit.DAY
    pricelist: Optional[str] = None
    promo_code: Optional[str] = None
    plan_type: Optional[str] = None
    order_id: Optional[str] = None


@dataclass
class CheckoutResult:
    reservation: Reservation
    rent: Decimal
    deposit: Decimal
    discount: Decimal = Decimal("0")
    promo_code: Optional[str] = None
    plan: Optional[InstallmentPlan] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def payable(self) -> Decimal:
        """Rent after discount plus the refundable deposit."""
        return self.rent - self.discount + self.deposit

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation": self.reservation.to_dict(),
            "rent": str(self.rent),
            "deposit": str(self.deposit),
            "discount": str(self.discount),
            "payable": str(self.payable),
            "promo_code": self.promo_code,
            "plan": self.plan.to_dict() if self.plan else None,
        }


class CheckoutService:
    def __init__(
        self,
        catalog: ProductCatalog,
        reservations: ReservationStore,
        promos: Optional[PromoService] = None,
        installments: Optional[InstallmentService] = None,
        pricing: Optional[PricingCalculator] = None,
        config: Optional[RentalConfig] = None,
        locks: Optional[KeyedLock] = None,
        tracer=None,
    ):
        self.config = config or RentalConfig.default()
        self.catalog = catalog
        self.reservations = reservations
        self.promos = promos
        self.installments = installments
        self.pricing = pricing or PricingCalculator(self.config.pricing)
        self.locks = locks or KeyedLock("products")
        self.tracer = tracer

    def _validate(self, request: CheckoutRequest) -> TenureUnit:
        if request.quantity < 1:
            raise ValidationError("quantity must be >= 1", quantity=request.quantity)
        unit = validate_tenure_unit(request.tenure_unit)
        validate_rental_window(request.start_at, request.end_at)
        if request.promo_code and self.promos is None:
            raise ValidationError("Promo codes are not enabled", code=request.promo_code)
        if request.plan_type:
            if self.installments is None:
                raise ValidationError("Installment plans are not enabled", plan_type=request.plan_type)
            plans = self.installments.config
            if plans.installments_for(request.plan_type) is None:
                allowed = [name for name, _ in plans.plan_types]
                raise InvalidPlanType(
                    f"Invalid plan type {request.plan_type!r}. Allowed: {allowed}",
                    plan_type=request.plan_type,
                )
        return unit

    async def checkout(self, request: CheckoutRequest, now: Optional[datetime] = None) -> CheckoutResult:
        """Price, reserve and optionally finance one rental.

        Every check (stock, promo, installment plan) runs before the first
        write. The writes are promo redemption, reservation, plan; if a later
        one fails the earlier ones are undone before the error propagates.
        """
        unit = self._validate(request)
        now = ensure_utc(now or utcnow())
        start_at, end_at = ensure_utc(request.start_at), ensure_utc(request.end_at)
        order_id = request.order_id or new_id("ORD")
        product = await self.catalog.get_product(request.product_id)

        with traced_span(self.tracer, "rental.checkout", product_id=product.id, quantity=request.quantity):
            async with self.locks.hold(product.id):
                existing = await self.reservations.list_reservations(product_id=product.id)
                gate = check_quantity_available(product, existing, start_at, end_at, request.quantity)
                if not gate.passed:
                    raise LimitExceeded(gate.message, **gate.details)

                quote = self.pricing.calculate_price(product, unit, start_at, end_at, request.pricelist)
                rent = quote.price * request.quantity
                deposit = quote.deposit * request.quantity

                discount = Decimal("0")
                promo_code = None
                if request.promo_code:
                    validation = await self._validate_promo(request.promo_code, rent, now)
                    discount = validation.discount_amount
                    promo_code = validation.promo.code

                result = CheckoutResult(
                    reservation=Reservation(
                        product_id=product.id,
                        order_id=order_id,
                        start_at=start_at,
                        end_at=end_at,
                        price=rent - discount,
                        deposit=deposit,
                        quantity=request.quantity,
                        status=ReservationStatus.RESERVED,
                        tenure_unit=unit,
                        pricelist=quote.pricelist,
                    ),
                    rent=rent,
                    deposit=deposit,
                    discount=discount,
                    promo_code=promo_code,
                )
                plan = None
                if request.plan_type:
                    plan = self.installments.build(order_id, result.payable, request.plan_type, now=now)

                await self._commit(result, plan, now)

        logger.info(
            "Checkout %s: product=%s qty=%d rent=%s discount=%s deposit=%s",
            result.reservation.id, product.id, request.quantity, rent, discount, deposit,
        )
        return result

    async def _commit(self, result: CheckoutResult, plan: Optional[InstallmentPlan], now: datetime) -> None:
        redeemed = False
        reservation = None
        try:
            if result.promo_code:
                await self.promos.apply(result.promo_code)
                redeemed = True
            reservation = await self.reservations.create_reservation(result.reservation)
            if plan is not None:
                result.plan = await self.installments.save_new_plan(plan)
        except Exception:
            logger.exception("Checkout for order %s failed mid-write, undoing", result.reservation.order_id)
            if reservation is not None:
                await self.reservations.update_reservation(
                    replace(reservation, status=ReservationStatus.CANCELLED, cancelled_at=now),
                    expected_version=reservation.version,
                )
            if redeemed:
                await self.promos.release(result.promo_code)
            raise
        result.reservation = reservation

    async def _validate_promo(self, code: str, amount: Decimal, now: datetime) -> PromoValidation:
        validation = await self.promos.validate(code, amount, now)
        if validation.valid:
            return validation
        if validation.reason in (REASON_INVALID, REASON_EXPIRED):
            raise ExpiredOrInactive(validation.reason, code=code)
        # Usage cap or minimum order threshold.
        raise LimitExceeded(validation.reason, code=code)
