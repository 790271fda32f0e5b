"""Promo code validation and redemption.

``evaluate_promo`` decides whether a code applies to an order and how much it
takes off. ``PromoService`` looks codes up and redeems them; redemption goes
through a per-code lock plus the store's guarded increment, so a code with a
usage limit can never be redeemed past it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from core.resilience.locks import KeyedLock
from engine.errors import ValidationError
from engine.models import PromoCode, PromoType, utcnow
from engine.pricing import round_money
from engine.stores import PromoCodeStore
from engine.timeutils import ensure_utc

logger = logging.getLogger(__name__)

REASON_INVALID = "Invalid or expired promo code"
REASON_EXPIRED = "Promo code has expired"
REASON_EXHAUSTED = "Promo code usage limit exceeded"


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    discount_amount: Decimal = Decimal("0")
    final_amount: Decimal = Decimal("0")
    reason: Optional[str] = None
    promo: Optional[PromoCode] = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "discount_amount": str(self.discount_amount),
            "final_amount": str(self.final_amount),
            "reason": self.reason,
            "code": self.promo.code if self.promo else None,
        }


def compute_discount(promo: PromoCode, order_amount: Decimal) -> Decimal:
    if promo.type == PromoType.PERCENTAGE:
        discount = order_amount * promo.value / Decimal("100")
        if promo.max_discount is not None:
            discount = min(discount, promo.max_discount)
    else:
        discount = promo.value
    return round_money(min(max(discount, Decimal("0")), order_amount))


def evaluate_promo(promo: Optional[PromoCode], order_amount: Decimal, now: datetime) -> PromoValidation:
    """Run the checks in order and stop at the first failure."""
    order_amount = Decimal(order_amount)

    def reject(reason: str) -> PromoValidation:
        return PromoValidation(valid=False, final_amount=order_amount, reason=reason, promo=promo)

    if promo is None or not promo.is_active:
        return reject(REASON_INVALID)

    now = ensure_utc(now)
    if promo.valid_from is not None and now < ensure_utc(promo.valid_from):
        return reject(REASON_EXPIRED)
    if promo.valid_until is not None and now > ensure_utc(promo.valid_until):
        return reject(REASON_EXPIRED)

    if not promo.has_uses_left:
        return reject(REASON_EXHAUSTED)

    if promo.min_order_amount is not None and order_amount < promo.min_order_amount:
        return reject(f"Minimum order amount {promo.min_order_amount} required")

    discount = compute_discount(promo, order_amount)
    return PromoValidation(
        valid=True,
        discount_amount=discount,
        final_amount=order_amount - discount,
        promo=promo,
    )


class PromoService:
    def __init__(self, store: PromoCodeStore, locks: Optional[KeyedLock] = None):
        self.store = store
        self.locks = locks or KeyedLock("promo_codes")

    async def validate(self, code: str, order_amount: Decimal, now: Optional[datetime] = None) -> PromoValidation:
        if not code or not code.strip():
            raise ValidationError("Promo code is required")
        order_amount = Decimal(order_amount)
        if order_amount < 0:
            raise ValidationError("order_amount must not be negative", order_amount=str(order_amount))

        promo = await self.store.get_by_code(code.strip())
        result = evaluate_promo(promo, order_amount, now or utcnow())
        if not result.valid:
            logger.info("Promo %s rejected: %s", code, result.reason)
        return result

    async def apply(self, code: str) -> PromoCode:
        """Redeem one use. Raises ``NotFound`` or ``LimitExceeded``."""
        if not code or not code.strip():
            raise ValidationError("Promo code is required")
        code = code.strip()
        async with self.locks.hold(code.lower()):
            promo = await self.store.increment_usage(code)
        logger.info("Promo %s redeemed (%d/%s)", promo.code, promo.used_count, promo.usage_limit or "unlimited")
        return promo

    async def release(self, code: str) -> PromoCode:
        """Undo one redemption, e.g. when the order it paid for was not written."""
        code = code.strip()
        async with self.locks.hold(code.lower()):
            promo = await self.store.release_usage(code)
        logger.warning("Promo %s redemption released (%d/%s)", promo.code, promo.used_count, promo.usage_limit or "unlimited")
        return promo

    async def list_active(self, now: Optional[datetime] = None) -> list[PromoCode]:
        now = ensure_utc(now or utcnow())
        return [
            p for p in await self.store.list_codes()
            if p.is_active
            and (p.valid_until is None or ensure_utc(p.valid_until) >= now)
            and p.has_uses_left
        ]

    async def create(self, promo: PromoCode) -> PromoCode:
        if not promo.code.strip():
            raise ValidationError("Promo code is required")
        if promo.value < 0:
            raise ValidationError("Promo value must not be negative", value=str(promo.value))
        return await self.store.save(promo)
