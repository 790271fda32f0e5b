"""Rental pricing: pricelist resolution, rent and deposit.

Pure functions over values passed in. Given a product, a tenure unit, a date
range and a pricelist name, produce the rent and the refundable deposit.

Two fallbacks are deliberate and logged rather than raised:
- an unknown pricelist resolves to ``standard``
- an unknown tenure unit prices at 0

Callers that want strictness validate upfront with ``validate_tenure_unit``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from engine.config import PricingConfig
from engine.errors import NotFound, ValidationError
from engine.models import DiscountType, PriceQuote, PricelistRule, Product, TenureUnit
from engine.timeutils import ensure_utc, whole_days_between, whole_months_between

logger = logging.getLogger(__name__)

WHOLE_UNIT = Decimal("1")


def round_money(amount: Decimal) -> Decimal:
    """Round to the nearest whole currency unit, halves up."""
    return amount.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def validate_tenure_unit(value: TenureUnit | str) -> TenureUnit:
    """Coerce to ``TenureUnit`` or raise ``ValidationError``."""
    try:
        return TenureUnit(value)
    except ValueError:
        allowed = [u.value for u in TenureUnit]
        raise ValidationError(
            f"Unknown tenure unit {value!r}. Allowed: {allowed}",
            tenure_unit=str(value),
        ) from None


def validate_rental_window(start_at: datetime, end_at: datetime) -> tuple[datetime, datetime]:
    """Return the window in UTC, or raise ``ValidationError`` unless it moves forward."""
    start_at, end_at = ensure_utc(start_at), ensure_utc(end_at)
    if end_at <= start_at:
        raise ValidationError(
            "end_at must be after start_at",
            start_at=start_at.isoformat(),
            end_at=end_at.isoformat(),
        )
    return start_at, end_at


# ---------------------------------------------------------------------------
# Pricelist resolver
# ---------------------------------------------------------------------------

class PricelistCatalog:
    """Named pricelist rules with fallback to the default list."""

    def __init__(self, rules: Iterable[PricelistRule], default: str = "standard"):
        self._rules: dict[str, PricelistRule] = {rule.name: rule for rule in rules}
        self.default = default
        if default not in self._rules:
            raise NotFound(f"Default pricelist {default!r} is not defined", pricelist=default)

    @classmethod
    def from_config(cls, config: PricingConfig) -> "PricelistCatalog":
        return cls(config.pricelists, default=config.default_pricelist)

    def resolve(self, name: str | None) -> PricelistRule:
        rule = self._rules.get(name or self.default)
        if rule is None:
            logger.warning("Unknown pricelist %r, falling back to %r", name, self.default)
            return self._rules[self.default]
        return rule

    def names(self) -> list[str]:
        return sorted(self._rules)

    @property
    def rules(self) -> Mapping[str, PricelistRule]:
        return dict(self._rules)


def apply_discounts(subtotal: Decimal, rule: PricelistRule) -> Decimal:
    """Apply the rule's discounts in order, clamping the result at zero."""
    total = subtotal
    for discount in rule.discounts:
        if discount.type == DiscountType.PERCENT:
            total = total * (Decimal("100") - discount.value) / Decimal("100")
        elif discount.type == DiscountType.FIXED:
            total = total - discount.value
    return max(Decimal("0"), total)


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------

def tenure_duration(unit: TenureUnit, start_at: datetime, end_at: datetime) -> int:
    """Whole tenure units between the two instants, never less than 1."""
    start, end = ensure_utc(start_at), ensure_utc(end_at)
    if unit == TenureUnit.HOUR:
        duration = int((end - start).total_seconds() // 3600)
    elif unit == TenureUnit.DAY:
        duration = whole_days_between(start, end)
    elif unit == TenureUnit.WEEK:
        duration = whole_days_between(start, end) // 7
    else:
        duration = whole_months_between(start, end)
    return max(duration, 1)


def calculate_deposit(product: Product, config: PricingConfig) -> Decimal:
    """Refundable hold: a share of the base price with a floor. Independent of duration."""
    return round_money(max(config.minimum_deposit, product.base_price * config.deposit_rate))


class PricingCalculator:
    """Prices rentals against a pricelist catalog.

    Usage::

        calculator = PricingCalculator(RentalConfig.default().pricing)
        quote = calculator.calculate_price(product, "day", start, end, "student")
    """

    def __init__(self, config: PricingConfig | None = None, catalog: PricelistCatalog | None = None):
        self.config = config or PricingConfig()
        self.catalog = catalog or PricelistCatalog.from_config(self.config)

    def calculate_price(
        self,
        product: Product,
        tenure_unit: TenureUnit | str,
        start_at: datetime,
        end_at: datetime,
        pricelist_name: str | None = None,
    ) -> PriceQuote:
        rule = self.catalog.resolve(pricelist_name)
        deposit = calculate_deposit(product, self.config)

        try:
            unit = TenureUnit(tenure_unit)
        except ValueError:
            logger.warning("Unknown tenure unit %r for product %s, pricing at 0", tenure_unit, product.id)
            return PriceQuote(price=Decimal("0"), deposit=deposit, pricelist=rule.name)

        duration = tenure_duration(unit, start_at, end_at)
        unit_rate = product.base_price * rule.rate_for(unit)
        price = round_money(apply_discounts(unit_rate * duration, rule))

        return PriceQuote(
            price=price,
            deposit=deposit,
            duration=duration,
            unit_rate=unit_rate,
            pricelist=rule.name,
        )

    def unit_rate(
        self,
        product: Product,
        tenure_unit: TenureUnit | str,
        pricelist_name: str | None = None,
    ) -> Decimal:
        """Rounded price of a single tenure unit before discounts, for display."""
        rule = self.catalog.resolve(pricelist_name)
        unit = validate_tenure_unit(tenure_unit)
        return round_money(product.base_price * rule.rate_for(unit))


def calculate_price(
    product: Product,
    tenure_unit: TenureUnit | str,
    start_at: datetime,
    end_at: datetime,
    pricelist_name: str = "standard",
    config: PricingConfig | None = None,
) -> PriceQuote:
    """Module-level shortcut over ``PricingCalculator`` with default config."""
    return PricingCalculator(config).calculate_price(
        product, tenure_unit, start_at, end_at, pricelist_name
    )
