"""Dataclass-based configuration for the rental engine.

Every threshold, fee and rate the engine uses lives here as a frozen
dataclass with a sensible default. Services take a ``RentalConfig`` in their
constructor so tests can pass tweaked copies instead of patching globals.

Overrides come from environment variables via ``RentalConfig.from_env``.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal

from engine.models import Discount, DiscountType, PricelistRule


# ---------------------------------------------------------------------------
# Built-in pricelists
# ---------------------------------------------------------------------------

DEFAULT_PRICELISTS: tuple[PricelistRule, ...] = (
    PricelistRule(
        name="standard",
        hourly=Decimal("0.01"),
        daily=Decimal("0.06"),
        weekly=Decimal("0.28"),
        monthly=Decimal("0.9"),
    ),
    PricelistRule(
        name="student",
        hourly=Decimal("0.008"),
        daily=Decimal("0.05"),
        weekly=Decimal("0.25"),
        monthly=Decimal("0.8"),
        discounts=(Discount(DiscountType.PERCENT, Decimal("10"), code="STUDENT10"),),
    ),
    PricelistRule(
        name="corporate",
        hourly=Decimal("0.009"),
        daily=Decimal("0.055"),
        weekly=Decimal("0.26"),
        monthly=Decimal("0.85"),
        discounts=(Discount(DiscountType.FIXED, Decimal("500"), code="CORP500"),),
    ),
)


# ---------------------------------------------------------------------------
# Nested config sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PricingConfig:
    """Deposit policy and the pricelist table."""

    minimum_deposit: Decimal = Decimal("500")
    deposit_rate: Decimal = Decimal("0.10")
    default_pricelist: str = "standard"
    pricelists: tuple[PricelistRule, ...] = DEFAULT_PRICELISTS


@dataclass(frozen=True)
class LifecycleConfig:
    """Late fees and extension pricing."""

    grace_period_days: int = 1
    late_fee_per_day: Decimal = Decimal("100")
    # "repricing" runs the pricing calculator over the extra window;
    # "order_total_heuristic" charges extension_daily_rate x order total per day.
    extension_pricing: str = "repricing"
    extension_daily_rate: Decimal = Decimal("0.06")

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)


@dataclass(frozen=True)
class SweeperConfig:
    interval_seconds: float = 300.0
    concurrency: int = 10
    statuses: tuple[str, ...] = ("picked_up", "extended")


@dataclass(frozen=True)
class NotificationConfig:
    """Bounded retry for best-effort notification delivery."""

    timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0


@dataclass(frozen=True)
class InstallmentConfig:
    plan_types: tuple[tuple[str, int], ...] = (("2-months", 2), ("3-months", 3))
    reminder_days_before: int = 3
    overdue_days_after: int = 1

    def installments_for(self, plan_type: str) -> int | None:
        return dict(self.plan_types).get(plan_type)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RentalConfig:
    """Complete configuration for the rental engine.

    Usage::

        config = RentalConfig.default()
        calculator = PricingCalculator(config.pricing)
    """

    pricing: PricingConfig = field(default_factory=PricingConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    installments: InstallmentConfig = field(default_factory=InstallmentConfig)

    @classmethod
    def default(cls) -> "RentalConfig":
        """Create config with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, prefix: str = "RENTAL_") -> "RentalConfig":
        """Create config from environment variables.

        Example: RENTAL_GRACE_PERIOD_DAYS=2 RENTAL_LATE_FEE_PER_DAY=150
        """
        config = cls()

        def env(name: str) -> str | None:
            return os.getenv(f"{prefix}{name}") or None

        pricing = {}
        if env("MINIMUM_DEPOSIT"):
            pricing["minimum_deposit"] = Decimal(env("MINIMUM_DEPOSIT"))
        if env("DEPOSIT_RATE"):
            pricing["deposit_rate"] = Decimal(env("DEPOSIT_RATE"))

        lifecycle = {}
        if env("GRACE_PERIOD_DAYS"):
            lifecycle["grace_period_days"] = int(env("GRACE_PERIOD_DAYS"))
        if env("LATE_FEE_PER_DAY"):
            lifecycle["late_fee_per_day"] = Decimal(env("LATE_FEE_PER_DAY"))
        if env("EXTENSION_PRICING"):
            lifecycle["extension_pricing"] = env("EXTENSION_PRICING")

        sweeper = {}
        if env("SWEEP_INTERVAL_SECONDS"):
            sweeper["interval_seconds"] = float(env("SWEEP_INTERVAL_SECONDS"))
        if env("SWEEP_CONCURRENCY"):
            sweeper["concurrency"] = int(env("SWEEP_CONCURRENCY"))

        notifications = {}
        if env("NOTIFY_TIMEOUT_SECONDS"):
            notifications["timeout_seconds"] = float(env("NOTIFY_TIMEOUT_SECONDS"))
        if env("NOTIFY_MAX_RETRIES"):
            notifications["max_retries"] = int(env("NOTIFY_MAX_RETRIES"))

        return replace(
            config,
            pricing=replace(config.pricing, **pricing),
            lifecycle=replace(config.lifecycle, **lifecycle),
            sweeper=replace(config.sweeper, **sweeper),
            notifications=replace(config.notifications, **notifications),
        )
