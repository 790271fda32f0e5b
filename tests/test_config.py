"""Test configuration defaults and environment overrides."""
from decimal import Decimal

from engine.config import InstallmentConfig, RentalConfig


def test_defaults():
    config = RentalConfig.default()
    assert config.pricing.minimum_deposit == Decimal("500")
    assert config.lifecycle.grace_period_days == 1
    assert config.lifecycle.extension_pricing == "repricing"
    assert config.sweeper.statuses == ("picked_up", "extended")


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("RENTAL_GRACE_PERIOD_DAYS", "2")
    monkeypatch.setenv("RENTAL_LATE_FEE_PER_DAY", "150")
    monkeypatch.setenv("RENTAL_SWEEP_CONCURRENCY", "4")
    monkeypatch.setenv("RENTAL_NOTIFY_MAX_RETRIES", "5")

    config = RentalConfig.from_env()

    assert config.lifecycle.grace_period_days == 2
    assert config.lifecycle.late_fee_per_day == Decimal("150")
    assert config.sweeper.concurrency == 4
    assert config.notifications.max_retries == 5
    assert config.pricing.minimum_deposit == Decimal("500")


def test_empty_env_values_are_ignored(monkeypatch):
    monkeypatch.setenv("RENTAL_GRACE_PERIOD_DAYS", "")
    assert RentalConfig.from_env().lifecycle.grace_period_days == 1


def test_plan_types():
    config = InstallmentConfig()
    assert config.installments_for("2-months") == 2
    assert config.installments_for("3-months") == 3
    assert config.installments_for("monthly") is None
