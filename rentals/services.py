"""Wiring: build every engine service once per application.

Services hold the keyed locks, so they must be shared across requests. The
FastAPI app builds one ``RentalServices`` at startup and keeps it on
``app.state``; tests build one over the in-memory stores.
"""

from dataclasses import dataclass
from typing import Optional

from core.resilience.dlq import DeadLetterQueue
from engine.checkout import CheckoutService
from engine.config import RentalConfig
from engine.installments import InstallmentService
from engine.lifecycle import LifecycleService
from engine.notifications import CustomerNotifier, NotificationDispatcher
from engine.pricing import PricingCalculator
from engine.promos import PromoService
from engine.stores import (
    AuditLog,
    InMemoryAuditLog,
    InMemoryInstallmentPlanStore,
    InMemoryProductCatalog,
    InMemoryPromoCodeStore,
    InMemoryReservationStore,
    InstallmentPlanStore,
    ProductCatalog,
    PromoCodeStore,
    ReservationStore,
)
from engine.sweeper import LateReturnSweeper


@dataclass
class RentalServices:
    config: RentalConfig
    catalog: ProductCatalog
    reservations: ReservationStore
    audit_log: AuditLog
    pricing: PricingCalculator
    lifecycle: LifecycleService
    promos: PromoService
    installments: InstallmentService
    checkout: CheckoutService
    dispatcher: NotificationDispatcher
    sweeper: LateReturnSweeper


def build_services(
    catalog: ProductCatalog,
    reservations: ReservationStore,
    audit_log: AuditLog,
    promo_store: PromoCodeStore,
    plan_store: InstallmentPlanStore,
    config: Optional[RentalConfig] = None,
    notifier: Optional[CustomerNotifier] = None,
    dlq: Optional[DeadLetterQueue] = None,
    tracer=None,
) -> RentalServices:
    config = config or RentalConfig.default()
    pricing = PricingCalculator(config.pricing)
    lifecycle = LifecycleService(
        reservations, audit_log, catalog=catalog, config=config, pricing=pricing, tracer=tracer
    )
    promos = PromoService(promo_store)
    dispatcher = NotificationDispatcher(notifier, config.notifications, dlq=dlq)
    installments = InstallmentService(plan_store, config.installments, dispatcher=dispatcher)
    checkout = CheckoutService(
        catalog,
        reservations,
        promos=promos,
        installments=installments,
        pricing=pricing,
        config=config,
        tracer=tracer,
    )
    sweeper = LateReturnSweeper(reservations, lifecycle, dispatcher, config=config, tracer=tracer)
    return RentalServices(
        config=config,
        catalog=catalog,
        reservations=reservations,
        audit_log=audit_log,
        pricing=pricing,
        lifecycle=lifecycle,
        promos=promos,
        installments=installments,
        checkout=checkout,
        dispatcher=dispatcher,
        sweeper=sweeper,
    )


def build_in_memory_services(
    catalog: Optional[InMemoryProductCatalog] = None,
    promo_store: Optional[InMemoryPromoCodeStore] = None,
    config: Optional[RentalConfig] = None,
    notifier: Optional[CustomerNotifier] = None,
) -> RentalServices:
    """Services over fresh in-memory stores, for tests and demos."""
    return build_services(
        catalog=catalog or InMemoryProductCatalog(),
        reservations=InMemoryReservationStore(),
        audit_log=InMemoryAuditLog(),
        promo_store=promo_store or InMemoryPromoCodeStore(),
        plan_store=InMemoryInstallmentPlanStore(),
        config=config,
        notifier=notifier,
    )
