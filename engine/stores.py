"""Storage interfaces the engine depends on, plus in-memory implementations.

The engine never holds module-level state. Services receive these stores in
their constructors; production wires the SQLAlchemy repositories from
``rentals.repository``, tests wire the in-memory classes below.

In-memory stores hand out copies so callers cannot mutate stored state
without going through ``update_*``/``save_*``.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Iterable

from engine.errors import ConcurrentUpdate, LimitExceeded, NotFound
from engine.models import (
    InstallmentPlan,
    LifecycleEvent,
    Product,
    PromoCode,
    Reservation,
    ReservationStatus,
    utcnow,
)


def _statuses(status: ReservationStatus | str | Iterable[ReservationStatus | str] | None) -> set[ReservationStatus] | None:
    if status is None:
        return None
    if isinstance(status, (str, ReservationStatus)):
        return {ReservationStatus(status)}
    return {ReservationStatus(s) for s in status}


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class ProductCatalog(ABC):
    """Read-only product lookup."""

    @abstractmethod
    async def get_product(self, product_id: str) -> Product:
        """Return the product or raise ``NotFound``."""


class ReservationStore(ABC):
    @abstractmethod
    async def create_reservation(self, reservation: Reservation) -> Reservation: ...

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Reservation:
        """Return the reservation or raise ``NotFound``."""

    @abstractmethod
    async def update_reservation(self, reservation: Reservation, expected_version: int) -> Reservation:
        """Persist ``reservation`` if the stored version still equals ``expected_version``.

        Bumps the version on success; raises ``ConcurrentUpdate`` otherwise.
        """

    @abstractmethod
    async def list_reservations(
        self,
        status: ReservationStatus | str | Iterable[ReservationStatus | str] | None = None,
        product_id: str | None = None,
    ) -> list[Reservation]: ...


class AuditLog(ABC):
    """Append-only lifecycle history."""

    @abstractmethod
    async def append_lifecycle_event(self, event: LifecycleEvent) -> None: ...

    @abstractmethod
    async def list_events(self, reservation_id: str) -> list[LifecycleEvent]: ...


class PromoCodeStore(ABC):
    @abstractmethod
    async def get_by_code(self, code: str) -> PromoCode | None:
        """Case-insensitive lookup."""

    @abstractmethod
    async def save(self, promo: PromoCode) -> PromoCode: ...

    @abstractmethod
    async def list_codes(self) -> list[PromoCode]: ...

    @abstractmethod
    async def increment_usage(self, code: str) -> PromoCode:
        """Atomically add one use, refusing to pass ``usage_limit``.

        Raises ``NotFound`` for unknown codes and ``LimitExceeded`` when the
        code has no uses left.
        """

    @abstractmethod
    async def release_usage(self, code: str) -> PromoCode:
        """Give back one use taken by ``increment_usage``. Never goes below 0."""



class InstallmentPlanStore(ABC):
    @abstractmethod
    async def save_plan(self, plan: InstallmentPlan) -> InstallmentPlan: ...

    @abstractmethod
    async def get_plan(self, plan_id: str) -> InstallmentPlan | None: ...

    @abstractmethod
    async def get_plan_for_order(self, order_id: str) -> InstallmentPlan | None: ...

    @abstractmethod
    async def find_plan_by_installment(self, installment_id: str) -> InstallmentPlan | None: ...

    @abstractmethod
    async def list_plans(self) -> list[InstallmentPlan]: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryProductCatalog(ProductCatalog):
    def __init__(self, products: Iterable[Product] = ()):
        self._products: dict[str, Product] = {p.id: p for p in products}

    def add(self, product: Product) -> None:
        self._products[product.id] = product

    async def get_product(self, product_id: str) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found", product_id=product_id)
        return product


class InMemoryReservationStore(ReservationStore):
    def __init__(self):
        self._reservations: dict[str, Reservation] = {}

    async def create_reservation(self, reservation: Reservation) -> Reservation:
        self._reservations[reservation.id] = copy.deepcopy(reservation)
        return copy.deepcopy(reservation)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        stored = self._reservations.get(reservation_id)
        if stored is None:
            raise NotFound(f"Reservation {reservation_id} not found", reservation_id=reservation_id)
        return copy.deepcopy(stored)

    async def update_reservation(self, reservation: Reservation, expected_version: int) -> Reservation:
        stored = self._reservations.get(reservation.id)
        if stored is None:
            raise NotFound(f"Reservation {reservation.id} not found", reservation_id=reservation.id)
        if stored.version != expected_version:
            raise ConcurrentUpdate(
                f"Reservation {reservation.id} changed concurrently",
                expected_version=expected_version,
                actual_version=stored.version,
            )
        updated = copy.deepcopy(reservation)
        updated.version = expected_version + 1
        updated.updated_at = utcnow()
        self._reservations[updated.id] = updated
        return copy.deepcopy(updated)

    async def list_reservations(self, status=None, product_id=None) -> list[Reservation]:
        wanted = _statuses(status)
        return [
            copy.deepcopy(r)
            for r in self._reservations.values()
            if (wanted is None or r.status in wanted)
            and (product_id is None or r.product_id == product_id)
        ]


class InMemoryAuditLog(AuditLog):
    def __init__(self):
        self._events: list[LifecycleEvent] = []

    async def append_lifecycle_event(self, event: LifecycleEvent) -> None:
        self._events.append(event)

    async def list_events(self, reservation_id: str) -> list[LifecycleEvent]:
        return [e for e in self._events if e.reservation_id == reservation_id]

    @property
    def events(self) -> list[LifecycleEvent]:
        return list(self._events)


class InMemoryPromoCodeStore(PromoCodeStore):
    def __init__(self, promos: Iterable[PromoCode] = ()):
        self._promos: dict[str, PromoCode] = {p.key: copy.deepcopy(p) for p in promos}

    async def get_by_code(self, code: str) -> PromoCode | None:
        promo = self._promos.get(code.lower())
        return copy.deepcopy(promo) if promo else None

    async def save(self, promo: PromoCode) -> PromoCode:
        self._promos[promo.key] = copy.deepcopy(promo)
        return copy.deepcopy(promo)

    async def list_codes(self) -> list[PromoCode]:
        return [copy.deepcopy(p) for p in self._promos.values()]

    async def increment_usage(self, code: str) -> PromoCode:
        # No await between the check and the write: atomic on the event loop.
        promo = self._promos.get(code.lower())
        if promo is None:
            raise NotFound(f"Promo code {code} not found", code=code)
        if not promo.has_uses_left:
            raise LimitExceeded(
                f"Promo code {promo.code} usage limit exceeded",
                code=promo.code,
                usage_limit=promo.usage_limit,
            )
        promo.used_count += 1
        return copy.deepcopy(promo)

    async def release_usage(self, code: str) -> PromoCode:
        promo = self._promos.get(code.lower())
        if promo is None:
            raise NotFound(f"Promo code {code} not found", code=code)
        promo.used_count = max(0, promo.used_count - 1)
        return copy.deepcopy(promo)



class InMemoryInstallmentPlanStore(InstallmentPlanStore):
    def __init__(self):
        self._plans: dict[str, InstallmentPlan] = {}

    async def save_plan(self, plan: InstallmentPlan) -> InstallmentPlan:
        self._plans[plan.id] = copy.deepcopy(plan)
        return copy.deepcopy(plan)

    async def get_plan(self, plan_id: str) -> InstallmentPlan | None:
        plan = self._plans.get(plan_id)
        return copy.deepcopy(plan) if plan else None

    async def get_plan_for_order(self, order_id: str) -> InstallmentPlan | None:
        plan = next((p for p in self._plans.values() if p.order_id == order_id), None)
        return copy.deepcopy(plan) if plan else None

    async def find_plan_by_installment(self, installment_id: str) -> InstallmentPlan | None:
        plan = next((p for p in self._plans.values() if p.find(installment_id)), None)
        return copy.deepcopy(plan) if plan else None

    async def list_plans(self) -> list[InstallmentPlan]:
        return [copy.deepcopy(p) for p in self._plans.values()]
