"""Rentals repository: async SQLAlchemy implementations of the engine stores.

Each store takes a session factory and runs every call in its own short
transaction (``session_scope``). Concurrency safety comes from conditional
UPDATEs rather than from holding a session open:

- reservations: ``UPDATE ... WHERE id = :id AND version = :expected``
- promo codes:  ``UPDATE ... SET used_count = used_count + 1
  WHERE code_key = :key AND (usage_limit IS NULL OR used_count < usage_limit)``,
  given back with ``used_count - 1 WHERE used_count > 0``
"""

from typing import Generic, Iterable, Optional, TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import get_session_factory, session_scope
from core.models.base import Base
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
from engine.stores import (
    AuditLog,
    InstallmentPlanStore,
    ProductCatalog,
    PromoCodeStore,
    ReservationStore,
)
from rentals.models.db_models import (
    InstallmentPlanRow,
    InstallmentRow,
    LifecycleEventRow,
    ProductRow,
    PromoCodeRow,
    ReservationRow,
)

RowT = TypeVar("RowT", bound=Base)


# ---------------------------------------------------------------------------
# Base repository
# ---------------------------------------------------------------------------

class BaseRepository(Generic[RowT]):
    """Generic async repository over one row type.

    Subclass and set ``model``::

        class ProductRepository(BaseRepository[ProductRow]):
            model = ProductRow
    """

    model: type[RowT]

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or get_session_factory()

    def _session(self):
        return session_scope(self.session_factory)

    async def _get_row(self, session: AsyncSession, item_id: str) -> Optional[RowT]:
        stmt = (
            select(self.model)
            .where(self.model.id == item_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _list_rows(self, session: AsyncSession, *criteria, order_by=None) -> list[RowT]:
        stmt = select(self.model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        result = await session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

class ProductRepository(BaseRepository[ProductRow], ProductCatalog):
    model = ProductRow

    async def get_product(self, product_id: str) -> Product:
        async with self._session() as session:
            row = await self._get_row(session, product_id)
            if row is None:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)
            return row.to_domain()

    async def add_product(self, product: Product) -> Product:
        async with self._session() as session:
            session.add(ProductRow.from_domain(product))
        return product

    async def list_products(self) -> list[Product]:
        async with self._session() as session:
            rows = await self._list_rows(session, order_by=ProductRow.name)
            return [row.to_domain() for row in rows]


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------

class ReservationRepository(BaseRepository[ReservationRow], ReservationStore):
    model = ReservationRow

    async def create_reservation(self, reservation: Reservation) -> Reservation:
        async with self._session() as session:
            row = ReservationRow.from_domain(reservation)
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return row.to_domain()

    async def get_reservation(self, reservation_id: str) -> Reservation:
        async with self._session() as session:
            row = await self._get_row(session, reservation_id)
            if row is None:
                raise NotFound(f"Reservation {reservation_id} not found", reservation_id=reservation_id)
            return row.to_domain()

    async def update_reservation(self, reservation: Reservation, expected_version: int) -> Reservation:
        async with self._session() as session:
            stmt = (
                update(ReservationRow)
                .where(
                    ReservationRow.id == reservation.id,
                    ReservationRow.version == expected_version,
                )
                .values(
                    **ReservationRow.values_from(reservation),
                    version=expected_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            row = await self._get_row(session, reservation.id)
            if row is None:
                raise NotFound(f"Reservation {reservation.id} not found", reservation_id=reservation.id)
            if result.rowcount == 0:
                raise ConcurrentUpdate(
                    f"Reservation {reservation.id} changed concurrently",
                    expected_version=expected_version,
                    actual_version=row.version,
                )
            return row.to_domain()

    async def list_reservations(self, status=None, product_id=None) -> list[Reservation]:
        criteria = []
        if status is not None:
            if isinstance(status, (str, ReservationStatus)):
                status = [status]
            criteria.append(ReservationRow.status.in_([ReservationStatus(s).value for s in status]))
        if product_id is not None:
            criteria.append(ReservationRow.product_id == product_id)
        async with self._session() as session:
            rows = await self._list_rows(session, *criteria, order_by=ReservationRow.start_at)
            return [row.to_domain() for row in rows]


class AuditLogRepository(BaseRepository[LifecycleEventRow], AuditLog):
    model = LifecycleEventRow

    async def append_lifecycle_event(self, event: LifecycleEvent) -> None:
        async with self._session() as session:
            session.add(LifecycleEventRow.from_domain(event))

    async def list_events(self, reservation_id: str) -> list[LifecycleEvent]:
        async with self._session() as session:
            rows = await self._list_rows(
                session,
                LifecycleEventRow.reservation_id == reservation_id,
                order_by=LifecycleEventRow.id,
            )
            return [row.to_domain() for row in rows]


# ---------------------------------------------------------------------------
# Promo codes
# ---------------------------------------------------------------------------

class PromoCodeRepository(BaseRepository[PromoCodeRow], PromoCodeStore):
    model = PromoCodeRow

    async def _by_key(self, session: AsyncSession, code: str) -> Optional[PromoCodeRow]:
        stmt = (
            select(PromoCodeRow)
            .where(PromoCodeRow.code_key == code.lower())
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        async with self._session() as session:
            row = await self._by_key(session, code)
            return row.to_domain() if row else None

    async def save(self, promo: PromoCode) -> PromoCode:
        async with self._session() as session:
            row = await self._by_key(session, promo.code)
            if row is None:
                row = PromoCodeRow.from_domain(promo)
                session.add(row)
            else:
                row.update_from(promo)
            await session.flush()
            return row.to_domain()

    async def list_codes(self) -> list[PromoCode]:
        async with self._session() as session:
            rows = await self._list_rows(session, order_by=PromoCodeRow.code_key)
            return [row.to_domain() for row in rows]

    async def increment_usage(self, code: str) -> PromoCode:
        async with self._session() as session:
            stmt = (
                update(PromoCodeRow)
                .where(
                    PromoCodeRow.code_key == code.lower(),
                    or_(
                        PromoCodeRow.usage_limit.is_(None),
                        PromoCodeRow.used_count < PromoCodeRow.usage_limit,
                    ),
                )
                .values(used_count=PromoCodeRow.used_count + 1)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            row = await self._by_key(session, code)
            if row is None:
                raise NotFound(f"Promo code {code} not found", code=code)
            if result.rowcount == 0:
                raise LimitExceeded(
                    f"Promo code {row.code} usage limit exceeded",
                    code=row.code,
                    usage_limit=row.usage_limit,
                )
            return row.to_domain()

    async def release_usage(self, code: str) -> PromoCode:
        async with self._session() as session:
            stmt = (
                update(PromoCodeRow)
                .where(PromoCodeRow.code_key == code.lower(), PromoCodeRow.used_count > 0)
                .values(used_count=PromoCodeRow.used_count - 1)
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)
            row = await self._by_key(session, code)
            if row is None:
                raise NotFound(f"Promo code {code} not found", code=code)
            return row.to_domain()


# ---------------------------------------------------------------------------
# Installment plans
# ---------------------------------------------------------------------------

class InstallmentPlanRepository(BaseRepository[InstallmentPlanRow], InstallmentPlanStore):
    model = InstallmentPlanRow

    async def save_plan(self, plan: InstallmentPlan) -> InstallmentPlan:
        async with self._session() as session:
            row = await self._get_row(session, plan.id)
            if row is None:
                row = InstallmentPlanRow.from_domain(plan)
                session.add(row)
            else:
                row.update_from(plan)
            await session.flush()
            return row.to_domain()

    async def get_plan(self, plan_id: str) -> Optional[InstallmentPlan]:
        async with self._session() as session:
            row = await self._get_row(session, plan_id)
            return row.to_domain() if row else None

    async def get_plan_for_order(self, order_id: str) -> Optional[InstallmentPlan]:
        async with self._session() as session:
            rows = await self._list_rows(
                session,
                InstallmentPlanRow.order_id == order_id,
                order_by=InstallmentPlanRow.created_at,
            )
            return rows[0].to_domain() if rows else None

    async def find_plan_by_installment(self, installment_id: str) -> Optional[InstallmentPlan]:
        async with self._session() as session:
            stmt = (
                select(InstallmentPlanRow)
                .join(InstallmentRow, InstallmentRow.plan_id == InstallmentPlanRow.id)
                .where(InstallmentRow.id == installment_id)
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return row.to_domain() if row else None

    async def list_plans(self) -> list[InstallmentPlan]:
        async with self._session() as session:
            rows = await self._list_rows(session, order_by=InstallmentPlanRow.created_at)
            return [row.to_domain() for row in rows]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def sql_stores(session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> dict:
    """All SQL stores sharing one session factory, keyed like ``build_services`` args."""
    factory = session_factory or get_session_factory()
    return {
        "catalog": ProductRepository(factory),
        "reservations": ReservationRepository(factory),
        "audit_log": AuditLogRepository(factory),
        "promo_store": PromoCodeRepository(factory),
        "plan_store": InstallmentPlanRepository(factory),
    }
