"""Rentals API router: quotes, checkout, lifecycle, promos, installments.

Demonstrates the standard router pattern:
- Engine services injected via FastAPI Depends (one set per app)
- Engine errors translated to HTTP statuses by one exception handler
- Cron endpoints (late returns, installment notices) for external schedulers
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from engine.availability import check_availability, free_quantity
from engine.checkout import CheckoutRequest
from engine.errors import (
    ConcurrentUpdate,
    ExpiredOrInactive,
    InvalidTransition,
    LimitExceeded,
    NotFound,
    RentalEngineError,
    ValidationError,
)
from engine.lifecycle import TransitionContext
from engine.models import PromoCode, utcnow
from engine.pricing import validate_rental_window
from rentals.models.schemas import (
    AvailabilityResponse,
    CheckoutRequestBody,
    InstallmentPlanCreate,
    InstallmentUpdate,
    PromoCreate,
    PromoResponse,
    PromoValidateRequest,
    PromoValidationResponse,
    QuoteRequest,
    QuoteResponse,
    SweepRequest,
    TransitionRequest,
)
from rentals.services import RentalServices

router = APIRouter()

# Most specific first: InvalidPlanType is matched through ValidationError.
ERROR_STATUS: list[tuple[type[RentalEngineError], int]] = [
    (ValidationError, 400),
    (NotFound, 404),
    (InvalidTransition, 409),
    (ConcurrentUpdate, 409),
    (LimitExceeded, 409),
    (ExpiredOrInactive, 410),
]


def status_for(error: RentalEngineError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def rental_error_handler(request: Request, exc: RentalEngineError) -> JSONResponse:
    """Render engine errors as ``{"error", "message", "details"}``."""
    return JSONResponse(status_code=status_for(exc), content=exc.to_dict())


def get_services(request: Request) -> RentalServices:
    """FastAPI dependency for the app-wide engine services."""
    return request.app.state.rental_services


# ============================================================================
# Pricing & availability
# ============================================================================

@router.post("/quote", response_model=QuoteResponse)
async def quote(body: QuoteRequest, services: RentalServices = Depends(get_services)):
    """Price a rental without reserving anything."""
    start_at, end_at = validate_rental_window(body.start_at, body.end_at)
    product = await services.catalog.get_product(body.product_id)
    result = services.pricing.calculate_price(
        product, body.tenure_unit, start_at, end_at, body.pricelist
    )
    return QuoteResponse(
        product_id=product.id,
        price=result.price * body.quantity,
        deposit=result.deposit * body.quantity,
        duration=result.duration,
        unit_rate=result.unit_rate,
        pricelist=result.pricelist,
        quantity=body.quantity,
    )


@router.get("/products/{product_id}/availability", response_model=AvailabilityResponse)
async def availability(
    product_id: str,
    start_at: Optional[str] = Query(None, description="ISO-8601 window start"),
    end_at: Optional[str] = Query(None, description="ISO-8601 window end"),
    services: RentalServices = Depends(get_services),
):
    """Green/yellow/red for a window, or for right now when no window is given."""
    start, end = _parse_window(start_at, end_at)
    product = await services.catalog.get_product(product_id)
    reservations = await services.reservations.list_reservations(product_id=product_id)
    status = check_availability(product, reservations, start, end)
    if start is None:
        now = utcnow()
        start, end = now, now + timedelta(seconds=1)
    return AvailabilityResponse(
        product_id=product.id,
        status=status.value,
        free_quantity=free_quantity(product, reservations, start, end),
        quantity_on_hand=product.quantity_on_hand,
    )


def _parse_window(start_at: Optional[str], end_at: Optional[str]):
    try:
        start = datetime.fromisoformat(start_at) if start_at else None
        end = datetime.fromisoformat(end_at) if end_at else None
    except ValueError as e:
        raise ValidationError(f"Invalid datetime: {e}") from None
    return start, end


# ============================================================================
# Reservations
# ============================================================================

@router.post("/reservations", status_code=201)
async def create_reservation(body: CheckoutRequestBody, services: RentalServices = Depends(get_services)):
    """Checkout: availability gate, pricing, promo, reservation, optional plan."""
    result = await services.checkout.checkout(CheckoutRequest(**body.model_dump()))
    return result.to_dict()


@router.get("/reservations/{reservation_id}")
async def get_reservation(reservation_id: str, services: RentalServices = Depends(get_services)):
    reservation = await services.reservations.get_reservation(reservation_id)
    return reservation.to_dict()


@router.post("/reservations/{reservation_id}/transitions")
async def transition(
    reservation_id: str,
    body: TransitionRequest,
    services: RentalServices = Depends(get_services),
):
    """Move a reservation through its lifecycle (pickup, return, extend, cancel...)."""
    ctx = TransitionContext(
        actor=body.actor,
        deductions=body.deductions,
        condition=body.condition,
        new_end_at=body.new_end_at,
        reason=body.reason,
        metadata=body.metadata,
    )
    result = await services.lifecycle.transition(reservation_id, body.target, ctx)
    return {
        "reservation": result.reservation.to_dict(),
        "previous_status": result.previous_status.value,
        "changed": result.changed,
        "late_fee": str(result.late_fee),
        "deposit_refund": str(result.deposit_refund) if result.deposit_refund is not None else None,
        "additional_charge": str(result.additional_charge),
        "event": result.event.to_dict() if result.event else None,
    }


@router.get("/reservations/{reservation_id}/events")
async def reservation_events(reservation_id: str, services: RentalServices = Depends(get_services)):
    events = await services.lifecycle.history(reservation_id)
    return {"data": [e.to_dict() for e in events], "count": len(events)}


@router.post("/cron/late-returns")
async def sweep_late_returns(
    body: Optional[SweepRequest] = None,
    services: RentalServices = Depends(get_services),
):
    """Run one late-return sweep and report what it did."""
    summary = await services.sweeper.sweep(now=body.now if body else None)
    return summary.to_dict()


@router.post("/cron/installment-notifications")
async def send_installment_notifications(
    body: Optional[SweepRequest] = None,
    services: RentalServices = Depends(get_services),
):
    """Flag overdue installments and send the reminders that have come due."""
    run = await services.installments.send_due_notices(now=body.now if body else None)
    return run.to_dict()



# ============================================================================
# Promo codes
# ============================================================================

@router.post("/promos/validate", response_model=PromoValidationResponse)
async def validate_promo(body: PromoValidateRequest, services: RentalServices = Depends(get_services)):
    result = await services.promos.validate(body.code, body.order_amount)
    return PromoValidationResponse(
        valid=result.valid,
        discount_amount=result.discount_amount,
        final_amount=result.final_amount,
        reason=result.reason,
        code=result.promo.code if result.promo else None,
    )


@router.post("/promos/{code}/apply", response_model=PromoResponse)
async def apply_promo(code: str, services: RentalServices = Depends(get_services)):
    promo = await services.promos.apply(code)
    return PromoResponse(**vars(promo))


@router.get("/promos")
async def list_promos(
    active_only: bool = True,
    services: RentalServices = Depends(get_services),
):
    if active_only:
        promos = await services.promos.list_active()
    else:
        promos = await services.promos.store.list_codes()
    data = [PromoResponse(**vars(p)).model_dump(mode="json") for p in promos]
    return {"data": data, "count": len(data)}


@router.post("/promos", status_code=201, response_model=PromoResponse)
async def create_promo(body: PromoCreate, services: RentalServices = Depends(get_services)):
    promo = await services.promos.create(PromoCode(**body.model_dump()))
    return PromoResponse(**vars(promo))


# ============================================================================
# Installment plans
# ============================================================================

@router.post("/installment-plans", status_code=201)
async def create_installment_plan(
    body: InstallmentPlanCreate,
    services: RentalServices = Depends(get_services),
):
    plan = await services.installments.create_plan(body.order_id, body.total_amount, body.plan_type)
    return plan.to_dict()


@router.get("/installment-plans/{order_id}")
async def get_installment_plan(order_id: str, services: RentalServices = Depends(get_services)):
    plan = await services.installments.get_plan_for_order(order_id)
    return plan.to_dict()


@router.patch("/installments/{installment_id}")
async def update_installment(
    installment_id: str,
    body: InstallmentUpdate,
    services: RentalServices = Depends(get_services),
):
    """Record a payment. The plan completes once every installment is paid."""
    plan = await services.installments.mark_paid(installment_id, body.paid_at)
    return plan.to_dict()

