"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from engine.models import PromoType, ReservationStatus, TenureUnit


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class QuoteRequest(BaseModel):
    product_id: str
    tenure_unit: str = TenureUnit.DAY.value
    start_at: datetime
    end_at: datetime
    pricelist: Optional[str] = None
    quantity: int = Field(1, ge=1)


class CheckoutRequestBody(BaseModel):
    product_id: str
    start_at: datetime
    end_at: datetime
    quantity: int = Field(1, ge=1)
    tenure_unit: str = TenureUnit.DAY.value
    pricelist: Optional[str] = None
    promo_code: Optional[str] = None
    plan_type: Optional[str] = None
    order_id: Optional[str] = None


class TransitionRequest(BaseModel):
    target: ReservationStatus
    actor: str = "api"
    deductions: Decimal = Field(Decimal("0"), ge=0)
    condition: Optional[str] = None
    new_end_at: Optional[datetime] = None
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SweepRequest(BaseModel):
    now: Optional[datetime] = None


class PromoValidateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    order_amount: Decimal = Field(..., ge=0)


class PromoCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    type: PromoType
    value: Decimal = Field(..., ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    min_order_amount: Optional[Decimal] = Field(None, ge=0)
    max_discount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    is_active: bool = True
    description: str = ""


class InstallmentPlanCreate(BaseModel):
    order_id: str
    total_amount: Decimal = Field(..., gt=0)
    plan_type: str


class InstallmentUpdate(BaseModel):
    status: str = Field("paid", pattern=r"^paid$")
    paid_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class QuoteResponse(BaseModel):
    product_id: str
    price: Decimal
    deposit: Decimal
    duration: int
    unit_rate: Decimal
    pricelist: str
    quantity: int


class AvailabilityResponse(BaseModel):
    product_id: str
    status: str
    free_quantity: int
    quantity_on_hand: int


class PromoValidationResponse(BaseModel):
    valid: bool
    discount_amount: Decimal
    final_amount: Decimal
    reason: Optional[str] = None
    code: Optional[str] = None


class PromoResponse(BaseModel):
    id: str
    code: str
    type: PromoType
    value: Decimal
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    min_order_amount: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    used_count: int
    is_active: bool
    description: str = ""
