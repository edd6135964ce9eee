"""Pydantic schemas for orders service."""

import uuid
from datetime import datetime, time
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from services.orders_service.models import (
    ActorRole,
    DispatchState,
    FulfillmentType,
    OrderStatus,
)

# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================


class CartLine(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(..., alias="qty", ge=1, le=99)
    # Display-only copies of what the storefront showed; never trusted
    name: Optional[str] = None
    unit_price_cents: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class CustomerIn(BaseModel):
    # Validated by the service so failures carry INVALID_CUSTOMER
    name: str = ""
    email: str = ""
    phone: str = ""


class DeliveryAddress(BaseModel):
    street: str = Field(..., max_length=255)
    city: str = Field(..., max_length=100)
    region: Optional[str] = Field(None, max_length=100)
    postal_code: str = Field(..., max_length=20)
    country: str = Field("CA", max_length=2)
    lat: Optional[float] = None
    lng: Optional[float] = None
    instructions: Optional[str] = Field(None, max_length=500)


class FulfillmentIn(BaseModel):
    type: FulfillmentType
    scheduled_for: Optional[datetime] = None
    delivery_address: Optional[DeliveryAddress] = None
    notes: Optional[str] = Field(None, max_length=1000)


class AdvisoryTotals(BaseModel):
    """Client-computed totals. Logged when they disagree, otherwise ignored."""

    subtotal_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    delivery_fee_cents: Optional[int] = None
    service_fee_cents: Optional[int] = None
    total_cents: Optional[int] = None


class PaymentIntentRequest(BaseModel):
    workspace_slug: Optional[str] = None  # filled from the URL
    idempotency_key: str = Field(..., min_length=8, max_length=128)
    items: List[CartLine] = Field(default_factory=list)
    customer: CustomerIn
    fulfillment: FulfillmentIn
    totals: Optional[AdvisoryTotals] = None


class TotalsOut(BaseModel):
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    service_fee_cents: int
    total_cents: int


class PaymentIntentResponse(BaseModel):
    client_secret: str
    order_id: uuid.UUID
    order_number: int
    public_token: str
    status: OrderStatus
    currency: str
    scheduled_for: Optional[datetime] = None
    totals: TotalsOut


class QuoteRequest(BaseModel):
    items: List[CartLine] = Field(default_factory=list)
    fulfillment_type: FulfillmentType = FulfillmentType.PICKUP


class QuoteResponse(TotalsOut):
    currency: str
    tax_rate_percent: Decimal


class TimeSlotOut(BaseModel):
    value: str
    label: str
    starts_at: datetime


class SlotsResponse(BaseModel):
    fulfillment_type: FulfillmentType
    timezone: str
    closed: bool
    slots: List[TimeSlotOut]


class BusinessHoursOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day_of_week: int
    open_time: Optional[time] = None
    close_time: Optional[time] = None
    is_closed: bool


class CheckoutConfigResponse(BaseModel):
    slug: str
    name: str
    currency: str
    timezone: str
    tax_rate_percent: Decimal
    prep_buffer_minutes: int
    delivery_fee_cents: int
    service_fee_cents: int
    business_hours: List[BusinessHoursOut]


# ============================================================================
# ORDER SCHEMAS
# ============================================================================


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: Optional[uuid.UUID] = None
    name_snapshot: str
    unit_price_cents: int
    quantity: int
    line_total_cents: int


class OrderEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    previous_status: OrderStatus
    new_status: OrderStatus
    actor_id: str
    actor_role: ActorRole
    event_metadata: Optional[dict] = None
    created_at: datetime


class DeliveryJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    state: DispatchState
    courier_status: Optional[str] = None
    external_delivery_id: Optional[str] = None
    tracking_url: Optional[str] = None
    fee_cents: Optional[int] = None
    pickup_eta: Optional[datetime] = None
    dropoff_eta: Optional[datetime] = None
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    order_number: int
    public_token: str
    status: OrderStatus
    fulfillment_type: FulfillmentType
    customer_name: str
    customer_email: str
    customer_phone: str
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    service_fee_cents: int
    total_cents: int
    currency: str
    delivery_address: Optional[dict] = None
    customer_notes: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    payment_reference: Optional[str] = None
    items: List[OrderItemOut] = []
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class OrderDetailOut(OrderOut):
    events: List[OrderEventOut] = []
    delivery: Optional[DeliveryJobOut] = None
    allowed_transitions: List[OrderStatus] = []


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)


class TransitionWarning(BaseModel):
    code: str
    detail: str
    retryable: bool


class TransitionResponse(BaseModel):
    order: OrderOut
    previous_status: OrderStatus
    warnings: List[TransitionWarning] = []
    delivery: Optional[DeliveryJobOut] = None


# ============================================================================
# PUBLIC TRACKING SCHEMAS
# ============================================================================


class TrackedItem(BaseModel):
    name: str
    quantity: int


class TrackedDelivery(BaseModel):
    state: DispatchState
    courier_status: Optional[str] = None
    tracking_url: Optional[str] = None
    pickup_eta: Optional[datetime] = None
    dropoff_eta: Optional[datetime] = None


class OrderSummary(BaseModel):
    """What the public tracking page may see: no contact details, no ids."""

    order_number: int
    status: OrderStatus
    fulfillment_type: FulfillmentType
    restaurant_name: str
    restaurant_phone: Optional[str] = None
    items: List[TrackedItem]
    currency: str
    totals: TotalsOut
    scheduled_for: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    delivery: Optional[TrackedDelivery] = None
