"""Public storefront router: checkout config, slots, quotes, payment intents."""

from fastapi import APIRouter, Depends, Query, Request
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.rate_limit import checkout_limit
from libs.db.session import get_async_db
from services.orders_service.exceptions import (
    GatewayError,
    InvalidCheckoutError,
    ItemsUnavailableError,
)
from services.orders_service.models import FulfillmentType
from services.orders_service.routers._helpers import (
    get_payment_gateway,
    get_realtime_notifier,
)
from services.orders_service.schemas import (
    BusinessHoursOut,
    CheckoutConfigResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    QuoteRequest,
    QuoteResponse,
    SlotsResponse,
    TimeSlotOut,
    TotalsOut,
)
from services.orders_service.services import catalog, payment_intents
from services.orders_service.services.pricing import PricedLine, price
from services.orders_service.services.slot_planner import plan_slots
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/public", tags=["storefront"])


@router.get("/{slug}/checkout-config", response_model=CheckoutConfigResponse)
async def get_checkout_config(slug: str, db: AsyncSession = Depends(get_async_db)):
    """Hours, prep buffer and rates the storefront needs to render checkout."""
    settings = get_settings()
    org = await catalog.get_organization_by_slug(db, slug)
    hours = await catalog.get_business_hours(db, org.id)
    return CheckoutConfigResponse(
        slug=org.slug,
        name=org.name,
        currency=org.currency,
        timezone=catalog.timezone_for(org).key,
        tax_rate_percent=catalog.tax_rate_for(org),
        prep_buffer_minutes=catalog.prep_buffer_for(org),
        delivery_fee_cents=settings.DELIVERY_FEE_CENTS,
        service_fee_cents=settings.SERVICE_FEE_CENTS,
        business_hours=[BusinessHoursOut.model_validate(row) for row in hours],
    )


@router.get("/{slug}/slots", response_model=SlotsResponse)
async def list_slots(
    slug: str,
    fulfillment_type: FulfillmentType = Query(FulfillmentType.PICKUP),
    locale: str = Query("en", max_length=10),
    db: AsyncSession = Depends(get_async_db),
):
    """Bookable hourly slots for the next week; ``closed`` when there are none."""
    org = await catalog.get_organization_by_slug(db, slug)
    hours = await catalog.get_business_hours(db, org.id)
    tz = catalog.timezone_for(org)
    slots = plan_slots(
        hours, catalog.prep_buffer_for(org), utc_now(), locale=locale, tz=tz
    )
    return SlotsResponse(
        fulfillment_type=fulfillment_type,
        timezone=tz.key,
        closed=not slots,
        slots=[
            TimeSlotOut(value=slot.value, label=slot.label, starts_at=slot.starts_at)
            for slot in slots
        ],
    )


@router.post("/{slug}/quote", response_model=QuoteResponse)
async def quote(
    slug: str,
    payload: QuoteRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """Server-side totals for a cart, using current catalog prices."""
    if not payload.items:
        raise InvalidCheckoutError("Your cart is empty.")
    org = await catalog.get_organization_by_slug(db, slug)
    products = await catalog.get_products(
        db, org.id, [line.product_id for line in payload.items]
    )
    unavailable = [
        line.product_id
        for line in payload.items
        if line.product_id not in products
        or not products[line.product_id].is_available
    ]
    if unavailable:
        raise ItemsUnavailableError(unavailable)

    rate = catalog.tax_rate_for(org)
    totals = price(
        [
            PricedLine(products[line.product_id].price_cents, line.quantity)
            for line in payload.items
        ],
        payload.fulfillment_type,
        rate,
    )
    return QuoteResponse(
        **totals.as_dict(), currency=org.currency, tax_rate_percent=rate
    )


@router.post("/{slug}/payment-intents", response_model=PaymentIntentResponse)
@checkout_limit
async def create_payment_intent(
    slug: str,
    request: Request,
    payload: PaymentIntentRequest,
    db: AsyncSession = Depends(get_async_db),
    gateway=Depends(get_payment_gateway),
    notifier=Depends(get_realtime_notifier),
):
    """
    Create the draft order and its payment intent for one checkout attempt.

    Safe to retry with the same ``idempotency_key``: the same order and
    client secret come back.
    """
    if gateway is None:
        raise GatewayError("Online payment is not available right now.")
    payload = payload.model_copy(update={"workspace_slug": slug})
    result = await payment_intents.create_payment_intent(
        db, payload, gateway=gateway, notifier=notifier
    )
    return PaymentIntentResponse(
        client_secret=result.client_secret,
        order_id=result.order_id,
        order_number=result.order_number,
        public_token=result.public_token,
        status=result.status,
        currency=result.currency,
        scheduled_for=result.scheduled_for,
        totals=TotalsOut(**result.totals.as_dict()),
    )
