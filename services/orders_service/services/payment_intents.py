"""Payment intent creation: one draft order and one authorization per key.

The client generates an idempotency key per checkout attempt. The
authorization row is unique on (organization, key) and is committed together
with the draft order *before* the gateway is called, so a retried or
concurrent request with the same key finds the row and resumes it instead of
creating a second order. The gateway receives the same key and de-duplicates
on its side too.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from email_validator import EmailNotValidError, validate_email
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.orders_service.exceptions import (
    ForbiddenTransition,
    InvalidCheckoutError,
    InvalidCustomerError,
    ItemsUnavailableError,
    OrderServiceError,
    StoreClosedError,
)
from services.orders_service.models import (
    AuthorizationState,
    FulfillmentType,
    Order,
    OrderItem,
    OrderStatus,
    Organization,
    PaymentAuthorization,
)
from services.orders_service.schemas import PaymentIntentRequest
from services.orders_service.services import catalog
from services.orders_service.services.lifecycle import Actor, transition_status
from services.orders_service.services.notifier import ORDER_CREATED
from services.orders_service.services.pricing import PricedLine, Totals, price
from services.orders_service.services.slot_planner import find_slot, plan_slots
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

POLL_INTERVAL_SECONDS = 0.1
MIN_PHONE_DIGITS = 10
MIN_POSTAL_CODE_LENGTH = 6

SYSTEM_ACTOR = Actor.system("payment_intents")


@dataclass
class PaymentIntentResult:
    client_secret: str
    order_id: object
    order_number: int
    public_token: str
    status: OrderStatus
    currency: str
    scheduled_for: Optional[datetime]
    totals: Totals


# ============================================================================
# VALIDATION
# ============================================================================


def validate_customer(customer) -> dict:
    name = (customer.name or "").strip()
    if not name:
        raise InvalidCustomerError("Name is required.", extra={"field": "name"})
    try:
        email = validate_email(
            (customer.email or "").strip(), check_deliverability=False
        ).normalized
    except EmailNotValidError:
        raise InvalidCustomerError(
            "Invalid email address. Please check.", extra={"field": "email"}
        )
    phone = (customer.phone or "").strip()
    if len(re.sub(r"\D", "", phone)) < MIN_PHONE_DIGITS:
        raise InvalidCustomerError("Invalid phone number.", extra={"field": "phone"})
    return {"name": name[:255], "email": email, "phone": phone}


def validate_delivery_address(fulfillment) -> Optional[dict]:
    if fulfillment.type != FulfillmentType.DELIVERY:
        return None
    address = fulfillment.delivery_address
    if address is None or not address.street.strip() or not address.city.strip():
        raise InvalidCheckoutError("A delivery address is required for delivery.")
    if len(address.postal_code.strip()) < MIN_POSTAL_CODE_LENGTH:
        raise InvalidCheckoutError("Invalid postal code.")
    data = address.model_dump()
    if fulfillment.notes and not data.get("instructions"):
        data["instructions"] = fulfillment.notes
    return data


def _log_discrepancy(advisory, totals: Totals, idempotency_key: str) -> None:
    if advisory is None:
        return
    expected = totals.as_dict()
    mismatched = {
        field: {"client": value, "server": expected[field]}
        for field, value in advisory.model_dump().items()
        if value is not None and value != expected[field]
    }
    if mismatched:
        logger.info(
            "Client totals differ from server totals for %s",
            idempotency_key,
            extra={"extra_fields": {"mismatch": mismatched}},
        )


# ============================================================================
# PERSISTENCE HELPERS
# ============================================================================


async def _get_authorization(
    db: AsyncSession, organization_id, key: str
) -> Optional[PaymentAuthorization]:
    result = await db.execute(
        select(PaymentAuthorization)
        .where(
            PaymentAuthorization.organization_id == organization_id,
            PaymentAuthorization.idempotency_key == key,
        )
        .execution_options(populate_existing=True)
    )
    return result.unique().scalar_one_or_none()


async def next_order_number(db: AsyncSession, organization_id) -> int:
    """Atomically bump and return the organization's order counter."""
    result = await db.execute(
        update(Organization)
        .where(Organization.id == organization_id)
        .values(order_counter=Organization.order_counter + 1)
        .returning(Organization.order_counter)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one()


def _result(authorization: PaymentAuthorization, order: Order) -> PaymentIntentResult:
    return PaymentIntentResult(
        client_secret=authorization.client_secret,
        order_id=order.id,
        order_number=order.order_number,
        public_token=order.public_token,
        status=order.status,
        currency=order.currency,
        scheduled_for=order.scheduled_for,
        totals=Totals(
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            delivery_fee_cents=order.delivery_fee_cents,
            service_fee_cents=order.service_fee_cents,
            total_cents=order.total_cents,
        ),
    )


# ============================================================================
# GATEWAY
# ============================================================================


async def _mark_awaiting_payment(db: AsyncSession, order: Order, notifier) -> Order:
    if order.status != OrderStatus.DRAFT:
        return order
    try:
        outcome = await transition_status(
            db, order.id, OrderStatus.AWAITING_PAYMENT, SYSTEM_ACTOR, notifier=notifier
        )
        return outcome.order
    except ForbiddenTransition:
        # A concurrent resume of the same key got there first
        await db.refresh(order)
        return order


async def _authorize(
    db: AsyncSession,
    authorization: PaymentAuthorization,
    order: Order,
    *,
    gateway,
    notifier,
) -> PaymentIntentResult:
    try:
        intent = await gateway.create_payment_intent(
            amount_cents=authorization.amount_cents,
            currency=authorization.currency,
            idempotency_key=authorization.idempotency_key,
            metadata={
                "order_id": str(order.id),
                "organization_id": str(order.organization_id),
                "order_number": order.order_number,
            },
            receipt_email=order.customer_email,
        )
    except OrderServiceError as exc:
        logger.error(
            "Payment authorization failed for order %s: %s", order.id, exc.message
        )
        authorization.state = AuthorizationState.FAILED
        authorization.last_error = exc.message
        await db.commit()
        raise

    authorization.state = AuthorizationState.AUTHORIZED
    authorization.external_reference = intent.id
    authorization.client_secret = intent.client_secret
    authorization.last_error = None
    order.payment_reference = intent.id
    await db.commit()

    order = await _mark_awaiting_payment(db, order, notifier)
    return _result(authorization, order)


async def _resume(
    db: AsyncSession,
    authorization: PaymentAuthorization,
    *,
    gateway,
    notifier,
) -> PaymentIntentResult:
    """Return what an earlier request with the same key created."""
    key = authorization.idempotency_key
    org_id = authorization.organization_id

    if authorization.state == AuthorizationState.PENDING:
        # Another request holds the key and is talking to the gateway
        loop = asyncio.get_running_loop()
        deadline = loop.time() + get_settings().GATEWAY_TIMEOUT_SECONDS
        while (
            authorization.state == AuthorizationState.PENDING
            and loop.time() < deadline
        ):
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
            await db.commit()
            authorization = await _get_authorization(db, org_id, key)

    order = authorization.order
    if order.status in (OrderStatus.CANCELED, OrderStatus.REFUNDED):
        raise InvalidCheckoutError("This checkout has expired. Please start again.")

    if authorization.state in (
        AuthorizationState.AUTHORIZED,
        AuthorizationState.SUCCEEDED,
    ):
        logger.info("Replaying payment intent for key %s (order %s)", key, order.id)
        order = await _mark_awaiting_payment(db, order, notifier)
        return _result(authorization, order)

    if authorization.state == AuthorizationState.FAILED:
        claimed = await db.execute(
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization.id,
                PaymentAuthorization.state == AuthorizationState.FAILED,
            )
            .values(state=AuthorizationState.PENDING, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claimed.rowcount != 1:
            authorization = await _get_authorization(db, org_id, key)
            return await _resume(db, authorization, gateway=gateway, notifier=notifier)
        authorization = await _get_authorization(db, org_id, key)
        logger.info("Retrying failed payment authorization for key %s", key)

    # Still pending after the wait (or just re-claimed): the gateway
    # de-duplicates on the key, so calling it again is safe.
    return await _authorize(
        db, authorization, authorization.order, gateway=gateway, notifier=notifier
    )


# ============================================================================
# ENTRY POINT
# ============================================================================


async def create_payment_intent(
    db: AsyncSession,
    request: PaymentIntentRequest,
    *,
    gateway,
    notifier=None,
    now: Optional[datetime] = None,
) -> PaymentIntentResult:
    """
    Create (or return the existing) draft order and payment authorization.

    Totals are recomputed from the catalog; client totals are advisory.
    The order ends in ``awaiting_payment`` once the gateway has issued a
    client secret.

    Raises:
        OrganizationNotFoundError, InvalidCustomerError, InvalidCheckoutError,
        StoreClosedError, ItemsUnavailableError, RateLimitedError, GatewayError
    """
    now = now or utc_now()
    org = await catalog.get_organization_by_slug(db, request.workspace_slug)
    key = request.idempotency_key.strip()

    existing = await _get_authorization(db, org.id, key)
    if existing is not None:
        return await _resume(db, existing, gateway=gateway, notifier=notifier)

    customer = validate_customer(request.customer)
    if not request.items:
        raise InvalidCheckoutError("Your cart is empty.")
    fulfillment = request.fulfillment
    delivery_address = validate_delivery_address(fulfillment)

    hours = await catalog.get_business_hours(db, org.id)
    slots = plan_slots(
        hours, catalog.prep_buffer_for(org), now, tz=catalog.timezone_for(org)
    )
    if not slots:
        raise StoreClosedError("The restaurant is not taking orders right now.")
    if fulfillment.scheduled_for is None:
        slot = slots[0]
    else:
        slot = find_slot(slots, fulfillment.scheduled_for)
        if slot is None:
            raise InvalidCheckoutError("The selected time is no longer available.")

    products = await catalog.get_products(
        db, org.id, [line.product_id for line in request.items]
    )
    unavailable = [
        line.product_id
        for line in request.items
        if line.product_id not in products
        or not products[line.product_id].is_available
    ]
    if unavailable:
        raise ItemsUnavailableError(unavailable)

    totals = price(
        [
            PricedLine(products[line.product_id].price_cents, line.quantity)
            for line in request.items
        ],
        fulfillment.type,
        catalog.tax_rate_for(org),
    )
    _log_discrepancy(request.totals, totals, key)

    order = Order(
        organization_id=org.id,
        order_number=await next_order_number(db, org.id),
        status=OrderStatus.DRAFT,
        fulfillment_type=fulfillment.type,
        customer_name=customer["name"],
        customer_email=customer["email"],
        customer_phone=customer["phone"],
        currency=org.currency,
        delivery_address=delivery_address,
        customer_notes=fulfillment.notes,
        scheduled_for=slot.starts_at,
        **totals.as_dict(),
    )
    # Name and price snapshots: later menu edits never touch this order
    for line in request.items:
        product = products[line.product_id]
        order.items.append(
            OrderItem(
                product_id=product.id,
                name_snapshot=product.name,
                unit_price_cents=product.price_cents,
                quantity=line.quantity,
                line_total_cents=product.price_cents * line.quantity,
            )
        )
    authorization = PaymentAuthorization(
        organization_id=org.id,
        order=order,
        idempotency_key=key,
        state=AuthorizationState.PENDING,
        amount_cents=totals.total_cents,
        currency=org.currency,
    )
    db.add_all([order, authorization])
    try:
        await db.commit()
    except IntegrityError:
        # Same key committed concurrently; its order stands, ours rolls back
        await db.rollback()
        existing = await _get_authorization(db, org.id, key)
        if existing is None:
            raise
        logger.info("Idempotency key %s reused concurrently; resuming", key)
        return await _resume(db, existing, gateway=gateway, notifier=notifier)

    logger.info(
        "Draft order #%s created for %s (%s cents)",
        order.order_number,
        org.slug,
        totals.total_cents,
    )
    if notifier is not None:
        await notifier.publish_order(order, ORDER_CREATED)

    return await _authorize(
        db, authorization, order, gateway=gateway, notifier=notifier
    )
