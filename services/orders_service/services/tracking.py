"""Public order tracking. The token is the capability; no auth involved."""

from libs.common.datetime_utils import ensure_aware
from services.orders_service.exceptions import OrderNotFoundError
from services.orders_service.models import Order, OrderStatus, Organization
from services.orders_service.schemas import (
    OrderSummary,
    TotalsOut,
    TrackedDelivery,
    TrackedItem,
)
from services.orders_service.services.dispatch import get_delivery_job
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

# Drafts never reached payment. awaiting_payment stays visible so the success
# page can watch for the paid transition.
HIDDEN_STATUSES = (OrderStatus.DRAFT,)


def _aware(value):
    return ensure_aware(value) if value is not None else None


async def get_order_by_token(db: AsyncSession, token: str) -> OrderSummary:
    if not token:
        raise OrderNotFoundError("Order not found.")
    result = await db.execute(
        select(Order, Organization)
        .join(Organization, Organization.id == Order.organization_id)
        .where(Order.public_token == token)
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None or row[0].status in HIDDEN_STATUSES:
        raise OrderNotFoundError("Order not found.")
    order, org = row

    delivery = None
    job = await get_delivery_job(db, order.id)
    if job is not None:
        delivery = TrackedDelivery(
            state=job.state,
            courier_status=job.courier_status,
            tracking_url=job.tracking_url,
            pickup_eta=_aware(job.pickup_eta),
            dropoff_eta=_aware(job.dropoff_eta),
        )

    return OrderSummary(
        order_number=order.order_number,
        status=order.status,
        fulfillment_type=order.fulfillment_type,
        restaurant_name=org.name,
        restaurant_phone=org.phone,
        items=[
            TrackedItem(name=item.name_snapshot, quantity=item.quantity)
            for item in order.items
        ],
        currency=order.currency,
        totals=TotalsOut(
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            delivery_fee_cents=order.delivery_fee_cents,
            service_fee_cents=order.service_fee_cents,
            total_cents=order.total_cents,
        ),
        scheduled_for=_aware(order.scheduled_for),
        created_at=ensure_aware(order.created_at),
        updated_at=ensure_aware(order.updated_at),
        ready_at=_aware(order.ready_at),
        completed_at=_aware(order.completed_at),
        delivery=delivery,
    )
