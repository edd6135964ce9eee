"""Apply courier status updates (webhook or poll) to jobs and orders."""

from typing import Optional

from libs.common.logging import get_logger
from services.orders_service.exceptions import ForbiddenTransition
from services.orders_service.models import (
    DeliveryJob,
    DispatchState,
    Order,
    OrderStatus,
)
from services.orders_service.services.dispatch import get_delivery_job
from services.orders_service.services.lifecycle import (
    Actor,
    get_order,
    transition_status,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Courier vocabulary -> our delivery milestones
COURIER_STATUS_MAP = {
    "pending": "created",
    "pickup": "courier_assigned",
    "pickup_complete": "picked_up",
    "dropoff": "picked_up",
    "delivered": "dropped_off",
    "canceled": "canceled",
    "returned": "failed",
}

TERMINAL_JOB_STATES = {
    "dropped_off": DispatchState.DELIVERED,
    "canceled": DispatchState.CANCELED,
    "failed": DispatchState.CANCELED,
}


def map_courier_status(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return COURIER_STATUS_MAP.get(raw.strip().lower())


async def get_job_by_external_id(
    db: AsyncSession, external_delivery_id: str
) -> Optional[DeliveryJob]:
    result = await db.execute(
        select(DeliveryJob)
        .where(DeliveryJob.external_delivery_id == external_delivery_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _advance(
    db: AsyncSession,
    order: Order,
    target: OrderStatus,
    source: str,
    metadata: dict,
    notifier,
) -> Order:
    order_id = order.id
    try:
        outcome = await transition_status(
            db,
            order_id,
            target,
            Actor.system(source),
            notifier=notifier,
            metadata=metadata,
        )
        return outcome.order
    except ForbiddenTransition as exc:
        logger.info(
            "Courier update for order %s ignored: %s", order_id, exc.message
        )
        return await get_order(db, order_id)


async def apply_courier_update(
    db: AsyncSession,
    job: DeliveryJob,
    delivery,
    *,
    notifier=None,
    source: str = "courier_webhook",
) -> Order:
    """
    Record a courier status on ``job`` and drive the order accordingly.

    ``picked_up`` moves a ready order out for delivery; ``dropped_off``
    completes it, passing through ``out_for_delivery`` when the pickup event
    was missed. Replays are harmless.
    """
    milestone = map_courier_status(delivery.status)
    if delivery.status:
        job.courier_status = delivery.status
    if delivery.tracking_url:
        job.tracking_url = delivery.tracking_url
    if delivery.pickup_eta:
        job.pickup_eta = delivery.pickup_eta
    if delivery.dropoff_eta:
        job.dropoff_eta = delivery.dropoff_eta
    if milestone in TERMINAL_JOB_STATES and job.state == DispatchState.DISPATCHED:
        job.state = TERMINAL_JOB_STATES[milestone]
    await db.commit()

    order = await get_order(db, job.order_id)
    metadata = {"courier_status": delivery.status, "delivery_status": milestone}

    if milestone == "picked_up" and order.status == OrderStatus.READY:
        order = await _advance(
            db, order, OrderStatus.OUT_FOR_DELIVERY, source, metadata, notifier
        )
    elif milestone == "dropped_off":
        if order.status == OrderStatus.READY:
            order = await _advance(
                db, order, OrderStatus.OUT_FOR_DELIVERY, source, metadata, notifier
            )
        if order.status == OrderStatus.OUT_FOR_DELIVERY:
            order = await _advance(
                db, order, OrderStatus.COMPLETED, source, metadata, notifier
            )

    # A lost transition race rolls the session back; reload the job
    job = await get_delivery_job(db, order.id)
    logger.info(
        "Delivery %s for order %s now %s (%s)",
        job.external_delivery_id,
        order.id,
        delivery.status,
        milestone or "unmapped",
    )
    if notifier is not None:
        await notifier.publish_delivery(order, job)
    return order
