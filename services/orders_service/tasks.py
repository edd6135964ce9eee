"""Background housekeeping tasks for the orders service."""

from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.orders_service.courier_client import get_courier_client
from services.orders_service.exceptions import DispatchError, ForbiddenTransition
from services.orders_service.models import (
    DeliveryJob,
    DispatchState,
    Order,
    OrderStatus,
)
from services.orders_service.services.delivery_updates import apply_courier_update
from services.orders_service.services.lifecycle import Actor, transition_status
from services.orders_service.services.notifier import get_notifier
from sqlalchemy import select

logger = get_logger(__name__)

BATCH_SIZE = 200

ACTIVE_DELIVERY_STATUSES = (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY)
ABANDONABLE_STATUSES = (OrderStatus.DRAFT, OrderStatus.AWAITING_PAYMENT)


async def poll_active_deliveries(
    courier=None, notifier=None, session_factory=AsyncSessionLocal
) -> int:
    """
    Pull courier status for deliveries still on the road.

    Fallback for missed webhooks: the result goes through the same mapping
    as the courier callback. Returns the number of jobs whose status moved.
    """
    if courier is None:
        try:
            courier = get_courier_client()
        except ValueError:
            logger.info("Courier network not configured; skipping delivery poll")
            return 0
    notifier = notifier or get_notifier()
    updated = 0

    async with session_factory() as db:
        result = await db.execute(
            select(DeliveryJob.id, DeliveryJob.external_delivery_id)
            .join(Order, Order.id == DeliveryJob.order_id)
            .where(
                DeliveryJob.state == DispatchState.DISPATCHED,
                DeliveryJob.external_delivery_id.is_not(None),
                Order.status.in_(ACTIVE_DELIVERY_STATUSES),
            )
            .order_by(DeliveryJob.updated_at.asc())
            .limit(BATCH_SIZE)
        )
        active = list(result.all())
        await db.commit()

        for job_id, external_id in active:
            try:
                delivery = await courier.get_delivery(external_id)
            except DispatchError as exc:
                logger.warning(
                    "Courier status fetch failed for %s: %s", external_id, exc.message
                )
                continue

            job = await db.get(DeliveryJob, job_id, populate_existing=True)
            if job is None or job.courier_status == delivery.status:
                continue
            await apply_courier_update(
                db, job, delivery, notifier=notifier, source="courier_poll"
            )
            updated += 1

    if active:
        logger.info("Polled %d active deliveries, %d updated", len(active), updated)
    return updated


async def cancel_abandoned_orders(
    now: Optional[datetime] = None,
    notifier=None,
    session_factory=AsyncSessionLocal,
) -> int:
    """Cancel checkouts that never got paid within the configured TTL."""
    now = now or utc_now()
    cutoff = now - timedelta(minutes=get_settings().ABANDONED_ORDER_TTL_MINUTES)
    notifier = notifier or get_notifier()
    actor = Actor.system("housekeeping")
    canceled = 0

    async with session_factory() as db:
        result = await db.execute(
            select(Order.id)
            .where(
                Order.status.in_(ABANDONABLE_STATUSES),
                Order.created_at <= cutoff,
            )
            .order_by(Order.created_at.asc())
            .limit(BATCH_SIZE)
        )
        stale = list(result.scalars().all())
        await db.commit()

        for order_id in stale:
            try:
                await transition_status(
                    db,
                    order_id,
                    OrderStatus.CANCELED,
                    actor,
                    notifier=notifier,
                    metadata={"reason": "abandoned"},
                )
                canceled += 1
            except ForbiddenTransition as exc:
                # Paid (or canceled) since the query ran
                logger.info("Skipping order %s: %s", order_id, exc.message)

    if canceled:
        logger.info("Canceled %d abandoned orders", canceled)
    return canceled
