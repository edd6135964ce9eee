"""Courier dispatch with reserve-then-call.

A ``DeliveryJob`` row keyed by the order id is committed in state
``reserved`` *before* the courier is called. The unique key is the lock: a
concurrent caller that loses the insert waits for the winner's row to leave
``reserved`` and returns it, so there is at most one courier delivery per
order. The courier call itself carries a deterministic idempotency key, which
covers transport-level retries on the network's side.
"""

import asyncio
import hashlib
from datetime import timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import ensure_aware, utc_now
from libs.common.logging import get_logger
from services.orders_service.exceptions import (
    DispatchError,
    NotDeliverableError,
    OrderNotFoundError,
)
from services.orders_service.models import (
    DeliveryJob,
    DispatchState,
    FulfillmentType,
    Order,
    OrderStatus,
    Organization,
)
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

POLL_INTERVAL_SECONDS = 0.1

PICKUP_FIELDS = (
    ("name", "Restaurant Name"),
    ("street", "Street Address"),
    ("city", "City"),
    ("region", "Province/Region"),
    ("postal_code", "Postal Code"),
    ("country", "Country"),
    ("phone", "Phone Number"),
)


def dispatch_key(order_id) -> str:
    """Courier-side idempotency key: sha256 of ``dispatch:<order id>``."""
    return hashlib.sha256(f"dispatch:{order_id}".encode("utf-8")).hexdigest()


def format_address(address: dict, default_country: str = "CA") -> str:
    country = address.get("country") or default_country
    return (
        f"{address.get('street')}, {address.get('city')}, "
        f"{address.get('region')} {address.get('postal_code')}, {country}"
    )


def resolve_pickup(org: Organization) -> dict:
    """Pickup point from the organization profile; every field is required."""
    missing = [label for attr, label in PICKUP_FIELDS if not getattr(org, attr)]
    if missing:
        raise DispatchError(
            "Restaurant address incomplete. Complete Settings before requesting "
            f"delivery. Missing: {', '.join(missing)}"
        )
    return {
        "name": org.name,
        "phone": org.phone,
        "address": format_address(
            {
                "street": org.street,
                "city": org.city,
                "region": org.region,
                "postal_code": org.postal_code,
                "country": org.country,
            }
        ),
    }


def resolve_dropoff(order: Order) -> dict:
    address = order.delivery_address or {}
    if not address.get("street"):
        raise DispatchError("Delivery address missing.")
    return {
        "name": order.customer_name,
        "phone": order.customer_phone,
        "address": format_address(address),
        "instructions": address.get("instructions") or "",
        "lat": address.get("lat"),
        "lng": address.get("lng"),
    }


async def get_delivery_job(db: AsyncSession, order_id) -> Optional[DeliveryJob]:
    result = await db.execute(
        select(DeliveryJob)
        .where(DeliveryJob.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _await_settled(
    db: AsyncSession, order_id, wait_seconds: float
) -> DeliveryJob:
    """Poll until the job leaves ``reserved`` or the wait runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + wait_seconds
    while True:
        job = await get_delivery_job(db, order_id)
        # End the read transaction so the next poll sees the winner's commit
        await db.commit()
        if job.state != DispatchState.RESERVED or loop.time() >= deadline:
            return job
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def _is_orphaned(job: DeliveryJob) -> bool:
    """A reservation untouched for longer than a courier call can take."""
    age = utc_now() - ensure_aware(job.updated_at)
    return age > timedelta(seconds=get_settings().COURIER_TIMEOUT_SECONDS)


async def _reclaim(db: AsyncSession, job: DeliveryJob) -> bool:
    """Take over a failed or orphaned job; only one retrier can win.

    The claim is conditional on the state and attempt count we saw, so a
    reservation that moved on in the meantime is left alone.
    """
    result = await db.execute(
        update(DeliveryJob)
        .where(
            DeliveryJob.id == job.id,
            DeliveryJob.state == job.state,
            DeliveryJob.attempts == job.attempts,
        )
        .values(
            state=DispatchState.RESERVED,
            attempts=DeliveryJob.attempts + 1,
            last_error=None,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def dispatch_delivery(
    db: AsyncSession,
    order_id,
    *,
    courier,
    notifier=None,
    organization_id=None,
    wait_seconds: Optional[float] = None,
) -> DeliveryJob:
    """
    Create the courier delivery for a ready delivery order, at most once.

    Returns the existing job unchanged when one is reserved, dispatched,
    delivered or canceled. A failed job is retried, and so is a reservation
    nobody has touched for longer than ``COURIER_TIMEOUT_SECONDS``.

    Raises:
        OrderNotFoundError: unknown order (or another organization's).
        NotDeliverableError: pickup order, or not in ``ready``.
        DispatchError: the courier call failed; the job is left ``failed``.
    """
    if wait_seconds is None:
        wait_seconds = get_settings().DISPATCH_PENDING_WAIT_SECONDS

    order = await db.get(Order, order_id, populate_existing=True)
    if order is None or (
        organization_id is not None and order.organization_id != organization_id
    ):
        raise OrderNotFoundError("Order not found.")
    if order.fulfillment_type != FulfillmentType.DELIVERY:
        raise NotDeliverableError("Order is not for delivery.")

    job = await get_delivery_job(db, order.id)
    if job is not None:
        if job.state == DispatchState.RESERVED:
            logger.info("Dispatch for order %s already in flight, waiting", order.id)
            job = await _await_settled(db, order.id, wait_seconds)
            if job.state != DispatchState.RESERVED or not _is_orphaned(job):
                return job
            logger.warning(
                "Dispatch reservation for order %s is orphaned, reclaiming",
                order.id,
            )
        elif job.state != DispatchState.FAILED:
            logger.info(
                "Delivery already exists for order %s (%s)", order.id, job.state.value
            )
            return job
        if order.status != OrderStatus.READY:
            raise NotDeliverableError("Only ready orders can be dispatched.")
        if not await _reclaim(db, job):
            logger.info("Another retry claimed dispatch for order %s", order.id)
            return await _await_settled(db, order.id, wait_seconds)
        job = await get_delivery_job(db, order.id)
    else:
        if order.status != OrderStatus.READY:
            raise NotDeliverableError("Only ready orders can be dispatched.")
        job = DeliveryJob(
            order_id=order.id,
            idempotency_key=str(order.id),
            state=DispatchState.RESERVED,
            attempts=1,
        )
        db.add(job)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Lost dispatch reservation race for order %s", order_id)
            return await _await_settled(db, order_id, wait_seconds)

    return await _call_courier(db, order, job, courier=courier, notifier=notifier)


async def _call_courier(
    db: AsyncSession, order: Order, job: DeliveryJob, *, courier, notifier
) -> DeliveryJob:
    try:
        org = await db.get(Organization, order.organization_id)
        pickup = resolve_pickup(org)
        dropoff = resolve_dropoff(order)
        job.pickup_address = pickup
        job.dropoff_address = dropoff
        delivery = await courier.create_delivery(
            pickup=pickup,
            dropoff=dropoff,
            manifest_description=f"Order #{order.order_number}",
            idempotency_key=dispatch_key(order.id),
        )
    except Exception as exc:
        error = exc if isinstance(exc, DispatchError) else None
        message = error.message if error else f"Unexpected dispatch failure: {exc}"
        logger.error("Dispatch failed for order %s: %s", order.id, message)
        job.state = DispatchState.FAILED
        job.last_error = message
        await db.commit()
        if notifier is not None:
            await notifier.publish_delivery(order, job)
        if error is not None:
            raise
        raise DispatchError(message) from exc

    job.state = DispatchState.DISPATCHED
    job.external_delivery_id = delivery.id
    job.courier_status = delivery.status or None
    job.tracking_url = delivery.tracking_url
    job.fee_cents = delivery.fee_cents
    job.pickup_eta = delivery.pickup_eta
    job.dropoff_eta = delivery.dropoff_eta
    await db.commit()
    logger.info(
        "Delivery %s created for order %s", delivery.id, order.id,
        extra={"extra_fields": {"order_id": str(order.id), "delivery_id": delivery.id}},
    )
    if notifier is not None:
        await notifier.publish_delivery(order, job)
    return job
