"""Inbound webhooks from the payment gateway and the courier network."""

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.orders_service.courier_client import (
    to_courier_delivery,
    verify_courier_signature,
)
from services.orders_service.routers._helpers import get_realtime_notifier
from services.orders_service.services.delivery_updates import (
    apply_courier_update,
    get_job_by_external_id,
)
from services.orders_service.services.payment_events import apply_payment_event
from services.orders_service.stripe_client import verify_webhook_signature
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _parse_json(payload: bytes) -> dict:
    try:
        data = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return data


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    notifier=Depends(get_realtime_notifier),
):
    """Payment intent outcomes. Signed with ``Stripe-Signature``."""
    payload = await request.body()
    if not verify_webhook_signature(payload, request.headers.get("Stripe-Signature")):
        logger.warning("Rejected Stripe webhook with invalid signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    event = _parse_json(payload)
    handled = await apply_payment_event(db, event, notifier=notifier)
    return {"received": True, "handled": handled}


@router.post("/courier")
async def courier_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    notifier=Depends(get_realtime_notifier),
):
    """Delivery status callbacks. Signed with ``X-Courier-Signature``."""
    payload = await request.body()
    signature = request.headers.get("X-Courier-Signature")
    if not verify_courier_signature(payload, signature):
        logger.warning("Rejected courier webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = _parse_json(payload)
    delivery = to_courier_delivery(event.get("data") or event)
    if event.get("delivery_id"):
        delivery.id = event["delivery_id"]
    if event.get("status"):
        delivery.status = event["status"]

    job = await get_job_by_external_id(db, delivery.id) if delivery.id else None
    if job is None:
        logger.warning("Courier update for unknown delivery %s", delivery.id)
        return {"received": True, "handled": False}

    order = await apply_courier_update(db, job, delivery, notifier=notifier)
    return {"received": True, "handled": True, "order_status": order.status.value}
