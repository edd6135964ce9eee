"""Shared dependencies and response builders for the orders routers."""

from typing import Optional

from libs.common.logging import get_logger
from services.orders_service.courier_client import (
    UberDirectClient,
    get_courier_client,
)
from services.orders_service.models import DeliveryJob, Order
from services.orders_service.schemas import DeliveryJobOut, OrderOut
from services.orders_service.services.notifier import (
    RealtimeNotifier,
    get_notifier,
)
from services.orders_service.stripe_client import StripeClient, get_stripe_client

logger = get_logger(__name__)


def get_payment_gateway() -> Optional[StripeClient]:
    """Stripe client, or None when no secret key is configured."""
    try:
        return get_stripe_client()
    except ValueError:
        logger.warning("Stripe is not configured")
        return None


def get_courier() -> Optional[UberDirectClient]:
    """Uber Direct client, or None when credentials are missing."""
    try:
        return get_courier_client()
    except ValueError:
        logger.warning("Courier network is not configured")
        return None


def get_realtime_notifier() -> RealtimeNotifier:
    return get_notifier()


def order_out(order: Order) -> OrderOut:
    return OrderOut.model_validate(order)


def delivery_out(job: Optional[DeliveryJob]) -> Optional[DeliveryJobOut]:
    if job is None:
        return None
    return DeliveryJobOut.model_validate(job)
