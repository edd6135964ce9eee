"""Apply Stripe payment intent events to authorizations and orders."""

from typing import Optional

from libs.common.logging import get_logger
from services.orders_service.exceptions import ForbiddenTransition
from services.orders_service.models import (
    AuthorizationState,
    OrderStatus,
    PaymentAuthorization,
)
from services.orders_service.services.lifecycle import (
    Actor,
    get_order,
    transition_status,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

WEBHOOK_ACTOR = Actor.system("stripe_webhook")


async def get_authorization_by_reference(
    db: AsyncSession, reference: str
) -> Optional[PaymentAuthorization]:
    result = await db.execute(
        select(PaymentAuthorization)
        .where(PaymentAuthorization.external_reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.unique().scalar_one_or_none()


async def _mark_paid(db: AsyncSession, order_id, intent_id: str, notifier) -> None:
    order = await get_order(db, order_id)
    metadata = {"payment_reference": intent_id}
    try:
        if order.status == OrderStatus.DRAFT:
            # The webhook beat the request that issued the client secret
            await transition_status(
                db,
                order_id,
                OrderStatus.AWAITING_PAYMENT,
                WEBHOOK_ACTOR,
                notifier=notifier,
                metadata=metadata,
            )
        await transition_status(
            db,
            order_id,
            OrderStatus.PAID,
            WEBHOOK_ACTOR,
            notifier=notifier,
            metadata=metadata,
        )
    except ForbiddenTransition as exc:
        logger.info("Payment for order %s not applied: %s", order_id, exc.message)


async def apply_payment_event(db: AsyncSession, event: dict, *, notifier=None) -> bool:
    """
    Handle one webhook event. Returns False when the event was not for us.

    Replays are no-ops: a succeeded authorization stays succeeded and a paid
    order cannot be paid twice.
    """
    event_type = event.get("type")
    if event_type not in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
        logger.debug("Ignoring Stripe event %s", event_type)
        return False

    intent = (event.get("data") or {}).get("object") or {}
    intent_id = intent.get("id")
    if not intent_id:
        return False
    authorization = await get_authorization_by_reference(db, intent_id)
    if authorization is None:
        logger.warning("Stripe event %s for unknown intent %s", event_type, intent_id)
        return False
    order_id = authorization.order_id

    if event_type == PAYMENT_FAILED:
        if authorization.state in (
            AuthorizationState.PENDING,
            AuthorizationState.AUTHORIZED,
        ):
            error = (intent.get("last_payment_error") or {}).get("message")
            authorization.state = AuthorizationState.FAILED
            authorization.last_error = error or "Payment failed."
            await db.commit()
            logger.info("Payment failed for order %s: %s", order_id, error)
        return True

    amount = intent.get("amount_received") or intent.get("amount")
    if amount is not None and int(amount) != authorization.amount_cents:
        logger.warning(
            "Amount mismatch on %s: charged %s, expected %s",
            intent_id,
            amount,
            authorization.amount_cents,
        )
        authorization.last_error = (
            f"Amount mismatch: charged {amount}, expected {authorization.amount_cents}"
        )
        await db.commit()
        return True

    if authorization.state != AuthorizationState.SUCCEEDED:
        authorization.state = AuthorizationState.SUCCEEDED
        authorization.last_error = None
        await db.commit()
    await _mark_paid(db, order_id, intent_id, notifier)
    return True
