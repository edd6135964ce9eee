"""Order status state machine.

The transition table is the single source of truth for which role may move
an order between which statuses. Writes are optimistic: the UPDATE is
conditioned on the status the check was made against, so two staff members
racing on the same order cannot both win. Side effects (courier dispatch,
refunds) run as post-transition hooks after the commit and report failures
as warnings instead of undoing the transition.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.orders_service.exceptions import (
    ForbiddenTransition,
    OrderNotFoundError,
    OrderServiceError,
)
from services.orders_service.models import (
    ActorRole,
    DeliveryJob,
    FulfillmentType,
    Order,
    OrderEvent,
    OrderStatus,
)
from services.orders_service.services.dispatch import dispatch_delivery
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

SYSTEM: FrozenSet[ActorRole] = frozenset({ActorRole.SYSTEM})
PRIVILEGED: FrozenSet[ActorRole] = frozenset(
    {ActorRole.OWNER, ActorRole.MANAGER, ActorRole.ADMIN}
)
STAFF: FrozenSet[ActorRole] = PRIVILEGED | {ActorRole.STAFF}
ADMIN_ONLY: FrozenSet[ActorRole] = frozenset({ActorRole.ADMIN})


@dataclass(frozen=True)
class TransitionRule:
    roles: FrozenSet[ActorRole]
    # Restricts the edge to one fulfillment type
    fulfillment: Optional[FulfillmentType] = None


S = OrderStatus

TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], TransitionRule] = {
    (S.DRAFT, S.AWAITING_PAYMENT): TransitionRule(SYSTEM),
    (S.AWAITING_PAYMENT, S.PAID): TransitionRule(SYSTEM),
    (S.PAID, S.ACCEPTED): TransitionRule(PRIVILEGED),
    (S.ACCEPTED, S.PREPARING): TransitionRule(STAFF),
    (S.PREPARING, S.READY): TransitionRule(STAFF),
    (S.READY, S.COMPLETED): TransitionRule(PRIVILEGED, FulfillmentType.PICKUP),
    (S.READY, S.OUT_FOR_DELIVERY): TransitionRule(SYSTEM, FulfillmentType.DELIVERY),
    (S.OUT_FOR_DELIVERY, S.COMPLETED): TransitionRule(
        SYSTEM, FulfillmentType.DELIVERY
    ),
    (S.READY, S.REFUNDED): TransitionRule(ADMIN_ONLY),
    (S.COMPLETED, S.REFUNDED): TransitionRule(ADMIN_ONLY),
    (S.DRAFT, S.CANCELED): TransitionRule(SYSTEM | PRIVILEGED),
    (S.AWAITING_PAYMENT, S.CANCELED): TransitionRule(SYSTEM | PRIVILEGED),
    (S.PAID, S.CANCELED): TransitionRule(PRIVILEGED),
    (S.ACCEPTED, S.CANCELED): TransitionRule(PRIVILEGED),
}

TIMESTAMP_COLUMNS = {
    S.PAID: "paid_at",
    S.ACCEPTED: "accepted_at",
    S.READY: "ready_at",
    S.COMPLETED: "completed_at",
    S.CANCELED: "canceled_at",
    S.REFUNDED: "refunded_at",
}


@dataclass(frozen=True)
class Actor:
    """Who is moving the order."""

    id: str
    role: ActorRole

    @classmethod
    def system(cls, source: str) -> "Actor":
        return cls(id=f"system:{source}", role=ActorRole.SYSTEM)

    @classmethod
    def from_user(cls, user) -> "Actor":
        return cls(id=user.user_id, role=ActorRole(user.org_role))


@dataclass
class TransitionResult:
    order: Order
    previous_status: OrderStatus
    warnings: List[dict] = field(default_factory=list)
    delivery: Optional[DeliveryJob] = None


def check_transition(
    current: OrderStatus,
    target: OrderStatus,
    role: ActorRole,
    fulfillment_type: FulfillmentType,
) -> TransitionRule:
    """Return the rule allowing the move, or raise ``ForbiddenTransition``."""
    rule = TRANSITIONS.get((current, target))
    if rule is None or (
        rule.fulfillment is not None and rule.fulfillment != fulfillment_type
    ):
        raise ForbiddenTransition(current.value, target.value, role.value, "illegal")
    if role not in rule.roles:
        raise ForbiddenTransition(current.value, target.value, role.value, "role")
    return rule


def allowed_targets(order: Order, role: ActorRole) -> List[OrderStatus]:
    """Statuses ``role`` may move ``order`` to next (drives owner UI buttons)."""
    targets = []
    for (current, target), rule in TRANSITIONS.items():
        if current != order.status or role not in rule.roles:
            continue
        if rule.fulfillment is not None and rule.fulfillment != order.fulfillment_type:
            continue
        targets.append(target)
    return targets


async def get_order(db: AsyncSession, order_id, organization_id=None) -> Order:
    """Fresh read of an order; scoped to ``organization_id`` when given."""
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None or (
        organization_id is not None and order.organization_id != organization_id
    ):
        raise OrderNotFoundError("Order not found.")
    return order


async def transition_status(
    db: AsyncSession,
    order_id,
    target: OrderStatus,
    actor: Actor,
    *,
    notifier=None,
    courier=None,
    gateway=None,
    organization_id=None,
    metadata: Optional[dict] = None,
) -> TransitionResult:
    """
    Move an order to ``target`` on behalf of ``actor``.

    The status check, the conditional UPDATE and the audit event commit
    together. Hooks run afterwards:

    - ``preparing -> ready`` on a delivery order dispatches a courier;
    - ``-> refunded`` refunds the full payment through ``gateway``.

    Hook failures land in ``result.warnings``; the status stays committed.
    """
    target = OrderStatus(target)
    order = await get_order(db, order_id, organization_id)
    order_id = order.id
    current = order.status
    check_transition(current, target, actor.role, order.fulfillment_type)

    now = utc_now()
    values = {"status": target, "updated_at": now}
    if target in TIMESTAMP_COLUMNS:
        values[TIMESTAMP_COLUMNS[target]] = now

    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        fresh = await get_order(db, order_id)
        logger.info(
            "Order %s moved to %s before %s could apply %s",
            order_id,
            fresh.status.value,
            actor.id,
            target.value,
        )
        raise ForbiddenTransition(
            fresh.status.value, target.value, actor.role.value, "stale"
        )

    db.add(
        OrderEvent(
            order_id=order_id,
            previous_status=current,
            new_status=target,
            actor_id=actor.id,
            actor_role=actor.role,
            event_metadata=metadata,
            created_at=now,
        )
    )
    await db.commit()
    order = await get_order(db, order_id)
    logger.info(
        "Order %s: %s -> %s by %s (%s)",
        order.id,
        current.value,
        target.value,
        actor.id,
        actor.role.value,
    )

    if notifier is not None:
        await notifier.publish_order(order)

    outcome = TransitionResult(order=order, previous_status=current)
    if (
        target == OrderStatus.READY
        and order.fulfillment_type == FulfillmentType.DELIVERY
    ):
        await _run_dispatch_hook(db, outcome, courier=courier, notifier=notifier)
    elif target == OrderStatus.REFUNDED:
        await _run_refund_hook(outcome, gateway=gateway)

    if outcome.warnings or outcome.delivery is not None:
        outcome.order = await get_order(db, order_id)
    return outcome


def _warning(exc: OrderServiceError) -> dict:
    return {"code": exc.code, "detail": exc.message, "retryable": exc.retryable}


async def _run_dispatch_hook(
    db: AsyncSession, outcome: TransitionResult, *, courier, notifier
) -> None:
    order_id = outcome.order.id
    if courier is None:
        logger.warning("No courier configured; order %s left undispatched", order_id)
        outcome.warnings.append(
            {
                "code": "DISPATCH_FAILED",
                "detail": "Courier network is not configured.",
                "retryable": True,
            }
        )
        return
    try:
        outcome.delivery = await dispatch_delivery(
            db, order_id, courier=courier, notifier=notifier
        )
    except OrderServiceError as exc:
        logger.warning("Dispatch hook failed for order %s: %s", order_id, exc.message)
        outcome.warnings.append(_warning(exc))


async def _run_refund_hook(outcome: TransitionResult, *, gateway) -> None:
    order = outcome.order
    if not order.payment_reference:
        logger.info("Order %s has no payment to refund", order.id)
        return
    if gateway is None:
        logger.warning("No payment gateway configured; refund for %s skipped", order.id)
        outcome.warnings.append(
            {
                "code": "GATEWAY_ERROR",
                "detail": "Payment gateway is not configured; refund manually.",
                "retryable": True,
            }
        )
        return
    try:
        refund = await gateway.create_refund(
            order.payment_reference, idempotency_key=f"refund-{order.id}"
        )
        logger.info("Refund %s issued for order %s", refund.id, order.id)
    except OrderServiceError as exc:
        logger.warning("Refund hook failed for order %s: %s", order.id, exc.message)
        outcome.warnings.append(_warning(exc))
