"""Owner dashboard router: order board, status changes, manual dispatch."""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from libs.auth.dependencies import require_staff
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.orders_service.exceptions import DispatchError
from services.orders_service.models import Order, OrderEvent, OrderStatus
from services.orders_service.routers._helpers import (
    delivery_out,
    get_courier,
    get_payment_gateway,
    get_realtime_notifier,
    order_out,
)
from services.orders_service.schemas import (
    DeliveryJobOut,
    OrderDetailOut,
    OrderEventOut,
    OrderOut,
    StatusUpdateRequest,
    TransitionResponse,
    TransitionWarning,
)
from services.orders_service.services.dispatch import (
    dispatch_delivery,
    get_delivery_job,
)
from services.orders_service.services.lifecycle import (
    Actor,
    allowed_targets,
    get_order,
    transition_status,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/owner", tags=["owner"])


@router.get("/orders", response_model=List[OrderOut])
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
):
    """Newest first. Unpaid drafts are hidden unless asked for explicitly."""
    query = select(Order).where(Order.organization_id == current_user.org_id)
    if status is not None:
        query = query.where(Order.status == status)
    else:
        query = query.where(Order.status != OrderStatus.DRAFT)
    query = (
        query.order_by(Order.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(query)
    return [order_out(order) for order in result.scalars().all()]


@router.get("/orders/{order_id}", response_model=OrderDetailOut)
async def get_order_detail(
    order_id: uuid.UUID,
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
):
    order = await get_order(db, order_id, current_user.org_id)
    result = await db.execute(
        select(OrderEvent)
        .where(OrderEvent.order_id == order.id)
        .order_by(OrderEvent.created_at)
    )
    events = result.scalars().all()
    job = await get_delivery_job(db, order.id)
    actor = Actor.from_user(current_user)
    return OrderDetailOut(
        **order_out(order).model_dump(),
        events=[OrderEventOut.model_validate(event) for event in events],
        delivery=delivery_out(job),
        allowed_transitions=allowed_targets(order, actor.role),
    )


@router.post("/orders/{order_id}/status", response_model=TransitionResponse)
async def update_order_status(
    order_id: uuid.UUID,
    payload: StatusUpdateRequest,
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
    notifier=Depends(get_realtime_notifier),
    courier=Depends(get_courier),
    gateway=Depends(get_payment_gateway),
):
    """
    Move an order along its lifecycle.

    The status change commits even when a follow-up (courier dispatch,
    refund) fails; those failures come back in ``warnings``.
    """
    metadata = {"note": payload.note} if payload.note else None
    outcome = await transition_status(
        db,
        order_id,
        payload.status,
        Actor.from_user(current_user),
        notifier=notifier,
        courier=courier,
        gateway=gateway,
        organization_id=current_user.org_id,
        metadata=metadata,
    )
    return TransitionResponse(
        order=order_out(outcome.order),
        previous_status=outcome.previous_status,
        warnings=[TransitionWarning(**warning) for warning in outcome.warnings],
        delivery=delivery_out(outcome.delivery),
    )


@router.post("/orders/{order_id}/dispatch", response_model=DeliveryJobOut)
async def retry_dispatch(
    order_id: uuid.UUID,
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
    notifier=Depends(get_realtime_notifier),
    courier=Depends(get_courier),
):
    """Request a courier for a ready order; an existing job is returned as is."""
    if courier is None:
        raise DispatchError("Courier network is not configured.")
    job = await dispatch_delivery(
        db,
        order_id,
        courier=courier,
        notifier=notifier,
        organization_id=current_user.org_id,
    )
    return delivery_out(job)
