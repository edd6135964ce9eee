"""Integration tests for the background housekeeping tasks."""

from datetime import timedelta

import pytest
from libs.common.datetime_utils import utc_now
from services.orders_service.models import (
    DeliveryJob,
    DispatchState,
    FulfillmentType,
    OrderEvent,
    OrderStatus,
)
from services.orders_service.services.dispatch import get_delivery_job
from services.orders_service.services.lifecycle import get_order
from services.orders_service.tasks import (
    cancel_abandoned_orders,
    poll_active_deliveries,
)
from sqlalchemy import select

from tests.factories import OrderFactory


async def _dispatched(db, restaurant, external_id, status=OrderStatus.READY):
    order = OrderFactory.create(
        restaurant.org.id, status=status, fulfillment_type=FulfillmentType.DELIVERY
    )
    db.add(order)
    await db.flush()
    db.add(
        DeliveryJob(
            order_id=order.id,
            idempotency_key=str(order.id),
            state=DispatchState.DISPATCHED,
            external_delivery_id=external_id,
            courier_status="pending",
        )
    )
    await db.commit()
    return order


@pytest.mark.asyncio
@pytest.mark.integration
async def test_poll_applies_missed_courier_updates(
    db_session, session_factory, restaurant, fake_courier, notifier
):
    moving = await _dispatched(db_session, restaurant, "del_1")
    idle = await _dispatched(db_session, restaurant, "del_2")
    await fake_courier.create_delivery(
        pickup={}, dropoff={}, manifest_description="", idempotency_key="a"
    )
    await fake_courier.create_delivery(
        pickup={}, dropoff={}, manifest_description="", idempotency_key="b"
    )
    fake_courier.set_status("del_1", "pickup_complete")

    updated = await poll_active_deliveries(
        courier=fake_courier, notifier=notifier, session_factory=session_factory
    )

    assert updated == 1
    assert (await get_order(db_session, moving.id)).status == (
        OrderStatus.OUT_FOR_DELIVERY
    )
    assert (await get_order(db_session, idle.id)).status == OrderStatus.READY
    job = await get_delivery_job(db_session, moving.id)
    assert job.courier_status == "pickup_complete"
    events = (
        await db_session.execute(
            select(OrderEvent).where(OrderEvent.order_id == moving.id)
        )
    ).scalars().all()
    assert [e.actor_id for e in events] == ["system:courier_poll"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_poll_skips_finished_orders(
    db_session, session_factory, restaurant, fake_courier, notifier
):
    await _dispatched(db_session, restaurant, "del_1", status=OrderStatus.COMPLETED)

    updated = await poll_active_deliveries(
        courier=fake_courier, notifier=notifier, session_factory=session_factory
    )

    assert updated == 0
    fake_courier.get_delivery.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.integration
async def test_abandoned_checkouts_are_canceled(
    db_session, session_factory, restaurant, notifier
):
    now = utc_now()
    old = now - timedelta(hours=3)
    stale_draft = OrderFactory.create(
        restaurant.org.id, status=OrderStatus.DRAFT, created_at=old
    )
    stale_unpaid = OrderFactory.create(
        restaurant.org.id, status=OrderStatus.AWAITING_PAYMENT, created_at=old
    )
    fresh_unpaid = OrderFactory.create(
        restaurant.org.id, status=OrderStatus.AWAITING_PAYMENT, created_at=now
    )
    old_paid = OrderFactory.create(
        restaurant.org.id, status=OrderStatus.PAID, created_at=old
    )
    db_session.add_all([stale_draft, stale_unpaid, fresh_unpaid, old_paid])
    await db_session.commit()

    canceled = await cancel_abandoned_orders(
        now=now, notifier=notifier, session_factory=session_factory
    )

    assert canceled == 2
    statuses = {
        order.id: (await get_order(db_session, order.id)).status
        for order in (stale_draft, stale_unpaid, fresh_unpaid, old_paid)
    }
    assert statuses == {
        stale_draft.id: OrderStatus.CANCELED,
        stale_unpaid.id: OrderStatus.CANCELED,
        fresh_unpaid.id: OrderStatus.AWAITING_PAYMENT,
        old_paid.id: OrderStatus.PAID,
    }
    event = (
        await db_session.execute(
            select(OrderEvent).where(OrderEvent.order_id == stale_draft.id)
        )
    ).scalar_one()
    assert event.actor_id == "system:housekeeping"
    assert event.event_metadata == {"reason": "abandoned"}
