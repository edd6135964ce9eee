"""Integration tests for order status transitions and their hooks."""

import asyncio

import pytest
from services.orders_service.exceptions import (
    DispatchError,
    ForbiddenTransition,
    GatewayError,
    OrderNotFoundError,
)
from services.orders_service.models import (
    ActorRole,
    DispatchState,
    FulfillmentType,
    Order,
    OrderEvent,
    OrderStatus,
)
from services.orders_service.services import lifecycle
from services.orders_service.services.dispatch import dispatch_key
from services.orders_service.services.lifecycle import Actor, transition_status
from services.orders_service.services.notifier import track_channel
from sqlalchemy import select

from tests.factories import OrderFactory, OrderItemFactory

OWNER = Actor(id="user-owner", role=ActorRole.OWNER)
STAFF = Actor(id="user-staff", role=ActorRole.STAFF)
ADMIN = Actor(id="user-admin", role=ActorRole.ADMIN)


async def _seed_order(db, restaurant, **overrides) -> Order:
    order = OrderFactory.create(restaurant.org.id, **overrides)
    db.add(order)
    db.add(OrderItemFactory.create(order.id))
    await db.commit()
    return order


async def _events(db, order_id):
    result = await db.execute(
        select(OrderEvent)
        .where(OrderEvent.order_id == order_id)
        .order_by(OrderEvent.created_at)
    )
    return result.scalars().all()


@pytest.mark.asyncio
@pytest.mark.integration
async def test_pickup_order_walks_the_happy_path(db_session, restaurant, notifier):
    order = await _seed_order(db_session, restaurant)

    for target, actor in [
        (OrderStatus.ACCEPTED, OWNER),
        (OrderStatus.PREPARING, STAFF),
        (OrderStatus.READY, STAFF),
        (OrderStatus.COMPLETED, OWNER),
    ]:
        outcome = await transition_status(
            db_session, order.id, target, actor, notifier=notifier
        )
        assert outcome.order.status == target
        assert outcome.warnings == []

    final = outcome.order
    assert final.accepted_at is not None
    assert final.ready_at is not None
    assert final.completed_at is not None
    events = await _events(db_session, order.id)
    assert [(e.previous_status, e.new_status) for e in events] == [
        (OrderStatus.PAID, OrderStatus.ACCEPTED),
        (OrderStatus.ACCEPTED, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.READY),
        (OrderStatus.READY, OrderStatus.COMPLETED),
    ]
    assert [e.actor_id for e in events] == [
        "user-owner",
        "user-staff",
        "user-staff",
        "user-owner",
    ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_staff_cannot_skip_ready(db_session, restaurant):
    order = await _seed_order(db_session, restaurant, status=OrderStatus.PREPARING)

    with pytest.raises(ForbiddenTransition) as excinfo:
        await transition_status(db_session, order.id, OrderStatus.COMPLETED, STAFF)

    assert excinfo.value.reason == "illegal"
    unchanged = await lifecycle.get_order(db_session, order.id)
    assert unchanged.status == OrderStatus.PREPARING
    assert await _events(db_session, order.id) == []

    outcome = await transition_status(db_session, order.id, OrderStatus.READY, STAFF)
    assert outcome.order.status == OrderStatus.READY


@pytest.mark.asyncio
@pytest.mark.integration
async def test_note_is_recorded_on_the_event(db_session, restaurant):
    order = await _seed_order(db_session, restaurant)

    await transition_status(
        db_session,
        order.id,
        OrderStatus.CANCELED,
        OWNER,
        metadata={"note": "Customer called"},
    )

    (event,) = await _events(db_session, order.id)
    assert event.event_metadata == {"note": "Customer called"}
    assert event.actor_role == ActorRole.OWNER


@pytest.mark.asyncio
@pytest.mark.integration
async def test_concurrent_change_makes_the_loser_stale(
    db_session, session_factory, restaurant, monkeypatch
):
    order = await _seed_order(db_session, restaurant)
    order_id = order.id
    original_get_order = lifecycle.get_order
    raced = []

    async def get_order_then_race(db, order_id, organization_id=None):
        fetched = await original_get_order(db, order_id, organization_id)
        if not raced:
            raced.append(True)
            async with session_factory() as other:
                await transition_status(other, order_id, OrderStatus.CANCELED, OWNER)
        return fetched

    monkeypatch.setattr(lifecycle, "get_order", get_order_then_race)

    with pytest.raises(ForbiddenTransition) as excinfo:
        await transition_status(db_session, order_id, OrderStatus.ACCEPTED, OWNER)

    assert excinfo.value.reason == "stale"
    assert excinfo.value.current == "canceled"
    events = await _events(db_session, order_id)
    assert [e.new_status for e in events] == [OrderStatus.CANCELED]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_other_organization_cannot_touch_the_order(db_session, restaurant):
    from tests.factories import OrganizationFactory

    other = OrganizationFactory.create()
    db_session.add(other)
    await db_session.commit()
    order = await _seed_order(db_session, restaurant)

    with pytest.raises(OrderNotFoundError):
        await transition_status(
            db_session,
            order.id,
            OrderStatus.ACCEPTED,
            OWNER,
            organization_id=other.id,
        )


@pytest.mark.asyncio
@pytest.mark.integration
async def test_ready_delivery_order_dispatches_a_courier(
    db_session, restaurant, fake_courier, notifier
):
    order = await _seed_order(
        db_session,
        restaurant,
        status=OrderStatus.PREPARING,
        fulfillment_type=FulfillmentType.DELIVERY,
    )

    async with notifier.subscribe(track_channel(order.public_token)) as page:
        outcome = await transition_status(
            db_session,
            order.id,
            OrderStatus.READY,
            STAFF,
            courier=fake_courier,
            notifier=notifier,
        )
        messages = [
            await asyncio.wait_for(page.get(), 1),
            await asyncio.wait_for(page.get(), 1),
        ]

    assert outcome.warnings == []
    assert outcome.delivery.state == DispatchState.DISPATCHED
    assert outcome.delivery.external_delivery_id == "del_1"
    call = fake_courier.create_delivery.await_args
    assert call.kwargs["idempotency_key"] == dispatch_key(order.id)
    assert call.kwargs["manifest_description"] == f"Order #{order.order_number}"
    assert [m["event"] for m in messages] == ["order.updated", "delivery.updated"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_dispatch_failure_does_not_undo_ready(
    db_session, restaurant, fake_courier
):
    order = await _seed_order(
        db_session,
        restaurant,
        status=OrderStatus.PREPARING,
        fulfillment_type=FulfillmentType.DELIVERY,
    )
    fake_courier.create_delivery.side_effect = DispatchError("Courier unreachable.")

    outcome = await transition_status(
        db_session, order.id, OrderStatus.READY, STAFF, courier=fake_courier
    )

    assert outcome.order.status == OrderStatus.READY
    assert outcome.warnings == [
        {
            "code": "DISPATCH_FAILED",
            "detail": "Courier unreachable.",
            "retryable": True,
        }
    ]
    assert outcome.delivery is None
    stored = await lifecycle.get_order(db_session, order.id)
    assert stored.status == OrderStatus.READY


@pytest.mark.asyncio
@pytest.mark.integration
async def test_missing_courier_is_a_warning(db_session, restaurant):
    order = await _seed_order(
        db_session,
        restaurant,
        status=OrderStatus.PREPARING,
        fulfillment_type=FulfillmentType.DELIVERY,
    )

    outcome = await transition_status(db_session, order.id, OrderStatus.READY, STAFF)

    assert outcome.order.status == OrderStatus.READY
    assert [w["code"] for w in outcome.warnings] == ["DISPATCH_FAILED"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_calls_the_gateway_once_per_order(
    db_session, restaurant, fake_gateway
):
    order = await _seed_order(db_session, restaurant, status=OrderStatus.COMPLETED)

    outcome = await transition_status(
        db_session, order.id, OrderStatus.REFUNDED, ADMIN, gateway=fake_gateway
    )

    assert outcome.order.status == OrderStatus.REFUNDED
    assert outcome.order.refunded_at is not None
    fake_gateway.create_refund.assert_awaited_once_with(
        "pi_test_123", idempotency_key=f"refund-{order.id}"
    )


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_failure_is_reported_not_rolled_back(
    db_session, restaurant, fake_gateway
):
    order = await _seed_order(db_session, restaurant, status=OrderStatus.COMPLETED)
    fake_gateway.create_refund.side_effect = GatewayError("Stripe is down.")

    outcome = await transition_status(
        db_session, order.id, OrderStatus.REFUNDED, ADMIN, gateway=fake_gateway
    )

    assert outcome.order.status == OrderStatus.REFUNDED
    assert outcome.warnings[0]["code"] == "GATEWAY_ERROR"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_owner_cannot_refund(db_session, restaurant, fake_gateway):
    order = await _seed_order(db_session, restaurant, status=OrderStatus.COMPLETED)

    with pytest.raises(ForbiddenTransition) as excinfo:
        await transition_status(
            db_session, order.id, OrderStatus.REFUNDED, OWNER, gateway=fake_gateway
        )

    assert excinfo.value.reason == "role"
    fake_gateway.create_refund.assert_not_awaited()
