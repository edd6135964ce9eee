"""Integration tests for the Stripe and courier webhooks."""

import json

import pytest
from services.orders_service.models import (
    AuthorizationState,
    DeliveryJob,
    DispatchState,
    FulfillmentType,
    OrderEvent,
    OrderStatus,
    PaymentAuthorization,
)
from sqlalchemy import func, select

from tests.conftest import sign_courier, sign_stripe, stripe_event
from tests.factories import OrderFactory

STRIPE_URL = "/orders/webhooks/stripe"
COURIER_URL = "/orders/webhooks/courier"


async def _checkout(client, restaurant) -> dict:
    tourtiere, poutine = restaurant.products
    response = await client.post(
        f"/orders/public/{restaurant.org.slug}/payment-intents",
        json={
            "idempotency_key": "checkout_webhook_0001",
            "items": [
                {"product_id": str(tourtiere.id), "qty": 1},
                {"product_id": str(poutine.id), "qty": 2},
            ],
            "customer": {
                "name": "Marie Tremblay",
                "email": "marie@example.com",
                "phone": "514-555-0101",
            },
            "fulfillment": {"type": "pickup"},
        },
    )
    assert response.status_code == 200, response.text
    return response.json()


async def _post_stripe(client, payload: bytes, signature=None):
    return await client.post(
        STRIPE_URL,
        content=payload,
        headers={"Stripe-Signature": signature or sign_stripe(payload)},
    )


async def _authorization(session_factory) -> PaymentAuthorization:
    async with session_factory() as db:
        result = await db.execute(select(PaymentAuthorization))
        return result.unique().scalar_one()


async def _event_count(session_factory, order_id) -> int:
    async with session_factory() as db:
        result = await db.execute(
            select(func.count())
            .select_from(OrderEvent)
            .where(OrderEvent.order_id == order_id)
        )
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payment_succeeded_marks_the_order_paid(
    client, restaurant, session_factory
):
    checkout = await _checkout(client, restaurant)
    payload = stripe_event(
        "payment_intent.succeeded",
        {"id": "pi_test_1", "amount_received": checkout["totals"]["total_cents"]},
    )

    response = await _post_stripe(client, payload)

    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": True}
    authorization = await _authorization(session_factory)
    assert authorization.state == AuthorizationState.SUCCEEDED
    assert authorization.order.status == OrderStatus.PAID
    assert authorization.order.paid_at is not None


@pytest.mark.asyncio
@pytest.mark.integration
async def test_replayed_payment_event_is_a_no_op(client, restaurant, session_factory):
    checkout = await _checkout(client, restaurant)
    payload = stripe_event(
        "payment_intent.succeeded",
        {"id": "pi_test_1", "amount_received": checkout["totals"]["total_cents"]},
    )
    await _post_stripe(client, payload)
    events_before = await _event_count(session_factory, checkout["order_id"])

    response = await _post_stripe(client, payload)

    assert response.status_code == 200
    assert await _event_count(session_factory, checkout["order_id"]) == events_before
    authorization = await _authorization(session_factory)
    assert authorization.order.status == OrderStatus.PAID


@pytest.mark.asyncio
@pytest.mark.integration
async def test_amount_mismatch_is_recorded_not_paid(
    client, restaurant, session_factory
):
    await _checkout(client, restaurant)
    payload = stripe_event(
        "payment_intent.succeeded", {"id": "pi_test_1", "amount_received": 100}
    )

    response = await _post_stripe(client, payload)

    assert response.status_code == 200
    authorization = await _authorization(session_factory)
    assert authorization.state == AuthorizationState.AUTHORIZED
    assert authorization.last_error.startswith("Amount mismatch")
    assert authorization.order.status == OrderStatus.AWAITING_PAYMENT


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payment_failed_marks_the_authorization(
    client, restaurant, session_factory
):
    await _checkout(client, restaurant)
    payload = stripe_event(
        "payment_intent.payment_failed",
        {
            "id": "pi_test_1",
            "last_payment_error": {"message": "Your card was declined."},
        },
    )

    response = await _post_stripe(client, payload)

    assert response.json()["handled"] is True
    authorization = await _authorization(session_factory)
    assert authorization.state == AuthorizationState.FAILED
    assert authorization.last_error == "Your card was declined."
    assert authorization.order.status == OrderStatus.AWAITING_PAYMENT


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unrelated_stripe_events_are_acknowledged(client, restaurant):
    payload = stripe_event("charge.refunded", {"id": "ch_1"})

    response = await _post_stripe(client, payload)

    assert response.json() == {"received": True, "handled": False}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_stripe_webhook_rejects_bad_signature(client, restaurant):
    payload = stripe_event("payment_intent.succeeded", {"id": "pi_test_1"})

    response = await _post_stripe(
        client, payload, signature=sign_stripe(payload, secret="whsec_other")
    )

    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Courier
# ---------------------------------------------------------------------------


async def _dispatched_order(db, restaurant, status=OrderStatus.READY):
    order = OrderFactory.create(
        restaurant.org.id,
        status=status,
        fulfillment_type=FulfillmentType.DELIVERY,
    )
    db.add(order)
    await db.flush()
    db.add(
        DeliveryJob(
            order_id=order.id,
            idempotency_key=str(order.id),
            state=DispatchState.DISPATCHED,
            external_delivery_id="del_77",
            courier_status="pending",
        )
    )
    await db.commit()
    return order


async def _post_courier(client, body: dict, signature=None):
    payload = json.dumps(body).encode("utf-8")
    return await client.post(
        COURIER_URL,
        content=payload,
        headers={"X-Courier-Signature": signature or sign_courier(payload)},
    )


async def _job(session_factory) -> DeliveryJob:
    async with session_factory() as db:
        result = await db.execute(select(DeliveryJob))
        return result.scalar_one()


@pytest.mark.asyncio
@pytest.mark.integration
async def test_courier_pickup_then_dropoff_completes_the_order(
    client, db_session, restaurant, session_factory
):
    order = await _dispatched_order(db_session, restaurant)

    picked_up = await _post_courier(
        client, {"delivery_id": "del_77", "status": "pickup_complete"}
    )
    assert picked_up.json()["order_status"] == "out_for_delivery"

    delivered = await _post_courier(
        client,
        {
            "delivery_id": "del_77",
            "status": "delivered",
            "data": {"tracking_url": "https://courier.example/t/del_77"},
        },
    )
    assert delivered.json()["order_status"] == "completed"

    job = await _job(session_factory)
    assert job.state == DispatchState.DELIVERED
    assert job.courier_status == "delivered"
    assert job.tracking_url == "https://courier.example/t/del_77"
    assert await _event_count(session_factory, order.id) == 2


@pytest.mark.asyncio
@pytest.mark.integration
async def test_missed_pickup_event_still_completes_the_order(
    client, db_session, restaurant, session_factory
):
    order = await _dispatched_order(db_session, restaurant)

    response = await _post_courier(
        client, {"delivery_id": "del_77", "status": "delivered"}
    )

    assert response.json()["order_status"] == "completed"
    async with session_factory() as db:
        result = await db.execute(
            select(OrderEvent.new_status)
            .where(OrderEvent.order_id == order.id)
            .order_by(OrderEvent.created_at)
        )
        assert list(result.scalars()) == [
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.COMPLETED,
        ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_replayed_courier_event_is_harmless(
    client, db_session, restaurant, session_factory
):
    order = await _dispatched_order(db_session, restaurant)
    body = {"delivery_id": "del_77", "status": "delivered"}
    await _post_courier(client, body)

    response = await _post_courier(client, body)

    assert response.status_code == 200
    assert response.json()["order_status"] == "completed"
    assert await _event_count(session_factory, order.id) == 2


@pytest.mark.asyncio
@pytest.mark.integration
async def test_courier_cancel_keeps_the_order(
    client, db_session, restaurant, session_factory
):
    await _dispatched_order(db_session, restaurant)

    response = await _post_courier(
        client, {"delivery_id": "del_77", "status": "canceled"}
    )

    assert response.json()["order_status"] == "ready"
    job = await _job(session_factory)
    assert job.state == DispatchState.CANCELED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unknown_delivery_is_acknowledged(client, restaurant):
    response = await _post_courier(
        client, {"delivery_id": "del_missing", "status": "delivered"}
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_courier_webhook_rejects_bad_signature(client, db_session, restaurant):
    await _dispatched_order(db_session, restaurant)

    response = await _post_courier(
        client, {"delivery_id": "del_77", "status": "delivered"}, signature="00ff"
    )

    assert response.status_code == 401
