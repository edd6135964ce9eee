"""Unit tests for the Stripe and Uber Direct clients."""

import hashlib
import hmac
import json
from urllib.parse import parse_qs

import httpx
import pytest
from services.orders_service.courier_client import (
    CourierError,
    UberDirectClient,
    to_courier_delivery,
    verify_courier_signature,
)
from services.orders_service.exceptions import (
    DispatchError,
    GatewayError,
    RateLimitedError,
)
from services.orders_service.stripe_client import (
    StripeClient,
    StripeError,
    verify_webhook_signature,
)

# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


def _stripe(handler) -> StripeClient:
    return StripeClient(
        secret_key="sk_test_123",
        base_url="https://stripe.test/v1",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_intent_request_is_idempotent_and_form_encoded():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "id": "pi_1",
                "client_secret": "pi_1_secret",
                "status": "requires_payment_method",
                "amount": 6578,
                "currency": "cad",
            },
        )

    intent = await _stripe(handler).create_payment_intent(
        amount_cents=6578,
        currency="CAD",
        idempotency_key="checkout_abc",
        metadata={"order_number": 12},
        receipt_email="marie@example.com",
    )

    assert intent.id == "pi_1"
    assert intent.client_secret == "pi_1_secret"
    request = seen[0]
    assert request.url.path == "/v1/payment_intents"
    assert request.headers["Idempotency-Key"] == "checkout_abc"
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    form = parse_qs(request.content.decode())
    assert form["amount"] == ["6578"]
    assert form["currency"] == ["cad"]
    assert form["metadata[order_number]"] == ["12"]


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "status_code,error_type,retryable",
    [
        (429, RateLimitedError, True),
        (500, GatewayError, True),
        (402, StripeError, False),
    ],
)
async def test_stripe_errors_are_classified(status_code, error_type, retryable):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code, json={"error": {"message": "Your card was declined."}}
        )

    with pytest.raises(error_type) as excinfo:
        await _stripe(handler).create_refund("pi_1", idempotency_key="refund-1")
    assert excinfo.value.retryable is retryable


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_timeout_is_a_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(GatewayError) as excinfo:
        await _stripe(handler).retrieve_payment_intent("pi_1")
    assert excinfo.value.code == "GATEWAY_ERROR"


@pytest.mark.unit
def test_stripe_client_requires_a_key():
    with pytest.raises(ValueError):
        StripeClient(secret_key="")


def _stripe_header(payload: bytes, secret: str, timestamp: int) -> str:
    digest = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.mark.unit
def test_stripe_signature_verification():
    payload = b'{"type": "payment_intent.succeeded"}'
    now = 1_760_000_000
    header = _stripe_header(payload, "whsec_x", now)

    assert verify_webhook_signature(payload, header, "whsec_x", now=now)
    assert not verify_webhook_signature(payload + b" ", header, "whsec_x", now=now)
    assert not verify_webhook_signature(payload, header, "whsec_y", now=now)
    assert not verify_webhook_signature(payload, header, "whsec_x", now=now + 301)
    assert not verify_webhook_signature(payload, None, "whsec_x", now=now)
    assert not verify_webhook_signature(payload, "garbage", "whsec_x", now=now)


# ---------------------------------------------------------------------------
# Uber Direct
# ---------------------------------------------------------------------------


class CourierApi:
    def __init__(self, delivery_status=200):
        self.token_requests = 0
        self.delivery_requests = []
        self.delivery_status = delivery_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.test":
            self.token_requests += 1
            return httpx.Response(
                200, json={"access_token": "tok-1", "expires_in": 2592000}
            )
        self.delivery_requests.append(request)
        if self.delivery_status != 200:
            return httpx.Response(
                self.delivery_status, json={"message": "address_undeliverable"}
            )
        return httpx.Response(
            200,
            json={
                "id": "del_123",
                "status": "pending",
                "tracking_url": "https://courier.test/t/del_123",
                "fee": 899,
                "pickup": {"eta": "2026-01-05T16:20:00Z"},
                "dropoff_eta": "2026-01-05T16:45:00Z",
            },
        )


def _courier(api: CourierApi) -> UberDirectClient:
    return UberDirectClient(
        client_id="cid",
        client_secret="secret",
        customer_id="cust_1",
        base_url="https://courier.test/v1/customers",
        auth_url="https://auth.test/oauth/v2/token",
        transport=httpx.MockTransport(api),
    )


PICKUP = {"name": "Chez Test", "phone": "+15145550100", "address": "1 Rue A"}
DROPOFF = {
    "name": "Marie",
    "phone": "5145550101",
    "address": "2 Ave B",
    "instructions": "Ring twice",
    "lat": 45.5,
    "lng": -73.6,
}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_delivery_caches_token_and_sends_key():
    api = CourierApi()
    courier = _courier(api)

    first = await courier.create_delivery(PICKUP, DROPOFF, "Order #1", "key-1")
    await courier.get_delivery(first.id)

    assert api.token_requests == 1
    assert first.id == "del_123"
    assert first.fee_cents == 899
    assert first.pickup_eta is not None and first.dropoff_eta is not None
    create = api.delivery_requests[0]
    assert create.url.path == "/v1/customers/cust_1/deliveries"
    assert create.headers["Idempotency-Key"] == "key-1"
    assert create.headers["Authorization"] == "Bearer tok-1"
    body = json.loads(create.content)
    assert body["dropoff"]["location"]["latitude"] == 45.5
    assert body["manifest"]["description"] == "Order #1"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_courier_rejection_is_not_retryable():
    with pytest.raises(CourierError) as excinfo:
        await _courier(CourierApi(delivery_status=400)).create_delivery(
            PICKUP, DROPOFF, "Order #1", "key-1"
        )
    assert excinfo.value.retryable is False
    assert excinfo.value.code == "DISPATCH_FAILED"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_courier_outage_is_retryable():
    with pytest.raises(DispatchError) as excinfo:
        await _courier(CourierApi(delivery_status=503)).create_delivery(
            PICKUP, DROPOFF, "Order #1", "key-1"
        )
    assert not isinstance(excinfo.value, CourierError)
    assert excinfo.value.retryable is True


@pytest.mark.unit
def test_courier_client_requires_credentials():
    with pytest.raises(ValueError):
        UberDirectClient(client_id="", client_secret="", customer_id="")


@pytest.mark.unit
def test_courier_signature_and_payload_parsing():
    payload = b'{"status": "pickup_complete"}'
    signature = hmac.new(b"shh", payload, hashlib.sha256).hexdigest()

    assert verify_courier_signature(payload, signature, "shh")
    assert verify_courier_signature(payload, signature.upper(), "shh")
    assert not verify_courier_signature(payload, signature, "other")
    assert not verify_courier_signature(payload, None, "shh")

    delivery = to_courier_delivery({"delivery_id": "del_9", "status": "delivered"})
    assert (delivery.id, delivery.status, delivery.fee_cents) == (
        "del_9",
        "delivered",
        None,
    )
