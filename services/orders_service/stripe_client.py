"""
Stripe API client for payment intents and refunds.

Provides async methods for:
- Creating payment intents (idempotent on the checkout attempt key)
- Retrieving payment intents
- Creating full refunds

plus verification of ``Stripe-Signature`` webhook headers.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.orders_service.exceptions import GatewayError, RateLimitedError

logger = get_logger(__name__)

settings = get_settings()

WEBHOOK_TOLERANCE_SECONDS = 300


@dataclass
class PaymentIntent:
    """Stripe payment intent, as far as checkout cares."""

    id: str
    client_secret: str
    status: str
    amount: int  # in cents
    currency: str


@dataclass
class Refund:
    """Result of a refund request."""

    id: str
    payment_intent: str
    status: str  # pending, succeeded, failed
    amount: int


class StripeError(GatewayError):
    """Stripe rejected the request itself (4xx other than 429)."""

    retryable = False

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


class StripeClient:
    """Async client for the Stripe PaymentIntents and Refunds APIs."""

    def __init__(
        self,
        secret_key: str = None,
        base_url: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required")
        self.base_url = (base_url or settings.STRIPE_API_BASE).rstrip("/")
        self._headers = {"Authorization": f"Bearer {self.secret_key}"}
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict = None,
        idempotency_key: str = None,
    ) -> dict:
        """Make an async form-encoded request to the Stripe API."""
        url = f"{self.base_url}{endpoint}"
        headers = dict(self._headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                timeout=settings.GATEWAY_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method, url=url, headers=headers, data=data
                )
        except httpx.TimeoutException as exc:
            logger.error("Stripe request timed out: %s %s", method, endpoint)
            raise GatewayError("Payment provider timed out.") from exc
        except httpx.HTTPError as exc:
            logger.error("Stripe request failed: %s %s: %s", method, endpoint, exc)
            raise GatewayError("Payment provider unreachable.") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code == 429:
            logger.error("Stripe rate limited %s %s", method, endpoint)
            raise RateLimitedError("Payment provider is rate limiting requests.")
        if response.status_code >= 500:
            logger.error(
                "Stripe API error: %s - %s", response.status_code, response.text
            )
            raise GatewayError("Payment provider error.")
        if not response.is_success:
            error = payload.get("error") or {}
            logger.error("Stripe API error: %s - %s", response.status_code, payload)
            raise StripeError(
                message=error.get("message", "Unknown Stripe error"),
                status_code=response.status_code,
                response_data=payload,
            )

        return payload

    # =========================================================================
    # Payment Intents
    # =========================================================================

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[dict] = None,
        receipt_email: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create a payment intent.

        Stripe de-duplicates on ``Idempotency-Key``: replaying the same key
        returns the original intent instead of creating a second one.
        """
        data = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        if receipt_email:
            data["receipt_email"] = receipt_email
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)

        intent = await self._request(
            "POST", "/payment_intents", data=data, idempotency_key=idempotency_key
        )
        return _to_payment_intent(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self._request("GET", f"/payment_intents/{intent_id}")
        return _to_payment_intent(intent)

    # =========================================================================
    # Refunds
    # =========================================================================

    async def create_refund(
        self, payment_intent_id: str, idempotency_key: str
    ) -> Refund:
        """Refund the full captured amount of a payment intent."""
        refund = await self._request(
            "POST",
            "/refunds",
            data={"payment_intent": payment_intent_id},
            idempotency_key=idempotency_key,
        )
        return Refund(
            id=refund.get("id", ""),
            payment_intent=refund.get("payment_intent", payment_intent_id),
            status=refund.get("status", "pending"),
            amount=refund.get("amount", 0),
        )


def _to_payment_intent(intent: dict) -> PaymentIntent:
    return PaymentIntent(
        id=intent.get("id", ""),
        client_secret=intent.get("client_secret", ""),
        status=intent.get("status", ""),
        amount=intent.get("amount", 0),
        currency=intent.get("currency", ""),
    )


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Check a ``Stripe-Signature`` header (``t=<ts>,v1=<hex>[,v1=...]``).

    The signed message is ``"<t>.<raw body>"`` under HMAC-SHA256; timestamps
    outside ``tolerance`` seconds are rejected to stop replays.
    """
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    if not secret or not signature_header:
        return False

    timestamp = None
    candidates = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            candidates.append(value)
    if not timestamp or not candidates:
        return False

    try:
        signed_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        return False

    signed_payload = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(
        secret.encode("utf-8"), signed_payload, hashlib.sha256
    ).hexdigest()
    return any(hmac.compare_digest(expected, candidate) for candidate in candidates)


def get_stripe_client() -> StripeClient:
    """Get a StripeClient instance."""
    return StripeClient()
