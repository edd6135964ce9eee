"""
Uber Direct API client for courier deliveries.

Provides async methods for:
- Fetching (and caching) OAuth client-credentials access tokens
- Creating deliveries (idempotent on a request key)
- Reading delivery status

plus verification of courier webhook signatures.
"""

import asyncio
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.datetime_utils import parse_iso
from libs.common.logging import get_logger
from services.orders_service.exceptions import DispatchError

logger = get_logger(__name__)

settings = get_settings()

# Refresh tokens this many seconds before they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 300


@dataclass
class CourierDelivery:
    """Courier delivery as returned by the network."""

    id: str
    status: str
    tracking_url: Optional[str] = None
    fee_cents: Optional[int] = None
    pickup_eta: Optional[datetime] = None
    dropoff_eta: Optional[datetime] = None
    raw: dict = field(default_factory=dict)


class CourierError(DispatchError):
    """The courier network rejected the request (4xx)."""

    retryable = False

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


@dataclass
class _CachedToken:
    access_token: str
    expires_at: float


class UberDirectClient:
    """Async client for the Uber Direct deliveries API."""

    def __init__(
        self,
        client_id: str = None,
        client_secret: str = None,
        customer_id: str = None,
        base_url: str = None,
        auth_url: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id or settings.UBER_CLIENT_ID
        self.client_secret = client_secret or settings.UBER_CLIENT_SECRET
        self.customer_id = customer_id or settings.UBER_CUSTOMER_ID
        if not (self.client_id and self.client_secret and self.customer_id):
            raise ValueError(
                "UBER_CLIENT_ID, UBER_CLIENT_SECRET and UBER_CUSTOMER_ID are required"
            )
        self.base_url = (base_url or settings.UBER_API_BASE).rstrip("/")
        self.auth_url = auth_url or settings.UBER_AUTH_URL
        self._token: Optional[_CachedToken] = None
        self._token_lock = asyncio.Lock()
        self._transport = transport

    # =========================================================================
    # Auth
    # =========================================================================

    async def _access_token(self) -> str:
        async with self._token_lock:
            now = time.time()
            if (
                self._token
                and self._token.expires_at > now + TOKEN_EXPIRY_MARGIN_SECONDS
            ):
                return self._token.access_token

            logger.info("Requesting new courier access token")
            try:
                async with httpx.AsyncClient(
                    timeout=settings.COURIER_TIMEOUT_SECONDS, transport=self._transport
                ) as client:
                    response = await client.post(
                        self.auth_url,
                        data={
                            "client_id": self.client_id,
                            "client_secret": self.client_secret,
                            "grant_type": "client_credentials",
                            "scope": "eats.deliveries",
                        },
                    )
            except httpx.HTTPError as exc:
                logger.error("Courier token request failed: %s", exc)
                raise DispatchError("Courier authentication unavailable.") from exc

            if not response.is_success:
                logger.error(
                    "Courier token error: %s - %s", response.status_code, response.text
                )
                raise DispatchError("Courier authentication failed.")

            data = response.json()
            self._token = _CachedToken(
                access_token=data["access_token"],
                expires_at=now + int(data.get("expires_in", 0)),
            )
            return self._token.access_token

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict = None,
        idempotency_key: str = None,
    ) -> dict:
        """Make an authenticated request against the customer's deliveries API."""
        token = await self._access_token()
        url = f"{self.base_url}/{self.customer_id}{endpoint}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                timeout=settings.COURIER_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method, url=url, headers=headers, json=json_data
                )
        except httpx.TimeoutException as exc:
            logger.error("Courier request timed out: %s %s", method, endpoint)
            raise DispatchError("Courier network timed out.") from exc
        except httpx.HTTPError as exc:
            logger.error("Courier request failed: %s %s: %s", method, endpoint, exc)
            raise DispatchError("Courier network unreachable.") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(
                "Courier API error: %s - %s", response.status_code, response.text
            )
            raise DispatchError("Courier network error.")
        if not response.is_success:
            logger.error("Courier API error: %s - %s", response.status_code, payload)
            raise CourierError(
                message=payload.get("message", "Courier rejected the delivery"),
                status_code=response.status_code,
                response_data=payload,
            )
        return payload

    # =========================================================================
    # Deliveries
    # =========================================================================

    async def create_delivery(
        self,
        pickup: dict,
        dropoff: dict,
        manifest_description: str,
        idempotency_key: str,
    ) -> CourierDelivery:
        """
        Request a courier.

        Args:
            pickup: ``{"name", "address", "phone"}``
            dropoff: ``{"name", "address", "phone", "instructions", "lat", "lng"}``
            manifest_description: what the courier carries (e.g. ``Order #42``)
            idempotency_key: request key; the network returns the original
                delivery when it sees the same key twice.
        """
        dropoff_location = {"address": dropoff["address"]}
        if dropoff.get("lat") and dropoff.get("lng"):
            dropoff_location["latitude"] = dropoff["lat"]
            dropoff_location["longitude"] = dropoff["lng"]

        body = {
            "pickup": {
                "location": {"address": pickup["address"]},
                "contact": {
                    "company_name": pickup["name"],
                    "phone_number": pickup["phone"],
                },
            },
            "dropoff": {
                "location": dropoff_location,
                "contact": {
                    "first_name": dropoff["name"],
                    "phone_number": dropoff.get("phone") or "",
                },
                "instructions": dropoff.get("instructions") or "",
            },
            "manifest": {"description": manifest_description},
        }
        data = await self._request(
            "POST", "/deliveries", json_data=body, idempotency_key=idempotency_key
        )
        return to_courier_delivery(data)

    async def get_delivery(self, delivery_id: str) -> CourierDelivery:
        data = await self._request("GET", f"/deliveries/{delivery_id}")
        return to_courier_delivery(data)


def to_courier_delivery(data: dict) -> CourierDelivery:
    """Parse a delivery payload (API response or webhook body)."""
    pickup = data.get("pickup") or {}
    dropoff = data.get("dropoff") or {}
    fee = data.get("fee")
    return CourierDelivery(
        id=data.get("id") or data.get("delivery_id") or "",
        status=data.get("status") or "",
        tracking_url=data.get("tracking_url"),
        fee_cents=int(fee) if isinstance(fee, (int, float)) else None,
        pickup_eta=parse_iso(data.get("pickup_eta") or pickup.get("eta")),
        dropoff_eta=parse_iso(data.get("dropoff_eta") or dropoff.get("eta")),
        raw=data,
    )


def verify_courier_signature(
    payload: bytes, signature: Optional[str], secret: Optional[str] = None
) -> bool:
    """HMAC-SHA256 hex digest of the raw body, compared in constant time."""
    secret = secret or settings.UBER_WEBHOOK_SECRET
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


_client: Optional[UberDirectClient] = None


def get_courier_client() -> UberDirectClient:
    """Process-wide client so the access token cache is shared."""
    global _client
    if _client is None:
        _client = UberDirectClient()
    return _client
