"""Storefront checkout flow controller.

Drives one checkout attempt through ``items -> details -> delivery (slot) ->
payment -> success`` against the orders API. All state lives on an explicit
``CheckoutSession``; the only thing persisted across page reloads is the
session's idempotency key, kept in an ``IdempotencyKeyStore`` scoped to that
session so retries reuse it and the next checkout gets a fresh one.
"""

import asyncio
import enum
import json
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import httpx
from libs.common.logging import get_logger
from services.orders_service.services.pricing import (
    PricedLine,
    display_to_cents,
    quote_display,
)
from services.orders_service.services.slot_planner import normalize_locale

logger = get_logger(__name__)


class CheckoutStep(str, enum.Enum):
    ITEMS = "items"
    DETAILS = "details"
    DELIVERY = "delivery"
    PAYMENT = "payment"
    SUCCESS = "success"
    CLOSED = "closed"


# ============================================================================
# USER-FACING COPY
# ============================================================================

ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "INVALID_CUSTOMER": {
        "en": "Please check your contact details.",
        "fr": "Veuillez vérifier vos coordonnées.",
    },
    "ITEMS_UNAVAILABLE": {
        "en": "Some items are no longer available.",
        "fr": "Certains articles ne sont plus disponibles.",
    },
    "ORG_NOT_FOUND": {
        "en": "Restaurant not found. Please refresh the page.",
        "fr": "Restaurant introuvable. Veuillez rafraîchir la page.",
    },
    "STORE_CLOSED": {
        "en": "The restaurant is closed for the next 7 days.",
        "fr": "Le restaurant est fermé pour les 7 prochains jours.",
    },
    "INVALID_CHECKOUT": {
        "en": "Please review your order details.",
        "fr": "Veuillez vérifier les détails de votre commande.",
    },
    "RATE_LIMITED": {
        "en": "Too many attempts. Please wait a moment.",
        "fr": "Trop de tentatives. Veuillez patienter un moment.",
    },
    "SERVER_ERROR": {
        "en": "Server error. Please try again in a few moments.",
        "fr": "Erreur serveur. Veuillez réessayer dans quelques instants.",
    },
    "DEFAULT": {
        "en": "Could not initialize payment. Please try again.",
        "fr": "Impossible d'initialiser le paiement. Veuillez réessayer.",
    },
}


# INVALID_CUSTOMER carries the rejected field
CUSTOMER_FIELD_MESSAGES: Dict[str, Dict[str, str]] = {
    "name": {
        "en": "Please enter your name.",
        "fr": "Veuillez entrer votre nom.",
    },
    "email": {
        "en": "Invalid email address. Please check.",
        "fr": "Adresse courriel invalide. Veuillez vérifier.",
    },
    "phone": {
        "en": "Invalid phone number. Please check.",
        "fr": "Numéro de téléphone invalide. Veuillez vérifier.",
    },
}


def localized_error(
    code: Optional[str],
    status_code: int,
    locale: str,
    field: Optional[str] = None,
) -> str:
    locale = normalize_locale(locale)
    if code == "INVALID_CUSTOMER" and field in CUSTOMER_FIELD_MESSAGES:
        return CUSTOMER_FIELD_MESSAGES[field][locale]
    if code in ERROR_MESSAGES:
        key = code
    elif status_code == 429:
        key = "RATE_LIMITED"
    elif status_code >= 500:
        key = "SERVER_ERROR"
    else:
        key = "DEFAULT"
    return ERROR_MESSAGES[key][locale]


# ============================================================================
# IDEMPOTENCY KEY STORAGE
# ============================================================================


class IdempotencyKeyStore:
    """Where a checkout session keeps its key between attempts."""

    def get(self, session_id: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, session_id: str, key: str) -> None:
        raise NotImplementedError

    def clear(self, session_id: str) -> None:
        raise NotImplementedError

    def get_or_create(self, session_id: str) -> str:
        key = self.get(session_id)
        if key is None:
            key = f"checkout_{uuid.uuid4()}"
            self.set(session_id, key)
        return key


class InMemoryKeyStore(IdempotencyKeyStore):
    def __init__(self):
        self._keys: Dict[str, str] = {}

    def get(self, session_id: str) -> Optional[str]:
        return self._keys.get(session_id)

    def set(self, session_id: str, key: str) -> None:
        self._keys[session_id] = key

    def clear(self, session_id: str) -> None:
        self._keys.pop(session_id, None)


class JsonFileKeyStore(IdempotencyKeyStore):
    """Keys survive a process restart (the kiosk/browser-reload case)."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError:
            logger.warning(
                "Corrupt idempotency key store at %s; starting fresh", self.path
            )
            return {}

    def _write(self, keys: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(keys), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, session_id: str) -> Optional[str]:
        return self._read().get(session_id)

    def set(self, session_id: str, key: str) -> None:
        keys = self._read()
        keys[session_id] = key
        self._write(keys)

    def clear(self, session_id: str) -> None:
        keys = self._read()
        if keys.pop(session_id, None) is not None:
            self._write(keys)


# ============================================================================
# API CLIENT
# ============================================================================


class CheckoutApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: Optional[str],
        detail: str,
        request_id: Optional[str],
        field: Optional[str] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.detail = detail
        self.request_id = request_id
        self.field = field
        super().__init__(detail)


class StorefrontApi:
    """Thin async client for the public checkout endpoints."""

    def __init__(self, client: httpx.AsyncClient, prefix: str = "/orders/public"):
        self.client = client
        self.prefix = prefix

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(
                method, f"{self.prefix}{path}", **kwargs
            )
        except httpx.TransportError as exc:
            logger.warning("Checkout request %s %s failed: %s", method, path, exc)
            raise CheckoutApiError(
                status_code=503, code=None, detail=str(exc), request_id=None
            ) from exc
        if response.is_success:
            return response.json()
        try:
            body = response.json()
        except ValueError:
            body = {}
        raise CheckoutApiError(
            status_code=response.status_code,
            code=body.get("code"),
            detail=body.get("detail") or response.text,
            request_id=response.headers.get("X-Request-ID"),
            field=body.get("field"),
        )

    async def checkout_config(self, slug: str) -> dict:
        return await self._request("GET", f"/{slug}/checkout-config")

    async def slots(self, slug: str, fulfillment_type: str, locale: str) -> dict:
        return await self._request(
            "GET",
            f"/{slug}/slots",
            params={"fulfillment_type": fulfillment_type, "locale": locale},
        )

    async def create_payment_intent(self, slug: str, payload: dict) -> dict:
        return await self._request("POST", f"/{slug}/payment-intents", json=payload)


# ============================================================================
# SESSION + ORCHESTRATOR
# ============================================================================


@dataclass
class CartItem:
    product_id: str
    name: str
    unit_price_cents: int
    quantity: int


@dataclass
class CheckoutSession:
    workspace_slug: str
    locale: str = "en"
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    step: CheckoutStep = CheckoutStep.ITEMS
    items: List[CartItem] = field(default_factory=list)
    fulfillment_type: str = "pickup"
    customer: Dict[str, str] = field(default_factory=dict)
    delivery_address: Optional[dict] = None
    notes: Optional[str] = None
    tax_rate_percent: Optional[float] = None
    slots: List[dict] = field(default_factory=list)
    selected_slot: Optional[str] = None
    client_secret: Optional[str] = None
    order_id: Optional[str] = None
    order_number: Optional[int] = None
    public_token: Optional[str] = None
    error: Optional[str] = None


class CheckoutOrchestrator:
    def __init__(self, api: StorefrontApi, key_store: IdempotencyKeyStore):
        self.api = api
        self.key_store = key_store
        self._inflight: Optional[asyncio.Task] = None
        self._aborted = False

    def start(
        self, workspace_slug: str, items: List[CartItem], locale: str = "en"
    ) -> CheckoutSession:
        return CheckoutSession(
            workspace_slug=workspace_slug,
            locale=normalize_locale(locale),
            items=list(items),
        )

    def abort(self) -> None:
        """The user navigated away: drop whatever request is in flight."""
        self._aborted = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    async def _call(self, coro):
        """Run an API call; an abort yields ``None`` instead of an error."""
        self._aborted = False
        self._inflight = asyncio.ensure_future(coro)
        try:
            return await self._inflight
        except asyncio.CancelledError:
            if self._aborted and self._inflight.cancelled():
                logger.debug("Checkout request aborted by navigation")
                return None
            raise
        finally:
            self._inflight = None

    def _fail(self, session: CheckoutSession, exc: CheckoutApiError) -> None:
        message = localized_error(
            exc.code, exc.status_code, session.locale, exc.field
        )
        if exc.request_id:
            message = f"{message} (ID: {exc.request_id})"
        session.error = message
        logger.info(
            "Checkout step %s failed: %s %s",
            session.step.value,
            exc.status_code,
            exc.code,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def to_details(self, session: CheckoutSession) -> CheckoutSession:
        if session.step in (CheckoutStep.SUCCESS, CheckoutStep.CLOSED):
            return session
        if not session.items:
            session.error = ERROR_MESSAGES["INVALID_CHECKOUT"][session.locale]
            return session
        session.error = None
        session.step = CheckoutStep.DETAILS
        return session

    def details_valid(self, session: CheckoutSession) -> bool:
        customer = session.customer
        valid = (
            bool((customer.get("name") or "").strip())
            and "@" in (customer.get("email") or "")
            and len(customer.get("phone") or "") >= 10
        )
        if session.fulfillment_type == "delivery":
            address = session.delivery_address or {}
            valid = (
                valid
                and bool(address.get("street"))
                and len(address.get("postal_code") or "") >= 6
            )
        return valid

    async def to_delivery(self, session: CheckoutSession) -> CheckoutSession:
        """Load the tax rate, then slots; with none the session ends ``closed``."""
        if session.step != CheckoutStep.DETAILS:
            return session
        if not self.details_valid(session):
            session.error = ERROR_MESSAGES["INVALID_CHECKOUT"][session.locale]
            return session
        try:
            if session.tax_rate_percent is None:
                config = await self._call(
                    self.api.checkout_config(session.workspace_slug)
                )
                if config is None:
                    return session
                session.tax_rate_percent = float(config["tax_rate_percent"])
            data = await self._call(
                self.api.slots(
                    session.workspace_slug, session.fulfillment_type, session.locale
                )
            )
        except CheckoutApiError as exc:
            self._fail(session, exc)
            return session
        if data is None:
            return session

        session.error = None
        session.slots = data.get("slots") or []
        session.selected_slot = None
        if not session.slots:
            session.step = CheckoutStep.CLOSED
            session.error = ERROR_MESSAGES["STORE_CLOSED"][session.locale]
        else:
            session.step = CheckoutStep.DELIVERY
        return session

    def select_slot(self, session: CheckoutSession, value: str) -> CheckoutSession:
        if session.step != CheckoutStep.DELIVERY:
            return session
        if value not in {slot["value"] for slot in session.slots}:
            session.error = ERROR_MESSAGES["INVALID_CHECKOUT"][session.locale]
            return session
        session.error = None
        session.selected_slot = value
        return session

    def display_totals(self, session: CheckoutSession) -> dict:
        lines = [
            PricedLine(item.unit_price_cents, item.quantity) for item in session.items
        ]
        return quote_display(lines, session.fulfillment_type, session.tax_rate_percent)

    def payment_payload(self, session: CheckoutSession, idempotency_key: str) -> dict:
        fulfillment = {
            "type": session.fulfillment_type,
            "scheduled_for": session.selected_slot,
            "notes": session.notes,
        }
        if session.fulfillment_type == "delivery":
            fulfillment["delivery_address"] = session.delivery_address
        return {
            "idempotency_key": idempotency_key,
            "items": [
                {
                    "product_id": item.product_id,
                    "name": item.name,
                    "unit_price_cents": item.unit_price_cents,
                    "qty": item.quantity,
                }
                for item in session.items
            ],
            "customer": session.customer,
            "fulfillment": fulfillment,
            "totals": display_to_cents(self.display_totals(session)),
        }

    async def to_payment(self, session: CheckoutSession) -> CheckoutSession:
        """Create (or recover) the payment intent for this session."""
        if session.step not in (CheckoutStep.DELIVERY, CheckoutStep.PAYMENT):
            return session
        if not session.selected_slot:
            session.error = ERROR_MESSAGES["INVALID_CHECKOUT"][session.locale]
            return session
        session.step = CheckoutStep.PAYMENT
        if session.client_secret:
            return session

        key = self.key_store.get_or_create(session.session_id)
        try:
            data = await self._call(
                self.api.create_payment_intent(
                    session.workspace_slug, self.payment_payload(session, key)
                )
            )
        except CheckoutApiError as exc:
            self._fail(session, exc)
            if exc.code == "STORE_CLOSED":
                session.step = CheckoutStep.CLOSED
            return session
        if data is None:
            return session

        session.error = None
        session.client_secret = data["client_secret"]
        session.order_id = data["order_id"]
        session.order_number = data["order_number"]
        session.public_token = data["public_token"]
        return session

    def complete(self, session: CheckoutSession) -> CheckoutSession:
        """Payment confirmed client-side; the next checkout needs a new key."""
        if session.step == CheckoutStep.PAYMENT and session.client_secret:
            session.step = CheckoutStep.SUCCESS
            self.key_store.clear(session.session_id)
        return session
