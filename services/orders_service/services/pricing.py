"""Order pricing.

``price`` is the authoritative computation: integer cents in, integer cents
out, tax rounded half-up once on the subtotal. ``quote_display`` is the
storefront's float estimate; it is only ever sent as an advisory figure and
compared against ``price`` for logging.
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from libs.common.config import get_settings
from services.orders_service.exceptions import InvalidCheckoutError
from services.orders_service.models.enums import FulfillmentType


@dataclass(frozen=True)
class PricedLine:
    unit_price_cents: int
    quantity: int


@dataclass(frozen=True)
class Totals:
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    service_fee_cents: int
    total_cents: int

    def as_dict(self) -> dict:
        return asdict(self)


def _as_fulfillment(value) -> FulfillmentType:
    try:
        return FulfillmentType(value)
    except ValueError:
        raise InvalidCheckoutError(f"Unknown fulfillment type: {value}")


def compute_tax(subtotal_cents: int, tax_rate_percent: Decimal) -> int:
    """round_half_up(subtotal * rate / 100)."""
    raw = Decimal(subtotal_cents) * Decimal(tax_rate_percent) / Decimal(100)
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def price(
    lines: Iterable,
    fulfillment_type,
    tax_rate_percent: Optional[Decimal] = None,
    *,
    delivery_fee_cents: Optional[int] = None,
    service_fee_cents: Optional[int] = None,
) -> Totals:
    """
    Compute order totals in cents.

    ``lines`` are objects with ``unit_price_cents`` and ``quantity``. Missing
    rates and fees fall back to the platform settings.
    """
    settings = get_settings()
    fulfillment = _as_fulfillment(fulfillment_type)

    subtotal = 0
    for line in lines:
        unit_price = int(line.unit_price_cents)
        quantity = int(line.quantity)
        if unit_price < 0:
            raise InvalidCheckoutError("Line prices cannot be negative.")
        if quantity <= 0:
            raise InvalidCheckoutError("Line quantities must be positive.")
        subtotal += unit_price * quantity

    rate = (
        Decimal(str(tax_rate_percent))
        if tax_rate_percent is not None
        else settings.DEFAULT_TAX_RATE_PERCENT
    )
    tax = compute_tax(subtotal, rate)

    if fulfillment == FulfillmentType.DELIVERY:
        delivery_fee = (
            settings.DELIVERY_FEE_CENTS
            if delivery_fee_cents is None
            else delivery_fee_cents
        )
    else:
        delivery_fee = 0
    service_fee = (
        settings.SERVICE_FEE_CENTS if service_fee_cents is None else service_fee_cents
    )

    return Totals(
        subtotal_cents=subtotal,
        tax_cents=tax,
        delivery_fee_cents=delivery_fee,
        service_fee_cents=service_fee,
        total_cents=subtotal + tax + delivery_fee + service_fee,
    )


def quote_display(
    lines: Iterable, fulfillment_type, tax_rate_percent: Optional[float] = None
) -> dict:
    """
    Storefront-style estimate in dollars (floats), for display only.

    Mirrors what a browser computes from the menu prices it shows. Never use
    the result to charge anyone.
    """
    settings = get_settings()
    fulfillment = _as_fulfillment(fulfillment_type)
    subtotal = sum(line.unit_price_cents / 100 * line.quantity for line in lines)
    rate = (
        float(tax_rate_percent)
        if tax_rate_percent is not None
        else float(settings.DEFAULT_TAX_RATE_PERCENT)
    ) / 100
    tax = subtotal * rate
    delivery_fee = (
        settings.DELIVERY_FEE_CENTS / 100
        if fulfillment == FulfillmentType.DELIVERY
        else 0.0
    )
    service_fee = settings.SERVICE_FEE_CENTS / 100
    return {
        "subtotal": subtotal,
        "tax": tax,
        "delivery_fee": delivery_fee,
        "service_fee": service_fee,
        "total": subtotal + tax + delivery_fee + service_fee,
    }


def display_to_cents(display: dict) -> dict:
    """Convert a ``quote_display`` result into the advisory cents payload."""
    return {f"{key}_cents": int(round(value * 100)) for key, value in display.items()}
