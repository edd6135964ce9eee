"""Unit tests for order pricing."""

from decimal import Decimal

import pytest
from services.orders_service.exceptions import InvalidCheckoutError
from services.orders_service.models import FulfillmentType
from services.orders_service.services.pricing import (
    PricedLine,
    compute_tax,
    display_to_cents,
    price,
    quote_display,
)

QC_RATE = Decimal("14.975")


@pytest.mark.unit
def test_delivery_scenario_totals():
    lines = [PricedLine(2800, 1), PricedLine(1200, 2)]

    totals = price(lines, FulfillmentType.DELIVERY, QC_RATE, delivery_fee_cents=599)

    assert totals.subtotal_cents == 5200
    assert totals.tax_cents == 779
    assert totals.delivery_fee_cents == 599
    assert totals.total_cents == 6578


@pytest.mark.unit
def test_pickup_has_no_delivery_fee():
    totals = price([PricedLine(1000, 3)], "pickup", QC_RATE)
    assert totals.delivery_fee_cents == 0
    assert totals.total_cents == (
        totals.subtotal_cents
        + totals.tax_cents
        + totals.delivery_fee_cents
        + totals.service_fee_cents
    )


@pytest.mark.unit
def test_default_delivery_fee_comes_from_settings():
    totals = price([PricedLine(1000, 1)], FulfillmentType.DELIVERY, QC_RATE)
    assert totals.delivery_fee_cents == 599


@pytest.mark.unit
def test_tax_rounds_half_up():
    # 100 * 0.5% = 0.5 -> 1, never banker's rounding to 0
    assert compute_tax(100, Decimal("0.5")) == 1
    assert compute_tax(300, Decimal("0.5")) == 2
    assert compute_tax(0, QC_RATE) == 0


@pytest.mark.unit
def test_totals_invariant_over_many_carts():
    for unit in (1, 99, 1234, 2800):
        for qty in (1, 2, 7):
            for fulfillment in FulfillmentType:
                totals = price([PricedLine(unit, qty)], fulfillment, QC_RATE)
                assert totals.total_cents == sum(
                    (
                        totals.subtotal_cents,
                        totals.tax_cents,
                        totals.delivery_fee_cents,
                        totals.service_fee_cents,
                    )
                )


@pytest.mark.unit
@pytest.mark.parametrize(
    "line", [PricedLine(-1, 1), PricedLine(100, 0), PricedLine(100, -2)]
)
def test_invalid_lines_are_rejected(line):
    with pytest.raises(InvalidCheckoutError):
        price([line], FulfillmentType.PICKUP, QC_RATE)


@pytest.mark.unit
def test_unknown_fulfillment_type_is_rejected():
    with pytest.raises(InvalidCheckoutError):
        price([PricedLine(100, 1)], "drone", QC_RATE)


@pytest.mark.unit
def test_display_quote_converts_back_to_server_cents():
    lines = [PricedLine(2800, 1), PricedLine(1200, 2)]
    display = quote_display(lines, FulfillmentType.DELIVERY, float(QC_RATE))

    advisory = display_to_cents(display)

    assert advisory == {
        "subtotal_cents": 5200,
        "tax_cents": 779,
        "delivery_fee_cents": 599,
        "service_fee_cents": 0,
        "total_cents": 6578,
    }
