from decimal import Decimal

import pytest

from errors import ValidationError
from pricing import calculate_order_totals, totals_match, normalize_gst_type


def test_exclusive_gst_with_discount():
    totals = calculate_order_totals([
        {"basePrice": 100, "quantity": 2, "taxRate": 5, "gstType": "EXCLUDE", "discountPercentage": 10},
    ])
    assert totals["subtotal"] == Decimal("180.00")
    assert totals["tax"] == Decimal("9.00")
    assert totals["totalDiscount"] == Decimal("20.00")
    assert totals["total"] == Decimal("189.00")
    assert totals["cgst"] + totals["sgst"] == totals["tax"]


def test_inclusive_gst():
    totals = calculate_order_totals([
        {"basePrice": 105, "quantity": 1, "taxRate": 5, "gstType": "INCLUDE", "discountPercentage": 0},
    ])
    assert abs(totals["subtotal"] - Decimal("100")) <= Decimal("0.01")
    assert abs(totals["tax"] - Decimal("5")) <= Decimal("0.01")
    assert totals["total"] == Decimal("105.00")


def test_mixed_lines_sum_before_rounding():
    totals = calculate_order_totals([
        {"basePrice": "33.33", "quantity": 3, "taxRate": 18, "gstType": "EXCLUDE"},
        {"basePrice": "10", "quantity": 1, "taxRate": 0},
    ])
    assert totals["subtotal"] == Decimal("109.99")
    assert totals["tax"] == Decimal("18.00")
    assert totals["total"] == Decimal("127.99")


def test_empty_order_is_zero():
    totals = calculate_order_totals([])
    assert totals["total"] == Decimal("0.00")


@pytest.mark.parametrize("item", [
    {"basePrice": 10, "quantity": 0, "taxRate": 5},
    {"basePrice": -1, "quantity": 1, "taxRate": 5},
    {"basePrice": 10, "quantity": 1, "taxRate": 5, "discountPercentage": 120},
    {"basePrice": "abc", "quantity": 1, "taxRate": 5},
])
def test_invalid_items_rejected(item):
    with pytest.raises(ValidationError):
        calculate_order_totals([item])


def test_gst_type_defaults_to_exclusive():
    assert normalize_gst_type(None) == "EXCLUDE"
    assert normalize_gst_type("gst include") == "INCLUDE"


def test_totals_match_within_a_paisa():
    server = calculate_order_totals([{"basePrice": 100, "quantity": 2, "taxRate": 5, "discountPercentage": 10}])
    assert totals_match(server, {"total": 189.005})
    assert not totals_match(server, {"total": 190})
    assert totals_match(server, {})
