"""Tests for freight_booking.field_extractor."""

import pytest

from freight_booking.field_extractor import (
    NOT_FOUND,
    first_value,
    get_value,
    parse_amount,
    summarize_order,
)
from freight_booking.models import Order


# ---------------------------------------------------------------------------
# get_value precedence
# ---------------------------------------------------------------------------

def test_exact_beats_case_insensitive():
    assert get_value({"PO#": "A", "po": "B"}, "PO#") == "A"


def test_hash_stripped_key():
    assert get_value({"PO": "123"}, "PO#") == "123"


def test_hash_prefixed_key():
    assert get_value({"#PO": "456"}, "PO#") == "456"


def test_case_insensitive_exact():
    assert get_value({"sku": "ABC-1"}, "SKU") == "ABC-1"


def test_case_insensitive_hash_stripped_both_sides():
    assert get_value({"p#o": "789"}, "PO#") == "789"


def test_substring_match_either_direction():
    assert get_value({"Customer Zip Code": "30301"}, "Zip") == "30301"
    assert get_value({"Phone": "555-0100"}, "Customer Phone") == "555-0100"


def test_substring_uses_first_key_in_map_order():
    attrs = {"Ship City": "Atlanta", "Bill City": "Denver"}
    assert get_value(attrs, "City") == "Atlanta"


def test_empty_value_does_not_count_as_match():
    assert get_value({"SKU": "", "sku": "X-1"}, "SKU") == "X-1"
    assert get_value({"SKU": None}, "SKU") == NOT_FOUND


def test_numbers_are_rendered_as_text():
    assert get_value({"Quantity": 2.0}, "Quantity") == "2"
    assert get_value({"Price": 19.5}, "Price") == "19.5"
    assert get_value({"Qty": 3}, "Qty") == "3"


@pytest.mark.parametrize("attributes", [None, [], ["SKU"], "SKU", 42])
def test_non_mapping_yields_not_found(attributes):
    assert get_value(attributes, "SKU") == NOT_FOUND


def test_no_match_yields_not_found():
    assert get_value({"Color": "red"}, "SKU") == NOT_FOUND


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_first_value_falls_back_in_order():
    attrs = {"Item Name": "Sofa"}
    assert first_value(attrs, "Product Name", "Item Name") == "Sofa"
    assert first_value({}, "Product Name", "Item Name") == NOT_FOUND


def test_parse_amount():
    assert parse_amount("$1,234.50") == 1234.5
    assert parse_amount(NOT_FOUND) == 0.0
    assert parse_amount("n/a") == 0.0


def test_summarize_order_totals():
    order = Order(
        id=7,
        marketplace_order_id="WM-100",
        attributes={
            "SKU": "SOFA-1",
            "Price": "$100.00",
            "Quantity": 2,
            "Tax": "10",
            "Shipping Cost": "25",
            "Discount": "5",
            "PO#": "PO-9",
        },
    )
    summary = summarize_order(order)
    assert summary["order_id"] == "7"
    assert summary["marketplace"] == "WM-100"
    assert summary["sku"] == "SOFA-1"
    assert summary["po_number"] == "PO-9"
    assert summary["subtotal"] == "200.00"
    assert summary["total"] == "230.00"


def test_summarize_order_without_price():
    summary = summarize_order(Order(id=1, marketplace_order_id="", attributes={"SKU": "A"}))
    assert summary["quantity"] == "1"
    assert summary["subtotal"] == NOT_FOUND
    assert summary["total"] == NOT_FOUND
    assert summary["marketplace"] == NOT_FOUND
