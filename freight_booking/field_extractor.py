"""
Field Extractor — Fuzzy lookup over marketplace order attribute maps.

Marketplace exports (Walmart, Amazon, Giga) name their columns differently:
"PO#", "PO", "#PO", "po number", "SKU", "Sku"... The attribute map stored on
each Order keeps the export's own column names, so every read goes through
get_value(), which tries progressively looser matches:

  1. Exact key                         "PO#"
  2. Key with every "#" removed         "PO"
  3. "#" + key without "#"              "#PO"
  4. Case-insensitive exact             "po#"
  5. Case-insensitive, "#" removed on both sides
  6. Case-insensitive substring, either direction, first key in map order

A value that is "" or None never counts as a match; the chain moves on.
get_value() never raises and returns NOT_FOUND ("-") when nothing matches.

Pipeline context:
    summarize_order() is used to seed a StagedShipment (sku, marketplace,
    attribute map) and to print orders from the CLI.
"""

import re
from typing import Any, Dict, Optional

from .models import Order


NOT_FOUND = "-"

_AMOUNT_CHARS = re.compile(r"[^0-9.\-]")


def _as_text(value: Any) -> Optional[str]:
    """Render a matched value, or None if it counts as missing."""
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def get_value(attributes: Any, canonical_key: str) -> str:
    """Look up canonical_key in an order attribute map.

    Args:
        attributes: The order's attribute map. Anything that is not a dict
                    (None, a list, a string) yields NOT_FOUND.
        canonical_key: The column name to look for (e.g., "PO#", "SKU").

    Returns:
        The matched value as a string, or NOT_FOUND.
    """
    if not isinstance(attributes, dict) or not isinstance(canonical_key, str):
        return NOT_FOUND

    key = canonical_key.strip()
    stripped = key.replace("#", "")

    for candidate in (key, stripped, f"#{stripped}"):
        if candidate in attributes:
            found = _as_text(attributes[candidate])
            if found is not None:
                return found

    key_lower = key.lower()
    stripped_lower = stripped.lower()

    for stored_key, value in attributes.items():
        if str(stored_key).lower() == key_lower:
            found = _as_text(value)
            if found is not None:
                return found

    for stored_key, value in attributes.items():
        if str(stored_key).replace("#", "").lower() == stripped_lower:
            found = _as_text(value)
            if found is not None:
                return found

    if stripped_lower:
        for stored_key, value in attributes.items():
            stored_lower = str(stored_key).lower()
            if not stored_lower:
                continue
            if stripped_lower in stored_lower or stored_lower in stripped_lower:
                found = _as_text(value)
                if found is not None:
                    return found

    return NOT_FOUND


def first_value(attributes: Any, *keys: str) -> str:
    """Return the first of several column names that resolves, else NOT_FOUND."""
    for key in keys:
        value = get_value(attributes, key)
        if value != NOT_FOUND:
            return value
    return NOT_FOUND


def parse_amount(text: str) -> float:
    """Parse a money-ish string ("$1,234.50") into a float. 0.0 if unparseable."""
    if not text or text == NOT_FOUND:
        return 0.0
    try:
        return float(_AMOUNT_CHARS.sub("", text))
    except ValueError:
        return 0.0


def summarize_order(order: Order) -> Dict[str, str]:
    """Extract the fields the booking flow and the CLI display need.

    Subtotal is price * quantity; total adds tax and shipping and subtracts
    discount. Both are NOT_FOUND when the order has no usable price.
    """
    attrs = order.attributes

    price = first_value(attrs, "Price", "Item Cost", "Cost", "ItemCost")
    quantity = first_value(attrs, "Quantity", "Qty")
    if quantity == NOT_FOUND:
        quantity = "1"

    price_num = parse_amount(price)
    qty_num = parse_amount(quantity) or 1.0

    subtotal = NOT_FOUND
    total = NOT_FOUND
    if price_num > 0 and qty_num > 0:
        base = price_num * qty_num
        subtotal = f"{base:.2f}"
        total = (
            base
            + parse_amount(get_value(attrs, "Tax"))
            + parse_amount(get_value(attrs, "Shipping Cost"))
            - parse_amount(get_value(attrs, "Discount"))
        )
        total = f"{total:.2f}"

    return {
        "order_id": str(order.id),
        "marketplace": order.marketplace_order_id or NOT_FOUND,
        "sku": get_value(attrs, "SKU"),
        "product_name": first_value(attrs, "Product Name", "Product", "Item Name", "Item Description"),
        "price": price,
        "quantity": quantity,
        "po_number": get_value(attrs, "PO#"),
        "customer_name": get_value(attrs, "Customer Name"),
        "customer_phone": first_value(attrs, "Customer Phone Number", "Customer Phone", "Phone"),
        "city": get_value(attrs, "City"),
        "state": get_value(attrs, "State"),
        "zip": get_value(attrs, "Zip"),
        "subtotal": subtotal,
        "total": total,
    }
