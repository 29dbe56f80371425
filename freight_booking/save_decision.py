"""
Save Decision Engine — Decides whether a shipped-order record needs creating,
updating, or is already current.

Inputs:
    current   The staged values for one order: sku, shipping_type, sub_skus
              (a StagedShipment or any object/dict with those names).
    previous  The backend's shipped-order record for the same order, or None.

Rules:
    previous is None
        CREATE if sku, shipping type and sub-SKUs are all present,
        otherwise SKIP ("incomplete").
    previous is present
        SKIP ("already current") if the shipping types are equal and the
        sub-SKU multisets are equal and non-empty, otherwise UPDATE.

Sub-SKUs are compared order-independently: both lists are sorted and joined
before comparison, so ["A2", "A1"] equals ["A1", "A2"] but ["A1"] does not
equal ["A1", "A1"].

Idempotence:
    decide() is pure. After the caller performs the CREATE/UPDATE and writes
    the record id back into the staging cache, the next call (with the
    refreshed backend record as previous) returns SKIP.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ConflictError, ValidationError


class Verdict(Enum):
    SKIP = "skip"
    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True)
class SaveDecision:
    verdict: Verdict
    reason: str = ""


def _field(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _split_sub_skus(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(s) for s in value if str(s).strip()]
    if isinstance(value, str) and value.strip():
        return [s.strip() for s in value.split(",") if s.strip()]
    return []


def record_snapshot(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Normalize a backend shipped-order record to {id, sku, shipping_type, sub_skus}.

    Older records keep the shipping type and sub-SKUs inside ordersJsonb under
    a handful of spellings; the direct fields win when present.
    """
    if record is None:
        return None

    jsonb = record.get("ordersJsonb") if isinstance(record.get("ordersJsonb"), dict) else {}

    shipping_type = record.get("shippingType") or None
    if not shipping_type:
        for key in ("shiptypes", "shippingType", "ShippingType", "shipType", "ShipType"):
            if jsonb.get(key):
                shipping_type = jsonb[key]
                break

    sub_skus = _split_sub_skus(record.get("subSKUs"))
    if not sub_skus:
        for key in ("subSKUs", "subSKU", "SubSKUs", "SubSKU"):
            sub_skus = _split_sub_skus(jsonb.get(key))
            if sub_skus:
                break

    return {
        "id": record.get("id"),
        "sku": record.get("sku") or "",
        "shipping_type": shipping_type or "",
        "sub_skus": sub_skus,
    }


def sub_sku_key(sub_skus: List[str]) -> str:
    """Order-independent comparison key for a sub-SKU list."""
    return ",".join(sorted(sub_skus))


def missing_fields(current: Any) -> List[str]:
    missing = []
    if not (_field(current, "sku") or "").strip():
        missing.append("sku")
    if not _field(current, "shipping_type"):
        missing.append("shipping type")
    if not _field(current, "sub_skus"):
        missing.append("sub-SKUs")
    return missing


def validate_for_save(current: Any) -> None:
    """Raise ValidationError if the staged values cannot be saved yet."""
    missing = missing_fields(current)
    if missing:
        raise ValidationError(f"Cannot save: missing {', '.join(missing)}", missing=missing)


def decide(current: Any, previous: Optional[Dict[str, Any]]) -> SaveDecision:
    """Return the save verdict for one order.

    Args:
        current: Staged values (sku, shipping_type, sub_skus).
        previous: A record_snapshot() of the backend record, or None.

    Raises:
        ConflictError: If previous belongs to a different sku.
    """
    if previous is None:
        if missing_fields(current):
            return SaveDecision(Verdict.SKIP, "incomplete")
        return SaveDecision(Verdict.CREATE, "no backend record")

    current_sku = (_field(current, "sku") or "").strip()
    previous_sku = (previous.get("sku") or "").strip()
    if current_sku and previous_sku and current_sku.lower() != previous_sku.lower():
        raise ConflictError(
            f"Shipped order {previous.get('id')} belongs to SKU {previous_sku}, "
            f"but the staged order has SKU {current_sku}"
        )

    current_type = _field(current, "shipping_type") or ""
    current_subs = list(_field(current, "sub_skus") or [])
    previous_type = previous.get("shipping_type") or ""
    previous_subs = list(previous.get("sub_skus") or [])

    if (
        current_type
        and current_type == previous_type
        and current_subs
        and previous_subs
        and sub_sku_key(current_subs) == sub_sku_key(previous_subs)
    ):
        return SaveDecision(Verdict.SKIP, "already current")

    return SaveDecision(Verdict.UPDATE, "staged values differ from backend")
