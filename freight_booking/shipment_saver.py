"""
Shipment Saver — Persists one staged shipment to the backend.

Flow for save(order_id):

    1. Read the staged shipment from the cache (NotFoundError if absent)
    2. validate_for_save()                     (no network call on failure)
    3. Find the previous backend record:
         by backend_record_id when the cache already knows it,
         otherwise by sku + orderOnMarketPlace
    4. decide()  -> CREATE / UPDATE / SKIP
    5. Create or update, attaching the in-memory BOL files
    6. Write the record id back into the cache

A second save() with unchanged staged values therefore ends in SKIP.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import NotFoundError
from .models import StagedShipment
from .save_decision import Verdict, decide, record_snapshot, validate_for_save


@dataclass
class SaveOutcome:
    order_id: int
    verdict: Verdict
    record_id: Optional[int] = None
    reason: str = ""


def build_payload(shipment: StagedShipment, include_artifacts: bool = True) -> Dict[str, Any]:
    """Shipped-order fields for a create or update call.

    Carrier artifacts are keyed by carrier ({"xpo": {...}, "estes": {...}}),
    only carriers with a value are included.
    """
    payload: Dict[str, Any] = {
        "sku": shipment.sku,
        "orderOnMarketPlace": shipment.marketplace,
        "ordersJsonb": shipment.orders_jsonb,
        "shippingType": shipment.shipping_type,
        "subSKUs": list(shipment.sub_skus),
    }
    if not include_artifacts:
        return payload

    for payload_key, attr in (
        ("rateQuotesRequestJsonb", "rate_quote_request"),
        ("rateQuotesResponseJsonb", "rate_quote_response"),
        ("bolResponseJsonb", "bol_response"),
    ):
        by_carrier = {
            carrier: getattr(artifacts, attr)
            for carrier, artifacts in shipment.carrier_artifacts.items()
            if getattr(artifacts, attr) is not None
        }
        if by_carrier:
            payload[payload_key] = by_carrier

    if shipment.pickup_artifact:
        payload["pickupResponseJsonb"] = shipment.pickup_artifact

    return payload


class ShipmentSaver:
    """Runs the save decision for staged shipments and applies it.

    Attributes:
        cache: OrderStagingCache holding the staged shipments.
        backend: BackendClient used for lookups and writes.
        debug: If True, print each decision.
    """

    def __init__(self, cache, backend, debug: bool = False):
        self.cache = cache
        self.backend = backend
        self.debug = debug

    def resolve_previous(self, shipment: StagedShipment) -> Optional[Dict[str, Any]]:
        if shipment.backend_record_id is not None:
            record = self.backend.get_shipped_order(shipment.backend_record_id)
            if record is None:
                raise NotFoundError(
                    f"Shipped order {shipment.backend_record_id} for order "
                    f"{shipment.order_id} no longer exists on the backend"
                )
            return record
        return self.backend.find_shipped_order(shipment.sku, shipment.marketplace or None)

    def save(self, order_id: int, include_artifacts: bool = False) -> SaveOutcome:
        """Create, update or skip the backend record for one order.

        Args:
            order_id: Staged order to save.
            include_artifacts: Also send carrier artifacts and BOL files. When
                set, an otherwise current record still receives an
                artifact-only update.

        Raises:
            NotFoundError: If the order is not staged, or its linked record is gone.
            ValidationError: If sku, shipping type or sub-SKUs are missing.
            ConflictError: If the backend record belongs to another sku.
            NetworkError: If a backend call fails. The cache is left unchanged.
        """
        shipment = self.cache.get(order_id)
        if shipment is None:
            raise NotFoundError(f"Order {order_id} has no staged shipment")

        validate_for_save(shipment)

        previous = self.resolve_previous(shipment)
        snapshot = record_snapshot(previous)
        decision = decide(shipment, snapshot)

        if self.debug:
            print(f"  Order {order_id}: {decision.verdict.value} ({decision.reason})")

        files = shipment.all_bol_files() if include_artifacts else None
        payload = build_payload(shipment, include_artifacts)

        if decision.verdict == Verdict.CREATE:
            record = self.backend.create_shipped_order(payload, files)
            record_id = int(record["id"])
        elif decision.verdict == Verdict.UPDATE:
            record_id = int(snapshot["id"])
            self.backend.update_shipped_order(record_id, payload, files)
        else:
            record_id = int(snapshot["id"]) if snapshot and snapshot.get("id") is not None else None
            if include_artifacts and record_id is not None:
                self.backend.update_shipped_order(record_id, build_payload(shipment), files)
                self.cache.upsert(order_id, {"backend_record_id": record_id})
                return SaveOutcome(order_id, Verdict.UPDATE, record_id, "artifacts attached")
            if record_id is not None and shipment.backend_record_id is None:
                self.cache.upsert(order_id, {"backend_record_id": record_id})
            return SaveOutcome(order_id, decision.verdict, record_id, decision.reason)

        self.cache.upsert(order_id, {"backend_record_id": record_id})
        return SaveOutcome(order_id, decision.verdict, record_id, decision.reason)
