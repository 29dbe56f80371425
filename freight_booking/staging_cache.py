"""
Order Staging Cache — Durable + ephemeral store of per-order shipment data.

Every stage of the booking flow (shipping type selection, rate quote, bill of
lading, pickup) and every event-bus delivery writes into this cache, and the
final submission reads it back. Two backends are joined into one view:

  durable store    One text key (CACHE_KEY) holding a JSON object of
                   order_id -> staged shipment fields. Survives restarts.
  ephemeral store  One key per order holding its BOL files (PDF bytes).
                   Files are never written to the durable store.

Merge semantics:
    upsert() is a field-level merge. Fields absent from the partial are left
    untouched, and carrier_artifacts merges per carrier and per artifact
    field, so the rate-quote, BOL and pickup sub-flows can complete in any
    order without overwriting each other. Two writers racing on the *same*
    field of the *same* order are last-writer-wins; this is not detected.

    backend_record_id is sticky: a None in a partial never clears it, and a
    different non-null id raises ConflictError.

Each upsert, remove and clear runs under one lock, so field-disjoint writes
from different threads all land. Separate processes sharing the cache file
are not coordinated.
"""

import json
import threading
from typing import Any, Dict, Optional

from .errors import ConflictError, ValidationError
from .models import (
    SHIPPING_TYPES,
    UNSET_SHIPPING_TYPE,
    CarrierArtifacts,
    StagedShipment,
    normalize_carrier,
)


CACHE_KEY = "ltl_orders_cache"
FILES_KEY_PREFIX = "bol_files:"

SCALAR_FIELDS = ("sku", "marketplace", "shipping_type", "sub_skus", "pickup_artifact", "orders_jsonb")
ARTIFACT_FIELDS = ("rate_quote_request", "rate_quote_response", "bol_response", "bol_file_refs")
FILE_FIELDS = ("bol_file_refs",)


class OrderStagingCache:
    """Keyed store of StagedShipment records.

    Attributes:
        durable: Text key-value store (JsonFileStore in production).
        ephemeral: Object key-value store (MemoryStore).
        debug: If True, print every write.
    """

    def __init__(self, durable, ephemeral, debug: bool = False):
        self.durable = durable
        self.ephemeral = ephemeral
        self.debug = debug
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_durable(self) -> Dict[str, Dict[str, Any]]:
        raw = self.durable.get(CACHE_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            if self.debug:
                print("  Staging cache is unreadable, starting empty")
            return {}
        return data if isinstance(data, dict) else {}

    def _files_key(self, order_id: int) -> str:
        return f"{FILES_KEY_PREFIX}{int(order_id)}"

    def _join(self, order_id: int, entry: Dict[str, Any]) -> StagedShipment:
        shipment = StagedShipment.from_dict({**entry, "order_id": order_id})
        files = self.ephemeral.get(self._files_key(order_id)) or {}
        for carrier, refs in files.items():
            shipment.carrier_artifacts.setdefault(carrier, CarrierArtifacts()).bol_file_refs = refs
        return shipment

    def get(self, order_id: int) -> Optional[StagedShipment]:
        """Return the joined durable + ephemeral view of one order, or None."""
        entry = self._load_durable().get(str(int(order_id)))
        if entry is None:
            return None
        return self._join(int(order_id), entry)

    def get_all(self) -> Dict[int, StagedShipment]:
        """Return every staged shipment keyed by order id."""
        return {
            int(order_id): self._join(int(order_id), entry)
            for order_id, entry in self._load_durable().items()
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, order_id: int, partial: Dict[str, Any]) -> StagedShipment:
        """Merge partial into the order's record, creating it if absent.

        Args:
            order_id: The order to update.
            partial: Any of sku, marketplace, shipping_type, sub_skus,
                     pickup_artifact, orders_jsonb, backend_record_id and
                     carrier_artifacts ({carrier: {artifact_field: value}}).

        Returns:
            The merged record.

        Raises:
            ValidationError: For unknown fields, carriers or shipping types.
            ConflictError: If a different backend_record_id is already set.
        """
        order_id = int(order_id)
        self._validate(partial)

        with self._lock:
            return self._merge(order_id, partial)

    def _merge(self, order_id: int, partial: Dict[str, Any]) -> StagedShipment:
        cache = self._load_durable()
        entry = dict(cache.get(str(order_id)) or {"order_id": order_id})

        for name in SCALAR_FIELDS:
            if name in partial:
                value = partial[name]
                if name == "sub_skus":
                    value = list(value or [])
                elif name == "shipping_type":
                    value = value or UNSET_SHIPPING_TYPE
                entry[name] = value

        if partial.get("backend_record_id") is not None:
            new_id = int(partial["backend_record_id"])
            current_id = entry.get("backend_record_id")
            if current_id is not None and int(current_id) != new_id:
                raise ConflictError(
                    f"Order {order_id} is already linked to shipped order {current_id}, "
                    f"not {new_id}"
                )
            entry["backend_record_id"] = new_id

        file_updates = {}
        if "carrier_artifacts" in partial:
            artifacts = dict(entry.get("carrier_artifacts") or {})
            for carrier, fields in partial["carrier_artifacts"].items():
                carrier = normalize_carrier(carrier)
                merged = dict(artifacts.get(carrier) or {})
                for field_name, value in fields.items():
                    if field_name in FILE_FIELDS:
                        file_updates[carrier] = value
                    else:
                        merged[field_name] = value
                artifacts[carrier] = merged
            entry["carrier_artifacts"] = artifacts

        if file_updates:
            files_key = self._files_key(order_id)
            files = dict(self.ephemeral.get(files_key) or {})
            files.update(file_updates)
            self.ephemeral.set(files_key, files)

        cache[str(order_id)] = entry
        self.durable.set(CACHE_KEY, json.dumps(cache))

        if self.debug:
            print(f"  Staged order {order_id}: {', '.join(sorted(partial.keys()))}")

        return self._join(order_id, entry)

    def remove(self, order_id: int) -> None:
        """Delete both the durable and the ephemeral entry of one order."""
        order_id = int(order_id)
        with self._lock:
            self.ephemeral.delete(self._files_key(order_id))

            cache = self._load_durable()
            if str(order_id) in cache:
                del cache[str(order_id)]
                if cache:
                    self.durable.set(CACHE_KEY, json.dumps(cache))
                else:
                    self.durable.delete(CACHE_KEY)

        if self.debug:
            print(f"  Removed order {order_id} from staging cache")

    def clear(self) -> None:
        """Drop every staged shipment."""
        with self._lock:
            for key in self.ephemeral.keys():
                if key.startswith(FILES_KEY_PREFIX):
                    self.ephemeral.delete(key)
            self.durable.delete(CACHE_KEY)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, partial: Dict[str, Any]) -> None:
        allowed = set(SCALAR_FIELDS) | {"backend_record_id", "carrier_artifacts"}
        unknown = sorted(set(partial) - allowed)
        if unknown:
            raise ValidationError(f"Unknown staging field(s): {', '.join(unknown)}")

        shipping_type = partial.get("shipping_type")
        if shipping_type and shipping_type not in SHIPPING_TYPES:
            raise ValidationError(
                f"Shipping type must be one of {', '.join(SHIPPING_TYPES)}, got {shipping_type!r}"
            )

        sub_skus = partial.get("sub_skus")
        if sub_skus is not None and (
            isinstance(sub_skus, str) or not all(isinstance(s, str) for s in sub_skus)
        ):
            raise ValidationError("Sub-SKUs must be a list of strings")

        for carrier, fields in (partial.get("carrier_artifacts") or {}).items():
            try:
                normalize_carrier(carrier)
            except ValueError as e:
                raise ValidationError(str(e))
            bad = sorted(set(fields) - set(ARTIFACT_FIELDS))
            if bad:
                raise ValidationError(f"Unknown {carrier} artifact field(s): {', '.join(bad)}")
