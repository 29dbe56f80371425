"""
Models — Plain data types passed between the booking components.

  Order            Read-only marketplace order (id, marketplace, attribute map).
  BolFile          A bill-of-lading document (PDF bytes). Never written to disk.
  CarrierArtifacts Per-carrier rate quote / BOL results for one order.
  StagedShipment   Local working copy of one order's shipment decisions.
  RateQuoteData,
  BolData,
  PickupData       The three event-bus message kinds.
  JobStatus        Polled snapshot of an import or scrape job.
  ScrapeConfig     Second-phase settings chained after an import job.

BOL files never reach the durable store; OrderStagingCache keeps them in the
ephemeral half and from_dict() puts the two halves back together.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional


CARRIERS = ("xpo", "estes")
SHIPPING_TYPES = ("LTL", "Parcel")
UNSET_SHIPPING_TYPE = ""

TERMINAL_JOB_STATES = ("succeeded", "failed")

FILTER_MODES = ("both", "successfulBuyLabel", "creationDate")


def normalize_carrier(carrier: str) -> str:
    """Map carrier labels ("XPO", "expo", " Estes ") to their canonical key."""
    name = (carrier or "").strip().lower()
    if name == "expo":
        return "xpo"
    if name not in CARRIERS:
        raise ValueError(f"Unknown carrier: {carrier!r}")
    return name


@dataclass
class Order:
    id: int
    marketplace_order_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BolFile:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass
class CarrierArtifacts:
    rate_quote_request: Optional[Dict[str, Any]] = None
    rate_quote_response: Optional[Dict[str, Any]] = None
    bol_response: Optional[Dict[str, Any]] = None
    bol_file_refs: Optional[List[BolFile]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CarrierArtifacts":
        return cls(
            rate_quote_request=data.get("rate_quote_request"),
            rate_quote_response=data.get("rate_quote_response"),
            bol_response=data.get("bol_response"),
            bol_file_refs=data.get("bol_file_refs"),
        )


@dataclass
class StagedShipment:
    """One order's staged shipment.

    Attributes:
        order_id: The originating Order id.
        sku: Seller SKU of the line item.
        marketplace: The order's id on the marketplace (orderOnMarketPlace).
        shipping_type: "" (unset), "LTL" or "Parcel".
        sub_skus: Operator-entered sub-SKUs, in entry order.
        carrier_artifacts: carrier key ("xpo" / "estes") -> CarrierArtifacts.
        backend_record_id: Shipped-order record id once created on the backend.
        pickup_artifact: Pickup request/response pair, if a pickup was booked.
        orders_jsonb: The order's attribute map, sent along on create.
    """

    order_id: int
    sku: str = ""
    marketplace: str = ""
    shipping_type: str = UNSET_SHIPPING_TYPE
    sub_skus: List[str] = field(default_factory=list)
    carrier_artifacts: Dict[str, CarrierArtifacts] = field(default_factory=dict)
    backend_record_id: Optional[int] = None
    pickup_artifact: Optional[Dict[str, Any]] = None
    orders_jsonb: Dict[str, Any] = field(default_factory=dict)

    def all_bol_files(self) -> List[BolFile]:
        files = []
        for carrier in CARRIERS:
            artifacts = self.carrier_artifacts.get(carrier)
            if artifacts and artifacts.bol_file_refs:
                files.extend(artifacts.bol_file_refs)
        return files

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StagedShipment":
        return cls(
            order_id=int(data["order_id"]),
            sku=data.get("sku") or "",
            marketplace=data.get("marketplace") or "",
            shipping_type=data.get("shipping_type") or UNSET_SHIPPING_TYPE,
            sub_skus=list(data.get("sub_skus") or []),
            carrier_artifacts={
                carrier: CarrierArtifacts.from_dict(artifacts)
                for carrier, artifacts in (data.get("carrier_artifacts") or {}).items()
            },
            backend_record_id=data.get("backend_record_id"),
            pickup_artifact=data.get("pickup_artifact"),
            orders_jsonb=data.get("orders_jsonb") or {},
        )


@dataclass(frozen=True)
class RateQuoteData:
    order_id: int
    carrier: str
    request: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class BolData:
    order_id: int
    carrier: str
    bol_response: Dict[str, Any]
    bol_file_refs: Optional[List[BolFile]] = None


@dataclass(frozen=True)
class PickupData:
    order_id: int
    pickup_response: Dict[str, Any]


@dataclass
class JobStatus:
    job_id: str
    kind: str
    state: str
    progress: int = 0
    message: str = ""
    counters: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES


@dataclass
class ScrapeConfig:
    start_date: date
    end_date: date
    filter_mode: str = "both"
    headless: bool = True
