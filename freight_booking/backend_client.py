"""
Backend Client — HTTP communication with the order-processing backend.

All calls go through one requests.Session. Three groups of endpoints are used:

  1. Shipped orders (the persistent record of a booked shipment)
       POST /Logistics/shipped-orders          create (multipart)
       PUT  /Logistics/shipped-orders/{id}     update (JSON, or multipart with files)
       GET  /Logistics/shipped-orders/{id}     fetch one (404 -> None)
       GET  /Logistics/shipped-orders          list (page, limit, search)

  2. Carrier operations (proxied by the backend to XPO / Estes)
       POST /Logistics/create-rate-quote
       POST /Logistics/create-bill-of-lading
       POST /Logistics/create-pickup-request
       POST /Logistics/download-bol-pdf
     Each carrier call carries that carrier's bearer token and a
     "shippingCompany" field; the payload itself is opaque here.

  3. Marketplace orders
       DELETE /orders/delete/{id}              teardown after final submission

Every non-success response is translated to NotFoundError / NetworkError
(see errors.raise_for_response); transport failures become NetworkError.

The list endpoint has answered with several shapes over time
({orders: [...]}, {data: [...]}, a bare list, a single record); they are all
normalized by list_shipped_orders().
"""

import base64
import json
from typing import Any, Dict, List, Optional

import requests

from .errors import NetworkError, parse_json, raise_for_response, transport_error
from .models import BolFile, normalize_carrier
from .save_decision import record_snapshot


MAX_PAGE_SIZE = 100


class BackendClient:
    """Client for the order-processing backend.

    Attributes:
        base_url: API base (e.g., "http://localhost:5000/api/v1"), trailing slash stripped.
        carrier_tokens: carrier key -> bearer token ("xpo", "estes").
        timeout: Per-request timeout in seconds.
        debug: If True, print each request.
    """

    def __init__(
        self,
        base_url: str,
        carrier_tokens: Optional[Dict[str, str]] = None,
        timeout: float = 60,
        debug: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.carrier_tokens = {
            normalize_carrier(carrier): token
            for carrier, token in (carrier_tokens or {}).items()
            if token
        }
        self.timeout = timeout
        self.debug = debug
        self._session = requests.Session()

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, action: str, **kwargs) -> requests.Response:
        url = self._url(path)
        if self.debug:
            print(f"  {method} {url}")
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise transport_error(action, e)
        if self.debug:
            print(f"  Status: {response.status_code}")
        return response

    @staticmethod
    def _unwrap(data: Any) -> Any:
        """Most endpoints wrap the record in "data" or "order"."""
        if isinstance(data, dict):
            return data.get("data") or data.get("order") or data
        return data

    # ------------------------------------------------------------------
    # Shipped orders
    # ------------------------------------------------------------------

    @staticmethod
    def _form_fields(payload: Dict[str, Any]) -> Dict[str, str]:
        fields = {}
        for name, value in payload.items():
            if value is None:
                continue
            fields[name] = value if isinstance(value, str) else json.dumps(value)
        return fields

    @staticmethod
    def _file_parts(files: Optional[List[BolFile]]) -> List:
        return [("files", (f.filename, f.content, f.content_type)) for f in (files or [])]

    def create_shipped_order(self, payload: Dict[str, Any], files: Optional[List[BolFile]] = None) -> Dict[str, Any]:
        """Create a shipped-order record.

        Args:
            payload: sku, orderOnMarketPlace, ordersJsonb and any of
                     shippingType, subSKUs, rateQuotesRequestJsonb,
                     rateQuotesResponseJsonb, bolResponseJsonb, pickupResponseJsonb.
            files: BOL documents to attach.

        Returns:
            The created record (contains "id").
        """
        action = "Create shipped order"
        response = self._request(
            "POST",
            "/Logistics/shipped-orders",
            action,
            data=self._form_fields(payload),
            files=self._file_parts(files) or None,
        )
        raise_for_response(response, action)
        record = self._unwrap(parse_json(response, action))
        if not isinstance(record, dict) or record.get("id") is None:
            raise NetworkError(f"{action} failed: the server did not return a record id")
        return record

    def update_shipped_order(
        self,
        record_id: int,
        payload: Dict[str, Any],
        files: Optional[List[BolFile]] = None,
    ) -> Dict[str, Any]:
        """Update a shipped-order record. Sends multipart only when files are attached.

        Raises:
            NotFoundError: If the record no longer exists.
        """
        action = f"Update shipped order {record_id}"
        path = f"/Logistics/shipped-orders/{record_id}"
        if files:
            response = self._request(
                "PUT", path, action, data=self._form_fields(payload), files=self._file_parts(files)
            )
        else:
            body = {k: v for k, v in payload.items() if v is not None}
            response = self._request("PUT", path, action, json=body)
        raise_for_response(response, action)
        try:
            return self._unwrap(response.json()) or {}
        except ValueError:
            return {}

    def get_shipped_order(self, record_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one shipped-order record, or None if it does not exist."""
        action = f"Fetch shipped order {record_id}"
        response = self._request("GET", f"/Logistics/shipped-orders/{record_id}", action)
        if response.status_code == 404:
            return None
        raise_for_response(response, action)
        return self._unwrap(parse_json(response, action))

    def list_shipped_orders(self, page: int = 1, limit: int = 50, search: Optional[str] = None) -> Dict[str, Any]:
        """List shipped orders.

        Returns:
            {"orders": [...], "pagination": {page, limit, totalCount, totalPages,
            hasNextPage, hasPreviousPage}} whatever shape the server answered with.
        """
        action = "List shipped orders"
        params = {"page": page, "limit": min(max(limit, 1), MAX_PAGE_SIZE)}
        if search and search.strip():
            params["search"] = search.strip()

        response = self._request("GET", "/Logistics/shipped-orders", action, params=params)
        raise_for_response(response, action)
        data = parse_json(response, action)

        orders = []
        pagination = None
        if isinstance(data, list):
            orders = data
        elif isinstance(data, dict):
            if isinstance(data.get("orders"), list):
                orders = data["orders"]
            elif isinstance(data.get("data"), list):
                orders = data["data"]
            elif data.get("orders"):
                orders = [data["orders"]]
            elif data.get("id") is not None:
                orders = [data]
            pagination = data.get("pagination")

        if not pagination:
            pagination = {
                "page": 1,
                "limit": len(orders),
                "totalCount": len(orders),
                "totalPages": 1,
                "hasNextPage": False,
                "hasPreviousPage": False,
            }

        return {"orders": orders, "pagination": pagination}

    def iter_shipped_orders(self, search: Optional[str] = None):
        """Yield every shipped order across all pages."""
        page = 1
        while True:
            result = self.list_shipped_orders(page=page, limit=MAX_PAGE_SIZE, search=search)
            for order in result["orders"]:
                yield order
            if not result["pagination"].get("hasNextPage"):
                break
            page += 1

    def find_shipped_order(self, sku: str, marketplace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Find a record by sku (case-insensitive exact) and, if given, orderOnMarketPlace."""
        wanted = (sku or "").strip().lower()
        if not wanted:
            return None
        for record in self.iter_shipped_orders(search=sku):
            if (record.get("sku") or "").strip().lower() != wanted:
                continue
            if marketplace is not None and record.get("orderOnMarketPlace") != marketplace:
                continue
            return record
        return None

    def build_sku_lookup(self) -> Dict[str, Dict[str, Any]]:
        """Map every known sku to its last shipping type and the union of its sub-SKUs.

        Used to pre-fill staged shipments for orders whose SKU has shipped before.
        The first record seen for a sku keeps its shipping type; sub-SKUs from
        later records are merged in, without duplicates.
        """
        lookup: Dict[str, Dict[str, Any]] = {}
        for record in self.iter_shipped_orders():
            snapshot = record_snapshot(record)
            sku = snapshot["sku"]
            if not sku:
                continue
            existing = lookup.get(sku)
            if existing is None:
                lookup[sku] = {
                    "shipping_type": snapshot["shipping_type"] or None,
                    "sub_skus": list(snapshot["sub_skus"]),
                }
                continue
            merged = list(existing["sub_skus"])
            for sub_sku in snapshot["sub_skus"]:
                if sub_sku not in merged:
                    merged.append(sub_sku)
            existing["sub_skus"] = merged
            existing["shipping_type"] = existing["shipping_type"] or snapshot["shipping_type"] or None

        if self.debug:
            print(f"  Built SKU lookup for {len(lookup)} SKU(s)")
        return lookup

    # ------------------------------------------------------------------
    # Carrier operations
    # ------------------------------------------------------------------

    def _carrier_post(self, path: str, carrier: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        carrier = normalize_carrier(carrier)
        token = self.carrier_tokens.get(carrier)
        if not token:
            raise NetworkError(f"{action} failed: no {carrier.upper()} session. Please log in to the carrier first.")

        body = {"shippingCompany": carrier, **payload}
        headers = {"Authorization": f"Bearer {token}"}
        response = self._request("POST", path, action, json=body, headers=headers)
        raise_for_response(response, action)
        data = parse_json(response, action)
        if not isinstance(data, dict):
            raise NetworkError(f"{action} failed: invalid response from the server", status=response.status_code)
        return data

    def create_rate_quote(self, carrier: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._carrier_post("/Logistics/create-rate-quote", carrier, payload, "Rate quote")

    def create_bill_of_lading(self, carrier: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._carrier_post("/Logistics/create-bill-of-lading", carrier, payload, "Bill of lading")

    def create_pickup_request(self, carrier: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._carrier_post("/Logistics/create-pickup-request", carrier, payload, "Pickup request")

    def download_bol_pdf(self, carrier: str, pdf_uri: str) -> Optional[BolFile]:
        """Fetch the BOL PDF for a created bill of lading.

        Returns:
            The PDF as a BolFile, or None if the response carries no document.
        """
        carrier = normalize_carrier(carrier)
        action = "Download BOL PDF"
        body = {
            "shippingCompanyName": carrier,
            "pdfUri": pdf_uri,
            "token": self.carrier_tokens.get(carrier, ""),
        }
        response = self._request("POST", "/Logistics/download-bol-pdf", action, json=body)
        raise_for_response(response, action)

        data = parse_json(response, action)
        if not isinstance(data, dict):
            return None
        pdf = (data.get("data") or {}).get("bolpdf") or {}
        content = pdf.get("contentType")
        if str(data.get("code")) != "200" or not content:
            return None
        try:
            decoded = base64.b64decode(content)
        except (TypeError, ValueError) as e:
            raise NetworkError(f"{action} failed: the document could not be decoded", status=response.status_code) from e
        return BolFile(filename=pdf.get("fileName") or "BillOfLading.pdf", content=decoded)

    # ------------------------------------------------------------------
    # Marketplace orders
    # ------------------------------------------------------------------

    def delete_order(self, order_id: int) -> None:
        """Delete the originating marketplace order."""
        action = f"Delete order {order_id}"
        response = self._request("DELETE", f"/orders/delete/{order_id}", action)
        raise_for_response(response, action)


def find_pdf_uri(bol_response: Dict[str, Any]) -> Optional[str]:
    """Pick the PDF link out of a carrier BOL response.

    The link list sits under data.data.bolInfo.link, data.bolInfo.link or
    data.link depending on the carrier. A "self" link ending in /pdf wins,
    otherwise the first link mentioning /pdf.
    """
    data = (bol_response or {}).get("data") or {}
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    bol_info = inner.get("bolInfo") or data.get("bolInfo") or {}
    links = bol_info.get("link") or data.get("link") or []

    fallback = None
    for link in links:
        uri = link.get("uri") or ""
        if "/pdf" not in uri:
            continue
        if link.get("rel") in (None, "", "self"):
            return uri
        fallback = fallback or uri
    return fallback

