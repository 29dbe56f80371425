"""
Job Client — Submits and inspects long-running import / scrape jobs.

The job backend (a separate Python service) runs two kinds of job:

  import   An Excel export of shipped orders is uploaded and imported.
             POST /api/v1/excel-import/upload               -> upload_id
             GET  /api/v1/excel-import/importExcel/status   -> {"uploads": [...]}

  scrape   Bills of lading are scraped from the carrier portal for a date range.
             POST /api/v1/parcel-management/scrape          -> scraping_id
             GET  /api/v1/parcel-management/status          -> {"scraping_operations": [...]}

Both status endpoints list every job the service knows about; get_status()
picks out the one requested and maps the service's status words onto the four
JobStatus states (queued / running / succeeded / failed).

The "handle" form field controls whether the service drives a headless
browser. It is only sent when a visible browser is wanted (handle=false);
the service defaults to headless.
"""

import os
from datetime import date, timedelta
from typing import Dict, List, Optional

import requests

from .errors import NetworkError, ValidationError, parse_json, raise_for_response, transport_error
from .models import FILTER_MODES, JobStatus, ScrapeConfig


STATE_MAP = {
    "queued": "queued",
    "pending": "queued",
    "uploading": "running",
    "processing": "running",
    "scraping": "running",
    "running": "running",
    "success": "succeeded",
    "completed": "succeeded",
    "succeeded": "succeeded",
    "error": "failed",
    "failed": "failed",
}

IMPORT_COUNTERS = ("imported_count", "failed_count")
SCRAPE_COUNTERS = ("scraped_count", "saved_count")

EXCEL_EXTENSIONS = (".xlsx", ".xls")
MAX_DAYS_AHEAD = 2


def map_state(raw: str) -> str:
    """Translate a service status word. Unknown words count as running."""
    return STATE_MAP.get((raw or "").strip().lower(), "running")


def validate_import_file(path: str) -> None:
    if not path.lower().endswith(EXCEL_EXTENSIONS):
        raise ValidationError("Invalid file type. Please upload an Excel file (.xlsx or .xls)")
    if not os.path.isfile(path):
        raise ValidationError(f"File not found: {path}")


def validate_scrape_config(config: ScrapeConfig, today: Optional[date] = None) -> None:
    """Check a scrape date range before anything is submitted.

    Rules: end date not before start date, neither date more than two days
    in the future, and a known filter mode.
    """
    today = today or date.today()
    max_allowed = today + timedelta(days=MAX_DAYS_AHEAD)

    if config.end_date < config.start_date:
        raise ValidationError("End date must be greater than or equal to start date")
    if config.start_date > max_allowed:
        raise ValidationError("Start date cannot be more than 2 days in the future")
    if config.end_date > max_allowed:
        raise ValidationError("End date cannot be more than 2 days in the future")
    if config.filter_mode not in FILTER_MODES:
        raise ValidationError(f"Filter mode must be one of {', '.join(FILTER_MODES)}")


class JobClient:
    """Client for the import / scrape job service.

    Attributes:
        base_url: Service base URL (e.g., "http://localhost:8000").
        timeout: Per-request timeout in seconds.
        debug: If True, print each request.
    """

    def __init__(self, base_url: str, timeout: float = 60, debug: bool = False):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.debug = debug
        self._session = requests.Session()

    def _request(self, method: str, path: str, action: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        if self.debug:
            print(f"  {method} {url}")
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise transport_error(action, e)
        raise_for_response(response, action)
        return response

    def submit_import(self, path: str, headless: bool = True) -> str:
        """Upload an Excel file and return the import job id."""
        validate_import_file(path)
        action = "Excel upload"
        data = {} if headless else {"handle": "false"}
        with open(path, "rb") as f:
            files = {"file": (os.path.basename(path), f)}
            response = self._request(
                "POST", "/api/v1/excel-import/upload", action, data=data, files=files
            )
        job_id = self._body(response, action).get("upload_id")
        if not job_id:
            raise NetworkError(f"{action} failed: the server did not return an upload id")
        return str(job_id)

    def submit_scrape(self, config: ScrapeConfig) -> str:
        """Start a BOL scrape for the configured date range and return its job id."""
        action = "BOL scraping"
        data = {
            "start_date": config.start_date.isoformat(),
            "end_date": config.end_date.isoformat(),
            "date_filter_type": config.filter_mode,
        }
        if not config.headless:
            data["handle"] = "false"

        response = self._request("POST", "/api/v1/parcel-management/scrape", action, data=data)
        job_id = self._body(response, action).get("scraping_id")
        if not job_id:
            raise NetworkError(f"{action} failed: the server did not return a scraping id")
        return str(job_id)

    def list_import_statuses(self) -> List[JobStatus]:
        response = self._request(
            "GET", "/api/v1/excel-import/importExcel/status", "Import status",
            headers={"Cache-Control": "no-store"},
        )
        return [self._to_status(item, "import") for item in self._items(response, "Import status", "uploads")]

    def list_scrape_statuses(self) -> List[JobStatus]:
        response = self._request(
            "GET", "/api/v1/parcel-management/status", "Scrape status",
            headers={"Cache-Control": "no-store"},
        )
        return [
            self._to_status(item, "scrape")
            for item in self._items(response, "Scrape status", "scraping_operations")
        ]

    def get_status(self, kind: str, job_id: str) -> Optional[JobStatus]:
        """Return the status of one job, or None if the service does not list it (yet)."""
        if kind == "import":
            statuses = self.list_import_statuses()
        elif kind == "scrape":
            statuses = self.list_scrape_statuses()
        else:
            raise ValueError(f"Unknown job kind: {kind!r}")

        for status in statuses:
            if status.job_id == str(job_id):
                return status
        return None

    @staticmethod
    def _body(response: requests.Response, action: str) -> Dict:
        data = parse_json(response, action)
        if not isinstance(data, dict):
            raise NetworkError(f"{action} failed: invalid response from the server", status=response.status_code)
        return data

    def _items(self, response: requests.Response, action: str, field: str) -> List[Dict]:
        items = self._body(response, action).get(field) or []
        if not isinstance(items, list):
            raise NetworkError(f"{action} failed: invalid response from the server", status=response.status_code)
        return [item for item in items if isinstance(item, dict)]

    @staticmethod
    def _to_status(item: Dict, kind: str) -> JobStatus:
        id_field = "upload_id" if kind == "import" else "scraping_id"
        counter_names = IMPORT_COUNTERS if kind == "import" else SCRAPE_COUNTERS
        counters = {}
        for name in counter_names:
            value = _to_int(item.get(name))
            if value is not None:
                counters[name] = value
        return JobStatus(
            job_id=str(item.get(id_field, "")),
            kind=kind,
            state=map_state(str(item.get("status") or "")),
            progress=max(0, min(100, _to_int(item.get("progress")) or 0)),
            message=str(item.get("message") or ""),
            counters=counters,
            errors=list(item.get("errors") or []),
        )


def _to_int(value) -> Optional[int]:
    """Coerce a counter or progress value; None when missing or unreadable."""
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
