"""
Staging Orchestrator — Wires the booking components into one session.

The orchestrator owns every shared object of a run (one staging cache, one
event bus, one job poller) and exposes the operator-level operations:

  Staging
      stage_order()            Create the staged shipment for an order
      prefill_from_history()   Fill shipping type / sub-SKUs from earlier shipments
      set_shipping_type(), set_sub_skus()

  Saving
      save_order()             Create / update / skip one backend record
      save_all()               The same for every staged order, one result each

  Booking
      open_workflow()          A BookingWorkflow for one order and carrier

  Import pipeline (run_import)
      Step 1: VALIDATE   Excel file type, scrape date range
      Step 2: UPLOAD     Submit the import job
      Step 3: POLL       Poll the import to a terminal state; on success the
                         scrape job is submitted once and polled too

Configuration:
    All settings are loaded from environment variables (typically via .env
    file). See config/settings.py for defaults.

Typical usage:
    orchestrator = StagingOrchestrator(env_file="./.env")
    if orchestrator.validate_config():
        results = orchestrator.save_all()
        orchestrator.print_summary(results)
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .backend_client import BackendClient
from .config import DEFAULT_SETTINGS
from .errors import BookingError, user_message
from .event_bus import EventBus
from .field_extractor import summarize_order
from .job_client import JobClient, validate_import_file, validate_scrape_config
from .job_poller import JobPoller
from .models import SHIPPING_TYPES, JobStatus, Order, ScrapeConfig, StagedShipment
from .save_decision import Verdict
from .shipment_saver import ShipmentSaver
from .staging_cache import OrderStagingCache
from .stores import JsonFileStore, MemoryStore
from .workflow import BookingWorkflow, initial_staging


JOB_STATUS_KEY_PREFIX = "job_status:"


class StagingOrchestrator:
    """Owns the shared booking components for one process.

    Attributes:
        api_base_url: Order-processing backend base URL.
        jobs_base_url: Job service base URL.
        carrier_tokens: carrier key -> bearer token.
        cache_file: Path of the durable cache file.
        poll_interval: Seconds between job polls.
        poll_max_attempts: Poll ceiling per job.
        timeout: HTTP timeout in seconds.
        debug: Whether to enable verbose output.
    """

    def __init__(self, env_file: str = "./.env"):
        """Load configuration and build the components.

        Args:
            env_file: Path to a .env file. If the file exists, it is loaded via
                      python-dotenv. Otherwise, falls back to system environment.
        """
        env_path = Path(env_file)
        if env_path.exists():
            load_dotenv(env_path)
            print(f"Loaded configuration from: {env_file}")
        else:
            print(f"Warning: {env_file} not found, using defaults/environment")

        self.api_base_url = os.getenv("API_BASE_URL", DEFAULT_SETTINGS["API_BASE_URL"])
        self.jobs_base_url = os.getenv("PYTHON_API_BASE_URL", DEFAULT_SETTINGS["PYTHON_API_BASE_URL"])
        self.carrier_tokens = {
            "xpo": os.getenv("XPO_TOKEN", ""),
            "estes": os.getenv("ESTES_TOKEN", ""),
        }
        self.cache_file = os.getenv("CACHE_FILE", DEFAULT_SETTINGS["CACHE_FILE"])

        self.poll_interval = float(
            os.getenv("POLL_INTERVAL_SECONDS", str(DEFAULT_SETTINGS["POLL_INTERVAL_SECONDS"]))
        )
        self.poll_max_attempts = int(
            os.getenv("POLL_MAX_ATTEMPTS", str(DEFAULT_SETTINGS["POLL_MAX_ATTEMPTS"]))
        )
        self.timeout = float(
            os.getenv("REQUEST_TIMEOUT_SECONDS", str(DEFAULT_SETTINGS["REQUEST_TIMEOUT_SECONDS"]))
        )
        self.debug = os.getenv("DEBUG", str(DEFAULT_SETTINGS["DEBUG"])).lower() == "true"

        self.durable = JsonFileStore(self.cache_file, self.debug)
        self.ephemeral = MemoryStore()
        self.cache = OrderStagingCache(self.durable, self.ephemeral, self.debug)
        self.bus = EventBus(self.debug)
        self.backend = BackendClient(self.api_base_url, self.carrier_tokens, self.timeout, self.debug)
        self.jobs = JobClient(self.jobs_base_url, self.timeout, self.debug)
        self.saver = ShipmentSaver(self.cache, self.backend, self.debug)

        self._job_events: List[Dict[str, Any]] = []
        self.poller = JobPoller(
            self.jobs,
            interval=self.poll_interval,
            max_attempts=self.poll_max_attempts,
            on_status=self._on_job_status,
            on_chain_started=self._on_chain_started,
            on_chain_error=self._on_chain_error,
            on_error=self._on_poll_error,
            on_timeout=self._on_poll_timeout,
            debug=self.debug,
        )

    def set_debug(self, debug: bool) -> None:
        """Apply a CLI --debug override to every component."""
        self.debug = debug
        for component in (self.durable, self.cache, self.bus, self.backend, self.jobs, self.saver, self.poller):
            component.debug = debug

    def validate_config(self) -> bool:
        """Validate that all required configuration values are present.

        Returns:
            True if all required values are present, False otherwise.
            Prints specific error messages for each problem.
        """
        errors = []
        if not self.api_base_url:
            errors.append("API_BASE_URL is required")
        if not self.jobs_base_url:
            errors.append("PYTHON_API_BASE_URL is required")
        if not self.cache_file:
            errors.append("CACHE_FILE is required")
        if self.poll_interval <= 0:
            errors.append("POLL_INTERVAL_SECONDS must be greater than 0")
        if self.poll_max_attempts < 0:
            errors.append("POLL_MAX_ATTEMPTS must be 0 (no limit) or greater")

        if errors:
            print("\nConfiguration Errors:")
            for err in errors:
                print(f"  - {err}")
            return False

        missing_tokens = [c.upper() for c, token in self.carrier_tokens.items() if not token]
        if missing_tokens:
            print(f"  Note: no token for {', '.join(missing_tokens)}; carrier calls will be refused")
        return True

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def stage_order(self, order: Order) -> StagedShipment:
        """Return the order's staged shipment, creating it on first interaction."""
        shipment = self.cache.get(order.id)
        if shipment is not None:
            return shipment
        return self.cache.upsert(order.id, initial_staging(order))

    def set_shipping_type(self, order_id: int, shipping_type: str) -> StagedShipment:
        return self.cache.upsert(order_id, {"shipping_type": shipping_type})

    def set_sub_skus(self, order_id: int, sub_skus: List[str]) -> StagedShipment:
        cleaned = [s.strip() for s in sub_skus if s and s.strip()]
        return self.cache.upsert(order_id, {"sub_skus": cleaned})

    def prefill_from_history(self) -> int:
        """Fill empty shipping types and sub-SKUs from earlier shipments of the same SKU.

        Only empty fields are filled; operator input is never overwritten.

        Returns:
            Number of staged shipments that were changed.
        """
        staged = self.cache.get_all()
        if not staged:
            return 0

        lookup = self.backend.build_sku_lookup()
        changed = 0
        for order_id, shipment in staged.items():
            history = lookup.get(shipment.sku)
            if not history:
                continue
            partial = {}
            if not shipment.shipping_type and history.get("shipping_type") in SHIPPING_TYPES:
                partial["shipping_type"] = history["shipping_type"]
            if not shipment.sub_skus and history.get("sub_skus"):
                partial["sub_skus"] = list(history["sub_skus"])
            if partial:
                self.cache.upsert(order_id, partial)
                changed += 1

        if self.debug:
            print(f"  Pre-filled {changed} staged shipment(s) from shipment history")
        return changed

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def save_order(self, order_id: int):
        return self.saver.save(order_id)

    def save_all(self, order_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        """Save every staged order (or the given ones).

        A failure on one order is recorded and the rest are still saved;
        nothing is retried.

        Returns:
            A dict containing:
                - started_at/completed_at: ISO timestamps
                - success: True if no order failed
                - orders: One entry per order (order_id, verdict or error)
                - summary: Counts per verdict plus "failed"
        """
        results = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "operation": "save-all",
            "success": False,
            "orders": [],
        }
        summary = {"create": 0, "update": 0, "skip": 0, "failed": 0}

        if order_ids is None:
            order_ids = sorted(self.cache.get_all().keys())

        print(f"\n{'='*60}")
        print(f"SAVING {len(order_ids)} STAGED ORDER(S)")
        print("="*60)

        for order_id in order_ids:
            try:
                outcome = self.saver.save(order_id)
            except BookingError as e:
                summary["failed"] += 1
                results["orders"].append({"order_id": order_id, "error": user_message(e)})
                print(f"  Order {order_id}: FAILED - {user_message(e)}")
                continue

            summary[outcome.verdict.value] += 1
            results["orders"].append({
                "order_id": order_id,
                "verdict": outcome.verdict.value,
                "record_id": outcome.record_id,
                "reason": outcome.reason,
            })
            label = "skipped" if outcome.verdict == Verdict.SKIP else f"{outcome.verdict.value}d"
            detail = f" ({outcome.reason})" if outcome.reason else ""
            print(f"  Order {order_id}: {label}{detail}")

        results["summary"] = summary
        results["success"] = summary["failed"] == 0
        results["completed_at"] = datetime.now(timezone.utc).isoformat()
        return results

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def open_workflow(self, order: Order, carrier: str) -> BookingWorkflow:
        """Open a booking session. Closing it also stops every job poll loop."""
        workflow = BookingWorkflow(order, carrier, self.cache, self.bus, self.backend, self.saver, self.debug)
        workflow.on_close(self.poller.stop_all)
        return workflow.open()

    # ------------------------------------------------------------------
    # Import pipeline
    # ------------------------------------------------------------------

    def run_import(self, file_path: str, scrape_config: Optional[ScrapeConfig] = None) -> Dict[str, Any]:
        """Upload an Excel export and poll it, chaining BOL scraping on success.

        Returns:
            A dict containing:
                - started_at/completed_at: ISO timestamps
                - success: True if the import (and the scrape, when configured) succeeded
                - jobs: Last status per job id
                - events: Chain / poll problems reported along the way
                - error: Error message (if a step failed)
        """
        results = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "operation": "import",
            "config": {
                "file": file_path,
                "scrape": bool(scrape_config),
            },
            "success": False,
            "jobs": {},
        }
        self._job_events = []
        self.clear_job_statuses()

        try:
            print(f"\n{'='*60}")
            print("STEP 1: VALIDATE")
            print("="*60)
            validate_import_file(file_path)
            if scrape_config is not None:
                validate_scrape_config(scrape_config)
                print(
                    f"  Scrape: {scrape_config.start_date} to {scrape_config.end_date} "
                    f"({scrape_config.filter_mode})"
                )
            print(f"  File: {file_path}")

            print(f"\n{'='*60}")
            print("STEP 2: UPLOAD")
            print("="*60)
            headless = scrape_config.headless if scrape_config else True
            import_id = self.jobs.submit_import(file_path, headless=headless)
            results["import_job_id"] = import_id
            print(f"  Import job: {import_id}")

            print(f"\n{'='*60}")
            print("STEP 3: POLL")
            print("="*60)
            if scrape_config is not None:
                self.poller.chain_scrape(import_id, scrape_config)
            self.poller.start(import_id, "import")
            self.poller.join()

        except BookingError as e:
            results["error"] = user_message(e)
            print(f"\n  ERROR: {results['error']}")
        finally:
            self.poller.stop_all()

        for job_id in self.poller.jobs():
            status = self.poller.status(job_id)
            if status is not None:
                results["jobs"][job_id] = {
                    "kind": status.kind,
                    "state": status.state,
                    "progress": status.progress,
                    "counters": status.counters,
                    "errors": status.errors,
                }

        results["events"] = list(self._job_events)
        self.poller.prune()
        if "error" not in results:
            kinds_needed = ["import", "scrape"] if scrape_config is not None else ["import"]
            succeeded = {job["kind"] for job in results["jobs"].values() if job["state"] == "succeeded"}
            results["success"] = all(kind in succeeded for kind in kinds_needed)

        results["completed_at"] = datetime.now(timezone.utc).isoformat()
        return results

    def clear_job_statuses(self) -> int:
        """Drop the job status records left by earlier imports. Returns how many."""
        keys = [k for k in self.durable.keys() if k.startswith(JOB_STATUS_KEY_PREFIX)]
        for key in keys:
            self.durable.delete(key)
        if self.debug and keys:
            print(f"  Cleared {len(keys)} job status record(s)")
        return len(keys)

    def _on_job_status(self, status: JobStatus) -> None:
        line = f"  [{status.kind}] {status.job_id}: {status.state} {status.progress}%"
        if status.message:
            line += f" - {status.message}"
        print(line)
        self.durable.set(
            f"{JOB_STATUS_KEY_PREFIX}{status.job_id}",
            json.dumps({
                "kind": status.kind,
                "state": status.state,
                "progress": status.progress,
                "message": status.message,
                "counters": status.counters,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }),
        )

    def _on_chain_started(self, import_job_id: str, scrape_job_id: str) -> None:
        print(f"  Import {import_job_id} finished, BOL scraping started: {scrape_job_id}")
        self._job_events.append({"job_id": import_job_id, "event": "chained", "scrape_job_id": scrape_job_id})

    def _on_chain_error(self, import_job_id: str, error: Exception) -> None:
        message = user_message(error)
        print(f"  Warning: import {import_job_id} succeeded but BOL scraping could not start: {message}")
        self._job_events.append({"job_id": import_job_id, "event": "chain_error", "error": message})

    def _on_poll_error(self, job_id: str, error: Exception) -> None:
        message = user_message(error)
        print(f"  Warning: status check for job {job_id} failed: {message}")
        self._job_events.append({"job_id": job_id, "event": "poll_error", "error": message})

    def _on_poll_timeout(self, job_id: str) -> None:
        print(f"  Warning: job {job_id} did not finish after {self.poll_max_attempts} status checks")
        self._job_events.append({"job_id": job_id, "event": "timeout"})

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def print_shipments(self, order_id: Optional[int] = None) -> int:
        """Print staged shipments. Returns how many were printed."""
        if order_id is not None:
            shipment = self.cache.get(order_id)
            shipments = [shipment] if shipment else []
        else:
            shipments = [s for _, s in sorted(self.cache.get_all().items())]

        if not shipments:
            print("No staged shipments")
            return 0

        for shipment in shipments:
            summary = summarize_order(Order(shipment.order_id, shipment.marketplace, shipment.orders_jsonb))
            print(f"\nOrder {shipment.order_id} ({shipment.marketplace or '-'})")
            print(f"  SKU:           {shipment.sku or '-'}")
            print(f"  Product:       {summary['product_name']}")
            print(f"  Customer:      {summary['customer_name']}, {summary['city']} {summary['state']} {summary['zip']}")
            print(f"  Total:         {summary['total']}")
            print(f"  Shipping type: {shipment.shipping_type or '(unset)'}")
            print(f"  Sub-SKUs:      {', '.join(shipment.sub_skus) or '(none)'}")
            carriers = [c.upper() for c in sorted(shipment.carrier_artifacts)]
            print(f"  Carriers:      {', '.join(carriers) or '-'}")
            if shipment.backend_record_id is not None:
                print(f"  Record:        {shipment.backend_record_id}")
        return len(shipments)

    def print_summary(self, results: Dict):
        """Print a human-readable summary of save_all() or run_import() results."""
        print(f"\n{'='*60}")
        print(f"{results.get('operation', 'run').upper()} COMPLETE")
        print("="*60)
        print(f"Status: {'SUCCESS' if results.get('success') else 'FAILED'}")

        summary = results.get("summary", {})
        if summary:
            print(f"Created: {summary.get('create', 0)}")
            print(f"Updated: {summary.get('update', 0)}")
            print(f"Skipped: {summary.get('skip', 0)}")
            print(f"Failed: {summary.get('failed', 0)}")

        for job_id, job in results.get("jobs", {}).items():
            counters = ", ".join(f"{k}={v}" for k, v in job["counters"].items())
            print(f"{job['kind'].capitalize()} {job_id}: {job['state']}" + (f" ({counters})" if counters else ""))

        if results.get("error"):
            print(f"Error: {results['error']}")

    def clear(self) -> None:
        """Empty the staging cache and the stored job statuses."""
        self.cache.clear()
        self.clear_job_statuses()

    def close(self) -> None:
        self.poller.stop_all()
