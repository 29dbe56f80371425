"""Tests for freight_booking.orchestrator.StagingOrchestrator."""

import json
import os
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from freight_booking.errors import NetworkError, ValidationError
from freight_booking.models import JobStatus, Order, ScrapeConfig
from freight_booking.save_decision import Verdict
from freight_booking.shipment_saver import SaveOutcome


_BASE_ENV = {
    "API_BASE_URL": "http://backend.test/api/v1",
    "PYTHON_API_BASE_URL": "http://jobs.test",
    "XPO_TOKEN": "xpo-token",
    "ESTES_TOKEN": "",
    "POLL_INTERVAL_SECONDS": "0.01",
    "POLL_MAX_ATTEMPTS": "50",
    "DEBUG": "false",
}


def _make_orchestrator(tmp_path, env_overrides=None):
    env = dict(_BASE_ENV)
    env["CACHE_FILE"] = str(tmp_path / "cache.json")
    if env_overrides:
        env.update(env_overrides)

    with patch.dict(os.environ, env, clear=True):
        from freight_booking.orchestrator import StagingOrchestrator
        orchestrator = StagingOrchestrator(env_file="/nonexistent/.env")
    return orchestrator


def _order(order_id, sku):
    return Order(id=order_id, marketplace_order_id=f"WM-{order_id}", attributes={"SKU": sku})


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_settings_loaded_from_environment(tmp_path):
    orch = _make_orchestrator(tmp_path)
    assert orch.api_base_url == "http://backend.test/api/v1"
    assert orch.poll_interval == 0.01
    assert orch.poll_max_attempts == 50
    assert orch.carrier_tokens == {"xpo": "xpo-token", "estes": ""}
    assert orch.backend.carrier_tokens == {"xpo": "xpo-token"}


def test_defaults_apply_when_unset(tmp_path):
    with patch.dict(os.environ, {}, clear=True):
        from freight_booking.orchestrator import StagingOrchestrator
        orch = StagingOrchestrator(env_file="/nonexistent/.env")
    assert orch.api_base_url == "http://localhost:5000/api/v1"
    assert orch.jobs_base_url == "http://localhost:8000"
    assert orch.poll_interval == 2.0
    assert orch.poll_max_attempts == 900
    assert orch.debug is False


def test_validate_config_valid(tmp_path):
    assert _make_orchestrator(tmp_path).validate_config() is True


def test_validate_config_missing_backend(tmp_path):
    orch = _make_orchestrator(tmp_path, {"API_BASE_URL": ""})
    assert orch.validate_config() is False


def test_validate_config_bad_poll_interval(tmp_path):
    orch = _make_orchestrator(tmp_path, {"POLL_INTERVAL_SECONDS": "0"})
    assert orch.validate_config() is False


def test_set_debug_reaches_components(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.set_debug(True)
    assert orch.cache.debug and orch.poller.debug and orch.backend.debug


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------

def test_stage_order_is_idempotent(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.stage_order(_order(1, "SKU-1"))
    orch.set_shipping_type(1, "LTL")
    shipment = orch.stage_order(_order(1, "SKU-1"))
    assert shipment.shipping_type == "LTL"
    assert shipment.marketplace == "WM-1"


def test_set_sub_skus_trims_blanks(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.stage_order(_order(1, "SKU-1"))
    assert orch.set_sub_skus(1, [" A1 ", "", "A2"]).sub_skus == ["A1", "A2"]


def test_prefill_from_history_fills_only_empty_fields(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.stage_order(_order(1, "SKU-1"))
    orch.stage_order(_order(2, "SKU-2"))
    orch.set_shipping_type(2, "Parcel")
    orch.stage_order(_order(3, "SKU-3"))
    orch.backend = MagicMock()
    orch.backend.build_sku_lookup.return_value = {
        "SKU-1": {"shipping_type": "LTL", "sub_skus": ["A1"]},
        "SKU-2": {"shipping_type": "LTL", "sub_skus": ["B1"]},
    }

    assert orch.prefill_from_history() == 2
    assert orch.cache.get(1).shipping_type == "LTL"
    assert orch.cache.get(1).sub_skus == ["A1"]
    assert orch.cache.get(2).shipping_type == "Parcel"
    assert orch.cache.get(2).sub_skus == ["B1"]
    assert orch.cache.get(3).sub_skus == []


# ---------------------------------------------------------------------------
# Bulk save
# ---------------------------------------------------------------------------

def test_save_all_continues_past_failures(tmp_path):
    orch = _make_orchestrator(tmp_path)
    for order_id in (1, 2, 3):
        orch.stage_order(_order(order_id, f"SKU-{order_id}"))

    orch.saver = MagicMock()
    orch.saver.save.side_effect = [
        SaveOutcome(1, Verdict.CREATE, 42, "no backend record"),
        ValidationError("Cannot save: missing shipping type", missing=["shipping type"]),
        NetworkError("Create shipped order failed with status 500", status=500),
    ]

    results = orch.save_all()

    assert orch.saver.save.call_count == 3
    assert results["success"] is False
    assert results["summary"] == {"create": 1, "update": 0, "skip": 0, "failed": 2}
    assert results["orders"][0] == {"order_id": 1, "verdict": "create", "record_id": 42, "reason": "no backend record"}
    assert results["orders"][1]["error"] == "Cannot save: missing shipping type"
    assert results["orders"][2]["error"] == "Create shipped order failed with status 500"


def test_save_all_with_nothing_staged(tmp_path):
    orch = _make_orchestrator(tmp_path)
    results = orch.save_all()
    assert results["success"] is True
    assert results["orders"] == []


# ---------------------------------------------------------------------------
# Booking session
# ---------------------------------------------------------------------------

def test_closing_workflow_stops_poll_loops(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.poller = MagicMock()
    workflow = orch.open_workflow(_order(1, "SKU-1"), "estes")
    assert orch.cache.get(1) is not None

    workflow.close()
    orch.poller.stop_all.assert_called_once()


# ---------------------------------------------------------------------------
# Import pipeline
# ---------------------------------------------------------------------------

def _excel(tmp_path):
    path = tmp_path / "orders.xlsx"
    path.write_bytes(b"PK")
    return str(path)


def test_run_import_chains_scrape(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.jobs = MagicMock()
    orch.poller.job_client = orch.jobs
    orch.jobs.submit_import.return_value = "U1"
    orch.jobs.submit_scrape.return_value = "S1"
    orch.jobs.get_status.side_effect = lambda kind, job_id: JobStatus(
        job_id=job_id, kind=kind, state="succeeded", counters={"imported_count": 3}
    )
    config = ScrapeConfig(start_date=date.today(), end_date=date.today())

    results = orch.run_import(_excel(tmp_path), config)

    assert results["success"] is True
    assert results["import_job_id"] == "U1"
    assert set(results["jobs"]) == {"U1", "S1"}
    orch.jobs.submit_scrape.assert_called_once_with(config)
    stored = json.loads(orch.durable.get("job_status:U1"))
    assert stored["state"] == "succeeded"


def test_run_import_scrape_failure_keeps_import(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.jobs = MagicMock()
    orch.poller.job_client = orch.jobs
    orch.jobs.submit_import.return_value = "U1"
    orch.jobs.submit_scrape.side_effect = NetworkError("BOL scraping failed with status 500", status=500)
    orch.jobs.get_status.return_value = JobStatus(job_id="U1", kind="import", state="succeeded")
    config = ScrapeConfig(start_date=date.today(), end_date=date.today())

    results = orch.run_import(_excel(tmp_path), config)

    assert results["success"] is False
    assert results["jobs"]["U1"]["state"] == "succeeded"
    assert results["events"][0]["event"] == "chain_error"
    orch.jobs.submit_import.assert_called_once()


def test_run_import_rejects_bad_range_before_upload(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.jobs = MagicMock()
    config = ScrapeConfig(start_date=date(2024, 5, 2), end_date=date(2024, 5, 1))

    results = orch.run_import(_excel(tmp_path), config)

    assert results["success"] is False
    assert "End date" in results["error"]
    orch.jobs.submit_import.assert_not_called()


def test_run_import_without_scrape(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.jobs = MagicMock()
    orch.poller.job_client = orch.jobs
    orch.jobs.submit_import.return_value = "U1"
    orch.jobs.get_status.return_value = JobStatus(job_id="U1", kind="import", state="succeeded")

    results = orch.run_import(_excel(tmp_path))

    assert results["success"] is True
    orch.jobs.submit_scrape.assert_not_called()


def test_run_import_forgets_finished_jobs_and_old_statuses(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.durable.set("job_status:OLD", json.dumps({"state": "succeeded"}))
    orch.jobs = MagicMock()
    orch.poller.job_client = orch.jobs
    orch.jobs.submit_import.return_value = "U1"
    orch.jobs.get_status.return_value = JobStatus(job_id="U1", kind="import", state="succeeded")

    results = orch.run_import(_excel(tmp_path))

    assert results["jobs"]["U1"]["state"] == "succeeded"
    assert orch.poller.jobs() == []
    assert orch.durable.get("job_status:OLD") is None
    assert orch.durable.get("job_status:U1") is not None


def test_run_import_reports_unreadable_status(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.jobs = MagicMock()
    orch.poller.job_client = orch.jobs
    orch.jobs.submit_import.return_value = "U1"
    orch.jobs.get_status.side_effect = NetworkError("Import status failed: invalid response from the server", status=200)

    results = orch.run_import(_excel(tmp_path))

    assert results["success"] is False
    assert results["events"] == [{
        "job_id": "U1",
        "event": "poll_error",
        "error": "Import status failed: invalid response from the server",
    }]


# ---------------------------------------------------------------------------
# Clearing
# ---------------------------------------------------------------------------

def test_clear_drops_staged_orders_and_job_statuses(tmp_path):
    orch = _make_orchestrator(tmp_path)
    orch.stage_order(_order(1, "SKU-1"))
    orch.durable.set("job_status:U1", json.dumps({"state": "succeeded"}))
    orch.durable.set("unrelated", "keep")

    orch.clear()

    assert orch.cache.get_all() == {}
    assert orch.durable.get("job_status:U1") is None
    assert orch.durable.get("unrelated") == "keep"
