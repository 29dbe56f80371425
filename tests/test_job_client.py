"""Tests for freight_booking.job_client."""

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
import requests

from freight_booking.errors import NetworkError, ValidationError
from freight_booking.job_client import (
    JobClient,
    map_state,
    validate_import_file,
    validate_scrape_config,
)
from freight_booking.models import ScrapeConfig


TODAY = date(2024, 5, 10)


def _response(status=200, body=None):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.headers = {}
    response.json.return_value = body if body is not None else {}
    return response


def _make_client(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    with patch("freight_booking.job_client.requests.Session", return_value=session):
        client = JobClient("http://jobs.test/")
    return client, session


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_import_file_must_be_excel(tmp_path):
    csv = tmp_path / "orders.csv"
    csv.write_text("a,b")
    with pytest.raises(ValidationError):
        validate_import_file(str(csv))


def test_import_file_must_exist(tmp_path):
    with pytest.raises(ValidationError):
        validate_import_file(str(tmp_path / "missing.xlsx"))


def test_scrape_range_end_before_start():
    config = ScrapeConfig(start_date=date(2024, 5, 5), end_date=date(2024, 5, 4))
    with pytest.raises(ValidationError):
        validate_scrape_config(config, today=TODAY)


def test_scrape_range_too_far_ahead():
    config = ScrapeConfig(start_date=date(2024, 5, 10), end_date=date(2024, 5, 13))
    with pytest.raises(ValidationError):
        validate_scrape_config(config, today=TODAY)


def test_scrape_range_two_days_ahead_is_allowed():
    config = ScrapeConfig(start_date=date(2024, 5, 1), end_date=date(2024, 5, 12), filter_mode="creationDate")
    validate_scrape_config(config, today=TODAY)


def test_scrape_filter_mode_must_be_known():
    config = ScrapeConfig(start_date=TODAY, end_date=TODAY, filter_mode="shipDate")
    with pytest.raises(ValidationError):
        validate_scrape_config(config, today=TODAY)


# ---------------------------------------------------------------------------
# State mapping
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw,state", [
    ("uploading", "running"),
    ("processing", "running"),
    ("scraping", "running"),
    ("success", "succeeded"),
    ("completed", "succeeded"),
    ("error", "failed"),
    ("FAILED", "failed"),
    ("pending", "queued"),
    ("something-new", "running"),
])
def test_map_state(raw, state):
    assert map_state(raw) == state


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def test_submit_import_uploads_file(tmp_path):
    path = tmp_path / "orders.xlsx"
    path.write_bytes(b"PK")
    client, session = _make_client(_response(200, {"upload_id": "U1"}))

    assert client.submit_import(str(path)) == "U1"
    method, url = session.request.call_args[0]
    kwargs = session.request.call_args[1]
    assert (method, url) == ("POST", "http://jobs.test/api/v1/excel-import/upload")
    assert kwargs["data"] == {}
    assert kwargs["files"]["file"][0] == "orders.xlsx"


def test_submit_import_visible_browser(tmp_path):
    path = tmp_path / "orders.xls"
    path.write_bytes(b"PK")
    client, session = _make_client(_response(200, {"upload_id": 5}))

    assert client.submit_import(str(path), headless=False) == "5"
    assert session.request.call_args[1]["data"] == {"handle": "false"}


def test_submit_import_rejects_bad_file_without_request(tmp_path):
    client, session = _make_client()
    with pytest.raises(ValidationError):
        client.submit_import(str(tmp_path / "orders.txt"))
    session.request.assert_not_called()


def test_submit_scrape_sends_range():
    client, session = _make_client(_response(200, {"scraping_id": "S1"}))
    config = ScrapeConfig(start_date=date(2024, 5, 1), end_date=date(2024, 5, 2), filter_mode="both")

    assert client.submit_scrape(config) == "S1"
    assert session.request.call_args[1]["data"] == {
        "start_date": "2024-05-01",
        "end_date": "2024-05-02",
        "date_filter_type": "both",
    }


def test_submit_scrape_failure_is_network_error():
    client, _ = _make_client(_response(500, {"detail": "boom"}))
    config = ScrapeConfig(start_date=date(2024, 5, 1), end_date=date(2024, 5, 2))
    with pytest.raises(NetworkError) as exc_info:
        client.submit_scrape(config)
    assert exc_info.value.status == 500


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def test_get_import_status_picks_job_and_counters():
    body = {"uploads": [
        {"upload_id": "U0", "status": "success"},
        {"upload_id": "U1", "status": "processing", "progress": 140, "message": "Row 40",
         "imported_count": 40, "failed_count": None},
    ]}
    client, session = _make_client(_response(200, body))

    status = client.get_status("import", "U1")
    assert status.state == "running"
    assert status.progress == 100
    assert status.message == "Row 40"
    assert status.counters == {"imported_count": 40}
    assert session.request.call_args[0][1] == "http://jobs.test/api/v1/excel-import/importExcel/status"


def test_get_scrape_status_unknown_job():
    client, _ = _make_client(_response(200, {"scraping_operations": [{"scraping_id": "S0", "status": "error"}]}))
    assert client.get_status("scrape", "S1") is None


def test_get_status_unknown_kind():
    client, _ = _make_client()
    with pytest.raises(ValueError):
        client.get_status("export", "X")


def test_status_with_non_json_body_is_network_error():
    response = _response(200)
    response.json.side_effect = requests.JSONDecodeError("Expecting value", "<html>", 0)
    client, _ = _make_client(response)
    with pytest.raises(NetworkError) as exc_info:
        client.get_status("import", "U1")
    assert exc_info.value.message == "Import status failed: invalid response from the server"


def test_submit_with_non_object_body_is_network_error():
    client, _ = _make_client(_response(200, ["S1"]))
    config = ScrapeConfig(start_date=date(2024, 5, 1), end_date=date(2024, 5, 2))
    with pytest.raises(NetworkError):
        client.submit_scrape(config)


def test_unreadable_progress_and_counters_are_ignored():
    body = {"uploads": [
        {"upload_id": "U1", "status": "processing", "progress": "n/a",
         "imported_count": "12", "failed_count": "lots"},
    ]}
    client, _ = _make_client(_response(200, body))

    status = client.get_status("import", "U1")
    assert status.progress == 0
    assert status.counters == {"imported_count": 12}
