"""Tests for the ClinicAPIClient service."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import patch

import httpx
import pytest

from src.services.clinic_api_client import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    ClinicAPIClient,
    ClinicAPIError,
)

BASE_URL = "https://clinic.example.test/api"


@pytest.fixture
def client():
    c = ClinicAPIClient(base_url=BASE_URL, token="test-token")
    yield c
    c.close()


# ── Construction ─────────────────────────────────────────────────────


class TestConstruction:
    def test_requires_a_base_url(self, monkeypatch):
        monkeypatch.setattr("src.config.CLINIC_API_BASE_URL", None)
        with pytest.raises(OSError, match="CLINIC_API_BASE_URL"):
            ClinicAPIClient(token="t")

    def test_sends_bearer_token_and_tenant_header(self):
        seen: list[httpx.Request] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": []})

        c = ClinicAPIClient(base_url=BASE_URL, token="secret-token", transport=httpx.MockTransport(_handler))
        c.find_patients_by_phone("clinic-a", "+9647701234567")
        c.close()

        request = seen[0]
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.headers["X-Tenant-Id"] == "clinic-a"
        assert request.url.path == "/api/patients"
        assert request.url.params["phone"] == "+9647701234567"


# ── Reads ────────────────────────────────────────────────────────────


class TestReads:
    def test_list_payloads_accept_data_envelope_or_bare_list(self, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"data": [{"id": "s1"}]})):
            assert client.list_services("clinic-a") == [{"id": "s1"}]
        with patch.object(client._client, "request", return_value=mock_http_response([{"id": "s2"}])):
            assert client.list_services("clinic-a") == [{"id": "s2"}]

    def test_missing_record_is_none(self, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"error": "nope"}, 404)):
            assert client.get_patient("clinic-a", "ghost") is None

    def test_missing_collection_is_an_error(self, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"error": "nope"}, 404)):
            with pytest.raises(ClinicAPIError) as exc_info:
                client.find_patients_by_phone("clinic-a", "0770")
            assert exc_info.value.status_code == 404

    def test_appointment_window_and_filters(self, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"data": []})) as mock_req:
            client.list_appointments(
                "clinic-a", datetime(2026, 3, 3, 9), datetime(2026, 3, 3, 17), doctor_id="doctor-1",
            )
        params = mock_req.call_args.kwargs["params"]
        assert params == {"from": "2026-03-03T09:00:00", "to": "2026-03-03T17:00:00", "doctorId": "doctor-1"}

    def test_invoice_list_is_capped(self, client, mock_http_response):
        rows = [{"id": f"i{i}"} for i in range(8)]
        with patch.object(client._client, "request", return_value=mock_http_response(rows)):
            assert len(client.list_invoices("clinic-a", "patient-1", limit=3)) == 3


# ── Writes ───────────────────────────────────────────────────────────


class TestWrites:
    def test_create_task_posts_the_fields(self, client, mock_http_response):
        created = {"id": "task-1", "title": "Call the lab"}
        with patch.object(client._client, "request", return_value=mock_http_response(created)) as mock_req:
            assert client.create_task("clinic-a", {"title": "Call the lab"}) == created
        args, kwargs = mock_req.call_args
        assert args == ("POST", "/tasks")
        assert kwargs["json"] == {"title": "Call the lab"}

    def test_update_appointment_uses_patch(self, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"id": "appt-1"})) as mock_req:
            client.update_appointment("clinic-a", "appt-1", {"notes": "x"})
        assert mock_req.call_args.args == ("PATCH", "/appointments/appt-1")


# ── Retry logic ──────────────────────────────────────────────────────


class TestRetryLogic:
    @patch("src.services.clinic_api_client.time.sleep")
    def test_retries_on_timeout(self, mock_sleep, client, mock_http_response):
        with patch.object(
            client._client, "request",
            side_effect=[httpx.TimeoutException("timeout"), mock_http_response({"id": "patient-1"})],
        ):
            assert client.get_patient("clinic-a", "patient-1") == {"id": "patient-1"}
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    @patch("src.services.clinic_api_client.time.sleep")
    def test_retries_on_500_error(self, mock_sleep, client, mock_http_response):
        with patch.object(
            client._client, "request",
            side_effect=[mock_http_response({}, 502), mock_http_response({}, 503), mock_http_response({"data": []})],
        ) as mock_req:
            assert client.list_services("clinic-a") == []
        assert mock_req.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [
            INITIAL_BACKOFF_SECONDS, INITIAL_BACKOFF_SECONDS * 2,
        ]

    @patch("src.services.clinic_api_client.time.sleep")
    def test_does_not_retry_on_400_error(self, mock_sleep, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"error": "bad"}, 400)):
            with pytest.raises(ClinicAPIError, match="Client error 400"):
                client.create_task("clinic-a", {})
        mock_sleep.assert_not_called()

    @patch("src.services.clinic_api_client.time.sleep")
    def test_raises_after_max_retries(self, mock_sleep, client, mock_http_response):
        with patch.object(
            client._client, "request", side_effect=httpx.ConnectError("refused"),
        ) as mock_req:
            with pytest.raises(ClinicAPIError, match="failed after"):
                client.get_user("clinic-a", "doctor-1")
        assert mock_req.call_count == MAX_RETRIES
        # No sleep after the final attempt
        assert mock_sleep.call_count == MAX_RETRIES - 1


# ── Leads ────────────────────────────────────────────────────────────


class TestLeads:
    def test_find_lead_by_phone_returns_the_first_match(self, client, mock_http_response):
        rows = {"data": [{"id": "lead-1"}, {"id": "lead-2"}]}
        with patch.object(client._client, "request", return_value=mock_http_response(rows)) as mock_req:
            assert client.find_lead_by_phone("clinic-a", "+9647700000000") == {"id": "lead-1"}
        assert mock_req.call_args.args == ("GET", "/leads")
        assert mock_req.call_args.kwargs["params"] == {"phone": "+9647700000000"}

    def test_no_lead_for_the_phone(self, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"data": []})):
            assert client.find_lead_by_phone("clinic-a", "+9647700000000") is None

    def test_create_and_update_lead(self, client, mock_http_response):
        with patch.object(client._client, "request", return_value=mock_http_response({"id": "lead-1"})) as mock_req:
            client.create_lead("clinic-a", {"phone": "+9647700000000", "source": "WHATSAPP"})
            assert mock_req.call_args.args == ("POST", "/leads")
            assert mock_req.call_args.kwargs["json"]["source"] == "WHATSAPP"

            client.update_lead("clinic-a", "lead-1", {"name": "Ali"})
            assert mock_req.call_args.args == ("PATCH", "/leads/lead-1")
            assert mock_req.call_args.kwargs["json"] == {"name": "Ali"}
