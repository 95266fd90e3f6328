"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from fastapi.testclient import TestClient

from src.agent import Orchestrator
from src.classifier import KeywordIntentClassifier, StaffPatternClassifier
from src.errors import ConversationNotFound, PersistenceError
from src.models import StaffCopilotRequest
from src.policy import AgentPolicy
from src.server import app

RECEPTION_HEADERS = {
    "X-User-Id": "reception-1",
    "X-Tenant-Id": "clinic-a",
    "X-User-Role": "RECEPTION",
    "X-Branch-Ids": "branch-main",
}
ACCOUNTANT_HEADERS = {**RECEPTION_HEADERS, "X-User-Id": "accountant-1", "X-User-Role": "accountant"}
DOCTOR_HEADERS = {**RECEPTION_HEADERS, "X-User-Id": "doctor-1", "X-User-Role": "DOCTOR"}


@pytest.fixture
def orchestrator(backend, audit_sink, clock, dispatcher):
    """A real orchestrator over the test clinic, attached the way the lifespan does."""
    orch = Orchestrator(
        backend,
        dispatcher=dispatcher,
        customer_classifier=KeywordIntentClassifier(),
        staff_classifier=StaffPatternClassifier(),
        policy=AgentPolicy(
            booking_branch_id=None, booking_doctor_id=None, booking_service_id=None,
            intake_assignee_id="reception-1",
        ),
        audit=audit_sink,
        clock=clock,
    )
    app.state.orchestrator = orch
    yield orch
    app.state.orchestrator = None


@pytest.fixture
def client(orchestrator):
    return TestClient(app)


@pytest.fixture
def broken_client():
    """Client whose orchestrator is a mock, for exercising error mapping."""
    mock = MagicMock()
    app.state.orchestrator = mock
    yield TestClient(app), mock
    app.state.orchestrator = None


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "clinic-assistant"}

    def test_root_returns_service_info(self, client):
        data = client.get("/").json()
        assert data["service"] == "Clinic Assistant"
        assert data["health"] == "/api/health"


class TestStatusEndpoint:
    def test_reports_enabled_features(self, client):
        data = client.get("/api/ai/status").json()
        assert data["classifierBackend"] == "keyword"
        assert data["bookingEnabled"] is False
        assert data["intakeTasksEnabled"] is True
        assert "find_patient_by_phone" in data["tools"]
        assert len(data["tools"]) == 6


class TestCustomerAgentEndpoint:
    def test_returns_camel_case_reply(self, client):
        response = client.post(
            "/api/ai/customer-agent",
            json={"message": "How much does a cleaning cost?", "conversationId": "web-1"},
            headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["conversationId"] == "web-1"
        assert data["intent"] == "pricing_inquiry"
        assert data["requiresHumanHandoff"] is False
        assert "Teeth Cleaning" in data["response"]

    def test_missing_identity_headers(self, client):
        response = client.post("/api/ai/customer-agent", json={"message": "hi"})
        assert response.status_code == 401

    def test_unknown_role_is_forbidden(self, client):
        headers = {**RECEPTION_HEADERS, "X-User-Role": "JANITOR"}
        response = client.post("/api/ai/customer-agent", json={"message": "hi"}, headers=headers)
        assert response.status_code == 403

    def test_clinical_roles_cannot_relay_customer_messages(self, client):
        response = client.post("/api/ai/customer-agent", json={"message": "hi"}, headers=DOCTOR_HEADERS)
        assert response.status_code == 403

    def test_empty_message_is_rejected(self, client):
        response = client.post("/api/ai/customer-agent", json={"message": ""}, headers=RECEPTION_HEADERS)
        assert response.status_code == 422

    def test_whitespace_message_is_rejected(self, client):
        response = client.post(
            "/api/ai/customer-agent", json={"message": "  \n\t "}, headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 422

    def test_tools_run_as_the_customer_agent(self, client, audit_sink):
        client.post(
            "/api/ai/customer-agent",
            json={"message": "I need to reschedule", "patientId": "patient-1"},
            headers=RECEPTION_HEADERS,
        )
        tool_entries = [e for e in audit_sink.entries if e.action == "AI_TOOL_CALL"]
        assert tool_entries
        assert {e.user_id for e in tool_entries} == {"customer-agent"}


class TestStaffCopilotEndpoint:
    def test_lists_executed_tools(self, client):
        response = client.post(
            "/api/ai/staff-copilot",
            json={"query": "Find patient with phone 07701234567"},
            headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["toolsExecuted"][0]["tool"] == "find_patient_by_phone"
        assert data["toolsExecuted"][0]["success"] is True
        assert data["permissionDenied"] is False
        assert "Layla Karim" in data["response"]

    def test_whitespace_query_is_rejected(self, client):
        response = client.post(
            "/api/ai/staff-copilot", json={"query": "   "}, headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 422

    def test_blank_query_fails_model_validation(self):
        with pytest.raises(ValidationError, match="must contain some text"):
            StaffCopilotRequest(query="   ")

    def test_role_is_case_insensitive(self, client):
        response = client.post(
            "/api/ai/staff-copilot",
            json={"query": "check invoice status for INV-202602-00042"},
            headers=ACCOUNTANT_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["toolsExecuted"][0]["success"] is True


class TestToolExecuteEndpoint:
    def test_executes_a_single_tool(self, client):
        response = client.post(
            "/api/ai/tools/execute",
            json={"tool": "get_next_available_slots", "params": {"date": "2026-03-03"}},
            headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["date"] == "2026-03-03"
        assert "errorKind" not in data

    def test_denied_tool_is_a_failed_result(self, client):
        response = client.post(
            "/api/ai/tools/execute",
            json={"tool": "summarize_last_visit", "params": {"patientId": "patient-1"}},
            headers=ACCOUNTANT_HEADERS,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert "permission" in data["error"]

    def test_unknown_tool(self, client):
        response = client.post(
            "/api/ai/tools/execute", json={"tool": "drop_tables"}, headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["success"] is False


class TestErrorMapping:
    def test_persistence_failure_is_retryable(self, broken_client):
        client, mock = broken_client
        mock.handle_customer_message.side_effect = PersistenceError("stale write")
        response = client.post("/api/ai/customer-agent", json={"message": "hi"}, headers=RECEPTION_HEADERS)
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"

    def test_foreign_conversation_is_not_found(self, broken_client):
        client, mock = broken_client
        mock.handle_staff_query.side_effect = ConversationNotFound("conv-x")
        response = client.post(
            "/api/ai/staff-copilot",
            json={"query": "hi", "conversationId": "conv-x"},
            headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 404

    def test_unexpected_error_does_not_leak_details(self, broken_client):
        client, mock = broken_client
        mock.handle_customer_message.side_effect = RuntimeError("db password is hunter2")
        response = client.post("/api/ai/customer-agent", json={"message": "hi"}, headers=RECEPTION_HEADERS)
        assert response.status_code == 500
        assert "hunter2" not in response.text
        assert "internal error" in response.json()["detail"]

    def test_returns_503_when_not_initialised(self):
        app.state.orchestrator = None
        response = TestClient(app).post(
            "/api/ai/customer-agent", json={"message": "hi"}, headers=RECEPTION_HEADERS,
        )
        assert response.status_code == 503
        assert "starting up" in response.json()["detail"]


class TestRequestId:
    def test_response_includes_request_id_header(self, client):
        response = client.get("/api/health")
        assert response.headers["X-Request-ID"]

    def test_client_supplied_request_id_is_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"
