"""Shared test fixtures for the clinic assistant test suite."""

from __future__ import annotations

import os
from datetime import date, datetime
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py picks up deterministic
    defaults regardless of the developer's ``.env``.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("CLINIC_API_TOKEN", "test-clinic-token-456")
    os.environ["CLASSIFIER_BACKEND"] = "keyword"
    os.environ["METRICS_ENABLED"] = "false"


TENANT = "clinic-a"
OTHER_TENANT = "clinic-b"

# A Monday, well inside clinic hours
NOW = datetime(2026, 3, 2, 8, 0)
TODAY = NOW.date()
TOMORROW = date(2026, 3, 3)


@pytest.fixture
def tenant() -> str:
    return TENANT


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def clock():
    """Frozen clock callable."""
    return lambda: NOW


@pytest.fixture
def backend():
    """A small clinic: two branches, one doctor, two services, two patients."""
    from src.services.clinic_backend import InMemoryClinicBackend

    b = InMemoryClinicBackend()
    b.add_branch(TENANT, "branch-main", "Main Branch")
    b.add_branch(TENANT, "branch-north", "North Branch")
    b.add_user(TENANT, "doctor-1", name="Dr. Sara Ali", role="DOCTOR")
    b.add_user(TENANT, "reception-1", name="Omar Hassan", role="RECEPTION")
    b.add_user(TENANT, "former-1", name="Former Staff", role="RECEPTION", status="INACTIVE")
    b.add_service(TENANT, "service-checkup", name="Dental Check-up", duration_minutes=30, price=25000)
    b.add_service(TENANT, "service-cleaning", name="Teeth Cleaning", duration_minutes=60, price=40000)
    b.add_patient(
        TENANT, "patient-1",
        name="Layla Karim", phone="+9647701234567", branch_id="branch-main",
        email="layla@example.com", file_number="F-1001",
    )
    b.add_patient(
        TENANT, "patient-2",
        name="Yusuf Nouri", phone="+9647709876543", branch_id="branch-north",
        file_number="F-1002",
    )
    b.add_appointment(
        TENANT,
        id="appt-1", branchId="branch-main", patientId="patient-1", doctorId="doctor-1",
        serviceId="service-checkup", scheduledAt="2026-03-03T10:00:00", durationMinutes=30,
    )
    b.add_visit(
        TENANT, "patient-1",
        createdAt="2026-02-01T11:00:00", doctorName="Dr. Sara Ali", serviceName="Dental Check-up",
        chiefComplaint="Sensitivity on lower molars", diagnosis="Mild enamel erosion",
        treatmentNotes="Fluoride varnish applied",
    )
    b.add_invoice(
        TENANT, "INV-202602-00042", patient_id="patient-1", total=65000, paid_amount=25000,
        created_at="2026-02-01T12:00:00",
    )
    return b


@pytest.fixture
def reception():
    from src.models import Role
    from src.tools.permissions import staff_caller

    return staff_caller("reception-1", TENANT, Role.RECEPTION, {"branch-main"})


@pytest.fixture
def doctor():
    from src.models import Role
    from src.tools.permissions import staff_caller

    return staff_caller("doctor-1", TENANT, Role.DOCTOR, {"branch-main"})


@pytest.fixture
def accountant():
    from src.models import Role
    from src.tools.permissions import staff_caller

    return staff_caller("accountant-1", TENANT, Role.ACCOUNTANT, {"branch-main"})


@pytest.fixture
def admin():
    from src.models import Role
    from src.tools.permissions import staff_caller

    return staff_caller("admin-1", TENANT, Role.ADMIN)


@pytest.fixture
def customer_agent():
    from src.tools.permissions import customer_agent_caller

    return customer_agent_caller(TENANT)


@pytest.fixture
def store():
    from src.services.conversation_store import InMemoryConversationStore

    return InMemoryConversationStore()


@pytest.fixture
def audit_sink():
    from src.services.audit import InMemoryAuditSink

    return InMemoryAuditSink()


@pytest.fixture
def dispatcher(backend, audit_sink, clock):
    from src.tools.dispatcher import ToolDispatcher

    d = ToolDispatcher(backend, audit=audit_sink, timeout_seconds=2.0, max_workers=4, clock=clock)
    yield d
    d.shutdown(wait=False)


class ScriptedClassifier:
    """Returns queued classifications in order, then repeats the last one."""

    def __init__(self, *results):
        self._results = list(results)
        self.calls: list[tuple[str, list]] = []

    def classify(self, message, history):
        from src.classifier import Classification

        self.calls.append((message, list(history)))
        intent, confidence = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        return Classification(intent, confidence)


@pytest.fixture
def scripted():
    """Factory for a scripted stub classifier."""
    return ScriptedClassifier


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
