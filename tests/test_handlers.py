"""Tests for the six clinic tool handlers, called directly."""

from __future__ import annotations

from datetime import datetime

import pytest

from src.tools import handlers
from src.tools.handlers import ToolContext, normalize_phone
from src.tools.params import (
    CreateFollowupTaskParams,
    CreateOrUpdateAppointmentParams,
    FindPatientByPhoneParams,
    GetInvoiceStatusParams,
    GetNextAvailableSlotsParams,
    SummarizeLastVisitParams,
)


@pytest.fixture
def ctx_for(backend, now):
    def _make(caller, **overrides):
        return ToolContext(caller=caller, backend=backend, now=overrides.pop("now", now), **overrides)
    return _make


# ── normalize_phone ─────────────────────────────────────────────────


class TestNormalizePhone:
    @pytest.mark.parametrize("raw, expected", [
        ("0770 123 4567", "+9647701234567"),
        ("00964-770-123-4567", "+9647701234567"),
        ("+964 (770) 1234567", "+9647701234567"),
    ])
    def test_normalizes_local_and_international_forms(self, raw, expected):
        assert normalize_phone(raw, "+964") == expected


# ── find_patient_by_phone ───────────────────────────────────────────


class TestFindPatient:
    def test_single_match_in_accessible_branch(self, ctx_for, reception):
        result = handlers.find_patient_by_phone(
            FindPatientByPhoneParams.model_validate({"phone": "07701234567"}), ctx_for(reception),
        )
        assert result.success
        assert result.data["id"] == "patient-1"
        assert result.data["branch"] == {"id": "branch-main", "name": "Main Branch"}
        assert result.data["email"] == "layla@example.com"

    def test_contact_details_need_the_contact_capability(self, ctx_for, doctor):
        result = handlers.find_patient_by_phone(
            FindPatientByPhoneParams.model_validate({"phone": "07701234567"}), ctx_for(doctor),
        )
        assert result.success
        assert "email" not in result.data

    def test_patient_in_foreign_branch_is_refused(self, ctx_for, reception):
        result = handlers.find_patient_by_phone(
            FindPatientByPhoneParams.model_validate({"phone": "07709876543"}), ctx_for(reception),
        )
        assert not result.success
        assert "branch" in result.error

    def test_no_match_asks_for_a_human(self, ctx_for, reception):
        result = handlers.find_patient_by_phone(
            FindPatientByPhoneParams.model_validate({"phone": "07700000000"}), ctx_for(reception),
        )
        assert result.success
        assert result.data is None
        assert result.requires_human_handoff

    def test_ambiguous_match_lists_candidates(self, backend, ctx_for, admin, tenant):
        backend.add_patient(tenant, "patient-3", name="Sami Karim", phone="+9647701234567", branch_id="branch-main")
        result = handlers.find_patient_by_phone(
            FindPatientByPhoneParams.model_validate({"phone": "07701234567"}), ctx_for(admin),
        )
        assert result.success
        assert result.data["matchCount"] == 2
        assert {c["id"] for c in result.data["candidates"]} == {"patient-1", "patient-3"}
        assert result.requires_human_handoff


# ── get_next_available_slots ────────────────────────────────────────


class TestAvailableSlots:
    def test_booked_slot_is_excluded(self, ctx_for, reception):
        result = handlers.get_next_available_slots(
            GetNextAvailableSlotsParams.model_validate({"date": "2026-03-03", "doctorId": "doctor-1"}), ctx_for(reception),
        )
        starts = [s["start"] for s in result.data["availableSlots"]]
        assert result.success
        assert "2026-03-03T10:00:00" not in starts
        assert starts[0] == "2026-03-03T09:00:00"
        assert len(starts) == handlers.MAX_SLOTS_RETURNED
        # 09:00-17:00 in 30-minute steps, less the one booked
        assert result.data["totalAvailable"] == 15

    def test_cancelled_appointments_free_their_slot(self, backend, ctx_for, reception, tenant):
        backend.update_appointment(tenant, "appt-1", {"status": "CANCELLED"})
        result = handlers.get_next_available_slots(
            GetNextAvailableSlotsParams.model_validate({"date": "2026-03-03", "doctorId": "doctor-1"}), ctx_for(reception),
        )
        assert result.data["totalAvailable"] == 16

    def test_duration_follows_the_service(self, ctx_for, reception):
        result = handlers.get_next_available_slots(
            GetNextAvailableSlotsParams.model_validate({"date": "2026-03-04", "serviceId": "service-cleaning"}), ctx_for(reception),
        )
        first = result.data["availableSlots"][0]
        assert (first["start"], first["end"]) == ("2026-03-04T09:00:00", "2026-03-04T10:00:00")
        assert result.data["totalAvailable"] == 8

    def test_past_slots_are_not_offered(self, ctx_for, reception):
        result = handlers.get_next_available_slots(
            GetNextAvailableSlotsParams.model_validate({"date": "2026-03-02"}),
            ctx_for(reception, now=datetime(2026, 3, 2, 16, 10)),
        )
        assert [s["start"] for s in result.data["availableSlots"]] == ["2026-03-02T16:30:00"]


# ── create_or_update_appointment ────────────────────────────────────


def _appointment(**overrides) -> CreateOrUpdateAppointmentParams:
    payload = {
        "patientId": "patient-1", "doctorId": "doctor-1", "serviceId": "service-checkup",
        "branchId": "branch-main", "scheduledAt": "2026-03-04T11:00:00",
    }
    payload.update(overrides)
    return CreateOrUpdateAppointmentParams.model_validate(payload)


class TestAppointments:
    def test_creates_a_new_appointment(self, backend, ctx_for, reception, tenant):
        result = handlers.create_or_update_appointment(_appointment(), ctx_for(reception))
        assert result.success
        assert result.data["action"] == "created"
        appt = result.data["appointment"]
        assert appt["status"] == "NEW"
        assert appt["durationMinutes"] == 30
        assert appt["doctor"] == {"name": "Dr. Sara Ali"}
        assert backend.get_appointment(tenant, appt["id"])["patientId"] == "patient-1"

    def test_updates_an_existing_appointment(self, ctx_for, reception):
        result = handlers.create_or_update_appointment(
            _appointment(appointmentId="appt-1", scheduledAt="2026-03-03T14:00:00"), ctx_for(reception),
        )
        assert result.success
        assert result.data["action"] == "updated"
        assert result.data["appointment"]["scheduledAt"] == "2026-03-03T14:00:00"

    def test_completed_appointment_is_locked(self, backend, ctx_for, reception, tenant):
        backend.update_appointment(tenant, "appt-1", {"status": "COMPLETED"})
        result = handlers.create_or_update_appointment(
            _appointment(appointmentId="appt-1"), ctx_for(reception),
        )
        assert result.error == "Cannot update appointment with status COMPLETED"

    def test_double_booking_the_doctor_is_refused(self, backend, ctx_for, reception, tenant):
        result = handlers.create_or_update_appointment(
            _appointment(scheduledAt="2026-03-03T10:15:00"), ctx_for(reception),
        )
        assert not result.success
        assert result.error == "The doctor is not available at the requested time"
        assert len(backend.list_appointments(
            tenant, datetime(2026, 3, 3), datetime(2026, 3, 4), doctor_id="doctor-1",
        )) == 1

    def test_moving_an_appointment_over_its_own_slot_is_allowed(self, ctx_for, reception):
        result = handlers.create_or_update_appointment(
            _appointment(appointmentId="appt-1", scheduledAt="2026-03-03T10:15:00"), ctx_for(reception),
        )
        assert result.success
        assert result.data["appointment"]["scheduledAt"] == "2026-03-03T10:15:00"

    def test_cancelled_appointment_does_not_block_the_slot(self, backend, ctx_for, reception, tenant):
        backend.update_appointment(tenant, "appt-1", {"status": "CANCELLED"})
        result = handlers.create_or_update_appointment(
            _appointment(scheduledAt="2026-03-03T10:00:00"), ctx_for(reception),
        )
        assert result.success

    @pytest.mark.parametrize("scheduled_at, error", [
        ("2026-03-01T10:00:00", "Requested time is in the past"),
        ("2026-03-02T07:30:00", "Requested time is in the past"),
        ("2026-03-04T07:00:00", "Requested time is outside clinic hours"),
        ("2026-03-04T16:45:00", "Requested time is outside clinic hours"),
    ])
    def test_unbookable_times(self, ctx_for, reception, scheduled_at, error):
        result = handlers.create_or_update_appointment(
            _appointment(scheduledAt=scheduled_at), ctx_for(reception),
        )
        assert not result.success
        assert result.error == error

    @pytest.mark.parametrize("overrides, error", [
        ({"branchId": "branch-north"}, "Access denied to this branch"),
        ({"patientId": "nobody"}, "Patient not found"),
        ({"doctorId": "reception-1"}, "Doctor not found"),
        ({"serviceId": "service-none"}, "Service not found"),
        ({"appointmentId": "appt-missing"}, "Appointment not found"),
    ])
    def test_business_rejections(self, ctx_for, reception, overrides, error):
        result = handlers.create_or_update_appointment(_appointment(**overrides), ctx_for(reception))
        assert not result.success
        assert result.error == error


# ── summarize_last_visit ────────────────────────────────────────────


class TestLastVisit:
    def test_returns_the_latest_visit(self, ctx_for, doctor):
        result = handlers.summarize_last_visit(
            SummarizeLastVisitParams.model_validate({"patientId": "patient-1"}), ctx_for(doctor),
        )
        assert result.data["hasVisitHistory"] is True
        assert result.data["lastVisit"]["diagnosis"] == "Mild enamel erosion"

    def test_no_history(self, ctx_for, doctor):
        result = handlers.summarize_last_visit(
            SummarizeLastVisitParams.model_validate({"patientId": "patient-2"}), ctx_for(doctor),
        )
        assert result.success
        assert result.data["hasVisitHistory"] is False


# ── get_invoice_status ──────────────────────────────────────────────


class TestInvoiceStatus:
    def test_by_invoice_number(self, ctx_for, accountant):
        result = handlers.get_invoice_status(
            GetInvoiceStatusParams.model_validate({"invoiceNumber": "INV-202602-00042"}), ctx_for(accountant),
        )
        invoice = result.data["invoice"]
        assert result.data["found"] is True
        assert invoice["remainingBalance"] == 40000
        assert invoice["patientName"] == "Layla Karim"

    def test_by_phone_summarizes_unpaid_invoices(self, backend, ctx_for, accountant, tenant):
        backend.add_invoice(
            tenant, "INV-202601-00007", patient_id="patient-1", total=10000, paid_amount=10000,
            status="PAID", created_at="2026-01-05T09:00:00",
        )
        result = handlers.get_invoice_status(
            GetInvoiceStatusParams.model_validate({"phone": "07701234567"}), ctx_for(accountant),
        )
        summary = result.data["summary"]
        assert result.data["patientName"] == "Layla Karim"
        assert summary["totalOutstanding"] == 40000
        assert summary["unpaidInvoiceCount"] == 1
        assert [i["invoiceNumber"] for i in summary["recentInvoices"]] == [
            "INV-202602-00042", "INV-202601-00007",
        ]

    def test_unknown_patient(self, ctx_for, accountant):
        result = handlers.get_invoice_status(
            GetInvoiceStatusParams.model_validate({"patientId": "nobody"}), ctx_for(accountant),
        )
        assert result.data == {"found": False, "patientFound": False}


# ── create_followup_task ────────────────────────────────────────────


def _task(**overrides) -> CreateFollowupTaskParams:
    payload = {
        "entityType": "Patient", "entityId": "patient-1", "title": "Call about results",
        "assignedTo": "reception-1", "dueDate": "2026-03-03",
    }
    payload.update(overrides)
    return CreateFollowupTaskParams.model_validate(payload)


class TestFollowupTask:
    def test_creates_task_with_default_priority(self, backend, ctx_for, doctor):
        result = handlers.create_followup_task(_task(), ctx_for(doctor))
        assert result.success
        assert result.data["task"]["priority"] == "MEDIUM"
        assert result.data["task"]["assignedTo"] == "Omar Hassan"
        stored = backend.tasks[-1]
        assert stored["createdBy"] == "doctor-1"
        assert stored["entityType"] == "PATIENT"

    def test_inactive_assignee_is_rejected(self, backend, ctx_for, doctor):
        result = handlers.create_followup_task(_task(assignedTo="former-1"), ctx_for(doctor))
        assert result.error == "Assignee not found"
        assert backend.tasks == []
