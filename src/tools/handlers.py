"""Handlers for the clinic tools.

Each handler receives already-validated parameters and a
:class:`ToolContext`, talks to the clinic backend, and returns a
``ToolCallResult``.  Business rejections (patient in another branch,
doctor not found ...) come back as ``success=False`` with a message that is
safe to show the caller; anything unexpected is left to raise, and the
dispatcher turns it into a generic failure.

Returned data is deliberately minimal; contact details are only included
for callers holding ``patients:contact``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from src import config
from src.models import Caller, Capability, ToolCallResult
from src.services.clinic_backend import ClinicBackend, parse_iso
from src.tools.params import (
    CreateFollowupTaskParams,
    CreateOrUpdateAppointmentParams,
    FindPatientByPhoneParams,
    GetInvoiceStatusParams,
    GetNextAvailableSlotsParams,
    SummarizeLastVisitParams,
)

logger = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 30
MAX_SLOTS_RETURNED = 5
RECENT_INVOICE_LIMIT = 5

# Appointment statuses that no longer occupy the calendar
_RELEASED_STATUSES = {"CANCELLED", "RESCHEDULED"}
# Appointment statuses that can no longer be edited
_LOCKED_STATUSES = {"COMPLETED", "CANCELLED", "RESCHEDULED"}
_SETTLED_INVOICE_STATUSES = {"PAID", "CANCELLED"}


@dataclass(frozen=True)
class ToolContext:
    """Everything a handler may use besides its parameters."""

    caller: Caller
    backend: ClinicBackend
    now: datetime = field(default_factory=datetime.now)
    open_hour: int = config.CLINIC_OPEN_HOUR
    close_hour: int = config.CLINIC_CLOSE_HOUR
    country_prefix: str = config.DEFAULT_COUNTRY_PREFIX

    @property
    def tenant_id(self) -> str:
        return self.caller.tenant_id


def normalize_phone(phone: str, country_prefix: str) -> str:
    """Strip separators and turn a local ``0`` prefix into the country code."""
    compact = re.sub(r"[\s\-()]", "", phone)
    if compact.startswith("0") and not compact.startswith("00"):
        return country_prefix + compact[1:]
    if compact.startswith("00"):
        return "+" + compact[2:]
    return compact


# ── find_patient_by_phone ────────────────────────────────────────────


def find_patient_by_phone(params: FindPatientByPhoneParams, ctx: ToolContext) -> ToolCallResult:
    normalized = normalize_phone(params.phone, ctx.country_prefix)
    matches = ctx.backend.find_patients_by_phone(ctx.tenant_id, normalized)
    raw = params.phone.strip()
    if not matches and raw != normalized:
        matches = ctx.backend.find_patients_by_phone(ctx.tenant_id, raw)

    if not matches:
        return ToolCallResult.ok(None, handoff_reason="No patient record matches this phone number")

    if len(matches) > 1:
        return ToolCallResult.ok(
            {
                "matchCount": len(matches),
                "candidates": [
                    {"id": p["id"], "name": p["name"], "fileNumber": p.get("fileNumber")}
                    for p in matches
                ],
            },
            handoff_reason="Several patients share this phone number",
        )

    patient = matches[0]
    if not ctx.caller.can_access_branch(patient.get("branchId")):
        return ToolCallResult.fail("Patient is in a branch you do not have access to")

    data = {
        "id": patient["id"],
        "name": patient["name"],
        "phone": patient["phone"],
        "fileNumber": patient.get("fileNumber"),
        "branch": patient.get("branch"),
    }
    if ctx.caller.has(Capability.PATIENT_CONTACT):
        data["email"] = patient.get("email")
    return ToolCallResult.ok(data)


# ── get_next_available_slots ─────────────────────────────────────────


def _booked_intervals(
    ctx: ToolContext,
    start: datetime,
    end: datetime,
    *,
    branch_id: str | None = None,
    doctor_id: str | None = None,
    exclude_id: str | None = None,
) -> list[tuple[datetime, datetime]]:
    """Calendar intervals still occupied between *start* and *end*."""
    booked: list[tuple[datetime, datetime]] = []
    for appt in ctx.backend.list_appointments(
        ctx.tenant_id, start, end, branch_id=branch_id, doctor_id=doctor_id,
    ):
        if appt.get("status") in _RELEASED_STATUSES or appt["id"] == exclude_id:
            continue
        appt_start = parse_iso(appt["scheduledAt"])
        booked.append((
            appt_start,
            appt_start + timedelta(minutes=appt.get("durationMinutes") or DEFAULT_SLOT_MINUTES),
        ))
    return booked


def get_next_available_slots(params: GetNextAvailableSlotsParams, ctx: ToolContext) -> ToolCallResult:
    duration = params.duration_minutes
    if duration is None and params.service_id:
        service = ctx.backend.get_service(ctx.tenant_id, params.service_id)
        if service:
            duration = service.get("durationMinutes")
    duration = duration or DEFAULT_SLOT_MINUTES

    day = parse_iso(params.date).date()
    day_start = datetime.combine(day, time(hour=ctx.open_hour))
    day_end = datetime.combine(day, time(hour=ctx.close_hour))

    booked = _booked_intervals(
        ctx, day_start, day_end, branch_id=params.branch_id, doctor_id=params.doctor_id,
    )

    step = timedelta(minutes=duration)
    slots: list[dict[str, str]] = []
    slot_start = day_start
    while slot_start + step <= day_end:
        slot_end = slot_start + step
        overlaps = any(slot_start < b_end and slot_end > b_start for b_start, b_end in booked)
        if not overlaps and slot_start >= ctx.now:
            slots.append({"start": slot_start.isoformat(), "end": slot_end.isoformat()})
        slot_start = slot_end

    return ToolCallResult.ok({
        "date": day.isoformat(),
        "availableSlots": slots[:MAX_SLOTS_RETURNED],
        "totalAvailable": len(slots),
    })


# ── create_or_update_appointment ─────────────────────────────────────


def _appointment_summary(appt: dict, patient: dict, doctor: dict, service: dict) -> dict:
    return {
        "id": appt["id"],
        "scheduledAt": appt["scheduledAt"],
        "durationMinutes": appt.get("durationMinutes"),
        "status": appt.get("status"),
        "patient": {"name": patient["name"], "phone": patient.get("phone")},
        "doctor": {"name": doctor["name"]},
        "service": {"name": service["name"]},
    }


def _schedule_conflict(
    ctx: ToolContext,
    params: CreateOrUpdateAppointmentParams,
    scheduled: datetime,
    duration: int,
) -> str | None:
    """Why the doctor cannot be seen at *scheduled*, or None if they can."""
    if scheduled < ctx.now:
        return "Requested time is in the past"

    ends = scheduled + timedelta(minutes=duration)
    opens = datetime.combine(scheduled.date(), time(hour=ctx.open_hour))
    closes = datetime.combine(scheduled.date(), time(hour=ctx.close_hour))
    if scheduled < opens or ends > closes:
        return "Requested time is outside clinic hours"

    # Doctors are not branch-bound, so every branch counts
    booked = _booked_intervals(
        ctx, datetime.combine(scheduled.date(), time.min), closes,
        doctor_id=params.doctor_id, exclude_id=params.appointment_id,
    )
    if any(scheduled < b_end and ends > b_start for b_start, b_end in booked):
        return "The doctor is not available at the requested time"
    return None


def create_or_update_appointment(
    params: CreateOrUpdateAppointmentParams, ctx: ToolContext,
) -> ToolCallResult:
    if not ctx.caller.can_access_branch(params.branch_id):
        return ToolCallResult.fail("Access denied to this branch")

    backend, tenant = ctx.backend, ctx.tenant_id
    patient = backend.get_patient(tenant, params.patient_id)
    if not patient:
        return ToolCallResult.fail("Patient not found")

    doctor = backend.get_user(tenant, params.doctor_id)
    if not doctor or doctor.get("role") != "DOCTOR" or doctor.get("status") != "ACTIVE":
        return ToolCallResult.fail("Doctor not found")

    service = backend.get_service(tenant, params.service_id)
    if not service or not service.get("active", True):
        return ToolCallResult.fail("Service not found")

    scheduled = parse_iso(params.scheduled_at)
    duration = params.duration_minutes or service.get("durationMinutes") or DEFAULT_SLOT_MINUTES
    fields = {
        "scheduledAt": scheduled.isoformat(),
        "durationMinutes": duration,
        "notes": params.notes,
    }

    if params.appointment_id:
        existing = backend.get_appointment(tenant, params.appointment_id)
        if not existing:
            return ToolCallResult.fail("Appointment not found")
        if existing.get("status") in _LOCKED_STATUSES:
            return ToolCallResult.fail(f"Cannot update appointment with status {existing['status']}")

    conflict = _schedule_conflict(ctx, params, scheduled, duration)
    if conflict:
        return ToolCallResult.fail(conflict)

    if params.appointment_id:
        appt = backend.update_appointment(tenant, params.appointment_id, fields)
        action = "updated"
    else:
        appt = backend.create_appointment(tenant, {
            **fields,
            "branchId": params.branch_id,
            "patientId": params.patient_id,
            "doctorId": params.doctor_id,
            "serviceId": params.service_id,
            "status": "NEW",
        })
        action = "created"

    logger.info("Appointment %s %s for patient %s", appt["id"], action, params.patient_id)
    return ToolCallResult.ok({
        "action": action,
        "appointment": _appointment_summary(appt, patient, doctor, service),
    })


# ── summarize_last_visit ─────────────────────────────────────────────


def summarize_last_visit(params: SummarizeLastVisitParams, ctx: ToolContext) -> ToolCallResult:
    visit = ctx.backend.get_last_visit(ctx.tenant_id, params.patient_id)
    if not visit:
        return ToolCallResult.ok({
            "hasVisitHistory": False,
            "message": "No visit history found for this patient",
        })
    return ToolCallResult.ok({
        "hasVisitHistory": True,
        "lastVisit": {
            "date": visit.get("createdAt"),
            "doctor": visit.get("doctorName"),
            "service": visit.get("serviceName"),
            "chiefComplaint": visit.get("chiefComplaint"),
            "diagnosis": visit.get("diagnosis"),
            "treatmentNotes": visit.get("treatmentNotes"),
        },
    })


# ── get_invoice_status ───────────────────────────────────────────────


def _balance(invoice: dict) -> float:
    return round(float(invoice["total"]) - float(invoice.get("paidAmount") or 0), 2)


def get_invoice_status(params: GetInvoiceStatusParams, ctx: ToolContext) -> ToolCallResult:
    backend, tenant = ctx.backend, ctx.tenant_id

    if params.invoice_number:
        invoice = backend.find_invoice(tenant, params.invoice_number)
        if not invoice:
            return ToolCallResult.ok({"found": False})
        return ToolCallResult.ok({
            "found": True,
            "invoice": {
                "invoiceNumber": invoice["invoiceNumber"],
                "total": float(invoice["total"]),
                "paidAmount": float(invoice.get("paidAmount") or 0),
                "remainingBalance": _balance(invoice),
                "status": invoice.get("status"),
                "patientName": (invoice.get("patient") or {}).get("name"),
            },
        })

    patient = None
    if params.patient_id:
        patient = backend.get_patient(tenant, params.patient_id)
    elif params.phone:
        matches = backend.find_patients_by_phone(tenant, normalize_phone(params.phone, ctx.country_prefix))
        patient = matches[0] if matches else None

    if not patient:
        return ToolCallResult.ok({"found": False, "patientFound": False})

    invoices = backend.list_invoices(tenant, patient["id"], limit=RECENT_INVOICE_LIMIT)
    unpaid = [inv for inv in invoices if inv.get("status") not in _SETTLED_INVOICE_STATUSES]
    return ToolCallResult.ok({
        "found": True,
        "patientFound": True,
        "patientName": patient["name"],
        "summary": {
            "totalOutstanding": round(sum(_balance(inv) for inv in unpaid), 2),
            "unpaidInvoiceCount": len(unpaid),
            "recentInvoices": [
                {
                    "invoiceNumber": inv["invoiceNumber"],
                    "total": float(inv["total"]),
                    "paid": float(inv.get("paidAmount") or 0),
                    "status": inv.get("status"),
                    "date": inv.get("createdAt"),
                }
                for inv in invoices
            ],
        },
    })


# ── create_followup_task ─────────────────────────────────────────────


def create_followup_task(params: CreateFollowupTaskParams, ctx: ToolContext) -> ToolCallResult:
    assignee = ctx.backend.get_user(ctx.tenant_id, params.assigned_to)
    if not assignee or assignee.get("status") != "ACTIVE":
        return ToolCallResult.fail("Assignee not found")

    task = ctx.backend.create_task(ctx.tenant_id, {
        "title": params.title,
        "description": params.description,
        "entityType": params.entity_type.upper(),
        "entityId": params.entity_id,
        "assignedTo": params.assigned_to,
        "dueDate": params.due_date,
        "priority": params.priority or "MEDIUM",
        "createdBy": ctx.caller.user_id,
    })
    return ToolCallResult.ok({
        "task": {
            "id": task["id"],
            "title": task["title"],
            "dueDate": task["dueDate"],
            "priority": task["priority"],
            "assignedTo": assignee["name"],
        },
    })
