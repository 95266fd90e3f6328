"""Collaborator surface for the clinic's CRUD services.

The tool handlers only ever talk to a :class:`ClinicBackend`.  Two
implementations ship with the repo:

* :class:`InMemoryClinicBackend` — thread-safe dict store used by the CLI,
  the test-suite and the server when no API URL is configured.
* :class:`src.services.clinic_api_client.ClinicAPIClient` — HTTP client for
  the clinic REST API.

Records are plain camelCase dicts, the same shape the REST API returns.
Every method is tenant-scoped.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Protocol

Record = dict[str, Any]


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string into naive clinic-local time.

    Schedules are kept in the clinic's wall-clock time; offset-aware input
    (including a trailing ``Z``) is converted to local time first.
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


class ClinicBackend(Protocol):
    """Read/write operations the tools need from the clinic domain."""

    def find_patients_by_phone(self, tenant_id: str, phone: str) -> list[Record]: ...

    def get_patient(self, tenant_id: str, patient_id: str) -> Record | None: ...

    def get_user(self, tenant_id: str, user_id: str) -> Record | None: ...

    def get_service(self, tenant_id: str, service_id: str) -> Record | None: ...

    def list_services(self, tenant_id: str) -> list[Record]: ...

    def list_appointments(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        *,
        branch_id: str | None = None,
        doctor_id: str | None = None,
    ) -> list[Record]: ...

    def get_appointment(self, tenant_id: str, appointment_id: str) -> Record | None: ...

    def create_appointment(self, tenant_id: str, fields: Record) -> Record: ...

    def update_appointment(self, tenant_id: str, appointment_id: str, fields: Record) -> Record: ...

    def get_last_visit(self, tenant_id: str, patient_id: str) -> Record | None: ...

    def find_invoice(self, tenant_id: str, invoice_number: str) -> Record | None: ...

    def list_invoices(self, tenant_id: str, patient_id: str, limit: int = 5) -> list[Record]: ...

    def create_task(self, tenant_id: str, fields: Record) -> Record: ...

    def find_lead_by_phone(self, tenant_id: str, phone: str) -> Record | None: ...

    def create_lead(self, tenant_id: str, fields: Record) -> Record: ...

    def update_lead(self, tenant_id: str, lead_id: str, fields: Record) -> Record: ...


class InMemoryClinicBackend:
    """Dict-backed :class:`ClinicBackend`.  Reads return deep copies."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._branches: dict[str, Record] = {}
        self._patients: dict[str, Record] = {}
        self._users: dict[str, Record] = {}
        self._services: dict[str, Record] = {}
        self._appointments: dict[str, Record] = {}
        self._visits: list[Record] = []
        self._invoices: list[Record] = []
        self._leads: dict[str, Record] = {}
        self.tasks: list[Record] = []

    # ── Seeding helpers ──────────────────────────────────────────────

    def add_branch(self, tenant_id: str, branch_id: str, name: str) -> Record:
        record = {"id": branch_id, "tenantId": tenant_id, "name": name}
        with self._lock:
            self._branches[branch_id] = record
        return copy.deepcopy(record)

    def add_patient(
        self,
        tenant_id: str,
        patient_id: str,
        *,
        name: str,
        phone: str,
        branch_id: str,
        email: str | None = None,
        file_number: str | None = None,
    ) -> Record:
        record = {
            "id": patient_id,
            "tenantId": tenant_id,
            "name": name,
            "phone": phone,
            "email": email,
            "fileNumber": file_number or f"F-{patient_id}",
            "branchId": branch_id,
        }
        with self._lock:
            self._patients[patient_id] = record
        return copy.deepcopy(record)

    def add_user(
        self, tenant_id: str, user_id: str, *, name: str, role: str, status: str = "ACTIVE",
    ) -> Record:
        record = {"id": user_id, "tenantId": tenant_id, "name": name, "role": role, "status": status}
        with self._lock:
            self._users[user_id] = record
        return copy.deepcopy(record)

    def add_service(
        self,
        tenant_id: str,
        service_id: str,
        *,
        name: str,
        duration_minutes: int = 30,
        price: float = 0.0,
        active: bool = True,
    ) -> Record:
        record = {
            "id": service_id,
            "tenantId": tenant_id,
            "name": name,
            "durationMinutes": duration_minutes,
            "price": price,
            "active": active,
        }
        with self._lock:
            self._services[service_id] = record
        return copy.deepcopy(record)

    def add_appointment(self, tenant_id: str, **fields: Any) -> Record:
        fields.setdefault("status", "CONFIRMED")
        return self.create_appointment(tenant_id, fields)

    def add_lead(self, tenant_id: str, lead_id: str, *, phone: str, name: str = "Unknown", **fields: Any) -> Record:
        return self.create_lead(tenant_id, {"id": lead_id, "name": name, "phone": phone, **fields})

    def add_visit(self, tenant_id: str, patient_id: str, **fields: Any) -> Record:
        record = {"id": str(uuid.uuid4()), "tenantId": tenant_id, "patientId": patient_id, **fields}
        with self._lock:
            self._visits.append(record)
        return copy.deepcopy(record)

    def add_invoice(
        self,
        tenant_id: str,
        invoice_number: str,
        *,
        patient_id: str,
        total: float,
        paid_amount: float = 0.0,
        status: str = "ISSUED",
        created_at: str | None = None,
    ) -> Record:
        record = {
            "invoiceNumber": invoice_number,
            "tenantId": tenant_id,
            "patientId": patient_id,
            "total": total,
            "paidAmount": paid_amount,
            "status": status,
            "createdAt": created_at or datetime.now().isoformat(),
        }
        with self._lock:
            self._invoices.append(record)
        return copy.deepcopy(record)

    # ── ClinicBackend ────────────────────────────────────────────────

    def _with_branch(self, patient: Record) -> Record:
        out = copy.deepcopy(patient)
        branch = self._branches.get(patient["branchId"])
        out["branch"] = {"id": branch["id"], "name": branch["name"]} if branch else None
        return out

    def find_patients_by_phone(self, tenant_id: str, phone: str) -> list[Record]:
        with self._lock:
            return [
                self._with_branch(p)
                for p in self._patients.values()
                if p["tenantId"] == tenant_id and phone in p["phone"]
            ]

    def get_patient(self, tenant_id: str, patient_id: str) -> Record | None:
        with self._lock:
            patient = self._patients.get(patient_id)
            if patient is None or patient["tenantId"] != tenant_id:
                return None
            return self._with_branch(patient)

    def get_user(self, tenant_id: str, user_id: str) -> Record | None:
        return self._get_scoped(self._users, tenant_id, user_id)

    def get_service(self, tenant_id: str, service_id: str) -> Record | None:
        return self._get_scoped(self._services, tenant_id, service_id)

    def list_services(self, tenant_id: str) -> list[Record]:
        with self._lock:
            found = [
                copy.deepcopy(s) for s in self._services.values()
                if s["tenantId"] == tenant_id and s.get("active", True)
            ]
        return sorted(found, key=lambda s: s["name"])

    def list_appointments(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        *,
        branch_id: str | None = None,
        doctor_id: str | None = None,
    ) -> list[Record]:
        with self._lock:
            found = [
                copy.deepcopy(a)
                for a in self._appointments.values()
                if a["tenantId"] == tenant_id
                and start <= parse_iso(a["scheduledAt"]) < end
                and (branch_id is None or a.get("branchId") == branch_id)
                and (doctor_id is None or a.get("doctorId") == doctor_id)
            ]
        return sorted(found, key=lambda a: a["scheduledAt"])

    def get_appointment(self, tenant_id: str, appointment_id: str) -> Record | None:
        return self._get_scoped(self._appointments, tenant_id, appointment_id)

    def create_appointment(self, tenant_id: str, fields: Record) -> Record:
        record = {"status": "NEW", **fields, "id": fields.get("id") or str(uuid.uuid4()), "tenantId": tenant_id}
        with self._lock:
            self._appointments[record["id"]] = record
            return copy.deepcopy(record)

    def update_appointment(self, tenant_id: str, appointment_id: str, fields: Record) -> Record:
        with self._lock:
            record = self._appointments[appointment_id]
            if record["tenantId"] != tenant_id:
                raise KeyError(appointment_id)
            record.update(fields)
            return copy.deepcopy(record)

    def get_last_visit(self, tenant_id: str, patient_id: str) -> Record | None:
        with self._lock:
            visits = [
                v for v in self._visits
                if v["tenantId"] == tenant_id and v["patientId"] == patient_id
            ]
            if not visits:
                return None
            return copy.deepcopy(max(visits, key=lambda v: v.get("createdAt", "")))

    def find_invoice(self, tenant_id: str, invoice_number: str) -> Record | None:
        with self._lock:
            for invoice in self._invoices:
                if invoice["tenantId"] == tenant_id and invoice["invoiceNumber"] == invoice_number:
                    out = copy.deepcopy(invoice)
                    patient = self._patients.get(invoice["patientId"])
                    out["patient"] = (
                        {"id": patient["id"], "name": patient["name"], "phone": patient["phone"]}
                        if patient else None
                    )
                    return out
        return None

    def list_invoices(self, tenant_id: str, patient_id: str, limit: int = 5) -> list[Record]:
        with self._lock:
            invoices = [
                copy.deepcopy(i) for i in self._invoices
                if i["tenantId"] == tenant_id and i["patientId"] == patient_id
            ]
        invoices.sort(key=lambda i: i["createdAt"], reverse=True)
        return invoices[:limit]

    def create_task(self, tenant_id: str, fields: Record) -> Record:
        record = {**fields, "id": str(uuid.uuid4()), "tenantId": tenant_id, "status": "OPEN"}
        with self._lock:
            self.tasks.append(record)
            return copy.deepcopy(record)

    def find_lead_by_phone(self, tenant_id: str, phone: str) -> Record | None:
        with self._lock:
            for lead in self._leads.values():
                if lead["tenantId"] == tenant_id and lead["phone"] == phone:
                    return copy.deepcopy(lead)
        return None

    def create_lead(self, tenant_id: str, fields: Record) -> Record:
        record = {
            "stage": "INQUIRY", **fields,
            "id": fields.get("id") or str(uuid.uuid4()), "tenantId": tenant_id,
        }
        with self._lock:
            self._leads[record["id"]] = record
            return copy.deepcopy(record)

    def update_lead(self, tenant_id: str, lead_id: str, fields: Record) -> Record:
        with self._lock:
            record = self._leads[lead_id]
            if record["tenantId"] != tenant_id:
                raise KeyError(lead_id)
            record.update(fields)
            return copy.deepcopy(record)

    def get_lead(self, tenant_id: str, lead_id: str) -> Record | None:
        return self._get_scoped(self._leads, tenant_id, lead_id)

    # ── Internal ─────────────────────────────────────────────────────

    def _get_scoped(self, table: dict[str, Record], tenant_id: str, key: str) -> Record | None:
        with self._lock:
            record = table.get(key)
            if record is None or record["tenantId"] != tenant_id:
                return None
            return copy.deepcopy(record)


def seed_demo(backend: InMemoryClinicBackend, tenant_id: str = "demo-clinic") -> InMemoryClinicBackend:
    """Populate *backend* with a small clinic for the CLI and local server."""
    backend.add_branch(tenant_id, "branch-main", "Main Branch")
    backend.add_branch(tenant_id, "branch-north", "North Branch")
    backend.add_user(tenant_id, "doctor-1", name="Dr. Sara Ali", role="DOCTOR")
    backend.add_user(tenant_id, "reception-1", name="Omar Hassan", role="RECEPTION")
    backend.add_service(tenant_id, "service-checkup", name="Dental Check-up", duration_minutes=30, price=25000)
    backend.add_service(tenant_id, "service-cleaning", name="Teeth Cleaning", duration_minutes=45, price=40000)
    backend.add_patient(
        tenant_id, "patient-1",
        name="Layla Karim", phone="+9647701234567", branch_id="branch-main",
        email="layla@example.com", file_number="F-1001",
    )
    tomorrow = (datetime.now() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
    backend.add_appointment(
        tenant_id,
        branchId="branch-main", patientId="patient-1", doctorId="doctor-1",
        serviceId="service-checkup", scheduledAt=tomorrow.isoformat(), durationMinutes=30,
    )
    backend.add_visit(
        tenant_id, "patient-1",
        createdAt=(datetime.now() - timedelta(days=30)).isoformat(),
        doctorName="Dr. Sara Ali", serviceName="Dental Check-up",
        chiefComplaint="Sensitivity on lower molars",
        diagnosis="Mild enamel erosion",
        treatmentNotes="Fluoride varnish applied; review in 6 months",
    )
    backend.add_invoice(tenant_id, "INV-202601-00042", patient_id="patient-1", total=65000, paid_amount=25000)
    return backend
