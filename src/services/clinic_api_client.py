"""HTTP client for the clinic REST API with retry logic and timeout handling.

Implements :class:`~src.services.clinic_backend.ClinicBackend` on top of
the clinic's CRUD endpoints.  All requests carry a Bearer token and the
``X-Tenant-Id`` header of the tenant being served.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

import httpx

from src import config
from src.services.clinic_backend import Record

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0


class ClinicAPIError(Exception):
    """Raised when a clinic API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ClinicAPIClient:
    """Thin wrapper around the clinic REST API with automatic retries.

    ``404`` on a single-record read maps to ``None``; other ``4xx`` answers
    raise immediately; ``5xx``, timeouts and connection errors are retried
    with exponential backoff.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ):
        self._base_url = base_url or config.CLINIC_API_BASE_URL
        if not self._base_url:
            raise OSError("Missing required configuration: CLINIC_API_BASE_URL.")
        self._token = token or config.require_secret("CLINIC_API_TOKEN")
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        tenant_id: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> Any:
        """Execute an HTTP request with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers={"X-Tenant-Id": tenant_id},
                )
                if response.status_code == 404 and allow_missing:
                    return None
                if response.status_code >= 500:
                    raise ClinicAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise ClinicAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Clinic API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except ClinicAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Clinic API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise ClinicAPIError(
            f"Clinic API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    @staticmethod
    def _items(payload: Any) -> list[Record]:
        if isinstance(payload, dict):
            return payload.get("data", [])
        return payload or []

    # ── Patients, staff, services ────────────────────────────────────

    def find_patients_by_phone(self, tenant_id: str, phone: str) -> list[Record]:
        return self._items(self._request("GET", "/patients", tenant_id, params={"phone": phone}))

    def get_patient(self, tenant_id: str, patient_id: str) -> Record | None:
        return self._request("GET", f"/patients/{patient_id}", tenant_id, allow_missing=True)

    def get_user(self, tenant_id: str, user_id: str) -> Record | None:
        return self._request("GET", f"/users/{user_id}", tenant_id, allow_missing=True)

    def get_service(self, tenant_id: str, service_id: str) -> Record | None:
        return self._request("GET", f"/services/{service_id}", tenant_id, allow_missing=True)

    def list_services(self, tenant_id: str) -> list[Record]:
        return self._items(self._request("GET", "/services", tenant_id, params={"active": "true"}))

    # ── Appointments ─────────────────────────────────────────────────

    def list_appointments(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        *,
        branch_id: str | None = None,
        doctor_id: str | None = None,
    ) -> list[Record]:
        params: dict[str, Any] = {"from": start.isoformat(), "to": end.isoformat()}
        if branch_id:
            params["branchId"] = branch_id
        if doctor_id:
            params["doctorId"] = doctor_id
        return self._items(self._request("GET", "/appointments", tenant_id, params=params))

    def get_appointment(self, tenant_id: str, appointment_id: str) -> Record | None:
        return self._request("GET", f"/appointments/{appointment_id}", tenant_id, allow_missing=True)

    def create_appointment(self, tenant_id: str, fields: Record) -> Record:
        logger.info("Creating appointment for patient %s", fields.get("patientId"))
        return self._request("POST", "/appointments", tenant_id, json_body=fields)

    def update_appointment(self, tenant_id: str, appointment_id: str, fields: Record) -> Record:
        logger.info("Updating appointment %s", appointment_id)
        return self._request("PATCH", f"/appointments/{appointment_id}", tenant_id, json_body=fields)

    # ── Visits, billing, tasks ───────────────────────────────────────

    def get_last_visit(self, tenant_id: str, patient_id: str) -> Record | None:
        return self._request(
            "GET", f"/patients/{patient_id}/visits/latest", tenant_id, allow_missing=True,
        )

    def find_invoice(self, tenant_id: str, invoice_number: str) -> Record | None:
        return self._request("GET", f"/invoices/{invoice_number}", tenant_id, allow_missing=True)

    def list_invoices(self, tenant_id: str, patient_id: str, limit: int = 5) -> list[Record]:
        payload = self._request(
            "GET", "/invoices", tenant_id, params={"patientId": patient_id, "limit": limit},
        )
        return self._items(payload)[:limit]

    def create_task(self, tenant_id: str, fields: Record) -> Record:
        logger.info("Creating follow-up task %r", fields.get("title"))
        return self._request("POST", "/tasks", tenant_id, json_body=fields)

    # ── Leads ────────────────────────────────────────────────────────

    def find_lead_by_phone(self, tenant_id: str, phone: str) -> Record | None:
        leads = self._items(self._request("GET", "/leads", tenant_id, params={"phone": phone}))
        return leads[0] if leads else None

    def create_lead(self, tenant_id: str, fields: Record) -> Record:
        logger.info("Creating lead from %s", fields.get("source"))
        return self._request("POST", "/leads", tenant_id, json_body=fields)

    def update_lead(self, tenant_id: str, lead_id: str, fields: Record) -> Record:
        return self._request("PATCH", f"/leads/{lead_id}", tenant_id, json_body=fields)
