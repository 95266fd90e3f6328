"""Parameter schemas for the six clinic tools.

Each schema accepts exactly the camelCase field names of the tool contract.
Unknown fields, missing required fields and type mismatches are all
rejected with a field-level message; nothing is coerced (``"30"`` is not
a valid ``durationMinutes``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class ToolParams(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=False,
        extra="forbid",
        frozen=True,
    )

    def to_wire(self) -> dict:
        """Dump back to the camelCase shape the tool was called with."""
        return self.model_dump(by_alias=True, exclude_none=True)


def _iso_date_or_datetime(value: str) -> str:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError("must be an ISO-8601 date or datetime") from exc
    return value


class FindPatientByPhoneParams(ToolParams):
    phone: StrictStr = Field(min_length=3)


class GetNextAvailableSlotsParams(ToolParams):
    branch_id: StrictStr | None = None
    doctor_id: StrictStr | None = None
    service_id: StrictStr | None = None
    date: StrictStr
    duration_minutes: StrictInt | None = Field(default=None, gt=0, le=480)

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: str) -> str:
        return _iso_date_or_datetime(value)


class CreateOrUpdateAppointmentParams(ToolParams):
    appointment_id: StrictStr | None = None
    patient_id: StrictStr
    doctor_id: StrictStr
    service_id: StrictStr
    branch_id: StrictStr
    scheduled_at: StrictStr
    duration_minutes: StrictInt | None = Field(default=None, gt=0, le=480)
    notes: StrictStr | None = None

    @field_validator("scheduled_at")
    @classmethod
    def _check_scheduled_at(cls, value: str) -> str:
        return _iso_date_or_datetime(value)


class SummarizeLastVisitParams(ToolParams):
    patient_id: StrictStr


class GetInvoiceStatusParams(ToolParams):
    patient_id: StrictStr | None = None
    phone: StrictStr | None = None
    invoice_number: StrictStr | None = None

    @model_validator(mode="after")
    def _needs_an_identifier(self):
        if not (self.patient_id or self.phone or self.invoice_number):
            raise ValueError("at least one of patientId, phone or invoiceNumber is required")
        return self


class CreateFollowupTaskParams(ToolParams):
    entity_type: Literal["Patient", "Lead", "Appointment", "Conversation"]
    entity_id: StrictStr
    title: StrictStr = Field(min_length=1, max_length=200)
    description: StrictStr | None = None
    assigned_to: StrictStr
    due_date: StrictStr
    priority: Literal["LOW", "MEDIUM", "HIGH", "URGENT"] | None = None

    @field_validator("due_date")
    @classmethod
    def _check_due_date(cls, value: str) -> str:
        return _iso_date_or_datetime(value)


def field_errors(exc: ValidationError) -> dict[str, str]:
    """Flatten a pydantic error into ``{"fieldName": "message"}``.

    Model-level errors (no location) are reported under ``"params"``.
    """
    errors: dict[str, str] = {}
    for err in exc.errors(include_url=False):
        loc = ".".join(str(part) for part in err["loc"]) or "params"
        msg = err["msg"]
        if err["type"] == "missing":
            msg = "required field is missing"
        elif err["type"] == "extra_forbidden":
            msg = "unknown field"
        errors.setdefault(loc, msg.removeprefix("Value error, "))
    return errors
