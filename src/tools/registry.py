"""Immutable catalog of the clinic tools.

The registry is built once at import time from a fixed table and exposed
as a read-only mapping, so concurrent turns can share it without locking.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from types import MappingProxyType

from src.errors import UnknownToolError
from src.models import Capability, ToolCallResult, ToolName
from src.tools import handlers
from src.tools.params import (
    CreateFollowupTaskParams,
    CreateOrUpdateAppointmentParams,
    FindPatientByPhoneParams,
    GetInvoiceStatusParams,
    GetNextAvailableSlotsParams,
    SummarizeLastVisitParams,
    ToolParams,
)

Handler = Callable[[ToolParams, "handlers.ToolContext"], ToolCallResult]


@dataclass(frozen=True)
class ToolDefinition:
    name: ToolName
    description: str
    params_model: type[ToolParams]
    required_capabilities: frozenset[Capability]
    handler: Handler


_DEFINITIONS = (
    ToolDefinition(
        name=ToolName.FIND_PATIENT_BY_PHONE,
        description="Look up a patient record by phone number.",
        params_model=FindPatientByPhoneParams,
        required_capabilities=frozenset({Capability.PATIENT_LOOKUP}),
        handler=handlers.find_patient_by_phone,
    ),
    ToolDefinition(
        name=ToolName.GET_NEXT_AVAILABLE_SLOTS,
        description="List the next free appointment slots on a given day.",
        params_model=GetNextAvailableSlotsParams,
        required_capabilities=frozenset({Capability.SCHEDULE_READ}),
        handler=handlers.get_next_available_slots,
    ),
    ToolDefinition(
        name=ToolName.CREATE_OR_UPDATE_APPOINTMENT,
        description="Book a new appointment or change an existing one.",
        params_model=CreateOrUpdateAppointmentParams,
        required_capabilities=frozenset({Capability.APPOINTMENT_WRITE}),
        handler=handlers.create_or_update_appointment,
    ),
    ToolDefinition(
        name=ToolName.SUMMARIZE_LAST_VISIT,
        description="Summarize a patient's most recent visit.",
        params_model=SummarizeLastVisitParams,
        required_capabilities=frozenset({Capability.VISIT_READ}),
        handler=handlers.summarize_last_visit,
    ),
    ToolDefinition(
        name=ToolName.GET_INVOICE_STATUS,
        description="Report invoice balances for a patient or invoice number.",
        params_model=GetInvoiceStatusParams,
        required_capabilities=frozenset({Capability.BILLING_READ}),
        handler=handlers.get_invoice_status,
    ),
    ToolDefinition(
        name=ToolName.CREATE_FOLLOWUP_TASK,
        description="Create a follow-up task for a staff member.",
        params_model=CreateFollowupTaskParams,
        required_capabilities=frozenset({Capability.TASK_CREATE}),
        handler=handlers.create_followup_task,
    ),
)

TOOL_REGISTRY: MappingProxyType[str, ToolDefinition] = MappingProxyType(
    {definition.name.value: definition for definition in _DEFINITIONS}
)


def lookup(name: str) -> ToolDefinition:
    """Return the definition registered under *name*.

    Raises:
        UnknownToolError: if no tool has that name.
    """
    try:
        return TOOL_REGISTRY[name]
    except KeyError:
        raise UnknownToolError(name) from None
