"""Deterministic tool selection.

Given a classified intent and what the conversation already knows, these
rule tables produce an ordered list of :class:`PlannedCall`.  A call may
depend on an earlier call in the same list; its ``bind`` mapping names
which fields of the upstream result fill which of its parameters.  The
orchestrator executes the list in order and skips a dependent call when
its dependency failed or did not produce the bound field.

Tool selection is never model-driven: the same intent and context always
yield the same plan.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from src.extraction import PHONE_RE, extract_date
from src.models import (
    Caller,
    ConversationContext,
    CustomerIntent,
    StaffCopilotRequest,
    StaffIntent,
    ToolCallResult,
    ToolName,
)
from src.policy import AgentPolicy

ENTITY_TYPES = ("Patient", "Lead", "Appointment", "Conversation")
MAX_TASK_TITLE = 200

_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE)
_PATIENT_REF_RE = re.compile(r"\bpatient(?:\s+id)?[:\s]+([\w-]*\d[\w-]*)", re.IGNORECASE)
_INVOICE_RE = re.compile(r"\bINV-\d{6}-\d{5}\b", re.IGNORECASE)
_LONG_NUMBER_RE = re.compile(r"\d{10,}")
_TASK_TITLE_RES = (
    re.compile(r"create (?:a )?(?:follow[- ]?up )?task (?:to )?(.+)", re.IGNORECASE),
    re.compile(r"remind (?:me|us|them) to (.+)", re.IGNORECASE),
    re.compile(r"add (?:a )?task (?:for )?(.+)", re.IGNORECASE),
    re.compile(r"schedule (?:a )?follow[- ]?up (.+)", re.IGNORECASE),
)


@dataclass(frozen=True)
class PlannedCall:
    tool: ToolName
    params: dict[str, Any]
    label: str
    depends_on: int | None = None
    bind: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CallOutcome:
    """What happened to one planned call.  ``result`` is ``None`` when skipped."""

    call: PlannedCall
    params: dict[str, Any]
    result: ToolCallResult | None

    @property
    def skipped(self) -> bool:
        return self.result is None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.success


def resolve_params(
    call: PlannedCall, results: list[ToolCallResult | None],
) -> dict[str, Any] | None:
    """Fill bound params from the upstream result.

    Returns ``None`` when the dependency failed, was itself skipped, or did
    not produce a value for every bound field.
    """
    if call.depends_on is None:
        return dict(call.params)
    upstream = results[call.depends_on]
    if upstream is None or not upstream.success or not isinstance(upstream.data, dict):
        return None
    params = dict(call.params)
    for param, source in call.bind.items():
        value = upstream.data.get(source)
        if not value:
            return None
        params[param] = value
    return params


def _tomorrow(today: date) -> str:
    return (today + timedelta(days=1)).isoformat()


def _iso_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _scheduled_at(preferred_date: str | None, preferred_time: str | None) -> str | None:
    day = _iso_date(preferred_date)
    if day is None or not preferred_time:
        return None
    try:
        at = time.fromisoformat(preferred_time)
    except ValueError:
        return None
    return datetime.combine(day, at).isoformat()


# ── Customer agent rules ─────────────────────────────────────────────


def _patient_lookup(context: ConversationContext) -> PlannedCall | None:
    if context.linked_entities.patient_id or not context.extracted_data.phone:
        return None
    return PlannedCall(
        ToolName.FIND_PATIENT_BY_PHONE,
        {"phone": context.extracted_data.phone},
        label="Identify the customer from their phone number",
    )


def _slots_call(context: ConversationContext, policy: AgentPolicy, today: date) -> PlannedCall:
    preferred = _iso_date(context.extracted_data.preferred_date)
    params: dict[str, Any] = {"date": preferred.isoformat() if preferred else _tomorrow(today)}
    if policy.booking_branch_id:
        params["branchId"] = policy.booking_branch_id
    if policy.booking_doctor_id:
        params["doctorId"] = policy.booking_doctor_id
    if policy.booking_service_id:
        params["serviceId"] = policy.booking_service_id
    return PlannedCall(
        ToolName.GET_NEXT_AVAILABLE_SLOTS, params, label="Check available appointment slots",
    )


def _intake_task(
    context: ConversationContext,
    policy: AgentPolicy,
    today: date,
    *,
    title: str,
    description: str,
    priority: str,
) -> PlannedCall | None:
    if not policy.intake_assignee_id:
        return None
    patient_id = context.linked_entities.patient_id
    return PlannedCall(
        ToolName.CREATE_FOLLOWUP_TASK,
        {
            "entityType": "Patient" if patient_id else "Conversation",
            "entityId": patient_id or context.conversation_id,
            "title": title,
            "description": description[:2000],
            "assignedTo": policy.intake_assignee_id,
            "dueDate": today.isoformat(),
            "priority": priority,
        },
        label=title,
    )


def plan_customer_turn(
    intent: CustomerIntent,
    context: ConversationContext,
    message: str,
    *,
    policy: AgentPolicy,
    today: date,
    strongly_negative: bool = False,
    policy_handoff: bool = False,
) -> list[PlannedCall]:
    """Rule table for the customer agent.

    ``policy_handoff`` means the message already needs a human; lookups and
    intake tasks still run for the team's benefit, but nothing is booked.
    """
    calls: list[PlannedCall] = []

    if intent == CustomerIntent.APPOINTMENT_REQUEST:
        lookup = _patient_lookup(context)
        if lookup:
            calls.append(lookup)
        calls.append(_slots_call(context, policy, today))

        data = context.extracted_data
        scheduled_at = _scheduled_at(data.preferred_date, data.preferred_time)
        patient_id = context.linked_entities.patient_id
        already_booked = context.linked_entities.appointment_id is not None
        can_book = policy.booking_enabled and not already_booked and not policy_handoff
        if scheduled_at and can_book and (patient_id or lookup):
            params = {
                "doctorId": policy.booking_doctor_id,
                "serviceId": policy.booking_service_id,
                "branchId": policy.booking_branch_id,
                "scheduledAt": scheduled_at,
                "notes": f"Booked by the customer agent ({context.channel.value})",
            }
            if patient_id:
                calls.append(PlannedCall(
                    ToolName.CREATE_OR_UPDATE_APPOINTMENT,
                    {**params, "patientId": patient_id},
                    label="Book the requested time",
                ))
            else:
                calls.append(PlannedCall(
                    ToolName.CREATE_OR_UPDATE_APPOINTMENT,
                    params,
                    label="Book the requested time once the patient is identified",
                    depends_on=0,
                    bind={"patientId": "id"},
                ))

    elif intent == CustomerIntent.APPOINTMENT_RESCHEDULE:
        lookup = _patient_lookup(context)
        if lookup:
            calls.append(lookup)
        calls.append(_slots_call(context, policy, today))

    elif intent == CustomerIntent.APPOINTMENT_CANCEL:
        task = _intake_task(
            context, policy, today,
            title="Customer asked to cancel an appointment",
            description=message, priority="HIGH",
        )
        if task:
            calls.append(task)

    elif intent == CustomerIntent.COMPLAINT:
        task = _intake_task(
            context, policy, today,
            title="Follow up on customer complaint",
            description=message, priority="URGENT" if strongly_negative else "HIGH",
        )
        if task:
            calls.append(task)

    return calls


# ── Staff copilot rules ──────────────────────────────────────────────


def _phone_in(query: str) -> str | None:
    match = PHONE_RE.search(query) or _LONG_NUMBER_RE.search(query)
    return match[0] if match else None


def _patient_ref(query: str, request: StaffCopilotRequest) -> str | None:
    if request.current_entity_type == "Patient" and request.current_entity_id:
        return request.current_entity_id
    match = _UUID_RE.search(query) or _PATIENT_REF_RE.search(query)
    if not match:
        return None
    return match[1] if match.re is _PATIENT_REF_RE else match[0]


def _by_patient(
    tool: ToolName, label: str, query: str, request: StaffCopilotRequest,
) -> list[PlannedCall]:
    """Plan *tool* for a patient given by id, or by phone via a lookup first."""
    patient_id = _patient_ref(query, request)
    if patient_id:
        return [PlannedCall(tool, {"patientId": patient_id}, label=label)]
    phone = _phone_in(query)
    if phone:
        return [
            PlannedCall(ToolName.FIND_PATIENT_BY_PHONE, {"phone": phone}, label="Find the patient"),
            PlannedCall(tool, {}, label=label, depends_on=0, bind={"patientId": "id"}),
        ]
    # Dispatched without a patient so validation names the missing field
    return [PlannedCall(tool, {}, label=label)]


def _task_title(query: str) -> str:
    for pattern in _TASK_TITLE_RES:
        match = pattern.search(query)
        if match:
            return match[1].strip()[:MAX_TASK_TITLE]
    return query.strip()[:MAX_TASK_TITLE]


def plan_staff_turn(
    intent: StaffIntent,
    request: StaffCopilotRequest,
    caller: Caller,
    *,
    today: date,
    conversation_id: str | None = None,
) -> list[PlannedCall]:
    """Rule table for the staff copilot.

    A task raised without an entity on screen is attached to the
    conversation itself when *conversation_id* is known.
    """
    query = request.query

    if intent == StaffIntent.FIND_PATIENT:
        tokens = query.split()
        phone = _phone_in(query) or (tokens[-1] if tokens else None)
        params = {"phone": phone} if phone else {}
        return [PlannedCall(ToolName.FIND_PATIENT_BY_PHONE, params, label="Find the patient")]

    if intent == StaffIntent.CHECK_AVAILABILITY:
        return [PlannedCall(
            ToolName.GET_NEXT_AVAILABLE_SLOTS,
            {"date": extract_date(query, today) or _tomorrow(today)},
            label="Check available appointment slots",
        )]

    if intent == StaffIntent.VISIT_SUMMARY:
        return _by_patient(ToolName.SUMMARIZE_LAST_VISIT, "Summarize the last visit", query, request)

    if intent == StaffIntent.INVOICE_STATUS:
        invoice = _INVOICE_RE.search(query)
        if invoice:
            return [PlannedCall(
                ToolName.GET_INVOICE_STATUS,
                {"invoiceNumber": invoice[0].upper()},
                label="Check invoice status",
            )]
        patient_id = _patient_ref(query, request)
        phone = _phone_in(query)
        params = {"patientId": patient_id} if patient_id else ({"phone": phone} if phone else {})
        return [PlannedCall(ToolName.GET_INVOICE_STATUS, params, label="Check invoice status")]

    if intent == StaffIntent.CREATE_TASK:
        params: dict[str, Any] = {
            "title": _task_title(query),
            "assignedTo": caller.user_id,
            "dueDate": _tomorrow(today),
        }
        if request.current_entity_type and request.current_entity_id:
            entity_type = request.current_entity_type.capitalize()
            params["entityType"] = entity_type if entity_type in ENTITY_TYPES else request.current_entity_type
            params["entityId"] = request.current_entity_id
        elif conversation_id:
            params["entityType"] = "Conversation"
            params["entityId"] = conversation_id
        return [PlannedCall(ToolName.CREATE_FOLLOWUP_TASK, params, label="Create a follow-up task")]

    return []
