"""Natural-language composition for both assistants.

Composition is pure: it reads the turn's classified intent, the outcome
of every planned call and the handoff decision, and returns text plus the
suggested actions / follow-ups.  It never calls tools or the backend.
"""

from __future__ import annotations

from typing import Any

from src.models import (
    Caller,
    Capability,
    CustomerIntent,
    StaffIntent,
    SuggestedAction,
    ToolName,
)
from src.planning import CallOutcome
from src.services.clinic_backend import Record, parse_iso

HANDOFF_MESSAGE = (
    "Thank you for your message. I am connecting you with one of our team members "
    "who can better assist you. They will respond shortly."
)
HANDOFF_ACTIVE_MESSAGE = (
    "A member of our team is looking after your conversation and will reply to you shortly."
)
FALLBACK_MESSAGE = (
    "I'm sorry, I wasn't able to complete that just now. Please try again in a moment, "
    "or ask to speak with a member of our team."
)
GREETING = (
    "Thank you for contacting {clinic}! How can I help you today? I can assist you with:\n\n"
    "• Booking appointments\n"
    "• Information about our services\n"
    "• Pricing inquiries\n"
    "• General questions\n\n"
    "What would you like to know?"
)
MAX_SLOTS_SHOWN = 3

# Booking rejections worth explaining to the customer, keyed by handler error
_UNAVAILABLE_TIME = {
    "Requested time is in the past": "that time has already passed",
    "Requested time is outside clinic hours": "it is outside our opening hours",
    "The doctor is not available at the requested time": "the doctor is already booked then",
}


def _clock(value: str) -> str:
    return parse_iso(value).strftime("%I:%M %p").lstrip("0")


def _day(value: str) -> str:
    return parse_iso(value).strftime("%A %d %B")


def _money(amount: float) -> str:
    return f"{amount:,.0f} IQD"


def _outcome(outcomes: list[CallOutcome], tool: ToolName) -> CallOutcome | None:
    for outcome in outcomes:
        if outcome.call.tool == tool:
            return outcome
    return None


# ── Customer agent ───────────────────────────────────────────────────


def _slots_sentence(outcome: CallOutcome, *, rescheduling: bool, patient_known: bool) -> str:
    if not outcome.succeeded:
        return "I'm having trouble checking our availability right now."
    data = outcome.result.data
    day = _day(data["date"])
    if data["totalAvailable"] == 0:
        return (
            f"I'm sorry, we do not have any free slots on {day}. "
            "Would you like me to check another day?"
        )
    times = ", ".join(_clock(slot["start"]) for slot in data["availableSlots"][:MAX_SLOTS_SHOWN])
    if rescheduling:
        return f"I can help you move your appointment. We have availability on {day} at {times}. Which time suits you better?"
    sentence = f"We have availability on {day} at {times}. Which time would you prefer?"
    if not patient_known:
        sentence += " I will also need your name and phone number to complete the booking."
    return sentence


def _booking_sentence(outcome: CallOutcome) -> str:
    if outcome.skipped:
        return "I still need to confirm your patient record before I can book that time."
    if not outcome.succeeded:
        unavailable = _UNAVAILABLE_TIME.get(outcome.result.error if outcome.result else None)
        if unavailable:
            return f"I couldn't book that time because {unavailable}."
        return "I wasn't able to book that time automatically."
    appt = outcome.result.data["appointment"]
    return (
        f"Your {appt['service']['name']} appointment with {appt['doctor']['name']} is booked "
        f"for {_day(appt['scheduledAt'])} at {_clock(appt['scheduledAt'])}."
    )


def _catalog_sentence(intent: CustomerIntent, services: list[Record]) -> str:
    if not services:
        return "For detailed information about our services and prices, please contact our team directly."
    if intent == CustomerIntent.PRICING_INQUIRY:
        lines = "\n".join(f"• {s['name']}: {_money(float(s.get('price') or 0))}" for s in services)
        return (
            f"Here are our main services and prices:\n\n{lines}\n\n"
            "Would you like to book an appointment for any of these services?"
        )
    lines = "\n".join(f"• {s['name']}" for s in services)
    return (
        f"We offer a wide range of services:\n\n{lines}\n\n"
        "Would you like more details about any specific service, or would you like to book an appointment?"
    )


def compose_customer_response(
    intent: CustomerIntent,
    outcomes: list[CallOutcome],
    *,
    flagged: bool,
    handoff_active: bool,
    new_cause: bool,
    patient_known: bool,
    services: list[Record],
    clinic_name: str = "our clinic",
) -> str:
    """Build the reply text.  Never returns an empty string."""
    parts: list[str] = []

    booking = _outcome(outcomes, ToolName.CREATE_OR_UPDATE_APPOINTMENT)
    slots = _outcome(outcomes, ToolName.GET_NEXT_AVAILABLE_SLOTS)
    task = _outcome(outcomes, ToolName.CREATE_FOLLOWUP_TASK)

    if booking is not None:
        parts.append(_booking_sentence(booking))
    if slots is not None and not (booking is not None and booking.succeeded):
        parts.append(_slots_sentence(
            slots,
            rescheduling=intent == CustomerIntent.APPOINTMENT_RESCHEDULE,
            patient_known=patient_known,
        ))

    if intent == CustomerIntent.APPOINTMENT_CANCEL:
        if task is not None and task.succeeded:
            parts.append("I've passed your cancellation request to our team, and they will confirm it with you shortly.")
        elif not flagged:
            parts.append("Our team will confirm your cancellation with you shortly.")
    elif intent == CustomerIntent.COMPLAINT:
        parts.append("I'm sorry to hear about your experience.")
        if task is not None and task.succeeded:
            parts.append("I've shared your concern with our team so they can follow up with you personally.")
    elif intent in (CustomerIntent.PRICING_INQUIRY, CustomerIntent.SERVICE_INQUIRY) and not flagged:
        parts.append(_catalog_sentence(intent, services))
    elif not outcomes and not flagged and intent != CustomerIntent.MEDICAL_QUESTION:
        parts.append(GREETING.format(clinic=clinic_name))

    if outcomes and not any(o.succeeded for o in outcomes) and not flagged:
        parts.append(FALLBACK_MESSAGE)

    if flagged:
        parts.append(HANDOFF_ACTIVE_MESSAGE if handoff_active and not new_cause else HANDOFF_MESSAGE)

    return " ".join(p for p in parts if p) or FALLBACK_MESSAGE


def customer_suggested_actions(
    outcomes: list[CallOutcome],
    *,
    flagged: bool,
    handoff_reason: str | None,
    intent: CustomerIntent,
    patient_id: str | None,
    lead_id: str | None,
    task_assignable: bool,
) -> list[SuggestedAction]:
    actions: list[SuggestedAction] = []
    booked = any(
        o.succeeded and o.call.tool == ToolName.CREATE_OR_UPDATE_APPOINTMENT for o in outcomes
    )

    for outcome in outcomes:
        tool = outcome.call.tool
        if outcome.skipped:
            actions.append(SuggestedAction(
                type="follow_up",
                description=f"{outcome.call.label} (skipped: an earlier step did not complete)",
                params={"tool": tool.value},
            ))
        elif not outcome.succeeded:
            actions.append(SuggestedAction(
                type="follow_up",
                description=f"{outcome.call.label} (failed)",
                params={"tool": tool.value},
            ))
        elif tool == ToolName.GET_NEXT_AVAILABLE_SLOTS and not booked:
            data = outcome.result.data
            if data["totalAvailable"] == 0:
                actions.append(SuggestedAction(
                    type="follow_up",
                    description="Check alternative dates",
                    params={"action": "check_more_dates"},
                ))
            else:
                actions.append(SuggestedAction(
                    type="create_appointment",
                    description="Create appointment once the customer confirms a time",
                    params={
                        "availableSlots": data["availableSlots"][:MAX_SLOTS_SHOWN],
                        "patientId": patient_id,
                        "leadId": lead_id,
                    },
                ))
        elif tool == ToolName.CREATE_FOLLOWUP_TASK:
            actions.append(SuggestedAction(
                type="create_task",
                description="Team follow-up task created",
                params={"taskId": outcome.result.data["task"]["id"]},
            ))

    if intent in (CustomerIntent.PRICING_INQUIRY, CustomerIntent.SERVICE_INQUIRY) and not flagged:
        actions.append(SuggestedAction(type="send_info", description="Send the service and price list"))

    needs_escalation = flagged or (
        intent in (CustomerIntent.APPOINTMENT_CANCEL, CustomerIntent.COMPLAINT) and not task_assignable
    )
    if needs_escalation:
        actions.append(SuggestedAction(
            type="escalate",
            description=handoff_reason or "Needs attention from the clinic team",
        ))
    return actions


# ── Staff copilot ────────────────────────────────────────────────────

_TOOL_DESCRIPTIONS = {
    ToolName.FIND_PATIENT_BY_PHONE: "find a patient by phone number",
    ToolName.GET_NEXT_AVAILABLE_SLOTS: "check available appointment slots",
    ToolName.CREATE_OR_UPDATE_APPOINTMENT: "create or update an appointment",
    ToolName.SUMMARIZE_LAST_VISIT: "summarize the last visit",
    ToolName.GET_INVOICE_STATUS: "check invoice status",
    ToolName.CREATE_FOLLOWUP_TASK: "create a follow-up task",
}


def _format_patient(data: dict[str, Any] | None) -> str:
    if not data:
        return "No patient found with that phone number."
    if "matchCount" in data:
        names = ", ".join(c["name"] for c in data["candidates"])
        return f"{data['matchCount']} patients share that phone number: {names}."
    branch = (data.get("branch") or {}).get("name") or "N/A"
    text = (
        f"Found patient: **{data['name']}**\n- File Number: {data['fileNumber']}\n"
        f"- Phone: {data['phone']}\n- Branch: {branch}"
    )
    if data.get("email"):
        text += f"\n- Email: {data['email']}"
    return text


def _format_slots(data: dict[str, Any]) -> str:
    if data["totalAvailable"] == 0:
        return f"No available slots on {data['date']}. Would you like me to check another day?"
    lines = "\n".join(f"• {_clock(s['start'])}" for s in data["availableSlots"])
    return f"Available slots on {data['date']}:\n{lines}\n\nTotal available: {data['totalAvailable']} slots"


def _format_appointment(data: dict[str, Any]) -> str:
    appt = data["appointment"]
    return (
        f"Appointment {data['action']}: {appt['patient']['name']} with {appt['doctor']['name']} "
        f"on {_day(appt['scheduledAt'])} at {_clock(appt['scheduledAt'])} ({appt['service']['name']})"
    )


def _format_visit(data: dict[str, Any]) -> str:
    if not data["hasVisitHistory"]:
        return "No visit history found for this patient."
    visit = data["lastVisit"]
    when = parse_iso(visit["date"]).strftime("%d %B %Y") if visit.get("date") else "Unknown date"
    return (
        f"**Last Visit Summary**\n- Date: {when}\n- Doctor: {visit.get('doctor') or 'N/A'}\n"
        f"- Chief Complaint: {visit.get('chiefComplaint') or 'Not recorded'}\n"
        f"- Diagnosis: {visit.get('diagnosis') or 'Not recorded'}\n"
        f"- Treatment: {visit.get('treatmentNotes') or 'Not recorded'}"
    )


def _format_invoice(data: dict[str, Any]) -> str:
    if not data.get("found"):
        return "No invoices found matching your query."
    if "invoice" in data:
        inv = data["invoice"]
        return (
            f"**Invoice {inv['invoiceNumber']}**\n- Patient: {inv.get('patientName') or 'N/A'}\n"
            f"- Total: {_money(inv['total'])}\n- Paid: {_money(inv['paidAmount'])}\n"
            f"- Remaining: {_money(inv['remainingBalance'])}\n- Status: {inv['status']}"
        )
    summary = data["summary"]
    return (
        f"**Invoice Status for {data['patientName']}**\n"
        f"- Outstanding Balance: {_money(summary['totalOutstanding'])}\n"
        f"- Unpaid Invoices: {summary['unpaidInvoiceCount']}"
    )


def _format_task(data: dict[str, Any]) -> str:
    task = data["task"]
    return (
        f"✓ Task created: \"{task['title']}\"\n- Due: {task['dueDate']}\n"
        f"- Assigned to: {task['assignedTo']}\n- Priority: {task['priority']}"
    )


_FORMATTERS = {
    ToolName.FIND_PATIENT_BY_PHONE: _format_patient,
    ToolName.GET_NEXT_AVAILABLE_SLOTS: _format_slots,
    ToolName.CREATE_OR_UPDATE_APPOINTMENT: _format_appointment,
    ToolName.SUMMARIZE_LAST_VISIT: _format_visit,
    ToolName.GET_INVOICE_STATUS: _format_invoice,
    ToolName.CREATE_FOLLOWUP_TASK: _format_task,
}


def _describe_outcome(outcome: CallOutcome, outcomes: list[CallOutcome]) -> str:
    tool = outcome.call.tool
    if outcome.skipped:
        upstream = outcomes[outcome.call.depends_on].call.tool
        return f"Skipped: could not {_TOOL_DESCRIPTIONS[tool]} because {upstream.value} did not return a usable result."
    result = outcome.result
    if not result.success:
        if result.error_kind == "permission":
            return f"I cannot complete this request: {result.error}."
        if result.error_kind == "validation":
            return f"To {_TOOL_DESCRIPTIONS[tool]}, I need more information. {result.error}."
        return f"I encountered an error: {result.error}. Please try again or contact support if the issue persists."
    text = _FORMATTERS[tool](result.data)
    if result.requires_human_handoff and result.handoff_reason:
        text += f"\n\n{result.handoff_reason}."
    return text


def _is_medical(caller: Caller) -> bool:
    return caller.has(Capability.VISIT_READ)


def suggested_queries(caller: Caller) -> list[str]:
    common = [
        "Find patient with phone ...",
        "Available slots for tomorrow",
        "Check invoice status for ...",
    ]
    if _is_medical(caller):
        return common + ["Summarize last visit for ..."]
    return common


def _helpful_response(caller: Caller) -> str:
    return (
        "I am not sure how to help with that. Here's what I can do:\n\n"
        "• Find patients by phone number\n"
        "• Check available appointment slots\n"
        + ("• Summarize recent visits\n" if _is_medical(caller) else "")
        + "• Check invoice status\n"
        "• Create follow-up tasks\n\n"
        'Try asking something like "Find patient with phone 0770123456" or '
        '"What slots are available tomorrow?"'
    )


def _general_knowledge(query: str, caller: Caller) -> tuple[str, list[str]]:
    lowered = query.lower()
    if "book" in lowered or "appointment" in lowered:
        return (
            "To book an appointment:\n1. Find the patient (or create a new one)\n"
            "2. Go to the Appointments section\n3. Select a doctor and service\n"
            "4. Choose an available time slot\n5. Confirm the booking\n\n"
            "I can also help you find available slots if you tell me the date!",
            ["Check available slots for tomorrow", "Find patient by phone"],
        )
    if "invoice" in lowered or "payment" in lowered:
        return (
            "To create an invoice:\n1. Go to the patient record\n2. Click \"Create Invoice\"\n"
            "3. Add services and any discounts\n4. Save the invoice\n5. Record payments as received\n\n"
            "I can check invoice status for any patient if you give me their phone number!",
            ["Check invoice status for patient"],
        )
    return (
        "I'm here to help! As your clinic assistant, I can:\n\n"
        "• Find patients by phone number\n• Check available appointment slots\n"
        "• Summarize recent visits (medical staff only)\n• Check invoice status\n"
        "• Create follow-up tasks\n\nJust ask me in plain language what you need!",
        suggested_queries(caller),
    )


def _follow_ups_for(outcome: CallOutcome) -> list[str]:
    if not outcome.succeeded:
        return []
    tool = outcome.call.tool
    if tool == ToolName.FIND_PATIENT_BY_PHONE and outcome.result.data and "id" in outcome.result.data:
        return ["Check invoice status", "Check last visit", "Available slots for tomorrow"]
    if tool == ToolName.GET_NEXT_AVAILABLE_SLOTS:
        return ["Book an appointment", "Check slots for another day"]
    if tool == ToolName.SUMMARIZE_LAST_VISIT:
        return ["Check invoice status", "Create follow-up task"]
    return []


def compose_staff_response(
    intent: StaffIntent,
    query: str,
    outcomes: list[CallOutcome],
    caller: Caller,
    *,
    handoff_note: str | None = None,
) -> tuple[str, list[str]]:
    """Return ``(response, suggestedFollowUps)`` for a copilot turn."""
    if not outcomes:
        if intent == StaffIntent.GENERAL_KNOWLEDGE:
            text, follow_ups = _general_knowledge(query, caller)
        else:
            text, follow_ups = _helpful_response(caller), suggested_queries(caller)
    else:
        text = "\n\n".join(_describe_outcome(o, outcomes) for o in outcomes)
        follow_ups = []
        for outcome in outcomes:
            for item in _follow_ups_for(outcome):
                if item not in follow_ups:
                    follow_ups.append(item)

    if handoff_note:
        text += f"\n\n{handoff_note}"
    return text, follow_ups
