"""Prompts for the LLM intent classifier."""

from src.models import AgentKind, ConversationMessage, CustomerIntent, MessageRole, StaffIntent

CLASSIFIER_PROMPT_TEMPLATE = """You classify messages sent to the assistant of a multi-branch dental and medical clinic.

## Audience
{audience}

## Intents
Choose exactly one of:
{intents}

## Rules
- Judge the **latest message**; use the recent conversation only to resolve
  short replies (e.g. "tomorrow at 10" after the assistant offered slots is
  still part of the booking flow).
- Anything describing symptoms, pain, medication or diagnosis is
  `medical_question` when the audience is a customer.
- If nothing fits, answer `other` with a low confidence.
- Confidence is your probability (0 to 1) that the intent is correct.

{context}Latest message: {message}

Reply with a single JSON object and nothing else, for example:
{{"intent": "{example}", "confidence": 0.82}}
"""

_AUDIENCES = {
    AgentKind.CUSTOMER: (
        "A patient or prospective patient writing over WhatsApp, SMS or web chat."
    ),
    AgentKind.STAFF: (
        "A clinic staff member (reception, doctor, nurse, accountant ...) asking "
        "the internal copilot to look something up or take an action."
    ),
}


def _render_context(history: list[ConversationMessage]) -> str:
    if not history:
        return ""
    lines = ["Recent conversation:\n"]
    for msg in history:
        speaker = "User" if msg.role == MessageRole.USER else "Assistant"
        lines.append(f"  {speaker}: {msg.content[:200]}")
    lines.append("")
    return "\n".join(lines) + "\n"


def get_classifier_prompt(
    agent: AgentKind, message: str, history: list[ConversationMessage],
) -> str:
    """Build the classification prompt for *agent* with the trailing history."""
    intents = list(CustomerIntent) if agent == AgentKind.CUSTOMER else list(StaffIntent)
    return CLASSIFIER_PROMPT_TEMPLATE.format(
        audience=_AUDIENCES[agent],
        intents="\n".join(f"- `{intent.value}`" for intent in intents),
        context=_render_context(history),
        message=message,
        example=intents[0].value,
    )
