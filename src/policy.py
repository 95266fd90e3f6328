"""Orchestrator policy: thresholds, booking defaults and the handoff rules.

Handoff ownership only moves forward::

    none ──cause──▶ requested ──repeat cause──▶ active

Each turn contributes at most one cause, picked by priority:

    1. a tool signaled ``requiresHumanHandoff``
    2. a permission denial (staff copilot only)
    3. a policy trigger (explicit human request, medical question,
       strongly negative complaint)
    4. classifier confidence below the threshold

Every cause increments the conversation's ``handoffCount``; once it
reaches ``handoff_escalation_count`` the state becomes ``active`` and the
orchestrator stops invoking tools for that conversation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from src import config
from src.models import CustomerIntent, HandoffState

# ── Policy knobs ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class AgentPolicy:
    low_confidence_threshold: float = config.LOW_CONFIDENCE_THRESHOLD
    history_window_turns: int = config.HISTORY_WINDOW_TURNS
    handoff_escalation_count: int = config.HANDOFF_ESCALATION_COUNT
    booking_branch_id: str | None = config.BOOKING_BRANCH_ID
    booking_doctor_id: str | None = config.BOOKING_DOCTOR_ID
    booking_service_id: str | None = config.BOOKING_SERVICE_ID
    intake_assignee_id: str | None = config.INTAKE_ASSIGNEE_ID

    @property
    def booking_enabled(self) -> bool:
        return bool(self.booking_branch_id and self.booking_doctor_id and self.booking_service_id)

    def is_low_confidence(self, confidence: float) -> bool:
        return confidence < self.low_confidence_threshold


# ── Policy triggers ──────────────────────────────────────────────────

HANDOFF_TRIGGERS = (
    "speak to a human", "talk to someone", "real person", "emergency", "urgent",
    "lawyer", "sue", "legal", "manager", "supervisor",
)
STRONG_NEGATIVE_WORDS = (
    "terrible", "awful", "worst", "hate", "furious", "disgusting", "outrageous",
)

_TRIGGER_RE = re.compile(r"\b(?:" + "|".join(map(re.escape, HANDOFF_TRIGGERS)) + r")\b", re.IGNORECASE)
_NEGATIVE_RE = re.compile(r"\b(?:" + "|".join(map(re.escape, STRONG_NEGATIVE_WORDS)) + r")\b", re.IGNORECASE)

HUMAN_REQUESTED = "Customer requested human assistance"
MEDICAL_REVIEW = "Medical questions require review by our medical team"
PERSONAL_ATTENTION = "Customer concern requires personal attention"


def requests_human(message: str) -> bool:
    return bool(_TRIGGER_RE.search(message))


def strongly_negative(message: str) -> bool:
    return bool(_NEGATIVE_RE.search(message))


def customer_policy_reason(intent: CustomerIntent, message: str) -> str | None:
    """Return the policy handoff reason for a customer message, if any."""
    if requests_human(message):
        return HUMAN_REQUESTED
    if intent == CustomerIntent.MEDICAL_QUESTION:
        return MEDICAL_REVIEW
    if intent == CustomerIntent.COMPLAINT and strongly_negative(message):
        return PERSONAL_ATTENTION
    return None


# ── Causes and transitions ───────────────────────────────────────────


class CauseKind(StrEnum):
    TOOL = "tool"
    PERMISSION = "permission"
    POLICY = "policy"
    LOW_CONFIDENCE = "low_confidence"


@dataclass(frozen=True)
class HandoffCause:
    kind: CauseKind
    reason: str


def first_cause(
    *,
    tool_reason: str | None = None,
    permission_reason: str | None = None,
    policy_reason: str | None = None,
    confidence: float | None = None,
    policy: AgentPolicy,
) -> HandoffCause | None:
    """Pick the highest-priority cause present this turn."""
    if tool_reason:
        return HandoffCause(CauseKind.TOOL, tool_reason)
    if permission_reason:
        return HandoffCause(CauseKind.PERMISSION, permission_reason)
    if policy_reason:
        return HandoffCause(CauseKind.POLICY, policy_reason)
    if confidence is not None and policy.is_low_confidence(confidence):
        return HandoffCause(
            CauseKind.LOW_CONFIDENCE,
            f"Low confidence in understanding the request ({confidence:.2f})",
        )
    return None


@dataclass(frozen=True)
class HandoffOutcome:
    state: HandoffState
    reason: str | None
    count: int
    # Whether this turn's response carries requiresHumanHandoff
    flagged: bool


def advance(
    state: HandoffState,
    reason: str | None,
    count: int,
    cause: HandoffCause | None,
    policy: AgentPolicy,
) -> HandoffOutcome:
    """Apply this turn's cause (if any) to the stored handoff state."""
    if cause is None:
        # requested persists quietly; active always flags
        return HandoffOutcome(state, reason, count, flagged=state == HandoffState.ACTIVE)

    count += 1
    target = (
        HandoffState.ACTIVE if count >= policy.handoff_escalation_count else HandoffState.REQUESTED
    )
    if target.rank < state.rank:
        target = state
    return HandoffOutcome(target, cause.reason, count, flagged=True)
