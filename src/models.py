"""Domain types shared by the orchestrator, the tools and the HTTP layer.

All wire-facing models serialise to camelCase (``conversationId``,
``requiresHumanHandoff`` ...) and accept either camelCase or snake_case
on input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Enumerations ─────────────────────────────────────────────────────


class Channel(StrEnum):
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    EMAIL = "EMAIL"
    WEB_CHAT = "WEB_CHAT"
    PHONE = "PHONE"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class AgentKind(StrEnum):
    CUSTOMER = "customer"
    STAFF = "staff"


class HandoffState(StrEnum):
    """Ownership of a conversation.  Only ever moves forward."""

    NONE = "none"
    REQUESTED = "requested"
    ACTIVE = "active"

    @property
    def rank(self) -> int:
        return _HANDOFF_ORDER.index(self)


_HANDOFF_ORDER = (HandoffState.NONE, HandoffState.REQUESTED, HandoffState.ACTIVE)


class CustomerIntent(StrEnum):
    GENERAL_INQUIRY = "general_inquiry"
    SERVICE_INQUIRY = "service_inquiry"
    PRICING_INQUIRY = "pricing_inquiry"
    APPOINTMENT_REQUEST = "appointment_request"
    APPOINTMENT_RESCHEDULE = "appointment_reschedule"
    APPOINTMENT_CANCEL = "appointment_cancel"
    COMPLAINT = "complaint"
    MEDICAL_QUESTION = "medical_question"
    OTHER = "other"


class StaffIntent(StrEnum):
    FIND_PATIENT = "find_patient"
    CHECK_AVAILABILITY = "check_availability"
    VISIT_SUMMARY = "visit_summary"
    INVOICE_STATUS = "invoice_status"
    CREATE_TASK = "create_task"
    GENERAL_KNOWLEDGE = "general_knowledge"
    OTHER = "other"


class ToolName(StrEnum):
    FIND_PATIENT_BY_PHONE = "find_patient_by_phone"
    GET_NEXT_AVAILABLE_SLOTS = "get_next_available_slots"
    CREATE_OR_UPDATE_APPOINTMENT = "create_or_update_appointment"
    SUMMARIZE_LAST_VISIT = "summarize_last_visit"
    GET_INVOICE_STATUS = "get_invoice_status"
    CREATE_FOLLOWUP_TASK = "create_followup_task"


class Role(StrEnum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    RECEPTION = "RECEPTION"
    DOCTOR = "DOCTOR"
    NURSE = "NURSE"
    SUPPORT = "SUPPORT"
    ACCOUNTANT = "ACCOUNTANT"


class Capability(StrEnum):
    PATIENT_LOOKUP = "patients:lookup"
    PATIENT_CONTACT = "patients:contact"
    SCHEDULE_READ = "schedule:read"
    APPOINTMENT_WRITE = "appointments:write"
    VISIT_READ = "visits:read"
    BILLING_READ = "billing:read"
    TASK_CREATE = "tasks:create"
    ALL_BRANCHES = "branches:all"


# ── Callers ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Caller:
    """Identity on whose behalf tools run (a staff user or the customer agent)."""

    user_id: str
    tenant_id: str
    capabilities: frozenset[Capability]
    role: Role | None = None
    branch_ids: frozenset[str] = field(default_factory=frozenset)

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def can_access_branch(self, branch_id: str | None) -> bool:
        if self.has(Capability.ALL_BRANCHES):
            return True
        return branch_id is not None and branch_id in self.branch_ids


# ── Conversation context ─────────────────────────────────────────────


class ConversationMessage(_CamelModel):
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class ExtractedData(_CamelModel):
    """Structured fields accumulated from free text across a conversation."""

    name: str | None = None
    phone: str | None = None
    email: str | None = None
    preferred_service: str | None = None
    preferred_date: str | None = None
    preferred_time: str | None = None
    preferred_doctor: str | None = None
    notes: str | None = None

    def merged(self, update: ExtractedData) -> ExtractedData:
        """Return a copy where every field set in *update* wins."""
        values = self.model_dump()
        values.update(update.model_dump(exclude_none=True))
        return ExtractedData(**values)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class LinkedEntities(_CamelModel):
    """Lead / patient / appointment references.  Set once, never cleared."""

    lead_id: str | None = None
    patient_id: str | None = None
    appointment_id: str | None = None

    def linked(self, **ids: str | None) -> LinkedEntities:
        values = self.model_dump()
        for key, value in ids.items():
            if value and not values.get(key):
                values[key] = value
        return LinkedEntities(**values)


class ConversationContext(_CamelModel):
    conversation_id: str
    tenant_id: str
    agent: AgentKind
    channel: Channel = Channel.WEB_CHAT
    message_history: list[ConversationMessage] = Field(default_factory=list)
    extracted_data: ExtractedData = Field(default_factory=ExtractedData)
    linked_entities: LinkedEntities = Field(default_factory=LinkedEntities)
    handoff_state: HandoffState = HandoffState.NONE
    handoff_reason: str | None = None
    handoff_count: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def append_message(
        self, role: MessageRole, content: str, at: datetime | None = None,
    ) -> None:
        self.message_history.append(
            ConversationMessage(role=role, content=content, timestamp=at or utcnow())
        )

    def trailing_window(self, turns: int) -> list[ConversationMessage]:
        """Last ``turns`` exchanges (two messages each), oldest first."""
        if turns <= 0:
            return []
        return list(self.message_history[-(turns * 2):])


# ── Tool call envelopes ──────────────────────────────────────────────

ErrorKind = Literal["not_found", "validation", "permission", "execution"]


class ToolCallRequest(BaseModel):
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)


class ToolCallResult(_CamelModel):
    success: bool
    data: Any = None
    error: str | None = None
    requires_human_handoff: bool = False
    handoff_reason: str | None = None
    # Internal: lets callers tell denials apart from other failures
    error_kind: ErrorKind | None = Field(default=None, exclude=True)

    @classmethod
    def ok(cls, data: Any = None, *, handoff_reason: str | None = None) -> ToolCallResult:
        return cls(
            success=True,
            data=data,
            requires_human_handoff=handoff_reason is not None,
            handoff_reason=handoff_reason,
        )

    @classmethod
    def fail(
        cls,
        error: str,
        *,
        kind: ErrorKind = "execution",
        handoff_reason: str | None = None,
    ) -> ToolCallResult:
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            requires_human_handoff=handoff_reason is not None,
            handoff_reason=handoff_reason,
        )


# ── Customer agent DTOs ──────────────────────────────────────────────


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must contain some text")
    return value


class HistoryItem(_CamelModel):
    role: MessageRole
    content: str


class CustomerAgentRequest(_CamelModel):
    """Inbound customer message (WhatsApp / SMS / web chat intake)."""

    message: str = Field(..., min_length=1, max_length=4000)
    conversation_id: str | None = Field(default=None, max_length=100)
    lead_id: str | None = None
    patient_id: str | None = None
    message_history: list[HistoryItem] | None = None
    customer_phone: str | None = None
    customer_name: str | None = None
    channel: Channel | None = None

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, message: str):
        return _not_blank(message)

    @field_validator("message_history")
    @classmethod
    def _no_system_messages(cls, history: list[HistoryItem] | None):
        if history and any(item.role == MessageRole.SYSTEM for item in history):
            raise ValueError("customer history may only contain user and assistant messages")
        return history


SuggestedActionType = Literal["create_appointment", "create_task", "escalate", "send_info", "follow_up"]


class SuggestedAction(_CamelModel):
    type: SuggestedActionType
    description: str
    params: dict[str, Any] | None = None


class CustomerAgentResponse(_CamelModel):
    response: str
    intent: CustomerIntent
    conversation_id: str
    confidence: float | None = None
    requires_human_handoff: bool = False
    handoff_reason: str | None = None
    suggested_actions: list[SuggestedAction] = Field(default_factory=list)
    lead_id: str | None = None
    appointment_id: str | None = None
    extracted_data: ExtractedData | None = None
    permission_denied_reason: str | None = None


# ── Staff copilot DTOs ───────────────────────────────────────────────


class StaffCopilotRequest(_CamelModel):
    query: str = Field(..., min_length=1, max_length=4000)
    message_history: list[HistoryItem] | None = None
    current_context: str | None = None
    current_entity_type: str | None = None
    current_entity_id: str | None = None
    conversation_id: str | None = Field(default=None, max_length=100)

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, query: str):
        return _not_blank(query)


class ToolExecution(_CamelModel):
    tool: str
    params: dict[str, Any]
    success: bool
    result: Any = None
    error: str | None = None


class StaffCopilotResponse(_CamelModel):
    response: str
    conversation_id: str
    tools_executed: list[ToolExecution] = Field(default_factory=list)
    permission_denied: bool = False
    permission_denied_reason: str | None = None
    suggested_follow_ups: list[str] = Field(default_factory=list)
    data: dict[str, Any] | None = None
