"""LangGraph turn state machine for the clinic assistants.

Architecture:
  Every inbound message (a *turn*) runs through one compiled LangGraph
  ``StateGraph``, shared by the customer agent and the staff copilot::

    receive → classify → select_tools ─(plan?)─▶ execute_tools → compose → deliver → END
                                      └─(none)──────────────────▶ compose

    1. **receive**        — load or create the conversation context, append
                            the inbound message and persist immediately
    2. **classify**       — bounded classifier call over the trailing window
    3. **select_tools**   — deterministic rule table (see ``planning``);
                            nothing is selected when the handoff is active
                            or the classifier is not confident, and
                            nothing is booked when the message itself
                            calls for a human
    4. **execute_tools**  — planned calls run in order through the
                            dispatcher; dependents of a failed call are
                            skipped, never retried
    5. **compose**        — fold results into the context, record an
                            unknown customer as a lead, decide the
                            handoff, build the outbound response
    6. **deliver**        — persist the whole context in one write

  Concurrency:
    ``Orchestrator`` holds a per-conversation lock for the whole turn, so
    turns for one conversation are serialized while different
    conversations run in parallel.  The graph itself has no checkpointer;
    persistence goes only through ``ConversationStore.save``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from typing import Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from src import config
from src.classifier import BoundedClassifier, IntentClassifier, build_classifier
from src.errors import ConversationNotFound
from src.extraction import extract
from src.models import (
    AgentKind,
    Caller,
    Channel,
    ConversationContext,
    CustomerAgentRequest,
    CustomerAgentResponse,
    CustomerIntent,
    ExtractedData,
    HandoffState,
    MessageRole,
    StaffCopilotRequest,
    StaffCopilotResponse,
    StaffIntent,
    ToolCallRequest,
    ToolExecution,
    ToolName,
)
from src.planning import CallOutcome, PlannedCall, plan_customer_turn, plan_staff_turn, resolve_params
from src.policy import AgentPolicy, CauseKind, HandoffOutcome, advance, customer_policy_reason, first_cause
from src.policy import strongly_negative as is_strongly_negative
from src.responses import compose_customer_response, compose_staff_response, customer_suggested_actions
from src.services.audit import AuditEntry, AuditSink, LoggingAuditSink
from src.services.clinic_backend import ClinicBackend, Record, parse_iso
from src.services.conversation_store import ConversationLocks, ConversationStore, InMemoryConversationStore
from src.services.metrics import metrics
from src.tools.dispatcher import ToolDispatcher
from src.tools.handlers import normalize_phone

logger = logging.getLogger(__name__)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """The state that flows through the graph for one turn.

    ``request`` and ``caller`` are inputs; every other key is written by
    exactly one node.  ``response`` is the outbound DTO.
    """

    agent: AgentKind
    request: CustomerAgentRequest | StaffCopilotRequest
    caller: Caller
    conversation_id: str
    context: ConversationContext
    intent: StrEnum
    confidence: float
    policy_reason: str | None
    plan: list[PlannedCall]
    outcomes: list[CallOutcome]
    handoff: HandoffOutcome
    response: CustomerAgentResponse | StaffCopilotResponse


def _bounded(
    classifier: IntentClassifier | None, agent: AgentKind, fallback: StrEnum,
) -> IntentClassifier:
    """Put every classifier, injected ones included, behind the fallback guard."""
    if classifier is None:
        return build_classifier(agent)
    if isinstance(classifier, BoundedClassifier):
        return classifier
    return BoundedClassifier(classifier, fallback, name=f"{agent.value}_injected")


def _message_of(request: CustomerAgentRequest | StaffCopilotRequest) -> str:
    return request.message if isinstance(request, CustomerAgentRequest) else request.query


def _classifier_window(context: ConversationContext, turns: int) -> list:
    """Trailing ``turns`` exchanges before the message being classified."""
    if turns <= 0:
        return []
    return context.message_history[-(turns * 2 + 1):-1]


# ── Folding tool results into the context ────────────────────────────


def _fold_results(context: ConversationContext, outcomes: list[CallOutcome]) -> None:
    """Merge successful results into extracted data and linked entities."""
    for outcome in outcomes:
        if not outcome.succeeded or not isinstance(outcome.result.data, dict):
            continue
        data = outcome.result.data
        tool = outcome.call.tool

        if tool == ToolName.FIND_PATIENT_BY_PHONE and "id" in data:
            context.linked_entities = context.linked_entities.linked(patient_id=data["id"])
            context.extracted_data = context.extracted_data.merged(
                ExtractedData(name=data.get("name"), phone=data.get("phone"))
            )
        elif tool == ToolName.CREATE_OR_UPDATE_APPOINTMENT:
            appt = data["appointment"]
            scheduled = parse_iso(appt["scheduledAt"])
            context.linked_entities = context.linked_entities.linked(appointment_id=appt["id"])
            context.extracted_data = context.extracted_data.merged(
                ExtractedData(
                    preferred_date=scheduled.date().isoformat(),
                    preferred_time=scheduled.strftime("%H:%M"),
                    preferred_service=appt["service"]["name"],
                    preferred_doctor=appt["doctor"]["name"],
                )
            )


def _link_lead(backend: ClinicBackend, context: ConversationContext) -> None:
    """Record an unknown customer who left a phone number as a lead.

    Nothing is recorded when the phone already belongs to a patient;
    linking patients is left to the lookup tool.
    """
    linked, data = context.linked_entities, context.extracted_data
    if linked.patient_id or not data.phone:
        return
    tenant = context.tenant_id
    phone = normalize_phone(data.phone, config.DEFAULT_COUNTRY_PREFIX)

    if backend.find_patients_by_phone(tenant, phone):
        return

    details = {k: v for k, v in (("name", data.name), ("email", data.email)) if v}
    if linked.lead_id:
        if details:
            backend.update_lead(tenant, linked.lead_id, details)
        return

    lead = backend.find_lead_by_phone(tenant, phone)
    if lead is None:
        lead = backend.create_lead(tenant, {
            "name": data.name or "Unknown",
            "phone": phone,
            "email": data.email,
            "source": context.channel.value,
            "stage": "INQUIRY",
        })
        logger.info("Created lead %s for conversation %s", lead["id"], context.conversation_id)
    context.linked_entities = linked.linked(lead_id=lead["id"])


def _tool_handoff_reason(outcomes: list[CallOutcome]) -> str | None:
    for outcome in outcomes:
        if outcome.result is not None and outcome.result.requires_human_handoff:
            return outcome.result.handoff_reason or f"{outcome.call.tool.value} requires human review"
    return None


def _permission_denial(outcomes: list[CallOutcome]) -> str | None:
    for outcome in outcomes:
        if outcome.result is not None and outcome.result.error_kind == "permission":
            return outcome.result.error
    return None


# ── Orchestrator ─────────────────────────────────────────────────────


class Orchestrator:
    """Entry point for both assistants.

    Usage::

        orchestrator = Orchestrator(backend)
        reply = orchestrator.handle_customer_message(request, customer_agent_caller(tenant))
        reply = orchestrator.handle_staff_query(request, staff_caller(...))

    Only ``PersistenceError`` (and ``ConversationNotFound`` for a foreign
    conversation id) escape a turn; everything else is folded into the
    response.
    """

    def __init__(
        self,
        backend: ClinicBackend,
        *,
        store: ConversationStore | None = None,
        dispatcher: ToolDispatcher | None = None,
        customer_classifier: IntentClassifier | None = None,
        staff_classifier: IntentClassifier | None = None,
        policy: AgentPolicy | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = datetime.now,
        clinic_name: str = config.CLINIC_NAME,
    ) -> None:
        self.backend = backend
        self.store = store or InMemoryConversationStore()
        self.audit = audit or LoggingAuditSink()
        self.clock = clock
        self.policy = policy or AgentPolicy()
        self.dispatcher = dispatcher or ToolDispatcher(backend, audit=self.audit, clock=clock)
        self.clinic_name = clinic_name
        self._classifiers: dict[AgentKind, IntentClassifier] = {
            AgentKind.CUSTOMER: _bounded(customer_classifier, AgentKind.CUSTOMER, CustomerIntent.OTHER),
            AgentKind.STAFF: _bounded(staff_classifier, AgentKind.STAFF, StaffIntent.OTHER),
        }
        self._locks = ConversationLocks()
        self._graph = self._build_graph()

    # ── Public API ────────────────────────────────────────────────────

    def handle_customer_message(
        self, request: CustomerAgentRequest, caller: Caller,
    ) -> CustomerAgentResponse:
        return self._run_turn(AgentKind.CUSTOMER, request, caller)

    def handle_staff_query(
        self, request: StaffCopilotRequest, caller: Caller,
    ) -> StaffCopilotResponse:
        return self._run_turn(AgentKind.STAFF, request, caller)

    def _run_turn(self, agent: AgentKind, request, caller: Caller):
        conversation_id = request.conversation_id or str(uuid.uuid4())
        with self._locks.hold(conversation_id):
            final = self._graph.invoke({
                "agent": agent,
                "request": request,
                "caller": caller,
                "conversation_id": conversation_id,
            })
        return final["response"]

    def shutdown(self) -> None:
        """Stop the tool worker pool, letting in-flight calls finish."""
        self.dispatcher.shutdown(wait=True)

    # ── Graph assembly ────────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(TurnState)

        graph.add_node("receive", self._make_receive_node())
        graph.add_node("classify", self._make_classify_node())
        graph.add_node("select_tools", self._make_select_node())
        graph.add_node("execute_tools", self._make_execute_node())
        graph.add_node("compose", self._make_compose_node())
        graph.add_node("deliver", self._make_deliver_node())

        graph.set_entry_point("receive")
        graph.add_edge("receive", "classify")
        graph.add_edge("classify", "select_tools")
        graph.add_conditional_edges(
            "select_tools",
            should_execute_tools,
            {"execute_tools": "execute_tools", "compose": "compose"},
        )
        graph.add_edge("execute_tools", "compose")
        graph.add_edge("compose", "deliver")
        graph.add_edge("deliver", END)

        compiled = graph.compile()
        logger.debug("Turn graph compiled with %d nodes", 6)
        return compiled

    # ── Node: receive ─────────────────────────────────────────────────

    def _make_receive_node(self):
        store = self.store
        clock = self.clock

        def receive_node(state: TurnState) -> dict:
            """Load or create the context, record the inbound message, persist."""
            agent, request, caller = state["agent"], state["request"], state["caller"]
            conversation_id = state["conversation_id"]

            context = store.load(conversation_id)
            if context is None:
                context = ConversationContext(
                    conversation_id=conversation_id,
                    tenant_id=caller.tenant_id,
                    agent=agent,
                    channel=getattr(request, "channel", None) or Channel.WEB_CHAT,
                )
                for item in request.message_history or []:
                    context.append_message(item.role, item.content)
                logger.info("New %s conversation %s", agent.value, conversation_id)
            elif context.tenant_id != caller.tenant_id or context.agent != agent:
                raise ConversationNotFound(conversation_id)

            message = _message_of(request)
            context.append_message(MessageRole.USER, message)

            if isinstance(request, CustomerAgentRequest):
                context.linked_entities = context.linked_entities.linked(
                    lead_id=request.lead_id, patient_id=request.patient_id,
                )
                context.extracted_data = context.extracted_data.merged(
                    extract(
                        message,
                        today=clock().date(),
                        customer_name=request.customer_name,
                        customer_phone=request.customer_phone,
                    )
                )

            return {"context": store.save(context)}

        return receive_node

    # ── Node: classify ────────────────────────────────────────────────

    def _make_classify_node(self):
        classifiers = self._classifiers
        window_turns = self.policy.history_window_turns

        def classify_node(state: TurnState) -> dict:
            context = state["context"]
            classifier = classifiers[state["agent"]]
            result = classifier.classify(
                _message_of(state["request"]), _classifier_window(context, window_turns),
            )
            logger.debug(
                "Conversation %s classified as %s (%.2f)",
                context.conversation_id, result.intent, result.confidence,
            )
            update = {"intent": result.intent, "confidence": result.confidence}
            if state["agent"] == AgentKind.CUSTOMER:
                update["policy_reason"] = customer_policy_reason(
                    result.intent, _message_of(state["request"]),
                )
            return update

        return classify_node

    # ── Node: select_tools ────────────────────────────────────────────

    def _make_select_node(self):
        policy = self.policy
        clock = self.clock

        def select_node(state: TurnState) -> dict:
            context = state["context"]
            if context.handoff_state == HandoffState.ACTIVE:
                logger.info("Handoff active for %s; no tools selected", context.conversation_id)
                return {"plan": []}
            if policy.is_low_confidence(state["confidence"]):
                return {"plan": []}

            today = clock().date()
            if state["agent"] == AgentKind.CUSTOMER:
                message = _message_of(state["request"])
                plan = plan_customer_turn(
                    state["intent"], context, message,
                    policy=policy, today=today,
                    strongly_negative=is_strongly_negative(message),
                    policy_handoff=state.get("policy_reason") is not None,
                )
            else:
                plan = plan_staff_turn(
                    state["intent"], state["request"], state["caller"],
                    today=today, conversation_id=context.conversation_id,
                )
            return {"plan": plan}

        return select_node

    # ── Node: execute_tools ───────────────────────────────────────────

    def _make_execute_node(self):
        dispatcher = self.dispatcher

        def execute_node(state: TurnState) -> dict:
            """Dispatch each planned call in order, skipping broken dependents."""
            caller = state["caller"]
            outcomes: list[CallOutcome] = []
            results = []
            for call in state["plan"]:
                params = resolve_params(call, results)
                if params is None:
                    logger.info(
                        "Skipping %s: dependency %s did not complete",
                        call.tool.value, state["plan"][call.depends_on].tool.value,
                    )
                    outcomes.append(CallOutcome(call, dict(call.params), None))
                    results.append(None)
                    continue
                result = dispatcher.dispatch(ToolCallRequest(tool=call.tool.value, params=params), caller)
                outcomes.append(CallOutcome(call, params, result))
                results.append(result)
            return {"outcomes": outcomes}

        return execute_node

    # ── Node: compose ─────────────────────────────────────────────────

    def _make_compose_node(self):
        policy = self.policy
        backend = self.backend
        clinic_name = self.clinic_name

        def _services(tenant_id: str) -> list[Record]:
            try:
                return backend.list_services(tenant_id)
            except Exception:
                logger.exception("Could not load the service catalog for %s", tenant_id)
                return []

        def _leads(context: ConversationContext) -> None:
            try:
                _link_lead(backend, context)
            except Exception:
                logger.exception("Could not record a lead for %s", context.conversation_id)

        def compose_node(state: TurnState) -> dict:
            agent = state["agent"]
            context = state["context"].model_copy(deep=True)
            outcomes = state.get("outcomes", [])
            intent = state["intent"]

            _fold_results(context, outcomes)
            if agent == AgentKind.CUSTOMER:
                _leads(context)

            permission_reason = _permission_denial(outcomes)
            cause = first_cause(
                tool_reason=_tool_handoff_reason(outcomes),
                permission_reason=permission_reason if agent == AgentKind.STAFF else None,
                policy_reason=state.get("policy_reason"),
                confidence=state["confidence"],
                policy=policy,
            )
            handoff = advance(
                context.handoff_state, context.handoff_reason, context.handoff_count, cause, policy,
            )
            if cause is not None:
                logger.info(
                    "Handoff %s -> %s for %s (%s: %s)",
                    context.handoff_state.value, handoff.state.value,
                    context.conversation_id, cause.kind.value, cause.reason,
                )
                metrics.record_event("Handoff", {
                    "Agent": agent.value, "State": handoff.state.value, "Cause": cause.kind.value,
                })
            context.handoff_state = handoff.state
            context.handoff_reason = handoff.reason
            context.handoff_count = handoff.count

            if agent == AgentKind.CUSTOMER:
                response = self._customer_response(
                    state, context, outcomes, handoff,
                    new_cause=cause is not None,
                    permission_reason=permission_reason,
                    services=(
                        _services(context.tenant_id)
                        if intent in (CustomerIntent.PRICING_INQUIRY, CustomerIntent.SERVICE_INQUIRY)
                        else []
                    ),
                    clinic_name=clinic_name,
                )
            else:
                note = None
                if cause is not None and cause.kind == CauseKind.LOW_CONFIDENCE:
                    note = "I'm not confident I understood that request, so no action was taken."
                elif handoff.state == HandoffState.ACTIVE and handoff.flagged:
                    note = f"This conversation has been escalated for human review: {handoff.reason}"
                response = self._staff_response(state, context, outcomes, note)

            context.append_message(MessageRole.ASSISTANT, response.response)
            return {"context": context, "handoff": handoff, "response": response}

        return compose_node

    def _customer_response(
        self,
        state: TurnState,
        context: ConversationContext,
        outcomes: list[CallOutcome],
        handoff: HandoffOutcome,
        *,
        new_cause: bool,
        permission_reason: str | None,
        services: list[Record],
        clinic_name: str,
    ) -> CustomerAgentResponse:
        intent = state["intent"]
        linked = context.linked_entities
        text = compose_customer_response(
            intent, outcomes,
            flagged=handoff.flagged,
            handoff_active=handoff.state == HandoffState.ACTIVE,
            new_cause=new_cause,
            patient_known=linked.patient_id is not None,
            services=services,
            clinic_name=clinic_name,
        )
        actions = customer_suggested_actions(
            outcomes,
            flagged=handoff.flagged,
            handoff_reason=handoff.reason if handoff.flagged else None,
            intent=intent,
            patient_id=linked.patient_id,
            lead_id=linked.lead_id,
            task_assignable=self.policy.intake_assignee_id is not None,
        )
        return CustomerAgentResponse(
            response=text,
            intent=intent,
            conversation_id=context.conversation_id,
            confidence=state["confidence"],
            requires_human_handoff=handoff.flagged,
            handoff_reason=handoff.reason if handoff.flagged else None,
            suggested_actions=actions,
            lead_id=linked.lead_id,
            appointment_id=linked.appointment_id,
            extracted_data=None if context.extracted_data.is_empty() else context.extracted_data,
            permission_denied_reason=permission_reason,
        )

    def _staff_response(
        self,
        state: TurnState,
        context: ConversationContext,
        outcomes: list[CallOutcome],
        note: str | None,
    ) -> StaffCopilotResponse:
        request: StaffCopilotRequest = state["request"]
        text, follow_ups = compose_staff_response(
            state["intent"], request.query, outcomes, state["caller"], handoff_note=note,
        )
        executed = [
            ToolExecution(
                tool=o.call.tool.value,
                params=o.params,
                success=o.result.success,
                result=o.result.data,
                error=o.result.error,
            )
            for o in outcomes if not o.skipped
        ]
        data: dict[str, Any] = {
            o.call.tool.value: o.result.data for o in outcomes if o.succeeded
        }
        permission_reason = _permission_denial(outcomes)
        return StaffCopilotResponse(
            response=text,
            conversation_id=context.conversation_id,
            tools_executed=executed,
            permission_denied=permission_reason is not None,
            permission_denied_reason=permission_reason,
            suggested_follow_ups=follow_ups,
            data=data or None,
        )

    # ── Node: deliver ─────────────────────────────────────────────────

    def _make_deliver_node(self):
        store = self.store
        audit = self.audit

        def deliver_node(state: TurnState) -> dict:
            """Persist the context as one unit and audit the turn."""
            saved = store.save(state["context"])
            handoff = state["handoff"]
            caller = state["caller"]
            action = (
                "CUSTOMER_AGENT_INTERACTION" if state["agent"] == AgentKind.CUSTOMER
                else "STAFF_COPILOT_QUERY"
            )
            entry = AuditEntry(
                action=action,
                user_id=caller.user_id,
                tenant_id=caller.tenant_id,
                role=caller.role,
                entity_id=saved.conversation_id,
                details={
                    "intent": str(state["intent"]),
                    "confidence": state["confidence"],
                    "requiresHandoff": handoff.flagged,
                    "handoffState": handoff.state.value,
                    "handoffReason": handoff.reason,
                    "toolsExecuted": [
                        {"tool": o.call.tool.value, "success": o.succeeded, "skipped": o.skipped}
                        for o in state.get("outcomes", [])
                    ],
                },
            )
            try:
                audit.record(entry)
            except Exception:
                logger.exception("Failed to record turn audit for %s", saved.conversation_id)
            return {"context": saved}

        return deliver_node


# ── Conditional edges ────────────────────────────────────────────────


def should_execute_tools(state: TurnState) -> str:
    """Skip straight to composition when nothing was selected."""
    if state.get("plan"):
        return "execute_tools"
    return "compose"


def create_orchestrator(backend: ClinicBackend, **kwargs) -> Orchestrator:
    """Build an orchestrator with the configured classifiers and policy."""
    orchestrator = Orchestrator(backend, **kwargs)
    logger.debug(
        "Orchestrator ready: classifier=%s threshold=%.2f window=%d escalation=%d booking=%s",
        config.CLASSIFIER_BACKEND,
        orchestrator.policy.low_confidence_threshold,
        orchestrator.policy.history_window_turns,
        orchestrator.policy.handoff_escalation_count,
        orchestrator.policy.booking_enabled,
    )
    return orchestrator
