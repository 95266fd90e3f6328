"""Tests for the handoff policy."""

from __future__ import annotations

import pytest

from src.models import CustomerIntent, HandoffState
from src.policy import (
    HUMAN_REQUESTED,
    MEDICAL_REVIEW,
    PERSONAL_ATTENTION,
    AgentPolicy,
    CauseKind,
    HandoffCause,
    advance,
    customer_policy_reason,
    first_cause,
)

POLICY = AgentPolicy(low_confidence_threshold=0.5, handoff_escalation_count=2)
CAUSE = HandoffCause(CauseKind.POLICY, "because")


class TestPolicyReasons:
    def test_explicit_request_for_a_human(self):
        assert customer_policy_reason(CustomerIntent.GENERAL_INQUIRY, "I want a real person") == HUMAN_REQUESTED

    def test_medical_questions_go_to_the_medical_team(self):
        assert customer_policy_reason(CustomerIntent.MEDICAL_QUESTION, "my gum is swollen") == MEDICAL_REVIEW

    def test_only_strongly_negative_complaints_trigger(self):
        assert customer_policy_reason(CustomerIntent.COMPLAINT, "the wait was long") is None
        assert customer_policy_reason(CustomerIntent.COMPLAINT, "this was terrible") == PERSONAL_ATTENTION

    def test_trigger_words_match_whole_words(self):
        assert customer_policy_reason(CustomerIntent.GENERAL_INQUIRY, "is the issue resolved") is None
        assert customer_policy_reason(CustomerIntent.GENERAL_INQUIRY, "I will sue") == HUMAN_REQUESTED


class TestFirstCause:
    def test_tool_signal_has_top_priority(self):
        cause = first_cause(
            tool_reason="tool", permission_reason="perm", policy_reason="policy",
            confidence=0.1, policy=POLICY,
        )
        assert cause == HandoffCause(CauseKind.TOOL, "tool")

    def test_permission_beats_policy_and_confidence(self):
        cause = first_cause(permission_reason="perm", policy_reason="policy", confidence=0.1, policy=POLICY)
        assert cause.kind == CauseKind.PERMISSION

    def test_low_confidence_is_last(self):
        cause = first_cause(confidence=0.2, policy=POLICY)
        assert cause == HandoffCause(
            CauseKind.LOW_CONFIDENCE, "Low confidence in understanding the request (0.20)",
        )

    def test_confident_turn_without_signals_has_no_cause(self):
        assert first_cause(confidence=0.5, policy=POLICY) is None


class TestAdvance:
    def test_first_cause_requests_a_handoff(self):
        outcome = advance(HandoffState.NONE, None, 0, CAUSE, POLICY)
        assert (outcome.state, outcome.count, outcome.flagged) == (HandoffState.REQUESTED, 1, True)
        assert outcome.reason == "because"

    def test_repeated_cause_escalates_to_active(self):
        outcome = advance(HandoffState.REQUESTED, "before", 1, CAUSE, POLICY)
        assert outcome.state == HandoffState.ACTIVE

    def test_requested_persists_quietly_without_a_cause(self):
        outcome = advance(HandoffState.REQUESTED, "before", 1, None, POLICY)
        assert (outcome.state, outcome.reason, outcome.flagged) == (HandoffState.REQUESTED, "before", False)

    def test_active_always_flags(self):
        outcome = advance(HandoffState.ACTIVE, "before", 2, None, POLICY)
        assert outcome.flagged
        assert outcome.reason == "before"

    @pytest.mark.parametrize("state", list(HandoffState))
    def test_state_never_moves_backward(self, state):
        for cause in (None, CAUSE):
            outcome = advance(state, "r", 5, cause, POLICY)
            assert outcome.state.rank >= state.rank

    def test_escalation_count_is_configurable(self):
        patient = AgentPolicy(handoff_escalation_count=3)
        outcome = advance(HandoffState.REQUESTED, "r", 1, CAUSE, patient)
        assert outcome.state == HandoffState.REQUESTED
        assert outcome.count == 2

    def test_escalation_count_of_one_goes_straight_to_active(self):
        outcome = advance(HandoffState.NONE, None, 0, CAUSE, AgentPolicy(handoff_escalation_count=1))
        assert outcome.state == HandoffState.ACTIVE


class TestAgentPolicy:
    def test_booking_needs_all_three_defaults(self):
        assert not AgentPolicy(booking_branch_id="b", booking_doctor_id="d", booking_service_id=None).booking_enabled
        assert AgentPolicy(booking_branch_id="b", booking_doctor_id="d", booking_service_id="s").booking_enabled
