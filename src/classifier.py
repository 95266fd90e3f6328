"""Intent classification.

The orchestrator depends only on the :class:`IntentClassifier` protocol.
Three implementations ship here:

  * :class:`KeywordIntentClassifier` — rule-based scorer for customer
    messages; needs no credentials.
  * :class:`StaffPatternClassifier` — regex mappings for staff copilot
    queries.
  * :class:`AnthropicIntentClassifier` — LLM classifier (Claude Haiku via
    ``langchain_anthropic``) for either audience.

:class:`BoundedClassifier` wraps any of them with a timeout and turns
every failure into the ``OTHER`` / 0.0 fallback, so a classifier outage
degrades a turn to a low-confidence handoff instead of failing it.
"""

from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from src import config
from src.errors import ClassifierUnavailable
from src.models import AgentKind, ConversationMessage, CustomerIntent, MessageRole, StaffIntent
from src.prompts import get_classifier_prompt
from src.services.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    intent: StrEnum
    confidence: float


class IntentClassifier(Protocol):
    def classify(self, message: str, history: list[ConversationMessage]) -> Classification: ...


# ── Customer keyword classifier ──────────────────────────────────────

CUSTOMER_KEYWORDS: dict[CustomerIntent, tuple[str, ...]] = {
    CustomerIntent.APPOINTMENT_RESCHEDULE: (
        "reschedule", "change appointment", "change my appointment", "move my", "different time",
    ),
    CustomerIntent.APPOINTMENT_CANCEL: ("cancel", "not coming", "can't make it", "cannot make it"),
    CustomerIntent.MEDICAL_QUESTION: (
        "symptom", "symptoms", "pain", "medicine", "prescription", "diagnosis",
        "treatment plan", "side effect", "side effects", "bleeding", "swollen",
    ),
    CustomerIntent.COMPLAINT: (
        "complaint", "unhappy", "problem", "issue", "bad", "terrible", "angry", "disappointed",
    ),
    CustomerIntent.APPOINTMENT_REQUEST: (
        "appointment", "book", "booking", "schedule", "available", "availability", "slot",
        "slots", "when can",
    ),
    CustomerIntent.PRICING_INQUIRY: ("price", "prices", "cost", "how much", "fee", "expensive", "discount"),
    CustomerIntent.SERVICE_INQUIRY: ("service", "services", "treatment", "procedure", "offer", "do you have"),
    CustomerIntent.GENERAL_INQUIRY: (
        "information", "tell me about", "what is", "how does", "hours", "open", "where", "hello", "hi",
    ),
}

# Dict order above is the tie-break priority: the first intent wins a tie
_CUSTOMER_PATTERNS: dict[CustomerIntent, list[re.Pattern[str]]] = {
    intent: [re.compile(rf"\b{re.escape(kw)}\b", re.IGNORECASE) for kw in keywords]
    for intent, keywords in CUSTOMER_KEYWORDS.items()
}

_CONFIDENCE_BY_HITS = {1: 0.7, 2: 0.85}
_MAX_CONFIDENCE = 0.95
_TIE_PENALTY = 0.2
_HISTORY_PENALTY = 0.15
_NO_MATCH_CONFIDENCE = 0.2


def _score(text: str) -> dict[CustomerIntent, int]:
    return {
        intent: sum(1 for pattern in patterns if pattern.search(text))
        for intent, patterns in _CUSTOMER_PATTERNS.items()
    }


def _best(scores: dict[CustomerIntent, int]) -> Classification | None:
    top = max(scores.values())
    if top == 0:
        return None
    leaders = [intent for intent, hits in scores.items() if hits == top]
    confidence = _CONFIDENCE_BY_HITS.get(top, _MAX_CONFIDENCE)
    if len(leaders) > 1:
        confidence -= _TIE_PENALTY
    return Classification(leaders[0], round(confidence, 2))


class KeywordIntentClassifier:
    """Scores each customer intent by the number of its keywords present.

    When the latest message matches nothing, the user's recent messages
    are scored instead at a reduced confidence, so a bare "tomorrow at 10"
    continues an ongoing booking flow.
    """

    def classify(self, message: str, history: list[ConversationMessage]) -> Classification:
        result = _best(_score(message))
        if result is not None:
            return result

        earlier = " ".join(m.content for m in history if m.role == MessageRole.USER)
        if earlier:
            carried = _best(_score(earlier))
            if carried is not None:
                return Classification(
                    carried.intent, round(max(carried.confidence - _HISTORY_PENALTY, 0.0), 2),
                )
        return Classification(CustomerIntent.OTHER, _NO_MATCH_CONFIDENCE)


# ── Staff pattern classifier ─────────────────────────────────────────

GENERAL_KNOWLEDGE_PATTERNS = (
    re.compile(r"how do I", re.IGNORECASE),
    re.compile(r"what is (?:a |the )?", re.IGNORECASE),
    re.compile(r"can you explain", re.IGNORECASE),
    re.compile(r"help me with", re.IGNORECASE),
)

STAFF_PATTERNS: tuple[tuple[StaffIntent, tuple[re.Pattern[str], ...]], ...] = (
    (StaffIntent.FIND_PATIENT, (
        re.compile(r"find patient (?:with|by|for) (?:phone|number)? ?(.+)", re.IGNORECASE),
        re.compile(r"search (?:for )?patient (?:by )?phone (.+)", re.IGNORECASE),
        re.compile(r"patient (?:with )?phone (.+)", re.IGNORECASE),
        re.compile(r"who is (.+)", re.IGNORECASE),
    )),
    (StaffIntent.CHECK_AVAILABILITY, (
        re.compile(r"(?:available|next|open) (?:slots?|appointments?|times?) (?:for|on) (.+)", re.IGNORECASE),
        re.compile(r"when (?:is|are) (?:the )?(?:next )?(?:available|open) (?:slots?|times?)", re.IGNORECASE),
        re.compile(r"show (?:me )?availability (?:for|on) (.+)", re.IGNORECASE),
        re.compile(r"check availability", re.IGNORECASE),
    )),
    (StaffIntent.VISIT_SUMMARY, (
        re.compile(r"(?:last|previous|recent) visit (?:for|of) (?:patient )?(.+)", re.IGNORECASE),
        re.compile(r"summarize (?:the )?(?:last )?visit(?: for)?(.*)", re.IGNORECASE),
        re.compile(r"visit history (?:for )?(.+)", re.IGNORECASE),
        re.compile(r"what (?:was|happened) (?:in )?(?:the )?last visit", re.IGNORECASE),
    )),
    (StaffIntent.INVOICE_STATUS, (
        re.compile(r"invoice (?:status|balance) ?(?:for )?(.*)", re.IGNORECASE),
        re.compile(r"(?:outstanding|unpaid|pending) (?:invoices?|balance) ?(?:for )?(.*)", re.IGNORECASE),
        re.compile(r"how much (?:does|do) (.+) owe", re.IGNORECASE),
        re.compile(r"\bINV-\d{6}-\d{5}\b", re.IGNORECASE),
        re.compile(r"check (?:invoice|payment) (?:status )?(?:for )?(.+)", re.IGNORECASE),
    )),
    (StaffIntent.CREATE_TASK, (
        re.compile(r"create (?:a )?(?:follow[- ]?up )?task (?:to )?(.+)", re.IGNORECASE),
        re.compile(r"remind (?:me|us|them) to (.+)", re.IGNORECASE),
        re.compile(r"add (?:a )?task (?:for )?(.+)", re.IGNORECASE),
        re.compile(r"schedule (?:a )?follow[- ]?up (.+)", re.IGNORECASE),
    )),
)

# An unmatched staff query is a confident "not a tool request"
_STAFF_MATCH_CONFIDENCE = 0.9
_STAFF_UNMATCHED_CONFIDENCE = 0.6


class StaffPatternClassifier:
    """Maps a copilot query onto a tool intent with the first matching pattern."""

    def classify(self, message: str, history: list[ConversationMessage]) -> Classification:
        # How-to questions are answered without tools, even if they mention one
        if any(pattern.search(message) for pattern in GENERAL_KNOWLEDGE_PATTERNS):
            return Classification(StaffIntent.GENERAL_KNOWLEDGE, _STAFF_MATCH_CONFIDENCE)
        for intent, patterns in STAFF_PATTERNS:
            if any(pattern.search(message) for pattern in patterns):
                return Classification(intent, _STAFF_MATCH_CONFIDENCE)
        return Classification(StaffIntent.OTHER, _STAFF_UNMATCHED_CONFIDENCE)


# ── LLM classifier ───────────────────────────────────────────────────


def _build_classifier_llm() -> ChatAnthropic:
    """Build a lightweight Haiku LLM for intent classification (no tools)."""
    return ChatAnthropic(
        model=config.CLASSIFIER_MODEL_NAME,
        api_key=config.require_secret("ANTHROPIC_API_KEY"),
        temperature=0.0,  # Deterministic classification
        max_tokens=64,
        timeout=config.CLASSIFIER_TIMEOUT_SECONDS,
    )


def _parse_reply(raw: str, intents: type[StrEnum]) -> Classification:
    match = re.search(r"\{.*\}", raw, re.DOTALL)
    if not match:
        raise ClassifierUnavailable(f"classifier reply is not JSON: {raw[:80]!r}")
    try:
        payload = json.loads(match.group(0))
        intent = intents(str(payload["intent"]).strip().lower())
        confidence = float(payload["confidence"])
    except (ValueError, KeyError, TypeError) as exc:
        raise ClassifierUnavailable(f"unusable classifier reply: {raw[:80]!r}") from exc
    return Classification(intent, min(max(confidence, 0.0), 1.0))


class AnthropicIntentClassifier:
    """Asks Claude for ``{"intent", "confidence"}`` given the trailing window."""

    def __init__(self, agent: AgentKind, llm: ChatAnthropic | None = None) -> None:
        self._agent = agent
        self._intents = CustomerIntent if agent == AgentKind.CUSTOMER else StaffIntent
        self._llm = llm or _build_classifier_llm()

    def classify(self, message: str, history: list[ConversationMessage]) -> Classification:
        prompt = get_classifier_prompt(self._agent, message, history)
        try:
            response = self._llm.invoke([HumanMessage(content=prompt)])
        except Exception as exc:
            raise ClassifierUnavailable(f"{type(exc).__name__}: {exc}") from exc
        content = response.content if isinstance(response.content, str) else str(response.content)
        result = _parse_reply(content, self._intents)
        logger.debug(
            "LLM classifier (%s) -> %s %.2f", config.CLASSIFIER_MODEL_NAME,
            result.intent, result.confidence,
        )
        return result


# ── Timeout + fallback wrapper ───────────────────────────────────────


class BoundedClassifier:
    """Runs a classifier under a timeout and never raises.

    Timeouts, ``ClassifierUnavailable`` and unexpected errors all yield
    ``Classification(fallback_intent, 0.0)``.  A call that times out keeps
    running on its worker thread; its late answer is discarded.
    """

    def __init__(
        self,
        inner: IntentClassifier,
        fallback_intent: StrEnum,
        *,
        name: str,
        timeout_seconds: float = config.CLASSIFIER_TIMEOUT_SECONDS,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._inner = inner
        self._fallback = Classification(fallback_intent, 0.0)
        self._name = name
        self._timeout = timeout_seconds
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix=f"classify-{name}",
        )

    def classify(self, message: str, history: list[ConversationMessage]) -> Classification:
        t0 = time.perf_counter()
        future = self._executor.submit(self._inner.classify, message, history)
        try:
            result = future.result(timeout=self._timeout)
        except FutureTimeout:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "classifier", self._name, error_type="timeout", latency_ms=elapsed,
            )
            logger.warning("Classifier %s timed out after %.1fs", self._name, self._timeout)
            return self._fallback
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "classifier", self._name,
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("Classifier %s unavailable, falling back: %s", self._name, exc)
            return self._fallback

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("classifier", self._name, latency_ms=elapsed)
        return result


def build_classifier(agent: AgentKind, backend: str = config.CLASSIFIER_BACKEND) -> BoundedClassifier:
    """Return the configured classifier for *agent*, wrapped in the fallback guard."""
    inner: IntentClassifier
    if backend == "anthropic":
        inner = AnthropicIntentClassifier(agent)
    elif agent == AgentKind.CUSTOMER:
        inner = KeywordIntentClassifier()
    else:
        inner = StaffPatternClassifier()
    fallback = CustomerIntent.OTHER if agent == AgentKind.CUSTOMER else StaffIntent.OTHER
    return BoundedClassifier(inner, fallback, name=f"{agent.value}_{backend}")
