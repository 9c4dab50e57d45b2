"""Message classification for the MoE router.

Two paths, tried in order:

1. **Fast path** — compiled keyword patterns.  No network call, fixed
   confidence, and the same answer every time for the same message.
2. **LLM fallback** — a Haiku call that must answer with a JSON object
   ``{category, confidence, reasoning}``.  Whatever comes back is parsed
   defensively; a broken answer or a failed call degrades to a
   low-confidence ``general`` result and never raises.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from collections.abc import Sequence
from enum import StrEnum
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AnyMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from billi.config import CLASSIFIER_MODEL_NAME
from billi.llm import build_classifier_model, message_text

logger = logging.getLogger(__name__)

MIXED_INTENT = "mixed_intent"
LOW_CONFIDENCE = 0.3


class Category(StrEnum):
    APPOINTMENTS = "appointments"
    BILLING = "billing"
    GENERAL = "general"


class ClassificationResult(BaseModel):
    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str | None = None


# ── Fast-path patterns ───────────────────────────────────────────────

_TIME_ENTRY_INDICATORS = (
    re.compile(r"\b(log|record|submit|entry)\b"),
    re.compile(r"\b\d+(\.\d+)?\s*(hours?|hrs?)\b"),
    re.compile(r"\b(customer|client|tasks?|description|worked)\b"),
)
_SCHEDULING_INDICATOR = re.compile(
    r"\b(availability|available|free|schedule|booking|book|calendar)\b"
)

_BILLING_PATTERNS = (
    re.compile(r"\b(log|record|submit)\s+.*\s*(hours?|time)\b"),
    re.compile(r"\b\d+(\.\d+)?\s*(hours?|hrs?)\s+(for|on)\b"),
    re.compile(r"\btime\s+entry\b"),
    re.compile(r"\bbillable\b"),
    re.compile(r"\bquickbooks\b"),
    re.compile(r"\b(customer|client|hours|tasks?|description|worked\s+on)\b.*\b(log|record|submit|entry)\b"),
    re.compile(r"\b(log|record|submit|entry)\b.*\b(customer|client|hours|tasks?|description)\b"),
)
_APPOINTMENT_PATTERNS = (
    re.compile(r"\b(book|schedule)\s+(a\s+)?(meeting|appointment)\b"),
    re.compile(r"\b(book|schedule)\s+.*\s+(meeting|appointment)\b"),
    re.compile(r"\bcheck\s+(my\s+)?availability\b"),
    re.compile(r"\bwhat('s|\s+is)\s+.*\s+schedule\b"),
    re.compile(r"\b(calendar|appointment|available|free\s+(time|slot))\b"),
    re.compile(r"\b(create|set\s+up|arrange)\s+(a\s+)?meeting\b"),
)
_GREETING_PATTERNS = (
    re.compile(r"^(hi|hello|hey|good\s+(morning|afternoon|evening))\b"),
    re.compile(r"^what\s+can\s+you\s+(do|help)"),
)


def has_time_entry_intent(message: str) -> bool:
    text = message.lower()
    return any(p.search(text) for p in _TIME_ENTRY_INDICATORS)


def has_scheduling_intent(message: str) -> bool:
    return bool(_SCHEDULING_INDICATOR.search(message.lower()))


def quick_classify(message: str) -> ClassificationResult | None:
    """Classify by keyword patterns, or return ``None`` when nothing matches.

    Order matters: a message that mentions both scheduling and time-entry
    words is flagged ``mixed_intent``; time-entry words beat appointment
    words; greetings come last.
    """
    text = message.lower().strip()
    time_entry = has_time_entry_intent(text)
    scheduling = has_scheduling_intent(text)

    if time_entry and scheduling:
        return ClassificationResult(
            category=Category.GENERAL, confidence=0.9, reasoning=MIXED_INTENT,
        )

    if time_entry and any(p.search(text) for p in _BILLING_PATTERNS):
        return ClassificationResult(
            category=Category.BILLING,
            confidence=0.95,
            reasoning="Pattern match: time entry keywords",
        )

    if not time_entry and any(p.search(text) for p in _APPOINTMENT_PATTERNS):
        return ClassificationResult(
            category=Category.APPOINTMENTS,
            confidence=0.9,
            reasoning="Pattern match: appointment-related keywords",
        )

    if not time_entry and any(p.search(text) for p in _BILLING_PATTERNS):
        return ClassificationResult(
            category=Category.BILLING,
            confidence=0.9,
            reasoning="Pattern match: billing keywords",
        )

    if any(p.search(text) for p in _GREETING_PATTERNS):
        return ClassificationResult(
            category=Category.GENERAL,
            confidence=0.95,
            reasoning="Pattern match: greeting or capability question",
        )

    return None


# ── LLM fallback ─────────────────────────────────────────────────────

CLASSIFIER_PROMPT = """You route messages for a workplace assistant. Classify the user's message into exactly one category:

- appointments: calendars, availability, free time, scheduling or booking meetings, looking up people to meet
- billing: logging or submitting hours, time entries, billable work, customers/clients worked for
- general: greetings, questions about the assistant, anything else

Critical rules:
- A message asking for BOTH a calendar action and a time entry is "general" with reasoning "mixed_intent".
- Short follow-ups ("yes", "2pm works", "the first one") belong to the category of the recent context.
- Confidence is a number between 0 and 1.

Return ONLY valid JSON, no prose and no code fences:
{"category": "appointments" | "billing" | "general", "confidence": 0.0-1.0, "reasoning": "short reason"}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _summarize_history(history: Sequence[AnyMessage], max_messages: int = 3, max_chars: int = 100) -> str:
    """``role: text`` snippets of the last few turns, joined by `` | ``."""
    snippets = []
    for msg in list(history)[-max_messages:]:
        text = message_text(msg.content).strip()
        if text:
            snippets.append(f"{msg.type}: {text[:max_chars]}")
    return " | ".join(snippets)


def _fallback(reasoning: str) -> ClassificationResult:
    return ClassificationResult(category=Category.GENERAL, confidence=LOW_CONFIDENCE, reasoning=reasoning)


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return LOW_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return LOW_CONFIDENCE
    if math.isnan(confidence):
        return LOW_CONFIDENCE
    return min(max(confidence, 0.0), 1.0)


def parse_classification(raw: str) -> ClassificationResult:
    """Parse the classifier's reply, defaulting anything invalid."""
    text = _FENCE_RE.sub("", (raw or "").strip()).strip()
    if not text:
        return _fallback("Empty response from classifier")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Classifier returned non-JSON: %r", text[:200])
        return _fallback("Failed to parse classifier response")
    if not isinstance(data, dict):
        return _fallback("Failed to parse classifier response")

    raw_category = str(data.get("category", "")).strip().lower()
    try:
        category = Category(raw_category)
    except ValueError:
        category = Category.GENERAL

    reasoning = data.get("reasoning")
    return ClassificationResult(
        category=category,
        confidence=_coerce_confidence(data.get("confidence")),
        reasoning=reasoning if isinstance(reasoning, str) else None,
    )


class MoEClassifier:
    """Fast-path-first classifier with a Haiku fallback."""

    def __init__(self, llm: BaseChatModel | None = None):
        self._llm = llm or build_classifier_model()

    async def classify(
        self,
        message: str,
        recent_history: Sequence[AnyMessage] = (),
    ) -> ClassificationResult:
        quick = quick_classify(message)
        if quick is not None:
            return quick
        return await self.classify_with_llm(message, recent_history)

    async def classify_with_llm(
        self,
        message: str,
        recent_history: Sequence[AnyMessage] = (),
    ) -> ClassificationResult:
        context = _summarize_history(recent_history)
        prompt = f"Recent context: {context}\n\n" if context else ""
        prompt += f'Message to classify: "{message}"'

        t0 = time.perf_counter()
        try:
            response = await self._llm.ainvoke(
                [SystemMessage(content=CLASSIFIER_PROMPT), HumanMessage(content=prompt)]
            )
        except Exception as exc:
            logger.warning("Classifier (%s) failed, defaulting to general: %s", CLASSIFIER_MODEL_NAME, exc)
            return _fallback("Classification failed, defaulting to general")

        result = parse_classification(message_text(response.content))
        logger.debug(
            "Classifier (%s) → %s %.2f in %.0fms",
            CLASSIFIER_MODEL_NAME, result.category, result.confidence,
            (time.perf_counter() - t0) * 1000,
        )
        return result
