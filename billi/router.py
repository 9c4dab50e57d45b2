"""Mixture-of-experts router.

Per request:

  classify (fast path, else LLM with recent history)
    → mixed intent?  → one clarifying question, no expert
    → pick expert    → ``[CLASSIFICATION:{json}]`` marker chunk
    → expert stream  → forwarded verbatim

Any exception after the empty-message check becomes one terminal
``[Error: ...]`` chunk, so the HTTP layer always gets a well-formed stream.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from enum import StrEnum
from typing import Any

from langchain_core.language_models import BaseChatModel

from billi.agent import (
    ExpertAgent,
    create_appointments_expert,
    create_billing_expert,
    create_unified_expert,
)
from billi.classifier import (
    MIXED_INTENT,
    Category,
    ClassificationResult,
    MoEClassifier,
    has_scheduling_intent,
    has_time_entry_intent,
    quick_classify,
)
from billi.config import CONFIDENCE_THRESHOLD
from billi.prompts import CurrentUser
from billi.services.accounting_client import AccountingClient
from billi.services.graph_client import GraphClient
from billi.services.session_store import SessionStore

logger = logging.getLogger(__name__)

HISTORY_FOR_CLASSIFICATION = 4

MIXED_INTENT_REPLY = (
    "I can help with either calendar scheduling or time entry in a single request. "
    "Which would you like to do first?"
)
GENERIC_ERROR_MESSAGE = "Sorry, something went wrong while processing your request. Please try again."

_MARKER_RE = re.compile(r"\[CLASSIFICATION:(.+?)\]\n?")


class ExpertTag(StrEnum):
    APPOINTMENTS = "appointments"
    BILLING = "billing"
    UNIFIED = "unified"


_SPECIALISTS = {
    Category.APPOINTMENTS: ExpertTag.APPOINTMENTS,
    Category.BILLING: ExpertTag.BILLING,
}


# ── Stream marker helpers ────────────────────────────────────────────


def format_classification_marker(expert: ExpertTag, result: ClassificationResult) -> str:
    payload = {
        "expert": expert.value,
        "category": result.category.value,
        "confidence": result.confidence,
    }
    return f"[CLASSIFICATION:{json.dumps(payload)}]\n"


def parse_classification_from_stream(chunk: str) -> dict[str, Any] | None:
    """Return the decoded classification marker in *chunk*, or ``None``."""
    match = _MARKER_RE.search(chunk or "")
    if not match:
        return None
    try:
        return json.loads(match.group(1))
    except json.JSONDecodeError:
        return None


def strip_classification_marker(text: str) -> str:
    return _MARKER_RE.sub("", text, count=1)


def error_chunk(message: str) -> str:
    return f"\n\n[Error: {message}]"


# ── Router ───────────────────────────────────────────────────────────


class MoERouter:
    """Classifies each message and streams the chosen expert's reply.

    Experts are built lazily, once per tag, and kept for the router's
    lifetime.  ``last_classification`` holds the most recent result for
    introspection only.
    """

    def __init__(
        self,
        *,
        session_store: SessionStore,
        graph_client: GraphClient,
        accounting_client: AccountingClient,
        llm: BaseChatModel | None = None,
        classifier: MoEClassifier | None = None,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
    ):
        self._store = session_store
        self._graph_client = graph_client
        self._accounting_client = accounting_client
        self._llm = llm
        self._classifier = classifier or MoEClassifier()
        self.confidence_threshold = confidence_threshold
        self._experts: dict[ExpertTag, ExpertAgent] = {}
        self.last_classification: ClassificationResult | None = None

    # ── Experts ──────────────────────────────────────────────────────

    def _factories(self) -> dict[ExpertTag, Callable[[], ExpertAgent]]:
        return {
            ExpertTag.APPOINTMENTS: lambda: create_appointments_expert(
                session_store=self._store, graph_client=self._graph_client, llm=self._llm,
            ),
            ExpertTag.BILLING: lambda: create_billing_expert(
                session_store=self._store, accounting_client=self._accounting_client, llm=self._llm,
            ),
            ExpertTag.UNIFIED: lambda: create_unified_expert(
                session_store=self._store,
                graph_client=self._graph_client,
                accounting_client=self._accounting_client,
                llm=self._llm,
            ),
        }

    def get_expert(self, tag: ExpertTag) -> ExpertAgent:
        expert = self._experts.get(tag)
        if expert is None:
            logger.info("Creating %s expert", tag)
            expert = self._factories()[tag]()
            self._experts[tag] = expert
        return expert

    # ── Classification ───────────────────────────────────────────────

    async def classify_message(self, message: str, session_id: str | None = None) -> ClassificationResult:
        result = quick_classify(message)
        if result is None:
            history = []
            if session_id:
                try:
                    history = (await self._store.get(session_id))[-HISTORY_FOR_CLASSIFICATION:]
                except Exception:
                    logger.warning("Could not load history for classification of %s", session_id, exc_info=True)
            result = await self._classifier.classify(message, history)
        self.last_classification = result
        return result

    def determine_expert(self, result: ClassificationResult) -> ExpertTag:
        """Specialised categories go to their expert, everything else to the unified expert.

        ``confidence_threshold`` does not change the outcome of any branch;
        a low score is only logged.
        """
        tag = _SPECIALISTS.get(result.category, ExpertTag.UNIFIED)
        if result.confidence < self.confidence_threshold:
            logger.info(
                "Low-confidence classification %.2f < %.2f (%s), routing to %s",
                result.confidence, self.confidence_threshold, result.category, tag,
            )
        return tag

    # ── Streaming entry point ────────────────────────────────────────

    async def handle_request_stream(
        self,
        message: str,
        session_id: str,
        *,
        user: CurrentUser | None = None,
    ) -> AsyncIterator[str]:
        if not message or not message.strip():
            yield "[Error: Message is required]"
            return

        try:
            classification = await self.classify_message(message, session_id)

            if (
                classification.reasoning == MIXED_INTENT
                and has_scheduling_intent(message)
                and has_time_entry_intent(message)
            ):
                logger.info("Mixed intent in session %s, asking which to do first", session_id)
                yield MIXED_INTENT_REPLY
                return

            tag = self.determine_expert(classification)
            logger.info(
                "Routing session %s to %s (category=%s, confidence=%.2f)",
                session_id, tag, classification.category, classification.confidence,
            )
            yield format_classification_marker(tag, classification)

            expert = self.get_expert(tag)
            # Closing this stream closes the expert stream too, so its history is saved
            async with aclosing(expert.handle_request_stream(message, session_id, user=user)) as chunks:
                async for chunk in chunks:
                    yield chunk

        except Exception:
            logger.exception("Error handling request for session %s", session_id)
            yield error_chunk(GENERIC_ERROR_MESSAGE)

    async def clear_history(self, session_id: str) -> None:
        await self._store.delete(session_id)
