"""Tests for message classification.

Covers:
  - Fast-path pattern matching (no LLM call)
  - Parsing of the classifier's JSON answer
  - LLM fallback and its failure mode
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from billi.classifier import (
    LOW_CONFIDENCE,
    MIXED_INTENT,
    Category,
    MoEClassifier,
    has_scheduling_intent,
    has_time_entry_intent,
    parse_classification,
    quick_classify,
)


def _classifier_llm(content: str | list = "", error: Exception | None = None) -> MagicMock:
    llm = MagicMock()
    if error is not None:
        llm.ainvoke = AsyncMock(side_effect=error)
    else:
        llm.ainvoke = AsyncMock(return_value=AIMessage(content=content))
    return llm


# ── Fast path ────────────────────────────────────────────────────────


class TestQuickClassify:
    """Keyword patterns resolve common messages without a model call."""

    def test_availability_question_is_appointments(self):
        result = quick_classify("When is Jordan available next Friday?")
        assert result.category == Category.APPOINTMENTS
        assert result.confidence >= 0.9

    def test_book_meeting_is_appointments(self):
        result = quick_classify("Please book a meeting with Alex tomorrow at 2pm")
        assert result.category == Category.APPOINTMENTS

    def test_time_entry_is_billing(self):
        result = quick_classify("Log 3 hours for Acme Corp on the website redesign")
        assert result.category == Category.BILLING
        assert result.confidence == 0.95

    def test_billable_keyword_without_time_words_is_billing(self):
        result = quick_classify("Is that billable?")
        assert result.category == Category.BILLING
        assert result.confidence == 0.9

    def test_mixed_intent_is_flagged(self):
        result = quick_classify("Check Jordan's availability and log 2 hours for Acme")
        assert result.category == Category.GENERAL
        assert result.reasoning == MIXED_INTENT

    def test_greeting(self):
        result = quick_classify("Hello there")
        assert result.category == Category.GENERAL
        assert result.confidence == 0.95

    def test_capability_question(self):
        assert quick_classify("What can you do?").category == Category.GENERAL

    def test_follow_up_has_no_fast_path(self):
        assert quick_classify("yes, the second one") is None

    def test_same_message_classifies_the_same(self):
        message = "Can you check my availability on Monday?"
        assert quick_classify(message) == quick_classify(message)

    def test_intent_helpers(self):
        assert has_time_entry_intent("submit 4 hrs")
        assert not has_time_entry_intent("what's on the calendar")
        assert has_scheduling_intent("Are you FREE at noon")
        assert not has_scheduling_intent("log time")


# ── Parsing ──────────────────────────────────────────────────────────


class TestParseClassification:
    def test_plain_json(self):
        result = parse_classification('{"category": "billing", "confidence": 0.7, "reasoning": "hours"}')
        assert result.category == Category.BILLING
        assert result.confidence == 0.7
        assert result.reasoning == "hours"

    def test_code_fences_are_stripped(self):
        raw = '```json\n{"category": "appointments", "confidence": 0.85}\n```'
        result = parse_classification(raw)
        assert result.category == Category.APPOINTMENTS
        assert result.confidence == 0.85

    def test_unknown_category_becomes_general(self):
        assert parse_classification('{"category": "weather", "confidence": 0.9}').category == Category.GENERAL

    def test_category_is_case_insensitive(self):
        assert parse_classification('{"category": "Billing", "confidence": 0.9}').category == Category.BILLING

    def test_confidence_is_clamped(self):
        assert parse_classification('{"category": "billing", "confidence": 1.7}').confidence == 1.0
        assert parse_classification('{"category": "billing", "confidence": -2}').confidence == 0.0

    def test_non_numeric_confidence_gets_low_default(self):
        result = parse_classification('{"category": "billing", "confidence": "high"}')
        assert result.confidence == LOW_CONFIDENCE

    def test_empty_response(self):
        result = parse_classification("   ")
        assert result.category == Category.GENERAL
        assert result.reasoning == "Empty response from classifier"

    def test_invalid_json(self):
        result = parse_classification("I think this is billing")
        assert result.category == Category.GENERAL
        assert result.confidence == LOW_CONFIDENCE
        assert result.reasoning == "Failed to parse classifier response"

    def test_json_that_is_not_an_object(self):
        assert parse_classification('["billing"]').reasoning == "Failed to parse classifier response"


# ── LLM fallback ─────────────────────────────────────────────────────


class TestMoEClassifier:
    @pytest.mark.asyncio
    async def test_fast_path_skips_the_llm(self):
        llm = _classifier_llm('{"category": "general", "confidence": 0.1}')
        result = await MoEClassifier(llm=llm).classify("Log 2 hours for Acme")
        assert result.category == Category.BILLING
        llm.ainvoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_used_when_no_pattern_matches(self):
        llm = _classifier_llm('{"category": "appointments", "confidence": 0.8, "reasoning": "follow-up"}')
        history = [
            HumanMessage(content="Book a meeting with Jordan"),
            AIMessage(content="Which time works for you?"),
        ]
        result = await MoEClassifier(llm=llm).classify("2pm works", history)

        assert result.category == Category.APPOINTMENTS
        assert result.confidence == 0.8
        prompt = llm.ainvoke.call_args[0][0][1].content
        assert "human: Book a meeting with Jordan" in prompt
        assert "ai: Which time works for you?" in prompt
        assert '"2pm works"' in prompt

    @pytest.mark.asyncio
    async def test_llm_failure_defaults_to_general(self):
        llm = _classifier_llm(error=RuntimeError("overloaded"))
        result = await MoEClassifier(llm=llm).classify_with_llm("hmm")
        assert result.category == Category.GENERAL
        assert result.confidence == LOW_CONFIDENCE
        assert result.reasoning == "Classification failed, defaulting to general"

    @pytest.mark.asyncio
    async def test_block_content_is_read(self):
        llm = _classifier_llm([{"type": "text", "text": '{"category": "billing", "confidence": 0.6}'}])
        result = await MoEClassifier(llm=llm).classify_with_llm("the usual")
        assert result.category == Category.BILLING
