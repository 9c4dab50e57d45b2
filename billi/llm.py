"""Chat model builders shared by the classifier and the experts."""

from __future__ import annotations

from typing import Any

from langchain_anthropic import ChatAnthropic

from billi.config import ANTHROPIC_API_KEY, CLASSIFIER_MODEL_NAME, MODEL_NAME

# Passed as ``tool_choice`` on the follow-up call: tools stay declared
# (the history contains tool_use blocks) but the model may not call them.
TOOL_CHOICE_NONE: dict[str, str] = {"type": "none"}


class ProviderError(Exception):
    """A chat-model call failed (network, rate limit, malformed response)."""


def build_chat_model() -> ChatAnthropic:
    """Build the expert model used for tool calling and final answers."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,  # Low temperature for consistent tool arguments
        max_tokens=1024,
    )


def build_classifier_model() -> ChatAnthropic:
    """Build a lightweight Haiku model for message classification (no tools)."""
    return ChatAnthropic(
        model=CLASSIFIER_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,  # Deterministic classification
        max_tokens=200,   # A short JSON object
    )


def message_text(content: Any) -> str:
    """Extract the plain text from a message's ``content``.

    Anthropic responses (and streamed chunks) may carry a list of content
    blocks instead of a string; only ``text`` blocks are kept.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)
