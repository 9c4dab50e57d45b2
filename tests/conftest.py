"""Shared test fixtures for the Billi test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessageChunk


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("BUSINESS_TIMEZONE", "America/New_York")


# ── Scripted chat model ──────────────────────────────────────────────


class FakeChatModel:
    """Stands in for ChatAnthropic: replays scripted replies.

    ``responses`` feed ``ainvoke`` (an Exception instance is raised instead
    of returned); each entry of ``streams`` feeds one ``astream`` call.
    Every call is recorded with the ``tool_choice`` of the binding used.
    """

    def __init__(self, responses=(), streams=()):
        self.responses = list(responses)
        self.streams = list(streams)
        self.bound_tools: list[list[dict]] = []
        self.invocations: list[tuple[object, list]] = []
        self.stream_calls: list[tuple[object, list]] = []

    def bind_tools(self, tools, tool_choice=None, **kwargs):
        self.bound_tools.append(list(tools))
        return _BoundFakeChatModel(self, tool_choice)


class _BoundFakeChatModel:
    def __init__(self, parent: FakeChatModel, tool_choice):
        self._parent = parent
        self.tool_choice = tool_choice

    async def ainvoke(self, messages, **kwargs):
        self._parent.invocations.append((self.tool_choice, list(messages)))
        reply = self._parent.responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def astream(self, messages, **kwargs):
        self._parent.stream_calls.append((self.tool_choice, list(messages)))
        chunks = self._parent.streams.pop(0) if self._parent.streams else []
        if isinstance(chunks, Exception):
            raise chunks
        for text in chunks:
            yield AIMessageChunk(content=text)


@pytest.fixture
def fake_llm():
    """Factory fixture: ``fake_llm(responses=[...], streams=[[...]])``."""
    return FakeChatModel


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
