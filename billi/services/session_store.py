"""Per-session conversation history.

The store is the source of truth for a session's messages between
requests.  Messages are the ``langchain_core`` message classes: assistant
tool calls live on ``AIMessage.tool_calls`` and each result is a
``ToolMessage`` whose ``tool_call_id`` points back at its call.

Concurrent requests for the same session id are not serialised: both read,
both write, and the later write wins.
"""

from __future__ import annotations

import logging
from typing import Protocol

from langchain_core.messages import AnyMessage, HumanMessage

from billi.config import SESSION_MAX_MESSAGES, SESSION_TTL_SECONDS
from billi.services.cache import TTLCache

logger = logging.getLogger(__name__)

_KEY_PREFIX = "session:"


def window_history(messages: list[AnyMessage], limit: int) -> list[AnyMessage]:
    """Return at most *limit* trailing messages, starting on a user turn.

    Cutting a history in the middle of a tool round would leave tool
    results whose call is gone, so the window is advanced to the first
    ``HumanMessage`` inside it.  When the window holds no user turn at all,
    the window starts at the latest user turn instead, even if that
    exceeds *limit*.
    """
    window = messages[-limit:] if limit > 0 else []
    for index, message in enumerate(window):
        if isinstance(message, HumanMessage):
            return window[index:]
    for index in range(len(messages) - 1, -1, -1):
        if isinstance(messages[index], HumanMessage):
            return messages[index:]
    return []


class SessionStore(Protocol):
    """Async storage for conversation histories, keyed by session id."""

    async def get(self, session_id: str) -> list[AnyMessage]: ...

    async def put(self, session_id: str, messages: list[AnyMessage]) -> None: ...

    async def delete(self, session_id: str) -> None: ...


class InMemorySessionStore:
    """Process-local store backed by a :class:`TTLCache`.

    Sessions expire after ``SESSION_TTL_SECONDS`` without a write and keep
    at most ``max_messages`` messages.
    """

    def __init__(
        self,
        cache: TTLCache | None = None,
        *,
        max_messages: int = SESSION_MAX_MESSAGES,
    ) -> None:
        self._cache = cache if cache is not None else TTLCache(ttl_seconds=SESSION_TTL_SECONDS)
        self._max_messages = max_messages

    async def get(self, session_id: str) -> list[AnyMessage]:
        """Return a copy of the session's messages (empty for unknown sessions)."""
        return list(self._cache.get(_KEY_PREFIX + session_id) or [])

    async def put(self, session_id: str, messages: list[AnyMessage]) -> None:
        """Replace the session's messages, trimming to the newest ``max_messages``."""
        kept = messages
        if len(messages) > self._max_messages:
            kept = window_history(messages, self._max_messages)
            logger.debug(
                "Session %s trimmed from %d to %d messages",
                session_id, len(messages), len(kept),
            )
        self._cache.put(_KEY_PREFIX + session_id, list(kept))

    async def delete(self, session_id: str) -> None:
        """Forget the session."""
        if self._cache.delete(_KEY_PREFIX + session_id):
            logger.info("Cleared history for session %s", session_id)

    def session_ids(self) -> list[str]:
        """Ids of sessions that have not expired."""
        return [k[len(_KEY_PREFIX):] for k in self._cache.keys() if k.startswith(_KEY_PREFIX)]

    def prune(self) -> int:
        """Drop expired sessions.  Returns count removed."""
        return self._cache.prune()
