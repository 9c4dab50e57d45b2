"""Shared building blocks for expert toolkits.

Tools are described by :class:`ToolDefinition` and return typed
:class:`ToolResult` models.  Only :meth:`ToolResult.to_content` turns a
result into the JSON string the model sees.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterable
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ToolValidationError(Exception):
    """A tool was called with missing or unusable arguments.

    The message is written for the model: it says what was wrong and
    what to do next.
    """


# ── Definitions ──────────────────────────────────────────────────────


class ToolParameter(BaseModel):
    type: Literal["string", "number", "integer", "boolean", "array"]
    description: str
    required: bool = False
    items: Literal["string"] | None = None


class ToolDefinition(BaseModel, frozen=True):
    """Static description of one tool, re-sent with every provider call."""

    name: str
    description: str
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)

    def to_provider_schema(self) -> dict[str, Any]:
        """Anthropic tool format (``name``/``description``/``input_schema``)."""
        properties: dict[str, Any] = {}
        for name, param in self.parameters.items():
            prop: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.items:
                prop["items"] = {"type": param.items}
            properties[name] = prop
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": {
                "type": "object",
                "properties": properties,
                "required": [n for n, p in self.parameters.items() if p.required],
            },
        }


# ── Results ──────────────────────────────────────────────────────────


class ToolResult(BaseModel):
    """Base for every tool result; ``tool`` names the variant."""

    tool: str
    success: bool = True

    def to_content(self) -> str:
        return self.model_dump_json(exclude_none=True)


class ToolFailure(ToolResult):
    """Structured error handed back to the model so it can self-correct."""

    success: bool = False
    error: str
    suggestion: str
    retry_suggestion: str


def remediation_hint(error: Exception | str, lookup_tool: str) -> tuple[str, str]:
    """Pick ``(suggestion, retry_suggestion)`` for a failed tool call."""
    text = str(error)
    lowered = text.lower()

    if "not found" in lowered or "ambiguous" in lowered:
        return (
            f"Call {lookup_tool} to find the exact name or address.",
            "Retry with the exact value returned by the lookup.",
        )
    if "403" in text or "forbidden" in lowered:
        return (
            "The account lacks permission for this operation. "
            "An administrator must grant access (or delegate access to that calendar).",
            "Do not retry until permissions are fixed.",
        )
    if "401" in text or "unauthorized" in lowered:
        return (
            "Authentication failed. Please sign out and sign in again.",
            "Do not retry until the user has signed in again.",
        )
    return (
        "Check the arguments and explain the problem to the user if it persists.",
        "You may retry with corrected parameters.",
    )


def failure_from(tool: str, error: Exception, lookup_tool: str) -> ToolFailure:
    suggestion, retry = remediation_hint(error, lookup_tool)
    return ToolFailure(tool=tool, error=str(error), suggestion=suggestion, retry_suggestion=retry)


# ── Name matching ────────────────────────────────────────────────────


def match_by_name(query: str, items: Iterable[T], name_of: Callable[[T], str]) -> list[T]:
    """Exact case-insensitive matches, or substring matches when there are none."""
    needle = " ".join(query.lower().split())
    if not needle:
        return []
    pool = list(items)
    exact = [item for item in pool if name_of(item).lower() == needle]
    if exact:
        return exact
    return [item for item in pool if needle in name_of(item).lower()]


# ── Toolkit ──────────────────────────────────────────────────────────


class Toolkit:
    """A fixed set of tools plus their dispatcher.

    Subclasses list their ``definitions`` and implement one coroutine
    method per tool, named after the tool.
    """

    definitions: tuple[ToolDefinition, ...] = ()
    # Tool the model should call when a name cannot be resolved
    lookup_tool: str = ""

    @property
    def tool_names(self) -> set[str]:
        return {d.name for d in self.definitions}

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run one tool call.  Raises on failure; callers turn that into a ToolFailure."""
        if name not in self.tool_names:
            raise ToolValidationError(f"Unknown tool {name!r}.")
        handler = getattr(self, name)
        try:
            inspect.signature(handler).bind(**arguments)
        except TypeError as exc:
            raise ToolValidationError(f"Invalid arguments for {name}: {exc}") from exc
        return await handler(**arguments)
