"""LangGraph tool-calling loop shared by every Billi expert.

Architecture:
  Each expert compiles one StateGraph with three nodes:

    1. **model**   — the chat model with the expert's tools bound
                     (``tool_choice`` auto)
    2. **tools**   — runs the requested tool calls one after another, in
                     the order the model listed them
    3. **answer**  — one more model call with tool use disabled, streamed,
                     that turns the tool results into the reply

  Routing:
    model → (tool calls?)    → tools → (rounds left?) → model
                                     → (no rounds left?) → answer → END
          → (no tool calls?) → END

  The calendar expert allows a single tool round, so a request is always
  model → tools → answer.  Billing needs lookups before a submit and gets
  up to five rounds.

  Memory:
    History is loaded from the session store at the start of a request and
    written back at the end (also after a failed model call), so the
    graph itself runs without a checkpointer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import UTC, datetime
from typing import Annotated, Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.config import get_stream_writer
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from billi.config import HISTORY_WINDOW_MESSAGES
from billi.llm import TOOL_CHOICE_NONE, ProviderError, build_chat_model, message_text
from billi.prompts import (
    FINAL_ANSWER_INSTRUCTION,
    CurrentUser,
    build_billing_prompt,
    build_calendar_prompt,
    build_unified_prompt,
)
from billi.services.accounting_client import AccountingClient
from billi.services.graph_client import GraphClient
from billi.services.session_store import SessionStore, window_history
from billi.tools.base import ToolResult, Toolkit, ToolValidationError, failure_from
from billi.tools.billing import BillingToolkit
from billi.tools.calendar import CalendarToolkit

logger = logging.getLogger(__name__)

NO_REPLY_FALLBACK = "I received your message. How can I help you?"
TOOLS_OK_FALLBACK = "I've processed your request successfully. Is there anything else you need?"
TOOLS_FAILED_FALLBACK = (
    "I encountered an issue while processing your request. "
    "Could you check the details and try again?"
)


# ── State schema ─────────────────────────────────────────────────────


class ExpertState(TypedDict):
    """The state that flows through an expert's graph.

    ``messages`` uses the ``add_messages`` reducer so nodes append instead
    of overwriting.  ``system_prompt`` is rendered once per request (it
    carries the current date and signed-in user).
    """

    messages: Annotated[list[AnyMessage], add_messages]
    system_prompt: str
    tool_rounds: int
    failed_tools: int


# ── Conditional edges ────────────────────────────────────────────────


def should_use_tools(state: ExpertState) -> str:
    """Check if the last message has tool calls; if so, route to tools node."""
    last_message = state["messages"][-1]
    if isinstance(last_message, AIMessage) and last_message.tool_calls:
        return "tools"
    return END


# ── Expert agent ─────────────────────────────────────────────────────


class ExpertAgent:
    """A domain expert: a toolset, a prompt builder and the tool-calling graph."""

    def __init__(
        self,
        name: str,
        toolkits: Sequence[Toolkit],
        prompt_builder: Callable[[CurrentUser | None], str],
        *,
        session_store: SessionStore,
        llm: BaseChatModel | None = None,
        max_tool_rounds: int = 1,
        history_window: int = HISTORY_WINDOW_MESSAGES,
    ):
        self.name = name
        self._toolkits = list(toolkits)
        self._prompt_builder = prompt_builder
        self._store = session_store
        self._max_tool_rounds = max_tool_rounds
        self._history_window = history_window

        self._tool_owner: dict[str, Toolkit] = {}
        for toolkit in self._toolkits:
            for definition in toolkit.definitions:
                self._tool_owner[definition.name] = toolkit
        schemas = [d.to_provider_schema() for tk in self._toolkits for d in tk.definitions]

        llm = llm or build_chat_model()
        # Both bindings declare the same tools; only tool_choice differs
        self._llm_with_tools = llm.bind_tools(schemas, tool_choice="auto")
        self._llm_answer = llm.bind_tools(schemas, tool_choice=TOOL_CHOICE_NONE)
        self._graph = self._build_graph()

    @property
    def tool_names(self) -> list[str]:
        return list(self._tool_owner)

    # ── Nodes ────────────────────────────────────────────────────────

    def _provider_messages(self, state: ExpertState, extra_instruction: str = "") -> list[AnyMessage]:
        system = state["system_prompt"]
        if extra_instruction:
            system = f"{system}\n\n{extra_instruction}"
        return [SystemMessage(content=system), *window_history(state["messages"], self._history_window)]

    def _make_model_node(self):
        async def model_node(state: ExpertState) -> dict:
            """Call the model with tools available."""
            t0 = time.perf_counter()
            try:
                response = await self._llm_with_tools.ainvoke(self._provider_messages(state))
            except Exception as exc:
                raise ProviderError(f"{self.name} model call failed: {exc}") from exc
            logger.debug(
                "%s model responded in %.0fms (%d tool calls)",
                self.name, (time.perf_counter() - t0) * 1000, len(response.tool_calls),
            )

            if response.tool_calls:
                return {"messages": [response]}

            text = message_text(response.content).strip() or NO_REPLY_FALLBACK
            get_stream_writer()(text)
            return {"messages": [AIMessage(content=text)]}

        return model_node

    def _make_tools_node(self):
        async def tools_node(state: ExpertState) -> dict:
            """Run every requested tool call in order; one failure never aborts the rest."""
            last_message = state["messages"][-1]
            results: list[ToolMessage] = []
            failures = 0
            for call in last_message.tool_calls:
                result = await self._run_tool(call["name"], call.get("args") or {})
                if not result.success:
                    failures += 1
                results.append(
                    ToolMessage(
                        content=result.to_content(),
                        tool_call_id=call["id"],
                        name=call["name"],
                    )
                )
            return {
                "messages": results,
                "tool_rounds": state.get("tool_rounds", 0) + 1,
                "failed_tools": state.get("failed_tools", 0) + failures,
            }

        return tools_node

    def _make_answer_node(self):
        async def answer_node(state: ExpertState) -> dict:
            """Stream the final answer with tool use disabled."""
            writer = get_stream_writer()
            parts: list[str] = []
            t0 = time.perf_counter()
            try:
                async for chunk in self._llm_answer.astream(
                    self._provider_messages(state, FINAL_ANSWER_INSTRUCTION)
                ):
                    text = message_text(chunk.content)
                    if text:
                        parts.append(text)
                        writer(text)
            except Exception as exc:
                raise ProviderError(f"{self.name} answer call failed: {exc}") from exc
            logger.debug("%s answer streamed in %.0fms", self.name, (time.perf_counter() - t0) * 1000)

            answer = "".join(parts).strip()
            if not answer:
                answer = TOOLS_FAILED_FALLBACK if state.get("failed_tools") else TOOLS_OK_FALLBACK
                writer(answer)
            return {"messages": [AIMessage(content=answer)]}

        return answer_node

    def _after_tools(self, state: ExpertState) -> str:
        if state.get("tool_rounds", 0) < self._max_tool_rounds:
            return "model"
        return "answer"

    def _build_graph(self):
        graph = StateGraph(ExpertState)
        graph.add_node("model", self._make_model_node())
        graph.add_node("tools", self._make_tools_node())
        graph.add_node("answer", self._make_answer_node())

        graph.set_entry_point("model")
        graph.add_conditional_edges("model", should_use_tools, {"tools": "tools", END: END})
        graph.add_conditional_edges("tools", self._after_tools, {"model": "model", "answer": "answer"})
        graph.add_edge("answer", END)

        compiled = graph.compile()
        logger.debug(
            "%s expert compiled — tools: %d, max rounds: %d",
            self.name, len(self._tool_owner), self._max_tool_rounds,
        )
        return compiled

    # ── Tool dispatch ────────────────────────────────────────────────

    async def _run_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        toolkit = self._tool_owner.get(name)
        lookup_tool = toolkit.lookup_tool if toolkit else ""
        try:
            if toolkit is None:
                raise ToolValidationError(f"Unknown tool {name!r}.")
            result = await toolkit.execute(name, arguments)
            logger.info("Tool %s succeeded", name)
            return result
        except ToolValidationError as exc:
            logger.info("Tool %s rejected its arguments: %s", name, exc)
            return failure_from(name, exc, lookup_tool)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return failure_from(name, exc, lookup_tool)

    # ── Session history ──────────────────────────────────────────────

    async def _load_history(self, session_id: str) -> list[AnyMessage]:
        try:
            return await self._store.get(session_id)
        except Exception:
            logger.warning("Could not load history for %s; continuing without it", session_id, exc_info=True)
            return []

    async def _save_history(self, session_id: str, messages: list[AnyMessage]) -> None:
        try:
            await self._store.put(session_id, messages)
        except Exception:
            logger.warning("Could not save history for %s", session_id, exc_info=True)

    async def clear_history(self, session_id: str) -> None:
        await self._store.delete(session_id)

    # ── Entry point ──────────────────────────────────────────────────

    async def handle_request_stream(
        self,
        message: str,
        session_id: str,
        *,
        user: CurrentUser | None = None,
    ) -> AsyncIterator[str]:
        """Run one request through the graph, yielding reply text as it is produced.

        History is persisted however the stream ends, including a
        ``ProviderError`` (re-raised afterwards) or the consumer closing the
        stream early after a client disconnect.
        """
        history = await self._load_history(session_id)
        user_turn = HumanMessage(
            content=message,
            additional_kwargs={"timestamp": datetime.now(UTC).isoformat()},
        )
        messages: list[AnyMessage] = [*history, user_turn]
        state: ExpertState = {
            "messages": messages,
            "system_prompt": self._prompt_builder(user),
            "tool_rounds": 0,
            "failed_tools": 0,
        }

        try:
            async for mode, payload in self._graph.astream(state, stream_mode=["custom", "values"]):
                if mode == "custom":
                    yield payload
                else:
                    messages = payload["messages"]
        finally:
            await self._save_history(session_id, messages)


# ── Expert factories ─────────────────────────────────────────────────


def create_appointments_expert(
    *, session_store: SessionStore, graph_client: GraphClient, llm: BaseChatModel | None = None,
) -> ExpertAgent:
    return ExpertAgent(
        "appointments",
        [CalendarToolkit(graph_client)],
        build_calendar_prompt,
        session_store=session_store,
        llm=llm,
        max_tool_rounds=1,
    )


def create_billing_expert(
    *,
    session_store: SessionStore,
    accounting_client: AccountingClient,
    llm: BaseChatModel | None = None,
) -> ExpertAgent:
    return ExpertAgent(
        "billing",
        [BillingToolkit(accounting_client)],
        build_billing_prompt,
        session_store=session_store,
        llm=llm,
        max_tool_rounds=5,
    )


def create_unified_expert(
    *,
    session_store: SessionStore,
    graph_client: GraphClient,
    accounting_client: AccountingClient,
    llm: BaseChatModel | None = None,
) -> ExpertAgent:
    return ExpertAgent(
        "unified",
        [CalendarToolkit(graph_client), BillingToolkit(accounting_client)],
        build_unified_prompt,
        session_store=session_store,
        llm=llm,
        max_tool_rounds=5,
    )
