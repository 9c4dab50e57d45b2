"""FastAPI route definitions for the Billi assistant API."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from billi.api.schemas import (
    ChatRequest,
    ChatResponse,
    Classification,
    ClearHistoryResponse,
    HealthResponse,
)
from billi.prompts import CurrentUser
from billi.router import MoERouter, parse_classification_from_stream, strip_classification_marker

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_router(request: Request) -> MoERouter:
    """Retrieve the MoE router from app state (set up by the lifespan)."""
    moe_router = getattr(request.app.state, "moe_router", None)
    if moe_router is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return moe_router


def _current_user(request: ChatRequest) -> CurrentUser | None:
    if request.user_name or request.user_email:
        return CurrentUser(name=request.user_name, address=request.user_email)
    return None


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message and wait for the complete reply.

    The classification marker is removed from the reply text and
    returned separately.
    """
    moe_router = _get_router(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        chunks = [
            chunk
            async for chunk in moe_router.handle_request_stream(
                request.message, request.session_id, user=_current_user(request),
            )
        ]
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    text = "".join(chunks)
    marker = parse_classification_from_stream(text)
    return ChatResponse(
        reply=strip_classification_marker(text).strip(),
        session_id=request.session_id,
        classification=Classification(**marker) if marker else None,
    )


@router.post("/chat/stream")
async def chat_stream(request: ChatRequest, http_request: Request):
    """Stream the reply as server-sent events.

    Every chunk is ``data: {"chunk": "..."}``; the stream ends with
    ``data: {"done": true}``.  When the client disconnects, Starlette
    cancels the generator and the in-flight model call with it.
    """
    moe_router = _get_router(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    async def events() -> AsyncIterator[str]:
        try:
            async for chunk in moe_router.handle_request_stream(
                request.message, request.session_id, user=_current_user(request),
            ):
                yield _sse({"chunk": chunk})
            yield _sse({"done": True})
        except Exception:
            logger.exception("[%s] Error while streaming", request_id)
            yield _sse({"error": "An internal error occurred. Please try again."})

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/sessions/{session_id}", response_model=ClearHistoryResponse)
async def clear_session(session_id: str, http_request: Request):
    """Forget the conversation history for a session."""
    moe_router = _get_router(http_request)
    await moe_router.clear_history(session_id)
    return ClearHistoryResponse(session_id=session_id)
