"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    user_name: str | None = Field(None, max_length=200, description="Signed-in user's display name")
    user_email: str | None = Field(None, max_length=320, description="Signed-in user's email address")


class Classification(BaseModel):
    """How the router classified the message."""

    expert: str
    category: str
    confidence: float


class ChatResponse(BaseModel):
    """Complete (non-streamed) reply."""

    reply: str = Field(..., description="The assistant's response message")
    session_id: str = Field(..., description="The session ID for this conversation")
    classification: Classification | None = None


class ClearHistoryResponse(BaseModel):
    session_id: str
    cleared: bool = True


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "billi-moe-agent"
