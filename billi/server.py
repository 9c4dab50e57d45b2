"""FastAPI server for the Billi assistant.

Run with:
    uv run uvicorn billi.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from billi.api.routes import router
from billi.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT, SESSION_TTL_SECONDS
from billi.router import MoERouter
from billi.services.accounting_client import ROSTER_TTL_SECONDS, AccountingClient
from billi.services.cache import TTLCache
from billi.services.graph_client import DIRECTORY_TTL_SECONDS, GraphClient, GraphTokenProvider
from billi.services.session_store import InMemorySessionStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the caches, clients and router once per process.

    Each cache is created here and handed to the component that owns its
    concern, so nothing keeps module-level mutable state.
    """
    logger.info("Building MoE router…")
    graph_client = GraphClient(
        GraphTokenProvider(cache=TTLCache(ttl_seconds=3600)),
        cache=TTLCache(ttl_seconds=DIRECTORY_TTL_SECONDS),
    )
    accounting_client = AccountingClient(cache=TTLCache(ttl_seconds=ROSTER_TTL_SECONDS))
    application.state.moe_router = MoERouter(
        session_store=InMemorySessionStore(TTLCache(ttl_seconds=SESSION_TTL_SECONDS)),
        graph_client=graph_client,
        accounting_client=accounting_client,
    )
    logger.info("Router ready.")
    yield
    await graph_client.aclose()
    await accounting_client.aclose()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Billi Assistant",
    description="Mixture-of-experts assistant for scheduling and time entry.",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the web frontend) ──────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header so clients
    can quote it when reporting a problem.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Billi Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "stream": "/api/chat/stream",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Billi API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "billi.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
