"""Centralized configuration for the Billi assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/billi/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import, only needed on AWS

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/billi/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /billi/{name} (AWS)."
    )


def _optional_env(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` when the value is absent.

    Used for integrations that are only needed once a tool touches them.
    """
    try:
        return _require_env(name)
    except OSError:
        return None


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Classification is a short JSON answer, so a cheap model is enough
CLASSIFIER_MODEL_NAME: str = os.getenv("CLASSIFIER_MODEL_NAME", "claude-haiku-4-5")

# ── Routing ─────────────────────────────────────────────────────────
# Kept as an extension point: no routing branch consults it today.
CONFIDENCE_THRESHOLD: float = float(os.getenv("CONFIDENCE_THRESHOLD", "0.80"))

# ── Business calendar ───────────────────────────────────────────────
BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "America/New_York")
BUSINESS_HOURS_START: int = int(os.getenv("BUSINESS_HOURS_START", "9"))
BUSINESS_HOURS_END: int = int(os.getenv("BUSINESS_HOURS_END", "17"))

# ── Sessions ────────────────────────────────────────────────────────
SESSION_TTL_SECONDS: float = float(os.getenv("SESSION_TTL_SECONDS", str(2 * 60 * 60)))
SESSION_MAX_MESSAGES: int = int(os.getenv("SESSION_MAX_MESSAGES", "100"))
HISTORY_WINDOW_MESSAGES: int = int(os.getenv("HISTORY_WINDOW_MESSAGES", "40"))

# ── Microsoft Graph (directory + calendar) ──────────────────────────
GRAPH_BASE_URL: str = os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0")
GRAPH_TENANT_ID: str | None = _optional_env("GRAPH_TENANT_ID")
GRAPH_CLIENT_ID: str | None = _optional_env("GRAPH_CLIENT_ID")
GRAPH_CLIENT_SECRET: str | None = _optional_env("GRAPH_CLIENT_SECRET")
# A pre-issued bearer token wins over client credentials (handy locally)
GRAPH_ACCESS_TOKEN: str | None = _optional_env("GRAPH_ACCESS_TOKEN")

# ── Accounting / time entry ─────────────────────────────────────────
ACCOUNTING_API_URL: str | None = _optional_env("ACCOUNTING_API_URL")
TIME_ENTRY_WEBHOOK_URL: str | None = _optional_env("TIME_ENTRY_WEBHOOK_URL")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
