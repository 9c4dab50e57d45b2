"""Async HTTP client for the Microsoft Graph directory and calendar APIs.

Graph docs: https://learn.microsoft.com/graph/api/overview
Requests carry an app-only bearer token obtained with the client-credentials
flow (or a pre-issued ``GRAPH_ACCESS_TOKEN`` for local work).
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel

from billi.config import (
    GRAPH_ACCESS_TOKEN,
    GRAPH_BASE_URL,
    GRAPH_CLIENT_ID,
    GRAPH_CLIENT_SECRET,
    GRAPH_TENANT_ID,
)
from billi.services.cache import TTLCache

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

MAX_PAGES = 50
DIRECTORY_TTL_SECONDS = 5 * 60
TOKEN_EXPIRY_MARGIN_SECONDS = 60

_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
_GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# ── Cache keys ──────────────────────────────────────────────────────
_CK_DIRECTORY = "graph:directory"
_CK_TOKEN = "graph:token"

# Graph returns 7 fractional digits; fromisoformat wants at most 6
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class GraphAPIError(Exception):
    """Raised when a Graph call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# ── Payload models ───────────────────────────────────────────────────


class DirectoryEntry(BaseModel):
    display_name: str
    address: str


class CalendarEvent(BaseModel):
    subject: str
    start: datetime
    end: datetime
    is_all_day: bool = False


class EventRequest(BaseModel):
    subject: str
    start: datetime
    end: datetime
    attendees: list[str]
    body: str = ""
    conferencing_enabled: bool = True


class CreatedEvent(BaseModel):
    id: str
    subject: str
    start: datetime
    end: datetime
    join_url: str | None = None


def parse_graph_datetime(value: dict[str, Any]) -> datetime:
    """Convert a Graph ``{dateTime, timeZone}`` pair into an aware UTC datetime."""
    raw = _FRACTION_RE.sub(r"\1", value["dateTime"])
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        zone_name = value.get("timeZone") or "UTC"
        try:
            zone = UTC if zone_name == "UTC" else ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown Graph timezone %r, assuming UTC", zone_name)
            zone = UTC
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(UTC)


def _graph_datetime(instant: datetime) -> dict[str, str]:
    return {"dateTime": instant.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"}


# ── Authentication ───────────────────────────────────────────────────


class GraphTokenProvider:
    """Supplies bearer tokens, caching client-credential tokens until shortly before expiry."""

    def __init__(
        self,
        *,
        tenant_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        static_token: str | None = None,
        cache: TTLCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._tenant_id = tenant_id or GRAPH_TENANT_ID
        self._client_id = client_id or GRAPH_CLIENT_ID
        self._client_secret = client_secret or GRAPH_CLIENT_SECRET
        self._static_token = static_token or GRAPH_ACCESS_TOKEN
        self._cache = cache if cache is not None else TTLCache(ttl_seconds=3600)
        self._http = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)

    async def get_token(self) -> str:
        if self._static_token:
            return self._static_token

        cached = self._cache.get(_CK_TOKEN)
        if cached:
            return cached

        if not (self._tenant_id and self._client_id and self._client_secret):
            raise GraphAPIError(
                "Microsoft Graph credentials are not configured "
                "(GRAPH_TENANT_ID, GRAPH_CLIENT_ID, GRAPH_CLIENT_SECRET)."
            )

        response = await self._http.post(
            _TOKEN_URL.format(tenant=self._tenant_id),
            data={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": _GRAPH_SCOPE,
            },
        )
        if response.status_code >= 400:
            raise GraphAPIError(
                f"Token request failed {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        payload = response.json()
        token = payload["access_token"]
        lifetime = float(payload.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN_SECONDS
        self._cache.put(_CK_TOKEN, token, ttl_seconds=max(lifetime, 0))
        logger.debug("Fetched Graph app token (valid %.0fs)", lifetime)
        return token

    async def aclose(self) -> None:
        await self._http.aclose()


# ── Client ───────────────────────────────────────────────────────────


class GraphClient:
    """Directory, calendar-view and event-creation calls with retries.

    The directory listing is cached for ``DIRECTORY_TTL_SECONDS``; calendar
    reads and writes always go to Graph.
    """

    def __init__(
        self,
        token_provider: GraphTokenProvider | None = None,
        base_url: str | None = None,
        *,
        cache: TTLCache | None = None,
    ):
        self._tokens = token_provider or GraphTokenProvider()
        self._client = httpx.AsyncClient(
            base_url=base_url or GRAPH_BASE_URL,
            headers={"Content-Type": "application/json"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._cache = cache if cache is not None else TTLCache(ttl_seconds=DIRECTORY_TTL_SECONDS)

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        token = await self._tokens.get_token()
        request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}

        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = await self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers=request_headers,
                )
                if response.status_code >= 400:
                    raise GraphAPIError(
                        _describe_error(response),
                        status_code=response.status_code,
                    )
                logger.debug(
                    "Graph %s %s → %d (%.0fms)",
                    method, path, response.status_code, (time.perf_counter() - t0) * 1000,
                )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Graph API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except GraphAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Graph API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise GraphAPIError(
            f"Microsoft Graph request failed after {MAX_RETRIES} retries: {last_error}"
        )

    async def _paginate(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """Collect ``value`` items across ``@odata.nextLink`` pages."""
        items: list[dict[str, Any]] = []
        url: str | None = path
        page_params = params
        for _ in range(MAX_PAGES):
            data = await self._request("GET", url, params=page_params, headers=headers)
            items.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
            if not url:
                return items
            # The next link already carries every query parameter
            page_params = None
        logger.warning("Stopped paging %s after %d pages", path, MAX_PAGES)
        return items

    # ── Public API methods ───────────────────────────────────────────

    async def list_users(self) -> list[DirectoryEntry]:
        """Everyone in the directory with a usable address (cached)."""
        cached = self._cache.get(_CK_DIRECTORY)
        if cached is not None:
            logger.debug("Cache hit: directory (%d entries)", len(cached))
            return cached

        raw_users = await self._paginate(
            "/users",
            params={"$select": "id,displayName,mail,userPrincipalName", "$top": "999"},
        )
        entries = [
            DirectoryEntry(
                display_name=user.get("displayName") or address,
                address=address,
            )
            for user in raw_users
            if (address := user.get("mail") or user.get("userPrincipalName"))
        ]
        self._cache.put(_CK_DIRECTORY, entries)
        logger.info("Loaded %d directory entries from Graph", len(entries))
        return entries

    async def get_calendar_view(
        self, address: str, start: datetime, end: datetime,
    ) -> list[CalendarEvent]:
        """Events overlapping ``[start, end)`` on *address*'s calendar, in UTC."""
        raw_events = await self._paginate(
            f"/users/{address}/calendarView",
            params={
                "startDateTime": start.astimezone(UTC).isoformat().replace("+00:00", "Z"),
                "endDateTime": end.astimezone(UTC).isoformat().replace("+00:00", "Z"),
                "$select": "subject,start,end,isAllDay,showAs",
                "$top": "500",
            },
            headers={"Prefer": 'outlook.timezone="UTC"'},
        )
        return [
            CalendarEvent(
                subject=event.get("subject") or "(no subject)",
                start=parse_graph_datetime(event["start"]),
                end=parse_graph_datetime(event["end"]),
                is_all_day=bool(event.get("isAllDay")),
            )
            for event in raw_events
        ]

    async def create_event(self, organizer: str, request: EventRequest) -> CreatedEvent:
        """Create an event on *organizer*'s calendar and invite the attendees."""
        body: dict[str, Any] = {
            "subject": request.subject,
            "body": {"contentType": "HTML", "content": request.body},
            "start": _graph_datetime(request.start),
            "end": _graph_datetime(request.end),
            "attendees": [
                {"emailAddress": {"address": address}, "type": "required"}
                for address in request.attendees
            ],
        }
        if request.conferencing_enabled:
            body["isOnlineMeeting"] = True
            body["onlineMeetingProvider"] = "teamsForBusiness"

        data = await self._request("POST", f"/users/{organizer}/events", json_body=body)
        logger.info("Created event %s on %s's calendar", data.get("id"), organizer)
        return CreatedEvent(
            id=data["id"],
            subject=data.get("subject") or request.subject,
            start=parse_graph_datetime(data["start"]) if "start" in data else request.start,
            end=parse_graph_datetime(data["end"]) if "end" in data else request.end,
            join_url=(data.get("onlineMeeting") or {}).get("joinUrl"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._tokens.aclose()


def _describe_error(response: httpx.Response) -> str:
    """Build ``Microsoft Graph API error (status - code): message`` from a response."""
    code = "Unknown"
    message = response.text
    try:
        error = response.json().get("error", {})
        code = error.get("code", code)
        message = error.get("message", message)
    except ValueError:
        pass
    return f"Microsoft Graph API error ({response.status_code} - {code}): {message}"
