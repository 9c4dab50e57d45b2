"""Tests for the Microsoft Graph client and token provider."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from billi.services.cache import TTLCache
from billi.services.graph_client import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    EventRequest,
    GraphAPIError,
    GraphClient,
    GraphTokenProvider,
    parse_graph_datetime,
)

# ── Helpers ──────────────────────────────────────────────────────────


def _client(cache: TTLCache | None = None) -> GraphClient:
    return GraphClient(
        GraphTokenProvider(static_token="test-token"),
        base_url="https://graph.test/v1.0",
        cache=cache,
    )


# ── Tests: parsing ───────────────────────────────────────────────────


class TestParseGraphDatetime:
    def test_seven_digit_fraction_in_utc(self):
        parsed = parse_graph_datetime({"dateTime": "2026-01-16T15:00:00.0000000", "timeZone": "UTC"})
        assert parsed == datetime(2026, 1, 16, 15, 0, tzinfo=UTC)

    def test_named_timezone(self):
        parsed = parse_graph_datetime({"dateTime": "2026-01-16T10:00:00", "timeZone": "America/New_York"})
        assert parsed == datetime(2026, 1, 16, 15, 0, tzinfo=UTC)


# ── Tests: token provider ────────────────────────────────────────────


class TestGraphTokenProvider:
    @pytest.mark.asyncio
    async def test_static_token_wins(self):
        provider = GraphTokenProvider(static_token="static", tenant_id="t", client_id="c", client_secret="s")
        assert await provider.get_token() == "static"

    @pytest.mark.asyncio
    async def test_client_credentials_token_is_cached(self, mock_http_response):
        http = MagicMock()
        http.post = AsyncMock(return_value=mock_http_response({"access_token": "abc", "expires_in": 3600}))
        provider = GraphTokenProvider(tenant_id="t", client_id="c", client_secret="s", http_client=http)

        assert await provider.get_token() == "abc"
        assert await provider.get_token() == "abc"
        assert http.post.await_count == 1
        assert http.post.await_args.kwargs["data"]["grant_type"] == "client_credentials"

    @pytest.mark.asyncio
    async def test_token_refetched_after_expiry(self, mock_http_response, clock):
        http = MagicMock()
        http.post = AsyncMock(return_value=mock_http_response({"access_token": "abc", "expires_in": 120}))
        provider = GraphTokenProvider(
            tenant_id="t", client_id="c", client_secret="s",
            http_client=http, cache=TTLCache(ttl_seconds=3600, clock=clock),
        )

        await provider.get_token()
        clock.advance(61)  # lifetime minus the one-minute margin
        await provider.get_token()
        assert http.post.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        provider = GraphTokenProvider(http_client=MagicMock())
        with pytest.raises(GraphAPIError, match="credentials are not configured"):
            await provider.get_token()


# ── Tests: requests and retries ──────────────────────────────────────


class TestRequestRetries:
    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, mock_http_response):
        client = _client()
        with patch.object(
            client._client, "request", new_callable=AsyncMock,
            return_value=mock_http_response({"value": []}),
        ) as mock_req:
            await client.list_users()
        assert mock_req.await_args.kwargs["headers"]["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_retries_connection_errors(self, mock_http_response):
        client = _client()
        ok = mock_http_response({"value": [{"displayName": "Alex Doe", "mail": "alex.doe@example.com"}]})
        with (
            patch.object(
                client._client, "request", new_callable=AsyncMock,
                side_effect=[httpx.ConnectError("refused"), ok],
            ) as mock_req,
            patch("billi.services.graph_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            users = await client.list_users()
        assert [u.address for u in users] == ["alex.doe@example.com"]
        assert mock_req.await_count == 2
        mock_sleep.assert_awaited_once_with(INITIAL_BACKOFF_SECONDS)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, mock_http_response):
        client = _client()
        with (
            patch.object(
                client._client, "request", new_callable=AsyncMock,
                return_value=mock_http_response({"error": {"code": "ServiceUnavailable", "message": "busy"}}, 503),
            ) as mock_req,
            patch("billi.services.graph_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            with pytest.raises(GraphAPIError, match=f"failed after {MAX_RETRIES} retries"):
                await client.list_users()
        assert mock_req.await_count == MAX_RETRIES
        assert mock_sleep.await_count == MAX_RETRIES - 1

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, mock_http_response):
        client = _client()
        not_found = mock_http_response(
            {"error": {"code": "ErrorItemNotFound", "message": "The specified object was not found."}}, 404,
        )
        with patch.object(client._client, "request", new_callable=AsyncMock, return_value=not_found) as mock_req:
            with pytest.raises(GraphAPIError) as exc_info:
                await client.get_calendar_view(
                    "nobody@example.com",
                    datetime(2026, 1, 16, 5, tzinfo=UTC),
                    datetime(2026, 1, 17, 5, tzinfo=UTC),
                )
        assert exc_info.value.status_code == 404
        assert str(exc_info.value) == (
            "Microsoft Graph API error (404 - ErrorItemNotFound): The specified object was not found."
        )
        assert mock_req.await_count == 1


# ── Tests: directory ─────────────────────────────────────────────────


class TestListUsers:
    @pytest.mark.asyncio
    async def test_follows_next_links(self, mock_http_response):
        client = _client()
        page_1 = mock_http_response({
            "value": [{"displayName": "Jordan Smith", "mail": "jordan.smith@example.com"}],
            "@odata.nextLink": "https://graph.test/v1.0/users?$skiptoken=abc",
        })
        page_2 = mock_http_response({
            "value": [
                {"displayName": "Casey Smith", "mail": None, "userPrincipalName": "casey@example.com"},
                {"displayName": "Room 4", "mail": None, "userPrincipalName": None},
            ],
        })
        with patch.object(client._client, "request", new_callable=AsyncMock, side_effect=[page_1, page_2]) as mock_req:
            users = await client.list_users()

        assert [(u.display_name, u.address) for u in users] == [
            ("Jordan Smith", "jordan.smith@example.com"),
            ("Casey Smith", "casey@example.com"),
        ]
        second_call = mock_req.await_args_list[1]
        assert second_call.args[1] == "https://graph.test/v1.0/users?$skiptoken=abc"
        assert second_call.kwargs["params"] is None

    @pytest.mark.asyncio
    async def test_directory_is_cached(self, mock_http_response):
        client = _client()
        with patch.object(
            client._client, "request", new_callable=AsyncMock,
            return_value=mock_http_response({"value": []}),
        ) as mock_req:
            await client.list_users()
            await client.list_users()
        assert mock_req.await_count == 1

    @pytest.mark.asyncio
    async def test_directory_expires_with_injected_clock(self, mock_http_response, clock):
        client = _client(TTLCache(ttl_seconds=300, clock=clock))
        with patch.object(
            client._client, "request", new_callable=AsyncMock,
            return_value=mock_http_response({"value": []}),
        ) as mock_req:
            await client.list_users()
            clock.advance(299)
            await client.list_users()
            assert mock_req.await_count == 1
            clock.advance(2)
            await client.list_users()
        assert mock_req.await_count == 2


# ── Tests: calendar ──────────────────────────────────────────────────


class TestCalendar:
    @pytest.mark.asyncio
    async def test_calendar_view_requests_utc(self, mock_http_response):
        client = _client()
        events = mock_http_response({
            "value": [{
                "subject": "Standup",
                "start": {"dateTime": "2026-01-16T15:00:00.0000000", "timeZone": "UTC"},
                "end": {"dateTime": "2026-01-16T15:30:00.0000000", "timeZone": "UTC"},
                "isAllDay": False,
            }],
        })
        with patch.object(client._client, "request", new_callable=AsyncMock, return_value=events) as mock_req:
            result = await client.get_calendar_view(
                "jordan.smith@example.com",
                datetime(2026, 1, 16, 5, tzinfo=UTC),
                datetime(2026, 1, 17, 5, tzinfo=UTC),
            )

        call = mock_req.await_args
        assert call.args[1] == "/users/jordan.smith@example.com/calendarView"
        assert call.kwargs["params"]["startDateTime"] == "2026-01-16T05:00:00Z"
        assert call.kwargs["headers"]["Prefer"] == 'outlook.timezone="UTC"'
        assert result[0].subject == "Standup"
        assert result[0].start == datetime(2026, 1, 16, 15, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_create_event_requests_online_meeting(self, mock_http_response):
        client = _client()
        created = mock_http_response({
            "id": "evt-1",
            "subject": "Sync",
            "start": {"dateTime": "2026-01-16T19:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2026-01-16T19:30:00.0000000", "timeZone": "UTC"},
            "onlineMeeting": {"joinUrl": "https://teams.example.com/join/1"},
        })
        request = EventRequest(
            subject="Sync",
            start=datetime(2026, 1, 16, 19, 0, tzinfo=UTC),
            end=datetime(2026, 1, 16, 19, 30, tzinfo=UTC),
            attendees=["jordan.smith@example.com"],
        )
        with patch.object(client._client, "request", new_callable=AsyncMock, return_value=created) as mock_req:
            event = await client.create_event("alex.doe@example.com", request)

        body = mock_req.await_args.kwargs["json"]
        assert mock_req.await_args.args[:2] == ("POST", "/users/alex.doe@example.com/events")
        assert body["isOnlineMeeting"] is True
        assert body["start"] == {"dateTime": "2026-01-16T19:00:00", "timeZone": "UTC"}
        assert body["attendees"][0]["emailAddress"]["address"] == "jordan.smith@example.com"
        assert event.join_url == "https://teams.example.com/join/1"
