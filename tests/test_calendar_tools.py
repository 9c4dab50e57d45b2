"""Tests for the calendar toolkit: free slots, name resolution, availability and booking."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from billi.dates import business_day_bounds, resolve_date, to_zoned_instant
from billi.services.graph_client import CalendarEvent, CreatedEvent, DirectoryEntry
from billi.tools.base import ToolValidationError
from billi.tools.calendar import CalendarToolkit, compute_free_slots, resolve_person

DIRECTORY = [
    DirectoryEntry(display_name="Jordan Smith", address="jordan.smith@example.com"),
    DirectoryEntry(display_name="Casey Smith", address="casey.smith@example.com"),
    DirectoryEntry(display_name="Alex Doe", address="alex.doe@example.com"),
]


@pytest.fixture
def graph():
    client = MagicMock()
    client.list_users = AsyncMock(return_value=DIRECTORY)
    client.get_calendar_view = AsyncMock(return_value=[])
    client.create_event = AsyncMock()
    return client


@pytest.fixture
def toolkit(graph):
    return CalendarToolkit(graph)


def _at(clock: str, day: str = "2026-01-16") -> datetime:
    return to_zoned_instant(clock, day)


# ── Free slots ───────────────────────────────────────────────────────


class TestComputeFreeSlots:
    def test_gaps_between_meetings(self):
        busy = [(_at("9:00 AM"), _at("10:00 AM")), (_at("2:00 PM"), _at("3:00 PM"))]
        slots = compute_free_slots(busy, _at("9:00 AM"), _at("5:00 PM"))
        assert [(s.start, s.end, s.duration_hours) for s in slots] == [
            (_at("10:00 AM"), _at("2:00 PM"), 4.0),
            (_at("3:00 PM"), _at("5:00 PM"), 2.0),
        ]

    def test_empty_day_is_one_slot(self):
        slots = compute_free_slots([], _at("9:00 AM"), _at("5:00 PM"))
        assert len(slots) == 1
        assert slots[0].duration_hours == 8.0

    def test_overlapping_and_unsorted_meetings(self):
        busy = [
            (_at("1:00 PM"), _at("2:00 PM")),
            (_at("10:00 AM"), _at("12:00 PM")),
            (_at("11:00 AM"), _at("1:30 PM")),
        ]
        slots = compute_free_slots(busy, _at("9:00 AM"), _at("5:00 PM"))
        assert [(s.start, s.end) for s in slots] == [
            (_at("9:00 AM"), _at("10:00 AM")),
            (_at("2:00 PM"), _at("5:00 PM")),
        ]

    def test_meetings_outside_hours_are_clipped(self):
        busy = [(_at("8:00 AM"), _at("9:30 AM")), (_at("4:30 PM"), _at("6:00 PM"))]
        slots = compute_free_slots(busy, _at("9:00 AM"), _at("5:00 PM"))
        assert [(s.start, s.end, s.duration_hours) for s in slots] == [
            (_at("9:30 AM"), _at("4:30 PM"), 7.0),
        ]

    def test_fully_booked_day_has_no_slots(self):
        slots = compute_free_slots([(_at("8:00 AM"), _at("6:00 PM"))], _at("9:00 AM"), _at("5:00 PM"))
        assert slots == []


# ── Name resolution ──────────────────────────────────────────────────


class TestResolvePerson:
    def test_unique_first_name(self):
        assert resolve_person("Jordan", DIRECTORY).address == "jordan.smith@example.com"

    def test_ambiguous_name_is_never_guessed(self):
        with pytest.raises(ToolValidationError) as exc_info:
            resolve_person("Smith", DIRECTORY)
        message = str(exc_info.value)
        assert "ambiguous" in message
        assert "Jordan Smith" in message and "Casey Smith" in message

    def test_unknown_name_lists_known_names(self):
        with pytest.raises(ToolValidationError) as exc_info:
            resolve_person("Morgan", DIRECTORY)
        message = str(exc_info.value)
        assert "not found" in message
        assert "list_directory_entries" in message
        assert "Alex Doe" in message

    def test_address_outside_directory_is_used_as_is(self):
        entry = resolve_person("guest@partner.com", DIRECTORY)
        assert entry.address == "guest@partner.com"

    def test_address_in_directory_gets_display_name(self):
        assert resolve_person("ALEX.DOE@example.com", DIRECTORY).display_name == "Alex Doe"


# ── Tools ────────────────────────────────────────────────────────────


class TestListDirectoryEntries:
    @pytest.mark.asyncio
    async def test_lists_everyone(self, toolkit):
        result = await toolkit.execute("list_directory_entries", {})
        assert result.total == 3
        assert result.users[0].name == "Jordan Smith"


class TestCheckAvailability:
    @pytest.mark.asyncio
    async def test_resolves_name_and_reports_busy_and_free(self, toolkit, graph):
        day = resolve_date("next friday")
        graph.get_calendar_view.return_value = [
            CalendarEvent(subject="Standup", start=_at("10:00 AM", day), end=_at("11:00 AM", day)),
            CalendarEvent(subject="Holiday", start=_at("12:00 AM", day), end=_at("11:59 PM", day), is_all_day=True),
        ]

        report = await toolkit.execute("check_availability", {"person": "Jordan", "date": "next friday"})

        start, end = business_day_bounds(day)
        graph.get_calendar_view.assert_awaited_once_with("jordan.smith@example.com", start, end)
        assert report.date == day
        assert report.day_of_week == "Friday"
        assert report.total_events == 1
        assert report.busy_times[0].start == "10:00 AM"
        assert [(s.start, s.end) for s in report.free_slots] == [
            ("9:00 AM", "10:00 AM"),
            ("11:00 AM", "5:00 PM"),
        ]
        assert report.is_completely_free is False
        assert "Eastern" in json.loads(report.to_content())["note"]

    @pytest.mark.asyncio
    async def test_address_skips_directory(self, toolkit, graph):
        report = await toolkit.check_availability("guest@partner.com", "2026-01-16")
        graph.list_users.assert_not_awaited()
        assert report.is_completely_free is True
        assert report.free_slots[0].duration_hours == 8.0

    @pytest.mark.asyncio
    async def test_ambiguous_name_fails_without_calendar_call(self, toolkit, graph):
        with pytest.raises(ToolValidationError, match="ambiguous"):
            await toolkit.check_availability("Smith", "tomorrow")
        graph.get_calendar_view.assert_not_awaited()


class TestBookMeeting:
    @pytest.mark.asyncio
    async def test_missing_organizer_fails_before_any_call(self, toolkit, graph):
        with pytest.raises(ToolValidationError) as exc_info:
            await toolkit.execute(
                "book_meeting",
                {
                    "person": "Jordan",
                    "subject": "Sync",
                    "start": "2026-01-16T14:00:00",
                    "end": "2026-01-16T14:30:00",
                },
            )
        assert "list_directory_entries first" in str(exc_info.value)
        graph.list_users.assert_not_awaited()
        graph.create_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_end_before_start(self, toolkit, graph):
        with pytest.raises(ToolValidationError, match="End time must be after start time"):
            await toolkit.book_meeting(
                person="Jordan",
                subject="Sync",
                start="2026-01-16T15:00:00",
                end="2026-01-16T14:00:00",
                organizer_address="alex.doe@example.com",
            )
        graph.create_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_time(self, toolkit):
        with pytest.raises(ToolValidationError, match="Could not read the meeting time"):
            await toolkit.book_meeting(
                person="Jordan", subject="Sync", start="after lunch", end="later",
                organizer_address="alex.doe@example.com",
            )

    @pytest.mark.asyncio
    async def test_organizer_must_be_in_directory(self, toolkit, graph):
        with pytest.raises(ToolValidationError, match="Organizer 'made.up@example.com' not found"):
            await toolkit.book_meeting(
                person="Jordan", subject="Sync",
                start="2026-01-16T14:00:00", end="2026-01-16T14:30:00",
                organizer_address="made.up@example.com",
            )
        graph.create_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_books_with_conferencing_link(self, toolkit, graph):
        graph.create_event.return_value = CreatedEvent(
            id="evt-1",
            subject="Sync",
            start=datetime(2026, 1, 16, 19, 0, tzinfo=UTC),
            end=datetime(2026, 1, 16, 19, 30, tzinfo=UTC),
            join_url="https://teams.example.com/join/1",
        )

        confirmation = await toolkit.book_meeting(
            person="Jordan",
            subject="Sync",
            start="2026-01-16T14:00:00",
            end="2026-01-16T14:30:00",
            organizer_address="alex.doe@example.com",
            organizer_name="Alex Doe",
            attendees=["jordan.smith@example.com", "guest@partner.com"],
        )

        organizer, request = graph.create_event.await_args[0]
        assert organizer == "alex.doe@example.com"
        assert request.start == datetime(2026, 1, 16, 19, 0, tzinfo=UTC)
        assert request.attendees == ["jordan.smith@example.com", "guest@partner.com"]
        assert confirmation.date_formatted == "Friday, January 16, 2026"
        assert confirmation.start_time == "2:00 PM"
        assert confirmation.end_time == "2:30 PM"
        assert confirmation.duration_minutes == 30
        assert confirmation.duration == "30 minutes"
        assert confirmation.has_conferencing_link is True

    @pytest.mark.asyncio
    async def test_bare_times_use_the_date_argument(self, toolkit, graph):
        graph.create_event.return_value = CreatedEvent(
            id="evt-2",
            subject="Planning",
            start=datetime(2026, 7, 10, 18, 0, tzinfo=UTC),
            end=datetime(2026, 7, 10, 19, 0, tzinfo=UTC),
        )

        confirmation = await toolkit.book_meeting(
            person="Casey Smith",
            subject="Planning",
            start="2pm",
            end="3pm",
            organizer_address="alex.doe@example.com",
            date="2026-07-10",
        )

        _, request = graph.create_event.await_args[0]
        assert request.start == datetime(2026, 7, 10, 18, 0, tzinfo=UTC)
        assert request.end == datetime(2026, 7, 10, 19, 0, tzinfo=UTC)
        assert confirmation.has_conferencing_link is False
