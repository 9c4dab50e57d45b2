"""Calendar tools: directory lookup, availability and meeting booking.

Every time shown to the model is business-timezone wall time; every time
compared or sorted internally is a UTC instant.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Literal, NamedTuple

from pydantic import BaseModel

from billi.config import BUSINESS_HOURS_END, BUSINESS_HOURS_START
from billi.dates import (
    BUSINESS_TZ,
    BUSINESS_TZ_LABEL,
    business_day_bounds,
    business_hours,
    day_of_week,
    format_clock,
    format_duration,
    format_long_date,
    parse_instant,
    resolve_date,
)
from billi.services.graph_client import DirectoryEntry, EventRequest, GraphClient
from billi.tools.base import (
    ToolDefinition,
    ToolParameter,
    ToolResult,
    Toolkit,
    ToolValidationError,
    match_by_name,
)

logger = logging.getLogger(__name__)

TIMEZONE_NOTE = f"All times are displayed in {BUSINESS_TZ_LABEL} ({BUSINESS_TZ.key})"
_SAMPLE_SIZE = 5


# ── Free-slot computation ────────────────────────────────────────────


class FreeInterval(NamedTuple):
    start: datetime
    end: datetime
    duration_hours: float


def compute_free_slots(
    busy: list[tuple[datetime, datetime]],
    open_at: datetime,
    close_at: datetime,
) -> list[FreeInterval]:
    """Return the gaps between busy intervals inside ``[open_at, close_at]``.

    Intervals are normalised to UTC before sorting, and clipped to the
    window.  Overlapping meetings are handled by tracking the latest end
    seen so far.
    """
    open_utc = open_at.astimezone(UTC)
    close_utc = close_at.astimezone(UTC)

    intervals = []
    for start, end in busy:
        start_utc = max(start.astimezone(UTC), open_utc)
        end_utc = min(end.astimezone(UTC), close_utc)
        if end_utc > start_utc:
            intervals.append((start_utc, end_utc))
    intervals.sort()

    slots: list[FreeInterval] = []
    cursor = open_utc
    for start, end in intervals:
        if start > cursor:
            slots.append(_interval(cursor, start))
        cursor = max(cursor, end)
    if close_utc > cursor:
        slots.append(_interval(cursor, close_utc))
    return slots


def _interval(start: datetime, end: datetime) -> FreeInterval:
    return FreeInterval(start, end, round((end - start).total_seconds() / 3600, 1))


# ── Name resolution ──────────────────────────────────────────────────


def is_address(value: str) -> bool:
    return "@" in value and " " not in value.strip()


def resolve_person(query: str, directory: list[DirectoryEntry]) -> DirectoryEntry:
    """Resolve a display name (or address) to exactly one directory entry.

    Raises ``ToolValidationError`` when nothing or more than one entry
    matches.  It never picks one of several candidates.
    """
    query = (query or "").strip()
    if not query:
        raise ToolValidationError(
            "A person is required. Call list_directory_entries to find the right name."
        )

    if is_address(query):
        for entry in directory:
            if entry.address.lower() == query.lower():
                return entry
        return DirectoryEntry(display_name=query, address=query)

    matches = match_by_name(query, directory, lambda e: e.display_name)
    if len(matches) == 1:
        return matches[0]

    if matches:
        candidates = ", ".join(f"{m.display_name} <{m.address}>" for m in matches[:_SAMPLE_SIZE])
        raise ToolValidationError(
            f"User '{query}' is ambiguous: it matches {len(matches)} people "
            f"({candidates}). Ask which one is meant, then retry with the exact address."
        )

    sample = ", ".join(e.display_name for e in directory[:_SAMPLE_SIZE]) or "none"
    raise ToolValidationError(
        f"User '{query}' not found in the directory. "
        f"Call list_directory_entries first to get the exact name or address. "
        f"Known names include: {sample}."
    )


# ── Result variants ──────────────────────────────────────────────────


class DirectoryPerson(BaseModel):
    name: str
    address: str


class DirectoryListing(ToolResult):
    tool: Literal["list_directory_entries"] = "list_directory_entries"
    users: list[DirectoryPerson]
    total: int


class BusyTime(BaseModel):
    subject: str
    start: str
    end: str
    start_datetime: str
    end_datetime: str


class FreeSlot(BaseModel):
    start: str
    end: str
    duration_hours: float


class AvailabilityReport(ToolResult):
    tool: Literal["check_availability"] = "check_availability"
    person: str
    address: str
    date: str
    day_of_week: str
    busy_times: list[BusyTime]
    total_events: int
    free_slots: list[FreeSlot]
    is_completely_free: bool
    note: str = TIMEZONE_NOTE


class BookingConfirmation(ToolResult):
    tool: Literal["book_meeting"] = "book_meeting"
    id: str
    subject: str
    day_of_week: str
    date_formatted: str
    start_time: str
    end_time: str
    duration_minutes: int
    duration: str
    conferencing_link: str | None = None
    has_conferencing_link: bool = False
    attendees: list[str]
    organizer_name: str | None = None
    organizer_address: str
    note: str = TIMEZONE_NOTE


def _format_local(instant: datetime) -> str:
    return f"{format_long_date(instant)} {format_clock(instant)}"


# ── Toolkit ──────────────────────────────────────────────────────────


class CalendarToolkit(Toolkit):
    """Directory and calendar tools backed by Microsoft Graph."""

    lookup_tool = "list_directory_entries"
    definitions = (
        ToolDefinition(
            name="list_directory_entries",
            description=(
                "List everyone in the organization directory with their name and email "
                "address. Use it to find the exact address of a person before checking "
                "availability or booking, and to find the organizer's address."
            ),
        ),
        ToolDefinition(
            name="check_availability",
            description=(
                f"Get a person's busy times and free slots (business hours, {BUSINESS_TZ_LABEL}) "
                "for one day."
            ),
            parameters={
                "person": ToolParameter(
                    type="string",
                    description="The person's name as the user said it, or their exact email address.",
                    required=True,
                ),
                "date": ToolParameter(
                    type="string",
                    description=(
                        "The day to check: 'today', 'tomorrow', 'next friday', "
                        "'this coming monday', 'M/D/YYYY' or 'YYYY-MM-DD'. Defaults to today."
                    ),
                ),
            },
        ),
        ToolDefinition(
            name="book_meeting",
            description=(
                "Create a meeting with an online conferencing link on the organizer's "
                "calendar and invite the person. Never guess the organizer's address."
            ),
            parameters={
                "person": ToolParameter(
                    type="string",
                    description="Who the meeting is with: a name or exact email address.",
                    required=True,
                ),
                "subject": ToolParameter(type="string", description="Meeting subject.", required=True),
                "start": ToolParameter(
                    type="string",
                    description="Start as ISO date-time (e.g. 2026-01-16T14:00:00) or a time like '2pm'.",
                    required=True,
                ),
                "end": ToolParameter(
                    type="string",
                    description="End as ISO date-time or a time like '2:30pm'.",
                    required=True,
                ),
                "organizer_name": ToolParameter(
                    type="string", description="Display name of the person booking the meeting.",
                ),
                "organizer_address": ToolParameter(
                    type="string",
                    description=(
                        "REQUIRED. Exact email address of the organizer, taken from "
                        "list_directory_entries or the signed-in user."
                    ),
                    required=True,
                ),
                "date": ToolParameter(
                    type="string",
                    description="Day for start/end when they are bare times ('next friday', 'YYYY-MM-DD').",
                ),
                "attendees": ToolParameter(
                    type="array", items="string", description="Extra attendee email addresses.",
                ),
                "body": ToolParameter(type="string", description="Optional meeting description."),
            },
        ),
    )

    def __init__(self, graph_client: GraphClient):
        self._graph = graph_client

    # ── Tool: list_directory_entries ─────────────────────────────────

    async def list_directory_entries(self) -> DirectoryListing:
        directory = await self._graph.list_users()
        return DirectoryListing(
            users=[DirectoryPerson(name=e.display_name, address=e.address) for e in directory],
            total=len(directory),
        )

    # ── Tool: check_availability ─────────────────────────────────────

    async def check_availability(self, person: str, date: str | None = None) -> AvailabilityReport:
        if is_address(person or ""):
            entry = DirectoryEntry(display_name=person.strip(), address=person.strip())
        else:
            entry = resolve_person(person, await self._graph.list_users())

        day = resolve_date(date)
        day_start, day_end = business_day_bounds(day)
        events = await self._graph.get_calendar_view(entry.address, day_start, day_end)

        timed = sorted((e for e in events if not e.is_all_day), key=lambda e: e.start)
        open_at, close_at = business_hours(day, BUSINESS_HOURS_START, BUSINESS_HOURS_END)
        free = compute_free_slots([(e.start, e.end) for e in timed], open_at, close_at)

        logger.info(
            "Availability for %s on %s: %d events, %d free slots",
            entry.address, day, len(timed), len(free),
        )
        return AvailabilityReport(
            person=entry.display_name,
            address=entry.address,
            date=day,
            day_of_week=day_of_week(day),
            busy_times=[
                BusyTime(
                    subject=e.subject,
                    start=format_clock(e.start),
                    end=format_clock(e.end),
                    start_datetime=_format_local(e.start),
                    end_datetime=_format_local(e.end),
                )
                for e in timed
            ],
            total_events=len(timed),
            free_slots=[
                FreeSlot(
                    start=format_clock(slot.start),
                    end=format_clock(slot.end),
                    duration_hours=slot.duration_hours,
                )
                for slot in free
            ],
            is_completely_free=not timed,
        )

    # ── Tool: book_meeting ───────────────────────────────────────────

    async def book_meeting(
        self,
        person: str,
        subject: str,
        start: str,
        end: str,
        organizer_address: str | None = None,
        organizer_name: str | None = None,
        date: str | None = None,
        attendees: list[str] | None = None,
        body: str | None = None,
    ) -> BookingConfirmation:
        # Validation happens before any network call
        if not organizer_address or not organizer_address.strip():
            raise ToolValidationError(
                "organizer_address is REQUIRED and must never be guessed. "
                "Call list_directory_entries first to look up the organizer's exact "
                "email address, then retry book_meeting."
            )
        if not subject or not subject.strip():
            raise ToolValidationError("A meeting subject is required.")

        day = resolve_date(date) if date else None
        try:
            start_at = parse_instant(start, day)
            end_at = parse_instant(end, day or start_at.astimezone(BUSINESS_TZ).date().isoformat())
        except ValueError as exc:
            raise ToolValidationError(
                f"Could not read the meeting time: {exc}. "
                "Use ISO date-times such as 2026-01-16T14:00:00."
            ) from exc
        if end_at <= start_at:
            raise ToolValidationError("End time must be after start time.")

        directory = await self._graph.list_users()
        organizer = organizer_address.strip()
        if not any(e.address.lower() == organizer.lower() for e in directory):
            sample = ", ".join(e.address for e in directory[:_SAMPLE_SIZE]) or "none"
            raise ToolValidationError(
                f"Organizer '{organizer}' not found in the directory. "
                f"Call list_directory_entries and use an exact address. Known addresses include: {sample}."
            )

        invitee = resolve_person(person, directory)
        invited = [invitee.address]
        for extra in attendees or []:
            extra = extra.strip()
            if extra and extra.lower() not in {a.lower() for a in invited} and extra.lower() != organizer.lower():
                invited.append(extra)

        created = await self._graph.create_event(
            organizer,
            EventRequest(
                subject=subject.strip(),
                start=start_at,
                end=end_at,
                attendees=invited,
                body=body or "",
            ),
        )
        minutes = int((created.end - created.start).total_seconds() // 60)
        return BookingConfirmation(
            id=created.id,
            subject=created.subject,
            day_of_week=created.start.astimezone(BUSINESS_TZ).strftime("%A"),
            date_formatted=format_long_date(created.start),
            start_time=format_clock(created.start),
            end_time=format_clock(created.end),
            duration_minutes=minutes,
            duration=format_duration(minutes),
            conferencing_link=created.join_url,
            has_conferencing_link=bool(created.join_url),
            attendees=invited,
            organizer_name=organizer_name,
            organizer_address=organizer,
        )
