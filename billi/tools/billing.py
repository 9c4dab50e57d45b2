"""Billing tools: employee/customer lookup and time-entry submission."""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Literal

from pydantic import BaseModel

from billi.dates import resolve_date
from billi.services.accounting_client import AccountingClient, TimeEntry
from billi.tools.base import (
    ToolDefinition,
    ToolParameter,
    ToolResult,
    Toolkit,
    ToolValidationError,
    match_by_name,
)

logger = logging.getLogger(__name__)

# Ids the model tends to invent when it skipped the lookup step
_PLACEHOLDER_ID_RE = re.compile(r"^(EMP|CUST|ID|QBO|TEST|PLACEHOLDER|XXX|000)", re.IGNORECASE)
_SUGGESTION_COUNT = 5


# ── Result variants ──────────────────────────────────────────────────


class RosterEntry(BaseModel):
    id: str
    name: str
    email: str | None = None


class LookupResult(ToolResult):
    tool: Literal["lookup_employee", "lookup_customer"]
    found: bool
    match: RosterEntry | None = None
    error: str | None = None
    suggestions: list[str] | None = None
    hint: str | None = None


class RosterListing(ToolResult):
    tool: Literal["list_employees", "list_customers"]
    items: list[RosterEntry]
    total: int


class TimeEntryReceipt(ToolResult):
    tool: Literal["submit_time_entry"] = "submit_time_entry"
    message: str
    time_entry: dict[str, Any]


def _check_id(value: str, label: str, lookup_tool: str) -> str:
    value = (value or "").strip()
    if len(value) < 3 or _PLACEHOLDER_ID_RE.match(value):
        raise ToolValidationError(
            f"{label} '{value}' looks made up. Call {lookup_tool} and use the id it returns."
        )
    return value


# ── Toolkit ──────────────────────────────────────────────────────────


class BillingToolkit(Toolkit):
    """Time-entry tools backed by the accounting system."""

    lookup_tool = "lookup_employee"
    definitions = (
        ToolDefinition(
            name="lookup_employee",
            description="Find an employee by name and return their accounting id.",
            parameters={
                "name": ToolParameter(type="string", description="Employee name.", required=True),
            },
        ),
        ToolDefinition(
            name="lookup_customer",
            description="Find a customer by name and return their accounting id.",
            parameters={
                "name": ToolParameter(type="string", description="Customer name.", required=True),
            },
        ),
        ToolDefinition(name="list_employees", description="List all employees with their ids."),
        ToolDefinition(name="list_customers", description="List all customers with their ids."),
        ToolDefinition(
            name="submit_time_entry",
            description=(
                "Log a time entry. Only call it with ids returned by lookup_employee and "
                "lookup_customer, never with guessed ids."
            ),
            parameters={
                "employee_name": ToolParameter(type="string", description="Employee name.", required=True),
                "employee_id": ToolParameter(
                    type="string", description="Employee id from lookup_employee.", required=True,
                ),
                "customer_name": ToolParameter(type="string", description="Customer name.", required=True),
                "customer_id": ToolParameter(
                    type="string", description="Customer id from lookup_customer.", required=True,
                ),
                "tasks_completed": ToolParameter(
                    type="string", description="What was worked on.", required=True,
                ),
                "hours": ToolParameter(type="number", description="Hours worked (> 0).", required=True),
                "billable": ToolParameter(type="boolean", description="Billable to the customer (default true)."),
                "entry_date": ToolParameter(
                    type="string",
                    description="Day worked: 'today', 'yesterday', 'M/D/YYYY' or 'YYYY-MM-DD'. Defaults to today.",
                ),
            },
        ),
    )

    def __init__(self, accounting_client: AccountingClient):
        self._accounting = accounting_client

    async def _lookup(self, tool: str, name: str, roster: list[Any], kind: str) -> LookupResult:
        matches = match_by_name(name or "", roster, lambda r: r.name)
        if len(matches) == 1:
            match = matches[0]
            return LookupResult(
                tool=tool,
                found=True,
                match=RosterEntry(id=match.id, name=match.name, email=getattr(match, "email", None)),
            )

        candidates = matches or roster
        if matches:
            error = f"{kind.capitalize()} '{name}' is ambiguous: {len(matches)} {kind}s match."
        else:
            error = f"{kind.capitalize()} '{name}' not found."
        return LookupResult(
            tool=tool,
            found=False,
            error=error,
            suggestions=[c.name for c in candidates[:_SUGGESTION_COUNT]],
            hint=f"Ask the user which {kind} they mean, or call list_{kind}s.",
        )

    # ── Tools ────────────────────────────────────────────────────────

    async def lookup_employee(self, name: str) -> LookupResult:
        return await self._lookup(
            "lookup_employee", name, await self._accounting.list_employees(), "employee",
        )

    async def lookup_customer(self, name: str) -> LookupResult:
        return await self._lookup(
            "lookup_customer", name, await self._accounting.list_customers(), "customer",
        )

    async def list_employees(self) -> RosterListing:
        employees = await self._accounting.list_employees()
        return RosterListing(
            tool="list_employees",
            items=[RosterEntry(id=e.id, name=e.name, email=e.email) for e in employees],
            total=len(employees),
        )

    async def list_customers(self) -> RosterListing:
        customers = await self._accounting.list_customers()
        return RosterListing(
            tool="list_customers",
            items=[RosterEntry(id=c.id, name=c.name) for c in customers],
            total=len(customers),
        )

    async def submit_time_entry(
        self,
        employee_name: str,
        employee_id: str,
        customer_name: str,
        customer_id: str,
        tasks_completed: str,
        hours: float | str,
        billable: bool = True,
        entry_date: str | None = None,
    ) -> TimeEntryReceipt:
        employee_id = _check_id(employee_id, "Employee id", "lookup_employee")
        customer_id = _check_id(customer_id, "Customer id", "lookup_customer")

        if not tasks_completed or not tasks_completed.strip():
            raise ToolValidationError("tasks_completed is required: ask the user what they worked on.")
        try:
            hours_value = float(hours)
        except (TypeError, ValueError) as exc:
            raise ToolValidationError(f"hours must be a number, got {hours!r}.") from exc
        if not math.isfinite(hours_value) or hours_value <= 0:
            raise ToolValidationError("hours must be a finite number greater than 0.")

        entry = TimeEntry(
            employee_name=employee_name.strip(),
            employee_id=employee_id,
            customer_name=customer_name.strip(),
            customer_id=customer_id,
            tasks_completed=tasks_completed.strip(),
            hours=hours_value,
            billable=bool(billable),
            entry_date=resolve_date(entry_date),
        )
        await self._accounting.submit_time_entry(entry)
        return TimeEntryReceipt(
            message=(
                f"Logged {hours_value:g} hours for {entry.employee_name} "
                f"({entry.customer_name}) on {entry.entry_date}."
            ),
            time_entry=entry.model_dump(by_alias=True),
        )
