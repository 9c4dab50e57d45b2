"""HTTP client for the accounting system used by the billing expert.

Two collaborators sit behind it:

* the accounting API (``ACCOUNTING_API_URL``) that lists employees and
  customers with their accounting-system ids, and
* the time-entry webhook (``TIME_ENTRY_WEBHOOK_URL``) that records a
  billable entry.

Lookups are retried like the Graph client.  Submissions are sent exactly
once: a retried POST could log the same hours twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from billi.config import ACCOUNTING_API_URL, TIME_ENTRY_WEBHOOK_URL
from billi.services.cache import TTLCache

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0
ROSTER_TTL_SECONDS = 10 * 60


class AccountingAPIError(Exception):
    """Raised when the accounting API or time-entry webhook rejects a call."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class Employee(BaseModel):
    id: str
    name: str
    email: str | None = None


class Customer(BaseModel):
    id: str
    name: str


class TimeEntry(BaseModel):
    """Payload sent to the time-entry webhook (camelCase on the wire)."""

    employee_name: str = Field(serialization_alias="employeeName")
    employee_id: str = Field(serialization_alias="employeeId")
    customer_name: str = Field(serialization_alias="customerName")
    customer_id: str = Field(serialization_alias="customerId")
    tasks_completed: str = Field(serialization_alias="tasksCompleted")
    hours: float
    billable: bool = True
    entry_date: str = Field(serialization_alias="entryDate")


class AccountingClient:
    """Employee/customer roster lookups (cached) and time-entry submission."""

    def __init__(
        self,
        base_url: str | None = None,
        webhook_url: str | None = None,
        *,
        cache: TTLCache | None = None,
    ):
        self._base_url = base_url or ACCOUNTING_API_URL
        self._webhook_url = webhook_url or TIME_ENTRY_WEBHOOK_URL
        self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
        self._cache = cache if cache is not None else TTLCache(ttl_seconds=ROSTER_TTL_SECONDS)

    # ── Internal helpers ─────────────────────────────────────────────

    async def _get_list(self, resource: str) -> list[dict[str, Any]]:
        if not self._base_url:
            raise AccountingAPIError("The accounting API is not configured (ACCOUNTING_API_URL).")

        url = f"{self._base_url.rstrip('/')}/{resource}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.get(url)
                if response.status_code >= 400:
                    raise AccountingAPIError(
                        f"Accounting API error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                data = response.json()
                # Accept a bare list or {"items": [...]}
                return data if isinstance(data, list) else data.get("items", [])

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Accounting API attempt %d/%d failed (%s)",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except AccountingAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Accounting API server error on attempt %d/%d. Retrying…",
                        attempt, MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise AccountingAPIError(
            f"Accounting API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    # ── Public API methods ───────────────────────────────────────────

    async def list_employees(self) -> list[Employee]:
        cached = self._cache.get("employees")
        if cached is not None:
            return cached
        employees = [
            Employee(id=str(item["id"]), name=item["name"], email=item.get("email"))
            for item in await self._get_list("employees")
        ]
        self._cache.put("employees", employees)
        return employees

    async def list_customers(self) -> list[Customer]:
        cached = self._cache.get("customers")
        if cached is not None:
            return cached
        customers = [
            Customer(id=str(item["id"]), name=item["name"])
            for item in await self._get_list("customers")
        ]
        self._cache.put("customers", customers)
        return customers

    async def submit_time_entry(self, entry: TimeEntry) -> dict[str, Any]:
        """POST the entry to the webhook once and return its JSON reply (if any)."""
        if not self._webhook_url:
            raise AccountingAPIError(
                "Time-entry submission is not configured (TIME_ENTRY_WEBHOOK_URL)."
            )

        payload = {"timeEntry": entry.model_dump(by_alias=True)}
        try:
            response = await self._client.post(self._webhook_url, json=payload)
        except httpx.HTTPError as exc:
            raise AccountingAPIError(f"Time-entry webhook unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise AccountingAPIError(
                f"Time-entry webhook error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        logger.info(
            "Submitted %.2fh for %s → %s on %s",
            entry.hours, entry.employee_name, entry.customer_name, entry.entry_date,
        )
        try:
            return response.json()
        except ValueError:
            return {}

    async def aclose(self) -> None:
        await self._client.aclose()
