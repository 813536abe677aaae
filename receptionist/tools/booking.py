"""The ``book_appointment`` tool.

Parameters accepted from the agent (and from ``POST /tools/book-appointment``):

* ``calendarId``  -- target calendar, default ``primary``.
* ``date``        -- ``YYYY-MM-DD`` or ``M/D[/YYYY]``.
* ``startTime``   -- ``HH:mm`` 24-hour; ``3pm`` / ``3:30 PM`` also accepted.
* ``endTime``     -- optional, same format; defaults to start + duration.
* ``timezone``    -- IANA name, default the business time zone.
* ``summary`` / ``description`` / ``attendees`` -- passed to the calendar.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from receptionist.booking import BookingOrchestrator, BookingOutcome
from receptionist.errors import Ambiguous, OutsideBusinessHours, UpstreamFailure, UpstreamTimeout
from receptionist.models.booking import AppointmentRequest, BookingFailureKind, BookingResult
from receptionist.session import SessionStore
from receptionist.tools.router import ToolCallEnvelope, ToolDefinition

log = logging.getLogger("receptionist.tools.booking")

TOOL_NAME = "book_appointment"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}$")
_SLASH_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})(?:/(\d{4}))?$")
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_TWELVE_HOUR_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\.?$", re.IGNORECASE)


def parse_clock(value: str) -> time:
    """``HH:mm`` 24-hour, falling back to 12-hour forms like ``3pm``."""
    text = value.strip()
    m = _CLOCK_RE.match(text)
    if m:
        return time(int(m.group(1)), int(m.group(2)))
    m = _TWELVE_HOUR_RE.match(text)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2) or 0)
        if not 1 <= hour <= 12:
            raise ValueError(f"invalid hour in {value!r}")
        if m.group(3).lower() == "p" and hour < 12:
            hour += 12
        elif m.group(3).lower() == "a" and hour == 12:
            hour = 0
        return time(hour, minute)
    raise ValueError(f"expected HH:mm, got {value!r}")


class BookAppointmentParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    calendar_id: str = Field("primary", alias="calendarId")
    date: str
    start_time: time = Field(alias="startTime")
    end_time: Optional[time] = Field(None, alias="endTime")
    timezone: Optional[str] = None
    summary: str = ""
    description: str = ""
    attendees: list[str] = Field(default_factory=list)

    @field_validator("calendar_id", mode="before")
    @classmethod
    def _default_calendar(cls, v):
        return v or "primary"

    @field_validator("date")
    @classmethod
    def _check_date(cls, v: str) -> str:
        v = v.strip()
        if _ISO_DATE_RE.match(v):
            date.fromisoformat("-".join(p.zfill(2) for p in v.split("-")))
            return v
        m = _SLASH_DATE_RE.match(v)
        if m:
            # Leap day without a year is checked against a leap year
            date(int(m.group(3) or 2000), int(m.group(1)), int(m.group(2)))
            return v
        raise ValueError("expected YYYY-MM-DD or M/D[/YYYY]")

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_times(cls, v):
        if v is None or isinstance(v, time):
            return v
        if isinstance(v, str):
            if not v.strip():
                return None
            return parse_clock(v)
        raise ValueError("expected a time string")

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {v!r}") from e
        return v

    @field_validator("attendees", mode="before")
    @classmethod
    def _split_attendees(cls, v):
        if isinstance(v, str):
            return [a.strip() for a in v.split(",") if a.strip()]
        return v or []

    def day(self, reference_year: int) -> date:
        """The calendar date; a year-less ``M/D`` takes ``reference_year``."""
        if _ISO_DATE_RE.match(self.date):
            year, month, day = (int(p) for p in self.date.split("-"))
            return date(year, month, day)
        m = _SLASH_DATE_RE.match(self.date)
        year = int(m.group(3)) if m.group(3) else reference_year
        month, day = int(m.group(1)), int(m.group(2))
        if (month, day) == (2, 29) and not m.group(3):
            try:
                return date(year, month, day)
            except ValueError:
                return date(year, 2, 28)
        return date(year, month, day)


def request_from_params(
    params: BookAppointmentParams,
    reference: datetime,
    default_timezone: str,
    duration_minutes: int = 30,
    caller: str = "",
) -> AppointmentRequest:
    tz = params.timezone or default_timezone
    local_ref = reference.astimezone(ZoneInfo(tz))
    start = datetime.combine(params.day(local_ref.year), params.start_time)
    return AppointmentRequest(
        reference=reference,
        timezone=tz,
        explicit_start=start,
        end_time=params.end_time,
        duration_minutes=duration_minutes,
        calendar_id=params.calendar_id,
        summary=params.summary,
        description=params.description,
        attendees=params.attendees,
        caller=caller,
    )


def raise_for_failure(outcome: BookingOutcome) -> BookingResult:
    """Return the result, or raise the error matching the failure kind."""
    if isinstance(outcome, BookingResult):
        return outcome
    if outcome.kind is BookingFailureKind.OUTSIDE_HOURS:
        raise OutsideBusinessHours(outcome.message)
    if outcome.kind is BookingFailureKind.AMBIGUOUS:
        raise Ambiguous(outcome.message)
    if outcome.kind is BookingFailureKind.UPSTREAM_TIMEOUT:
        raise UpstreamTimeout(outcome.detail or outcome.message)
    raise UpstreamFailure(outcome.detail or outcome.message)


def book_appointment_tool(
    orchestrator: BookingOrchestrator,
    store: Optional[SessionStore] = None,
    default_timezone: str = "America/Chicago",
    duration_minutes: int = 30,
) -> ToolDefinition:
    """Tool definition booking through ``orchestrator``.

    When the tool call belongs to a known call session, the booking runs
    inside that session's transaction and the event id lands on it.
    """

    async def handle(params: BookAppointmentParams, envelope: ToolCallEnvelope) -> dict:
        reference = orchestrator.now()
        if store is None or not envelope.call_sid:
            request = request_from_params(params, reference, default_timezone, duration_minutes)
            return raise_for_failure(await orchestrator.book(request)).to_event()

        async with store.transaction(envelope.call_sid) as session:
            caller = session.caller if session is not None else ""
            request = request_from_params(
                params, reference, default_timezone, duration_minutes, caller=caller,
            )
            outcome = await orchestrator.book(request, session=session)
        return raise_for_failure(outcome).to_event()

    return ToolDefinition(
        name=TOOL_NAME,
        params_model=BookAppointmentParams,
        handler=handle,
        description="Create a calendar appointment for the caller.",
    )
