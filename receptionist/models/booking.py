"""Models for booking requests and their outcomes."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional

from pydantic import BaseModel


@dataclass(frozen=True)
class ResolvedInstant:
    """An absolute, zone-aware timestamp later than the reference it was resolved against."""

    value: datetime
    source: str = ""

    def isoformat(self) -> str:
        return self.value.isoformat()


class AppointmentRequest(BaseModel):
    """Everything known about one booking attempt.

    Either ``explicit_start`` (from the agent or the intent model) or
    ``phrase`` (natural language from the caller) must be present for the
    attempt to succeed.  A naive ``explicit_start`` is read in ``timezone``.
    """

    reference: datetime
    timezone: str
    utterance: str = ""
    phrase: Optional[str] = None
    explicit_start: Optional[datetime] = None
    end_time: Optional[time] = None
    duration_minutes: int = 30
    calendar_id: str = "primary"
    summary: str = ""
    description: str = ""
    attendees: list[str] = []
    caller: str = ""


class BookingFailureKind(str, enum.Enum):
    AMBIGUOUS = "Ambiguous"
    OUTSIDE_HOURS = "OutsideHours"
    UPSTREAM_FAILURE = "UpstreamFailure"
    UPSTREAM_TIMEOUT = "UpstreamTimeout"


class BookingResult(BaseModel):
    """A calendar event was created."""

    success: bool = True
    event_id: str
    start: datetime
    end: datetime
    summary: str = ""
    html_link: str = ""

    def to_event(self) -> dict:
        return {
            "id": self.event_id,
            "summary": self.summary,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "htmlLink": self.html_link,
        }


class BookingFailure(BaseModel):
    """The booking was not made; ``message`` is safe to say to the caller."""

    success: bool = False
    kind: BookingFailureKind
    message: str
    detail: str = ""
