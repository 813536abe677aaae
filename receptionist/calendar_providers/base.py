"""Abstract base class for calendar providers.

The booking path only needs to create events; listing and lookup back the
debug API.  Any calendar backend (Google, Outlook, etc.) implements this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class CalendarEvent:
    """Represents a calendar event to be created."""

    summary: str
    start: datetime
    end: datetime
    timezone: str = "UTC"  # IANA name the calendar should display
    description: str = ""
    attendees: list[str] = field(default_factory=list)  # email addresses


class CalendarProvider(ABC):
    """Abstract calendar backend.

    Calendar writes carry no idempotency key, so implementations must not
    retry ``create_event`` blindly.
    """

    @abstractmethod
    async def create_event(self, calendar_id: str, event: CalendarEvent) -> dict:
        """Create a calendar event.

        Returns:
            Dict containing at least ``"event_id"`` and ``"html_link"``.
        """

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        max_results: int = 10,
    ) -> list[dict]:
        """Upcoming events from ``time_min`` (default: now), ordered by start."""

    @abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]:
        """Fetch one event, or None if it does not exist."""
