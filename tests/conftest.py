"""Shared fixtures: a recording calendar and a fixed business clock."""

import asyncio
import os
import sys
from datetime import datetime
from zoneinfo import ZoneInfo

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from receptionist.business_hours import parse_policy
from receptionist.calendar_providers.base import CalendarEvent, CalendarProvider

CHICAGO = "America/Chicago"


class FakeCalendar(CalendarProvider):
    """In-memory calendar that records every create_event call."""

    def __init__(self, fail_with=None, delay=0.0):
        self.created: list[tuple[str, CalendarEvent]] = []
        self.fail_with = fail_with
        self.delay = delay

    async def create_event(self, calendar_id, event):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append((calendar_id, event))
        event_id = f"evt-{len(self.created)}"
        return {"event_id": event_id, "html_link": f"https://calendar.test/{event_id}"}

    async def list_events(self, calendar_id, time_min=None, max_results=10):
        return [
            {"id": f"evt-{i + 1}", "summary": e.summary}
            for i, (_, e) in enumerate(self.created)
        ][:max_results]

    async def get_event(self, calendar_id, event_id):
        for i, (_, e) in enumerate(self.created):
            if f"evt-{i + 1}" == event_id:
                return {"id": event_id, "summary": e.summary}
        return None


def chicago(*args) -> datetime:
    return datetime(*args, tzinfo=ZoneInfo(CHICAGO))


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def weekday_policy():
    """Mon–Fri 09:00–17:00 in Chicago."""
    return parse_policy("1,2,3,4,5", "09:00-17:00", CHICAGO)


@pytest.fixture
def monday_morning():
    # 2025-06-09 is a Monday
    return chicago(2025, 6, 9, 8, 0)
