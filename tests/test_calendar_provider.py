"""Tests for CalendarProvider ABC and GoogleCalendarProvider."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from googleapiclient.errors import HttpError

from receptionist.calendar_providers.base import CalendarEvent, CalendarProvider
from receptionist.calendar_providers.google import (
    GoogleCalendarProvider,
    credentials_from_settings,
)


# ── CalendarEvent dataclass tests ───────────────────────────────────


class TestDataclasses:
    def test_calendar_event_defaults(self):
        now = datetime.now(tz=timezone.utc)
        event = CalendarEvent(
            summary="Test",
            start=now,
            end=now + timedelta(minutes=30),
        )
        assert event.description == ""
        assert event.attendees == []
        assert event.timezone == "UTC"


# ── ABC contract tests ─────────────────────────────────────────────


class TestCalendarProviderABC:
    def test_cannot_instantiate(self):
        """CalendarProvider is abstract — can't be instantiated directly."""
        with pytest.raises(TypeError):
            CalendarProvider()

    def test_concrete_implementation(self):
        """A concrete subclass must implement all abstract methods."""
        class MockProvider(CalendarProvider):
            async def create_event(self, calendar_id, event):
                return {}
            async def list_events(self, calendar_id, time_min=None, max_results=10):
                return []
            async def get_event(self, calendar_id, event_id):
                return None

        provider = MockProvider()
        assert isinstance(provider, CalendarProvider)


# ── Credentials ────────────────────────────────────────────────────


class TestCredentials:
    def test_service_account_preferred(self):
        with patch(
            "receptionist.calendar_providers.google.service_account.Credentials"
        ) as mock_sa:
            creds = credentials_from_settings("/fake/sa.json", "id", "secret", "refresh")
        mock_sa.from_service_account_file.assert_called_once()
        assert creds is mock_sa.from_service_account_file.return_value

    def test_oauth_refresh_token(self):
        creds = credentials_from_settings("", "client-id", "client-secret", "refresh-token")
        assert creds.refresh_token == "refresh-token"
        assert creds.client_id == "client-id"

    def test_nothing_configured(self):
        with pytest.raises(ValueError):
            credentials_from_settings("", "", "", "")

    def test_provider_needs_credentials_or_service(self):
        with pytest.raises(ValueError):
            GoogleCalendarProvider()


# ── GoogleCalendarProvider tests (mocked API) ──────────────────────


def _http_error(status):
    resp = MagicMock()
    resp.status = status
    resp.reason = "error"
    return HttpError(resp, b"{}")


class TestGoogleCalendarProvider:
    @pytest.fixture
    def service(self):
        return MagicMock()

    @pytest.fixture
    def provider(self, service):
        return GoogleCalendarProvider(service=service)

    @pytest.mark.asyncio
    async def test_create_event(self, provider, service):
        """create_event should call events().insert() and return event data."""
        tz = ZoneInfo("America/Chicago")
        start = datetime(2026, 3, 16, 14, 0, tzinfo=tz)
        event = CalendarEvent(
            summary="Consultation",
            start=start,
            end=start + timedelta(minutes=30),
            timezone="America/Chicago",
            attendees=["test@example.com"],
        )

        service.events.return_value.insert.return_value.execute.return_value = {
            "id": "evt_123",
            "htmlLink": "https://calendar.google.com/event/evt_123",
            "status": "confirmed",
        }

        result = await provider.create_event("primary", event)

        assert result["event_id"] == "evt_123"
        assert result["html_link"] == "https://calendar.google.com/event/evt_123"

        kwargs = service.events.return_value.insert.call_args.kwargs
        assert kwargs["calendarId"] == "primary"
        assert kwargs["sendUpdates"] == "all"
        body = kwargs["body"]
        assert body["start"] == {"dateTime": "2026-03-16T14:00:00-05:00", "timeZone": "America/Chicago"}
        assert body["attendees"] == [{"email": "test@example.com"}]

    @pytest.mark.asyncio
    async def test_create_event_naive_times_are_utc(self, provider, service):
        start = datetime(2026, 3, 16, 14, 0)
        event = CalendarEvent(summary="", start=start, end=start + timedelta(minutes=30))
        service.events.return_value.insert.return_value.execute.return_value = {"id": "evt_1"}

        result = await provider.create_event("primary", event)

        body = service.events.return_value.insert.call_args.kwargs["body"]
        assert body["start"]["dateTime"] == "2026-03-16T14:00:00+00:00"
        assert body["summary"] == "Appointment"
        assert "attendees" not in body
        assert result["html_link"] == ""

    @pytest.mark.asyncio
    async def test_create_event_error_propagates(self, provider, service):
        service.events.return_value.insert.return_value.execute.side_effect = _http_error(500)
        now = datetime.now(tz=timezone.utc)
        with pytest.raises(HttpError):
            await provider.create_event("primary", CalendarEvent("x", now, now))

    @pytest.mark.asyncio
    async def test_list_events(self, provider, service):
        service.events.return_value.list.return_value.execute.return_value = {
            "items": [{"id": "a"}, {"id": "b"}],
        }
        events = await provider.list_events("primary", max_results=2)

        assert [e["id"] for e in events] == ["a", "b"]
        kwargs = service.events.return_value.list.call_args.kwargs
        assert kwargs["singleEvents"] is True
        assert kwargs["orderBy"] == "startTime"
        assert kwargs["maxResults"] == 2

    @pytest.mark.asyncio
    async def test_get_event(self, provider, service):
        service.events.return_value.get.return_value.execute.return_value = {"id": "evt_1"}
        assert await provider.get_event("primary", "evt_1") == {"id": "evt_1"}

    @pytest.mark.asyncio
    async def test_get_event_missing(self, provider, service):
        service.events.return_value.get.return_value.execute.side_effect = _http_error(404)
        assert await provider.get_event("primary", "nope") is None

    @pytest.mark.asyncio
    async def test_get_event_other_error_raises(self, provider, service):
        service.events.return_value.get.return_value.execute.side_effect = _http_error(403)
        with pytest.raises(HttpError):
            await provider.get_event("primary", "evt_1")
