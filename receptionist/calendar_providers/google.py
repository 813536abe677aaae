"""Google Calendar provider implementation.

Talks to the Calendar API v3 with either a service-account key file
(``GOOGLE_SERVICE_ACCOUNT_JSON``) or an installed-app OAuth refresh token
(``GOOGLE_CLIENT_ID`` / ``GOOGLE_CLIENT_SECRET`` / ``GOOGLE_REFRESH_TOKEN``).
The client library is synchronous, so every request runs in the default
thread pool.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from google.oauth2 import credentials as user_credentials
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .base import CalendarEvent, CalendarProvider

logger = logging.getLogger("receptionist.calendar")

SCOPES = ["https://www.googleapis.com/auth/calendar"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


def credentials_from_settings(
    service_account_path: str = "",
    client_id: str = "",
    client_secret: str = "",
    refresh_token: str = "",
):
    """Build Google credentials; the service account wins when both are set."""
    if service_account_path:
        return service_account.Credentials.from_service_account_file(
            service_account_path, scopes=SCOPES
        )
    if client_id and client_secret and refresh_token:
        return user_credentials.Credentials(
            token=None,
            refresh_token=refresh_token,
            client_id=client_id,
            client_secret=client_secret,
            token_uri=TOKEN_URI,
            scopes=SCOPES,
        )
    raise ValueError(
        "Google Calendar not configured. Set GOOGLE_SERVICE_ACCOUNT_JSON, or "
        "GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET and GOOGLE_REFRESH_TOKEN."
    )


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    def __init__(self, credentials=None, service=None) -> None:
        if service is None:
            if credentials is None:
                raise ValueError("Either credentials or a built service is required.")
            service = build(
                "calendar", "v3", credentials=credentials, cache_discovery=False
            )
        self._service = service

    @classmethod
    def from_settings(cls, settings) -> "GoogleCalendarProvider":
        return cls(credentials=credentials_from_settings(
            settings.google_service_account_json,
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_refresh_token,
        ))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(func, *args, **kwargs)
        )

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def create_event(self, calendar_id: str, event: CalendarEvent) -> dict:
        """Insert an event and email invitations to any attendees."""
        body: dict[str, Any] = {
            "summary": event.summary or "Appointment",
            "description": event.description,
            "start": {"dateTime": self._to_rfc3339(event.start), "timeZone": event.timezone},
            "end": {"dateTime": self._to_rfc3339(event.end), "timeZone": event.timezone},
        }
        if event.attendees:
            body["attendees"] = [{"email": addr} for addr in event.attendees]

        result = await self._run_in_executor(
            self._service.events()
            .insert(calendarId=calendar_id, body=body, sendUpdates="all")
            .execute
        )

        logger.info("Created event %s on calendar %s", result["id"], calendar_id)

        return {
            "event_id": result["id"],
            "html_link": result.get("htmlLink", ""),
            "status": result.get("status", "confirmed"),
        }

    async def list_events(
        self,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        max_results: int = 10,
    ) -> list[dict]:
        time_min = time_min or datetime.now(timezone.utc)
        response = await self._run_in_executor(
            self._service.events()
            .list(
                calendarId=calendar_id,
                timeMin=self._to_rfc3339(time_min),
                singleEvents=True,
                orderBy="startTime",
                maxResults=max_results,
            )
            .execute
        )
        return response.get("items", [])

    async def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]:
        try:
            return await self._run_in_executor(
                self._service.events()
                .get(calendarId=calendar_id, eventId=event_id)
                .execute
            )
        except HttpError as e:
            if e.resp.status == 404:
                return None
            raise
