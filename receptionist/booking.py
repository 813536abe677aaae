"""Booking Orchestrator — one "attempt to book" from a request.

Composes the DateTime Resolver, the Business Hours Gate and the calendar
client:

  1. resolve the start (explicit timestamp, else the caller's phrase)
  2. year-safety + future-safety on whatever start we ended up with
  3. business-hours check
  4. end = start + duration, or the explicit end time rolled past midnight
  5. create the calendar event (bounded by a timeout, never retried here)
  6. attach the event id to the call session, fire the SMS confirmation

Every rejection comes back as a ``BookingFailure`` whose message can be
spoken to the caller as-is.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

from receptionist.business_hours import BusinessHoursPolicy, describe, is_open
from receptionist.calendar_providers.base import CalendarEvent, CalendarProvider
from receptionist.datetime_resolver import (
    Clock,
    DateTimeResolver,
    clock_for,
    ensure_bookable,
)
from receptionist.errors import ParseError, UpstreamFailure, UpstreamTimeout, call_with_timeout
from receptionist.models.booking import (
    AppointmentRequest,
    BookingFailure,
    BookingFailureKind,
    BookingResult,
)
from receptionist.models.call import CallSession
from receptionist.session import redact_pii

log = logging.getLogger("receptionist.booking")

Confirmer = Callable[[str, BookingResult], Awaitable[object]]
BookingOutcome = Union[BookingResult, BookingFailure]

AMBIGUOUS_MESSAGE = "I didn't catch a day and time. What day and time would work for you?"
UPSTREAM_MESSAGE = "I could not book that time. Would you like to try another time?"


class BookingOrchestrator:
    def __init__(
        self,
        calendar: Optional[CalendarProvider],
        policy: BusinessHoursPolicy,
        resolver: Optional[DateTimeResolver] = None,
        clock: Optional[Clock] = None,
        confirmer: Optional[Confirmer] = None,
        timeout: float = 8.0,
    ) -> None:
        self._calendar = calendar
        self._policy = policy
        self._resolver = resolver or DateTimeResolver()
        self._clock = clock or clock_for(policy.timezone)
        self._confirmer = confirmer
        self._timeout = timeout
        self._confirmations: set[asyncio.Task] = set()

    @property
    def policy(self) -> BusinessHoursPolicy:
        return self._policy

    def now(self) -> datetime:
        return self._clock()

    async def book(
        self,
        request: AppointmentRequest,
        session: Optional[CallSession] = None,
        timeout: Optional[float] = None,
    ) -> BookingOutcome:
        """Attempt one booking.

        ``session``, when given, must already be held by the caller's
        ``SessionStore.transaction()``; the event id is attached to it.
        ``timeout`` overrides the calendar call bound for this attempt.
        """
        start = self._resolve_start(request)
        if start is None:
            log.info("Booking ambiguous: no date/time in %r", request.phrase or request.utterance)
            return BookingFailure(kind=BookingFailureKind.AMBIGUOUS, message=AMBIGUOUS_MESSAGE)

        if not is_open(start, self._policy):
            log.info("Booking rejected, outside hours: %s", start.isoformat())
            return BookingFailure(
                kind=BookingFailureKind.OUTSIDE_HOURS,
                message=(
                    f"Sorry, we're only open {describe(self._policy)}. "
                    "What other time works for you?"
                ),
                detail=start.isoformat(),
            )

        if self._calendar is None:
            log.error("Booking failed: no calendar configured")
            return BookingFailure(
                kind=BookingFailureKind.UPSTREAM_FAILURE,
                message=UPSTREAM_MESSAGE,
                detail="calendar not configured",
            )

        end = self._end_for(start, request)
        event = CalendarEvent(
            summary=request.summary or self._default_summary(request),
            start=start,
            end=end,
            timezone=request.timezone,
            description=request.description or self._default_description(request),
            attendees=list(request.attendees),
        )

        try:
            created = await call_with_timeout(
                self._calendar.create_event(request.calendar_id, event),
                timeout or self._timeout,
                "Calendar create_event",
            )
        except UpstreamTimeout as e:
            log.error("Booking timed out: %s", e)
            return BookingFailure(
                kind=BookingFailureKind.UPSTREAM_TIMEOUT,
                message=UPSTREAM_MESSAGE,
                detail=str(e),
            )
        except UpstreamFailure as e:
            log.error("Booking failed: %s", e)
            return BookingFailure(
                kind=BookingFailureKind.UPSTREAM_FAILURE,
                message=UPSTREAM_MESSAGE,
                detail=str(e),
            )

        result = BookingResult(
            event_id=created["event_id"],
            start=start,
            end=end,
            summary=event.summary,
            html_link=created.get("html_link", ""),
        )
        log.info(
            "Booked %s for %s (%s → %s)",
            result.event_id, redact_pii(request.caller),
            start.isoformat(), end.isoformat(),
        )

        if session is not None:
            session.attach_event(result.event_id)
        self._send_confirmation(request.caller, result)
        return result

    # ── Steps ──────────────────────────────────────────────────

    def _resolve_start(self, request: AppointmentRequest) -> Optional[datetime]:
        if request.explicit_start is not None:
            candidate = request.explicit_start
        else:
            phrase = request.phrase or request.utterance
            if not phrase:
                return None
            try:
                resolved = self._resolver.require(phrase, request.timezone, request.reference)
            except ParseError:
                return None
            candidate = resolved.value
        # Re-run both passes; upstream callers are not trusted to have done so
        return ensure_bookable(candidate, request.reference, request.timezone)

    @staticmethod
    def _end_for(start: datetime, request: AppointmentRequest) -> datetime:
        duration = timedelta(minutes=request.duration_minutes)
        if request.end_time is None:
            return start + duration
        end = datetime.combine(start.date(), request.end_time, tzinfo=start.tzinfo)
        if end < start:
            end += timedelta(days=1)
        elif end == start:
            end = start + duration
        return end

    @staticmethod
    def _default_summary(request: AppointmentRequest) -> str:
        if request.caller:
            return f"Appointment with {request.caller}"
        return "Appointment"

    @staticmethod
    def _default_description(request: AppointmentRequest) -> str:
        if request.utterance:
            return f"Booked by phone. Caller said: {request.utterance}"
        return "Booked by phone."

    # ── Confirmation side effect ───────────────────────────────

    def _send_confirmation(self, to: str, result: BookingResult) -> None:
        if self._confirmer is None or not to:
            return
        task = asyncio.create_task(self._confirmer(to, result))
        self._confirmations.add(task)
        task.add_done_callback(self._confirmation_done)

    def _confirmation_done(self, task: asyncio.Task) -> None:
        self._confirmations.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Booking confirmation failed: %s", exc)
