"""Natural-language date/time resolution.

Turns a caller phrase like "tomorrow at 3pm" or "next tuesday morning" into
a zone-aware instant that is strictly after a reference "now".

The grammar itself is pluggable (``PhraseParser``).  The default
``CasualPhraseParser`` understands the phrasing callers actually use on the
phone and hands anything else to ``dateparser``.  Whatever the parser
returns, ``DateTimeResolver`` applies the same two passes:

  future-safety  at/before now → +7 days (weekday named) or +1 day,
                 then snap to now + 5 minutes as a last resort
  year-safety    stale year → reference year, still past → next year

``ensure_bookable`` applies them to explicit timestamps coming from the
agent or the intent model, which are never trusted to be in the future.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional, Protocol
from zoneinfo import ZoneInfo

from dateparser.search import search_dates

from receptionist.errors import ParseError
from receptionist.models.booking import ResolvedInstant

log = logging.getLogger("receptionist.datetime_resolver")

Clock = Callable[[], datetime]

SNAP_FORWARD = timedelta(minutes=5)
DEFAULT_TIME = time(12, 0)
TONIGHT_TIME = time(20, 0)

# Checked in this order; the first keyword present wins
DAY_PART_HOURS = (("morning", 9), ("afternoon", 14), ("evening", 18))


# ── Canonical clock ──────────────────────────────────────────────

def now_in(tz_name: str) -> datetime:
    """The single source of "now" for every booking code path."""
    return datetime.now(tz=ZoneInfo(tz_name))


def clock_for(tz_name: str) -> Clock:
    return lambda: now_in(tz_name)


# ── Safety passes ────────────────────────────────────────────────

def ensure_future(
    candidate: datetime, reference: datetime, weekday_bias: bool = False,
) -> datetime:
    """Push ``candidate`` past ``reference``."""
    if candidate > reference:
        return candidate
    candidate = candidate + timedelta(days=7 if weekday_bias else 1)
    if candidate <= reference:
        candidate = reference + SNAP_FORWARD
    return candidate


def _with_year(value: datetime, year: int) -> datetime:
    try:
        return value.replace(year=year)
    except ValueError:
        # Feb 29 in a non-leap year
        return value.replace(year=year, day=28)


def ensure_future_year(candidate: datetime, reference: datetime) -> datetime:
    """Guard against parsers that default to a stale or missing year."""
    if candidate.year < reference.year:
        candidate = _with_year(candidate, reference.year)
    if candidate <= reference:
        candidate = _with_year(candidate, candidate.year + 1)
    return candidate


def ensure_bookable(
    candidate: datetime, reference: datetime, timezone: str,
) -> datetime:
    """Year-safety then future-safety for an explicit timestamp.

    A naive ``candidate`` is read as wall-clock time in ``timezone``.
    """
    tz = ZoneInfo(timezone)
    if candidate.tzinfo is None:
        candidate = candidate.replace(tzinfo=tz)
    candidate = candidate.astimezone(tz)
    reference = reference.astimezone(tz)
    candidate = ensure_future_year(candidate, reference)
    return ensure_future(candidate, reference)


def parse_explicit_timestamp(value: str | None) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; None if absent or unparsable."""
    if not value or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        log.warning("Ignoring unparsable timestamp %r", value)
        return None


def day_part_hour(text: str) -> Optional[int]:
    lowered = (text or "").lower()
    for keyword, hour in DAY_PART_HOURS:
        if keyword in lowered:
            return hour
    return None


# ── Parsers ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParsedPhrase:
    """Raw parser output, before any safety pass."""

    value: datetime
    hour_certain: bool
    weekday: bool


class PhraseParser(Protocol):
    def parse(self, text: str, reference: datetime) -> Optional[ParsedPhrase]:
        """Parse ``text`` anchored at the zone-aware ``reference``; None if no date/time."""


_WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}
_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

_MONTH_PATTERN = (
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|"
    r"aug(?:ust)?|sept?(?:ember)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)

_ISO_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[t ]\d{2}:\d{2}", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{4}|\d{2}))?\b")
_MONTH_DAY_RE = re.compile(
    _MONTH_PATTERN + r"\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b(?:,?\s+(\d{4}))?"
)
_DAY_OF_MONTH_RE = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)?\s+of\s+" + _MONTH_PATTERN + r"\b(?:,?\s+(\d{4}))?"
)
_RELATIVE_DAY_RE = re.compile(r"\b(day after tomorrow|today|tonight|tomorrow)\b")
_IN_N_RE = re.compile(
    r"\bin\s+(\d+|an?|one|two|three|four|five|six|seven|eight|nine|ten)\s+(day|week)s?\b"
)
_WEEKDAY_RE = re.compile(
    r"\b(?:(this|next|coming)\s+)?"
    r"(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
)

_MERIDIEM_RE = re.compile(r"\b(\d{1,2})(?::([0-5]\d))?\s*([ap])\.?\s?m\b\.?")
_CLOCK_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
_NAMED_TIME_RE = re.compile(r"\b(noon|midday|midnight)\b")
_AT_HOUR_RE = re.compile(r"\bat\s+(\d{1,2})\b(?!\s*[:/])")
_DAY_PART_RE = re.compile(r"\b(?:(?:later\s+)?this|in\s+the)\s+(morning|afternoon|evening)\b")


def _afternoon_hour(hour: int, text: str) -> int:
    """Read a bare 1-7 o'clock as PM, as callers to a business line mean it."""
    if 1 <= hour <= 7 and "morning" not in text:
        return hour + 12
    return hour


def _month_day(month_name: str, day: str, year: str | None, today: date) -> date:
    month = _MONTHS[month_name[:3]]
    return _forward_date(int(day), month, year, today)


def _forward_date(day: int, month: int, year: str | None, today: date) -> date:
    """Build a date; without a year, pick the next occurrence on/after today."""
    if year:
        y = int(year)
        return date(y + 2000 if y < 100 else y, month, day)
    candidate = date(today.year, month, day)
    if candidate < today:
        candidate = date(today.year + 1, month, day)
    return candidate


class CasualPhraseParser:
    """Regex grammar for spoken scheduling phrases, with a library fallback.

    The fallback is any callable ``(text, reference) -> ParsedPhrase | None``;
    it runs only when the phrase contains neither a date nor a time this
    grammar recognises.
    """

    def __init__(
        self,
        fallback: Optional[Callable[[str, datetime], Optional[ParsedPhrase]]] = None,
        use_fallback: bool = True,
    ) -> None:
        if fallback is None and use_fallback:
            fallback = dateparser_fallback
        self._fallback = fallback

    def parse(self, text: str, reference: datetime) -> Optional[ParsedPhrase]:
        stripped = (text or "").strip()
        if not stripped:
            return None

        explicit = self._parse_iso_timestamp(stripped, reference)
        if explicit is not None:
            return explicit

        lowered = stripped.lower()
        weekday = bool(_WEEKDAY_RE.search(lowered))
        day, default_time = self._match_date(lowered, reference.date())
        clock = self._match_time(lowered)

        if day is None and clock is None:
            if self._fallback is None:
                return None
            return self._fallback(stripped, reference)

        value = datetime.combine(
            day or reference.date(),
            clock or default_time,
            tzinfo=reference.tzinfo,
        )
        return ParsedPhrase(value=value, hour_certain=clock is not None, weekday=weekday)

    @staticmethod
    def _parse_iso_timestamp(text: str, reference: datetime) -> Optional[ParsedPhrase]:
        if not _ISO_TIMESTAMP_RE.match(text):
            return None
        value = parse_explicit_timestamp(text)
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=reference.tzinfo)
        return ParsedPhrase(value=value, hour_certain=True, weekday=False)

    @staticmethod
    def _match_date(text: str, today: date) -> tuple[Optional[date], time]:
        """Return (date, default time of day) for the first date expression found."""
        m = _ISO_DATE_RE.search(text)
        if m:
            try:
                return date(int(m.group(1)), int(m.group(2)), int(m.group(3))), DEFAULT_TIME
            except ValueError:
                pass

        m = _SLASH_DATE_RE.search(text)
        if m:
            try:
                return (
                    _forward_date(int(m.group(2)), int(m.group(1)), m.group(3), today),
                    DEFAULT_TIME,
                )
            except ValueError:
                pass

        m = _MONTH_DAY_RE.search(text)
        if m:
            try:
                return _month_day(m.group(1), m.group(2), m.group(3), today), DEFAULT_TIME
            except ValueError:
                pass

        m = _DAY_OF_MONTH_RE.search(text)
        if m:
            try:
                return _month_day(m.group(2), m.group(1), m.group(3), today), DEFAULT_TIME
            except ValueError:
                pass

        m = _RELATIVE_DAY_RE.search(text)
        if m:
            word = m.group(1)
            if word == "day after tomorrow":
                return today + timedelta(days=2), DEFAULT_TIME
            if word == "tomorrow":
                return today + timedelta(days=1), DEFAULT_TIME
            if word == "tonight":
                return today, TONIGHT_TIME
            return today, DEFAULT_TIME

        m = _IN_N_RE.search(text)
        if m:
            raw = m.group(1)
            count = int(raw) if raw.isdigit() else _NUMBER_WORDS[raw]
            unit = 7 if m.group(2) == "week" else 1
            return today + timedelta(days=count * unit), DEFAULT_TIME

        m = _WEEKDAY_RE.search(text)
        if m:
            target = _WEEKDAYS[m.group(2)]
            if m.group(1) == "next":
                # That weekday in the following Monday-based week
                next_monday = today + timedelta(days=7 - today.weekday())
                return next_monday + timedelta(days=target), DEFAULT_TIME
            return today + timedelta(days=(target - today.weekday()) % 7), DEFAULT_TIME

        if _DAY_PART_RE.search(text):
            # "this afternoon": today, hour from the day-part keyword
            return today, DEFAULT_TIME

        return None, DEFAULT_TIME

    @staticmethod
    def _match_time(text: str) -> Optional[time]:
        m = _MERIDIEM_RE.search(text)
        if m:
            hour = int(m.group(1))
            minute = int(m.group(2) or 0)
            if 1 <= hour <= 12:
                if m.group(3) == "p" and hour < 12:
                    hour += 12
                elif m.group(3) == "a" and hour == 12:
                    hour = 0
                return time(hour, minute)

        m = _CLOCK_RE.search(text)
        if m:
            hour = int(m.group(1))
            if not m.group(1).startswith("0"):
                hour = _afternoon_hour(hour, text)
            return time(hour, int(m.group(2)))

        m = _NAMED_TIME_RE.search(text)
        if m:
            return time(0, 0) if m.group(1) == "midnight" else time(12, 0)

        m = _AT_HOUR_RE.search(text)
        if m:
            hour = int(m.group(1))
            if hour <= 23:
                return time(_afternoon_hour(hour, text), 0)

        return None


def dateparser_fallback(text: str, reference: datetime) -> Optional[ParsedPhrase]:
    """Search free text with ``dateparser``, preferring future dates."""
    base = reference.replace(tzinfo=None)
    found = search_dates(
        text,
        languages=["en"],
        settings={
            "PREFER_DATES_FROM": "future",
            "RELATIVE_BASE": base,
            "RETURN_AS_TIMEZONE_AWARE": False,
        },
    )
    if not found:
        return None

    matched, value = found[0]
    hour_certain = value.time() not in (time(0, 0), base.time())
    if not hour_certain:
        value = datetime.combine(value.date(), DEFAULT_TIME)
    log.debug("dateparser matched %r → %s", matched, value)
    return ParsedPhrase(
        value=value.replace(tzinfo=reference.tzinfo),
        hour_certain=hour_certain,
        weekday=bool(_WEEKDAY_RE.search(matched.lower())),
    )


# ── Resolver ─────────────────────────────────────────────────────

class DateTimeResolver:
    """resolve(phrase, timezone, reference) → ResolvedInstant, or None when nothing was found."""

    def __init__(self, parser: Optional[PhraseParser] = None) -> None:
        self._parser = parser or CasualPhraseParser()

    def resolve(
        self, phrase: str, timezone: str, reference: datetime,
    ) -> Optional[ResolvedInstant]:
        tz = ZoneInfo(timezone)
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=tz)
        ref = reference.astimezone(tz)

        parsed = self._parser.parse(phrase, ref)
        if parsed is None:
            log.info("No date/time found in %r", phrase)
            return None

        value = parsed.value
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz)
        value = value.astimezone(tz)

        if not parsed.hour_certain:
            hint = day_part_hour(phrase)
            if hint is not None:
                value = value.replace(hour=hint, minute=0, second=0, microsecond=0)

        value = ensure_future(value, ref, weekday_bias=parsed.weekday)
        value = ensure_future_year(value, ref)

        log.info("Resolved %r → %s (now=%s)", phrase, value.isoformat(), ref.isoformat())
        return ResolvedInstant(value=value, source=phrase)

    def require(
        self, phrase: str, timezone: str, reference: datetime,
    ) -> ResolvedInstant:
        """Like ``resolve`` but raises ParseError when no date/time was found."""
        resolved = self.resolve(phrase, timezone, reference)
        if resolved is None:
            raise ParseError(f"no date or time in {phrase!r}")
        return resolved
