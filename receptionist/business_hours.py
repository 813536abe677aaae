"""Business Hours Gate — is an instant inside the configured opening window?

Policy strings come straight from the environment::

    BUSINESS_DAYS=1,2,3,4,5        # 0=Sunday .. 6=Saturday
    BUSINESS_HOURS=09:00-17:00     # inclusive at both ends

``is_open`` itself is pure.  Parsing is separate so a bad config can be
reported once at startup; ``load_policy`` fails open (every day, all day)
so a typo never locks callers out.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

log = logging.getLogger("receptionist.business_hours")

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

_HOURS_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")


@dataclass(frozen=True)
class BusinessHoursPolicy:
    open_days: frozenset[int]
    open_minute: int
    close_minute: int
    timezone: str

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


ALWAYS_OPEN_DAYS = frozenset(range(7))


def always_open(timezone: str) -> BusinessHoursPolicy:
    return BusinessHoursPolicy(ALWAYS_OPEN_DAYS, 0, 23 * 60 + 59, timezone)


def _parse_minute(hour: str, minute: str) -> int:
    h, m = int(hour), int(minute)
    if h > 23 or m > 59:
        raise ValueError(f"invalid clock time {hour}:{minute}")
    return h * 60 + m


def parse_days(days: str) -> frozenset[int]:
    """Parse "1,2,3,4,5" into weekday indexes (0=Sunday)."""
    result = set()
    for part in (days or "").split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or int(part) > 6:
            raise ValueError(f"invalid business day {part!r}")
        result.add(int(part))
    if not result:
        raise ValueError("no business days configured")
    return frozenset(result)


def parse_policy(days: str, hours: str, timezone: str) -> BusinessHoursPolicy:
    """Build a policy; raises ValueError on any malformed input."""
    open_days = parse_days(days)

    m = _HOURS_RE.match(hours or "")
    if not m:
        raise ValueError(f"invalid business hours {hours!r}, expected HH:MM-HH:MM")
    open_minute = _parse_minute(m.group(1), m.group(2))
    close_minute = _parse_minute(m.group(3), m.group(4))
    if close_minute < open_minute:
        raise ValueError(f"business hours close before they open: {hours!r}")

    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown timezone {timezone!r}") from e

    return BusinessHoursPolicy(open_days, open_minute, close_minute, timezone)


def load_policy(days: str, hours: str, timezone: str) -> BusinessHoursPolicy:
    """Like ``parse_policy`` but falls back to always-open with a warning."""
    try:
        return parse_policy(days, hours, timezone)
    except ValueError as e:
        log.warning("Business hours config invalid (%s); treating as always open", e)
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            timezone = "UTC"
        return always_open(timezone)


def _local(instant: datetime, policy: BusinessHoursPolicy) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=policy.tz)
    return instant.astimezone(policy.tz)


def is_open_day(instant: datetime, policy: BusinessHoursPolicy) -> bool:
    # isoweekday: Monday=1 .. Sunday=7, so % 7 puts Sunday at 0
    return _local(instant, policy).isoweekday() % 7 in policy.open_days


def is_open(instant: datetime, policy: BusinessHoursPolicy) -> bool:
    """True iff ``instant``, viewed in the policy's zone, is inside the window."""
    if not is_open_day(instant, policy):
        return False
    local = _local(instant, policy)
    minute = local.hour * 60 + local.minute
    return policy.open_minute <= minute <= policy.close_minute


def check_open(instant: datetime, days: str, hours: str, timezone: str) -> bool:
    """String-config variant of ``is_open``; unparsable config means closed."""
    try:
        policy = parse_policy(days, hours, timezone)
    except ValueError as e:
        log.warning("Cannot evaluate business hours: %s", e)
        return False
    return is_open(instant, policy)


def _clock(minute: int) -> str:
    h, m = divmod(minute, 60)
    suffix = "AM" if h < 12 else "PM"
    return f"{h % 12 or 12}:{m:02d} {suffix}"


def describe(policy: BusinessHoursPolicy) -> str:
    """Spoken summary, e.g. "Monday through Friday, 9:00 AM to 5:00 PM"."""
    days = sorted(policy.open_days)
    if days == list(range(7)):
        day_text = "every day"
    elif len(days) > 2 and days == list(range(days[0], days[-1] + 1)):
        day_text = f"{DAY_NAMES[days[0]]} through {DAY_NAMES[days[-1]]}"
    elif len(days) == 1:
        day_text = DAY_NAMES[days[0]]
    else:
        names = [DAY_NAMES[d] for d in days]
        day_text = ", ".join(names[:-1]) + " and " + names[-1]
    return f"{day_text}, {_clock(policy.open_minute)} to {_clock(policy.close_minute)}"
