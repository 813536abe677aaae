"""Tests for the business-hours gate."""

import os
import sys
from datetime import datetime
from zoneinfo import ZoneInfo

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from receptionist.business_hours import (
    always_open,
    check_open,
    describe,
    is_open,
    load_policy,
    parse_days,
    parse_policy,
)

CHICAGO = "America/Chicago"


def at(*args, tz=CHICAGO) -> datetime:
    return datetime(*args, tzinfo=ZoneInfo(tz))


@pytest.fixture
def policy():
    return parse_policy("1,2,3,4,5", "09:00-17:00", CHICAGO)


class TestIsOpen:
    # 2025-06-09 is a Monday
    @pytest.mark.parametrize("instant,expected", [
        (at(2025, 6, 9, 9, 0), True),     # opening minute is inclusive
        (at(2025, 6, 9, 17, 0), True),    # closing minute is inclusive
        (at(2025, 6, 9, 8, 59), False),
        (at(2025, 6, 9, 17, 1), False),
        (at(2025, 6, 9, 12, 30), True),
        (at(2025, 6, 13, 16, 59), True),  # Friday
        (at(2025, 6, 14, 12, 0), False),  # Saturday
        (at(2025, 6, 15, 12, 0), False),  # Sunday
    ])
    def test_window(self, policy, instant, expected):
        assert is_open(instant, policy) is expected

    def test_instant_is_viewed_in_policy_zone(self, policy):
        # 14:00 UTC Monday is 09:00 in Chicago (CDT)
        assert is_open(at(2025, 6, 9, 14, 0, tz="UTC"), policy)
        # 13:00 UTC Monday is 08:00 in Chicago
        assert not is_open(at(2025, 6, 9, 13, 0, tz="UTC"), policy)

    def test_day_boundary_crossed_by_zone_conversion(self, policy):
        # Saturday 02:00 UTC is still Friday 21:00 in Chicago: closed by time, not day
        assert not is_open(at(2025, 6, 14, 2, 0, tz="UTC"), policy)
        sunday_policy = parse_policy("0", "00:00-23:59", CHICAGO)
        # Monday 03:00 UTC is Sunday 22:00 in Chicago
        assert is_open(at(2025, 6, 16, 3, 0, tz="UTC"), sunday_policy)

    def test_naive_instant_is_read_in_policy_zone(self, policy):
        assert is_open(datetime(2025, 6, 9, 10, 0), policy)

    def test_pure(self, policy):
        instant = at(2025, 6, 9, 10, 0)
        assert [is_open(instant, policy) for _ in range(3)] == [True, True, True]


class TestParsing:
    def test_parse_days(self):
        assert parse_days("1, 2,3") == frozenset({1, 2, 3})

    @pytest.mark.parametrize("raw", ["", "7", "mon", "1,,x"])
    def test_parse_days_rejects(self, raw):
        with pytest.raises(ValueError):
            parse_days(raw)

    @pytest.mark.parametrize("hours", ["9-5", "09:00", "25:00-26:00", "17:00-09:00", ""])
    def test_parse_policy_rejects_hours(self, hours):
        with pytest.raises(ValueError):
            parse_policy("1,2,3", hours, CHICAGO)

    def test_parse_policy_rejects_timezone(self):
        with pytest.raises(ValueError):
            parse_policy("1", "09:00-17:00", "Mars/Olympus")

    def test_load_policy_fails_open(self):
        policy = load_policy("1,2,3,4,5", "nine to five", CHICAGO)
        assert policy == always_open(CHICAGO)
        assert is_open(at(2025, 6, 15, 3, 0), policy)

    def test_load_policy_bad_zone_falls_back_to_utc(self):
        policy = load_policy("1", "09:00-17:00", "Nowhere/Land")
        assert policy.timezone == "UTC"

    def test_check_open_unparsable_config_is_closed(self):
        assert check_open(at(2025, 6, 9, 10, 0), "1,2,3,4,5", "bogus", CHICAGO) is False

    def test_check_open_valid_config(self):
        assert check_open(at(2025, 6, 9, 10, 0), "1,2,3,4,5", "09:00-17:00", CHICAGO) is True


class TestDescribe:
    def test_weekdays(self, policy):
        assert describe(policy) == "Monday through Friday, 9:00 AM to 5:00 PM"

    def test_every_day(self):
        assert describe(always_open("UTC")) == "every day, 12:00 AM to 11:59 PM"

    def test_single_day(self):
        assert describe(parse_policy("6", "10:30-14:00", CHICAGO)) == "Saturday, 10:30 AM to 2:00 PM"

    def test_scattered_days(self):
        assert describe(parse_policy("1,3,5", "08:00-12:00", CHICAGO)) == (
            "Monday, Wednesday and Friday, 8:00 AM to 12:00 PM"
        )
