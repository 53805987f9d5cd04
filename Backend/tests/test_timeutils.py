"""
Time helper tests: half-open overlap, HH:MM parsing and DST resolution.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from kitsune.timeutils import (
    Interval,
    ensure_utc,
    get_zone,
    iter_dates,
    local_day_bounds,
    local_to_utc,
    overlaps,
    parse_hhmm,
    weekday_key,
)

NEW_YORK = ZoneInfo("America/New_York")


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestOverlap:
    def test_touching_intervals_do_not_overlap(self):
        assert not overlaps(utc(2030, 1, 7, 0, 0), utc(2030, 1, 7, 0, 30), utc(2030, 1, 7, 0, 30), utc(2030, 1, 7, 1))

    def test_partial_overlap(self):
        a = Interval(utc(2030, 1, 7, 0, 0), utc(2030, 1, 7, 1, 0))
        b = Interval(utc(2030, 1, 7, 0, 59), utc(2030, 1, 7, 2, 0))
        assert a.overlaps(b)
        assert b.overlaps(a)

    def test_contains_is_half_open(self):
        slot = Interval(utc(2030, 1, 7, 0, 0), utc(2030, 1, 7, 0, 30))
        assert slot.contains(utc(2030, 1, 7, 0, 0))
        assert not slot.contains(utc(2030, 1, 7, 0, 30))


class TestParsing:
    def test_parse_hhmm(self):
        assert parse_hhmm("09:05") == time(9, 5)

    @pytest.mark.parametrize("value", ["24:00", "9", "ab:cd", "12:60", ""])
    def test_parse_hhmm_rejects(self, value):
        with pytest.raises(ValueError):
            parse_hhmm(value)

    def test_unknown_zone(self):
        with pytest.raises(ValueError):
            get_zone("Mars/Olympus_Mons")

    def test_weekday_key(self):
        assert weekday_key(date(2030, 1, 7)) == "mon"
        assert weekday_key(date(2030, 1, 13)) == "sun"

    def test_iter_dates_is_inclusive(self):
        assert list(iter_dates(date(2030, 1, 7), date(2030, 1, 9))) == [
            date(2030, 1, 7),
            date(2030, 1, 8),
            date(2030, 1, 9),
        ]

    def test_ensure_utc_rejects_naive(self):
        with pytest.raises(ValueError):
            ensure_utc(datetime(2030, 1, 7, 9, 0))

    def test_ensure_utc_normalizes_offset(self):
        jst = timezone(timedelta(hours=9))
        assert ensure_utc(datetime(2030, 1, 7, 9, 0, tzinfo=jst)) == utc(2030, 1, 7, 0, 0)


class TestDaylightSaving:
    def test_skipped_wall_time_has_no_instant(self):
        # 2030-03-10 02:30 does not exist in New York
        assert local_to_utc(date(2030, 3, 10), time(2, 30), NEW_YORK) is None

    def test_repeated_wall_time_uses_first_occurrence(self):
        # 2030-11-03 01:30 happens twice; the first is still EDT (UTC-4)
        assert local_to_utc(date(2030, 11, 3), time(1, 30), NEW_YORK) == utc(2030, 11, 3, 5, 30)

    def test_spring_forward_day_is_23_hours(self):
        bounds = local_day_bounds(date(2030, 3, 10), NEW_YORK)
        assert bounds.end - bounds.start == timedelta(hours=23)

    def test_fall_back_day_is_25_hours(self):
        bounds = local_day_bounds(date(2030, 11, 3), NEW_YORK)
        assert bounds.end - bounds.start == timedelta(hours=25)
