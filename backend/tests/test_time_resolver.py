from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from backend.services.lateness import (
    effective_time_in,
    effective_time_out,
    is_arrival_late,
    is_departure_early,
)
from backend.services.time_resolver import (
    ensure_utc,
    parse_clock_time,
    resolve_occurrence_end,
    resolve_occurrence_start,
    resolve_occurrence_window,
)

UTC = timezone.utc


def test_resolves_same_day_window():
    start, end = resolve_occurrence_window(datetime(2026, 2, 10, tzinfo=UTC), "09:00", "12:00", "UTC")
    assert start == datetime(2026, 2, 10, 9, 0, tzinfo=UTC)
    assert end == datetime(2026, 2, 10, 12, 0, tzinfo=UTC)


def test_end_before_start_wraps_to_next_day():
    start, end = resolve_occurrence_window(datetime(2026, 1, 9, tzinfo=UTC), "22:00", "02:00", "UTC")
    assert start == datetime(2026, 1, 9, 22, 0, tzinfo=UTC)
    assert end == datetime(2026, 1, 10, 2, 0, tzinfo=UTC)
    assert end > start


def test_equal_start_and_end_is_a_full_day():
    start, end = resolve_occurrence_window(datetime(2026, 1, 9, tzinfo=UTC), "09:00", "09:00", "UTC")
    assert end - start == timedelta(hours=24)


def test_wall_clock_is_read_in_configured_zone():
    zone = ZoneInfo("America/New_York")
    # local midnight on 2026-02-10 is 05:00Z
    anchor = datetime(2026, 2, 10, 5, 0, tzinfo=UTC)
    start = resolve_occurrence_start(anchor, "09:00", zone)
    assert start == datetime(2026, 2, 10, 14, 0, tzinfo=UTC)
    assert start.tzinfo == UTC


def test_overnight_shift_across_spring_forward():
    zone = ZoneInfo("America/New_York")
    # 2026-03-07 local midnight (EST); clocks jump 02:00 -> 03:00 on 03-08
    anchor = datetime(2026, 3, 7, 5, 0, tzinfo=UTC)
    start, end = resolve_occurrence_window(anchor, "22:00", "06:00", zone)
    assert start == datetime(2026, 3, 8, 3, 0, tzinfo=UTC)
    assert end == datetime(2026, 3, 8, 10, 0, tzinfo=UTC)
    assert end - start == timedelta(hours=7)


def test_overnight_shift_across_fall_back():
    zone = ZoneInfo("America/New_York")
    # 2026-10-31 local midnight (EDT); clocks fall back 02:00 -> 01:00 on 11-01
    anchor = datetime(2026, 10, 31, 4, 0, tzinfo=UTC)
    start, end = resolve_occurrence_window(anchor, "22:00", "06:00", zone)
    assert start == datetime(2026, 11, 1, 2, 0, tzinfo=UTC)
    assert end == datetime(2026, 11, 1, 11, 0, tzinfo=UTC)
    assert end - start == timedelta(hours=9)


def test_end_resolves_from_start_date():
    start = datetime(2026, 1, 9, 22, 0, tzinfo=UTC)
    assert resolve_occurrence_end(start, "22:00", "02:00", "UTC") == datetime(2026, 1, 10, 2, 0, tzinfo=UTC)
    assert resolve_occurrence_end(start, "22:00", "23:30", "UTC") == datetime(2026, 1, 9, 23, 30, tzinfo=UTC)


@pytest.mark.parametrize("value,expected", [("09:00", (9, 0)), ("23:59:59", (23, 59)), (" 7:05 ", (7, 5))])
def test_parse_clock_time(value, expected):
    assert parse_clock_time(value) == expected


@pytest.mark.parametrize("value", ["", "24:00", "12:60", "noon", "12", None])
def test_parse_clock_time_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_clock_time(value)


def test_naive_values_are_taken_as_utc():
    assert ensure_utc(datetime(2026, 2, 10, 9, 0)) == datetime(2026, 2, 10, 9, 0, tzinfo=UTC)
    eastern = datetime(2026, 2, 10, 4, 0, tzinfo=ZoneInfo("America/New_York"))
    assert ensure_utc(eastern) == datetime(2026, 2, 10, 9, 0, tzinfo=UTC)


def test_arrival_late_only_beyond_tolerance():
    start = datetime(2026, 2, 10, 9, 0, tzinfo=UTC)
    assert not is_arrival_late(start, start, 5)
    assert not is_arrival_late(start, start + timedelta(minutes=5), 5)
    assert is_arrival_late(start, start + timedelta(minutes=5, seconds=1), 5)
    assert is_arrival_late(start, start + timedelta(minutes=1), 0)


def test_departure_early_only_beyond_tolerance():
    end = datetime(2026, 2, 10, 12, 0, tzinfo=UTC)
    assert not is_departure_early(end, end, 5)
    assert not is_departure_early(end, end - timedelta(minutes=5), 5)
    assert is_departure_early(end, end - timedelta(minutes=6), 5)


def test_effective_times_clamp_to_the_window():
    start = datetime(2026, 2, 10, 9, 0, tzinfo=UTC)
    end = datetime(2026, 2, 10, 12, 0, tzinfo=UTC)
    assert effective_time_in(start - timedelta(minutes=10), start) == start
    assert effective_time_in(start + timedelta(minutes=10), start) == start + timedelta(minutes=10)
    assert effective_time_out(end + timedelta(minutes=10), end) == end
    assert effective_time_out(end - timedelta(minutes=10), end) == end - timedelta(minutes=10)
