"""
Resolve shift occurrences to absolute instants.

Schedules store local wall-clock strings ("22:00", "02:00"); occurrences
store a date anchor. Everything the reconciliation engine compares is an
aware UTC datetime produced here, never a raw stored value.
"""
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from backend.config import TZ


def get_timezone(name: str | None = None) -> ZoneInfo:
    return ZoneInfo(name or TZ)


def _zone(tz: ZoneInfo | str | None) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    return get_timezone(tz)


def ensure_utc(value: datetime) -> datetime:
    """Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_clock_time(value: str) -> tuple[int, int]:
    """
    Parse "HH:MM" (or "HH:MM:SS", seconds ignored) into (hour, minute).

    Raises ValueError for anything that is not a valid wall-clock time.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid clock time: {value!r}")
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid clock time: {value!r}")
    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid clock time: {value!r}") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid clock time: {value!r}")
    return hour, minute


def _local_instant(day, hour: int, minute: int, zone: ZoneInfo) -> datetime:
    local = datetime.combine(day, time(hour, minute), tzinfo=zone)
    return local.astimezone(timezone.utc)


def resolve_occurrence_start(
    occurrence_timestamp: datetime,
    schedule_start_time: str,
    tz: ZoneInfo | str | None = None,
) -> datetime:
    zone = _zone(tz)
    local_day = ensure_utc(occurrence_timestamp).astimezone(zone).date()
    hour, minute = parse_clock_time(schedule_start_time)
    return _local_instant(local_day, hour, minute, zone)


def resolve_occurrence_end(
    start: datetime,
    schedule_start_time: str,
    schedule_end_time: str,
    tz: ZoneInfo | str | None = None,
) -> datetime:
    zone = _zone(tz)
    local_day = ensure_utc(start).astimezone(zone).date()
    start_hm = parse_clock_time(schedule_start_time)
    end_hm = parse_clock_time(schedule_end_time)
    # end <= start means the shift runs past midnight
    if end_hm <= start_hm:
        local_day = local_day + timedelta(days=1)
    return _local_instant(local_day, end_hm[0], end_hm[1], zone)


def resolve_occurrence_window(
    occurrence_timestamp: datetime,
    schedule_start_time: str,
    schedule_end_time: str,
    tz: ZoneInfo | str | None = None,
) -> tuple[datetime, datetime]:
    zone = _zone(tz)
    start = resolve_occurrence_start(occurrence_timestamp, schedule_start_time, zone)
    end = resolve_occurrence_end(start, schedule_start_time, schedule_end_time, zone)
    return start, end
