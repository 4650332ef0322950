from datetime import datetime, timedelta

from backend.config import EARLY_LEAVE_TOLERANCE_MINUTES, LATE_TOLERANCE_MINUTES


def is_arrival_late(
    scheduled_start: datetime,
    actual_time_in: datetime,
    tolerance_minutes: int | None = None,
) -> bool:
    grace = LATE_TOLERANCE_MINUTES if tolerance_minutes is None else max(0, int(tolerance_minutes))
    return actual_time_in > scheduled_start + timedelta(minutes=grace)


def is_departure_early(
    scheduled_end: datetime,
    actual_time_out: datetime,
    tolerance_minutes: int | None = None,
) -> bool:
    """Only for genuine tap-outs; a session still open at shift end is never early."""
    grace = EARLY_LEAVE_TOLERANCE_MINUTES if tolerance_minutes is None else max(0, int(tolerance_minutes))
    return actual_time_out < scheduled_end - timedelta(minutes=grace)


def effective_time_in(session_started_at: datetime, scheduled_start: datetime) -> datetime:
    return session_started_at if session_started_at > scheduled_start else scheduled_start


def effective_time_out(tap_out_time: datetime, scheduled_end: datetime) -> datetime:
    return tap_out_time if tap_out_time < scheduled_end else scheduled_end
