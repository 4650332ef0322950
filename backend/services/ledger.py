"""
Attendance ledger state machine.

Status moves upcoming -> absent -> present and never back. Rows in a
protected status (dropped, dropped_makeup) belong to the drop/makeup
workflow and are skipped here. time_in is written once; time_out only
while it is still NULL.
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from backend.services.lateness import (
    effective_time_in,
    effective_time_out,
    is_arrival_late,
    is_departure_early,
)
from backend.services.time_resolver import ensure_utc, get_timezone, resolve_occurrence_window
from database.db import (
    PROTECTED_STATUSES,
    AttendanceCreate,
    AttendanceRecord,
    OccurrenceRecord,
    assign_occurrence_user,
    connect_db,
    create_attendances,
    get_attendances_for_occurrences,
    get_occurrence,
    list_occurrences,
    update_attendance,
    upsert_attendance_status,
)

logger = logging.getLogger(__name__)

# How far back a tap can still belong to an occurrence anchor.
TAP_ANCHOR_LOOKBACK = timedelta(days=2)
TAP_ANCHOR_LOOKAHEAD = timedelta(days=1)


def is_protected(status: str | None) -> bool:
    return bool(status) and status in PROTECTED_STATUSES


def resolve_window(
    occurrence: OccurrenceRecord,
    tz: ZoneInfo,
) -> tuple[datetime, datetime] | None:
    """Resolved [start, end) for an occurrence, or None when its schedule is unusable."""
    if not occurrence["start_time"] or not occurrence["end_time"]:
        logger.warning(
            "Occurrence %s references missing schedule %s; skipping",
            occurrence["id"],
            occurrence["schedule_id"],
        )
        return None
    try:
        return resolve_occurrence_window(
            occurrence["timestamp"],
            occurrence["start_time"],
            occurrence["end_time"],
            tz,
        )
    except ValueError as exc:
        logger.warning("Occurrence %s has an invalid schedule: %s; skipping", occurrence["id"], exc)
        return None


class PresenceBatch:
    """
    Collects create-as-present and promote-to-present writes for one pass.

    Creates go out as a single skip-duplicate insert; promotions are
    conditional updates that only land while time_in and time_out are NULL.
    """

    def __init__(self, tolerance_minutes: int | None = None):
        self.tolerance_minutes = tolerance_minutes
        self._creates: list[AttendanceCreate] = []
        self._promotions: list[tuple[int, dict[str, Any]]] = []
        self._seen: set[tuple[int, int]] = set()

    def __len__(self) -> int:
        return len(self._creates) + len(self._promotions)

    def add(
        self,
        *,
        occurrence_id: int,
        user_id: int,
        session_started_at: datetime,
        scheduled_start: datetime,
        existing: AttendanceRecord | None,
    ) -> bool:
        key = (occurrence_id, user_id)
        if key in self._seen:
            return False
        if existing is not None:
            if is_protected(existing["status"]):
                return False
            # first arrival and genuine departures are kept
            if existing["time_in"] is not None or existing["time_out"] is not None:
                return False

        time_in = effective_time_in(ensure_utc(session_started_at), scheduled_start)
        late = is_arrival_late(scheduled_start, time_in, self.tolerance_minutes)
        self._seen.add(key)

        if existing is None:
            self._creates.append(
                {
                    "shift_occurrence_id": occurrence_id,
                    "user_id": user_id,
                    "status": "present",
                    "time_in": time_in,
                    "did_arrive_late": late,
                }
            )
        else:
            self._promotions.append(
                (existing["id"], {"status": "present", "time_in": time_in, "did_arrive_late": late})
            )
        return True

    def flush(self, conn: sqlite3.Connection) -> tuple[int, int]:
        """Returns (created, promoted)."""
        created = create_attendances(self._creates, conn=conn)
        promoted = 0
        for attendance_id, patch in self._promotions:
            if update_attendance(
                attendance_id,
                patch,
                where_null=("time_in", "time_out"),
                conn=conn,
            ):
                promoted += 1
        self._creates = []
        self._promotions = []
        return created, promoted


def _user_occurrence_windows(
    conn: sqlite3.Connection,
    user_id: int,
    at: datetime,
    tz: ZoneInfo,
) -> list[tuple[OccurrenceRecord, datetime, datetime]]:
    occurrences = list_occurrences(
        at - TAP_ANCHOR_LOOKBACK,
        at + TAP_ANCHOR_LOOKAHEAD,
        user_id=user_id,
        conn=conn,
    )
    out = []
    for occurrence in occurrences:
        window = resolve_window(occurrence, tz)
        if window is None:
            continue
        out.append((occurrence, window[0], window[1]))
    return out


def record_tap_in(
    user_id: int,
    tap_in_time: datetime,
    *,
    tz: ZoneInfo | str | None = None,
    tolerance_minutes: int | None = None,
) -> int:
    """
    Tap-in hook for staffing sessions.

    Marks the user present on every occurrence they are assigned to that is
    running at tap_in_time. Returns how many rows were created or promoted.
    """
    zone = tz if isinstance(tz, ZoneInfo) else get_timezone(tz)
    tapped = ensure_utc(tap_in_time)
    conn = connect_db()
    try:
        windows = [
            (occ, start, end)
            for occ, start, end in _user_occurrence_windows(conn, user_id, tapped, zone)
            if start <= tapped < end
        ]
        existing = get_attendances_for_occurrences([occ["id"] for occ, _, _ in windows], conn=conn)
        batch = PresenceBatch(tolerance_minutes)
        for occ, start, _ in windows:
            batch.add(
                occurrence_id=occ["id"],
                user_id=user_id,
                session_started_at=tapped,
                scheduled_start=start,
                existing=existing.get((occ["id"], user_id)),
            )
        created, promoted = batch.flush(conn)
        conn.commit()
    finally:
        conn.close()

    if created or promoted:
        logger.info("Tap-in for user %s: %s created, %s promoted", user_id, created, promoted)
    return created + promoted


def record_tap_out(
    user_id: int,
    tap_out_time: datetime,
    *,
    tz: ZoneInfo | str | None = None,
    tolerance_minutes: int | None = None,
) -> int:
    """
    Tap-out hook for staffing sessions.

    Closes every open present row of the user whose occurrence has started,
    at min(tap-out, scheduled end), and flags an early departure. Only the
    first tap-out lands. Returns how many rows were closed.
    """
    zone = tz if isinstance(tz, ZoneInfo) else get_timezone(tz)
    tapped = ensure_utc(tap_out_time)
    closed = 0
    conn = connect_db()
    try:
        windows = _user_occurrence_windows(conn, user_id, tapped, zone)
        existing = get_attendances_for_occurrences([occ["id"] for occ, _, _ in windows], conn=conn)
        for occ, start, end in windows:
            row = existing.get((occ["id"], user_id))
            if row is None or row["status"] != "present":
                continue
            if row["time_in"] is None or row["time_out"] is not None:
                continue
            if start > tapped:
                continue
            time_out = effective_time_out(tapped, end)
            if update_attendance(
                row["id"],
                {
                    "time_out": time_out,
                    "did_leave_early": is_departure_early(end, time_out, tolerance_minutes),
                },
                where_null=("time_out",),
                where_status_in=("present",),
                conn=conn,
            ):
                closed += 1
        conn.commit()
    finally:
        conn.close()

    if closed:
        logger.info("Tap-out for user %s closed %s attendance row(s)", user_id, closed)
    return closed


def assign_makeup(
    occurrence_id: int,
    user_id: int,
    *,
    now: datetime,
    tz: ZoneInfo | str | None = None,
) -> int:
    """Makeup pickup: the row starts as upcoming until its start passes."""
    zone = tz if isinstance(tz, ZoneInfo) else get_timezone(tz)
    occurrence = get_occurrence(occurrence_id)
    if occurrence is None:
        raise LookupError(f"Shift occurrence {occurrence_id} not found.")
    window = resolve_window(occurrence, zone)
    if window is None:
        raise ValueError(f"Shift occurrence {occurrence_id} has no usable schedule.")
    if window[0] <= ensure_utc(now):
        raise ValueError("Makeup shifts must start in the future.")
    assign_occurrence_user(occurrence_id, user_id)
    return upsert_attendance_status(occurrence_id, user_id, "upcoming", is_makeup=True)


def drop_assignment(
    occurrence_id: int,
    user_id: int,
    *,
    notes: str | None = None,
    with_makeup: bool = False,
) -> int:
    status = "dropped_makeup" if with_makeup else "dropped"
    clean_notes = notes.strip() if notes and notes.strip() else None
    return upsert_attendance_status(occurrence_id, user_id, status, dropped_notes=clean_notes)
