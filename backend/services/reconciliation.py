"""
Periodic shift attendance reconciliation.

Each tick compares open staffing sessions against nearby shift occurrences
and brings the attendance ledger up to date in four passes:

  1. occurrence-start sweep   absent rows for every assigned user once a
                              shift has started; upcoming -> absent
  2. recent-start matching    present rows for users already in a session
                              when the shift starts
  3. recent-end closing       time_out = scheduled end for users still in a
                              session when the shift ends
  4. ongoing catch-up         present rows for users who joined mid-shift

Every write is skip-duplicate or conditional on a column still being NULL,
so a tick can be repeated, missed or run from another process without
producing duplicates or overwriting a first arrival / real departure.
"""
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypedDict
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler

from backend.config import (
    LATE_TOLERANCE_MINUTES,
    RECONCILE_INTERVAL_SECONDS,
    RECONCILE_LOOKAHEAD_SECONDS,
    RECONCILE_LOOKBACK_SECONDS,
    SWEEP_LOOKBACK_HOURS,
)
from backend.services.ledger import PresenceBatch, is_protected, resolve_window
from backend.services.time_resolver import ensure_utc, get_timezone
from database.db import (
    ActiveSession,
    AttendanceCreate,
    OccurrenceRecord,
    connect_db,
    create_attendances,
    get_attendances_for_occurrences,
    list_active_sessions,
    list_occurrences,
    promote_upcoming_to_absent,
    update_attendance,
)

logger = logging.getLogger(__name__)

JOB_ID = "shift-attendance-reconciliation"
# Anchors are calendar dates; a resolved boundary can sit up to a day (plus
# a wrapped end) away from the stored anchor.
ANCHOR_SLACK = timedelta(days=2)


class TickResult(TypedDict):
    now: str
    absent_created: int
    upcoming_promoted: int
    present_created: int
    present_promoted: int
    closed: int
    skipped_occurrences: int


class ResolvedOccurrence(TypedDict):
    occurrence: OccurrenceRecord
    start: datetime
    end: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _earliest_session_by_user(sessions: list[ActiveSession]) -> dict[int, datetime]:
    out: dict[int, datetime] = {}
    for session in sessions:
        started = ensure_utc(session["started_at"])
        current = out.get(session["user_id"])
        if current is None or started < current:
            out[session["user_id"]] = started
    return out


class ReconciliationScheduler:
    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        tz: ZoneInfo | str | None = None,
        interval_seconds: int | None = None,
        lookback_seconds: int | None = None,
        lookahead_seconds: int | None = None,
        sweep_lookback_hours: int | None = None,
        late_tolerance_minutes: int | None = None,
        connect: Callable[[], sqlite3.Connection] | None = None,
    ):
        self._clock = clock or _utc_now
        self.tz = tz if isinstance(tz, ZoneInfo) else get_timezone(tz)
        self.interval_seconds = max(1, int(interval_seconds or RECONCILE_INTERVAL_SECONDS))
        self.lookback = timedelta(
            seconds=RECONCILE_LOOKBACK_SECONDS if lookback_seconds is None else max(0, lookback_seconds)
        )
        self.lookahead = timedelta(
            seconds=RECONCILE_LOOKAHEAD_SECONDS if lookahead_seconds is None else max(0, lookahead_seconds)
        )
        self.sweep_lookback = timedelta(hours=sweep_lookback_hours or SWEEP_LOOKBACK_HOURS)
        self.late_tolerance_minutes = (
            LATE_TOLERANCE_MINUTES if late_tolerance_minutes is None else max(0, late_tolerance_minutes)
        )
        self._connect = connect or connect_db

        self._tick_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._scheduler: BackgroundScheduler | None = None
        self._status: dict[str, Any] = {
            "state": "stopped",       # stopped | idle | running
            "running": False,         # periodic job registered
            "last_tick_at": None,     # ISO string
            "last_result": None,
            "last_error": None,
            "ticks": 0,
        }

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            return
        scheduler = BackgroundScheduler(
            timezone=self.tz,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": self.interval_seconds,
            },
        )
        scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        with self._status_lock:
            self._status["running"] = True
            if self._status["state"] == "stopped":
                self._status["state"] = "idle"
        logger.info("Shift attendance reconciliation started (every %ss)", self.interval_seconds)

    def stop(self, wait: bool = True) -> None:
        scheduler = self._scheduler
        self._scheduler = None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=wait)
            logger.info("Shift attendance reconciliation stopped")
        with self._status_lock:
            self._status["running"] = False
            self._status["state"] = "stopped"

    def status(self) -> dict[str, Any]:
        with self._status_lock:
            return dict(self._status)

    # -----------------------------
    # Tick
    # -----------------------------
    def tick(self, now: datetime | None = None) -> TickResult | None:
        """
        Run all four passes once. Returns None when another tick is still in
        flight in this process. Errors abort the tick and propagate.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Reconciliation tick skipped; previous tick still running")
            return None
        marker = ensure_utc(now or self._clock())
        try:
            with self._status_lock:
                self._status["state"] = "running"
            try:
                result = self._run_passes(marker)
            except Exception as exc:
                logger.exception("Shift attendance reconciliation failed at %s", marker.isoformat())
                self._finish(marker, None, f"{type(exc).__name__}: {exc}")
                raise
            self._finish(marker, result, None)
        finally:
            self._tick_lock.release()

        changes = (
            result["absent_created"]
            + result["upcoming_promoted"]
            + result["present_created"]
            + result["present_promoted"]
            + result["closed"]
        )
        log = logger.info if changes or result["skipped_occurrences"] else logger.debug
        log(
            "Reconciliation at %s: absent+%s upcoming->absent %s present+%s promoted %s closed %s skipped %s",
            result["now"],
            result["absent_created"],
            result["upcoming_promoted"],
            result["present_created"],
            result["present_promoted"],
            result["closed"],
            result["skipped_occurrences"],
        )
        return result

    def _finish(self, marker: datetime, result: TickResult | None, error: str | None) -> None:
        with self._status_lock:
            self._status["state"] = "idle" if self._status["running"] else "stopped"
            self._status["last_tick_at"] = marker.isoformat(timespec="seconds")
            self._status["ticks"] += 1
            self._status["last_error"] = error
            if result is not None:
                self._status["last_result"] = dict(result)

    def _run_passes(self, now: datetime) -> TickResult:
        result: TickResult = {
            "now": now.isoformat(timespec="seconds"),
            "absent_created": 0,
            "upcoming_promoted": 0,
            "present_created": 0,
            "present_promoted": 0,
            "closed": 0,
            "skipped_occurrences": 0,
        }
        skipped: set[int] = set()

        conn = self._connect()
        try:
            occurrences = self._load_occurrences(conn, now, skipped)
            self._sweep_started_occurrences(conn, now, occurrences, result)
            conn.commit()

            sessions = _earliest_session_by_user(list_active_sessions("staffing", conn=conn))
            if sessions:
                self._match_recent_starts(conn, now, occurrences, sessions, result)
                conn.commit()
                self._close_recent_ends(conn, now, occurrences, sessions, result)
                conn.commit()
                self._catch_up_ongoing(conn, now, occurrences, sessions, result)
                conn.commit()
        finally:
            conn.close()

        result["skipped_occurrences"] = len(skipped)
        return result

    def _load_occurrences(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        skipped: set[int],
    ) -> list[ResolvedOccurrence]:
        """Every occurrence any pass could care about, resolved once."""
        rows = list_occurrences(
            now - self.sweep_lookback - ANCHOR_SLACK,
            now + self.lookahead + ANCHOR_SLACK,
            conn=conn,
        )
        out: list[ResolvedOccurrence] = []
        for occurrence in rows:
            window = resolve_window(occurrence, self.tz)
            if window is None:
                skipped.add(occurrence["id"])
                continue
            out.append({"occurrence": occurrence, "start": window[0], "end": window[1]})
        return out

    def _in_tick_window(self, instant: datetime, now: datetime) -> bool:
        return now - self.lookback <= instant <= now + self.lookahead

    # -----------------------------
    # Passes
    # -----------------------------
    def _sweep_started_occurrences(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        occurrences: list[ResolvedOccurrence],
        result: TickResult,
    ) -> None:
        started = [
            item for item in occurrences if now - self.sweep_lookback <= item["start"] <= now
        ]
        if not started:
            return
        existing = get_attendances_for_occurrences(
            [item["occurrence"]["id"] for item in started],
            conn=conn,
        )

        to_create: list[AttendanceCreate] = []
        upcoming_ids: list[int] = []
        for item in started:
            occ_id = item["occurrence"]["id"]
            for user_id in sorted(item["occurrence"]["assigned_user_ids"]):
                row = existing.get((occ_id, user_id))
                if row is None:
                    to_create.append({"shift_occurrence_id": occ_id, "user_id": user_id, "status": "absent"})
                elif row["status"] == "upcoming" and row["time_in"] is None:
                    upcoming_ids.append(row["id"])

        result["absent_created"] += create_attendances(to_create, conn=conn)
        result["upcoming_promoted"] += promote_upcoming_to_absent(upcoming_ids, conn=conn)

    def _match_presence(
        self,
        conn: sqlite3.Connection,
        candidates: list[ResolvedOccurrence],
        sessions: dict[int, datetime],
        result: TickResult,
    ) -> None:
        if not candidates:
            return
        existing = get_attendances_for_occurrences(
            [item["occurrence"]["id"] for item in candidates],
            conn=conn,
        )
        batch = PresenceBatch(self.late_tolerance_minutes)
        for item in candidates:
            occ_id = item["occurrence"]["id"]
            for user_id in sorted(item["occurrence"]["assigned_user_ids"]):
                started_at = sessions.get(user_id)
                if started_at is None:
                    continue
                batch.add(
                    occurrence_id=occ_id,
                    user_id=user_id,
                    session_started_at=started_at,
                    scheduled_start=item["start"],
                    existing=existing.get((occ_id, user_id)),
                )
        if not len(batch):
            return
        created, promoted = batch.flush(conn)
        result["present_created"] += created
        result["present_promoted"] += promoted

    def _match_recent_starts(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        occurrences: list[ResolvedOccurrence],
        sessions: dict[int, datetime],
        result: TickResult,
    ) -> None:
        recent = [item for item in occurrences if self._in_tick_window(item["start"], now)]
        self._match_presence(conn, recent, sessions, result)

    def _close_recent_ends(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        occurrences: list[ResolvedOccurrence],
        sessions: dict[int, datetime],
        result: TickResult,
    ) -> None:
        ending = [item for item in occurrences if self._in_tick_window(item["end"], now)]
        if not ending:
            return
        existing = get_attendances_for_occurrences(
            [item["occurrence"]["id"] for item in ending],
            conn=conn,
        )
        ends = {item["occurrence"]["id"]: item["end"] for item in ending}

        for (occ_id, user_id), row in sorted(existing.items()):
            if occ_id not in ends or user_id not in sessions:
                continue
            if is_protected(row["status"]) or row["time_out"] is not None:
                continue
            if row["time_in"] is None:
                continue
            # did_leave_early stays as-is: still in session at the end is not leaving early
            if update_attendance(
                row["id"],
                {"time_out": ends[occ_id]},
                where_null=("time_out",),
                where_status_in=("present",),
                conn=conn,
            ):
                result["closed"] += 1

    def _catch_up_ongoing(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        occurrences: list[ResolvedOccurrence],
        sessions: dict[int, datetime],
        result: TickResult,
    ) -> None:
        ongoing = [item for item in occurrences if item["start"] <= now < item["end"]]
        self._match_presence(conn, ongoing, sessions, result)
