import sqlite3

import pytest

import database.db as db
from backend.services.excuses import grant_excuse, mark_reviewed
from backend.services.ledger import assign_makeup, drop_assignment, record_tap_out
from backend.services.reconciliation import ReconciliationScheduler
from conftest import at, ledger_row, ledger_rows, make_shift


@pytest.fixture()
def reconciler(ledger_db):
    return ReconciliationScheduler(
        tz="UTC",
        interval_seconds=3600,
        lookback_seconds=90,
        lookahead_seconds=30,
        sweep_lookback_hours=24,
        late_tolerance_minutes=5,
    )


def _snapshot() -> list[tuple]:
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM shift_attendances ORDER BY id")
    rows = cur.fetchall()
    conn.close()
    return rows


def test_started_shift_without_session_is_absent(reconciler):
    occ = make_shift(users=(1, 2))

    result = reconciler.tick(at(9, 0, 30))

    assert result["absent_created"] == 2
    rows = ledger_rows()
    assert [(r["user_id"], r["status"]) for r in rows] == [(1, "absent"), (2, "absent")]
    assert all(r["time_in"] is None and r["time_out"] is None for r in rows)
    assert ledger_row(occ, 1)["did_arrive_late"] is False


def test_shift_not_started_yet_is_left_alone(reconciler):
    make_shift()

    result = reconciler.tick(at(8, 0))

    assert result["absent_created"] == 0
    assert ledger_rows() == []


def test_session_open_at_start_marks_present_on_time(reconciler):
    occ = make_shift()
    db.start_session(1, at(8, 50))

    reconciler.tick(at(9, 0, 20))

    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["time_in"] == at(9, 0)
    assert row["did_arrive_late"] is False
    assert row["time_out"] is None


def test_start_inside_lookahead_creates_present_row(reconciler):
    occ = make_shift()
    db.start_session(1, at(8, 50))

    result = reconciler.tick(at(8, 59, 45))

    assert result["present_created"] == 1
    assert result["absent_created"] == 0
    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["time_in"] == at(9, 0)


def test_regular_sessions_do_not_count(reconciler):
    occ = make_shift()
    db.start_session(1, at(8, 50), session_type="regular")

    reconciler.tick(at(9, 0, 20))
    reconciler.tick(at(9, 30))

    assert ledger_row(occ, 1)["status"] == "absent"


def test_mid_shift_join_is_caught_up_and_late(reconciler):
    occ = make_shift()
    reconciler.tick(at(9, 0, 10))
    assert ledger_row(occ, 1)["status"] == "absent"

    db.start_session(1, at(9, 10))
    result = reconciler.tick(at(9, 11))

    assert result["present_promoted"] == 1
    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["time_in"] == at(9, 10)
    assert row["did_arrive_late"] is True


def test_late_tolerance_is_configurable(ledger_db):
    reconciler = ReconciliationScheduler(tz="UTC", late_tolerance_minutes=15)
    occ = make_shift()
    db.start_session(1, at(9, 10))

    reconciler.tick(at(9, 11))

    assert ledger_row(occ, 1)["did_arrive_late"] is False


def test_earliest_open_session_wins(reconciler):
    occ = make_shift()
    db.start_session(1, at(9, 20))
    db.start_session(1, at(9, 2))

    reconciler.tick(at(9, 25))

    row = ledger_row(occ, 1)
    assert row["time_in"] == at(9, 2)
    assert row["did_arrive_late"] is False


def test_session_open_at_end_closes_at_scheduled_end(reconciler):
    occ = make_shift()
    db.start_session(1, at(8, 55))
    reconciler.tick(at(9, 0, 10))

    result = reconciler.tick(at(12, 0, 30))

    assert result["closed"] == 1
    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["time_out"] == at(12, 0)
    assert row["did_leave_early"] is False


def test_overnight_shift_closes_next_morning(reconciler):
    occ = make_shift("22:00", "02:00", day=9)
    db.start_session(1, at(21, 50, day=9))

    reconciler.tick(at(22, 0, 15, day=9))
    reconciler.tick(at(23, 30, day=9))
    reconciler.tick(at(2, 0, 30, day=10))

    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["time_in"] == at(22, 0, day=9)
    assert row["time_out"] == at(2, 0, day=10)
    assert row["did_arrive_late"] is False
    assert row["did_leave_early"] is False


def test_overnight_shift_is_ongoing_after_midnight(reconciler):
    occ = make_shift("22:00", "02:00", day=9)
    reconciler.tick(at(22, 5, day=9))
    db.start_session(1, at(0, 30, day=10))

    reconciler.tick(at(0, 31, day=10))

    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["time_in"] == at(0, 30, day=10)
    assert row["did_arrive_late"] is True


def test_user_without_session_at_end_stays_open(reconciler):
    occ = make_shift()
    session_id = db.start_session(1, at(8, 55))
    reconciler.tick(at(9, 0, 10))
    db.end_session(session_id, at(11, 0))

    result = reconciler.tick(at(12, 0, 20))

    assert result["closed"] == 0
    assert ledger_row(occ, 1)["time_out"] is None


def test_repeated_ticks_change_nothing(reconciler):
    make_shift(users=(1, 2, 3))
    make_shift("11:00", "13:00", users=(2,))
    db.start_session(1, at(8, 55))
    db.start_session(3, at(9, 20))

    reconciler.tick(at(9, 30))
    before = _snapshot()
    again = reconciler.tick(at(9, 30))

    assert _snapshot() == before
    assert again["absent_created"] == 0
    assert again["upcoming_promoted"] == 0
    assert again["present_created"] == 0
    assert again["present_promoted"] == 0
    assert again["closed"] == 0


def test_first_arrival_is_kept(reconciler):
    occ = make_shift()
    session_id = db.start_session(1, at(8, 50))
    reconciler.tick(at(9, 0, 20))
    db.end_session(session_id, at(9, 40))
    db.start_session(1, at(10, 0))

    reconciler.tick(at(10, 1))

    row = ledger_row(occ, 1)
    assert row["time_in"] == at(9, 0)
    assert row["did_arrive_late"] is False


def test_real_departure_is_kept(reconciler):
    occ = make_shift()
    session_id = db.start_session(1, at(8, 50))
    reconciler.tick(at(9, 0, 20))

    db.end_session(session_id, at(11, 0))
    assert record_tap_out(1, at(11, 0), tz="UTC", tolerance_minutes=5) == 1
    db.start_session(1, at(11, 30))
    reconciler.tick(at(11, 31))
    reconciler.tick(at(12, 0, 10))

    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["time_in"] == at(9, 0)
    assert row["time_out"] == at(11, 0)
    assert row["did_leave_early"] is True


def test_dropped_rows_are_never_touched(reconciler):
    occ = make_shift(users=(1, 2))
    drop_assignment(occ, 1, notes="sick")
    drop_assignment(occ, 2, with_makeup=True)
    db.start_session(1, at(8, 50))
    db.start_session(2, at(9, 30))

    reconciler.tick(at(9, 0, 10))
    reconciler.tick(at(9, 31))
    reconciler.tick(at(12, 0, 10))

    first = ledger_row(occ, 1)
    assert first["status"] == "dropped"
    assert first["dropped_notes"] == "sick"
    assert first["time_in"] is None and first["time_out"] is None
    second = ledger_row(occ, 2)
    assert second["status"] == "dropped_makeup"
    assert second["time_in"] is None


def test_upcoming_makeup_becomes_absent_once_started(reconciler):
    occ = make_shift(users=(1,))
    assign_makeup(occ, 2, now=at(8, 0), tz="UTC")

    reconciler.tick(at(8, 30))
    assert ledger_row(occ, 2)["status"] == "upcoming"
    assert ledger_row(occ, 2)["is_makeup"] is True

    result = reconciler.tick(at(9, 0, 10))

    assert result["upcoming_promoted"] == 1
    assert ledger_row(occ, 2)["status"] == "absent"
    assert ledger_row(occ, 2)["is_makeup"] is True


def test_upcoming_makeup_in_session_ends_present(reconciler):
    occ = make_shift(users=(1,))
    assign_makeup(occ, 2, now=at(8, 0), tz="UTC")
    db.start_session(2, at(8, 58))

    reconciler.tick(at(9, 0, 10))

    row = ledger_row(occ, 2)
    assert row["status"] == "present"
    assert row["time_in"] == at(9, 0)
    assert row["is_makeup"] is True


def test_upcoming_outside_sweep_window_is_left(ledger_db):
    reconciler = ReconciliationScheduler(tz="UTC", sweep_lookback_hours=24)
    occ = make_shift(day=8)
    assign_makeup(occ, 2, now=at(8, 0, day=8), tz="UTC")

    # day 8 09:00 start is more than 24h before now
    reconciler.tick(at(11, 0, day=9))

    assert ledger_row(occ, 2)["status"] == "upcoming"


def test_excuse_fields_survive_ticks(reconciler):
    occ = make_shift()
    reconciler.tick(at(9, 0, 10))
    attendance_id = ledger_row(occ, 1)["id"]
    grant_excuse(attendance_id, 42, "car trouble", now=at(9, 5))

    db.start_session(1, at(9, 30))
    reconciler.tick(at(9, 31))

    row = ledger_row(occ, 1)
    assert row["status"] == "present"
    assert row["is_excused"] is True
    assert row["excuse_notes"] == "car trouble"
    assert row["excused_by_id"] == 42
    assert row["excused_at"] == at(9, 5)


def test_review_does_not_change_engine_fields(reconciler):
    occ = make_shift()
    reconciler.tick(at(9, 0, 10))
    attendance_id = ledger_row(occ, 1)["id"]

    mark_reviewed(attendance_id, 7, now=at(9, 10))

    row = ledger_row(occ, 1)
    assert row["status"] == "absent"
    assert row["time_in"] is None
    assert row["reviewed_by_id"] == 7


def test_missing_schedule_is_skipped(reconciler):
    orphan = db.create_shift_occurrence(999, at(0), (1,))
    good = make_shift(users=(2,))

    result = reconciler.tick(at(9, 0, 10))

    assert result["skipped_occurrences"] == 1
    assert ledger_row(orphan, 1) is None
    assert ledger_row(good, 2)["status"] == "absent"


def test_invalid_schedule_time_is_skipped(reconciler):
    schedule_id = db.create_shift_schedule(1, "9am", "12:00")
    occ = db.create_shift_occurrence(schedule_id, at(0), (1,))

    result = reconciler.tick(at(9, 0, 10))

    assert result["skipped_occurrences"] == 1
    assert ledger_row(occ, 1) is None


def test_failed_tick_propagates_and_is_recorded(ledger_db):
    def broken_connect():
        raise sqlite3.OperationalError("database is locked")

    reconciler = ReconciliationScheduler(tz="UTC", connect=broken_connect)

    with pytest.raises(sqlite3.OperationalError):
        reconciler.tick(at(9, 0))

    status = reconciler.status()
    assert status["ticks"] == 1
    assert "database is locked" in status["last_error"]
    assert status["last_result"] is None

    # the lock is released; the next tick runs normally
    reconciler._connect = db.connect_db
    assert reconciler.tick(at(9, 0)) is not None
    assert reconciler.status()["last_error"] is None


def test_overlapping_tick_is_skipped(reconciler):
    reconciler._tick_lock.acquire()
    try:
        assert reconciler.tick(at(9, 0)) is None
    finally:
        reconciler._tick_lock.release()
    assert reconciler.status()["ticks"] == 0


def test_status_tracks_last_tick(reconciler):
    make_shift()
    result = reconciler.tick(at(9, 0, 10))

    status = reconciler.status()
    assert status["state"] == "stopped"
    assert status["last_tick_at"] == "2026-02-10T09:00:10+00:00"
    assert status["last_result"] == dict(result)


def test_start_and_stop(reconciler):
    reconciler.start()
    try:
        status = reconciler.status()
        assert status["running"] is True
        assert status["state"] == "idle"
    finally:
        reconciler.stop()
    assert reconciler.status()["running"] is False
    assert reconciler.status()["state"] == "stopped"


def test_clock_is_used_without_explicit_now(ledger_db):
    reconciler = ReconciliationScheduler(tz="UTC", clock=lambda: at(9, 0, 10))
    occ = make_shift()

    result = reconciler.tick()

    assert result["now"] == "2026-02-10T09:00:10+00:00"
    assert ledger_row(occ, 1)["status"] == "absent"
