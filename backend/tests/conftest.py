from datetime import datetime, timezone

import pytest

import backend.config as config
import database.db as db


@pytest.fixture()
def ledger_db(tmp_path, monkeypatch):
    test_db = tmp_path / "shiftledger_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


def at(hour: int, minute: int = 0, second: int = 0, *, day: int = 10) -> datetime:
    """An instant in February 2026, UTC."""
    return datetime(2026, 2, day, hour, minute, second, tzinfo=timezone.utc)


def make_shift(start: str = "09:00", end: str = "12:00", users=(1,), *, day: int = 10) -> int:
    schedule_id = db.create_shift_schedule(at(0, day=day).weekday(), start, end)
    return db.create_shift_occurrence(schedule_id, at(0, day=day), users)


def ledger_rows() -> list[dict]:
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {", ".join(db.ATTENDANCE_COLUMNS)}
        FROM shift_attendances
        ORDER BY shift_occurrence_id, user_id
        """
    )
    rows = [db._attendance_from_row(row) for row in cur.fetchall()]
    conn.close()
    return rows


def ledger_row(occurrence_id: int, user_id: int) -> dict | None:
    return db.get_attendances_for_occurrences([occurrence_id]).get((occurrence_id, user_id))
