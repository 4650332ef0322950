import hashlib
import hmac
import secrets
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, TypedDict

from backend.config import ADMIN_PASSWORD, ADMIN_USERNAME, DB_PATH, DB_TIMEOUT_SECONDS


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

AttendanceStatus = Literal["upcoming", "present", "absent", "dropped", "dropped_makeup"]
SessionType = Literal["regular", "staffing"]

ATTENDANCE_STATUSES: tuple[str, ...] = ("upcoming", "present", "absent", "dropped", "dropped_makeup")
# Set by the drop/makeup workflow; never touched by reconciliation.
PROTECTED_STATUSES: tuple[str, ...] = ("dropped", "dropped_makeup")

ENGINE_COLUMNS = frozenset({"status", "time_in", "time_out", "did_arrive_late", "did_leave_early"})
EXCUSE_COLUMNS = frozenset(
    {"is_excused", "excuse_notes", "excused_by_id", "excused_at", "reviewed_by_id", "reviewed_at"}
)

_IN_CHUNK_SIZE = 500


class ActiveSession(TypedDict):
    user_id: int
    started_at: datetime


class OccurrenceRecord(TypedDict):
    id: int
    timestamp: datetime
    schedule_id: int | None
    start_time: str | None
    end_time: str | None
    assigned_user_ids: set[int]


class AttendanceRecord(TypedDict):
    id: int
    shift_occurrence_id: int
    user_id: int
    status: AttendanceStatus
    time_in: datetime | None
    time_out: datetime | None
    did_arrive_late: bool
    did_leave_early: bool
    is_makeup: bool
    dropped_notes: str | None
    is_excused: bool
    excuse_notes: str | None
    excused_by_id: int | None
    excused_at: datetime | None
    reviewed_by_id: int | None
    reviewed_at: datetime | None


class AttendanceCreate(TypedDict, total=False):
    shift_occurrence_id: int
    user_id: int
    status: AttendanceStatus
    time_in: datetime | None
    did_arrive_late: bool
    is_makeup: bool


ATTENDANCE_COLUMNS: tuple[str, ...] = (
    "id",
    "shift_occurrence_id",
    "user_id",
    "status",
    "time_in",
    "time_out",
    "did_arrive_late",
    "did_leave_early",
    "is_makeup",
    "dropped_notes",
    "is_excused",
    "excuse_notes",
    "excused_by_id",
    "excused_at",
    "reviewed_by_id",
    "reviewed_at",
)
_INSTANT_COLUMNS = {"time_in", "time_out", "excused_at", "reviewed_at"}
_BOOL_COLUMNS = {"did_arrive_late", "did_leave_early", "is_makeup", "is_excused"}


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_TIMEOUT_SECONDS, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def to_db_instant(value: datetime) -> str:
    """UTC, second precision, so stored instants sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def from_db_instant(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _db_value(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _INSTANT_COLUMNS:
        return to_db_instant(value)
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _chunks(values: list, size: int = _IN_CHUNK_SIZE) -> Iterable[list]:
    for idx in range(0, len(values), size):
        yield values[idx : idx + size]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_users (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        session_type TEXT NOT NULL DEFAULT 'regular'
            CHECK (session_type IN ('regular', 'staffing')),
        started_at TEXT NOT NULL,        -- UTC ISO-8601
        ended_at TEXT                    -- NULL while active
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_active ON sessions (session_type, ended_at)"
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS shift_schedules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
        start_time TEXT NOT NULL,        -- HH:MM local
        end_time TEXT NOT NULL           -- HH:MM local, <= start_time wraps midnight
    )
    """)

    # No FK on shift_schedule_id; occurrences whose schedule is gone get skipped.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS shift_occurrences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shift_schedule_id INTEGER,
        timestamp TEXT NOT NULL          -- date anchor, UTC ISO-8601
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_shift_occurrences_timestamp ON shift_occurrences (timestamp)"
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS shift_occurrence_users (
        shift_occurrence_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        FOREIGN KEY (shift_occurrence_id) REFERENCES shift_occurrences(id) ON DELETE CASCADE,
        PRIMARY KEY (shift_occurrence_id, user_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS shift_attendances (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shift_occurrence_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'absent'
            CHECK (status IN ('upcoming', 'present', 'absent', 'dropped', 'dropped_makeup')),
        time_in TEXT,
        time_out TEXT,
        did_arrive_late INTEGER NOT NULL DEFAULT 0,
        did_leave_early INTEGER NOT NULL DEFAULT 0,
        is_makeup INTEGER NOT NULL DEFAULT 0,
        dropped_notes TEXT,
        is_excused INTEGER NOT NULL DEFAULT 0,
        excuse_notes TEXT,
        excused_by_id INTEGER,
        excused_at TEXT,
        reviewed_by_id INTEGER,
        reviewed_at TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (shift_occurrence_id) REFERENCES shift_occurrences(id) ON DELETE CASCADE,
        UNIQUE(shift_occurrence_id, user_id)
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_shift_attendances_user_open ON shift_attendances (user_id, time_out)"
    )

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Admin users
# -----------------------------
def verify_admin_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    admin_id, saved_username, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": admin_id, "username": saved_username}


# -----------------------------
# Sessions (written by the tap-in/tap-out collaborator)
# -----------------------------
def start_session(
    user_id: int,
    started_at: datetime,
    *,
    session_type: SessionType = "staffing",
    conn: sqlite3.Connection | None = None,
) -> int:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            INSERT INTO sessions (user_id, session_type, started_at)
            VALUES (?, ?, ?)
            """,
            (user_id, session_type, to_db_instant(started_at)),
        )
        session_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return session_id
    finally:
        if owns_conn:
            active_conn.close()


def end_session(
    session_id: int,
    ended_at: datetime,
    *,
    conn: sqlite3.Connection | None = None,
) -> bool:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            UPDATE sessions
            SET ended_at = ?
            WHERE id = ? AND ended_at IS NULL
            """,
            (to_db_instant(ended_at), session_id),
        )
        changed = cur.rowcount > 0
        if owns_conn:
            active_conn.commit()
        return changed
    finally:
        if owns_conn:
            active_conn.close()


def list_active_sessions(
    session_type: SessionType = "staffing",
    *,
    conn: sqlite3.Connection | None = None,
) -> list[ActiveSession]:
    """Open sessions of one type, earliest start first."""
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT user_id, started_at
            FROM sessions
            WHERE session_type = ?
              AND ended_at IS NULL
            ORDER BY started_at ASC, id ASC
            """,
            (session_type,),
        )
        return [
            {"user_id": int(user_id), "started_at": from_db_instant(started_at)}
            for user_id, started_at in cur.fetchall()
        ]
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Schedules + occurrences (read-only to reconciliation)
# -----------------------------
def create_shift_schedule(
    day_of_week: int,
    start_time: str,
    end_time: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            INSERT INTO shift_schedules (day_of_week, start_time, end_time)
            VALUES (?, ?, ?)
            """,
            (day_of_week, start_time, end_time),
        )
        schedule_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return schedule_id
    finally:
        if owns_conn:
            active_conn.close()


def create_shift_occurrence(
    schedule_id: int | None,
    timestamp: datetime,
    user_ids: Iterable[int] = (),
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            INSERT INTO shift_occurrences (shift_schedule_id, timestamp)
            VALUES (?, ?)
            """,
            (schedule_id, to_db_instant(timestamp)),
        )
        occurrence_id = int(cur.lastrowid)
        cur.executemany(
            """
            INSERT OR IGNORE INTO shift_occurrence_users (shift_occurrence_id, user_id)
            VALUES (?, ?)
            """,
            [(occurrence_id, int(user_id)) for user_id in user_ids],
        )
        if owns_conn:
            active_conn.commit()
        return occurrence_id
    finally:
        if owns_conn:
            active_conn.close()


def assign_occurrence_user(
    occurrence_id: int,
    user_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT OR IGNORE INTO shift_occurrence_users (shift_occurrence_id, user_id)
            VALUES (?, ?)
            """,
            (occurrence_id, user_id),
        )
        if owns_conn:
            active_conn.commit()
    finally:
        if owns_conn:
            active_conn.close()


def list_occurrences(
    range_start: datetime,
    range_end: datetime,
    *,
    user_id: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[OccurrenceRecord]:
    """
    Occurrences whose stored anchor lies in [range_start, range_end].

    The anchor is only a calendar date; callers widen the range and filter on
    resolved start/end themselves. A missing schedule yields None strings.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        where = ["o.timestamp >= ?", "o.timestamp <= ?"]
        params: list[Any] = [to_db_instant(range_start), to_db_instant(range_end)]
        if user_id is not None:
            where.append(
                """
                EXISTS (
                    SELECT 1
                    FROM shift_occurrence_users ou
                    WHERE ou.shift_occurrence_id = o.id AND ou.user_id = ?
                )
                """
            )
            params.append(user_id)

        cur.execute(
            f"""
            SELECT o.id, o.timestamp, o.shift_schedule_id, s.start_time, s.end_time
            FROM shift_occurrences o
            LEFT JOIN shift_schedules s ON s.id = o.shift_schedule_id
            WHERE {" AND ".join(where)}
            ORDER BY o.timestamp ASC, o.id ASC
            """,
            params,
        )
        occurrences: list[OccurrenceRecord] = [
            {
                "id": int(occ_id),
                "timestamp": from_db_instant(stamp),
                "schedule_id": int(schedule_id) if schedule_id is not None else None,
                "start_time": str(start_time) if start_time else None,
                "end_time": str(end_time) if end_time else None,
                "assigned_user_ids": set(),
            }
            for occ_id, stamp, schedule_id, start_time, end_time in cur.fetchall()
        ]
        if not occurrences:
            return occurrences

        by_id = {occ["id"]: occ for occ in occurrences}
        for chunk in _chunks(list(by_id)):
            cur.execute(
                f"""
                SELECT shift_occurrence_id, user_id
                FROM shift_occurrence_users
                WHERE shift_occurrence_id IN ({_placeholders(len(chunk))})
                """,
                chunk,
            )
            for occ_id, assigned_user_id in cur.fetchall():
                by_id[int(occ_id)]["assigned_user_ids"].add(int(assigned_user_id))
        return occurrences
    finally:
        if owns_conn:
            active_conn.close()


def get_occurrence(
    occurrence_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> OccurrenceRecord | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT o.id, o.timestamp, o.shift_schedule_id, s.start_time, s.end_time
            FROM shift_occurrences o
            LEFT JOIN shift_schedules s ON s.id = o.shift_schedule_id
            WHERE o.id = ?
            """,
            (occurrence_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        occ_id, stamp, schedule_id, start_time, end_time = row
        cur.execute(
            """
            SELECT user_id
            FROM shift_occurrence_users
            WHERE shift_occurrence_id = ?
            """,
            (occ_id,),
        )
        return {
            "id": int(occ_id),
            "timestamp": from_db_instant(stamp),
            "schedule_id": int(schedule_id) if schedule_id is not None else None,
            "start_time": str(start_time) if start_time else None,
            "end_time": str(end_time) if end_time else None,
            "assigned_user_ids": {int(r[0]) for r in cur.fetchall()},
        }
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Shift attendance ledger
# -----------------------------
def _attendance_from_row(row: tuple) -> AttendanceRecord:
    record = dict(zip(ATTENDANCE_COLUMNS, row))
    for col in _INSTANT_COLUMNS:
        record[col] = from_db_instant(record[col])
    for col in _BOOL_COLUMNS:
        record[col] = bool(record[col])
    return record  # type: ignore[return-value]


def get_attendance(
    attendance_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRecord | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {", ".join(ATTENDANCE_COLUMNS)}
            FROM shift_attendances
            WHERE id = ?
            """,
            (attendance_id,),
        )
        row = cur.fetchone()
        return _attendance_from_row(row) if row else None
    finally:
        if owns_conn:
            active_conn.close()


def get_attendances_for_occurrences(
    occurrence_ids: Iterable[int],
    *,
    conn: sqlite3.Connection | None = None,
) -> dict[tuple[int, int], AttendanceRecord]:
    """Rows keyed by (shift_occurrence_id, user_id)."""
    ids = sorted({int(occ_id) for occ_id in occurrence_ids})
    if not ids:
        return {}

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        out: dict[tuple[int, int], AttendanceRecord] = {}
        for chunk in _chunks(ids):
            cur.execute(
                f"""
                SELECT {", ".join(ATTENDANCE_COLUMNS)}
                FROM shift_attendances
                WHERE shift_occurrence_id IN ({_placeholders(len(chunk))})
                """,
                chunk,
            )
            for row in cur.fetchall():
                record = _attendance_from_row(row)
                out[(record["shift_occurrence_id"], record["user_id"])] = record
        return out
    finally:
        if owns_conn:
            active_conn.close()


def create_attendances(
    rows: list[AttendanceCreate],
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    """
    Batch insert, skipping any (occurrence, user) pair that already exists.

    Returns how many rows were actually inserted.
    """
    if not rows:
        return 0

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.executemany(
            """
            INSERT OR IGNORE INTO shift_attendances (
                shift_occurrence_id,
                user_id,
                status,
                time_in,
                did_arrive_late,
                is_makeup
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    int(row["shift_occurrence_id"]),
                    int(row["user_id"]),
                    row.get("status", "absent"),
                    _db_value("time_in", row.get("time_in")),
                    _db_value("did_arrive_late", row.get("did_arrive_late", False)),
                    _db_value("is_makeup", row.get("is_makeup", False)),
                )
                for row in rows
            ],
        )
        inserted = max(0, cur.rowcount)
        if owns_conn:
            active_conn.commit()
        return inserted
    finally:
        if owns_conn:
            active_conn.close()


def update_attendance(
    attendance_id: int,
    patch: dict[str, Any],
    *,
    where_null: Iterable[str] = (),
    where_status_in: Iterable[str] | None = None,
    exclude_statuses: Iterable[str] = PROTECTED_STATUSES,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """
    Conditional single-statement update of engine-owned columns.

    The preconditions live in the WHERE clause, so the check and the write
    happen atomically. Returns True when the row was changed.
    """
    if not patch:
        raise ValueError("Empty attendance patch.")
    unknown = set(patch) - ENGINE_COLUMNS
    if unknown:
        raise ValueError(f"Columns not writable by reconciliation: {sorted(unknown)}")
    null_cols = list(where_null)
    bad_null = set(null_cols) - set(ATTENDANCE_COLUMNS)
    if bad_null:
        raise ValueError(f"Unknown precondition columns: {sorted(bad_null)}")

    sets = [f"{col} = ?" for col in patch]
    sets.append("updated_at = CURRENT_TIMESTAMP")
    params: list[Any] = [_db_value(col, value) for col, value in patch.items()]

    where = ["id = ?"]
    params.append(attendance_id)
    where.extend(f"{col} IS NULL" for col in null_cols)
    if where_status_in is not None:
        allowed = list(where_status_in)
        where.append(f"status IN ({_placeholders(len(allowed))})")
        params.extend(allowed)
    excluded = list(exclude_statuses)
    if excluded:
        where.append(f"status NOT IN ({_placeholders(len(excluded))})")
        params.extend(excluded)

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            UPDATE shift_attendances
            SET {", ".join(sets)}
            WHERE {" AND ".join(where)}
            """,
            params,
        )
        changed = cur.rowcount > 0
        if owns_conn:
            active_conn.commit()
        return changed
    finally:
        if owns_conn:
            active_conn.close()


def promote_upcoming_to_absent(
    attendance_ids: Iterable[int],
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    ids = sorted({int(att_id) for att_id in attendance_ids})
    if not ids:
        return 0

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        changed = 0
        for chunk in _chunks(ids):
            cur.execute(
                f"""
                UPDATE shift_attendances
                SET status = 'absent',
                    updated_at = CURRENT_TIMESTAMP
                WHERE id IN ({_placeholders(len(chunk))})
                  AND status = 'upcoming'
                  AND time_in IS NULL
                """,
                chunk,
            )
            changed += max(0, cur.rowcount)
        if owns_conn:
            active_conn.commit()
        return changed
    finally:
        if owns_conn:
            active_conn.close()


def upsert_attendance_status(
    occurrence_id: int,
    user_id: int,
    status: AttendanceStatus,
    *,
    is_makeup: bool | None = None,
    dropped_notes: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Drop/makeup collaborator write: force a status onto the (occurrence, user) row."""
    if status not in ATTENDANCE_STATUSES:
        raise ValueError(f"Unknown attendance status: {status}")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            INSERT INTO shift_attendances (
                shift_occurrence_id, user_id, status, is_makeup, dropped_notes
            )
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (shift_occurrence_id, user_id) DO UPDATE SET
                status = excluded.status,
                is_makeup = COALESCE(?, shift_attendances.is_makeup),
                dropped_notes = COALESCE(excluded.dropped_notes, shift_attendances.dropped_notes),
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                occurrence_id,
                user_id,
                status,
                1 if is_makeup else 0,
                dropped_notes,
                None if is_makeup is None else (1 if is_makeup else 0),
            ),
        )
        cur.execute(
            """
            SELECT id
            FROM shift_attendances
            WHERE shift_occurrence_id = ? AND user_id = ?
            """,
            (occurrence_id, user_id),
        )
        attendance_id = int(cur.fetchone()[0])
        if owns_conn:
            active_conn.commit()
        return attendance_id
    finally:
        if owns_conn:
            active_conn.close()


def update_excuse_fields(
    attendance_id: int,
    patch: dict[str, Any],
    *,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Excuse/review writes; restricted to the excuse-owned columns."""
    if not patch:
        raise ValueError("Empty excuse patch.")
    unknown = set(patch) - EXCUSE_COLUMNS
    if unknown:
        raise ValueError(f"Columns not writable by the excuse workflow: {sorted(unknown)}")

    sets = [f"{col} = ?" for col in patch]
    sets.append("updated_at = CURRENT_TIMESTAMP")
    params: list[Any] = [_db_value(col, value) for col, value in patch.items()]
    params.append(attendance_id)

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            UPDATE shift_attendances
            SET {", ".join(sets)}
            WHERE id = ?
            """,
            params,
        )
        changed = cur.rowcount > 0
        if owns_conn:
            active_conn.commit()
        return changed
    finally:
        if owns_conn:
            active_conn.close()

