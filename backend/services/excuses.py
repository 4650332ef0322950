"""
Excuse / review workflow.

Owns is_excused, excuse_notes, excused_by_id, excused_at, reviewed_by_id and
reviewed_at on a ledger row and nothing else. Concurrent edits of the same
row are last-write-wins.
"""
import logging
from datetime import datetime, timezone

from backend.config import EXCUSE_NOTES_MAX_LENGTH
from database.db import AttendanceRecord, get_attendance, update_excuse_fields

logger = logging.getLogger(__name__)


class AttendanceNotFoundError(LookupError):
    pass


class ExcuseRejectedError(ValueError):
    pass


def _load(attendance_id: int) -> AttendanceRecord:
    record = get_attendance(attendance_id)
    if record is None:
        raise AttendanceNotFoundError("Attendance record not found.")
    return record


def _clean_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    cleaned = notes.strip()
    if not cleaned:
        return None
    if len(cleaned) > EXCUSE_NOTES_MAX_LENGTH:
        raise ExcuseRejectedError(f"Excuse notes must be at most {EXCUSE_NOTES_MAX_LENGTH} characters.")
    return cleaned


def grant_excuse(
    attendance_id: int,
    actor_id: int,
    notes: str | None = None,
    *,
    now: datetime | None = None,
) -> AttendanceRecord:
    """
    Excuse an attendance row. An excused row counts as full credit in
    reporting whatever its status; a dropped row excused this way counts as
    attended without a makeup.
    """
    record = _load(attendance_id)
    if record["is_excused"]:
        raise ExcuseRejectedError("This attendance is already excused.")
    if record["status"] == "upcoming":
        raise ExcuseRejectedError("Cannot excuse an upcoming shift that hasn't occurred yet.")

    update_excuse_fields(
        attendance_id,
        {
            "is_excused": True,
            "excuse_notes": _clean_notes(notes),
            "excused_by_id": actor_id,
            "excused_at": now or datetime.now(timezone.utc),
        },
    )
    logger.info("Attendance %s excused by %s", attendance_id, actor_id)
    return _load(attendance_id)


def revoke_excuse(attendance_id: int) -> AttendanceRecord:
    """Revoking also clears the review so the row goes back to pending."""
    record = _load(attendance_id)
    if not record["is_excused"]:
        raise ExcuseRejectedError("This attendance is not currently excused.")

    update_excuse_fields(
        attendance_id,
        {
            "is_excused": False,
            "excuse_notes": None,
            "reviewed_at": None,
            "reviewed_by_id": None,
        },
    )
    logger.info("Excuse revoked for attendance %s", attendance_id)
    return _load(attendance_id)


def mark_reviewed(
    attendance_id: int,
    actor_id: int,
    *,
    now: datetime | None = None,
) -> AttendanceRecord:
    """Reviewed without an excuse: the issue still counts against the user."""
    record = _load(attendance_id)
    if record["is_excused"]:
        raise ExcuseRejectedError(
            "This attendance is already excused. Revoke the excuse first to mark it as unexcused."
        )
    if record["reviewed_at"] is not None:
        raise ExcuseRejectedError("This attendance has already been reviewed.")
    if record["status"] == "upcoming":
        raise ExcuseRejectedError("Cannot review an upcoming shift that hasn't occurred yet.")

    update_excuse_fields(
        attendance_id,
        {
            "reviewed_at": now or datetime.now(timezone.utc),
            "reviewed_by_id": actor_id,
        },
    )
    logger.info("Attendance %s marked reviewed by %s", attendance_id, actor_id)
    return _load(attendance_id)
