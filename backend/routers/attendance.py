from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.config import EXCUSE_NOTES_MAX_LENGTH
from backend.security import require_session
from backend.services.excuses import (
    AttendanceNotFoundError,
    ExcuseRejectedError,
    grant_excuse,
    mark_reviewed,
    revoke_excuse,
)
from database.db import AttendanceRecord, get_attendance

router = APIRouter(dependencies=[Depends(require_session)])


class ExcuseGrant(BaseModel):
    notes: str | None = Field(default=None, max_length=EXCUSE_NOTES_MAX_LENGTH)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _attendance_payload(record: AttendanceRecord) -> dict:
    return {
        "id": record["id"],
        "shift_occurrence_id": record["shift_occurrence_id"],
        "user_id": record["user_id"],
        "status": record["status"],
        "time_in": _iso(record["time_in"]),
        "time_out": _iso(record["time_out"]),
        "did_arrive_late": record["did_arrive_late"],
        "did_leave_early": record["did_leave_early"],
        "is_makeup": record["is_makeup"],
        "dropped_notes": record["dropped_notes"],
        "is_excused": record["is_excused"],
        "excuse_notes": record["excuse_notes"],
        "excused_by_id": record["excused_by_id"],
        "excused_at": _iso(record["excused_at"]),
        "reviewed_by_id": record["reviewed_by_id"],
        "reviewed_at": _iso(record["reviewed_at"]),
    }


@router.get("/attendance/{attendance_id}")
def attendance_detail(attendance_id: int):
    record = get_attendance(attendance_id)
    if not record:
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    return _attendance_payload(record)


@router.post("/attendance/{attendance_id}/excuse")
def excuse_attendance(
    attendance_id: int,
    payload: ExcuseGrant | None = None,
    session: dict = Depends(require_session),
):
    try:
        record = grant_excuse(attendance_id, int(session["uid"]), payload.notes if payload else None)
    except AttendanceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ExcuseRejectedError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"ok": True, "attendance": _attendance_payload(record)}


@router.delete("/attendance/{attendance_id}/excuse")
def revoke_attendance_excuse(attendance_id: int):
    try:
        record = revoke_excuse(attendance_id)
    except AttendanceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ExcuseRejectedError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"ok": True, "attendance": _attendance_payload(record)}


@router.post("/attendance/{attendance_id}/review")
def review_attendance(attendance_id: int, session: dict = Depends(require_session)):
    try:
        record = mark_reviewed(attendance_id, int(session["uid"]))
    except AttendanceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ExcuseRejectedError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"ok": True, "attendance": _attendance_payload(record)}
