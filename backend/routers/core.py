from fastapi import APIRouter

from backend.config import (
    EARLY_LEAVE_TOLERANCE_MINUTES,
    LATE_TOLERANCE_MINUTES,
    RECONCILE_ENABLED,
    RECONCILE_INTERVAL_SECONDS,
    RECONCILE_LOOKAHEAD_SECONDS,
    RECONCILE_LOOKBACK_SECONDS,
    SWEEP_LOOKBACK_HOURS,
    TZ,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/reconciliation")
def reconciliation_config():
    return {
        "timezone": TZ,
        "enabled": RECONCILE_ENABLED,
        "interval_seconds": RECONCILE_INTERVAL_SECONDS,
        "lookback_seconds": RECONCILE_LOOKBACK_SECONDS,
        "lookahead_seconds": RECONCILE_LOOKAHEAD_SECONDS,
        "sweep_lookback_hours": SWEEP_LOOKBACK_HOURS,
        "late_tolerance_minutes": LATE_TOLERANCE_MINUTES,
        "early_leave_tolerance_minutes": EARLY_LEAVE_TOLERANCE_MINUTES,
    }
