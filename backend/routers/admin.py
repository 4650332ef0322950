import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Request

from backend.security import require_session
from backend.services.reconciliation import ReconciliationScheduler

router = APIRouter(dependencies=[Depends(require_session)])


def _reconciler(request: Request) -> ReconciliationScheduler:
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise HTTPException(status_code=503, detail="Reconciliation is not initialised.")
    return reconciler


@router.post("/admin/reconciliation/tick")
def run_reconciliation_tick(request: Request):
    reconciler = _reconciler(request)
    try:
        result = reconciler.tick()
    except sqlite3.Error as exc:
        raise HTTPException(status_code=500, detail=f"Reconciliation failed: {exc}")
    if result is None:
        raise HTTPException(status_code=409, detail="A reconciliation tick is already running.")
    return {
        "ok": True,
        "message": "Reconciliation tick completed.",
        **result,
    }


@router.get("/admin/reconciliation/status")
def reconciliation_status(request: Request):
    return _reconciler(request).status()
