from datetime import timedelta
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from core.alerts import AlertDispatcher, get_alert_dispatcher
from core.auth import require_admin
from core.database import get_db
from core.errors import ErrorCode, ErrorMessage, bad_request, not_found
from core.models import as_utc, utcnow
from ledger.client import LedgerClient, get_ledger_client
from reconciliation.models import ReconciliationRun
from reconciliation.repair import reconcile_onramp
from reconciliation.report import export_csv, export_json
from reconciliation.schemas import RunReconciliationRequest
from reconciliation.service import ReconciliationEngine, get_reconciliation_engine
from reconciliation.tasks import run_reconciliation_task

router = APIRouter(prefix="/api/reconciliation", tags=["Reconciliation"])

PERIOD_LENGTH = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
}


@router.post("/run")
def run_reconciliation(
    payload: RunReconciliationRequest,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    if payload.period in PERIOD_LENGTH:
        end = as_utc(payload.end) or utcnow()
        start = end - PERIOD_LENGTH[payload.period]
    else:
        if not (payload.start and payload.end):
            raise bad_request(ErrorCode.INVALID_WINDOW, "start and end are required for on_demand runs")
        start, end = as_utc(payload.start), as_utc(payload.end)

    if start >= end:
        raise bad_request(ErrorCode.INVALID_WINDOW, ErrorMessage.INVALID_WINDOW)

    if payload.background:
        task = run_reconciliation_task.delay(start.isoformat(), end.isoformat(), payload.period)
        return {"success": True, "data": {"queued": True, "taskId": task.id}}

    result = engine.run(db, start, end, period=payload.period)
    return {"success": True, "data": result.to_dict()}


@router.post("/onramp/repair")
def repair_onramp(
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    ledger: LedgerClient = Depends(get_ledger_client),
    alerts: AlertDispatcher = Depends(get_alert_dispatcher),
):
    return {"success": True, "data": reconcile_onramp(db, ledger, alerts).to_dict()}


@router.get("/runs")
def list_runs(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    runs = (
        db.query(ReconciliationRun)
        .order_by(ReconciliationRun.created_at.desc())
        .limit(limit)
        .all()
    )
    return {
        "success": True,
        "data": [
            {
                "id": r.id,
                "period": r.period,
                "windowStart": r.window_start.isoformat(),
                "windowEnd": r.window_end.isoformat(),
                "partial": r.partial,
                "summary": r.summary,
                "createdAt": r.created_at.isoformat() if r.created_at else None,
            }
            for r in runs
        ],
    }


@router.get("/runs/{run_id}/export")
def export_run(
    run_id: str,
    format: Literal["json", "csv"] = "json",
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    run = db.query(ReconciliationRun).filter(ReconciliationRun.id == run_id).first()
    if not run:
        raise not_found(ErrorCode.RECONCILIATION_RUN_NOT_FOUND, ErrorMessage.RECONCILIATION_RUN_NOT_FOUND)

    if format == "csv":
        return Response(
            content=export_csv(run.result),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="reconciliation-{run.id}.csv"'},
        )
    return Response(content=export_json(run.result), media_type="application/json")
