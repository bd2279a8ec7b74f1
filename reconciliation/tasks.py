from datetime import datetime

from celery import shared_task
from sqlalchemy.orm import Session

from core.alerts import get_alert_dispatcher
from core.database import SessionLocal
from ledger.client import get_ledger_client
from reconciliation.repair import reconcile_onramp, reconcile_sc_rewards
from reconciliation.service import get_reconciliation_engine


@shared_task(name="reconciliation.run")
def run_reconciliation_task(start: str, end: str, period: str = "on_demand"):
    db: Session = SessionLocal()
    try:
        result = get_reconciliation_engine().run(
            db,
            datetime.fromisoformat(start),
            datetime.fromisoformat(end),
            period=period,
        )
        return result.to_dict()
    finally:
        db.close()


@shared_task(name="reconciliation.repair_sc_rewards")
def reconcile_sc_rewards_task():
    db: Session = SessionLocal()
    try:
        return reconcile_sc_rewards(db, get_ledger_client()).to_dict()
    finally:
        db.close()


@shared_task(name="reconciliation.repair_onramp")
def reconcile_onramp_task():
    db: Session = SessionLocal()
    try:
        return reconcile_onramp(db, get_ledger_client(), get_alert_dispatcher()).to_dict()
    finally:
        db.close()
