import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from core.database import SessionLocal
from core.expiring_store import availability_cache
from reconciliation.service import get_reconciliation_engine

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")


def run_hourly_reconciliation():
    db: Session = SessionLocal()
    try:
        get_reconciliation_engine().run_hourly(db)
    finally:
        db.close()


def run_daily_reconciliation():
    db: Session = SessionLocal()
    try:
        get_reconciliation_engine().run_daily(db)
    finally:
        db.close()


def sweep_expiring_store():
    removed = availability_cache.sweep()
    if removed:
        logger.debug("Swept %s expired cache entries", removed)


def start_scheduler():
    if scheduler.running:
        return

    job_defaults = {"max_instances": 1, "coalesce": True, "replace_existing": True}
    scheduler.add_job(
        run_hourly_reconciliation, "cron", minute=5, id="reconciliation-hourly", **job_defaults
    )
    scheduler.add_job(
        run_daily_reconciliation, "cron", hour=0, minute=15, id="reconciliation-daily", **job_defaults
    )
    scheduler.add_job(
        sweep_expiring_store, "interval", minutes=5, id="expiring-store-sweep", **job_defaults
    )
    scheduler.start()
    logger.info("Reconciliation scheduler started")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
