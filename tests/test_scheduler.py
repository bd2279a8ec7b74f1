from apscheduler.schedulers.background import BackgroundScheduler

from core.expiring_store import ExpiringStore
from reconciliation import scheduler as scheduler_module


def test_start_scheduler_registers_cadences(monkeypatch):
    fresh = BackgroundScheduler(timezone="UTC")
    monkeypatch.setattr(fresh, "start", lambda: None)
    monkeypatch.setattr(scheduler_module, "scheduler", fresh)

    scheduler_module.start_scheduler()

    assert {job.id for job in fresh.get_jobs()} == {
        "reconciliation-hourly",
        "reconciliation-daily",
        "expiring-store-sweep",
    }


def test_sweep_job_empties_expired_entries(monkeypatch):
    now = [0.0]
    store = ExpiringStore(clock=lambda: now[0])
    store.set("processor-available:stripe", True, ttl_seconds=60)
    monkeypatch.setattr(scheduler_module, "availability_cache", store)

    now[0] = 120
    scheduler_module.sweep_expiring_store()

    assert len(store) == 0
