import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from core.alerts import CRITICAL, WARNING, Alert, AlertDispatcher, get_alert_dispatcher
from core.config import settings
from core.models import utcnow
from ledger.client import LedgerClient, get_ledger_client
from reconciliation.checks import (
    DEFAULT_CHECKS,
    CheckContext,
    CheckStatus,
    ReconciliationCheck,
    Thresholds,
)
from reconciliation.models import ReconciliationRun

logger = logging.getLogger(__name__)

CheckFn = Callable[[CheckContext], ReconciliationCheck]


@dataclass
class ReconciliationResult:
    period: str
    window_start: datetime
    window_end: datetime
    checks: list[ReconciliationCheck] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    skipped_checks: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)
    run_id: str | None = None

    @property
    def partial(self) -> bool:
        return bool(self.skipped_checks)

    @property
    def summary(self) -> dict:
        return {
            "totalChecks": len(self.checks),
            "passed": sum(1 for c in self.checks if c.status == CheckStatus.PASS),
            "warnings": sum(1 for c in self.checks if c.status == CheckStatus.WARN),
            "failures": sum(1 for c in self.checks if c.status == CheckStatus.FAIL),
        }

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "period": self.period,
            "windowStart": self.window_start.isoformat(),
            "windowEnd": self.window_end.isoformat(),
            "partial": self.partial,
            "skippedChecks": list(self.skipped_checks),
            "summary": self.summary,
            "checks": [c.to_dict() for c in self.checks],
            "alerts": [a.to_dict() for a in self.alerts],
        }


def generate_alerts(checks: list[ReconciliationCheck]) -> list[Alert]:
    alerts = []
    for check in checks:
        if check.status == CheckStatus.FAIL:
            alerts.append(
                Alert(
                    severity=CRITICAL,
                    message=f"CRITICAL: {check.name} failed",
                    source="reconciliation",
                    details=check.to_dict(),
                )
            )
        elif check.status == CheckStatus.WARN:
            alerts.append(
                Alert(
                    severity=WARNING,
                    message=f"WARNING: {check.name} drift detected",
                    source="reconciliation",
                    details=check.to_dict(),
                )
            )
    return alerts


class ReconciliationEngine:
    """Read-only drift detection between the database and the ledger.

    Each check runs independently: one that raises becomes a FAIL entry and
    the run continues. Checks that have not started when the wall-clock
    budget is spent are skipped and the result is marked partial.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        alerts: AlertDispatcher,
        budget_seconds: float = 300.0,
        thresholds: Thresholds | None = None,
        checks: list[tuple[str, CheckFn]] | None = None,
        persist: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.alerts = alerts
        self.budget_seconds = budget_seconds
        self.thresholds = thresholds or Thresholds()
        self.checks = checks or DEFAULT_CHECKS
        self.persist = persist
        self.clock = clock

    def run(
        self,
        db: Session,
        start: datetime,
        end: datetime,
        period: str = "on_demand",
        now: datetime | None = None,
    ) -> ReconciliationResult:
        ctx = CheckContext(
            db=db,
            ledger=self.ledger,
            start=start,
            end=end,
            now=now or utcnow(),
            thresholds=self.thresholds,
        )
        result = ReconciliationResult(period=period, window_start=start, window_end=end)

        started = self.clock()
        for name, check in self.checks:
            if self.clock() - started >= self.budget_seconds:
                result.skipped_checks.append(name)
                continue

            try:
                result.checks.append(check(ctx))
            except Exception as exc:
                db.rollback()
                logger.exception("Reconciliation check %s errored", name)
                result.checks.append(
                    ReconciliationCheck(
                        name=name,
                        status=CheckStatus.FAIL,
                        expected="N/A",
                        actual="N/A",
                        drift=0.0,
                        threshold=0.0,
                        message=f"Error: {exc}",
                    )
                )

        result.alerts = generate_alerts(result.checks)
        if result.partial:
            result.alerts.append(
                Alert(
                    severity=WARNING,
                    message="WARNING: reconciliation budget exhausted, result is partial",
                    source="reconciliation",
                    details={"skippedChecks": list(result.skipped_checks), "budgetSeconds": self.budget_seconds},
                )
            )

        self.alerts.dispatch_all(result.alerts)

        if self.persist:
            result.run_id = str(uuid.uuid4())
            run = ReconciliationRun(
                id=result.run_id,
                period=period,
                window_start=start,
                window_end=end,
                partial=result.partial,
                summary=result.summary,
                result=result.to_dict(),
            )
            db.add(run)
            db.commit()

        logger.info(
            "Reconciliation %s [%s, %s): %s%s",
            period, start.isoformat(), end.isoformat(), result.summary,
            " (partial)" if result.partial else "",
        )
        return result

    def run_hourly(self, db: Session, now: datetime | None = None) -> ReconciliationResult:
        now = now or utcnow()
        return self.run(db, now - timedelta(hours=1), now, period="hourly", now=now)

    def run_daily(self, db: Session, now: datetime | None = None) -> ReconciliationResult:
        now = now or utcnow()
        return self.run(db, now - timedelta(days=1), now, period="daily", now=now)


_engine: ReconciliationEngine | None = None


def get_reconciliation_engine() -> ReconciliationEngine:
    global _engine
    if _engine is None:
        _engine = ReconciliationEngine(
            ledger=get_ledger_client(),
            alerts=get_alert_dispatcher(),
            budget_seconds=settings.RECONCILIATION_BUDGET_SECONDS,
            persist=settings.RECONCILIATION_PERSIST_HISTORY,
        )
    return _engine
