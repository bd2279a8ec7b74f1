import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.models import StoreOrder
from ledger.abi import SOULAANI_COIN, STORE_PURCHASE_REWARD, reason_hash
from ledger.client import LedgerClient
from ledger.events import AwardedEvent
from rewards.models import SCRewardTransaction, recorded_amount

logger = logging.getLogger(__name__)

PURCHASE_COUNT_CHECK = "Purchase Count Reconciliation"
EXECUTION_RATE_CHECK = "Reward Execution Rate"
STALE_EVENTS_CHECK = "Missing/Stale Events"
REWARD_AMOUNT_CHECK = "SC Reward Amount Reconciliation"


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


@dataclass
class Thresholds:
    purchase_count_drift: float = settings.PURCHASE_COUNT_DRIFT_PERCENT
    reward_amount_drift: float = settings.REWARD_AMOUNT_DRIFT_PERCENT
    failure_rate_warn: float = settings.FAILED_REWARD_RATE_WARN_PERCENT
    failure_rate_fail: float = settings.FAILED_REWARD_RATE_FAIL_PERCENT
    stale_minutes: int = settings.STALE_PENDING_MINUTES
    stale_critical: int = settings.STALE_PENDING_CRITICAL


@dataclass
class ReconciliationCheck:
    name: str
    status: CheckStatus
    expected: str
    actual: str
    drift: float
    threshold: float
    message: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "expected": self.expected,
            "actual": self.actual,
            "drift": self.drift,
            "threshold": self.threshold,
            "message": self.message,
        }


@dataclass
class CheckContext:
    db: Session
    ledger: LedgerClient
    start: datetime
    end: datetime
    now: datetime
    thresholds: Thresholds = field(default_factory=Thresholds)


def classify(value: float, warn_above: float, fail_above: float | None = None) -> CheckStatus:
    """Monotone in value: a larger value never yields a milder status."""
    if fail_above is not None and value > fail_above:
        return CheckStatus.FAIL
    if value > warn_above:
        return CheckStatus.WARN
    return CheckStatus.PASS


def relative_drift(actual, expected) -> float:
    expected = Decimal(str(expected))
    actual = Decimal(str(actual))
    drift = abs(actual - expected) / max(expected, Decimal(1)) * 100
    return round(float(drift), 2)


def format_amount(value: Decimal) -> str:
    return format(Decimal(value).normalize(), "f") if value else "0"


def _in_window(column, ctx: CheckContext):
    return (column >= ctx.start, column < ctx.end)


def check_purchase_count(ctx: CheckContext) -> ReconciliationCheck:
    """Confirmed purchase rewards vs completed orders at SC-verified stores."""
    expected = (
        ctx.db.query(func.count(StoreOrder.id))
        .filter(
            StoreOrder.payment_status == "COMPLETED",
            StoreOrder.sc_verified.is_(True),
            *_in_window(StoreOrder.created_at, ctx),
        )
        .scalar()
        or 0
    )
    actual = (
        ctx.db.query(func.count(SCRewardTransaction.id))
        .filter(
            SCRewardTransaction.reason == STORE_PURCHASE_REWARD,
            SCRewardTransaction.status == "COMPLETED",
            SCRewardTransaction.tx_hash.isnot(None),
            *_in_window(SCRewardTransaction.created_at, ctx),
        )
        .scalar()
        or 0
    )

    drift = relative_drift(actual, expected)
    threshold = ctx.thresholds.purchase_count_drift
    status = classify(drift, threshold)

    if status == CheckStatus.PASS:
        message = f"{actual} confirmed purchase rewards for {expected} verified orders"
    else:
        message = f"{abs(expected - actual)} verified orders without a matching confirmed reward ({drift}% drift)"

    return ReconciliationCheck(
        name=PURCHASE_COUNT_CHECK,
        status=status,
        expected=str(expected),
        actual=str(actual),
        drift=drift,
        threshold=threshold,
        message=message,
    )


def check_reward_execution_rate(ctx: CheckContext) -> ReconciliationCheck:
    counts = dict(
        ctx.db.query(SCRewardTransaction.status, func.count(SCRewardTransaction.id))
        .filter(*_in_window(SCRewardTransaction.created_at, ctx))
        .group_by(SCRewardTransaction.status)
        .all()
    )
    total = sum(counts.values())
    failed = counts.get("FAILED", 0)
    completed = counts.get("COMPLETED", 0)

    failure_rate = round(failed / total * 100, 2) if total else 0.0
    success_rate = completed / total * 100 if total else 100.0

    t = ctx.thresholds
    status = classify(failure_rate, t.failure_rate_warn, t.failure_rate_fail)

    return ReconciliationCheck(
        name=EXECUTION_RATE_CHECK,
        status=status,
        expected=f">{100 - t.failure_rate_warn:.0f}%",
        actual=f"{success_rate:.2f}%",
        drift=failure_rate,
        threshold=t.failure_rate_warn,
        message=f"{failed} of {total} reward mints failed ({failure_rate}%)",
    )


def check_stale_events(ctx: CheckContext) -> ReconciliationCheck:
    """Rewards still PENDING long after they were created, whatever the window."""
    t = ctx.thresholds
    cutoff = ctx.now - timedelta(minutes=t.stale_minutes)
    stale = (
        ctx.db.query(func.count(SCRewardTransaction.id))
        .filter(
            SCRewardTransaction.status == "PENDING",
            SCRewardTransaction.created_at < cutoff,
        )
        .scalar()
        or 0
    )

    status = classify(stale, 0, t.stale_critical)
    if stale:
        message = f"{stale} reward transactions PENDING for more than {t.stale_minutes} minutes"
    else:
        message = "No stale pending rewards"

    return ReconciliationCheck(
        name=STALE_EVENTS_CHECK,
        status=status,
        expected="0",
        actual=str(stale),
        drift=float(stale),
        threshold=float(t.stale_critical),
        message=message,
    )


def check_reward_amounts(ctx: CheckContext) -> ReconciliationCheck:
    rows = (
        ctx.db.query(
            SCRewardTransaction.amount_reward,
            SCRewardTransaction.reward_metadata,
            SCRewardTransaction.tx_hash,
            SCRewardTransaction.block_number,
        )
        .filter(
            SCRewardTransaction.reason == STORE_PURCHASE_REWARD,
            SCRewardTransaction.status == "COMPLETED",
            *_in_window(SCRewardTransaction.created_at, ctx),
        )
        .all()
    )

    recorded = sum((recorded_amount(r.amount_reward, r.reward_metadata) for r in rows), Decimal(0))

    tx_hashes = {r.tx_hash.lower() for r in rows if r.tx_hash}
    blocks = [r.block_number for r in rows if r.block_number is not None]

    if blocks:
        tag = reason_hash(STORE_PURCHASE_REWARD).lower()
        events = ctx.ledger.get_event_logs(SOULAANI_COIN, "Awarded", min(blocks), max(blocks))
        on_chain = sum(
            (
                e.amount
                for e in events
                if isinstance(e, AwardedEvent) and e.reason == tag and e.tx_hash in tx_hashes
            ),
            Decimal(0),
        )
        source = "on-chain Awarded events"
    else:
        on_chain = recorded
        source = "recorded totals (no confirmed blocks in window)"

    drift = relative_drift(recorded, on_chain)
    threshold = ctx.thresholds.reward_amount_drift
    status = classify(drift, threshold)

    return ReconciliationCheck(
        name=REWARD_AMOUNT_CHECK,
        status=status,
        expected=format_amount(on_chain),
        actual=format_amount(recorded),
        drift=drift,
        threshold=threshold,
        message=f"DB recorded {format_amount(recorded)} SC vs {source}",
    )


DEFAULT_CHECKS = [
    (PURCHASE_COUNT_CHECK, check_purchase_count),
    (EXECUTION_RATE_CHECK, check_reward_execution_rate),
    (STALE_EVENTS_CHECK, check_stale_events),
    (REWARD_AMOUNT_CHECK, check_reward_amounts),
]
