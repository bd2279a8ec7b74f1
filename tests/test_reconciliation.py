import csv
import io
import json
from datetime import timedelta
from decimal import Decimal
from itertools import count

import pytest

from core.models import StoreOrder, utcnow
from ledger.abi import STORE_PURCHASE_REWARD, reason_hash
from ledger.client import LedgerError
from ledger.events import AwardedEvent
from reconciliation.checks import (
    EXECUTION_RATE_CHECK,
    PURCHASE_COUNT_CHECK,
    REWARD_AMOUNT_CHECK,
    STALE_EVENTS_CHECK,
    CheckContext,
    CheckStatus,
    Thresholds,
    check_purchase_count,
    check_reward_amounts,
    check_reward_execution_rate,
    check_stale_events,
    classify,
    relative_drift,
)
from reconciliation.models import ReconciliationRun
from reconciliation.report import CSV_HEADER, export_csv, export_json
from reconciliation.service import ReconciliationEngine

_hashes = count(1000)


def add_reward(db, user, status="COMPLETED", amount="10", metadata=None, created_at=None, block=1, tx_hash=True):
    from rewards.models import SCRewardTransaction

    row = SCRewardTransaction(
        user_id=user.id,
        amount_reward=Decimal(amount),
        reason=STORE_PURCHASE_REWARD,
        status=status,
        tx_hash=f"0x{next(_hashes):064x}" if tx_hash else None,
        block_number=block if status == "COMPLETED" else None,
        reward_metadata=metadata,
        created_at=created_at or utcnow(),
    )
    db.add(row)
    db.commit()
    return row


def add_orders(db, buyer, seller, n, verified=True):
    for _ in range(n):
        db.add(
            StoreOrder(
                buyer_id=buyer.id,
                store_id="store-1",
                store_owner_id=seller.id,
                total_fiat=Decimal("20"),
                payment_status="COMPLETED",
                sc_verified=verified,
            )
        )
    db.commit()


@pytest.fixture
def ctx(db, ledger):
    now = utcnow()
    return CheckContext(
        db=db,
        ledger=ledger,
        start=now - timedelta(hours=1),
        end=now + timedelta(minutes=1),
        now=now,
        thresholds=Thresholds(),
    )


def test_classify_is_monotone():
    values = [0, 5, 5.01, 20, 20.5, 50, 51, 1000]
    order = {CheckStatus.PASS: 0, CheckStatus.WARN: 1, CheckStatus.FAIL: 2}
    ranks = [order[classify(v, 20, 50)] for v in values]
    assert ranks == sorted(ranks)


def test_relative_drift_uses_expected_as_base():
    assert relative_drift(90, 100) == 10.0
    assert relative_drift(2, 0) == 200.0
    assert relative_drift(0, 0) == 0.0


def test_purchase_count_drift_warns(ctx, db, buyer, seller):
    add_orders(db, buyer, seller, 100)
    add_orders(db, buyer, seller, 7, verified=False)
    for _ in range(90):
        add_reward(db, buyer)

    check = check_purchase_count(ctx)

    assert check.name == PURCHASE_COUNT_CHECK
    assert check.expected == "100"
    assert check.actual == "90"
    assert check.drift == 10.0
    assert check.threshold == 5.0
    assert check.status == CheckStatus.WARN


def test_purchase_count_ignores_unconfirmed_rewards(ctx, db, buyer, seller):
    add_orders(db, buyer, seller, 2)
    add_reward(db, buyer)
    add_reward(db, buyer, tx_hash=False)
    add_reward(db, buyer, status="PENDING")

    check = check_purchase_count(ctx)

    assert check.actual == "1"
    assert check.status == CheckStatus.WARN


def test_purchase_count_in_balance_passes(ctx, db, buyer, seller):
    add_orders(db, buyer, seller, 3)
    for _ in range(3):
        add_reward(db, buyer)

    assert check_purchase_count(ctx).status == CheckStatus.PASS


@pytest.mark.parametrize(
    "failed, completed, expected",
    [(1, 9, CheckStatus.PASS), (3, 7, CheckStatus.WARN), (6, 4, CheckStatus.FAIL)],
)
def test_execution_rate(ctx, db, buyer, failed, completed, expected):
    for _ in range(failed):
        add_reward(db, buyer, status="FAILED")
    for _ in range(completed):
        add_reward(db, buyer)

    check = check_reward_execution_rate(ctx)

    assert check.name == EXECUTION_RATE_CHECK
    assert check.status == expected
    assert check.drift == failed * 10.0
    assert check.expected == ">80%"


def test_execution_rate_with_no_rewards_passes(ctx):
    check = check_reward_execution_rate(ctx)
    assert check.status == CheckStatus.PASS
    assert check.actual == "100.00%"


def test_stale_pending_rewards(ctx, db, buyer):
    old = ctx.now - timedelta(hours=3)
    add_reward(db, buyer, status="PENDING")  # recent, not stale
    add_reward(db, buyer, status="PENDING", created_at=old)

    check = check_stale_events(ctx)

    assert check.name == STALE_EVENTS_CHECK
    assert check.actual == "1"
    assert check.status == CheckStatus.WARN


def test_many_stale_rewards_fail(ctx, db, buyer):
    old = ctx.now - timedelta(hours=3)
    for _ in range(11):
        add_reward(db, buyer, status="PENDING", created_at=old)

    assert check_stale_events(ctx).status == CheckStatus.FAIL


def test_reward_amounts_compare_actual_minted(ctx, db, buyer, ledger):
    row = add_reward(db, buyer, amount="10", metadata={"actualAmount": "6"}, block=42)
    ledger.events = [
        AwardedEvent(
            tx_hash=row.tx_hash,
            block_number=42,
            recipient=buyer.wallet_address,
            amount=Decimal("6"),
            reason=reason_hash(STORE_PURCHASE_REWARD),
            awarder="0x0000000000000000000000000000000000000009",
        )
    ]

    check = check_reward_amounts(ctx)

    assert check.name == REWARD_AMOUNT_CHECK
    assert check.expected == "6"
    assert check.actual == "6"
    assert check.drift == 0.0
    assert check.status == CheckStatus.PASS


def test_reward_amounts_flag_missing_events(ctx, db, buyer, ledger):
    add_reward(db, buyer, amount="10", block=42)
    ledger.events = []

    check = check_reward_amounts(ctx)

    assert check.expected == "0"
    assert check.actual == "10"
    assert check.status == CheckStatus.WARN


def test_reward_amounts_without_blocks_fall_back_to_recorded(ctx, ledger):
    ledger.error = LedgerError("should not be called")

    check = check_reward_amounts(ctx)

    assert check.status == CheckStatus.PASS
    assert "recorded totals" in check.message


def test_engine_runs_all_checks_and_persists(db, ledger, alerts, buyer, seller):
    add_orders(db, buyer, seller, 10)
    engine = ReconciliationEngine(ledger, alerts)

    result = engine.run_hourly(db)

    assert [c.name for c in result.checks] == [
        PURCHASE_COUNT_CHECK,
        EXECUTION_RATE_CHECK,
        STALE_EVENTS_CHECK,
        REWARD_AMOUNT_CHECK,
    ]
    assert result.partial is False
    assert result.summary == {"totalChecks": 4, "passed": 3, "warnings": 1, "failures": 0}
    assert [a.message for a in alerts.sent] == [f"WARNING: {PURCHASE_COUNT_CHECK} drift detected"]

    run = db.query(ReconciliationRun).filter(ReconciliationRun.id == result.run_id).one()
    assert run.period == "hourly"
    assert run.summary["warnings"] == 1
    assert run.result["checks"][0]["status"] == "WARN"


def test_failing_check_becomes_fail_entry(db, ledger, alerts, buyer):
    add_reward(db, buyer, block=7)
    ledger.error = LedgerError("rpc unreachable")
    engine = ReconciliationEngine(ledger, alerts, persist=False)

    result = engine.run_daily(db)

    amount_check = next(c for c in result.checks if c.name == REWARD_AMOUNT_CHECK)
    assert amount_check.status == CheckStatus.FAIL
    assert amount_check.message.startswith("Error: ")
    assert "rpc unreachable" in amount_check.message
    assert len(result.checks) == 4
    assert any(a.message == f"CRITICAL: {REWARD_AMOUNT_CHECK} failed" for a in alerts.sent)
    assert result.run_id is None


def test_budget_exhaustion_returns_partial_result(db, ledger, alerts):
    ticks = iter([0, 0, 1, 10, 10, 10])
    engine = ReconciliationEngine(ledger, alerts, budget_seconds=5, persist=False, clock=lambda: next(ticks))

    result = engine.run_hourly(db)

    assert [c.name for c in result.checks] == [PURCHASE_COUNT_CHECK, EXECUTION_RATE_CHECK]
    assert result.skipped_checks == [STALE_EVENTS_CHECK, REWARD_AMOUNT_CHECK]
    assert result.partial is True
    assert result.summary["totalChecks"] == 2
    assert "budget exhausted" in alerts.sent[-1].message


def test_csv_and_json_export(db, ledger, alerts):
    result = ReconciliationEngine(ledger, alerts, persist=False).run_hourly(db).to_dict()

    rows = list(csv.reader(io.StringIO(export_csv(result))))
    assert rows[0] == CSV_HEADER
    assert len(rows) == 5
    assert rows[1][0] == PURCHASE_COUNT_CHECK
    assert rows[1][4] == "0.00"

    exported = json.loads(export_json(result))
    assert exported["summary"]["totalChecks"] == 4
    assert exported["partial"] is False
