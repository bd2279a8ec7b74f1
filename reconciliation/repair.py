"""Operator-triggered status repair from on-chain truth.

Only status (and the facts a confirmed receipt proves) is ever corrected,
never amounts. Each row is a conditional update on the status we read,
committed on its own, so a second pass with no new chain activity fixes
nothing.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from core.alerts import CRITICAL, WARNING, Alert, AlertDispatcher
from core.config import settings
from core.models import User, as_utc, utcnow
from ledger.client import LedgerClient, LedgerError
from ledger.minting import actual_reward_amount
from onramp.models import MANUAL_INTERVENTION_PREFIX, OnrampTransaction
from rewards.models import SCRewardTransaction

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    checked: int = 0
    fixed_count: int = 0
    discrepancies: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "fixedCount": self.fixed_count,
            "checked": self.checked,
            "discrepancies": self.discrepancies,
            "errors": self.errors,
            "summary": f"Checked {self.checked} records, fixed {self.fixed_count}",
        }


def _past_grace(since: datetime | None, now: datetime, grace: timedelta) -> bool:
    since = as_utc(since)
    return since is not None and since <= now - grace


def reconcile_sc_rewards(
    db: Session,
    ledger: LedgerClient,
    now: datetime | None = None,
    grace_minutes: int | None = None,
) -> RepairReport:
    now = now or utcnow()
    minutes = settings.REPAIR_NOT_FOUND_GRACE_MINUTES if grace_minutes is None else grace_minutes
    grace = timedelta(minutes=minutes)
    report = RepairReport()

    candidates = (
        db.query(SCRewardTransaction)
        .filter(
            SCRewardTransaction.status.in_(("PENDING", "FAILED")),
            SCRewardTransaction.tx_hash.isnot(None),
        )
        .order_by(SCRewardTransaction.created_at.asc())
        .all()
    )

    for row in candidates:
        report.checked += 1
        try:
            receipt = ledger.get_transaction_receipt(row.tx_hash)
        except LedgerError as exc:
            logger.error("Receipt lookup failed for reward %s (%s): %s", row.id, row.tx_hash, exc)
            report.errors.append({"id": row.id, "txHash": row.tx_hash, "error": str(exc)})
            continue

        if receipt is None:
            # a retried reward was resubmitted at its last retry
            if not _past_grace(row.last_retry_at or row.created_at, now, grace):
                continue
            target = "FAILED"
            values = {"failure_reason": "Transaction not found on chain", "failed_at": now}
        elif receipt.success:
            target = "COMPLETED"
            metadata = dict(row.reward_metadata or {})
            if "actualAmount" not in metadata:
                user = db.query(User).filter(User.id == row.user_id).first()
                actual, _ = actual_reward_amount(receipt, user.wallet_address if user else None)
                if actual is not None:
                    metadata["actualAmount"] = str(actual)
            metadata["correctedBy"] = "reconciliation"
            values = {
                "block_number": receipt.block_number,
                "reward_metadata": metadata,
                "completed_at": now,
                "failure_reason": None,
            }
        else:
            target = "FAILED"
            values = {"failure_reason": "Transaction reverted on chain", "failed_at": now}

        if target == row.status:
            continue

        previous = row.status
        updated = (
            db.query(SCRewardTransaction)
            .filter(SCRewardTransaction.id == row.id, SCRewardTransaction.status == previous)
            .update({**values, "status": target}, synchronize_session=False)
        )
        db.commit()

        if updated:
            report.fixed_count += 1
            report.discrepancies.append(
                {"id": row.id, "txHash": row.tx_hash, "from": previous, "to": target}
            )
            logger.info("Reward %s corrected %s -> %s from chain (%s)", row.id, previous, target, row.tx_hash)

    logger.info("SC reward repair: checked %s, fixed %s", report.checked, report.fixed_count)
    return report


def reconcile_onramp(
    db: Session,
    ledger: LedgerClient,
    alerts: AlertDispatcher,
    now: datetime | None = None,
    grace_minutes: int | None = None,
) -> RepairReport:
    """Same repair for onramp rows that recorded a mint hash.

    A mint that never landed on a PENDING row means funds were captured with
    no refund, so the row is failed with the manual intervention flag. The
    grace period runs from the mint claim, never shorter than the settlement's
    own confirmation wait. A REFUNDED row whose mint did land is reported
    once and never changed.
    """
    now = now or utcnow()
    minutes = settings.REPAIR_NOT_FOUND_GRACE_MINUTES if grace_minutes is None else grace_minutes
    grace = max(
        timedelta(minutes=minutes),
        timedelta(seconds=settings.MINT_CONFIRMATION_TIMEOUT_SECONDS),
    )
    report = RepairReport()

    candidates = (
        db.query(OnrampTransaction)
        .filter(
            OnrampTransaction.mint_tx_hash.isnot(None),
            or_(
                OnrampTransaction.status.in_(("PENDING", "FAILED")),
                and_(
                    OnrampTransaction.status == "REFUNDED",
                    OnrampTransaction.mismatch_reported_at.is_(None),
                ),
            ),
        )
        .order_by(OnrampTransaction.created_at.asc())
        .all()
    )

    for txn in candidates:
        report.checked += 1
        try:
            receipt = ledger.get_transaction_receipt(txn.mint_tx_hash)
        except LedgerError as exc:
            logger.error("Receipt lookup failed for onramp %s (%s): %s", txn.id, txn.mint_tx_hash, exc)
            report.errors.append({"id": txn.id, "txHash": txn.mint_tx_hash, "error": str(exc)})
            continue

        if txn.status == "REFUNDED":
            if receipt is not None and receipt.success:
                _report_minted_and_refunded(db, alerts, txn, now, report)
            continue

        if receipt is not None and receipt.success:
            target = "COMPLETED"
            note = f"{txn.status} -> COMPLETED, mint confirmed in block {receipt.block_number}"
            if txn.failure_reason:
                note = f"{note}; cleared failure: {txn.failure_reason}"
            values = {"completed_at": now, "failure_reason": None, "reconciliation_note": note}
        elif txn.status == "PENDING" and (
            receipt is not None or _past_grace(txn.mint_claimed_at or txn.created_at, now, grace)
        ):
            cause = "reverted" if receipt is not None else "not found on chain"
            target = "FAILED"
            values = {
                "failed_at": now,
                "failure_reason": (
                    f"{MANUAL_INTERVENTION_PREFIX} mint {txn.mint_tx_hash} {cause}, "
                    "payment captured without refund."
                ),
                "reconciliation_note": f"PENDING -> FAILED, mint {cause}",
            }
        else:
            continue

        previous = txn.status
        was_flagged = txn.needs_manual_intervention
        updated = (
            db.query(OnrampTransaction)
            .filter(OnrampTransaction.id == txn.id, OnrampTransaction.status == previous)
            .update({**values, "status": target, "updated_at": now}, synchronize_session=False)
        )
        db.commit()

        if updated:
            report.fixed_count += 1
            report.discrepancies.append(
                {"id": txn.id, "txHash": txn.mint_tx_hash, "from": previous, "to": target}
            )
            logger.info("Onramp %s corrected %s -> %s from chain", txn.id, previous, target)
            if target == "FAILED":
                alerts.dispatch(
                    Alert(
                        severity=CRITICAL,
                        message="Onramp mint failed on chain after payment capture, manual refund required",
                        source="reconciliation",
                        details={"transactionId": txn.id, "mintTxHash": txn.mint_tx_hash},
                    )
                )
            elif was_flagged:
                alerts.dispatch(
                    Alert(
                        severity=WARNING,
                        message="Onramp flagged for manual refund is minted on chain, do not refund",
                        source="reconciliation",
                        details={"transactionId": txn.id, "mintTxHash": txn.mint_tx_hash},
                    )
                )

    logger.info("Onramp repair: checked %s, fixed %s", report.checked, report.fixed_count)
    return report


def _report_minted_and_refunded(
    db: Session,
    alerts: AlertDispatcher,
    txn: OnrampTransaction,
    now: datetime,
    report: RepairReport,
) -> None:
    marked = (
        db.query(OnrampTransaction)
        .filter(OnrampTransaction.id == txn.id, OnrampTransaction.mismatch_reported_at.is_(None))
        .update({"mismatch_reported_at": now}, synchronize_session=False)
    )
    db.commit()
    if not marked:
        return

    report.discrepancies.append(
        {"id": txn.id, "txHash": txn.mint_tx_hash, "issue": "minted_and_refunded"}
    )
    alerts.dispatch(
        Alert(
            severity=CRITICAL,
            message="Onramp was refunded but its mint is confirmed on chain",
            source="reconciliation",
            details={
                "transactionId": txn.id,
                "mintTxHash": txn.mint_tx_hash,
                "refundId": txn.refund_id,
                "amountToken": str(txn.amount_token),
            },
        )
    )
