import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.alerts import CRITICAL, WARNING, Alert, AlertDispatcher, get_alert_dispatcher
from core.config import settings
from core.errors import (
    ErrorCode,
    ErrorMessage,
    InvalidAmount,
    NoWallet,
    TransactionNotFound,
    UserNotFound,
    describe_exception,
)
from core.exceptions import AppException
from core.models import User, utcnow
from ledger.minting import TokenMinter, get_token_minter
from onramp.models import MANUAL_INTERVENTION_PREFIX, OnrampTransaction
from onramp.schemas import OnrampTransactionView
from payments.events import (
    PaymentFailed,
    PaymentRefunded,
    PaymentSucceeded,
    ProcessorEvent,
    UnknownEvent,
)
from payments.manager import PaymentServiceManager, get_payment_manager

logger = logging.getLogger(__name__)


class MintUnavailable(Exception):
    pass


@dataclass
class NotificationResult:
    action: str  # completed | refunded | manual_intervention | failed | conflict | duplicate | ignored | acknowledged
    transaction_id: str | None = None
    status: str | None = None
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "transactionId": self.transaction_id,
            "status": self.status,
            "duplicate": self.duplicate,
        }


def serialize_transaction(txn: OnrampTransaction) -> dict:
    return OnrampTransactionView(
        id=txn.id,
        status=txn.status,
        amountFiat=txn.amount_fiat,
        amountToken=txn.amount_token,
        processor=txn.processor,
        paymentIntentId=txn.external_payment_id,
        mintTxHash=txn.mint_tx_hash,
        failureReason=txn.public_failure_reason,
        createdAt=txn.created_at,
        completedAt=txn.completed_at,
        failedAt=txn.failed_at,
    ).model_dump()


class SettlementService:
    """Drives an onramp purchase from payment intent to exactly one mint.

    Every status write is a conditional update on the row's current status,
    so concurrent deliveries of the same notification cannot both mint.
    A delivery gets a single mint attempt; processor redelivery is the retry.
    """

    def __init__(
        self,
        minter: TokenMinter,
        payments: PaymentServiceManager,
        alerts: AlertDispatcher,
    ):
        self.minter = minter
        self.payments = payments
        self.alerts = alerts

    # Purchase

    def begin_purchase(
        self,
        db: Session,
        user_id: str,
        amount_fiat,
        processor: str | None = None,
    ) -> dict:
        amount = Decimal(str(amount_fiat)).quantize(Decimal("0.01"))
        if amount < settings.ONRAMP_MIN_FIAT or amount > settings.ONRAMP_MAX_FIAT:
            raise InvalidAmount(amount, settings.ONRAMP_MIN_FIAT, settings.ONRAMP_MAX_FIAT)

        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound(user_id)
        if not user.has_wallet:
            raise NoWallet(user_id)

        amount_token = amount * settings.TOKEN_PER_FIAT

        intent = self.payments.create_payment_intent(
            amount,
            settings.ONRAMP_CURRENCY,
            metadata={
                "type": "onramp",
                "user_id": user.id,
                "wallet_address": user.wallet_address,
                "amount_token": str(amount_token),
            },
            preferred=processor,
        )

        txn = OnrampTransaction(
            user_id=user.id,
            amount_fiat=amount,
            amount_token=amount_token,
            external_payment_id=intent.intent_id,
            processor=intent.processor,
            status="PENDING",
        )
        try:
            db.add(txn)
            db.commit()
        except IntegrityError:
            db.rollback()
            raise AppException(
                status_code=409,
                code=ErrorCode.DUPLICATE_PAYMENT_INTENT,
                message=ErrorMessage.DUPLICATE_PAYMENT_INTENT,
                details={"paymentIntentId": intent.intent_id},
            )
        db.refresh(txn)

        logger.info(
            "Onramp %s created: user=%s amount=%s processor=%s intent=%s",
            txn.id, user.id, amount, intent.processor, intent.intent_id,
        )

        return {
            "transactionId": txn.id,
            "paymentIntentId": intent.intent_id,
            "clientSecret": intent.client_secret,
            "processor": intent.processor,
            "amountFiat": amount,
            "amountToken": amount_token,
        }

    # Notifications

    def on_processor_notification(self, db: Session, event: ProcessorEvent) -> NotificationResult:
        if isinstance(event, PaymentSucceeded):
            return self._handle_payment_succeeded(db, event)
        if isinstance(event, PaymentFailed):
            return self._handle_payment_failed(db, event)
        if isinstance(event, PaymentRefunded):
            logger.info(
                "Refund notification from %s for %s (refund %s), no transition",
                event.processor, event.external_payment_id, event.refund_id,
            )
            return NotificationResult(action="acknowledged")
        if isinstance(event, UnknownEvent):
            logger.info("Ignoring %s event %s", event.processor, event.event_type)
            return NotificationResult(action="acknowledged")
        raise TypeError(f"Unsupported processor event {type(event).__name__}")

    def _find(self, db: Session, processor: str, external_payment_id: str) -> OnrampTransaction | None:
        return (
            db.query(OnrampTransaction)
            .filter(
                OnrampTransaction.processor == processor,
                OnrampTransaction.external_payment_id == external_payment_id,
            )
            .first()
        )

    def _transition(self, db: Session, txn_id: str, from_statuses: tuple, values: dict, unclaimed: bool = False) -> bool:
        query = db.query(OnrampTransaction).filter(
            OnrampTransaction.id == txn_id,
            OnrampTransaction.status.in_(from_statuses),
        )
        if unclaimed:
            query = query.filter(OnrampTransaction.mint_claimed_at.is_(None))

        updated = query.update({**values, "updated_at": utcnow()}, synchronize_session=False)
        db.commit()
        return updated == 1

    def _handle_payment_succeeded(self, db: Session, event: PaymentSucceeded) -> NotificationResult:
        txn = self._find(db, event.processor, event.external_payment_id)
        if not txn:
            logger.error(
                "Payment succeeded for unknown %s intent %s",
                event.processor, event.external_payment_id,
            )
            raise TransactionNotFound(event.external_payment_id)

        if txn.status != "PENDING" or txn.mint_claimed_at is not None:
            logger.info("Duplicate success notification for %s (status %s)", txn.id, txn.status)
            return NotificationResult("duplicate", txn.id, txn.status, duplicate=True)

        claimed = self._transition(
            db,
            txn.id,
            ("PENDING",),
            {"mint_claimed_at": utcnow(), "processor_charge_id": event.charge_id},
            unclaimed=True,
        )
        if not claimed:
            db.refresh(txn)
            logger.info("Lost mint claim for %s, another delivery is settling it", txn.id)
            return NotificationResult("duplicate", txn.id, txn.status, duplicate=True)

        db.refresh(txn)
        user = db.query(User).filter(User.id == txn.user_id).first()

        try:
            if not user or not user.wallet_address:
                raise MintUnavailable(f"User {txn.user_id} has no custodial wallet")

            result = self.minter.mint_onramp(
                user.wallet_address,
                Decimal(txn.amount_token),
                on_submitted=lambda tx_hash: self._transition(
                    db, txn.id, ("PENDING",), {"mint_tx_hash": tx_hash}
                ),
            )
        except Exception as exc:
            db.rollback()
            return self._fail_and_compensate(db, txn, describe_exception(exc))

        completed = self._transition(
            db,
            txn.id,
            ("PENDING",),
            {"status": "COMPLETED", "mint_tx_hash": result.tx_hash, "completed_at": utcnow()},
        )
        if not completed:
            return self._complete_after_concurrent_write(db, txn, result.tx_hash)

        logger.info("Onramp %s COMPLETED, minted %s UC in %s", txn.id, txn.amount_token, result.tx_hash)
        return NotificationResult("completed", txn.id, "COMPLETED")

    def _complete_after_concurrent_write(self, db: Session, txn: OnrampTransaction, tx_hash: str) -> NotificationResult:
        """The mint confirmed but the row left PENDING while we waited on it.

        A repair pass that gave up on the mint may have failed the row. With
        no refund issued the confirmed mint wins and the row is completed.
        Anything else means value moved twice and needs an operator.
        """
        db.refresh(txn)
        if txn.status == "COMPLETED" and txn.mint_tx_hash == tx_hash:
            logger.info("Onramp %s already COMPLETED by repair for %s", txn.id, tx_hash)
            return NotificationResult("completed", txn.id, "COMPLETED")

        note = f"FAILED -> COMPLETED, mint {tx_hash} confirmed; cleared failure: {txn.failure_reason}"
        corrected = (
            db.query(OnrampTransaction)
            .filter(
                OnrampTransaction.id == txn.id,
                OnrampTransaction.status == "FAILED",
                OnrampTransaction.refund_id.is_(None),
            )
            .update(
                {
                    "status": "COMPLETED",
                    "mint_tx_hash": tx_hash,
                    "completed_at": utcnow(),
                    "failure_reason": None,
                    "reconciliation_note": note,
                    "updated_at": utcnow(),
                },
                synchronize_session=False,
            )
        )
        db.commit()

        if corrected:
            logger.warning("Onramp %s was FAILED while its mint confirmed, now COMPLETED (%s)", txn.id, tx_hash)
            self.alerts.dispatch(
                Alert(
                    severity=WARNING,
                    message="Onramp flagged for manual refund is minted on chain, do not refund",
                    source="settlement",
                    details={"transactionId": txn.id, "mintTxHash": tx_hash},
                )
            )
            return NotificationResult("completed", txn.id, "COMPLETED")

        db.refresh(txn)
        logger.critical(
            "Onramp %s: mint %s confirmed but row is %s (refund %s), value may be both minted and refunded",
            txn.id, tx_hash, txn.status, txn.refund_id,
        )
        self.alerts.dispatch(
            Alert(
                severity=CRITICAL,
                message="Onramp mint confirmed but the transaction left PENDING, operator review required",
                source="settlement",
                details={
                    "transactionId": txn.id,
                    "status": txn.status,
                    "mintTxHash": tx_hash,
                    "recordedMintTxHash": txn.mint_tx_hash,
                    "refundId": txn.refund_id,
                },
            )
        )
        return NotificationResult("conflict", txn.id, txn.status)

    def _fail_and_compensate(self, db: Session, txn: OnrampTransaction, reason: str) -> NotificationResult:
        logger.error("Mint failed for onramp %s: %s", txn.id, reason)
        self._transition(
            db,
            txn.id,
            ("PENDING",),
            {"status": "FAILED", "failure_reason": reason, "failed_at": utcnow()},
        )
        db.refresh(txn)

        try:
            refund = self.payments.get(txn.processor).refund(
                external_payment_id=txn.external_payment_id,
                charge_id=txn.processor_charge_id,
                amount_fiat=Decimal(txn.amount_fiat),
                reason=reason,
                metadata={
                    "original_transaction_id": txn.id,
                    "failure_reason": reason,
                },
                idempotency_key=f"refund-{txn.id}",
            )
        except Exception as exc:
            return self._flag_manual_intervention(db, txn, reason, describe_exception(exc))

        self._transition(
            db,
            txn.id,
            ("FAILED",),
            {
                "status": "REFUNDED",
                "refund_id": refund.refund_id,
                "failure_reason": f"{reason}; refund issued: {refund.refund_id}",
            },
        )
        logger.warning("Onramp %s REFUNDED (%s) after mint failure", txn.id, refund.refund_id)
        return NotificationResult("refunded", txn.id, "REFUNDED")

    def _flag_manual_intervention(
        self, db: Session, txn: OnrampTransaction, reason: str, refund_error: str
    ) -> NotificationResult:
        flagged = (
            f"{MANUAL_INTERVENTION_PREFIX} mint failed ({reason}) and refund failed "
            f"({refund_error}). Manual refund required."
        )
        self._transition(db, txn.id, ("FAILED",), {"failure_reason": flagged})

        logger.critical(
            "Onramp %s: mint AND refund failed, %s %s captured by %s (intent %s) needs a manual refund",
            txn.id, txn.amount_fiat, settings.ONRAMP_CURRENCY, txn.processor, txn.external_payment_id,
        )
        self.alerts.dispatch(
            Alert(
                severity=CRITICAL,
                message="Onramp mint and refund both failed, manual refund required",
                source="settlement",
                details={
                    "transactionId": txn.id,
                    "userId": txn.user_id,
                    "processor": txn.processor,
                    "paymentIntentId": txn.external_payment_id,
                    "amountFiat": str(txn.amount_fiat),
                    "mintFailure": reason,
                    "refundFailure": refund_error,
                },
            )
        )
        return NotificationResult("manual_intervention", txn.id, "FAILED")

    def _handle_payment_failed(self, db: Session, event: PaymentFailed) -> NotificationResult:
        txn = self._find(db, event.processor, event.external_payment_id)
        if not txn:
            logger.info("Payment failed for untracked %s intent %s", event.processor, event.external_payment_id)
            return NotificationResult("ignored")

        failed = self._transition(
            db,
            txn.id,
            ("PENDING",),
            {"status": "FAILED", "failure_reason": event.failure_message, "failed_at": utcnow()},
            unclaimed=True,
        )
        db.refresh(txn)
        if not failed:
            return NotificationResult("duplicate", txn.id, txn.status, duplicate=True)

        logger.info("Onramp %s FAILED at processor: %s", txn.id, event.failure_message)
        return NotificationResult("failed", txn.id, "FAILED")

    # Reads

    def get_onramp_status(self, db: Session, transaction_id: str, user_id: str | None = None) -> dict:
        query = db.query(OnrampTransaction).filter(OnrampTransaction.id == transaction_id)
        if user_id is not None:
            query = query.filter(OnrampTransaction.user_id == user_id)

        txn = query.first()
        if not txn:
            raise TransactionNotFound(transaction_id)
        return serialize_transaction(txn)

    def get_onramp_history(self, db: Session, user_id: str, limit: int = 20, offset: int = 0) -> dict:
        base = db.query(OnrampTransaction).filter(OnrampTransaction.user_id == user_id)
        rows = (
            base.order_by(OnrampTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )
        return {
            "transactions": [serialize_transaction(t) for t in rows],
            "total": base.count(),
            "limit": limit,
            "offset": offset,
        }

    def get_onramp_stats(
        self,
        db: Session,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> dict:
        filters = []
        if from_date:
            filters.append(OnrampTransaction.created_at >= from_date)
        if to_date:
            filters.append(OnrampTransaction.created_at < to_date)

        completed = OnrampTransaction.status == "COMPLETED"

        totals = (
            db.query(
                func.count(OnrampTransaction.id),
                func.coalesce(func.sum(case((completed, OnrampTransaction.amount_fiat), else_=0)), 0),
                func.coalesce(func.sum(case((completed, OnrampTransaction.amount_token), else_=0)), 0),
            )
            .filter(*filters)
            .one()
        )

        by_status = dict(
            db.query(OnrampTransaction.status, func.count(OnrampTransaction.id))
            .filter(*filters)
            .group_by(OnrampTransaction.status)
            .all()
        )

        processors = {}
        rows = (
            db.query(
                OnrampTransaction.processor,
                func.count(OnrampTransaction.id),
                func.sum(case((completed, 1), else_=0)),
                func.coalesce(func.sum(case((completed, OnrampTransaction.amount_fiat), else_=0)), 0),
            )
            .filter(*filters)
            .group_by(OnrampTransaction.processor)
            .all()
        )
        for processor, count, completed_count, volume in rows:
            processors[processor] = {
                "count": int(count),
                "volume": float(volume or 0),
                "successRate": round((int(completed_count or 0) / count) * 100, 2) if count else 0.0,
            }

        manual = (
            db.query(func.count(OnrampTransaction.id))
            .filter(*filters)
            .filter(OnrampTransaction.failure_reason.like(f"{MANUAL_INTERVENTION_PREFIX}%"))
            .scalar()
            or 0
        )

        return {
            "totalTransactions": int(totals[0]),
            "totalVolume": float(totals[1] or 0),
            "totalTokenMinted": float(totals[2] or 0),
            "byStatus": {s: by_status.get(s, 0) for s in ("PENDING", "COMPLETED", "FAILED", "REFUNDED")},
            "manualInterventionRequired": int(manual),
            "processors": processors,
        }

    def get_available_processors(self) -> list[str]:
        return self.payments.available_processors()


_service: SettlementService | None = None


def get_settlement_service() -> SettlementService:
    global _service
    if _service is None:
        _service = SettlementService(
            minter=get_token_minter(),
            payments=get_payment_manager(),
            alerts=get_alert_dispatcher(),
        )
    return _service
