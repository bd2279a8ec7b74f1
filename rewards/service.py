import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import (
    ErrorCode,
    ErrorMessage,
    NoWallet,
    RewardNotFound,
    RewardNotRetryable,
    bad_request,
    describe_exception,
)
from core.exceptions import AppException
from core.models import User, as_utc, utcnow
from ledger.abi import SOULAANI_COIN, STORE_PURCHASE_REWARD, STORE_SALE_REWARD
from ledger.client import LedgerClient, LedgerError, get_ledger_client
from ledger.minting import TokenMinter, actual_reward_amount, get_token_minter
from rewards.models import SCRewardTransaction, recorded_amount

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class RewardAward:
    buyer_reward: Decimal = ZERO
    seller_reward: Decimal = ZERO
    buyer_transaction_id: str | None = None
    seller_transaction_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "buyerReward": str(self.buyer_reward),
            "sellerReward": str(self.seller_reward),
            "buyerTransactionId": self.buyer_transaction_id,
            "sellerTransactionId": self.seller_transaction_id,
        }


def serialize_reward(row: SCRewardTransaction) -> dict:
    return {
        "id": row.id,
        "userId": row.user_id,
        "amountRequested": str(row.amount_reward),
        "amountActual": str(row.actual_amount),
        "reason": row.reason,
        "status": row.status,
        "txHash": row.tx_hash,
        "blockNumber": row.block_number,
        "failureReason": row.failure_reason,
        "relatedOrderId": row.related_order_id,
        "relatedStoreId": row.related_store_id,
        "metadata": row.reward_metadata or {},
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "completedAt": row.completed_at.isoformat() if row.completed_at else None,
    }


class RewardService:
    """Issues SC rewards for verified store purchases.

    The ledger owns the reward policy. We always submit the amount the reward
    engine quotes and record whatever the chain actually minted.
    """

    def __init__(self, minter: TokenMinter, ledger: LedgerClient):
        self.minter = minter
        self.ledger = ledger

    def award_purchase_reward(
        self,
        db: Session,
        buyer_id: str,
        seller_id: str,
        amount_spent,
        seller_is_verified: bool,
        order_id: str | None = None,
        store_id: str | None = None,
    ) -> RewardAward:
        if not seller_is_verified:
            logger.info("Order %s: seller %s not SC-verified, no reward", order_id, seller_id)
            return RewardAward()

        amount = Decimal(str(amount_spent))
        buyer_reward, buyer_txn = self._award(db, buyer_id, amount, STORE_PURCHASE_REWARD, order_id, store_id)
        seller_reward, seller_txn = self._award(db, seller_id, amount, STORE_SALE_REWARD, order_id, store_id)

        return RewardAward(
            buyer_reward=buyer_reward,
            seller_reward=seller_reward,
            buyer_transaction_id=buyer_txn,
            seller_transaction_id=seller_txn,
        )

    def _transition(self, db: Session, reward_id: str, values: dict) -> bool:
        updated = (
            db.query(SCRewardTransaction)
            .filter(SCRewardTransaction.id == reward_id, SCRewardTransaction.status == "PENDING")
            .update(values, synchronize_session=False)
        )
        db.commit()
        return updated == 1

    def _award(
        self,
        db: Session,
        user_id: str,
        amount_spent: Decimal,
        reason: str,
        order_id: str | None,
        store_id: str | None,
    ) -> tuple[Decimal, str | None]:
        user = db.query(User).filter(User.id == user_id).first()
        if not user or not user.wallet_address:
            logger.warning("No wallet for %s, skipping %s", user_id, reason)
            return ZERO, None

        try:
            requested = self.ledger.calculate_reward(user.wallet_address, amount_spent)
        except LedgerError as exc:
            row = SCRewardTransaction(
                user_id=user.id,
                amount_reward=ZERO,
                reason=reason,
                status="FAILED",
                failure_reason=f"Reward calculation failed: {describe_exception(exc)}",
                related_order_id=order_id,
                related_store_id=store_id,
                reward_metadata={"amountSpent": str(amount_spent)},
                failed_at=utcnow(),
            )
            db.add(row)
            db.commit()
            logger.error("calculateReward failed for %s (%s): %s", user_id, reason, exc)
            return ZERO, row.id

        if requested <= 0:
            logger.info("%s for %s capped to zero on chain", reason, user_id)
            return ZERO, None

        row = SCRewardTransaction(
            user_id=user.id,
            amount_reward=requested,
            reason=reason,
            status="PENDING",
            related_order_id=order_id,
            related_store_id=store_id,
            reward_metadata={"requestedAmount": str(requested), "amountSpent": str(amount_spent)},
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return self._mint_row(db, row.id, user.wallet_address, requested, reason, dict(row.reward_metadata))

    def _mint_row(
        self,
        db: Session,
        reward_id: str,
        wallet_address: str,
        requested: Decimal,
        reason: str,
        metadata: dict,
    ) -> tuple[Decimal, str]:
        """Mint for a PENDING reward row and settle it to COMPLETED or FAILED."""
        try:
            result = self.minter.mint_reward(
                wallet_address,
                requested,
                reason,
                on_submitted=lambda tx_hash: self._transition(db, reward_id, {"tx_hash": tx_hash}),
            )
        except Exception as exc:
            db.rollback()
            self._transition(
                db,
                reward_id,
                {"status": "FAILED", "failure_reason": describe_exception(exc), "failed_at": utcnow()},
            )
            logger.error("SC mint failed for reward %s (%s): %s", reward_id, reason, exc)
            return ZERO, reward_id

        metadata.update(
            actualAmount=str(result.actual_amount),
            diminished=result.diminished,
        )
        if result.balance_percent is not None:
            metadata["balancePercent"] = result.balance_percent

        completed = self._transition(
            db,
            reward_id,
            {
                "status": "COMPLETED",
                "tx_hash": result.tx_hash,
                "block_number": result.block_number,
                "reward_metadata": metadata,
                "completed_at": utcnow(),
            },
        )
        if not completed:
            logger.warning(
                "Reward %s minted in %s but the row left PENDING, the repair pass will settle it",
                reward_id, result.tx_hash,
            )
        if result.diminished:
            logger.info(
                "Reward %s diminished on chain: requested %s, minted %s",
                reward_id, requested, result.actual_amount,
            )
        return result.actual_amount, reward_id

    # Retry

    def _get(self, db: Session, reward_id: str) -> SCRewardTransaction:
        row = db.query(SCRewardTransaction).filter(SCRewardTransaction.id == reward_id).first()
        if not row:
            raise RewardNotFound(reward_id)
        return row

    def _ledger_unavailable(self, exc: LedgerError) -> AppException:
        return AppException(
            status_code=503,
            code=ErrorCode.LEDGER_UNAVAILABLE,
            message=ErrorMessage.LEDGER_UNAVAILABLE,
            details={"error": str(exc)},
        )

    def retry_sc_reward(self, db: Session, reward_id: str) -> dict:
        """Re-mint a FAILED reward.

        A recorded hash is checked first: a confirmed mint completes the row
        without minting again, and a hash the chain has not seen yet blocks
        the retry until the repair grace period has passed.
        """
        row = self._get(db, reward_id)
        if row.status == "COMPLETED":
            raise RewardNotRetryable(row.id, "Reward already completed")
        if row.status != "FAILED":
            raise RewardNotRetryable(row.id, "Reward mint is still pending, run the repair pass instead")
        if row.retry_count >= settings.REWARD_MAX_RETRIES:
            raise bad_request(ErrorCode.REWARD_RETRY_LIMIT, ErrorMessage.REWARD_RETRY_LIMIT, {"reward_id": row.id})

        user = db.query(User).filter(User.id == row.user_id).first()
        if not user or not user.wallet_address:
            raise NoWallet(row.user_id)

        now = utcnow()
        if row.tx_hash:
            try:
                receipt = self.ledger.get_transaction_receipt(row.tx_hash)
            except LedgerError as exc:
                logger.error("Cannot verify %s before retrying reward %s: %s", row.tx_hash, row.id, exc)
                raise self._ledger_unavailable(exc)

            if receipt is not None and receipt.success:
                return self._complete_from_receipt(db, row, receipt, user.wallet_address)

            failed_at = as_utc(row.failed_at)
            grace = timedelta(minutes=settings.REPAIR_NOT_FOUND_GRACE_MINUTES)
            if receipt is None and failed_at is not None and failed_at > now - grace:
                raise RewardNotRetryable(row.id, f"Mint {row.tx_hash} may still confirm, retry later")

        reason = row.reason
        requested = Decimal(row.amount_reward or 0)
        metadata = dict(row.reward_metadata or {})
        if requested <= 0:
            try:
                requested = self.ledger.calculate_reward(user.wallet_address, Decimal(metadata.get("amountSpent", "0")))
            except LedgerError as exc:
                raise self._ledger_unavailable(exc)
            if requested <= 0:
                raise RewardNotRetryable(row.id, "Reward is capped to zero on chain")

        if row.tx_hash:
            metadata["previousTxHashes"] = [*metadata.get("previousTxHashes", []), row.tx_hash]
        metadata["requestedAmount"] = str(requested)
        metadata.pop("actualAmount", None)

        attempt = row.retry_count + 1
        claimed = (
            db.query(SCRewardTransaction)
            .filter(
                SCRewardTransaction.id == row.id,
                SCRewardTransaction.status == "FAILED",
                SCRewardTransaction.retry_count == row.retry_count,
            )
            .update(
                {
                    "status": "PENDING",
                    "amount_reward": requested,
                    "tx_hash": None,
                    "block_number": None,
                    "failure_reason": None,
                    "failed_at": None,
                    "reward_metadata": metadata,
                    "retry_count": attempt,
                    "last_retry_at": now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if not claimed:
            raise RewardNotRetryable(reward_id, "Reward is already being retried")

        logger.info("Retrying reward %s (attempt %s)", reward_id, attempt)
        actual, _ = self._mint_row(db, reward_id, user.wallet_address, requested, reason, metadata)

        db.expire_all()
        row = self._get(db, reward_id)
        return {
            "action": "retried" if row.status == "COMPLETED" else "failed",
            "amountMinted": str(actual),
            "reward": serialize_reward(row),
        }

    def _complete_from_receipt(self, db: Session, row: SCRewardTransaction, receipt, wallet_address: str) -> dict:
        metadata = dict(row.reward_metadata or {})
        if "actualAmount" not in metadata:
            actual, _ = actual_reward_amount(receipt, wallet_address)
            if actual is not None:
                metadata["actualAmount"] = str(actual)
        metadata["correctedBy"] = "retry"

        (
            db.query(SCRewardTransaction)
            .filter(SCRewardTransaction.id == row.id, SCRewardTransaction.status == "FAILED")
            .update(
                {
                    "status": "COMPLETED",
                    "block_number": receipt.block_number,
                    "reward_metadata": metadata,
                    "failure_reason": None,
                    "completed_at": utcnow(),
                },
                synchronize_session=False,
            )
        )
        db.commit()
        logger.info("Reward %s was already minted in %s, marked COMPLETED without a new mint", row.id, row.tx_hash)

        reward_id = row.id
        db.expire_all()
        row = self._get(db, reward_id)
        return {"action": "already_minted", "amountMinted": "0", "reward": serialize_reward(row)}

    # Reads

    def get_sc_reward_stats(self, db: Session) -> dict:
        counts = dict(
            db.query(SCRewardTransaction.status, func.count(SCRewardTransaction.id))
            .group_by(SCRewardTransaction.status)
            .all()
        )
        total = sum(counts.values())
        completed = counts.get("COMPLETED", 0)

        now = utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)

        total_minted = today_minted = week_minted = ZERO
        rows = (
            db.query(
                SCRewardTransaction.amount_reward,
                SCRewardTransaction.reward_metadata,
                SCRewardTransaction.completed_at,
            )
            .filter(SCRewardTransaction.status == "COMPLETED")
            .yield_per(500)
        )
        for amount_reward, metadata, completed_at in rows:
            amount = recorded_amount(amount_reward, metadata)
            total_minted += amount
            if completed_at is None:
                continue
            completed_at = as_utc(completed_at)
            if completed_at >= start_of_day:
                today_minted += amount
            if completed_at >= week_ago:
                week_minted += amount

        try:
            total_on_chain = float(self.ledger.total_supply(SOULAANI_COIN))
        except LedgerError as exc:
            logger.warning("SC totalSupply unavailable: %s", exc)
            total_on_chain = None

        return {
            "totalMintedDB": float(total_minted),
            "totalOnChain": total_on_chain,
            "total": total,
            "pending": counts.get("PENDING", 0),
            "completed": completed,
            "failed": counts.get("FAILED", 0),
            "successRate": round((completed / total) * 100, 2) if total else 0.0,
            "todayMinted": float(today_minted),
            "weekMinted": float(week_minted),
        }

    def list_sc_rewards(
        self,
        db: Session,
        status: str | None = None,
        user_id: str | None = None,
        store_id: str | None = None,
        reason: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        query = db.query(SCRewardTransaction)
        if status:
            query = query.filter(SCRewardTransaction.status == status)
        if user_id:
            query = query.filter(SCRewardTransaction.user_id == user_id)
        if store_id:
            query = query.filter(SCRewardTransaction.related_store_id == store_id)
        if reason:
            query = query.filter(SCRewardTransaction.reason == reason)
        if start:
            query = query.filter(SCRewardTransaction.created_at >= start)
        if end:
            query = query.filter(SCRewardTransaction.created_at < end)

        rows = (
            query.order_by(SCRewardTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )
        return {
            "rewards": [serialize_reward(r) for r in rows],
            "total": query.count(),
            "limit": limit,
            "offset": offset,
        }

    def get_sc_reward(self, db: Session, reward_id: str) -> dict:
        row = self._get(db, reward_id)
        user = db.query(User).filter(User.id == row.user_id).first()
        return {
            **serialize_reward(row),
            "retryCount": row.retry_count,
            "lastRetryAt": row.last_retry_at.isoformat() if row.last_retry_at else None,
            "user": {
                "id": user.id,
                "email": user.email,
                "walletAddress": user.wallet_address,
            } if user else None,
        }

    def validate_sc_reward(self, db: Session, reward_id: str) -> dict:
        """Check one reward against its receipt and the holder's SC balance.

        Ledger failures leave the matching field empty instead of failing the
        whole check.
        """
        row = self._get(db, reward_id)
        user = db.query(User).filter(User.id == row.user_id).first()
        wallet = user.wallet_address if user else None

        on_chain_balance = None
        if wallet:
            try:
                on_chain_balance = float(self.ledger.balance_of(wallet, SOULAANI_COIN))
            except LedgerError as exc:
                logger.warning("SC balance unavailable for %s: %s", wallet, exc)

        verification = None
        if row.tx_hash:
            try:
                receipt = self.ledger.get_transaction_receipt(row.tx_hash)
            except LedgerError as exc:
                logger.warning("Receipt unavailable for reward %s (%s): %s", row.id, row.tx_hash, exc)
            else:
                actual = None
                if receipt is not None and receipt.success:
                    actual, _ = actual_reward_amount(receipt, wallet)
                verification = {
                    "exists": receipt is not None,
                    "success": bool(receipt and receipt.success),
                    "blockNumber": receipt.block_number if receipt else None,
                    "actualAmount": str(actual) if actual is not None else None,
                }

        amount_matches = None
        if verification and verification["actualAmount"] is not None:
            amount_matches = Decimal(verification["actualAmount"]) == row.actual_amount

        return {
            "reward": serialize_reward(row),
            "onChainBalance": on_chain_balance,
            "txVerification": verification,
            "amountMatches": amount_matches,
            "isValid": row.status == "COMPLETED" and bool(verification and verification["success"]),
        }

    def get_sc_rewards_for_order(self, db: Session, order_id: str) -> dict:
        rows = (
            db.query(SCRewardTransaction)
            .filter(SCRewardTransaction.related_order_id == order_id)
            .order_by(SCRewardTransaction.created_at.desc())
            .all()
        )
        awarded = sum((r.actual_amount for r in rows if r.status == "COMPLETED"), ZERO)
        return {
            "orderId": order_id,
            "rewards": [serialize_reward(r) for r in rows],
            "totalAwarded": str(awarded),
        }


_service: RewardService | None = None


def get_reward_service() -> RewardService:
    global _service
    if _service is None:
        _service = RewardService(minter=get_token_minter(), ledger=get_ledger_client())
    return _service
