from decimal import Decimal
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Numeric,
    DateTime,
    ForeignKey,
    Text,
    JSON,
)

from core.database import Base
from core.models import utcnow


class SCRewardTransaction(Base):
    __tablename__ = "sc_reward_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    # requested amount, the minted amount lives in metadata.actualAmount
    amount_reward = Column(Numeric(36, 18), nullable=False)
    reason = Column(String, nullable=False, index=True)
    # STORE_PURCHASE_REWARD | STORE_SALE_REWARD | MANUAL_ADJUSTMENT

    status = Column(String, nullable=False, default="PENDING", index=True)  # PENDING | COMPLETED | FAILED
    tx_hash = Column(String(66), nullable=True, index=True)
    block_number = Column(Integer, nullable=True)
    failure_reason = Column(Text, nullable=True)

    related_order_id = Column(String(36), nullable=True, index=True)
    related_store_id = Column(String(36), nullable=True, index=True)

    reward_metadata = Column("metadata", JSON, nullable=True)
    # {
    #   "requestedAmount": "10",
    #   "actualAmount": "6",
    #   "diminished": true,
    #   "balancePercent": 42
    # }

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def actual_amount(self) -> Decimal:
        return recorded_amount(self.amount_reward, self.reward_metadata)


def recorded_amount(amount_reward, metadata: dict | None) -> Decimal:
    """Minted amount when the chain reported it, else the requested amount."""
    actual = (metadata or {}).get("actualAmount")
    if actual is not None:
        return Decimal(str(actual))
    return Decimal(str(amount_reward or 0))
