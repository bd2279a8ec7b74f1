from sqlalchemy import (
    Column,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Text,
)
import uuid

from core.database import Base
from core.models import utcnow

# failure_reason prefix for rows where both the mint and the refund failed
MANUAL_INTERVENTION_PREFIX = "MANUAL_INTERVENTION_REQUIRED:"


class OnrampTransaction(Base):
    __tablename__ = "onramp_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    amount_fiat = Column(Numeric(12, 2), nullable=False)
    amount_token = Column(Numeric(36, 18), nullable=False)

    # processor payment intent id (Stripe PaymentIntent / Square order / PayPal order)
    external_payment_id = Column(String, unique=True, nullable=False, index=True)
    processor = Column(String, nullable=False)  # stripe | square | paypal

    status = Column(String, nullable=False, default="PENDING", index=True)
    # PENDING | COMPLETED | FAILED | REFUNDED

    mint_tx_hash = Column(String(66), nullable=True, index=True)
    processor_charge_id = Column(String, nullable=True)
    refund_id = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # set by the one delivery allowed to mint
    mint_claimed_at = Column(DateTime(timezone=True), nullable=True)

    # operator-facing record of a status the repair pass corrected from chain
    reconciliation_note = Column(Text, nullable=True)
    # set once the "refunded but minted" mismatch has been alerted
    mismatch_reported_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def needs_manual_intervention(self) -> bool:
        return bool(self.failure_reason and self.failure_reason.startswith(MANUAL_INTERVENTION_PREFIX))

    @property
    def public_failure_reason(self) -> str | None:
        """failure_reason as shown to the member, without the operator flag."""
        if self.needs_manual_intervention:
            return self.failure_reason[len(MANUAL_INTERVENTION_PREFIX):].strip()
        return self.failure_reason
