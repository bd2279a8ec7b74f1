from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    Column,
    String,
    Numeric,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
)

from core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# USER

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    email = Column(String, unique=True, index=True, nullable=False)

    # custodial wallet, key is AES-256-GCM encrypted (iv:tag:ciphertext hex)
    wallet_address = Column(String(42), unique=True, index=True, nullable=True)
    encrypted_private_key = Column(Text, nullable=True)
    wallet_created_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def has_wallet(self) -> bool:
        return bool(self.wallet_address and self.encrypted_private_key)


# STORE ORDERS (read-only here, owned by the store service)

class StoreOrder(Base):
    __tablename__ = "store_orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    store_id = Column(String(36), nullable=False, index=True)
    store_owner_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    total_fiat = Column(Numeric(12, 2), nullable=False)
    payment_status = Column(String, default="PENDING", index=True)  # PENDING | COMPLETED | FAILED

    # store was SC-verified when the order was paid
    sc_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
