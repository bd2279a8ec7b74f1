from sqlalchemy import Column, String, DateTime, Boolean, JSON
import uuid

from core.database import Base
from core.models import utcnow


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    period = Column(String, nullable=False)  # hourly | daily | on_demand
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    partial = Column(Boolean, default=False, nullable=False)

    summary = Column(JSON, nullable=False)
    result = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
