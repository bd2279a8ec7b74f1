from pydantic import BaseModel
from datetime import datetime
from typing import Literal, Optional


class RunReconciliationRequest(BaseModel):
    period: Literal["hourly", "daily", "on_demand"] = "on_demand"
    start: Optional[datetime] = None  # required for on_demand
    end: Optional[datetime] = None
    background: bool = False  # queue on Celery instead of running inline
