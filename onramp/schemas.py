from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class CreatePaymentIntentRequest(BaseModel):
    amount: Decimal = Field(gt=0, description="Fiat amount, e.g. 50.00")
    processor: Optional[str] = None  # stripe | square | paypal, failover when omitted


class OnrampTransactionView(BaseModel):
    id: str
    status: str
    amountFiat: Decimal
    amountToken: Decimal
    processor: str
    paymentIntentId: str
    mintTxHash: Optional[str] = None
    failureReason: Optional[str] = None
    createdAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    failedAt: Optional[datetime] = None
