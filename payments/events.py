from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class PaymentSucceeded(BaseModel):
    type: Literal["payment.succeeded"] = "payment.succeeded"
    processor: str
    external_payment_id: str
    charge_id: Optional[str] = None
    amount: Optional[Decimal] = None


class PaymentFailed(BaseModel):
    type: Literal["payment.failed"] = "payment.failed"
    processor: str
    external_payment_id: str
    failure_message: str = "Payment failed"


class PaymentRefunded(BaseModel):
    type: Literal["payment.refunded"] = "payment.refunded"
    processor: str
    external_payment_id: Optional[str] = None
    charge_id: Optional[str] = None
    refund_id: Optional[str] = None


class UnknownEvent(BaseModel):
    type: Literal["unknown"] = "unknown"
    processor: str
    event_type: str


ProcessorEvent = Annotated[
    Union[PaymentSucceeded, PaymentFailed, PaymentRefunded, UnknownEvent],
    Field(discriminator="type"),
]
