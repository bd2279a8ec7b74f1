import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

from core.errors import ErrorCode, ErrorMessage, bad_request
from payments.events import ProcessorEvent


class PaymentError(Exception):
    """A processor API call failed (network, 4xx/5xx, declined refund)."""


@dataclass
class PaymentIntentResult:
    intent_id: str
    client_secret: str
    processor: str
    checkout_url: str | None = None


@dataclass
class RefundResult:
    refund_id: str
    status: str


def load_json(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise bad_request(ErrorCode.WEBHOOK_INVALID_PAYLOAD, ErrorMessage.WEBHOOK_INVALID_PAYLOAD)
    if not isinstance(payload, dict):
        raise bad_request(ErrorCode.WEBHOOK_INVALID_PAYLOAD, ErrorMessage.WEBHOOK_INVALID_PAYLOAD)
    return payload


class PaymentProcessor:
    name: str = ""

    def is_available(self) -> bool:
        raise NotImplementedError

    def create_payment_intent(
        self, amount_fiat: Decimal, currency: str, metadata: dict
    ) -> PaymentIntentResult:
        raise NotImplementedError

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        """Check the processor's own signature and return the JSON payload."""
        raise NotImplementedError

    def parse_event(self, payload: dict) -> ProcessorEvent:
        raise NotImplementedError

    def refund(
        self,
        external_payment_id: str,
        charge_id: str | None,
        amount_fiat: Decimal,
        reason: str,
        metadata: dict,
        idempotency_key: str,
    ) -> RefundResult:
        raise NotImplementedError
