import logging
from decimal import Decimal
from typing import Mapping

import stripe

from core.errors import WebhookAuthenticationError, WebhookNotConfigured
from payments.base import (
    PaymentError,
    PaymentIntentResult,
    PaymentProcessor,
    RefundResult,
    load_json,
)
from payments.events import (
    PaymentFailed,
    PaymentRefunded,
    PaymentSucceeded,
    ProcessorEvent,
    UnknownEvent,
)

logger = logging.getLogger(__name__)


def _to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))


class StripeProcessor(PaymentProcessor):
    name = "stripe"

    def __init__(self, secret_key: str | None, webhook_secret: str | None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def is_available(self) -> bool:
        if not self.secret_key:
            return False
        try:
            stripe.Balance.retrieve(api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.warning("Stripe availability check failed: %s", e)
            return False
        return True

    def create_payment_intent(self, amount_fiat: Decimal, currency: str, metadata: dict) -> PaymentIntentResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=_to_minor_units(amount_fiat),
                currency=currency.lower(),
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe create payment intent failed: {e}") from e

        return PaymentIntentResult(
            intent_id=intent["id"],
            client_secret=intent["client_secret"],
            processor=self.name,
        )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        if not self.webhook_secret:
            raise WebhookNotConfigured("STRIPE_WEBHOOK_SECRET")

        sig_header = headers.get("stripe-signature")
        if not sig_header:
            raise WebhookAuthenticationError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(
                payload=raw_body,
                sig_header=sig_header,
                secret=self.webhook_secret,
            )
        except ValueError:
            raise WebhookAuthenticationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise WebhookAuthenticationError("Invalid signature")

        return load_json(raw_body)

    def parse_event(self, payload: dict) -> ProcessorEvent:
        event_type = payload.get("type") or ""
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type == "payment_intent.succeeded":
            amount = obj.get("amount_received")
            return PaymentSucceeded(
                processor=self.name,
                external_payment_id=obj["id"],
                charge_id=obj.get("latest_charge"),
                amount=Decimal(amount) / 100 if amount is not None else None,
            )

        if event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            return PaymentFailed(
                processor=self.name,
                external_payment_id=obj["id"],
                failure_message=error.get("message") or "Payment failed",
            )

        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            return PaymentRefunded(
                processor=self.name,
                external_payment_id=obj.get("payment_intent"),
                charge_id=obj.get("id"),
                refund_id=refunds[0].get("id") if refunds else None,
            )

        return UnknownEvent(processor=self.name, event_type=event_type or "missing")

    def refund(
        self,
        external_payment_id: str,
        charge_id: str | None,
        amount_fiat: Decimal,
        reason: str,
        metadata: dict,
        idempotency_key: str,
    ) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                payment_intent=external_payment_id,
                reason="requested_by_customer",
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe refund failed: {e}") from e

        if refund["status"] in ("failed", "canceled"):
            raise PaymentError(f"Stripe refund {refund['id']} {refund['status']}")

        return RefundResult(refund_id=refund["id"], status=refund["status"])
