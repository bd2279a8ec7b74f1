import base64
import hashlib
import hmac
import logging
import uuid
from decimal import Decimal
from typing import Mapping

import httpx

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

SQUARE_BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}
SQUARE_API_VERSION = "2024-10-17"


class SquareProcessor(PaymentProcessor):
    """Square online checkout. The intent id is the Square order id."""

    name = "square"

    def __init__(
        self,
        access_token: str | None,
        location_id: str | None,
        environment: str = "sandbox",
        webhook_signature_key: str | None = None,
        notification_url: str | None = None,
        currency: str = "USD",
        transport: httpx.BaseTransport | None = None,
    ):
        self.access_token = access_token
        self.location_id = location_id
        self.base_url = SQUARE_BASE_URLS[environment]
        self.webhook_signature_key = webhook_signature_key
        self.notification_url = notification_url
        self.currency = currency.upper()
        self._transport = transport

    def _auth_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Square-Version": SQUARE_API_VERSION,
        }

    def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=30, transport=self._transport) as client:
                resp = client.request(method, url, json=json, headers=self._auth_headers())
        except httpx.RequestError as e:
            raise PaymentError(f"Square network error: {str(e)[:200]}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise PaymentError(f"Square error {resp.status_code}: {resp.text[:500]}")

        return resp.json()

    def is_available(self) -> bool:
        if not (self.access_token and self.location_id):
            return False
        try:
            self._request("GET", f"/v2/locations/{self.location_id}")
        except PaymentError as e:
            logger.warning("Square availability check failed: %s", e)
            return False
        return True

    def create_payment_intent(self, amount_fiat: Decimal, currency: str, metadata: dict) -> PaymentIntentResult:
        amount_cents = int(Decimal(str(amount_fiat)) * Decimal("100"))
        payload = {
            "idempotency_key": str(uuid.uuid4()),
            "quick_pay": {
                "name": "UnityCoin purchase",
                "price_money": {"amount": amount_cents, "currency": currency.upper()},
                "location_id": self.location_id,
            },
            "payment_note": ", ".join(f"{k}={v}" for k, v in metadata.items()),
        }
        data = self._request("POST", "/v2/online-checkout/payment-links", json=payload)

        link = data.get("payment_link") or {}
        if not link.get("order_id"):
            raise PaymentError("Square payment link response missing order_id")

        return PaymentIntentResult(
            intent_id=link["order_id"],
            client_secret=link.get("url", ""),
            processor=self.name,
            checkout_url=link.get("url"),
        )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        if not (self.webhook_signature_key and self.notification_url):
            raise WebhookNotConfigured("SQUARE_WEBHOOK_SIGNATURE_KEY")

        signature = headers.get("x-square-hmacsha256-signature")
        if not signature:
            raise WebhookAuthenticationError("Missing x-square-hmacsha256-signature header")

        digest = hmac.new(
            self.webhook_signature_key.encode(),
            self.notification_url.encode() + raw_body,
            hashlib.sha256,
        ).digest()
        expected = base64.b64encode(digest).decode()

        if not hmac.compare_digest(expected, signature):
            raise WebhookAuthenticationError("Invalid signature")

        return load_json(raw_body)

    def parse_event(self, payload: dict) -> ProcessorEvent:
        event_type = payload.get("type") or ""
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type in ("payment.created", "payment.updated"):
            payment = obj.get("payment") or {}
            status = payment.get("status")
            if status == "COMPLETED" and payment.get("order_id"):
                amount = (payment.get("amount_money") or {}).get("amount")
                return PaymentSucceeded(
                    processor=self.name,
                    external_payment_id=payment["order_id"],
                    charge_id=payment.get("id"),
                    amount=Decimal(amount) / 100 if amount is not None else None,
                )
            if status in ("FAILED", "CANCELED") and payment.get("order_id"):
                return PaymentFailed(
                    processor=self.name,
                    external_payment_id=payment["order_id"],
                    failure_message=f"Square payment {status.lower()}",
                )

        if event_type in ("refund.created", "refund.updated"):
            refund = obj.get("refund") or {}
            return PaymentRefunded(
                processor=self.name,
                external_payment_id=refund.get("order_id"),
                charge_id=refund.get("payment_id"),
                refund_id=refund.get("id"),
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
        if not charge_id:
            raise PaymentError(f"No Square payment id recorded for order {external_payment_id}")

        transaction_id = metadata.get("original_transaction_id")
        if transaction_id:
            reason = f"Onramp {transaction_id}: {reason}"

        payload = {
            "idempotency_key": idempotency_key,
            "payment_id": charge_id,
            "amount_money": {
                "amount": int(Decimal(str(amount_fiat)) * Decimal("100")),
                "currency": self.currency,
            },
            "reason": reason[:192],
        }
        data = self._request("POST", "/v2/refunds", json=payload)

        refund = data.get("refund") or {}
        if refund.get("status") in ("REJECTED", "FAILED"):
            raise PaymentError(f"Square refund {refund.get('id')} {refund.get('status')}")

        return RefundResult(refund_id=refund.get("id", ""), status=refund.get("status", "PENDING"))
