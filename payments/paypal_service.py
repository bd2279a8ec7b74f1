import logging
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

PAYPAL_BASE_URLS = {
    "live": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}

# headers PayPal signs every webhook delivery with
PAYPAL_TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}


def _order_id(resource: dict) -> str | None:
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return related.get("order_id")


def _amount(resource: dict) -> Decimal | None:
    value = (resource.get("amount") or {}).get("value")
    return Decimal(value) if value is not None else None


class PayPalProcessor(PaymentProcessor):
    """PayPal Orders v2. The intent id is the PayPal order id.

    The member approves the order on PayPal and the capture webhook carries
    the order id in ``supplementary_data.related_ids``. Refunds go against the
    capture id stored as the charge id.
    """

    name = "paypal"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        environment: str = "sandbox",
        webhook_id: str | None = None,
        return_url: str | None = None,
        cancel_url: str | None = None,
        currency: str = "USD",
        transport: httpx.BaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_BASE_URLS[environment]
        self.webhook_id = webhook_id
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.currency = currency.upper()
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=30, transport=self._transport)

    def _access_token(self) -> str:
        if not (self.client_id and self.client_secret):
            raise PaymentError("PayPal is not configured")

        try:
            with self._client() as client:
                resp = client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                )
        except httpx.RequestError as e:
            raise PaymentError(f"PayPal network error: {str(e)[:200]}") from e

        if resp.status_code != 200:
            raise PaymentError(f"PayPal token error {resp.status_code}: {resp.text[:500]}")

        return resp.json()["access_token"]

    def _request(self, method: str, path: str, json: dict, headers: dict | None = None) -> dict:
        token = self._access_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **(headers or {}),
        }
        try:
            with self._client() as client:
                resp = client.request(method, path, json=json, headers=request_headers)
        except httpx.RequestError as e:
            raise PaymentError(f"PayPal network error: {str(e)[:200]}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise PaymentError(f"PayPal error {resp.status_code}: {resp.text[:500]}")

        return resp.json()

    def is_available(self) -> bool:
        if not (self.client_id and self.client_secret):
            return False
        try:
            self._access_token()
        except PaymentError as e:
            logger.warning("PayPal availability check failed: %s", e)
            return False
        return True

    def create_payment_intent(self, amount_fiat: Decimal, currency: str, metadata: dict) -> PaymentIntentResult:
        purchase_unit = {
            "amount": {
                "currency_code": currency.upper(),
                "value": str(Decimal(str(amount_fiat)).quantize(Decimal("0.01"))),
            },
        }
        if metadata.get("user_id"):
            purchase_unit["custom_id"] = metadata["user_id"]

        payload = {"intent": "CAPTURE", "purchase_units": [purchase_unit]}
        if self.return_url and self.cancel_url:
            payload["application_context"] = {
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
            }

        order = self._request("POST", "/v2/checkout/orders", json=payload)
        if not order.get("id"):
            raise PaymentError("PayPal order response missing id")

        approve_url = next(
            (link.get("href") for link in order.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return PaymentIntentResult(
            intent_id=order["id"],
            client_secret=order["id"],
            processor=self.name,
            checkout_url=approve_url,
        )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        """Ask PayPal to verify the transmission signature of this delivery."""
        if not self.webhook_id:
            raise WebhookNotConfigured("PAYPAL_WEBHOOK_ID")

        transmission = {}
        for field, header in PAYPAL_TRANSMISSION_HEADERS.items():
            value = headers.get(header)
            if not value:
                raise WebhookAuthenticationError(f"Missing {header} header")
            transmission[field] = value

        payload = load_json(raw_body)
        result = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={**transmission, "webhook_id": self.webhook_id, "webhook_event": payload},
        )
        if result.get("verification_status") != "SUCCESS":
            raise WebhookAuthenticationError("Invalid PayPal signature")

        return payload

    def parse_event(self, payload: dict) -> ProcessorEvent:
        event_type = payload.get("event_type") or ""
        resource = payload.get("resource") or {}
        order_id = _order_id(resource)

        if event_type == "PAYMENT.CAPTURE.COMPLETED" and order_id:
            return PaymentSucceeded(
                processor=self.name,
                external_payment_id=order_id,
                charge_id=resource.get("id"),
                amount=_amount(resource),
            )

        if event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED") and order_id:
            reason = (resource.get("status_details") or {}).get("reason")
            return PaymentFailed(
                processor=self.name,
                external_payment_id=order_id,
                failure_message=f"PayPal capture {reason.lower()}" if reason else "PayPal capture denied",
            )

        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            return PaymentRefunded(
                processor=self.name,
                external_payment_id=order_id,
                charge_id=related.get("capture_id"),
                refund_id=resource.get("id"),
            )

        if event_type.startswith("PAYMENT.CAPTURE.") and not order_id:
            logger.warning("PayPal %s without an order id, ignoring", event_type)

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
            raise PaymentError(f"No PayPal capture id recorded for order {external_payment_id}")

        payload = {
            "amount": {
                "currency_code": self.currency,
                "value": str(Decimal(str(amount_fiat)).quantize(Decimal("0.01"))),
            },
            "note_to_payer": reason[:255],
        }
        transaction_id = metadata.get("original_transaction_id")
        if transaction_id:
            payload["custom_id"] = transaction_id[:127]

        refund = self._request(
            "POST",
            f"/v2/payments/captures/{charge_id}/refund",
            json=payload,
            headers={"PayPal-Request-Id": idempotency_key},
        )
        if refund.get("status") in ("FAILED", "CANCELLED"):
            raise PaymentError(f"PayPal refund {refund.get('id')} {refund.get('status')}")

        return RefundResult(refund_id=refund.get("id", ""), status=refund.get("status", "PENDING"))
