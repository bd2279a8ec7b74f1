import json
from decimal import Decimal

import httpx
import pytest

from core.errors import PaymentProcessorUnavailable, UnknownProcessor, WebhookAuthenticationError, WebhookNotConfigured
from core.expiring_store import ExpiringStore
from payments.base import PaymentError
from payments.manager import PaymentServiceManager
from payments.paypal_service import PayPalProcessor
from payments.square_service import SquareProcessor
from payments.stripe_service import StripeProcessor
from conftest import FakeProcessor


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_expiring_store_hides_and_sweeps_expired_entries():
    clock = Clock()
    store = ExpiringStore(clock=clock)
    store.set("a", 1, ttl_seconds=10)
    store.set("b", 2, ttl_seconds=100)

    clock.now = 50
    assert store.get("a") is None
    assert store.get("b") == 2
    assert len(store) == 2

    assert store.sweep() == 1
    assert len(store) == 1


def test_manager_fails_over_to_next_processor():
    stripe = FakeProcessor("stripe")
    square = FakeProcessor("square")
    stripe.create_error = PaymentError("stripe down")
    cache = ExpiringStore()
    manager = PaymentServiceManager([stripe, square], cache=cache)

    intent = manager.create_payment_intent(Decimal("50"), "usd", {})

    assert intent.processor == "square"
    assert cache.get("processor-available:stripe") is None
    assert cache.get("processor-available:square") is True


def test_manager_skips_unavailable_processors():
    stripe = FakeProcessor("stripe", available=False)
    square = FakeProcessor("square")
    manager = PaymentServiceManager([stripe, square], cache=ExpiringStore())

    assert manager.available_processors() == ["square"]
    assert manager.create_payment_intent(Decimal("50"), "usd", {}).processor == "square"


def test_manager_raises_when_nothing_is_available():
    manager = PaymentServiceManager(
        [FakeProcessor("stripe", available=False), FakeProcessor("square", available=False)],
        cache=ExpiringStore(),
    )
    with pytest.raises(PaymentProcessorUnavailable):
        manager.create_payment_intent(Decimal("50"), "usd", {})


def test_manager_caches_availability():
    stripe = FakeProcessor("stripe")
    manager = PaymentServiceManager([stripe], cache=ExpiringStore())

    assert manager.is_available("stripe") is True
    stripe.available = False
    assert manager.is_available("stripe") is True


def test_manager_unknown_processor():
    manager = PaymentServiceManager([FakeProcessor("stripe")], cache=ExpiringStore())
    with pytest.raises(UnknownProcessor):
        manager.create_payment_intent(Decimal("50"), "usd", {}, preferred="venmo")


def test_stripe_parse_events():
    processor = StripeProcessor(secret_key=None, webhook_secret=None)

    succeeded = processor.parse_event(
        {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "amount_received": 1234, "latest_charge": "ch_1"}},
        }
    )
    failed = processor.parse_event(
        {
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_2", "last_payment_error": {"message": "Card declined"}}},
        }
    )
    refunded = processor.parse_event(
        {
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_3", "payment_intent": "pi_3", "refunds": {"data": [{"id": "re_3"}]}}},
        }
    )
    other = processor.parse_event({"type": "customer.created", "data": {"object": {}}})

    assert (succeeded.type, succeeded.charge_id, succeeded.amount) == ("payment.succeeded", "ch_1", Decimal("12.34"))
    assert (failed.type, failed.failure_message) == ("payment.failed", "Card declined")
    assert (refunded.type, refunded.refund_id) == ("payment.refunded", "re_3")
    assert (other.type, other.event_type) == ("unknown", "customer.created")


def test_stripe_unavailable_without_key():
    assert StripeProcessor(secret_key=None, webhook_secret=None).is_available() is False


def square(handler) -> SquareProcessor:
    return SquareProcessor(
        access_token="sq_token",
        location_id="LOC1",
        environment="sandbox",
        transport=httpx.MockTransport(handler),
    )


def test_square_payment_link_becomes_intent():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"payment_link": {"order_id": "ORDER1", "url": "https://square.link/u/abc"}},
        )

    intent = square(handler).create_payment_intent(Decimal("25.50"), "usd", {"user_id": "u1"})

    assert intent.intent_id == "ORDER1"
    assert intent.checkout_url == "https://square.link/u/abc"
    assert seen["path"] == "/v2/online-checkout/payment-links"
    assert seen["auth"] == "Bearer sq_token"
    assert seen["body"]["quick_pay"]["price_money"] == {"amount": 2550, "currency": "USD"}


def test_square_refund_uses_idempotency_key():
    seen = {}

    def handler(request: httpx.Request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"refund": {"id": "R1", "status": "PENDING"}})

    refund = square(handler).refund(
        "ORDER1", "PAY1", Decimal("50"), "mint failed", {"original_transaction_id": "txn-1"}, "refund-txn-1"
    )

    assert refund.refund_id == "R1"
    assert seen["body"]["reason"] == "Onramp txn-1: mint failed"
    assert seen["body"]["idempotency_key"] == "refund-txn-1"
    assert seen["body"]["payment_id"] == "PAY1"
    assert seen["body"]["amount_money"]["amount"] == 5000


def test_square_refund_needs_payment_id():
    with pytest.raises(PaymentError):
        square(lambda request: httpx.Response(200, json={})).refund(
            "ORDER1", None, Decimal("50"), "mint failed", {}, "refund-txn-1"
        )


def test_square_api_error_is_payment_error():
    processor = square(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(PaymentError):
        processor.create_payment_intent(Decimal("10"), "usd", {})
    assert processor.is_available() is False


PAYPAL_HEADERS = {
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-time": "2026-01-01T00:00:00Z",
    "paypal-transmission-sig": "sig",
    "paypal-cert-url": "https://api.paypal.com/cert.pem",
    "paypal-auth-algo": "SHA256withRSA",
}


def paypal(handler, webhook_id="WH-1") -> PayPalProcessor:
    return PayPalProcessor(
        client_id="pp_client",
        client_secret="pp_secret",
        environment="sandbox",
        webhook_id=webhook_id,
        transport=httpx.MockTransport(handler),
    )


def paypal_api(routes: dict, seen: list):
    def handler(request: httpx.Request):
        seen.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "pp_token"})
        return routes[request.url.path](request)

    return handler


def test_paypal_order_becomes_intent():
    seen = []
    handler = paypal_api(
        {
            "/v2/checkout/orders": lambda request: httpx.Response(
                201,
                json={
                    "id": "ORDER-PP-1",
                    "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-PP-1"}],
                },
            )
        },
        seen,
    )

    intent = paypal(handler).create_payment_intent(Decimal("25.5"), "usd", {"user_id": "u1"})

    assert intent.intent_id == "ORDER-PP-1"
    assert intent.processor == "paypal"
    assert intent.checkout_url.endswith("token=ORDER-PP-1")
    order = json.loads(seen[1].content)
    assert order["intent"] == "CAPTURE"
    assert order["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "25.50"}
    assert order["purchase_units"][0]["custom_id"] == "u1"
    assert seen[1].headers["Authorization"] == "Bearer pp_token"


def test_paypal_refund_targets_capture_with_request_id():
    seen = []
    handler = paypal_api(
        {
            "/v2/payments/captures/CAP-1/refund": lambda request: httpx.Response(
                201, json={"id": "PPR-1", "status": "COMPLETED"}
            )
        },
        seen,
    )

    refund = paypal(handler).refund(
        "ORDER-PP-1", "CAP-1", Decimal("50"), "mint failed", {"original_transaction_id": "txn-1"}, "refund-txn-1"
    )

    assert refund.refund_id == "PPR-1"
    assert seen[1].headers["PayPal-Request-Id"] == "refund-txn-1"
    body = json.loads(seen[1].content)
    assert body["amount"] == {"currency_code": "USD", "value": "50.00"}
    assert body["custom_id"] == "txn-1"
    assert body["note_to_payer"] == "mint failed"


def test_paypal_refund_needs_capture_id():
    with pytest.raises(PaymentError):
        paypal(lambda request: httpx.Response(200, json={})).refund(
            "ORDER-PP-1", None, Decimal("50"), "mint failed", {}, "refund-txn-1"
        )


def test_paypal_declined_refund_is_payment_error():
    handler = paypal_api(
        {
            "/v2/payments/captures/CAP-1/refund": lambda request: httpx.Response(
                201, json={"id": "PPR-2", "status": "FAILED"}
            )
        },
        [],
    )

    with pytest.raises(PaymentError):
        paypal(handler).refund("ORDER-PP-1", "CAP-1", Decimal("50"), "mint failed", {}, "refund-txn-1")


def capture_event(event_type="PAYMENT.CAPTURE.COMPLETED", **resource) -> dict:
    return {
        "event_type": event_type,
        "resource": {
            "id": "CAP-1",
            "amount": {"currency_code": "USD", "value": "50.00"},
            "supplementary_data": {"related_ids": {"order_id": "ORDER-PP-1"}},
            **resource,
        },
    }


def test_paypal_webhook_is_verified_with_paypal():
    seen = []
    handler = paypal_api(
        {
            "/v1/notifications/verify-webhook-signature": lambda request: httpx.Response(
                200, json={"verification_status": "SUCCESS"}
            )
        },
        seen,
    )
    body = json.dumps(capture_event()).encode()

    payload = paypal(handler).verify_webhook(body, PAYPAL_HEADERS)

    assert payload["event_type"] == "PAYMENT.CAPTURE.COMPLETED"
    check = json.loads(seen[1].content)
    assert check["webhook_id"] == "WH-1"
    assert check["transmission_sig"] == "sig"
    assert check["webhook_event"]["resource"]["id"] == "CAP-1"


def test_paypal_webhook_rejected_signature():
    handler = paypal_api(
        {
            "/v1/notifications/verify-webhook-signature": lambda request: httpx.Response(
                200, json={"verification_status": "FAILURE"}
            )
        },
        [],
    )

    with pytest.raises(WebhookAuthenticationError):
        paypal(handler).verify_webhook(json.dumps(capture_event()).encode(), PAYPAL_HEADERS)


def test_paypal_webhook_needs_transmission_headers_and_webhook_id():
    processor = paypal(lambda request: httpx.Response(500))
    headers = {k: v for k, v in PAYPAL_HEADERS.items() if k != "paypal-transmission-sig"}

    with pytest.raises(WebhookAuthenticationError):
        processor.verify_webhook(b"{}", headers)
    with pytest.raises(WebhookNotConfigured):
        paypal(lambda request: httpx.Response(500), webhook_id=None).verify_webhook(b"{}", PAYPAL_HEADERS)


def test_paypal_parse_events():
    processor = PayPalProcessor(client_id=None, client_secret=None)

    succeeded = processor.parse_event(capture_event())
    denied = processor.parse_event(
        capture_event("PAYMENT.CAPTURE.DENIED", status_details={"reason": "DECLINED_BY_RISK"})
    )
    refunded = processor.parse_event(
        {
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "PPR-1",
                "supplementary_data": {"related_ids": {"order_id": "ORDER-PP-1", "capture_id": "CAP-1"}},
            },
        }
    )
    orphan = processor.parse_event({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"id": "CAP-9"}})

    assert (succeeded.type, succeeded.external_payment_id, succeeded.charge_id) == ("payment.succeeded", "ORDER-PP-1", "CAP-1")
    assert succeeded.amount == Decimal("50.00")
    assert (denied.type, denied.failure_message) == ("payment.failed", "PayPal capture declined_by_risk")
    assert (refunded.type, refunded.charge_id, refunded.refund_id) == ("payment.refunded", "CAP-1", "PPR-1")
    assert orphan.type == "unknown"


def test_paypal_unavailable_without_credentials_or_token():
    assert PayPalProcessor(client_id=None, client_secret=None).is_available() is False
    assert paypal(lambda request: httpx.Response(401, text="invalid_client")).is_available() is False
