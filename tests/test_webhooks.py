import base64
import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

from core.config import settings
from core.errors import WebhookAuthenticationError, WebhookNotConfigured
from core.expiring_store import ExpiringStore
from onramp.models import OnrampTransaction
from payments.manager import PaymentServiceManager, get_payment_manager
from payments.paypal_service import PayPalProcessor
from payments.square_service import SquareProcessor
from payments.stripe_service import StripeProcessor
from webhooks.verification import RELAY_SIGNATURE_HEADER, verify_and_parse, verify_relay_signature

STRIPE_SECRET = "whsec_test_secret"
RELAY_SECRET = "relay_test_secret"
SQUARE_KEY = "square_sig_key"
SQUARE_URL = "https://api.example.coop/webhooks/square"


def stripe_signature(payload: bytes, secret: str = STRIPE_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def relay_signature(payload: bytes, secret: str = RELAY_SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def square_signature(payload: bytes) -> str:
    digest = hmac.new(SQUARE_KEY.encode(), SQUARE_URL.encode() + payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def stripe_succeeded_payload(intent_id: str) -> bytes:
    return json.dumps(
        {
            "id": "evt_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": intent_id,
                    "object": "payment_intent",
                    "amount_received": 5000,
                    "latest_charge": "ch_123",
                }
            },
        }
    ).encode()


@pytest.fixture
def webhook_manager():
    return PaymentServiceManager(
        [
            StripeProcessor(secret_key=None, webhook_secret=STRIPE_SECRET),
            SquareProcessor(
                access_token=None,
                location_id=None,
                webhook_signature_key=SQUARE_KEY,
                notification_url=SQUARE_URL,
            ),
        ],
        cache=ExpiringStore(),
    )


@pytest.fixture
def webhook_client(client, app_overrides, webhook_manager, monkeypatch):
    app_overrides[get_payment_manager] = lambda: webhook_manager
    monkeypatch.setattr(settings, "WEBHOOK_TRUST_MODE", "direct")
    monkeypatch.setattr(settings, "RELAY_SIGNATURE_KEY", RELAY_SECRET)
    return client


@pytest.fixture
def pending(db, buyer):
    txn = OnrampTransaction(
        user_id=buyer.id,
        amount_fiat=Decimal("50"),
        amount_token=Decimal("50"),
        external_payment_id="pi_test_1",
        processor="stripe",
        status="PENDING",
    )
    db.add(txn)
    db.commit()
    return txn.id


def _status(db, txn_id):
    db.expire_all()
    return db.query(OnrampTransaction).filter(OnrampTransaction.id == txn_id).one().status


def test_direct_stripe_webhook_settles_purchase(webhook_client, db, pending, minter):
    body = stripe_succeeded_payload("pi_test_1")

    resp = webhook_client.post(
        "/webhooks/stripe",
        content=body,
        headers={"stripe-signature": stripe_signature(body), "content-type": "application/json"},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["received"] is True
    assert data["action"] == "completed"
    assert _status(db, pending) == "COMPLETED"
    assert len(minter.onramp_calls) == 1


def test_duplicate_delivery_is_acknowledged(webhook_client, db, pending, minter):
    body = stripe_succeeded_payload("pi_test_1")
    headers = {"stripe-signature": stripe_signature(body)}

    webhook_client.post("/webhooks/stripe", content=body, headers=headers)
    resp = webhook_client.post("/webhooks/stripe", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["duplicate"] is True
    assert len(minter.onramp_calls) == 1


def test_invalid_stripe_signature_is_rejected(webhook_client, db, pending, minter):
    body = stripe_succeeded_payload("pi_test_1")

    resp = webhook_client.post(
        "/webhooks/stripe",
        content=body,
        headers={"stripe-signature": stripe_signature(body, secret="whsec_wrong")},
    )

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "WEBHOOK_INVALID_SIGNATURE"
    assert _status(db, pending) == "PENDING"
    assert minter.onramp_calls == []


def test_missing_signature_is_rejected(webhook_client, pending):
    resp = webhook_client.post("/webhooks/stripe", content=stripe_succeeded_payload("pi_test_1"))
    assert resp.status_code == 401


def test_relay_mode_accepts_relay_signature(webhook_client, db, pending, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_TRUST_MODE", "relay")
    body = stripe_succeeded_payload("pi_test_1")

    resp = webhook_client.post(
        "/webhooks/stripe",
        content=body,
        headers={RELAY_SIGNATURE_HEADER: relay_signature(body)},
    )

    assert resp.status_code == 200
    assert _status(db, pending) == "COMPLETED"


def test_relay_mode_ignores_processor_signature(webhook_client, db, pending, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_TRUST_MODE", "relay")
    body = stripe_succeeded_payload("pi_test_1")

    resp = webhook_client.post(
        "/webhooks/stripe",
        content=body,
        headers={"stripe-signature": stripe_signature(body)},
    )

    assert resp.status_code == 401
    assert _status(db, pending) == "PENDING"


def test_direct_mode_ignores_relay_signature(webhook_client, db, pending):
    body = stripe_succeeded_payload("pi_test_1")

    resp = webhook_client.post(
        "/webhooks/stripe",
        content=body,
        headers={RELAY_SIGNATURE_HEADER: relay_signature(body)},
    )

    assert resp.status_code == 401
    assert _status(db, pending) == "PENDING"


def test_unknown_processor_is_not_found(webhook_client):
    resp = webhook_client.post("/webhooks/venmo", content=b"{}")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "UNKNOWN_PROCESSOR"


def test_success_for_untracked_intent_is_not_found(webhook_client, db):
    body = stripe_succeeded_payload("pi_nobody")

    resp = webhook_client.post(
        "/webhooks/stripe",
        content=body,
        headers={"stripe-signature": stripe_signature(body)},
    )

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "TRANSACTION_NOT_FOUND"


def test_relay_without_secret_is_not_configured():
    with pytest.raises(WebhookNotConfigured):
        verify_relay_signature(b"{}", "abc", None)


def test_relay_signature_mismatch():
    with pytest.raises(WebhookAuthenticationError):
        verify_relay_signature(b'{"a": 1}', relay_signature(b'{"a": 2}'), RELAY_SECRET)


def test_square_direct_verification_parses_completed_payment(webhook_manager):
    body = json.dumps(
        {
            "type": "payment.updated",
            "data": {
                "object": {
                    "payment": {
                        "id": "sq_pay_1",
                        "order_id": "sq_order_1",
                        "status": "COMPLETED",
                        "amount_money": {"amount": 2500, "currency": "USD"},
                    }
                }
            },
        }
    ).encode()

    event = verify_and_parse(
        "square",
        body,
        {"x-square-hmacsha256-signature": square_signature(body)},
        webhook_manager,
        trust_mode="direct",
    )

    assert event.type == "payment.succeeded"
    assert event.external_payment_id == "sq_order_1"
    assert event.charge_id == "sq_pay_1"
    assert event.amount == Decimal("25")


def test_square_signature_mismatch(webhook_manager):
    with pytest.raises(WebhookAuthenticationError):
        verify_and_parse(
            "square",
            b'{"type": "payment.updated"}',
            {"x-square-hmacsha256-signature": "bm9wZQ=="},
            webhook_manager,
            trust_mode="direct",
        )


def test_direct_paypal_webhook_settles_purchase(webhook_client, app_overrides, db, buyer, minter):
    def paypal_api(request: httpx.Request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "pp_token"})
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    manager = PaymentServiceManager(
        [
            PayPalProcessor(
                client_id="pp_client",
                client_secret="pp_secret",
                webhook_id="WH-1",
                transport=httpx.MockTransport(paypal_api),
            )
        ],
        cache=ExpiringStore(),
    )
    app_overrides[get_payment_manager] = lambda: manager

    txn = OnrampTransaction(
        user_id=buyer.id,
        amount_fiat=Decimal("50"),
        amount_token=Decimal("50"),
        external_payment_id="ORDER-PP-1",
        processor="paypal",
        status="PENDING",
    )
    db.add(txn)
    db.commit()

    body = json.dumps(
        {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAP-1",
                "amount": {"currency_code": "USD", "value": "50.00"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-PP-1"}},
            },
        }
    ).encode()
    resp = webhook_client.post(
        "/webhooks/paypal",
        content=body,
        headers={
            "paypal-transmission-id": "tx-1",
            "paypal-transmission-time": "2026-01-01T00:00:00Z",
            "paypal-transmission-sig": "sig",
            "paypal-cert-url": "https://api.paypal.com/cert.pem",
            "paypal-auth-algo": "SHA256withRSA",
        },
    )

    assert resp.status_code == 200
    assert resp.json()["action"] == "completed"
    assert _status(db, txn.id) == "COMPLETED"
    assert len(minter.onramp_calls) == 1
