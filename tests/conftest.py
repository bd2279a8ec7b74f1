import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["WEBHOOK_TRUST_MODE"] = "direct"
os.environ["ALERT_WEBHOOK_URL"] = ""

from datetime import datetime, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from itertools import count  # noqa: E402

import pytest  # noqa: E402

from core.alerts import AlertDispatcher  # noqa: E402
from core.database import Base, SessionLocal, engine  # noqa: E402
from core.expiring_store import ExpiringStore  # noqa: E402
from core.models import User  # noqa: E402
from core.rate_limit import limiter  # noqa: E402
from ledger.client import LedgerError  # noqa: E402
from ledger.minting import MintResult  # noqa: E402
from payments.base import PaymentIntentResult, PaymentProcessor, RefundResult  # noqa: E402
from payments.events import UnknownEvent  # noqa: E402
from payments.manager import PaymentServiceManager  # noqa: E402

import onramp.models  # noqa: E402,F401
import rewards.models  # noqa: E402,F401
import reconciliation.models  # noqa: E402,F401

limiter.enabled = False

BUYER_WALLET = "0x1111111111111111111111111111111111111111"
SELLER_WALLET = "0x2222222222222222222222222222222222222222"


class FakeMinter:
    def __init__(self):
        self.onramp_calls = []
        self.reward_calls = []
        self.fail_with: Exception | None = None
        self.actual_amounts: dict[str, Decimal] = {}
        self._hashes = count(1)

    def _next_hash(self) -> str:
        return "0x" + f"{next(self._hashes):064x}"

    def mint_onramp(self, to_address, amount, on_submitted=None):
        self.onramp_calls.append((to_address, amount))
        tx_hash = self._next_hash()
        if on_submitted:
            on_submitted(tx_hash)
        if self.fail_with is not None:
            raise self.fail_with
        return MintResult(tx_hash=tx_hash, block_number=100, requested_amount=amount, actual_amount=amount)

    def mint_reward(self, recipient, amount, reason, on_submitted=None):
        self.reward_calls.append((recipient, amount, reason))
        tx_hash = self._next_hash()
        if on_submitted:
            on_submitted(tx_hash)
        if self.fail_with is not None:
            raise self.fail_with
        actual = self.actual_amounts.get(recipient, amount)
        return MintResult(
            tx_hash=tx_hash,
            block_number=200,
            requested_amount=amount,
            actual_amount=actual,
            balance_percent=40 if actual < amount else None,
        )


class FakeProcessor(PaymentProcessor):
    def __init__(self, name="stripe", available=True):
        self.name = name
        self.available = available
        self.refunds = []
        self.intents = []
        self.refund_error: Exception | None = None
        self.create_error: Exception | None = None
        self._ids = count(1)

    def is_available(self):
        return self.available

    def create_payment_intent(self, amount_fiat, currency, metadata):
        if self.create_error is not None:
            raise self.create_error
        intent_id = f"{self.name}_pi_{next(self._ids)}"
        self.intents.append((intent_id, amount_fiat, metadata))
        return PaymentIntentResult(intent_id=intent_id, client_secret=f"{intent_id}_secret", processor=self.name)

    def verify_webhook(self, raw_body, headers):
        raise NotImplementedError

    def parse_event(self, payload):
        return UnknownEvent(processor=self.name, event_type=payload.get("type", ""))

    def refund(self, external_payment_id, charge_id, amount_fiat, reason, metadata, idempotency_key):
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append(
            {
                "external_payment_id": external_payment_id,
                "charge_id": charge_id,
                "amount": amount_fiat,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        return RefundResult(refund_id=f"re_{len(self.refunds)}", status="succeeded")


class FakeLedger:
    def __init__(self):
        self.receipts = {}
        self.events = []
        self.rewards: dict[str, Decimal] = {}
        self.supply = Decimal("0")
        self.balances: dict[str, Decimal] = {}
        self.error: Exception | None = None
        self.receipt_lookups = []

    def get_transaction_receipt(self, tx_hash):
        self.receipt_lookups.append(tx_hash)
        if self.error is not None:
            raise self.error
        return self.receipts.get(tx_hash)

    def get_event_logs(self, token_id, event_name, from_block, to_block="latest"):
        if self.error is not None:
            raise self.error
        return [
            e for e in self.events
            if e.event == event_name and from_block <= e.block_number <= to_block
        ]

    def calculate_reward(self, recipient, purchase_amount):
        if self.error is not None:
            raise self.error
        return self.rewards.get(recipient, Decimal(purchase_amount) / 10)

    def balance_of(self, address, token_id):
        if self.error is not None:
            raise self.error
        return self.balances.get(address, Decimal("0"))

    def total_supply(self, token_id):
        if self.error is not None:
            raise LedgerError("rpc down")
        return self.supply


class RecordingAlerts(AlertDispatcher):
    def __init__(self):
        super().__init__(webhook_url=None)
        self.sent = []

    def dispatch(self, alert):
        self.sent.append(alert)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def minter():
    return FakeMinter()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def stripe_processor():
    return FakeProcessor("stripe")


@pytest.fixture
def square_processor():
    return FakeProcessor("square")


@pytest.fixture
def payments(stripe_processor, square_processor):
    return PaymentServiceManager([stripe_processor, square_processor], cache=ExpiringStore())


@pytest.fixture
def buyer(db):
    user = User(
        email="buyer@example.com",
        wallet_address=BUYER_WALLET,
        encrypted_private_key="aa:bb:cc",
        wallet_created_at=datetime.now(timezone.utc),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def seller(db):
    user = User(
        email="seller@example.com",
        wallet_address=SELLER_WALLET,
        encrypted_private_key="dd:ee:ff",
        wallet_created_at=datetime.now(timezone.utc),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def walletless_user(db):
    user = User(email="nowallet@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


ADMIN_CLAIMS = {"sub": "admin-1", "roles": ["admin"]}


@pytest.fixture
def app_overrides(db, buyer, minter, payments, alerts, ledger):
    """Wire the FastAPI app to the test session and fakes."""
    from core.alerts import get_alert_dispatcher
    from core.auth import get_current_user, require_admin
    from core.database import get_db
    from ledger.client import get_ledger_client
    from main import app
    from onramp.service import SettlementService, get_settlement_service
    from payments.manager import get_payment_manager
    from reconciliation.service import ReconciliationEngine, get_reconciliation_engine
    from rewards.service import RewardService, get_reward_service

    def override_get_db():
        yield db

    overrides = {
        get_db: override_get_db,
        get_current_user: lambda: buyer,
        require_admin: lambda: ADMIN_CLAIMS,
        get_payment_manager: lambda: payments,
        get_ledger_client: lambda: ledger,
        get_alert_dispatcher: lambda: alerts,
        get_settlement_service: lambda: SettlementService(minter, payments, alerts),
        get_reward_service: lambda: RewardService(minter, ledger),
        get_reconciliation_engine: lambda: ReconciliationEngine(ledger, alerts),
    }
    app.dependency_overrides.update(overrides)
    yield app.dependency_overrides
    app.dependency_overrides.clear()


@pytest.fixture
def client(app_overrides):
    from fastapi.testclient import TestClient

    from main import app

    return TestClient(app)
