"""Shared test fixtures for the tierpay test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, rate limits off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: a creator, a member and an admin profile
- auth_headers / admin_headers: bearer tokens for those profiles
- fake_gateway: a recording fake adapter swapped into the gateway registry
- helpers to build transactions and signed webhook bodies
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tierpay import create_app
from tierpay.extensions import db as _db
from tierpay.models.profile import Profile
from tierpay.models.transaction import PENDING, PROCESSING, PaymentTransaction
from tierpay.services.auth_service import issue_auth_token
from tierpay.services.gateway_service import GatewayAdapter, GatewayRegistry


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed a free creator, a `welcome` member and an admin.

    Returns a dict with the profiles and their plain ids.
    """
    creator = Profile(
        email="ada@example.com",
        display_name="Ada Creator",
        phone_number="+256700000001",
        tier="free",
    )
    member = Profile(
        email="ben@example.com",
        display_name="Ben Member",
        phone_number="+256700000002",
        tier="free",
        member_tier="welcome",
    )
    admin = Profile(
        email="admin@example.com",
        display_name="Admin",
        is_admin=True,
    )
    _db.session.add_all([creator, member, admin])
    _db.session.commit()

    return {
        "creator": creator,
        "creator_id": creator.id,
        "member": member,
        "member_id": member.id,
        "admin": admin,
        "admin_id": admin.id,
    }


def bearer(profile_id):
    return {"Authorization": f"Bearer {issue_auth_token(profile_id)}"}


@pytest.fixture
def auth_headers(seed_data):
    """Bearer headers for the creator profile."""
    return bearer(seed_data["creator_id"])


@pytest.fixture
def member_headers(seed_data):
    return bearer(seed_data["member_id"])


@pytest.fixture
def admin_headers(seed_data):
    return bearer(seed_data["admin_id"])


# ──────────────────────────────────────────────
# Fake gateway
# ──────────────────────────────────────────────

class FakeGateway(GatewayAdapter):
    """In-memory adapter. Records calls; outcomes set per test."""

    signature_header = "X-Fake-Signature"

    def __init__(self, name):
        super().__init__(
            api_url="https://fake.test",
            secret_key="sk_fake",
            webhook_secret="whsec_fake",
        )
        self.name = name
        self.initiate_calls = []
        self.status_calls = []
        self.initiate_error = None
        self.status_result = "pending"
        self.status_error = None

    def initiate(self, transaction):
        self.initiate_calls.append(transaction.id)
        if self.initiate_error:
            raise self.initiate_error
        return {
            "reference": f"{self.name}-ref-{transaction.id[:8]}",
            "checkout_url": f"https://pay.{self.name}.test/checkout/{transaction.id}",
            "session_id": f"sess-{transaction.id[:8]}",
            "status": "pending",
        }

    def get_status(self, reference):
        self.status_calls.append(reference)
        if self.status_error:
            raise self.status_error
        return {
            "reference": reference,
            "status": self.status_result,
            "provider_transaction_id": f"ptx-{reference}",
            "error": "Card declined" if self.status_result == "failed" else None,
        }

    def parse_webhook(self, payload):
        return {
            "event_id": payload["id"],
            "event_type": "fake.event",
            "reference": payload["reference"],
            "status": payload["status"],
            "reason": payload.get("reason"),
            "provider_transaction_id": payload.get("ptx"),
        }


@pytest.fixture
def fake_gateway(app):
    """Replace the registry with one fake adapter serving every payment method."""
    original = app.extensions["payment_gateways"]
    gateway = FakeGateway("eversend")
    app.extensions["payment_gateways"] = GatewayRegistry(
        [gateway], {"card": "eversend", "mobile_money": "eversend"}
    )
    yield gateway
    app.extensions["payment_gateways"] = original


# ──────────────────────────────────────────────
# Builders
# ──────────────────────────────────────────────

def make_transaction(user_id, status=PROCESSING, gateway="eversend",
                     target_tier="premium", subject_type="creator",
                     reference=None, **fields):
    """Insert a transaction directly (bypassing the orchestrator)."""
    now = datetime.now(timezone.utc)
    values = dict(
        user_id=user_id,
        subject_type=subject_type,
        previous_tier="free" if subject_type == "creator" else "welcome",
        target_tier=target_tier,
        amount=Decimal("9.99"),
        currency="USD",
        billing_cycle="monthly",
        payment_method="card" if gateway == "eversend" else "express_pay",
        gateway=gateway,
        idempotency_key=f"{user_id}-{target_tier}-{int(now.timestamp())}",
        status=status,
        initiated_at=now,
        contact={"email": "ada@example.com"},
    )
    if status != PENDING:
        values["provider_reference"] = reference or f"ref-{target_tier}-{user_id[:6]}"
        values["processing_started_at"] = now
        values["checkout_url"] = "https://pay.test/checkout"
    values.update(fields)
    transaction = PaymentTransaction(**values)
    _db.session.add(transaction)
    _db.session.commit()
    return transaction


def sign(secret, body):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def eversend_body(reference, status="completed", event_id="evt_1", **extra):
    payload = {
        "eventId": event_id,
        "eventType": "collection.updated",
        "reference": reference,
        "status": status,
        **extra,
    }
    return json.dumps(payload).encode()
