"""
Integration tests for the /billing endpoints.
The gateway is replaced by an in-process fake through the orchestrator dependency.
"""
import json
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.api.routes.billing import get_orchestrator
from app.core.auth_dependency import get_db
from app.core.exceptions import GatewayError
from app.core.security import create_access_token
from app.db.base import Base
from app.db.models.payment_transaction import PaymentTransaction
from app.db.models.subscription import Subscription
from app.db.models.user import User
from app.services import wallet_service
from app.services.payment_gateway import GatewayEvent, GatewayOrder, GatewayOrderStatus, PaymentGateway
from app.services.payment_orchestrator import PaymentOrchestrator


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeGateway(PaymentGateway):
    name = "fake"
    key_id = "fake_key"

    def create_order(self, amount, currency, idempotency_key, notes=None):
        return GatewayOrder(f"order_{idempotency_key}", amount, currency, key_id=self.key_id)

    def verify_signature(self, callback):
        return callback.signature == f"sig:{callback.order_id}|{callback.payment_id}"

    def fetch_order(self, order_id):
        return GatewayOrderStatus(order_id, "created")

    def parse_webhook(self, payload, signature):
        if signature != "whsig":
            raise GatewayError("signature_mismatch", "Invalid webhook signature")
        return GatewayEvent(**json.loads(payload))


def override_get_db():
    """Override get_db dependency for testing."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function", autouse=True)
def setup_db():
    """Create and drop tables for each test."""
    Base.metadata.create_all(bind=test_engine)
    gateway = FakeGateway(timeout=1)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: PaymentOrchestrator(gateway, currency="INR")
    yield
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db_session():
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def test_user(db_session):
    user = User(full_name="Test User", email="test@example.com")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(test_user):
    return {"Authorization": f"Bearer {create_access_token({'sub': test_user.email})}"}


@pytest.fixture
def other_headers(db_session):
    other = User(full_name="Other User", email="other@example.com")
    db_session.add(other)
    db_session.commit()
    return {"Authorization": f"Bearer {create_access_token({'sub': other.email})}"}


@pytest.fixture
def client():
    return TestClient(app)


def _purchase(client, headers, **body):
    response = client.post("/billing/purchases", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _verify_body(purchase, payment_id="pay_1"):
    order_id = purchase["order"]["order_id"]
    return {
        "order_id": order_id,
        "payment_id": payment_id,
        "signature": f"sig:{order_id}|{payment_id}",
        "transaction_id": purchase["transaction_id"],
    }


def test_catalog_is_public(client):
    response = client.get("/billing/catalog")

    assert response.status_code == 200
    data = response.json()
    assert data["currency"] == "INR"
    plans = {p["id"]: p for p in data["plans"]}
    assert len(plans) == 6
    assert plans["career_boost_plus"]["price"] == 149900
    assert plans["career_boost_plus"]["entitlements"]["linkedin_message"] is None
    assert plans["lite_check"]["price"] == 9900
    assert any(a["id"] == "linkedin_messages_50" for a in data["addons"])


def test_quote(client, auth_headers, db_session, test_user):
    wallet_service.record(db_session, test_user.id, 20000)
    db_session.commit()

    response = client.post("/billing/quote", json={
        "plan_id": "career_pro_max",
        "addons": {"linkedin_messages_50": 1},
        "coupon_code": "worthyone",
        "use_wallet": True,
    }, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["plan_price"] == 199900
    assert data["discount"] == 99950
    assert data["wallet_deduction"] == 20000
    assert data["addons_total"] == 2900
    assert data["grand_total"] == 199900 - 99950 - 20000 + 2900
    assert data["coupon_applied"] is True
    # Quoting reserves nothing
    assert db_session.query(PaymentTransaction).count() == 0


def test_quote_requires_auth(client):
    response = client.post("/billing/quote", json={"plan_id": "lite_check"})
    assert response.status_code == 401


def test_coupon_preview(client, auth_headers):
    ok = client.post("/billing/coupons/preview", json={"plan_id": "lite_check", "coupon_code": "FIRST500"}, headers=auth_headers)
    assert ok.status_code == 200
    assert ok.json()["applied"] is True
    assert ok.json()["final_amount"] == 198

    wrong_plan = client.post("/billing/coupons/preview", json={"plan_id": "lite_check", "coupon_code": "FULLSUPPORT"}, headers=auth_headers)
    assert wrong_plan.json()["applied"] is False
    assert wrong_plan.json()["final_amount"] == 9900
    assert wrong_plan.json()["reason"] == "not_applicable"

    unknown = client.post("/billing/coupons/preview", json={"plan_id": "lite_check", "coupon_code": "NOPE"}, headers=auth_headers)
    assert unknown.json()["reason"] == "invalid_code"


def test_purchase_verify_activate(client, auth_headers):
    purchase = _purchase(client, auth_headers, plan_id="smart_apply_pack", addons={"linkedin_messages_50": 1})

    assert purchase["status"] == "pending"
    assert purchase["order"]["amount"] == 49900 + 2900
    assert purchase["order"]["gateway"] == "fake"
    assert purchase["order"]["key_id"] == "fake_key"

    verified = client.post("/billing/verify", json=_verify_body(purchase), headers=auth_headers)
    assert verified.status_code == 200
    assert verified.json()["status"] == "activated"

    again = client.post("/billing/verify", json=_verify_body(purchase), headers=auth_headers)
    assert again.status_code == 200
    assert again.json()["status"] == "already_processed"
    assert again.json()["subscription_id"] == verified.json()["subscription_id"]

    usage = client.get("/me/usage", headers=auth_headers).json()
    assert usage["plan_id"] == "smart_apply_pack"
    features = {f["kind"]: f for f in usage["features"]}
    assert features["linkedin_message"]["addon_remaining"] == 50


def test_verify_bad_signature(client, auth_headers, db_session):
    purchase = _purchase(client, auth_headers, plan_id="lite_check")
    body = _verify_body(purchase)
    body["signature"] = "forged"

    response = client.post("/billing/verify", json=body, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "signature_mismatch"
    assert response.json()["retryable"] is False
    assert db_session.get(PaymentTransaction, purchase["transaction_id"]).status == "pending"


def test_free_purchase_with_wallet(client, auth_headers, db_session, test_user):
    wallet_service.record(db_session, test_user.id, 9900)
    db_session.commit()

    purchase = _purchase(client, auth_headers, plan_id="lite_check", use_wallet=True)

    assert purchase["status"] == "free_activated"
    assert purchase["order"] is None
    assert purchase["subscription_id"] is not None
    wallet = client.get("/me/wallet", headers=auth_headers).json()
    assert wallet["balance"] == 0


def test_purchase_unknown_plan(client, auth_headers):
    response = client.post("/billing/purchases", json={"plan_id": "platinum"}, headers=auth_headers)
    assert response.status_code == 500
    assert response.json()["error"] == "configuration_error"


def test_purchase_empty_selection(client, auth_headers):
    response = client.post("/billing/purchases", json={"addons": {}}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "empty_purchase"


def test_purchase_rejected_coupon(client, auth_headers):
    response = client.post("/billing/purchases", json={"plan_id": "lite_check", "coupon_code": "FULLSUPPORT"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "not_applicable"


def test_checkout_returns_existing_order(client, auth_headers):
    purchase = _purchase(client, auth_headers, plan_id="resume_fix_pack")

    response = client.post(f"/billing/purchases/{purchase['transaction_id']}/checkout", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["order_id"] == purchase["order"]["order_id"]


def test_checkout_other_users_purchase(client, auth_headers, other_headers):
    purchase = _purchase(client, auth_headers, plan_id="resume_fix_pack")

    response = client.post(f"/billing/purchases/{purchase['transaction_id']}/checkout", headers=other_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "unknown_transaction"


def test_cancel_purchase(client, auth_headers):
    purchase = _purchase(client, auth_headers, plan_id="resume_fix_pack")
    url = f"/billing/purchases/{purchase['transaction_id']}/cancel"

    first = client.post(url, headers=auth_headers)
    assert first.json() == {"transaction_id": purchase["transaction_id"], "cancelled": True}

    second = client.post(url, headers=auth_headers)
    assert second.json()["cancelled"] is False

    # Checkout completed at the gateway after the cancel went through
    verify = client.post("/billing/verify", json=_verify_body(purchase), headers=auth_headers)
    assert verify.status_code == 200
    assert verify.json()["status"] == "activation_queued"


def test_free_trial_once(client, auth_headers):
    first = client.post("/billing/free-trial", headers=auth_headers)
    assert first.status_code == 201
    assert first.json()["plan_id"] == "lite_check"

    second = client.post("/billing/free-trial", headers=auth_headers)
    assert second.status_code == 400
    assert second.json()["error"] == "free_trial_used"


def test_webhook_activates(client, auth_headers, db_session):
    purchase = _purchase(client, auth_headers, plan_id="pro_resume_kit")
    payload = json.dumps({
        "type": "payment_succeeded",
        "order_id": purchase["order"]["order_id"],
        "payment_id": "pay_wh",
    })

    response = client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": "whsig"})
    assert response.status_code == 200
    assert response.json() == {"status": "success", "outcome": "activated"}

    redelivered = client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": "whsig"})
    assert redelivered.json()["outcome"] == "already_processed"
    assert db_session.query(Subscription).count() == 1


def test_webhook_bad_signature(client):
    payload = json.dumps({"type": "payment_succeeded", "order_id": "order_1"})
    response = client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": "forged"})
    assert response.status_code == 400
    assert response.json()["error"] == "signature_mismatch"


def test_webhook_ignores_other_events(client):
    payload = json.dumps({"type": "ignored", "raw_type": "customer.created"})
    response = client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": "whsig"})
    assert response.json()["outcome"] == "ignored"


class WebhookOnlyGateway(FakeGateway):
    name = "stripe"
    client_callbacks = False


def test_verify_rejected_for_webhook_gateway(client, auth_headers, db_session):
    app.dependency_overrides[get_orchestrator] = lambda: PaymentOrchestrator(WebhookOnlyGateway(timeout=1), currency="INR")
    purchase = _purchase(client, auth_headers, plan_id="lite_check")

    response = client.post("/billing/verify", json=_verify_body(purchase), headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "webhook_only"
    assert db_session.get(PaymentTransaction, purchase["transaction_id"]).status == "pending"
