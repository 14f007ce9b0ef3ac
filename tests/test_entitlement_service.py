"""
Unit tests for the entitlement activator.
Tests add-on grants, the supersede-and-merge policy and idempotency.
"""
import pytest
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.catalog import EntitlementKind
from app.core.exceptions import ConfigurationError, ValidationError
from app.db.base import Base
from app.db.models.addon_credit import AddonCredit
from app.db.models.payment_transaction import PaymentTransaction
from app.db.models.subscription import Subscription
from app.db.models.user import User
from app.db.models.wallet_transaction import WalletTransaction
from app.services import entitlement_service, wallet_service
from app.services.usage_service import consume, get_active_subscription


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def test_user(db):
    user = User(full_name="Test User", email="test@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _transaction(db, user_id, plan_id=None, addons=None):
    tx = PaymentTransaction(user_id=user_id, plan_id=plan_id, status="success", addons=addons)
    db.add(tx)
    db.commit()
    db.refresh(tx)
    return tx


def test_activate_plan(db, test_user):
    tx = _transaction(db, test_user.id, "career_boost_plus")
    before = datetime.utcnow()

    result = entitlement_service.activate(db, test_user.id, "career_boost_plus", {}, tx.id)
    db.commit()

    subscription = db.get(Subscription, result.subscription_id)
    assert subscription.status == "active"
    assert subscription.optimizations_total == 30
    assert subscription.optimizations_used == 0
    assert subscription.linkedin_messages_total is None
    assert subscription.payment_transaction_id == tx.id
    assert subscription.end_date >= before + timedelta(days=365)

    db.refresh(tx)
    assert tx.subscription_id == subscription.id


def test_activate_addons(db, test_user):
    addons = {"linkedin_messages_50": 2, "jd_optimization_single": 3}
    tx = _transaction(db, test_user.id, addons=addons)

    result = entitlement_service.activate(db, test_user.id, None, addons, tx.id)
    db.commit()

    assert result.subscription_id is None
    credits = {c.addon_id: c for c in db.query(AddonCredit).all()}
    assert credits["linkedin_messages_50"].quantity_purchased == 100
    assert credits["linkedin_messages_50"].quantity_remaining == 100
    assert credits["linkedin_messages_50"].entitlement_kind == "linkedin_message"
    assert credits["jd_optimization_single"].quantity_remaining == 3


def test_activate_settles_wallet_hold(db, test_user):
    wallet_service.record(db, test_user.id, 10000)
    tx = PaymentTransaction(user_id=test_user.id, plan_id="lite_check", status="pending")
    db.add(tx)
    db.flush()
    wallet_service.reserve(db, test_user.id, 9900, tx.id)
    db.commit()

    result = entitlement_service.activate(db, test_user.id, "lite_check", {}, tx.id)
    db.commit()

    assert result.wallet_settled == 1
    assert wallet_service.get_balance(db, test_user.id) == 100
    hold = db.query(WalletTransaction).filter(WalletTransaction.payment_transaction_id == tx.id).one()
    assert hold.status == "completed"


def test_activation_is_idempotent_per_transaction(db, test_user):
    addons = {"resume_score_check_single": 1}
    tx = _transaction(db, test_user.id, "lite_check", addons)

    first = entitlement_service.activate(db, test_user.id, "lite_check", addons, tx.id)
    db.commit()
    second = entitlement_service.activate(db, test_user.id, "lite_check", addons, tx.id)
    db.commit()

    assert second.already_active
    assert second.subscription_id == first.subscription_id
    assert db.query(Subscription).count() == 1
    assert db.query(AddonCredit).count() == 1


def test_supersede_merges_remaining_credits(db, test_user):
    old_tx = _transaction(db, test_user.id, "smart_apply_pack")
    old = entitlement_service.activate(db, test_user.id, "smart_apply_pack", {}, old_tx.id)
    db.commit()
    for _ in range(3):
        consume(db, test_user.id, EntitlementKind.OPTIMIZATION)

    new_tx = _transaction(db, test_user.id, "career_boost_plus")
    new = entitlement_service.activate(db, test_user.id, "career_boost_plus", {}, new_tx.id)
    db.commit()

    assert new.superseded_subscription_ids == [old.subscription_id]
    assert db.get(Subscription, old.subscription_id).status == "cancelled"

    active = get_active_subscription(db, test_user.id)
    assert active.id == new.subscription_id
    assert active.optimizations_total == 30 + 7
    assert active.score_checks_total == 30 + 10
    assert active.guided_builds_total == 3 + 1
    # New pool is unlimited, nothing to merge into
    assert active.linkedin_messages_total is None


def test_unlimited_old_pool_carries_nothing(db, test_user):
    entitlement_service.activate(db, test_user.id, "career_boost_plus", {}, None)
    db.commit()
    entitlement_service.activate(db, test_user.id, "pro_resume_kit", {}, None)
    db.commit()

    active = get_active_subscription(db, test_user.id)
    assert active.plan_id == "pro_resume_kit"
    assert active.linkedin_messages_total == 100
    assert active.optimizations_total == 20 + 30


def test_one_active_subscription_per_user(db, test_user):
    for plan_id in ("lite_check", "resume_fix_pack", "smart_apply_pack"):
        entitlement_service.activate(db, test_user.id, plan_id, {}, None)
        db.commit()

    statuses = [s.status for s in db.query(Subscription).order_by(Subscription.id).all()]
    assert statuses == ["cancelled", "cancelled", "active"]


def test_unknown_plan_rolls_back_everything(db, test_user):
    with pytest.raises(ConfigurationError):
        entitlement_service.activate(db, test_user.id, "platinum", {"linkedin_messages_50": 1}, None)
    db.rollback()
    assert db.query(AddonCredit).count() == 0


def test_free_trial_once(db, test_user):
    result = entitlement_service.activate_free_trial(db, test_user.id)
    subscription = db.get(Subscription, result.subscription_id)
    assert subscription.plan_id == "lite_check"
    assert subscription.coupon_used == "free_trial"

    with pytest.raises(ValidationError) as exc:
        entitlement_service.activate_free_trial(db, test_user.id)
    assert exc.value.reason == "free_trial_used"


def test_lapsed_subscription_is_expired_not_merged(db, test_user):
    old = entitlement_service.activate(db, test_user.id, "smart_apply_pack", {}, None)
    db.commit()
    lapsed = db.get(Subscription, old.subscription_id)
    lapsed.end_date = datetime.utcnow() - timedelta(days=1)
    db.commit()

    new = entitlement_service.activate(db, test_user.id, "resume_fix_pack", {}, None)
    db.commit()

    assert new.superseded_subscription_ids == []
    db.refresh(lapsed)
    assert lapsed.status == "expired"
    active = get_active_subscription(db, test_user.id)
    assert active.id == new.subscription_id
    assert active.optimizations_total == 5
