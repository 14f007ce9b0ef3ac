"""
Unit tests for the entitlement guard dependency.
The checker is called directly, bypassing FastAPI Depends.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.catalog import EntitlementKind
from app.core.entitlement_guard import require_entitlement
from app.core.exceptions import ExhaustionError, ValidationError
from app.db.base import Base
from app.db.models.addon_credit import AddonCredit
from app.db.models.user import User
from app.services import entitlement_service
from app.services.usage_service import get_active_subscription


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


def test_guard_consumes_one_unit(db, test_user):
    entitlement_service.activate(db, test_user.id, "smart_apply_pack", {}, None)
    db.commit()

    checker = require_entitlement(EntitlementKind.OPTIMIZATION)
    assert checker(user=test_user, db=db) is test_user

    assert get_active_subscription(db, test_user.id).optimizations_used == 1


def test_guard_accepts_kind_string(db, test_user):
    entitlement_service.activate(db, test_user.id, "lite_check", {}, None)
    db.commit()

    checker = require_entitlement("score_check")
    checker(user=test_user, db=db)
    assert get_active_subscription(db, test_user.id).score_checks_used == 1


def test_guard_rejects_unknown_kind():
    with pytest.raises(ValueError):
        require_entitlement("cover_letter")


def test_guard_exhausted(db, test_user):
    entitlement_service.activate(db, test_user.id, "lite_check", {}, None)
    db.commit()

    checker = require_entitlement(EntitlementKind.OPTIMIZATION)
    checker(user=test_user, db=db)
    checker(user=test_user, db=db)

    with pytest.raises(ExhaustionError) as exc_info:
        checker(user=test_user, db=db)
    assert exc_info.value.kind == "optimization"
    assert exc_info.value.plan_id == "lite_check"


def test_guard_spent_addons_without_subscription(db, test_user):
    db.add(AddonCredit(
        user_id=test_user.id,
        addon_id="guided_resume_build",
        entitlement_kind=EntitlementKind.GUIDED_BUILD.value,
        quantity_purchased=1,
        quantity_remaining=1,
    ))
    db.commit()

    checker = require_entitlement(EntitlementKind.GUIDED_BUILD)
    checker(user=test_user, db=db)

    with pytest.raises(ValidationError) as exc_info:
        checker(user=test_user, db=db)
    assert exc_info.value.reason == "no_subscription"


def test_guard_without_subscription(db, test_user):
    checker = require_entitlement(EntitlementKind.LINKEDIN_MESSAGE)
    with pytest.raises(ValidationError) as exc_info:
        checker(user=test_user, db=db)
    assert exc_info.value.reason == "no_subscription"
