"""
Unit tests for the coupon engine.
Tests plan scoping, integer discounts and the global usage cap.
"""
import pytest
from concurrent.futures import ThreadPoolExecutor
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.catalog import ADDON_ONLY_PLAN_ID
from app.core.exceptions import ConfigurationError
from app.db.base import Base
from app.db.models.coupon_usage import CouponUsage
from app.services import coupon_service


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


def test_fullsupport_zeroes_premium_plan(db):
    result = coupon_service.apply(db, "career_pro_max", "FULLSUPPORT", user_id=1)
    assert result.applied
    assert result.discount == 199900
    assert result.final_amount == 0


@pytest.mark.parametrize("plan_id", ["career_boost_plus", "pro_resume_kit", "smart_apply_pack", "resume_fix_pack", "lite_check"])
def test_fullsupport_not_applicable_elsewhere(db, plan_id):
    result = coupon_service.apply(db, plan_id, "FULLSUPPORT")
    assert not result.applied
    assert result.reason == "not_applicable"
    assert result.discount == 0


def test_code_is_case_and_whitespace_insensitive(db):
    result = coupon_service.apply(db, "career_pro_max", "  worthyone ")
    assert result.applied
    assert result.code == "WORTHYONE"
    assert result.discount == 99950
    assert result.final_amount == 99950


def test_invalid_code(db):
    result = coupon_service.apply(db, "lite_check", "BOGUS")
    assert not result.applied
    assert result.reason == "invalid_code"
    assert result.final_amount == 9900


def test_addon_only_is_not_coupon_eligible(db):
    result = coupon_service.apply(db, ADDON_ONLY_PLAN_ID, "FIRST100")
    assert not result.applied
    assert result.reason == "not_applicable"


def test_unknown_plan_is_configuration_error(db):
    with pytest.raises(ConfigurationError):
        coupon_service.apply(db, "platinum", "FULLSUPPORT")


def test_percentage_discount_floors_to_paise():
    assert coupon_service.compute_discount(9900, 98) == 9702
    assert coupon_service.compute_discount(999, 50) == 499


def test_first100_has_no_cap(db):
    for _ in range(3):
        assert coupon_service.apply(db, "lite_check", "FIRST100").final_amount == 0
    db.commit()
    assert coupon_service.get_usage_count(db, "FIRST100") == 0


def test_first500_claims_a_use(db):
    result = coupon_service.apply(db, "lite_check", "FIRST500", user_id=1)
    db.commit()
    assert result.applied
    assert result.final_amount == 198
    assert coupon_service.get_usage_count(db, "FIRST500") == 1


def test_first500_501st_use_rejected_for_any_user(db):
    db.add(CouponUsage(code="FIRST500", uses=499))
    db.commit()

    assert coupon_service.apply(db, "lite_check", "FIRST500", user_id=1).applied
    db.commit()

    for user_id in (1, 2, 3):
        result = coupon_service.apply(db, "lite_check", "FIRST500", user_id=user_id)
        assert not result.applied
        assert result.reason == "usage_limit_reached"
    db.commit()
    assert coupon_service.get_usage_count(db, "FIRST500") == 500


def test_preview_does_not_claim(db):
    result = coupon_service.preview(db, "lite_check", "FIRST500")
    db.commit()
    assert result.applied
    assert coupon_service.get_usage_count(db, "FIRST500") == 0


def test_preview_reports_exhausted_cap(db):
    db.add(CouponUsage(code="FIRST500", uses=500))
    db.commit()
    assert coupon_service.preview(db, "lite_check", "FIRST500").reason == "usage_limit_reached"


def test_release_gives_use_back(db):
    coupon_service.apply(db, "lite_check", "FIRST500")
    db.commit()
    coupon_service.release(db, "first500")
    db.commit()
    assert coupon_service.get_usage_count(db, "FIRST500") == 0


def test_rollback_returns_claim(db):
    coupon_service.apply(db, "lite_check", "FIRST500")
    db.rollback()
    assert coupon_service.get_usage_count(db, "FIRST500") == 0


def test_concurrent_applies_stop_at_cap(tmp_path):
    """Twenty-five parallel checkouts against the last ten FIRST500 uses."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'coupon_race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    setup = Session()
    setup.add(CouponUsage(code="FIRST500", uses=490))
    setup.commit()
    setup.close()

    def worker(user_id):
        session = Session()
        try:
            result = coupon_service.apply(session, "lite_check", "FIRST500", user_id=user_id)
            session.commit()
            return "applied" if result.applied else result.reason
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(worker, range(25)))

    assert outcomes.count("applied") == 10
    assert outcomes.count("usage_limit_reached") == 15

    check = Session()
    assert coupon_service.get_usage_count(check, "FIRST500") == 500
    check.close()
    engine.dispose()
