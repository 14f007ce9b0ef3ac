"""
Unit tests for the wallet ledger.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.exceptions import ValidationError
from app.db.base import Base
from app.db.models.payment_transaction import PaymentTransaction
from app.db.models.user import User
from app.db.models.wallet_transaction import WalletTransaction
from app.services import wallet_service


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
    user = User(full_name="Wallet User", email="wallet@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def purchase(db, test_user):
    tx = PaymentTransaction(user_id=test_user.id, plan_id="lite_check", status="pending", amount=9900, final_amount=9900)
    db.add(tx)
    db.commit()
    db.refresh(tx)
    return tx


def test_balance_sums_completed_only(db, test_user):
    wallet_service.record(db, test_user.id, 5000)
    wallet_service.record(db, test_user.id, 2000, status="pending")
    wallet_service.record(db, test_user.id, -1000, status="failed")
    wallet_service.record(db, test_user.id, -500)
    db.commit()

    assert wallet_service.get_balance(db, test_user.id) == 4500


def test_empty_wallet(db, test_user):
    assert wallet_service.get_balance(db, test_user.id) == 0
    assert wallet_service.reserve(db, test_user.id, 1000) == 0
    assert db.query(WalletTransaction).count() == 0


def test_reserve_clamps_to_balance(db, test_user, purchase):
    wallet_service.record(db, test_user.id, 3000)
    db.commit()

    reserved = wallet_service.reserve(db, test_user.id, 9900, purchase.id)
    db.commit()

    assert reserved == 3000
    assert wallet_service.get_available_balance(db, test_user.id) == 0
    # A hold is not a debit until settled
    assert wallet_service.get_balance(db, test_user.id) == 3000


def test_reserve_never_exceeds_request(db, test_user, purchase):
    wallet_service.record(db, test_user.id, 50000)
    db.commit()

    assert wallet_service.reserve(db, test_user.id, 9900, purchase.id) == 9900
    assert wallet_service.reserve(db, test_user.id, 0) == 0
    assert wallet_service.reserve(db, test_user.id, -5) == 0


def test_second_hold_sees_first(db, test_user, purchase):
    wallet_service.record(db, test_user.id, 10000)
    db.commit()

    assert wallet_service.reserve(db, test_user.id, 7000, purchase.id) == 7000
    assert wallet_service.reserve(db, test_user.id, 7000) == 3000


def test_settle_lowers_balance_by_reserved_amount(db, test_user, purchase):
    wallet_service.record(db, test_user.id, 20000)
    db.commit()
    before = wallet_service.get_balance(db, test_user.id)

    reserved = wallet_service.reserve(db, test_user.id, 9900, purchase.id)
    assert wallet_service.settle_reservation(db, purchase.id) == 1
    db.commit()

    assert wallet_service.get_balance(db, test_user.id) == before - reserved
    # Settling twice does nothing
    assert wallet_service.settle_reservation(db, purchase.id) == 0


def test_release_restores_available(db, test_user, purchase):
    wallet_service.record(db, test_user.id, 20000)
    db.commit()

    wallet_service.reserve(db, test_user.id, 9900, purchase.id)
    assert wallet_service.get_available_balance(db, test_user.id) == 10100
    assert wallet_service.release_reservation(db, purchase.id) == 1
    db.commit()

    assert wallet_service.get_balance(db, test_user.id) == 20000
    assert wallet_service.get_available_balance(db, test_user.id) == 20000
    hold = db.query(WalletTransaction).filter(WalletTransaction.payment_transaction_id == purchase.id).one()
    assert hold.status == "failed"
    assert hold.amount == -9900


def test_record_validates(db, test_user):
    with pytest.raises(ValidationError) as exc:
        wallet_service.record(db, test_user.id, 0)
    assert exc.value.reason == "invalid_amount"

    with pytest.raises(ValidationError):
        wallet_service.record(db, test_user.id, 100, status="settled")

    with pytest.raises(ValidationError):
        wallet_service.record(db, test_user.id, 100, type="bonus")


def test_record_infers_type(db, test_user):
    credit = wallet_service.record(db, test_user.id, 100)
    debit = wallet_service.record(db, test_user.id, -100)
    assert credit.type == "credit"
    assert debit.type == "purchase_use"


def test_reserve_for_unknown_user(db):
    with pytest.raises(ValidationError) as exc:
        wallet_service.reserve(db, 999, 100)
    assert exc.value.reason == "unknown_user"


def test_list_transactions_newest_first(db, test_user):
    wallet_service.record(db, test_user.id, 100, ref="first")
    wallet_service.record(db, test_user.id, 200, ref="second")
    db.commit()

    refs = [t.transaction_ref for t in wallet_service.list_transactions(db, test_user.id)]
    assert refs == ["second", "first"]
