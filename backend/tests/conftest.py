"""Shared pytest fixtures for test suite"""
import os
import pytest
import sys
import secrets
import threading
import time
from pathlib import Path
from typing import Dict, Generator, Optional
from unittest.mock import Mock, patch, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis
import stripe as real_stripe

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("PLATFORM_FEE_PERCENTAGE", "5.0")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.db.session import get_db
from app.db import redis as redis_module
from app.core.errors import PayoutAccountInvalid, TransferOutcomeUnknown
from app.models import Base
from app.models.user import User
from app.models.event import Event
from app.models.item import Item
from app.models.payout_account import PayoutAccount
from app.services.fee_service import FeeCalculator, get_fee_calculator
from app.services.payout_service import (
    AccountReadiness, PayoutConnector, TransferInfo, get_payout_connector
)


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_ACCOUNT_ID = "acct_test123"


class FakePayoutConnector(PayoutConnector):
    """In-memory payout provider with Stripe's idempotency semantics.

    A second call with a key whose first call has not returned yet fails the
    way Stripe answers 409 for a concurrent idempotent request.
    """

    def __init__(self, transfer_delay: float = 0):
        self.readiness: Dict[str, AccountReadiness] = {}
        self.invalid_accounts = set()
        self.transfers_by_key: Dict[str, TransferInfo] = {}
        self.transfers_by_group: Dict[str, TransferInfo] = {}
        self.transfer_calls = []
        self.fail_with: Optional[Exception] = None
        self.created_accounts = []
        self.in_flight = set()
        self.transfer_delay = transfer_delay
        self._lock = threading.Lock()

    def set_readiness(self, account_id: str, ready: bool = True, **flags):
        values = {
            "onboarding_completed": ready,
            "charges_enabled": ready,
            "payouts_enabled": ready,
            "transfers_active": ready,
        }
        values.update(flags)
        self.readiness[account_id] = AccountReadiness(account_id=account_id, **values)

    def check_readiness(self, account_id: str) -> AccountReadiness:
        if account_id in self.invalid_accounts:
            raise PayoutAccountInvalid()
        return self.readiness.get(
            account_id,
            AccountReadiness(account_id, False, False, False, False)
        )

    def initiate_transfer(self, account_id, amount_cents, metadata, idempotency_key, transfer_group, description=""):
        with self._lock:
            self.transfer_calls.append({
                "account_id": account_id,
                "amount_cents": amount_cents,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
                "transfer_group": transfer_group,
            })
            if self.fail_with is not None:
                raise self.fail_with
            if idempotency_key in self.transfers_by_key:
                return self.transfers_by_key[idempotency_key].transfer_id
            if idempotency_key in self.in_flight:
                raise TransferOutcomeUnknown()
            self.in_flight.add(idempotency_key)

        try:
            if self.transfer_delay:
                time.sleep(self.transfer_delay)
            with self._lock:
                transfer = TransferInfo(
                    transfer_id=f"tr_test{len(self.transfers_by_key) + 1}",
                    amount_cents=amount_cents,
                    reversed=False,
                    metadata=dict(metadata),
                )
                self.transfers_by_key[idempotency_key] = transfer
                self.transfers_by_group[transfer_group] = transfer
                return transfer.transfer_id
        finally:
            with self._lock:
                self.in_flight.discard(idempotency_key)

    def find_transfer(self, transfer_group: str) -> Optional[TransferInfo]:
        return self.transfers_by_group.get(transfer_group)

    def create_account(self, user_id: int, email: Optional[str] = None) -> str:
        account_id = f"acct_new{user_id}"
        self.created_accounts.append((user_id, email))
        return account_id

    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        return f"https://connect.stripe.com/setup/{account_id}"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def connector() -> FakePayoutConnector:
    return FakePayoutConnector()


@pytest.fixture(scope="function")
def fee_calculator() -> FeeCalculator:
    return FeeCalculator(5)


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, connector, fee_calculator) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and fake payout provider"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payout_connector] = lambda: connector
    app.dependency_overrides[get_fee_calculator] = lambda: fee_calculator

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch('app.main.initialize_otel', return_value=False):
            with patch('app.main.instrument_sqlalchemy'):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def login_as(client: TestClient, mock_redis):
    """Attach a session cookie for a user to the client; returns the session id"""
    def _login(user: User) -> str:
        session_id = secrets.token_urlsafe(32)
        mock_redis.setex(f"session:{session_id}", 2592000, str(user.id))
        client.cookies.set("session_id", session_id)
        return session_id
    return _login


@pytest.fixture(scope="function")
def owner(db_session: Session) -> User:
    """Event owner"""
    user = User(email="owner@example.com", display_name="Owner")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def other_user(db_session: Session) -> User:
    """A second user who owns nothing"""
    user = User(email="guest@example.com", display_name="Guest")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def event(db_session: Session, owner: User) -> Event:
    event = Event(user_id=owner.id, title="Birthday", slug="birthday")
    db_session.add(event)
    db_session.commit()
    db_session.refresh(event)
    return event


@pytest.fixture(scope="function")
def item(db_session: Session, event: Event) -> Item:
    """Unfunded item priced at $100.00"""
    item = Item(event_id=event.id, title="Bike", price_cents=10000)
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture(scope="function")
def funded_item(db_session: Session, item: Item) -> Item:
    """Item funded exactly to its price"""
    item.current_amount_cents = item.price_cents
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture(scope="function")
def payout_account(db_session: Session, owner: User, connector: FakePayoutConnector) -> PayoutAccount:
    """Owner's connected account, ready at the provider"""
    account = PayoutAccount(
        user_id=owner.id,
        stripe_account_id=TEST_ACCOUNT_ID,
        onboarding_completed=True,
        charges_enabled=True,
        payouts_enabled=True,
        transfers_active=True,
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    connector.set_readiness(TEST_ACCOUNT_ID, ready=True)
    return account


@pytest.fixture(scope="function")
def owner_client(client: TestClient, login_as, owner: User) -> TestClient:
    """Client authenticated as the event owner"""
    login_as(owner)
    return client


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the real API"""
    mock_stripe_module = MagicMock()

    # Real exception classes so `except stripe.XxxError` keeps working
    mock_stripe_module.StripeError = real_stripe.StripeError
    mock_stripe_module.InvalidRequestError = real_stripe.InvalidRequestError
    mock_stripe_module.PermissionError = real_stripe.PermissionError
    mock_stripe_module.APIConnectionError = real_stripe.APIConnectionError
    mock_stripe_module.APIError = real_stripe.APIError
    mock_stripe_module.IdempotencyError = real_stripe.IdempotencyError
    mock_stripe_module.CardError = real_stripe.CardError
    mock_stripe_module.SignatureVerificationError = real_stripe.SignatureVerificationError

    # Checkout
    mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
        id="cs_test123",
        url="https://checkout.stripe.com/test"
    ))

    # Connect
    mock_stripe_module.Account.create = Mock(return_value={"id": "acct_created123"})
    mock_stripe_module.AccountLink.create = Mock(return_value={"url": "https://connect.stripe.com/setup/test"})
    mock_stripe_module.Transfer.create = Mock(return_value={"id": "tr_created123"})
    mock_stripe_module.Transfer.list = Mock(return_value={"data": []})

    # Webhook
    mock_stripe_module.Webhook.construct_event = Mock(return_value={
        "id": "evt_test123",
        "type": "ping",
        "data": {"object": {}}
    })

    with patch('app.services.stripe_service.stripe', mock_stripe_module):
        with patch('app.services.payout_service.stripe', mock_stripe_module):
            yield mock_stripe_module
