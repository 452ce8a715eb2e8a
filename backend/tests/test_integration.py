"""Concurrency tests against a file-backed SQLite database.

SQLite is put in ``BEGIN IMMEDIATE`` mode so each transaction takes the write
lock up front; this stands in for the row locks a PostgreSQL deployment uses.
Every thread gets its own session.
"""
import threading

import pytest
from sqlalchemy import create_engine, event as sa_event
from sqlalchemy.orm import sessionmaker

from app.core.errors import FulfillmentInProgress, TransferOutcomeUnknown
from app.models import Base
from app.models.contribution import Contribution
from app.models.event import Event
from app.models.fulfillment import Fulfillment, STATUS_PROCESSING
from app.models.item import Item
from app.models.payout_account import PayoutAccount
from app.models.user import User
from app.services.contribution_service import apply_confirmed_payment
from app.services.fee_service import FeeCalculator
from app.services.fulfillment_service import create_fulfillment

from conftest import FakePayoutConnector, TEST_ACCOUNT_ID


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @sa_event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @sa_event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def seeded(file_session_factory):
    """Owner with a ready payout account and an item priced at $100.00"""
    db = file_session_factory()
    try:
        owner = User(email="owner@example.com")
        db.add(owner)
        db.flush()
        wish_event = Event(user_id=owner.id, title="Wedding", slug="wedding")
        db.add(wish_event)
        db.flush()
        item = Item(event_id=wish_event.id, title="Espresso machine", price_cents=10000)
        db.add(item)
        db.add(PayoutAccount(
            user_id=owner.id,
            stripe_account_id=TEST_ACCOUNT_ID,
            onboarding_completed=True,
            charges_enabled=True,
            payouts_enabled=True,
            transfers_active=True,
        ))
        db.commit()
        return {"owner_id": owner.id, "event_id": wish_event.id, "item_id": item.id}
    finally:
        db.close()


def run_concurrently(count, target):
    """Start ``count`` threads together and collect (index, result-or-exception)"""
    barrier = threading.Barrier(count)
    results = []
    lock = threading.Lock()

    def worker(index):
        barrier.wait()
        try:
            outcome = target(index)
        except Exception as e:
            outcome = e
        with lock:
            results.append((index, outcome))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


@pytest.mark.critical
class TestConcurrentContributions:
    """Ledger totals under concurrent payment confirmations"""

    def test_distinct_payments_all_applied(self, file_session_factory, seeded):
        def pay(index):
            db = file_session_factory()
            try:
                return apply_confirmed_payment(seeded["item_id"], 1000 + index, f"cs_concurrent_{index}", db=db).is_duplicate
            finally:
                db.close()

        results = run_concurrently(8, pay)
        assert [outcome for _, outcome in results] == [False] * 8

        db = file_session_factory()
        try:
            item = db.query(Item).filter(Item.id == seeded["item_id"]).one()
            assert item.current_amount_cents == sum(1000 + i for i in range(8))
            assert db.query(Contribution).count() == 8
        finally:
            db.close()

    def test_same_payment_delivered_concurrently_applied_once(self, file_session_factory, seeded):
        def pay(index):
            db = file_session_factory()
            try:
                return apply_confirmed_payment(seeded["item_id"], 2500, "cs_same", db=db).is_duplicate
            finally:
                db.close()

        results = run_concurrently(6, pay)
        outcomes = [outcome for _, outcome in results]
        assert outcomes.count(False) == 1
        assert outcomes.count(True) == 5

        db = file_session_factory()
        try:
            item = db.query(Item).filter(Item.id == seeded["item_id"]).one()
            assert item.current_amount_cents == 2500
        finally:
            db.close()


@pytest.mark.critical
class TestConcurrentRedemption:
    """Exactly one payout per funded item under concurrent requests"""

    @pytest.fixture
    def funded(self, file_session_factory, seeded):
        db = file_session_factory()
        try:
            apply_confirmed_payment(seeded["item_id"], 10000, "cs_full", db=db)
        finally:
            db.close()
        return seeded

    @pytest.fixture
    def connector(self):
        connector = FakePayoutConnector()
        connector.set_readiness(TEST_ACCOUNT_ID, ready=True)
        return connector

    def redeem(self, factory, funded, connector, key):
        db = factory()
        try:
            return create_fulfillment(
                funded["item_id"], funded["event_id"], funded["owner_id"], key,
                db=db, connector=connector, fee_calculator=FeeCalculator(5)
            )
        finally:
            db.close()

    def test_distinct_keys_one_winner(self, file_session_factory, funded, connector):
        results = run_concurrently(
            5,
            lambda i: self.redeem(file_session_factory, funded, connector, f"redeem_{funded['item_id']}_thread{i}_abcdefgh")
        )
        outcomes = [outcome for _, outcome in results]
        successes = [o for o in outcomes if isinstance(o, dict)]
        rejections = [o for o in outcomes if isinstance(o, FulfillmentInProgress)]

        assert len(successes) == 1
        assert len(rejections) == 4
        assert successes[0]["status"] == STATUS_PROCESSING
        assert len(connector.transfers_by_key) == 1

        db = file_session_factory()
        try:
            assert db.query(Fulfillment).count() == 1
        finally:
            db.close()

    def test_same_key_one_fulfillment_one_transfer(self, file_session_factory, funded, connector):
        connector.transfer_delay = 0.2
        key = f"redeem_{funded['item_id']}_shared_abcdefghij"
        results = run_concurrently(5, lambda i: self.redeem(file_session_factory, funded, connector, key))
        outcomes = [outcome for _, outcome in results]

        successes = [o for o in outcomes if isinstance(o, dict)]
        in_flight = [o for o in outcomes if isinstance(o, TransferOutcomeUnknown)]

        # Requests overlapping the first provider call are told the outcome is
        # unknown; none of them may fail the reservation
        assert successes, outcomes
        assert len(successes) + len(in_flight) == 5, outcomes
        assert len({o["fulfillment_id"] for o in successes}) == 1
        assert len(connector.transfers_by_key) == 1

        db = file_session_factory()
        try:
            fulfillment = db.query(Fulfillment).one()
            assert fulfillment.status == STATUS_PROCESSING
        finally:
            db.close()
