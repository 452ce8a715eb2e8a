"""Database integrity tests"""
import pytest
from sqlalchemy.exc import IntegrityError

from app.models.contribution import Contribution
from app.models.event import Event
from app.models.fulfillment import Fulfillment, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from app.models.item import Item
from app.models.payout_account import PayoutAccount


def make_fulfillment(item, user_id, key, status=STATUS_PENDING, gross=10000, fee=500, net=9500):
    return Fulfillment(
        item_id=item.id,
        event_id=item.event_id,
        user_id=user_id,
        gross_amount_cents=gross,
        platform_fee_cents=fee,
        net_amount_cents=net,
        idempotency_key=key,
        status=status,
    )


@pytest.mark.medium
class TestModelRelationships:
    """Test model relationships"""

    def test_owner_events_and_items(self, owner, event, item, db_session):
        assert owner.events[0].id == event.id
        assert event.items[0].id == item.id
        assert item.event.owner.id == owner.id

    def test_event_slug_unique(self, owner, event, db_session):
        db_session.add(Event(user_id=owner.id, title="Again", slug=event.slug))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_payout_account_one_per_user(self, owner, payout_account, db_session):
        assert owner.payout_account.stripe_account_id == payout_account.stripe_account_id
        db_session.add(PayoutAccount(user_id=owner.id, stripe_account_id="acct_second"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_fulfillment_transfer_group(self, item, owner, db_session):
        fulfillment = make_fulfillment(item, owner.id, "key_group_0123456789")
        db_session.add(fulfillment)
        db_session.commit()
        assert fulfillment.transfer_group == f"fulfillment_{fulfillment.id}"
        assert fulfillment.is_active


@pytest.mark.high
class TestItemConstraints:
    """Item amounts"""

    def test_price_must_be_positive(self, event, db_session):
        db_session.add(Item(event_id=event.id, title="Free", price_cents=0))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_amount_cannot_go_negative(self, item, db_session):
        item.current_amount_cents = -1
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_eligibility_derived(self, item):
        assert not item.is_redemption_eligible
        item.current_amount_cents = item.price_cents
        assert item.is_redemption_eligible
        item.is_fulfilled = True
        assert not item.is_redemption_eligible
        assert item.remaining_cents == 0


@pytest.mark.critical
class TestContributionConstraints:
    """Contributions are positive and unique per payment reference"""

    def test_reference_unique(self, item, db_session):
        db_session.add(Contribution(item_id=item.id, amount_cents=100, stripe_reference="cs_dup"))
        db_session.commit()
        db_session.add(Contribution(item_id=item.id, amount_cents=100, stripe_reference="cs_dup"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_amount_positive(self, item, db_session):
        db_session.add(Contribution(item_id=item.id, amount_cents=0, stripe_reference="cs_zero"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


@pytest.mark.critical
class TestFulfillmentConstraints:
    """Storage-level guarantees behind the reservation guard"""

    def test_amounts_must_balance(self, item, owner, db_session):
        db_session.add(make_fulfillment(item, owner.id, "key_balance_0123456789", gross=10000, fee=500, net=9000))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_fee_non_negative(self, item, owner, db_session):
        db_session.add(make_fulfillment(item, owner.id, "key_fee_0123456789", gross=100, fee=-1, net=101))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_unknown_status_rejected(self, item, owner, db_session):
        db_session.add(make_fulfillment(item, owner.id, "key_status_0123456789", status="refunded"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_idempotency_key_unique(self, item, owner, db_session):
        db_session.add(make_fulfillment(item, owner.id, "key_same_0123456789", status=STATUS_FAILED))
        db_session.commit()
        db_session.add(make_fulfillment(item, owner.id, "key_same_0123456789", status=STATUS_FAILED))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    @pytest.mark.parametrize("first,second", [
        (STATUS_PENDING, STATUS_PENDING),
        (STATUS_PENDING, STATUS_PROCESSING),
        (STATUS_PROCESSING, STATUS_PROCESSING),
    ])
    def test_one_active_fulfillment_per_item(self, item, owner, db_session, first, second):
        db_session.add(make_fulfillment(item, owner.id, "key_first_0123456789", status=first))
        db_session.commit()
        db_session.add(make_fulfillment(item, owner.id, "key_second_0123456789", status=second))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    @pytest.mark.parametrize("terminal", [STATUS_COMPLETED, STATUS_FAILED])
    def test_terminal_fulfillments_do_not_block(self, item, owner, db_session, terminal):
        db_session.add(make_fulfillment(item, owner.id, "key_old_0123456789", status=terminal))
        db_session.add(make_fulfillment(item, owner.id, "key_older_0123456789", status=terminal))
        db_session.add(make_fulfillment(item, owner.id, "key_new_0123456789", status=STATUS_PENDING))
        db_session.commit()
        assert db_session.query(Fulfillment).filter(Fulfillment.item_id == item.id).count() == 3

    def test_other_items_unaffected(self, item, owner, event, db_session):
        other = Item(event_id=event.id, title="Lamp", price_cents=500)
        db_session.add(other)
        db_session.commit()
        db_session.add(make_fulfillment(item, owner.id, "key_item_a_0123456789"))
        db_session.add(make_fulfillment(other, owner.id, "key_item_b_0123456789", gross=500, fee=25, net=475))
        db_session.commit()
        assert db_session.query(Fulfillment).count() == 2
