"""Fulfillment reservation guard and atomic status transitions.

Every write to a fulfillment's status, and to an item's fulfilled flag, goes
through this module. Each function is one transaction: the rows it depends on
are locked (``SELECT ... FOR UPDATE``), the checks run, the change commits or
nothing does. The partial unique index on active fulfillments per item backs
the guard at the storage level.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import (
    ItemNotFound, Forbidden, AlreadyFulfilled, InsufficientFunding,
    FulfillmentInProgress, DuplicateIdempotencyKey, FulfillmentNotFound,
    InvalidTransition
)
from app.core.metrics import fulfillments_counter
from app.models.event import Event
from app.models.fulfillment import (
    Fulfillment, ACTIVE_STATUSES, STATUS_PENDING, STATUS_PROCESSING,
    STATUS_COMPLETED, STATUS_FAILED
)
from app.models.item import Item
from app.services.fee_service import FeeCalculator, get_fee_calculator

logger = logging.getLogger(__name__)
payout_logger = logging.getLogger("payout")


def find_by_idempotency_key(idempotency_key: str, db: Session) -> Optional[Fulfillment]:
    return db.query(Fulfillment).filter(Fulfillment.idempotency_key == idempotency_key).first()


def _find_active(item_id: int, db: Session) -> Optional[Fulfillment]:
    return db.query(Fulfillment).filter(
        Fulfillment.item_id == item_id,
        Fulfillment.status.in_(ACTIVE_STATUSES)
    ).first()


def _load_owned_item(item_id: int, event_id: int, user_id: int, db: Session, lock: bool) -> Item:
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise ItemNotFound(f"Event {event_id} not found")
    if event.user_id != user_id:
        raise Forbidden("Event not found or you do not have permission")

    query = db.query(Item).filter(Item.id == item_id, Item.event_id == event_id)
    if lock:
        query = query.with_for_update()
    item = query.first()
    if not item:
        raise ItemNotFound(f"Item {item_id} not found in event {event_id}")
    return item


def _assert_redeemable(item: Item, db: Session) -> None:
    if item.is_fulfilled:
        raise AlreadyFulfilled()
    if item.current_amount_cents < item.price_cents:
        raise InsufficientFunding(current=item.current_amount_cents, required=item.price_cents)
    if _find_active(item.id, db):
        raise FulfillmentInProgress()


def check_eligibility(item_id: int, event_id: int, user_id: int, db: Session) -> Item:
    """Unlocked pre-check with the same rules as ``reserve``; raises the same errors"""
    try:
        item = _load_owned_item(item_id, event_id, user_id, db, lock=False)
        _assert_redeemable(item, db)
    except Exception:
        db.rollback()
        raise
    return item


def reserve(
    item_id: int,
    event_id: int,
    user_id: int,
    idempotency_key: str,
    fulfillment_method: str = "bank_transfer",
    notes: str = "",
    fee_calculator: Optional[FeeCalculator] = None,
    db: Session = None
) -> Fulfillment:
    """
    Atomically decide whether a new fulfillment may be created for an item
    and, if so, insert it as ``pending``.

    Checks, in order, inside one transaction holding the item row lock:
    item/event resolve and the caller owns the event; the idempotency key is
    unused; the item is not fulfilled; it is fully funded; no fulfillment is
    active for it. The gross amount is the funded amount at this instant.

    Raises:
        ItemNotFound, Forbidden, DuplicateIdempotencyKey, AlreadyFulfilled,
        InsufficientFunding, FulfillmentInProgress
    """
    fee_calculator = fee_calculator or get_fee_calculator()

    try:
        item = _load_owned_item(item_id, event_id, user_id, db, lock=True)

        # A retried request must get its original fulfillment back, whatever
        # state the item has reached since
        existing = find_by_idempotency_key(idempotency_key, db)
        if existing:
            raise DuplicateIdempotencyKey(existing.id)

        _assert_redeemable(item, db)

        breakdown = fee_calculator.calculate(item.current_amount_cents)
        fulfillment = Fulfillment(
            item_id=item_id,
            event_id=event_id,
            user_id=user_id,
            gross_amount_cents=breakdown.gross,
            platform_fee_cents=breakdown.fee,
            net_amount_cents=breakdown.net,
            fulfillment_method=fulfillment_method,
            notes=notes,
            idempotency_key=idempotency_key,
            status=STATUS_PENDING,
        )
        db.add(fulfillment)
        db.commit()
    except IntegrityError:
        # Lost a race the locks did not cover; the storage constraints decide
        db.rollback()
        existing = find_by_idempotency_key(idempotency_key, db)
        if existing:
            raise DuplicateIdempotencyKey(existing.id)
        if _find_active(item_id, db):
            raise FulfillmentInProgress()
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(fulfillment)
    fulfillments_counter.labels(status=STATUS_PENDING).inc()
    payout_logger.info(
        f"Fulfillment {fulfillment.id} reserved for item {item_id} by user {user_id}: "
        f"gross={breakdown.gross} fee={breakdown.fee} net={breakdown.net}"
    )
    return fulfillment


def _lock_fulfillment(fulfillment_id: int, db: Session) -> Fulfillment:
    fulfillment = db.query(Fulfillment).filter(
        Fulfillment.id == fulfillment_id
    ).with_for_update().populate_existing().first()
    if not fulfillment:
        db.rollback()
        raise FulfillmentNotFound(f"Fulfillment {fulfillment_id} not found")
    return fulfillment


def record_transfer_attempt(fulfillment_id: int, stripe_account_id: str, db: Session) -> Fulfillment:
    """Stamp a pending fulfillment just before the provider is asked to transfer"""
    fulfillment = _lock_fulfillment(fulfillment_id, db)
    if fulfillment.status != STATUS_PENDING:
        db.rollback()
        raise InvalidTransition(f"Fulfillment {fulfillment_id} is {fulfillment.status}, not pending")
    fulfillment.stripe_account_id = stripe_account_id
    fulfillment.transfer_attempted_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(fulfillment)
    return fulfillment


def mark_processing(fulfillment_id: int, transfer_id: str, db: Session) -> Fulfillment:
    """pending -> processing, storing the provider transfer reference"""
    fulfillment = _lock_fulfillment(fulfillment_id, db)

    if fulfillment.status == STATUS_PROCESSING and fulfillment.stripe_transfer_id == transfer_id:
        db.rollback()
        return fulfillment
    if not fulfillment.can_transition_to(STATUS_PROCESSING):
        db.rollback()
        raise InvalidTransition(
            f"Fulfillment {fulfillment_id} cannot move from {fulfillment.status} to {STATUS_PROCESSING}"
        )

    fulfillment.status = STATUS_PROCESSING
    fulfillment.stripe_transfer_id = transfer_id
    fulfillment.processing_started_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(fulfillment)

    fulfillments_counter.labels(status=STATUS_PROCESSING).inc()
    payout_logger.info(f"Fulfillment {fulfillment_id} processing (transfer {transfer_id})")
    return fulfillment


def fail_fulfillment(fulfillment_id: int, error_code: str, error_message: str, db: Session) -> Fulfillment:
    """pending/processing -> failed, recording the provider's code and message.

    Failing an already failed fulfillment is a no-op so provider events can
    be replayed.
    """
    fulfillment = _lock_fulfillment(fulfillment_id, db)

    if fulfillment.status == STATUS_FAILED:
        db.rollback()
        return fulfillment
    if not fulfillment.can_transition_to(STATUS_FAILED):
        db.rollback()
        raise InvalidTransition(
            f"Fulfillment {fulfillment_id} cannot move from {fulfillment.status} to {STATUS_FAILED}"
        )

    return _mark_failed(fulfillment, error_code, error_message, db)


def abandon_reservation(fulfillment_id: int, error_code: str, error_message: str, db: Session) -> Fulfillment:
    """Fail a pending fulfillment that never reached the provider.

    Raises InvalidTransition once a transfer attempt has been stamped, since
    a transfer may exist from then on.
    """
    fulfillment = _lock_fulfillment(fulfillment_id, db)
    if fulfillment.status != STATUS_PENDING or fulfillment.transfer_attempted_at is not None:
        db.rollback()
        raise InvalidTransition(f"Fulfillment {fulfillment_id} is no longer an unattempted reservation")
    return _mark_failed(fulfillment, error_code, error_message, db)


def _mark_failed(fulfillment: Fulfillment, error_code: str, error_message: str, db: Session) -> Fulfillment:
    fulfillment.status = STATUS_FAILED
    fulfillment.error_code = (error_code or "unknown")[:100]
    fulfillment.error_message = error_message
    fulfillment.failed_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(fulfillment)

    fulfillments_counter.labels(status=STATUS_FAILED).inc()
    payout_logger.warning(f"Fulfillment {fulfillment.id} failed: [{fulfillment.error_code}] {error_message}")
    return fulfillment


def complete_fulfillment(fulfillment_id: int, db: Session, transfer_id: Optional[str] = None) -> Fulfillment:
    """processing -> completed and mark the item fulfilled, in one commit.

    A pending fulfillment whose transfer reference arrives with the
    settlement (the initiating call lost its response) passes through
    processing in the same transaction. Completing twice is a no-op.
    """
    fulfillment = _lock_fulfillment(fulfillment_id, db)

    if fulfillment.status == STATUS_COMPLETED:
        db.rollback()
        return fulfillment

    now = datetime.now(timezone.utc)
    if fulfillment.status == STATUS_PENDING and transfer_id:
        fulfillment.status = STATUS_PROCESSING
        fulfillment.stripe_transfer_id = transfer_id
        fulfillment.processing_started_at = now

    if not fulfillment.can_transition_to(STATUS_COMPLETED):
        db.rollback()
        raise InvalidTransition(
            f"Fulfillment {fulfillment_id} cannot move from {fulfillment.status} to {STATUS_COMPLETED}"
        )

    item = db.query(Item).filter(Item.id == fulfillment.item_id).with_for_update().first()
    if item.is_fulfilled:
        db.rollback()
        logger.error(f"Item {item.id} already fulfilled while completing fulfillment {fulfillment_id}")
        raise AlreadyFulfilled(f"Item {item.id} already fulfilled by another fulfillment")

    fulfillment.status = STATUS_COMPLETED
    fulfillment.completed_at = now
    if transfer_id and not fulfillment.stripe_transfer_id:
        fulfillment.stripe_transfer_id = transfer_id
    item.is_fulfilled = True
    item.fulfilled_at = now
    db.commit()
    db.refresh(fulfillment)

    fulfillments_counter.labels(status=STATUS_COMPLETED).inc()
    payout_logger.info(f"Fulfillment {fulfillment_id} completed; item {item.id} fulfilled")
    return fulfillment
