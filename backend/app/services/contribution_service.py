"""Contribution ledger - applies confirmed payments to an item's funded amount"""
import logging
from typing import NamedTuple, Optional, Dict, Any, List

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ItemNotFound, InvalidAmount, ValidationFailed, Forbidden
from app.core.metrics import contributions_applied_counter, contributions_duplicate_counter
from app.models.contribution import Contribution
from app.models.item import Item

logger = logging.getLogger(__name__)
ledger_logger = logging.getLogger("ledger")


class LedgerResult(NamedTuple):
    contribution: Contribution
    new_amount_cents: int
    is_duplicate: bool


def _validate_payment(amount_cents: Any, external_reference: Optional[str]) -> None:
    # bool is an int subclass; True must not count as one cent
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount(f"Invalid contribution amount: {amount_cents!r}")
    if not external_reference or not str(external_reference).strip():
        raise ValidationFailed("External payment reference is required")


def _replayed(external_reference: str, db: Session) -> Optional[LedgerResult]:
    existing = db.query(Contribution).filter(
        Contribution.stripe_reference == external_reference
    ).first()
    if not existing:
        return None
    item = db.query(Item).filter(Item.id == existing.item_id).first()
    contributions_duplicate_counter.inc()
    ledger_logger.info(
        f"Duplicate payment confirmation ignored: reference={external_reference} "
        f"item={existing.item_id} amount={existing.amount_cents}"
    )
    return LedgerResult(existing, item.current_amount_cents if item else 0, True)


def apply_confirmed_payment(
    item_id: int,
    amount_cents: int,
    external_reference: str,
    contributor_name: Optional[str] = None,
    contributor_email: Optional[str] = None,
    db: Session = None
) -> LedgerResult:
    """
    Record a verified payment and raise the item's funded amount.

    Replay-safe: the external reference is unique in storage, so a payment
    delivered more than once is applied exactly once. The contribution insert
    and the amount increment commit together.

    Args:
        item_id: Item receiving the contribution
        amount_cents: Verified payment amount (positive integer)
        external_reference: Provider payment reference (e.g. checkout session id)
        contributor_name: Display name shown on the event page
        contributor_email: Optional contributor email
        db: Database session

    Returns:
        LedgerResult with the stored contribution, the item's amount after
        applying it, and whether this delivery was a replay

    Raises:
        InvalidAmount: amount is not a positive integer
        ValidationFailed: reference is empty
        ItemNotFound: item does not exist
    """
    _validate_payment(amount_cents, external_reference)

    replay = _replayed(external_reference, db)
    if replay:
        return replay

    # Lock the item row so concurrent deliveries for the same item serialize
    item = db.query(Item).filter(Item.id == item_id).with_for_update().first()
    if not item:
        db.rollback()
        raise ItemNotFound(f"Item {item_id} not found")

    contribution = Contribution(
        item_id=item_id,
        amount_cents=amount_cents,
        stripe_reference=external_reference,
        contributor_name=(contributor_name or "").strip()[:255],
        contributor_email=contributor_email or None,
    )
    try:
        db.add(contribution)
        db.flush()
        db.execute(
            update(Item)
            .where(Item.id == item_id)
            .values(current_amount_cents=Item.current_amount_cents + amount_cents)
        )
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same reference won the insert
        db.rollback()
        replay = _replayed(external_reference, db)
        if replay:
            return replay
        raise

    db.refresh(item)
    contributions_applied_counter.inc()

    if item.is_fulfilled:
        ledger_logger.warning(
            f"Contribution {contribution.id} applied to already fulfilled item {item_id}"
        )
    ledger_logger.info(
        f"Contribution applied: item={item_id} amount={amount_cents} reference={external_reference} "
        f"(total: {item.current_amount_cents}/{item.price_cents})"
    )
    return LedgerResult(contribution, item.current_amount_cents, False)


def get_item_funding(item_id: int, db: Session) -> Dict[str, Any]:
    """Funding summary for an item; eligibility is derived, never stored"""
    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise ItemNotFound(f"Item {item_id} not found")

    contribution_count = db.query(Contribution).filter(Contribution.item_id == item_id).count()
    return {
        "item_id": item.id,
        "price_cents": item.price_cents,
        "current_amount_cents": item.current_amount_cents,
        "remaining_cents": item.remaining_cents,
        "is_fulfilled": item.is_fulfilled,
        "redemption_eligible": item.is_redemption_eligible,
        "contribution_count": contribution_count,
    }


def get_item_contributions(item_id: int, user_id: int, limit: int, db: Session) -> List[Dict[str, Any]]:
    """Most recent contributions for an item; visible to the event owner only"""
    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise ItemNotFound(f"Item {item_id} not found")
    if item.event.user_id != user_id:
        raise Forbidden("You do not have permission to view these contributions")

    limit = min(max(limit, 1), 100)
    contributions = db.query(Contribution).filter(
        Contribution.item_id == item_id
    ).order_by(Contribution.confirmed_at.desc()).limit(limit).all()

    return [
        {
            'id': c.id,
            'amount_cents': c.amount_cents,
            'contributor_name': c.contributor_name,
            'confirmed_at': c.confirmed_at.isoformat() if c.confirmed_at else None,
        }
        for c in contributions
    ]
