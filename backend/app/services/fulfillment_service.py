"""Fulfillment orchestrator - turns a fully funded item into one payout.

Flow for a redemption request:
  1. pre-check eligibility and the owner's payout account readiness
  2. reserve a ``pending`` fulfillment (reservation_service.reserve)
  3. request the transfer and move to ``processing`` (or ``failed``)

The reservation commits before any provider call, so no database lock is
held while Stripe is slow. A retry with the same idempotency key returns the
original fulfillment, resuming it if it is still ``pending``.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    DuplicateIdempotencyKey, FulfillmentNotFound, FundingError, ItemNotFound, Forbidden, InvalidTransition,
    PayoutSetupRequired, TransferRejected, TransferOutcomeUnknown, ValidationFailed
)
from app.core.metrics import fulfillment_rejections_counter, transfer_failures_counter
from app.core.otel import get_tracer
from app.models.event import Event
from app.models.fulfillment import Fulfillment, ALL_STATUSES, STATUS_FAILED, STATUS_PENDING
from app.models.item import Item
from app.models.payout_account import PayoutAccount
from app.services.fee_service import FeeCalculator, get_fee_calculator
from app.services.payout_service import PayoutConnector, get_payout_connector
from app.services.reservation_service import (
    check_eligibility, find_by_idempotency_key, reserve,
    record_transfer_attempt, mark_processing, fail_fulfillment
)
from app.services.payout_account_service import apply_readiness
from app.utils.validation import validate_idempotency_key, sanitize_string

logger = logging.getLogger(__name__)
payout_logger = logging.getLogger("payout")
tracer = get_tracer(__name__)

FULFILLMENT_METHODS = ("bank_transfer",)


def get_estimated_arrival(today: Optional[date] = None) -> str:
    """Fixed offset from today (YYYY-MM-DD); weekends and holidays are ignored"""
    today = today or datetime.now(timezone.utc).date()
    return (today + timedelta(days=settings.ESTIMATED_ARRIVAL_DAYS)).isoformat()


def serialize_fulfillment(fulfillment: Fulfillment) -> Dict[str, Any]:
    """Fulfillment record as returned by the history and detail endpoints"""
    item = fulfillment.item
    event = fulfillment.event
    return {
        "id": fulfillment.id,
        "item": {
            "id": item.id if item else fulfillment.item_id,
            "title": item.title if item else "Unknown Item",
            "image_url": item.image_url if item else None,
        },
        "event": {
            "id": event.id if event else fulfillment.event_id,
            "title": event.title if event else "Unknown Event",
        },
        "fulfillment_method": fulfillment.fulfillment_method,
        "status": fulfillment.status,
        "gross_amount_cents": fulfillment.gross_amount_cents,
        "platform_fee_cents": fulfillment.platform_fee_cents,
        "net_amount_cents": fulfillment.net_amount_cents,
        "stripe_transfer_id": fulfillment.stripe_transfer_id,
        "error_code": fulfillment.error_code,
        "error_message": fulfillment.error_message,
        "requested_at": fulfillment.requested_at.isoformat() if fulfillment.requested_at else None,
        "processing_started_at": fulfillment.processing_started_at.isoformat() if fulfillment.processing_started_at else None,
        "completed_at": fulfillment.completed_at.isoformat() if fulfillment.completed_at else None,
        "failed_at": fulfillment.failed_at.isoformat() if fulfillment.failed_at else None,
    }


def build_redemption_response(fulfillment: Fulfillment) -> Dict[str, Any]:
    """Payload for a redemption request; a failed retry carries its stored error"""
    response = {
        "fulfillment_id": fulfillment.id,
        "status": fulfillment.status,
        "gross_amount_cents": fulfillment.gross_amount_cents,
        "platform_fee_cents": fulfillment.platform_fee_cents,
        "net_amount_cents": fulfillment.net_amount_cents,
        "transfer_reference": fulfillment.stripe_transfer_id,
        "estimated_arrival_date": get_estimated_arrival(),
        "item": {"id": fulfillment.item.id, "title": fulfillment.item.title},
        "event": {"id": fulfillment.event.id, "title": fulfillment.event.title},
    }
    if fulfillment.status == STATUS_FAILED:
        response["error_code"] = fulfillment.error_code
        response["error_message"] = fulfillment.error_message
    return response


def _existing_for_retry(
    idempotency_key: str, item_id: int, event_id: int, user_id: int, db: Session
) -> Optional[Fulfillment]:
    existing = find_by_idempotency_key(idempotency_key, db)
    if not existing:
        return None
    if (
        existing.user_id != user_id
        or existing.item_id != item_id
        or existing.event_id != event_id
    ):
        # Same key, different request: not a retry
        raise DuplicateIdempotencyKey(existing.id)
    payout_logger.info(f"Idempotent retry for fulfillment {existing.id} (status={existing.status})")
    return existing


def _ensure_payout_ready(user_id: int, connector: PayoutConnector, db: Session) -> PayoutAccount:
    account = db.query(PayoutAccount).filter(PayoutAccount.user_id == user_id).first()
    if not account:
        raise PayoutSetupRequired("Please connect your bank account first", action="onboard")

    readiness = connector.check_readiness(account.stripe_account_id)
    if apply_readiness(account, readiness):
        db.commit()

    if not readiness.is_ready:
        verified = readiness.onboarding_completed and readiness.charges_enabled and readiness.payouts_enabled
        if verified:
            message = "Transfers not enabled on your account"
        else:
            message = "Bank account not yet verified. Please complete onboarding."
        raise PayoutSetupRequired(message, action=readiness.action)
    return account


def _initiate(fulfillment: Fulfillment, account: PayoutAccount, connector: PayoutConnector, db: Session) -> Fulfillment:
    fulfillment = record_transfer_attempt(fulfillment.id, account.stripe_account_id, db)
    item = fulfillment.item
    event = fulfillment.event

    metadata = {
        "fulfillment_id": str(fulfillment.id),
        "item_id": str(fulfillment.item_id),
        "event_id": str(fulfillment.event_id),
        "user_id": str(fulfillment.user_id),
        "item_title": item.title,
        "event_title": event.title,
    }

    with tracer.start_as_current_span("payout.initiate_transfer") as span:
        span.set_attribute("fulfillment.id", fulfillment.id)
        span.set_attribute("fulfillment.net_amount_cents", fulfillment.net_amount_cents)
        try:
            transfer_id = connector.initiate_transfer(
                account.stripe_account_id,
                fulfillment.net_amount_cents,
                metadata,
                idempotency_key=fulfillment.idempotency_key,
                transfer_group=fulfillment.transfer_group,
                description=f'Fulfillment for "{item.title}" - {event.title}',
            )
        except TransferRejected as e:
            transfer_failures_counter.labels(code=e.provider_code).inc()
            fail_fulfillment(fulfillment.id, e.provider_code, e.provider_message, db)
            raise
        except TransferOutcomeUnknown:
            # Left pending: reconciliation or a same-key retry settles it
            payout_logger.error(f"Transfer outcome unknown for fulfillment {fulfillment.id}")
            raise

    return mark_processing(fulfillment.id, transfer_id, db)


def create_fulfillment(
    item_id: int,
    event_id: int,
    user_id: int,
    idempotency_key: str,
    fulfillment_method: str = "bank_transfer",
    notes: str = "",
    db: Session = None,
    connector: Optional[PayoutConnector] = None,
    fee_calculator: Optional[FeeCalculator] = None
) -> Dict[str, Any]:
    """
    Redeem a fully funded item to the owner's connected payout account.

    Args:
        item_id: Item to redeem
        event_id: Event the item belongs to
        user_id: Authenticated requester (must own the event)
        idempotency_key: Client token; a retry with it never creates a second record
        fulfillment_method: Method tag (only 'bank_transfer' is supported)
        notes: Free text, trimmed to FULFILLMENT_NOTE_MAX_LENGTH
        db: Database session
        connector: Payout provider (defaults to Stripe)
        fee_calculator: Fee calculator (defaults to configured rate)

    Returns:
        Redemption response dict with the gross/fee/net breakdown

    Raises:
        FundingError subclasses; see app.core.errors
    """
    connector = connector or get_payout_connector()
    fee_calculator = fee_calculator or get_fee_calculator()

    validate_idempotency_key(idempotency_key, user_id, item_id)
    if fulfillment_method not in FULFILLMENT_METHODS:
        raise ValidationFailed(f"Unsupported fulfillment method: {fulfillment_method}")
    notes = sanitize_string(notes, settings.FULFILLMENT_NOTE_MAX_LENGTH)

    try:
        fulfillment = _existing_for_retry(idempotency_key, item_id, event_id, user_id, db)
        if fulfillment is not None and fulfillment.status != STATUS_PENDING:
            return build_redemption_response(fulfillment)

        if fulfillment is None:
            # Readiness is checked before reserving so an owner who still has
            # to onboard is not left holding an active fulfillment
            check_eligibility(item_id, event_id, user_id, db)
            account = _ensure_payout_ready(user_id, connector, db)
            try:
                fulfillment = reserve(
                    item_id, event_id, user_id, idempotency_key,
                    fulfillment_method=fulfillment_method,
                    notes=notes,
                    fee_calculator=fee_calculator,
                    db=db
                )
            except DuplicateIdempotencyKey:
                # Concurrent request with the same key won the insert
                fulfillment = _existing_for_retry(idempotency_key, item_id, event_id, user_id, db)
                if fulfillment.status != STATUS_PENDING:
                    return build_redemption_response(fulfillment)
        else:
            # If this raises, a row never sent to the provider stays pending
            # until reconciliation abandons it once stale
            account = _ensure_payout_ready(user_id, connector, db)
    except FundingError as e:
        fulfillment_rejections_counter.labels(code=e.code).inc()
        raise

    # Reservation committed; from here on no row lock is held across provider calls
    try:
        fulfillment = _initiate(fulfillment, account, connector, db)
    except InvalidTransition:
        # A concurrent request with the same key moved it on first
        fulfillment = find_by_idempotency_key(idempotency_key, db)
        payout_logger.info(f"Fulfillment {fulfillment.id} settled concurrently (status={fulfillment.status})")
    return build_redemption_response(fulfillment)


def preview_fulfillment(
    item_id: int,
    user_id: int,
    db: Session,
    fee_calculator: Optional[FeeCalculator] = None
) -> Dict[str, Any]:
    """Eligibility and fee breakdown as the redemption would compute it now"""
    fee_calculator = fee_calculator or get_fee_calculator()

    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise ItemNotFound(f"Item {item_id} not found")
    event = db.query(Event).filter(Event.id == item.event_id).first()
    if not event or event.user_id != user_id:
        raise Forbidden("Event not found or you do not have permission")

    breakdown = fee_calculator.calculate(item.current_amount_cents)
    return {
        "item_id": item.id,
        "event_id": item.event_id,
        "price_cents": item.price_cents,
        "current_amount_cents": item.current_amount_cents,
        "remaining_cents": item.remaining_cents,
        "is_fulfilled": item.is_fulfilled,
        "redemption_eligible": item.is_redemption_eligible,
        "fee_rate_percent": float(fee_calculator.rate_percent),
        **breakdown.to_dict(),
        "estimated_arrival_date": get_estimated_arrival(),
    }


def get_fulfillment(fulfillment_id: int, user_id: int, db: Session) -> Dict[str, Any]:
    fulfillment = db.query(Fulfillment).filter(
        Fulfillment.id == fulfillment_id,
        Fulfillment.user_id == user_id
    ).first()
    if not fulfillment:
        raise FulfillmentNotFound()
    return serialize_fulfillment(fulfillment)


def list_fulfillments(
    user_id: int,
    db: Session,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0
) -> Dict[str, Any]:
    """Fulfillment history for a user, newest first"""
    if status and status not in ALL_STATUSES:
        raise ValidationFailed(f"Unknown status filter: {status}")
    safe_limit = min(max(limit, 1), 100)
    safe_offset = max(offset, 0)

    query = db.query(Fulfillment).filter(Fulfillment.user_id == user_id)
    if status:
        query = query.filter(Fulfillment.status == status)

    total = query.count()
    fulfillments = query.order_by(
        Fulfillment.requested_at.desc(), Fulfillment.id.desc()
    ).offset(safe_offset).limit(safe_limit).all()

    return {
        "fulfillments": [serialize_fulfillment(f) for f in fulfillments],
        "pagination": {
            "total": total,
            "limit": safe_limit,
            "offset": safe_offset,
            "hasMore": safe_offset + safe_limit < total,
        },
    }
