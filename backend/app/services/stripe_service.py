import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings, PAYOUT_CURRENCY
from app.core.errors import AlreadyFulfilled, FundingError, ItemNotFound
from app.core.metrics import webhook_events_counter
from app.models.event import Event
from app.models.fulfillment import Fulfillment
from app.models.item import Item
from app.models.stripe_event import StripeEvent
from app.services.contribution_service import apply_confirmed_payment
from app.services.payout_account_service import handle_account_updated
from app.services.reservation_service import complete_fulfillment, fail_fulfillment
from app.utils.stripe_objects import get_stripe_value, get_metadata
from app.utils.validation import validate_amount, sanitize_string, is_valid_email

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY

# Decline codes mapped to contributor-facing messages
DECLINE_MESSAGES = {
    'card_declined': 'Your card was declined. Please contact your card issuer or try a different payment method.',
    'insufficient_funds': 'Insufficient funds in your account. Please use a different payment method or contact your bank.',
    'expired_card': 'Your card has expired. Please update your payment information and try again.',
    'incorrect_cvc': 'The CVV code entered is incorrect. Please verify and try again.',
    'incorrect_zip': 'The ZIP code entered is incorrect. Please verify and try again.',
    'generic_decline': 'Your bank has rejected the transaction. Please contact your bank for more details or try a different payment method.',
}
GENERIC_PAYMENT_FAILURE = 'Payment failed. Please try again or contact support if the problem persists.'

# ============================================================================
# CONTRIBUTION CHECKOUT
# ============================================================================

def create_contribution_checkout(
    item_id: int,
    amount_cents: int,
    contributor_name: Optional[str],
    contributor_email: Optional[str],
    db: Session,
    origin: Optional[str] = None
) -> Dict[str, str]:
    """Create a Stripe Checkout Session for a contribution toward an item.

    The ledger is not touched here; it is credited when Stripe confirms the
    payment through the webhook.
    """
    validate_amount(amount_cents)

    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise ItemNotFound(f"Item {item_id} not found")
    if item.is_fulfilled:
        raise AlreadyFulfilled("This item has already been fulfilled")
    event = db.query(Event).filter(Event.id == item.event_id).first()

    name = sanitize_string(contributor_name, 255)
    email = contributor_email if is_valid_email(contributor_email) else ""
    base = (origin or settings.FRONTEND_URL).rstrip("/")
    event_path = f"{base}/event/{event.slug or event.id}"

    session = stripe.checkout.Session.create(
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": PAYOUT_CURRENCY,
                "product_data": {
                    "name": f"Gift: {item.title}",
                    "description": f"Contribution for {event.title}",
                },
                "unit_amount": amount_cents,
            },
            "quantity": 1,
        }],
        mode="payment",
        success_url=f"{event_path}?success=true",
        cancel_url=f"{event_path}?canceled=true",
        metadata={
            # Stripe metadata values are strings
            "item_id": str(item_id),
            "contributor_name": name,
            "contributor_email": email,
        },
    )
    logger.info(f"Checkout session {session.id} created for item {item_id} ({amount_cents} cents)")
    return {"sessionId": session.id, "url": session.url}


def verify_checkout_session(session_id: str) -> Dict[str, Any]:
    """Report a checkout session's payment outcome to the contributor's browser"""
    try:
        session = stripe.checkout.Session.retrieve(session_id, expand=["payment_intent"])
    except stripe.InvalidRequestError:
        return {"valid": False, "error": "Invalid or expired session", "status": "invalid"}

    expires_at = get_stripe_value(session, 'expires_at')
    payment_status = get_stripe_value(session, 'payment_status')
    if expires_at and expires_at < int(time.time()) and payment_status != 'paid':
        return {"valid": False, "error": "Payment session has expired", "status": "expired"}

    metadata = get_metadata(session)
    failed = False
    error_type = None
    error_message = None

    payment_intent = get_stripe_value(session, 'payment_intent')
    last_error = get_stripe_value(payment_intent, 'last_payment_error') if not isinstance(payment_intent, str) else None
    if last_error:
        failed = True
        decline_code = get_stripe_value(last_error, 'decline_code') or get_stripe_value(last_error, 'code')
        if decline_code in DECLINE_MESSAGES:
            error_type = decline_code
            error_message = DECLINE_MESSAGES[decline_code]
        else:
            error_type = decline_code or 'payment_failed'
            error_message = get_stripe_value(last_error, 'message') or GENERIC_PAYMENT_FAILURE

    if payment_status == 'unpaid' and not failed:
        failed = True
        error_type = 'payment_failed'
        error_message = GENERIC_PAYMENT_FAILURE

    customer_details = get_stripe_value(session, 'customer_details')
    return {
        "valid": True,
        "status": payment_status,
        "amount": get_stripe_value(session, 'amount_total'),
        "itemId": metadata.get('item_id'),
        "completed": payment_status == 'paid' and not failed,
        "failed": failed,
        "errorType": error_type,
        "errorMessage": error_message,
        "currency": get_stripe_value(session, 'currency'),
        "customerEmail": get_stripe_value(customer_details, 'email'),
    }

# ============================================================================
# WEBHOOK & EVENT LOGGING
# ============================================================================

def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if not stripe_event:
        stripe_event = StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=payload,
            processed=False
        )
        try:
            db.add(stripe_event)
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event logged it first
            db.rollback()
            return db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
        db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: str = None):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = True
        stripe_event.processed_at = datetime.now(timezone.utc)
        stripe_event.error_message = error_message
        db.commit()


def record_stripe_event_error(event_id: str, error_message: str, db: Session):
    """Keep the event unprocessed so Stripe's retry is handled, but note why"""
    db.rollback()
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.error_message = error_message
        db.commit()

# ============================================================================
# EVENT HANDLERS
# ============================================================================

def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def handle_checkout_completed(session: Any, db: Session):
    """Credit the item ledger for a paid checkout session"""
    if get_stripe_value(session, 'payment_status') not in ('paid', 'no_payment_required'):
        # Delayed payment methods confirm later via async_payment_succeeded
        logger.info(f"Checkout session {get_stripe_value(session, 'id')} not paid yet, waiting")
        return None

    metadata = get_metadata(session)
    item_id = _parse_int(metadata.get('item_id') or metadata.get('itemId'))
    if not item_id:
        logger.error(f"No item_id in metadata of checkout session {get_stripe_value(session, 'id')}")
        return None

    result = apply_confirmed_payment(
        item_id,
        get_stripe_value(session, 'amount_total'),
        get_stripe_value(session, 'id'),
        contributor_name=metadata.get('contributor_name') or metadata.get('contributorName'),
        contributor_email=metadata.get('contributor_email') or metadata.get('contributorEmail') or None,
        db=db
    )
    if result.is_duplicate:
        logger.info(f"Duplicate contribution detected (idempotent): {get_stripe_value(session, 'id')}")
    return result


def _fulfillment_for_transfer(transfer: Any, db: Session) -> Optional[Fulfillment]:
    fulfillment_id = _parse_int(get_metadata(transfer).get('fulfillment_id'))
    if fulfillment_id:
        return db.query(Fulfillment).filter(Fulfillment.id == fulfillment_id).first()
    transfer_id = get_stripe_value(transfer, 'id')
    if transfer_id:
        return db.query(Fulfillment).filter(Fulfillment.stripe_transfer_id == transfer_id).first()
    return None


def handle_transfer_paid(transfer: Any, db: Session):
    fulfillment = _fulfillment_for_transfer(transfer, db)
    if not fulfillment:
        logger.error(f"No fulfillment found for paid transfer {get_stripe_value(transfer, 'id')}")
        return None
    return complete_fulfillment(fulfillment.id, db, transfer_id=get_stripe_value(transfer, 'id'))


def handle_transfer_failed(transfer: Any, db: Session):
    fulfillment = _fulfillment_for_transfer(transfer, db)
    if not fulfillment:
        logger.error(f"No fulfillment found for failed transfer {get_stripe_value(transfer, 'id')}")
        return None
    return fail_fulfillment(
        fulfillment.id,
        get_stripe_value(transfer, 'failure_code') or 'transfer_failed',
        get_stripe_value(transfer, 'failure_message') or 'Transfer failed',
        db
    )


def handle_payment_failed(payment_intent: Any, db: Session):
    last_error = get_stripe_value(payment_intent, 'last_payment_error')
    logger.warning(
        f"Payment failed: intent={get_stripe_value(payment_intent, 'id')} "
        f"amount={get_stripe_value(payment_intent, 'amount')} "
        f"code={get_stripe_value(last_error, 'decline_code') or get_stripe_value(last_error, 'code') or 'unknown'} "
        f"message={get_stripe_value(last_error, 'message') or 'Payment failed'}"
    )


EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "checkout.session.async_payment_succeeded": handle_checkout_completed,
    "transfer.paid": handle_transfer_paid,
    "transfer.failed": handle_transfer_failed,
    "transfer.reversed": handle_transfer_failed,
    "account.updated": handle_account_updated,
    "payment_intent.payment_failed": handle_payment_failed,
}


def process_stripe_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Process Stripe webhook event

    Validates the signature, deduplicates on the event id, and dispatches.
    Errors that a retry cannot fix (unknown item, bad amount, illegal
    transition) are recorded and acknowledged. Anything else leaves the event
    unprocessed and propagates so Stripe delivers it again.

    Raises:
        ValueError: For invalid payload or missing webhook secret
        stripe.SignatureVerificationError: For invalid signature
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise ValueError("Webhook secret not configured")

    event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)

    event_id = event["id"]
    event_type = event["type"]
    stripe_event = log_stripe_event(event_id, event_type, _to_plain(event), db)

    if stripe_event.processed:
        logger.info(f"Webhook event {event_id} already processed")
        webhook_events_counter.labels(event_type=event_type, status="duplicate").inc()
        return {"received": True, "duplicate": True}

    handler = EVENT_HANDLERS.get(event_type)
    data = event["data"]["object"]

    try:
        if handler:
            handler(data, db)
    except FundingError as e:
        logger.error(f"Webhook {event_id} ({event_type}) rejected: {e.code}: {e.message}")
        db.rollback()
        mark_stripe_event_processed(event_id, db, error_message=f"{e.code}: {e.message}")
        webhook_events_counter.labels(event_type=event_type, status="rejected").inc()
        return {"received": True, "status": "error_logged", "error": e.code}
    except Exception as e:
        logger.error(f"Error processing webhook {event_id}: {e}", exc_info=True)
        record_stripe_event_error(event_id, str(e), db)
        webhook_events_counter.labels(event_type=event_type, status="error").inc()
        raise

    mark_stripe_event_processed(event_id, db)
    webhook_events_counter.labels(event_type=event_type, status="processed").inc()
    logger.info(f"Successfully processed webhook event {event_id} of type {event_type}")
    return {"received": True}


def _to_plain(event: Any) -> dict:
    """JSON-storable copy of a Stripe event"""
    if isinstance(event, dict) and not hasattr(event, 'to_dict'):
        return event
    to_dict = getattr(event, 'to_dict', None)
    if callable(to_dict):
        return to_dict()
    return dict(event)
