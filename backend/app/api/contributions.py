"""Contribution API routes"""
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.schemas.contributions import CheckoutRequest, VerifyPaymentRequest
from app.core.middleware import get_allowed_origins
from app.core.security import require_auth
from app.db.session import get_db
from app.services.contribution_service import get_item_funding, get_item_contributions
from app.services.stripe_service import create_contribution_checkout, verify_checkout_session

router = APIRouter(prefix="/api/contributions", tags=["contributions"])
logger = logging.getLogger(__name__)


def trusted_origin(request: Request):
    """Request Origin if it is one of ours, else None (redirects fall back to FRONTEND_URL)"""
    origin = request.headers.get("Origin")
    if origin and origin.rstrip("/") in [o.rstrip("/") for o in get_allowed_origins()]:
        return origin
    return None


@router.post("/checkout")
def checkout(request_data: CheckoutRequest, request: Request, db: Session = Depends(get_db)):
    """Start a Stripe Checkout for a contribution (guests allowed)"""
    return create_contribution_checkout(
        request_data.item_id,
        request_data.amount_cents,
        request_data.contributor_name,
        request_data.contributor_email,
        db,
        origin=trusted_origin(request)
    )


@router.post("/verify")
def verify(request_data: VerifyPaymentRequest):
    """Payment outcome for the checkout success page"""
    return verify_checkout_session(request_data.session_id)


@router.get("/items/{item_id}")
def item_funding(item_id: int, db: Session = Depends(get_db)):
    """Funding progress for an item"""
    return get_item_funding(item_id, db)


@router.get("/items/{item_id}/history")
def item_history(
    item_id: int,
    limit: int = 50,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Contributions received for an item (event owner only)"""
    return {"contributions": get_item_contributions(item_id, user_id, limit, db)}
