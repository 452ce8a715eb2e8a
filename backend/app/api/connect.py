"""Stripe Connect (payout account) API routes"""
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.contributions import trusted_origin
from app.core.security import require_auth
from app.db.session import get_db
from app.services.payout_service import PayoutConnector, get_payout_connector
from app.services.payout_account_service import (
    start_onboarding, refresh_onboarding, get_connect_status
)

router = APIRouter(prefix="/api/connect", tags=["connect"])
logger = logging.getLogger(__name__)


@router.post("/onboard")
def onboard(
    request: Request,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    connector: PayoutConnector = Depends(get_payout_connector)
):
    """Create the connected account if needed and return an onboarding link"""
    return start_onboarding(user_id, db, connector=connector, origin=trusted_origin(request))


@router.post("/refresh")
def refresh(
    request: Request,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    connector: PayoutConnector = Depends(get_payout_connector)
):
    """Fresh onboarding link (account links expire)"""
    return refresh_onboarding(user_id, db, connector=connector, origin=trusted_origin(request))


@router.get("/status")
def status(
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    connector: PayoutConnector = Depends(get_payout_connector)
):
    """Whether the current user can receive payouts"""
    return get_connect_status(user_id, db, connector=connector)
