"""Fulfillment (redemption) API routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.schemas.fulfillments import CreateFulfillmentRequest
from app.core.security import require_auth
from app.models.fulfillment import STATUS_FAILED
from app.db.session import get_db
from app.services.fee_service import FeeCalculator, get_fee_calculator
from app.services.payout_service import PayoutConnector, get_payout_connector
from app.services.fulfillment_service import (
    create_fulfillment, preview_fulfillment, get_fulfillment, list_fulfillments
)

router = APIRouter(prefix="/api/fulfillments", tags=["fulfillments"])
logger = logging.getLogger(__name__)


@router.post("/create", status_code=201)
def create(
    request_data: CreateFulfillmentRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    connector: PayoutConnector = Depends(get_payout_connector),
    fee_calculator: FeeCalculator = Depends(get_fee_calculator)
):
    """Redeem a fully funded item to the owner's connected bank account"""
    result = create_fulfillment(
        request_data.item_id,
        request_data.event_id,
        user_id,
        request_data.idempotency_key,
        fulfillment_method=request_data.fulfillment_method,
        notes=request_data.notes or "",
        db=db,
        connector=connector,
        fee_calculator=fee_calculator
    )
    # A retry of a failed redemption reports it as such
    return {"success": result["status"] != STATUS_FAILED, "fulfillment": result}


@router.get("")
def list_history(
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Fulfillment history for the current user"""
    return list_fulfillments(user_id, db, status=status, limit=limit, offset=offset)


@router.get("/preview")
def preview(
    item_id: int = Query(...),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    fee_calculator: FeeCalculator = Depends(get_fee_calculator)
):
    """Eligibility and fee breakdown before redeeming"""
    return preview_fulfillment(item_id, user_id, db, fee_calculator=fee_calculator)


@router.get("/{fulfillment_id}")
def detail(fulfillment_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"fulfillment": get_fulfillment(fulfillment_id, user_id, db)}
