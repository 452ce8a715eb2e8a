"""Pydantic schemas for fulfillments"""
from pydantic import BaseModel
from typing import Optional


class CreateFulfillmentRequest(BaseModel):
    item_id: int
    event_id: int
    idempotency_key: str
    fulfillment_method: str = "bank_transfer"
    notes: Optional[str] = ""
