"""Pydantic schemas for contributions"""
from pydantic import BaseModel
from typing import Optional


class CheckoutRequest(BaseModel):
    item_id: int
    amount_cents: int
    contributor_name: Optional[str] = None
    contributor_email: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    session_id: str
