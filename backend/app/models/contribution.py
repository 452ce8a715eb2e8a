"""Contribution model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Contribution(Base):
    """One verified payment applied to an item's ledger (immutable)"""
    __tablename__ = "contributions"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    stripe_reference = Column(String(255), unique=True, nullable=False, index=True)  # Checkout session / payment id
    contributor_name = Column(String(255), nullable=False, default="")
    contributor_email = Column(String(255), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    item = relationship("Item", back_populates="contributions")

    __table_args__ = (
        CheckConstraint('amount_cents > 0', name='ck_contributions_amount_positive'),
    )
