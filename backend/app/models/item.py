"""Item model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Item(Base):
    """Redeemable wish-list entry.

    ``current_amount_cents`` is only ever raised by the contribution ledger;
    ``is_fulfilled``/``fulfilled_at`` are only set when a fulfillment completes.
    """
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    image_url = Column(String(1024), nullable=True)
    price_cents = Column(Integer, nullable=False)
    current_amount_cents = Column(Integer, default=0, nullable=False)
    is_fulfilled = Column(Boolean, default=False, nullable=False)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    event = relationship("Event", back_populates="items")
    contributions = relationship("Contribution", back_populates="item")
    fulfillments = relationship("Fulfillment", back_populates="item")

    __table_args__ = (
        CheckConstraint('price_cents > 0', name='ck_items_price_positive'),
        CheckConstraint('current_amount_cents >= 0', name='ck_items_amount_non_negative'),
    )

    @property
    def is_redemption_eligible(self) -> bool:
        """Fully funded and not yet paid out"""
        return not self.is_fulfilled and self.current_amount_cents >= self.price_cents

    @property
    def remaining_cents(self) -> int:
        return max(0, self.price_cents - self.current_amount_cents)

    def __repr__(self):
        return f"<Item(id={self.id}, price={self.price_cents}, current={self.current_amount_cents}, fulfilled={self.is_fulfilled})>"
