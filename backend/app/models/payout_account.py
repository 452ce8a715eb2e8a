"""PayoutAccount model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class PayoutAccount(Base):
    """Owner's Stripe Connect destination and its cached readiness flags"""
    __tablename__ = "payout_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    stripe_account_id = Column(String(255), unique=True, nullable=False, index=True)

    # Readiness flags, refreshed from Stripe
    onboarding_completed = Column(Boolean, default=False, nullable=False)
    charges_enabled = Column(Boolean, default=False, nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    transfers_active = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="payout_account")

    @property
    def is_ready(self) -> bool:
        return bool(
            self.onboarding_completed
            and self.charges_enabled
            and self.payouts_enabled
            and self.transfers_active
        )
