"""Fulfillment model"""
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, Index, CheckConstraint, text
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


# Status values
STATUS_PENDING = "pending"          # Reserved, transfer not yet requested
STATUS_PROCESSING = "processing"    # Transfer requested, awaiting provider confirmation
STATUS_COMPLETED = "completed"      # Terminal
STATUS_FAILED = "failed"            # Terminal

ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)
ALL_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

# Allowed transitions; nothing leaves a terminal status
TRANSITIONS = {
    STATUS_PENDING: {STATUS_PROCESSING, STATUS_FAILED},
    STATUS_PROCESSING: {STATUS_COMPLETED, STATUS_FAILED},
    STATUS_COMPLETED: set(),
    STATUS_FAILED: set(),
}

_ACTIVE_WHERE = text("status IN ('pending', 'processing')")


class Fulfillment(Base):
    """Payout of an item's accumulated funds to the event owner"""
    __tablename__ = "fulfillments"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id", ondelete="RESTRICT"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="RESTRICT"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    # Amounts in cents; gross = fee + net
    gross_amount_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False)
    net_amount_cents = Column(Integer, nullable=False)

    fulfillment_method = Column(String(50), nullable=False, default="bank_transfer")
    notes = Column(String(500), nullable=False, default="")
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)

    stripe_account_id = Column(String(255), nullable=True)
    stripe_transfer_id = Column(String(255), nullable=True, index=True)

    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)

    requested_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    transfer_attempted_at = Column(DateTime(timezone=True), nullable=True)  # Set right before the provider call
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    item = relationship("Item", back_populates="fulfillments")
    event = relationship("Event")
    user = relationship("User", back_populates="fulfillments")

    __table_args__ = (
        CheckConstraint('gross_amount_cents = platform_fee_cents + net_amount_cents', name='ck_fulfillments_amounts_balance'),
        CheckConstraint('platform_fee_cents >= 0', name='ck_fulfillments_fee_non_negative'),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_fulfillments_status'
        ),
        # At most one active fulfillment per item, enforced by storage
        Index(
            'uq_fulfillments_active_item', 'item_id',
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
        Index('ix_fulfillments_user_requested', 'user_id', 'requested_at'),
        Index('ix_fulfillments_status_requested', 'status', 'requested_at'),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def transfer_group(self) -> str:
        """Stripe transfer_group used to find this fulfillment's transfer during reconciliation"""
        return f"fulfillment_{self.id}"

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in TRANSITIONS.get(self.status, set())

    def __repr__(self):
        return f"<Fulfillment(id={self.id}, item_id={self.item_id}, status={self.status}, gross={self.gross_amount_cents})>"
