"""User model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class User(Base):
    """User accounts (owned by the auth collaborator; read here for identity)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    events = relationship("Event", back_populates="owner", cascade="all, delete-orphan")
    payout_account = relationship("PayoutAccount", back_populates="user", uselist=False, cascade="all, delete-orphan")
    fulfillments = relationship("Fulfillment", back_populates="user")
