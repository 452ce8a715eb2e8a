"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.event import Event
from app.models.item import Item
from app.models.contribution import Contribution
from app.models.fulfillment import Fulfillment
from app.models.payout_account import PayoutAccount
from app.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Event", "Item", "Contribution",
    "Fulfillment", "PayoutAccount", "StripeEvent"
]
