"""Input validation and sanitization for redemption and checkout requests"""
import logging
import re
from typing import Any, Optional

from app.core.config import settings
from app.core.errors import ValidationFailed, InvalidAmount

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def validate_idempotency_key(key: Any, user_id: Optional[int] = None, item_id: Optional[int] = None) -> str:
    """Require a key of at least IDEMPOTENCY_KEY_MIN_LENGTH chars from [A-Za-z0-9_-].

    Embedding the user or item id binds the key to one request; that is
    recommended but only logged when missing.
    """
    if not key or not isinstance(key, str):
        raise ValidationFailed("Idempotency key is required")
    if len(key) < settings.IDEMPOTENCY_KEY_MIN_LENGTH:
        raise ValidationFailed(
            f"Idempotency key must be at least {settings.IDEMPOTENCY_KEY_MIN_LENGTH} characters"
        )
    if len(key) > 255:
        raise ValidationFailed("Idempotency key must be at most 255 characters")
    if not IDEMPOTENCY_KEY_PATTERN.match(key):
        raise ValidationFailed("Idempotency key contains invalid characters")

    if user_id is not None and item_id is not None:
        if str(user_id) not in key and str(item_id) not in key:
            logger.warning("Idempotency key not bound to user/item - consider including IDs")
    return key


def sanitize_string(value: Any, max_length: int = 1000) -> str:
    """Trim, drop null bytes, truncate"""
    if not value or not isinstance(value, str):
        return ""
    sanitized = value.strip().replace("\0", "")
    return sanitized[:max_length]


def validate_amount(amount_cents: Any, min_cents: int = None, max_cents: int = None) -> int:
    """Integer cents within the configured contribution bounds"""
    min_cents = settings.CONTRIBUTION_MIN_CENTS if min_cents is None else min_cents
    max_cents = settings.CONTRIBUTION_MAX_CENTS if max_cents is None else max_cents

    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidAmount("Amount must be an integer (cents)")
    if amount_cents < min_cents:
        raise InvalidAmount(f"Amount must be at least ${min_cents / 100:.2f}")
    if amount_cents > max_cents:
        raise InvalidAmount(f"Amount cannot exceed ${max_cents / 100:.2f}")
    return amount_cents


def is_valid_email(email: Any) -> bool:
    if not email or not isinstance(email, str):
        return False
    return bool(EMAIL_PATTERN.match(email))
