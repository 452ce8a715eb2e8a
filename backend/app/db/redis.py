"""Redis-backed session lookup.

Sessions are written by the auth service under ``session:<id>`` with the
user id as value; this backend only resolves them.
"""
import logging
from typing import Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"

# Created on first use so tests can swap in a fake before any connection
_client = None


def get_redis_client():
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_session(session_id: str) -> Optional[int]:
    """User id for a live session, or None if it is unknown or expired"""
    value = get_redis_client().get(f"{SESSION_KEY_PREFIX}{session_id}")
    if not value:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Malformed session value for {session_id[:16]}...")
        return None
