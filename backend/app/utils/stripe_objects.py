"""Helpers for reading Stripe objects and webhook payloads"""
from typing import Any


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    # Plain dicts first: webhook payloads arrive as dicts
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    if hasattr(obj, key):
        value = getattr(obj, key, default)
        if value is not None:
            return value
    return default


def get_metadata(obj: Any) -> dict:
    """Stripe metadata as a plain dict (StripeObject, dict or missing)"""
    metadata = get_stripe_value(obj, 'metadata', None)
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return metadata
    to_dict = getattr(metadata, 'to_dict', None)
    if callable(to_dict):
        result = to_dict()
        if isinstance(result, dict):
            return result
    return {}
