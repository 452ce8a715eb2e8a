"""Logging configuration for the application"""
import logging

from app.core.config import settings

# Money movement streams never log above INFO
AUDIT_STREAMS = ("ledger", "payout")
SECURITY_STREAMS = ("security", "api_access")


def setup_logging():
    """Configure root logging from LOG_LEVEL and pin the audit streams"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    for name in AUDIT_STREAMS:
        logging.getLogger(name).setLevel(min(level, logging.INFO))
    for name in SECURITY_STREAMS:
        logging.getLogger(name).setLevel(level)

    # Silence noisy third-party libraries
    for name in ("stripe", "urllib3", "httpx", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)
