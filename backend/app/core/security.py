"""Authentication dependency and API access logging"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request

from app.core.errors import Unauthorized
from app.db.redis import get_session

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def get_session_id(request: Request) -> Optional[str]:
    """Session id from the ``session_id`` cookie, or an ``Authorization: Bearer`` header"""
    session_id = request.cookies.get("session_id")
    if session_id:
        return session_id
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = get_session_id(request)

    if not session_id:
        raise Unauthorized("Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        security_logger.info(f"Rejected expired session on {request.url.path}")
        raise Unauthorized("Session expired. Please log in again.")

    return user_id


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "origin": request.headers.get("Origin", "none"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
