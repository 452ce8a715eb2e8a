"""Middleware configuration for FastAPI application"""
import logging
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.errors import FundingError, InternalError
from app.core.security import get_session_id, log_api_access

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Paths that are not worth an access log line
QUIET_PATHS = ("/health", "/metrics")


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def access_log_middleware(request: Request, call_next):
    """Log every API request with its final status"""
    session_id = get_session_id(request)
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        if request.url.path not in QUIET_PATHS:
            log_api_access(request, session_id, status_code, error)


async def funding_error_handler(request: Request, exc: FundingError):
    """Render a FundingError as its status and structured body"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    elif exc.status_code in (401, 403):
        security_logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())
