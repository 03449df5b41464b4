"""
Rate Limiting Configuration

Uses SlowAPI keyed by client IP (X-Forwarded-For aware). In-memory storage
suits a single instance; multi-instance deployments point RATE_LIMIT_STORAGE_URI
at a shared backend.
"""
import logging
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from storefront.core.config import settings
from storefront.core.request_utils import extract_client_ip

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    return extract_client_ip(request) or "127.0.0.1"


limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Structured 429 response with a Retry-After header."""
    logger.warning(
        f"Rate limit exceeded: {get_client_ip(request)} on {request.url.path}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": "Too many requests. Please try again later.",
            "code": "RATE_LIMITED",
        },
        headers={"Retry-After": "60"},
    )
