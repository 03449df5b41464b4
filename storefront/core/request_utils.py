"""
Request utility functions
"""
from typing import Optional
from fastapi import Request


def extract_client_ip(request: Request) -> Optional[str]:
    """
    Extract client IP from request, handling proxy headers.

    Checks X-Forwarded-For (first hop is the original client), then
    X-Real-IP, then the direct peer address.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def extract_user_agent(request: Request) -> Optional[str]:
    """Extract user agent string from request."""
    return request.headers.get("user-agent")
