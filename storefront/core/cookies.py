"""
Cookie Management Utilities

Centralized cookie handling for auth tokens and the guest cart session.
All cookies are HttpOnly, SameSite strict, path "/", and Secure outside
development.
"""
from typing import Optional
from fastapi import Response
from starlette.requests import Request

from storefront.core.config import settings

ACCESS_TOKEN_COOKIE = "auth-token"
REFRESH_TOKEN_COOKIE = "refresh-token"
GUEST_SESSION_COOKIE = "session-id"

ACCESS_TOKEN_MAX_AGE = 60 * 60  # 1 hour
REFRESH_TOKEN_MAX_AGE = 30 * 24 * 60 * 60  # 30 days
GUEST_SESSION_MAX_AGE = 30 * 24 * 60 * 60  # 30 days


def _cookie_kwargs() -> dict:
    return {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.COOKIE_SAMESITE,
        "domain": settings.COOKIE_DOMAIN or None,
        "path": "/",
    }


def set_auth_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    """Set the short-lived access cookie and the long-lived refresh cookie."""
    response.set_cookie(
        key=ACCESS_TOKEN_COOKIE,
        value=access_token,
        max_age=ACCESS_TOKEN_MAX_AGE,
        **_cookie_kwargs(),
    )
    response.set_cookie(
        key=REFRESH_TOKEN_COOKIE,
        value=refresh_token,
        max_age=REFRESH_TOKEN_MAX_AGE,
        **_cookie_kwargs(),
    )


def clear_auth_cookies(response: Response) -> None:
    """Clear all authentication cookies."""
    for cookie_name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
        response.delete_cookie(
            key=cookie_name,
            domain=settings.COOKIE_DOMAIN or None,
            path="/",
        )


def set_guest_session_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        key=GUEST_SESSION_COOKIE,
        value=session_id,
        max_age=GUEST_SESSION_MAX_AGE,
        **_cookie_kwargs(),
    )


def clear_guest_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=GUEST_SESSION_COOKIE,
        domain=settings.COOKIE_DOMAIN or None,
        path="/",
    )


def get_access_token_from_cookie(request: Request) -> Optional[str]:
    """Extract access token from cookie."""
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


def get_refresh_token_from_cookie(request: Request) -> Optional[str]:
    """Extract refresh token from cookie."""
    return request.cookies.get(REFRESH_TOKEN_COOKIE)


def get_guest_session_from_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(GUEST_SESSION_COOKIE)
