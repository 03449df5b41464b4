"""
API dependencies

Access tokens are accepted from the Authorization: Bearer header or the
auth-token cookie. The role in the token is advisory; authorization checks
use the role stored on the user row.
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.cookies import get_access_token_from_cookie, get_guest_session_from_cookie
from storefront.core.database import get_db
from storefront.core.exceptions import AuthError, AccountDisabledError, PermissionDeniedError
from storefront.core.security import verify_token
from storefront.models import User

bearer = HTTPBearer(auto_error=False)


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return get_access_token_from_cookie(request)


async def _load_user(db: AsyncSession, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    payload = verify_token(token)
    if not payload:
        return None
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Get current authenticated user"""
    token = _extract_token(request, credentials)
    if not token:
        raise AuthError("Not authenticated", code="NOT_AUTHENTICATED")

    user = await _load_user(db, token)
    if user is None:
        raise AuthError("Invalid or expired token", code="INVALID_TOKEN")
    if not user.is_active or user.is_blocked:
        raise AccountDisabledError("Account is disabled")
    return user


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """Get current user if authenticated, None otherwise"""
    user = await _load_user(db, _extract_token(request, credentials))
    if user is None or not user.is_active or user.is_blocked:
        return None
    return user


async def get_current_staff(user: User = Depends(get_current_user)) -> User:
    """Require admin or staff role"""
    if not user.is_staff:
        raise PermissionDeniedError("Admin access required")
    return user


def get_guest_session_id(request: Request) -> Optional[str]:
    return get_guest_session_from_cookie(request)
