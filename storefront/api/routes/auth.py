"""
Authentication routes

Access and refresh tokens are delivered as HttpOnly cookies. /refresh
rotates the refresh token on every call; any failure clears both cookies
and asks the client to log in again.
"""
import logging

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_current_user, get_optional_user
from storefront.core.config import settings
from storefront.core.cookies import (
    set_auth_cookies,
    clear_auth_cookies,
    clear_guest_session_cookie,
    get_refresh_token_from_cookie,
    get_guest_session_from_cookie,
)
from storefront.core.database import get_db
from storefront.core.exceptions import AuthError, NotFoundError
from storefront.core.rate_limit import limiter
from storefront.core.request_utils import extract_client_ip, extract_user_agent
from storefront.models import User
from storefront.schemas.auth import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    ResendOtpRequest,
    UserResponse,
    VerifyEmailRequest,
)
from storefront.services import auth_service
from storefront.services.cart_merge import merge_guest_cart_into_user
from storefront.services.refresh_token_service import refresh_token_service

logger = logging.getLogger(__name__)

router = APIRouter()

RELOGIN_MESSAGE = "Session expired. Please log in again."


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_AUTH)
async def register(
    request: Request,
    response: Response,
    user_data: RegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """Create an account and e-mail a verification code."""
    user = await auth_service.register_user(
        db,
        email=user_data.email,
        password=user_data.password,
        first_name=user_data.first_name,
        last_name=user_data.last_name,
    )
    session = await auth_service.issue_session(
        db, user,
        user_agent=extract_user_agent(request),
        ip_address=extract_client_ip(request),
    )
    set_auth_cookies(response, session.access_token, session.refresh_token)
    return AuthResponse(
        message="Registration successful. Please verify your email.",
        user=UserResponse.model_validate(user),
        access_token=session.access_token,
    )


@router.post("/login", response_model=AuthResponse)
@limiter.limit(settings.RATE_LIMIT_AUTH)
async def login(
    request: Request,
    response: Response,
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Login with email and password.

    A guest cart held in the session-id cookie is merged into the user's
    cart; a failed merge never fails the login.
    """
    ip_address = extract_client_ip(request)
    user = await auth_service.authenticate(db, credentials.email, credentials.password, ip_address=ip_address)
    session = await auth_service.issue_session(
        db, user,
        user_agent=extract_user_agent(request),
        ip_address=ip_address,
    )

    user_payload = UserResponse.model_validate(user)
    user_id = user.id
    guest_session_id = get_guest_session_from_cookie(request)
    if guest_session_id:
        try:
            await merge_guest_cart_into_user(db, user_id, guest_session_id)
        except Exception as e:
            logger.error(f"Guest cart merge failed for user {user_id}: {e}")
            await db.rollback()
        clear_guest_session_cookie(response)

    set_auth_cookies(response, session.access_token, session.refresh_token)
    return AuthResponse(
        message="Login successful",
        user=user_payload,
        access_token=session.access_token,
    )


@router.post("/verify-email", response_model=MessageResponse)
@limiter.limit(settings.RATE_LIMIT_AUTH)
async def verify_email(
    request: Request,
    body: VerifyEmailRequest,
    db: AsyncSession = Depends(get_db),
):
    user = await auth_service.get_user_by_email(db, body.email)
    if user is None:
        raise NotFoundError("User not found")
    await auth_service.verify_email_otp(db, user, body.otp)
    return MessageResponse(message="Email verified successfully")


@router.post("/resend-email-otp", response_model=MessageResponse)
@limiter.limit(settings.RATE_LIMIT_AUTH)
async def resend_email_otp(
    request: Request,
    body: ResendOtpRequest,
    db: AsyncSession = Depends(get_db),
):
    user = await auth_service.get_user_by_email(db, body.email)
    if user is not None and not user.email_verified:
        await auth_service.resend_email_otp(db, user)
    # Same answer whether or not the address exists
    return MessageResponse(message="If the account exists, a new verification code has been sent")


@router.post("/refresh")
async def refresh(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Rotate the refresh-token cookie and issue a new access token."""
    raw_token = get_refresh_token_from_cookie(request)
    try:
        rotation = await refresh_token_service.refresh(
            db,
            raw_token,
            user_agent=extract_user_agent(request),
            ip_address=extract_client_ip(request),
        )
    except AuthError as e:
        logger.info(f"Refresh rejected: {e.code}")
        failure = JSONResponse(
            status_code=401,
            content={"success": False, "error": RELOGIN_MESSAGE, "code": e.code},
        )
        clear_auth_cookies(failure)
        return failure

    ok = JSONResponse(content={"success": True, "message": "Token refreshed"})
    set_auth_cookies(ok, rotation.access_token, rotation.refresh_token)
    return ok


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    user: User = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Revoke the presented refresh token (and all of the user's tokens when authenticated)."""
    raw_token = get_refresh_token_from_cookie(request)
    if raw_token:
        await refresh_token_service.revoke_token(db, raw_token)
    if user is not None:
        await refresh_token_service.revoke_user_tokens(db, user.id)
    clear_auth_cookies(response)
    return MessageResponse(message="Logged out successfully")


@router.post("/password", response_model=MessageResponse)
@limiter.limit(settings.RATE_LIMIT_AUTH)
async def change_password(
    request: Request,
    response: Response,
    body: PasswordChangeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await auth_service.change_password(db, user, body.current_password, body.new_password)
    clear_auth_cookies(response)
    return MessageResponse(message="Password changed. Please log in again.")


@router.post("/password-reset/request", response_model=MessageResponse)
@limiter.limit(settings.RATE_LIMIT_AUTH)
async def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    db: AsyncSession = Depends(get_db),
):
    """E-mail a reset link. The answer never reveals whether the account exists."""
    await auth_service.request_password_reset(db, body.email)
    return MessageResponse(message="If an account with that email exists, a reset link has been sent")


@router.post("/password-reset/confirm", response_model=MessageResponse)
@limiter.limit(settings.RATE_LIMIT_AUTH)
async def confirm_password_reset(
    request: Request,
    response: Response,
    body: PasswordResetConfirm,
    db: AsyncSession = Depends(get_db),
):
    await auth_service.confirm_password_reset(db, body.token, body.new_password)
    clear_auth_cookies(response)
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)):
    return user
