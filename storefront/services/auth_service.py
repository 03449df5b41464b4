"""
Auth Service

Registration with e-mail OTP, credential checks with account lockout,
password changes and token-based password reset. Session issuance (access +
refresh token) lives in issue_session so login and registration share it.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.exceptions import (
    AccountDisabledError,
    AccountLockedError,
    InvalidCredentialsError,
    RequestValidationError,
)
from storefront.core.security import (
    create_access_token,
    generate_otp,
    generate_reset_token,
    get_password_hash,
    hash_token,
    verify_password,
)
from storefront.core.utils import utcnow, as_utc
from storefront.models import User, UserRole
from storefront.services.otp_dispatcher import otp_dispatcher
from storefront.services.refresh_token_service import RefreshTokenService

logger = logging.getLogger(__name__)


@dataclass
class IssuedSession:
    user: User
    access_token: str
    refresh_token: str


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_password(password: str) -> None:
    if len(password) < settings.PASSWORD_MIN_LENGTH:
        raise RequestValidationError(
            f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters"
        )
    if password.isdigit() or password.isalpha():
        raise RequestValidationError("Password must contain both letters and numbers")


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(func.lower(User.email) == _normalize_email(email))
    )
    return result.scalar_one_or_none()


async def _send_email_otp(db: AsyncSession, user: User) -> None:
    """Store a fresh hashed OTP and hand the code to the dispatcher. Never raises."""
    code = generate_otp()
    user.email_otp_hash = hash_token(code)
    user.email_otp_expires_at = utcnow() + timedelta(minutes=settings.OTP_EXPIRATION_MINUTES)
    await db.commit()

    try:
        result = await otp_dispatcher.send_otp(user.email, code)
        if not result.success:
            logger.warning(f"Verification code for user {user.id} not delivered: {result.error}")
    except Exception as e:
        logger.error(f"OTP dispatch failed for user {user.id}: {e}")


async def register_user(
    db: AsyncSession,
    email: str,
    password: str,
    first_name: str,
    last_name: str = "",
) -> User:
    email = _normalize_email(email)
    validate_password(password)

    if await get_user_by_email(db, email) is not None:
        raise RequestValidationError("Email already registered")

    user = User(
        email=email,
        hashed_password=get_password_hash(password),
        first_name=first_name.strip(),
        last_name=(last_name or "").strip(),
        role=UserRole.CUSTOMER.value,
    )
    db.add(user)
    await db.flush()

    await _send_email_otp(db, user)
    logger.info(f"Registered user {user.id}")
    return user


async def authenticate(
    db: AsyncSession,
    email: str,
    password: str,
    ip_address: Optional[str] = None,
) -> User:
    """
    Verify credentials with lockout.

    Raises:
        InvalidCredentialsError: unknown e-mail or wrong password
        AccountDisabledError: inactive or blocked account
        AccountLockedError: too many recent failures
    """
    user = await get_user_by_email(db, email)
    if user is None:
        raise InvalidCredentialsError("Invalid credentials")

    if not user.is_active or user.is_blocked:
        raise AccountDisabledError("Account is disabled. Please contact support.")

    if user.is_locked:
        remaining = int((as_utc(user.locked_until) - utcnow()).total_seconds() // 60) + 1
        raise AccountLockedError(
            f"Account is locked due to too many failed attempts. Try again in {remaining} minutes."
        )

    if not verify_password(password, user.hashed_password):
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= settings.ACCOUNT_LOCKOUT_MAX_ATTEMPTS:
            user.locked_until = utcnow() + timedelta(minutes=settings.ACCOUNT_LOCKOUT_DURATION_MINUTES)
            user.failed_login_attempts = 0
            logger.warning(f"User {user.id} locked after repeated failed logins")
        await db.commit()
        raise InvalidCredentialsError("Invalid credentials")

    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_login_at = utcnow()
    user.last_login_ip = ip_address
    await db.commit()
    return user


async def issue_session(
    db: AsyncSession,
    user: User,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> IssuedSession:
    """New access token and a refresh token starting a new family."""
    _, raw_refresh = await RefreshTokenService.create_token(
        db, user.id, user_agent=user_agent, ip_address=ip_address
    )
    await db.commit()
    return IssuedSession(
        user=user,
        access_token=create_access_token(user.id, user.email, user.role),
        refresh_token=raw_refresh,
    )


async def verify_email_otp(db: AsyncSession, user: User, otp: str) -> User:
    if user.email_verified:
        return user

    expires_at = as_utc(user.email_otp_expires_at)
    if not user.email_otp_hash or expires_at is None or expires_at <= utcnow():
        raise RequestValidationError("Verification code has expired. Please request a new one.")
    if hash_token(otp.strip()) != user.email_otp_hash:
        raise RequestValidationError("Invalid verification code")

    user.email_verified = True
    user.email_otp_hash = None
    user.email_otp_expires_at = None
    await db.commit()
    logger.info(f"User {user.id} verified e-mail")
    return user


async def resend_email_otp(db: AsyncSession, user: User) -> None:
    if user.email_verified:
        raise RequestValidationError("Email is already verified")
    await _send_email_otp(db, user)


async def _revoke_sessions(db: AsyncSession, user_id: int, cause: str) -> None:
    """Sign the user out everywhere. The password is already saved, so failures are only logged."""
    try:
        await RefreshTokenService.revoke_user_tokens(db, user_id)
    except Exception as e:
        logger.error(f"Failed to revoke tokens after {cause} for user {user_id}: {e}")
        await db.rollback()


async def change_password(db: AsyncSession, user: User, current_password: str, new_password: str) -> None:
    """Change password and sign the user out of every session."""
    if not verify_password(current_password, user.hashed_password):
        raise RequestValidationError("Current password is incorrect")
    validate_password(new_password)

    user.hashed_password = get_password_hash(new_password)
    user.password_changed_at = utcnow()
    await db.commit()

    await _revoke_sessions(db, user.id, "password change")


async def request_password_reset(db: AsyncSession, email: str) -> None:
    """
    Mail a single-use reset link to an active account.

    Unknown, inactive and blocked addresses are ignored silently so the
    endpoint cannot be used to discover accounts. A new request replaces any
    earlier token.
    """
    user = await get_user_by_email(db, email)
    if user is None or not user.is_active or user.is_blocked:
        logger.info("Password reset requested for an unknown or disabled account")
        return

    token = generate_reset_token()
    user.password_reset_hash = hash_token(token)
    user.password_reset_expires_at = utcnow() + timedelta(minutes=settings.PASSWORD_RESET_TOKEN_MINUTES)
    await db.commit()
    logger.info(f"Password reset requested for user {user.id}")

    try:
        result = await otp_dispatcher.send_password_reset(user.email, token)
        if not result.success:
            logger.warning(f"Reset link for user {user.id} not delivered: {result.error}")
    except Exception as e:
        logger.error(f"Reset link dispatch failed for user {user.id}: {e}")


async def confirm_password_reset(db: AsyncSession, token: str, new_password: str) -> User:
    """
    Set a new password from a reset token and sign the user out everywhere.

    Raises:
        RequestValidationError: weak password, or a token that is unknown,
            already used or expired
    """
    validate_password(new_password)

    result = await db.execute(
        select(User).where(User.password_reset_hash == hash_token(token.strip()))
    )
    user = result.scalar_one_or_none()
    expires_at = as_utc(user.password_reset_expires_at) if user else None
    if user is None or expires_at is None or expires_at <= utcnow():
        raise RequestValidationError("Invalid or expired reset token")

    user.hashed_password = get_password_hash(new_password)
    user.password_reset_hash = None
    user.password_reset_expires_at = None
    user.password_changed_at = utcnow()
    user.failed_login_attempts = 0
    user.locked_until = None
    await db.commit()
    logger.info(f"User {user.id} reset their password")

    await _revoke_sessions(db, user.id, "password reset")
    return user
