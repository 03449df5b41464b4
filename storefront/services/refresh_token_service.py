"""
Refresh Token Service

Rotation with reuse detection. Every successful refresh revokes the
presented token and issues its successor in the same family. Presenting a
token that was already revoked or rotated means a copy is in someone
else's hands, so the whole family is revoked and the user must log in
again.

Checks run in a fixed order; the first failing check decides the error:

    not found        -> InvalidTokenError
    revoked          -> revoke family, TokenRevokedError
    expired          -> revoke token,  TokenExpiredError
    idle too long    -> revoke token,  IdleExpiredError
    already rotated  -> revoke family, TokenRevokedError
    user unusable    -> revoke token,  UserInactiveError

Revocations triggered by a failing check are committed before the error
is raised.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.exceptions import (
    InvalidTokenError,
    TokenRevokedError,
    TokenExpiredError,
    IdleExpiredError,
    UserInactiveError,
)
from storefront.core.security import create_access_token, hash_token
from storefront.core.utils import utcnow, as_utc
from storefront.models import RefreshToken, User

logger = logging.getLogger(__name__)


@dataclass
class RotationResult:
    user: User
    access_token: str
    refresh_token: str
    token: RefreshToken


class RefreshTokenService:
    """Issue, rotate and revoke opaque refresh tokens."""

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(32)

    @staticmethod
    def generate_family_id() -> str:
        return secrets.token_hex(16)

    @staticmethod
    def hash_token(token: str) -> str:
        return hash_token(token)

    @staticmethod
    async def create_token(
        db: AsyncSession,
        user_id: int,
        family_id: Optional[str] = None,
        device_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[RefreshToken, str]:
        """
        Create a refresh token row. Flushes but does not commit.

        Returns:
            Tuple of (token row, raw token value for the cookie)
        """
        raw = RefreshTokenService.generate_token()
        now = utcnow()
        token = RefreshToken(
            token_hash=hash_token(raw),
            user_id=user_id,
            family_id=family_id or RefreshTokenService.generate_family_id(),
            device_id=device_id,
            user_agent=user_agent[:500] if user_agent else None,
            ip_address=ip_address,
            created_at=now,
            last_used_at=now,
            expires_at=now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        )
        db.add(token)
        await db.flush()
        return token, raw

    @staticmethod
    async def _revoke_one(db: AsyncSession, token_id: int) -> None:
        await db.execute(
            update(RefreshToken)
            .where(RefreshToken.id == token_id, RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    @staticmethod
    async def refresh(
        db: AsyncSession,
        raw_token: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RotationResult:
        """Rotate a refresh token and issue a new access token."""
        if not raw_token:
            raise InvalidTokenError("Refresh token missing")

        result = await db.execute(
            select(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(raw_token))
            .execution_options(populate_existing=True)
        )
        token = result.scalar_one_or_none()
        if token is None:
            raise InvalidTokenError("Invalid refresh token")

        now = utcnow()
        token_id, family_id, user_id = token.id, token.family_id, token.user_id

        if token.revoked:
            logger.warning(
                f"Revoked refresh token {token_id} presented for user {user_id}; "
                f"revoking family {family_id[:8]}"
            )
            await RefreshTokenService.revoke_token_family(db, family_id)
            raise TokenRevokedError("Refresh token has been revoked. Please log in again.")

        if as_utc(token.expires_at) <= now:
            await RefreshTokenService._revoke_one(db, token_id)
            raise TokenExpiredError("Refresh token has expired. Please log in again.")

        idle_limit = timedelta(days=settings.REFRESH_TOKEN_IDLE_DAYS)
        if as_utc(token.last_used_at) + idle_limit <= now:
            await RefreshTokenService._revoke_one(db, token_id)
            raise IdleExpiredError("Session expired due to inactivity. Please log in again.")

        if token.replaced_by is not None:
            logger.warning(f"Rotated refresh token {token_id} reused; revoking family {family_id[:8]}")
            await RefreshTokenService.revoke_token_family(db, family_id)
            raise TokenRevokedError("Refresh token has already been used. Please log in again.")

        user = (await db.execute(
            select(User).where(User.id == user_id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if user is None or not user.is_active or user.is_blocked:
            await RefreshTokenService._revoke_one(db, token_id)
            raise UserInactiveError("User account is inactive")

        successor, raw_successor = await RefreshTokenService.create_token(
            db,
            user.id,
            family_id=family_id,
            device_id=token.device_id,
            user_agent=user_agent,
            ip_address=ip_address,
        )

        # Only one concurrent rotation of the same token may win
        rotated = await db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == token_id,
                RefreshToken.revoked.is_(False),
                RefreshToken.replaced_by.is_(None),
            )
            .values(revoked=True, revoked_at=now, replaced_by=successor.id, last_used_at=now)
            .execution_options(synchronize_session=False)
        )
        if rotated.rowcount != 1:
            await db.rollback()
            logger.warning(f"Concurrent rotation of refresh token {token_id}; revoking family {family_id[:8]}")
            await RefreshTokenService.revoke_token_family(db, family_id)
            raise TokenRevokedError("Refresh token has already been used. Please log in again.")

        access_token = create_access_token(user.id, user.email, user.role)
        await db.commit()

        logger.debug(f"Rotated refresh token {token_id} -> {successor.id} for user {user.id}")
        return RotationResult(
            user=user,
            access_token=access_token,
            refresh_token=raw_successor,
            token=successor,
        )

    @staticmethod
    async def revoke_token(db: AsyncSession, raw_token: str) -> bool:
        result = await db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == hash_token(raw_token),
                RefreshToken.revoked.is_(False),
            )
            .values(revoked=True, revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount > 0

    @staticmethod
    async def revoke_user_tokens(
        db: AsyncSession,
        user_id: int,
        exclude_token_id: Optional[int] = None,
    ) -> int:
        """Revoke every active token of a user (logout everywhere, password change)."""
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if exclude_token_id is not None:
            stmt = stmt.where(RefreshToken.id != exclude_token_id)
        result = await db.execute(stmt)
        await db.commit()
        if result.rowcount:
            logger.info(f"Revoked {result.rowcount} refresh tokens for user {user_id}")
        return result.rowcount

    @staticmethod
    async def revoke_token_family(db: AsyncSession, family_id: str) -> int:
        result = await db.execute(
            update(RefreshToken)
            .where(RefreshToken.family_id == family_id, RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    @staticmethod
    async def cleanup_expired_tokens(db: AsyncSession) -> int:
        """Delete expired tokens and tokens revoked longer than the retention window."""
        now = utcnow()
        retention_cutoff = now - timedelta(days=settings.REVOKED_TOKEN_RETENTION_DAYS)
        result = await db.execute(
            delete(RefreshToken)
            .where(
                or_(
                    RefreshToken.expires_at < now,
                    and_(
                        RefreshToken.revoked.is_(True),
                        RefreshToken.revoked_at < retention_cutoff,
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.info(f"Cleaned up {result.rowcount} refresh tokens")
        return result.rowcount


refresh_token_service = RefreshTokenService()
