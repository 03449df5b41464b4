"""
Security utilities - password hashing, access tokens, opaque token hashing

Access tokens are short-lived JWTs carrying {sub, email, role}. Refresh tokens
are opaque random values stored only as SHA-256 digests (see
services.refresh_token_service).
"""
import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from storefront.core.config import settings


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    return bcrypt.checkpw(
        plain_password.encode("utf-8"),
        hashed_password.encode("utf-8")
    )


def get_password_hash(password: str) -> str:
    """Generate password hash"""
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt()
    ).decode("utf-8")


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store opaque tokens and OTPs."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_otp() -> str:
    """Six digit numeric one-time code."""
    return f"{secrets.randbelow(900000) + 100000}"


def generate_reset_token() -> str:
    """URL-safe single-use token for password reset links."""
    return secrets.token_urlsafe(32)


def create_access_token(
    user_id: int,
    email: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create JWT access token bound to the user's current role."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "type": "access",
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "exp": expire,
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: str) -> Optional[dict]:
    """Decode and validate an access token. Returns None when invalid or expired."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    return payload
