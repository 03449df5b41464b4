"""
Core Utilities

Shared helpers used across the application.
"""
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

CENT = Decimal("0.01")


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_money(amount: Union[Decimal, float, int, str, None]) -> Decimal:
    """Round a monetary amount half-up to two decimal places."""
    if amount is None:
        return Decimal("0.00")
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_idempotency_key(prefix: str) -> str:
    """Server-side idempotency key: {prefix}-{YYYYMMDDHHMMSS}-{16 hex}."""
    return f"{prefix}-{utcnow().strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(8)}"
