"""
Retry-on-conflict wrapper

Stock counter updates and checkout transactions race against each other on
shared product rows. Storage-level conflicts (serialization failures,
deadlocks, SQLite busy locks) are retried here a bounded number of times
with jittered exponential backoff. Business-rule exceptions are never
retried: they propagate on the first attempt.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError

from storefront.core.config import settings
from storefront.core.exceptions import ConflictError, StorefrontError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lower-cased fragments of driver messages that signal a retryable conflict
TRANSIENT_MESSAGES = (
    "could not serialize",
    "deadlock detected",
    "database is locked",
    "database table is locked",
    "lock timeout",
    "lock not available",
    "write conflict",
    "unable to acquire",
    "please retry",
    "has been aborted",
)

# SQLSTATE serialization_failure / deadlock_detected / lock_not_available
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


def _sqlstate(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None), exc):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_transient_error(exc: BaseException) -> bool:
    """Return True when exc is a storage conflict worth retrying."""
    if isinstance(exc, StorefrontError):
        return False
    if not isinstance(exc, DBAPIError):
        return False
    if _sqlstate(exc) in TRANSIENT_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


def calculate_backoff(attempt: int, base_delay: float, jitter: float) -> float:
    """
    Delay before retry number `attempt` (0-based).

    Formula: base * 2^attempt, +/- jitter fraction of that delay.
    """
    delay = base_delay * (2 ** attempt)
    delay += delay * jitter * (2 * random.random() - 1)
    return max(delay, 0.0)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    jitter: Optional[float] = None,
    on_retry: Optional[Callable[[BaseException], Awaitable[Any]]] = None,
    label: str = "operation",
) -> T:
    """
    Run operation(), retrying transient storage conflicts.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        max_attempts: Total attempts including the first
        base_delay: Initial backoff in seconds
        jitter: Random jitter fraction (0-1)
        on_retry: Awaited after a transient failure, before sleeping
            (callers pass their session rollback here)
        label: Name used in log lines

    Raises:
        ConflictError: Transient failures persisted for every attempt
    """
    attempts = max_attempts or settings.CONFLICT_RETRY_MAX_ATTEMPTS
    base = settings.CONFLICT_RETRY_BASE_DELAY if base_delay is None else base_delay
    spread = settings.CONFLICT_RETRY_JITTER if jitter is None else jitter

    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            if on_retry is not None:
                await on_retry(exc)
            if attempt == attempts - 1:
                logger.error(
                    "%s: transient conflict persisted after %d attempts: %s",
                    label, attempts, exc,
                )
                raise ConflictError(attempts=attempts) from exc
            delay = calculate_backoff(attempt, base, spread)
            logger.warning(
                "%s: transient conflict on attempt %d/%d, retrying in %.3fs",
                label, attempt + 1, attempts, delay,
            )
            await asyncio.sleep(delay)

    raise ConflictError(attempts=attempts)
