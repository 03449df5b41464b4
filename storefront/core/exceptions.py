"""
Storefront Exception Hierarchy

Structured exception classes for cart, checkout, inventory and auth flows.
All exceptions carry a code, message and details for logging, and the HTTP
status the API boundary responds with.

Exception Hierarchy:
    StorefrontError
    ├── RequestValidationError
    ├── NotFoundError
    ├── PermissionDeniedError
    ├── BusinessRuleError
    │   ├── InsufficientStockError
    │   ├── EmptyCartError
    │   ├── ProductUnavailableError
    │   ├── PriceChangedError
    │   ├── CartLimitError
    │   └── OrderStateError
    ├── AuthError
    │   ├── InvalidCredentialsError
    │   ├── AccountLockedError
    │   ├── AccountDisabledError
    │   ├── InvalidTokenError
    │   ├── TokenRevokedError
    │   ├── TokenExpiredError
    │   ├── IdleExpiredError
    │   └── UserInactiveError
    ├── ConflictError
    └── StorageError
"""
from typing import Optional, Dict, Any


class StorefrontError(Exception):
    """
    Base exception for all storefront errors.

    Attributes:
        message: Human-readable error description (safe to show to clients)
        code: Machine-readable error code for programmatic handling
        details: Additional context for logging
        severity: P0-P3 severity level
        status_code: HTTP status used at the API boundary
    """

    default_code: str = "STOREFRONT_ERROR"
    default_severity: str = "P2"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class RequestValidationError(StorefrontError):
    """Malformed or missing input."""
    default_code = "VALIDATION_ERROR"
    default_severity = "P3"


class NotFoundError(StorefrontError):
    default_code = "NOT_FOUND"
    default_severity = "P3"
    status_code = 404


class PermissionDeniedError(StorefrontError):
    default_code = "FORBIDDEN"
    status_code = 403


# =============================================================================
# BUSINESS RULE ERRORS (never retried)
# =============================================================================

class BusinessRuleError(StorefrontError):
    """Base exception for rejected cart/checkout/inventory operations."""
    default_code = "BUSINESS_RULE_VIOLATION"
    default_severity = "P3"


class InsufficientStockError(BusinessRuleError):
    """Requested quantity exceeds sellable stock and backorder is not allowed."""
    default_code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        message: str,
        sku: Optional[str] = None,
        requested_qty: Optional[int] = None,
        available_qty: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "sku": sku,
            "requested_qty": requested_qty,
            "available_qty": available_qty,
        })
        super().__init__(message, details=details, **kwargs)
        self.available_qty = available_qty


class EmptyCartError(BusinessRuleError):
    default_code = "EMPTY_CART"


class ProductUnavailableError(BusinessRuleError):
    """Product is missing, deleted or not active."""
    default_code = "PRODUCT_UNAVAILABLE"


class PriceChangedError(BusinessRuleError):
    """Live price drifted beyond the allowed variance since the item was carted."""
    default_code = "PRICE_CHANGED"


class CartLimitError(BusinessRuleError):
    default_code = "CART_LIMIT_EXCEEDED"


class OrderStateError(BusinessRuleError):
    """Requested order transition is not allowed from the current status."""
    default_code = "INVALID_ORDER_STATE"

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "current_status": current_status,
            "requested_status": requested_status,
        })
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# AUTH ERRORS
# =============================================================================

class AuthError(StorefrontError):
    """Base exception for authentication and session failures."""
    default_code = "AUTH_ERROR"
    default_severity = "P2"
    status_code = 401


class InvalidCredentialsError(AuthError):
    default_code = "INVALID_CREDENTIALS"


class AccountLockedError(AuthError):
    default_code = "ACCOUNT_LOCKED"
    status_code = 423


class AccountDisabledError(AuthError):
    default_code = "ACCOUNT_DISABLED"
    status_code = 403


class InvalidTokenError(AuthError):
    default_code = "INVALID_TOKEN"


class TokenRevokedError(AuthError):
    """Revoked or already-rotated refresh token was presented (reuse signal)."""
    default_code = "TOKEN_REVOKED"
    default_severity = "P1"


class TokenExpiredError(AuthError):
    default_code = "TOKEN_EXPIRED"


class IdleExpiredError(AuthError):
    default_code = "IDLE_EXPIRED"


class UserInactiveError(AuthError):
    default_code = "USER_INACTIVE"


# =============================================================================
# STORAGE ERRORS
# =============================================================================

class ConflictError(StorefrontError):
    """Transient write conflict that persisted after bounded retries."""
    default_code = "CONFLICT"
    default_severity = "P1"
    status_code = 500

    def __init__(self, message: str = "The request conflicted with another update. Please try again.", attempts: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["attempts"] = attempts
        super().__init__(message, details=details, **kwargs)


class StorageError(StorefrontError):
    """Unexpected persistence failure. Message is always generic."""
    default_code = "STORAGE_ERROR"
    default_severity = "P1"
    status_code = 500
