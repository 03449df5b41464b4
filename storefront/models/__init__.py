from storefront.models.user import User, UserRole
from storefront.models.product import Product, ProductStatus
from storefront.models.inventory_log import InventoryLog, InventoryLogType
from storefront.models.cart import Cart, CartItem
from storefront.models.order import (
    Order,
    OrderItem,
    OrderCounter,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
    TERMINAL_STATUSES,
)
from storefront.models.refresh_token import RefreshToken

__all__ = [
    "User",
    "UserRole",
    "Product",
    "ProductStatus",
    "InventoryLog",
    "InventoryLogType",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderCounter",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "TERMINAL_STATUSES",
    "RefreshToken",
]
