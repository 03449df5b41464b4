"""
Order models

Orders are created once per successful checkout and are immutable apart
from the status / payment_status state machine, shipping metadata and
cancellation fields. Items are a frozen snapshot of the cart lines.

Order numbers come from OrderCounter, an atomic per-year sequence:
ORD-2025-000042.
"""
import enum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, JSON, Numeric, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, enum.Enum):
    RAZORPAY = "razorpay"
    COD = "cod"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.REFUNDED.value,
})


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    order_number = Column(String(32), unique=True, index=True, nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(20), nullable=False)

    subtotal = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    shipping = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")

    shipping_address = Column(JSON, nullable=False)
    billing_address = Column(JSON, nullable=False)
    customer_notes = Column(Text, nullable=True)
    tracking_number = Column(String(100), nullable=True)

    idempotency_key = Column(String(255), nullable=False)
    cancellation_key = Column(String(255), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),
        Index("ix_orders_user_created", "user_id", "created_at"),
        Index("ix_orders_cancellation_key", "user_id", "cancellation_key"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)

    # Snapshot of product at time of order
    product_sku = Column(String(64), nullable=False)
    product_title = Column(String(255), nullable=False)
    image = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    total = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class OrderCounter(Base):
    """Named monotonically increasing sequence (one row per year)."""
    __tablename__ = "order_counters"

    name = Column(String(32), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
