"""
Product model

Inventory counters live on the product row:
- quantity: on-hand units
- reserved_quantity: units held by carts, not yet sold
- available = max(0, quantity - reserved_quantity) is the sellable figure

Counters are only ever mutated through conditional UPDATE statements in
services.inventory_service. reserved_quantity may exceed quantity when
backorder is allowed; quantity itself is unconstrained so a backorder sale
can drive it below zero.
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, CheckConstraint, Index
from sqlalchemy.orm import relationship

from storefront.core.database import Base


class ProductStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), unique=True, index=True, nullable=False)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, index=True, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    primary_image = Column(String, nullable=True)
    status = Column(String(20), nullable=False, default=ProductStatus.ACTIVE.value, index=True)

    # Inventory
    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    track_quantity = Column(Boolean, nullable=False, default=True)
    allow_backorder = Column(Boolean, nullable=False, default=False)
    location = Column(String(100), nullable=True)
    sales_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    inventory_logs = relationship("InventoryLog", back_populates="product")

    __table_args__ = (
        CheckConstraint("reserved_quantity >= 0", name="check_reserved_non_negative"),
        CheckConstraint("price > 0", name="check_price_positive"),
        CheckConstraint(
            "status IN ('draft', 'active', 'inactive', 'out_of_stock')",
            name="check_product_status",
        ),
        Index("ix_products_status_stock", "status", "track_quantity"),
    )

    def __repr__(self):
        return f"<Product(id={self.id}, sku='{self.sku}', qty={self.quantity}, reserved={self.reserved_quantity})>"

    @property
    def available_quantity(self) -> int:
        return max(0, (self.quantity or 0) - (self.reserved_quantity or 0))

    @property
    def is_active(self) -> bool:
        return self.status == ProductStatus.ACTIVE.value
