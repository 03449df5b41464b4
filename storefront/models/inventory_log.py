"""
Inventory log model - append-only audit of every stock mutation

- sale / restock / adjustment / return rows measure on-hand quantity
- reserved / released rows measure reserved_quantity
- new_quantity = previous_quantity + quantity (signed delta)
- idempotency_key is unique when present: a replayed write fails on the
  constraint instead of applying twice
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from storefront.core.database import Base
from storefront.core.utils import utcnow


class InventoryLogType(str, enum.Enum):
    SALE = "sale"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    RESERVED = "reserved"
    RELEASED = "released"


class InventoryLog(Base):
    """Immutable record of a stock counter change"""
    __tablename__ = "inventory_logs"

    id = Column(Integer, primary_key=True, index=True)

    product_id = Column(
        Integer,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_sku = Column(String(64), nullable=True)

    type = Column(String(20), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)

    reason = Column(String(255), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    idempotency_key = Column(String(255), unique=True, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True
    )

    product = relationship("Product", back_populates="inventory_logs")

    __table_args__ = (
        CheckConstraint(
            "type IN ('sale', 'restock', 'adjustment', 'return', 'reserved', 'released')",
            name="chk_inventory_log_type"
        ),
        CheckConstraint(
            "new_quantity = previous_quantity + quantity",
            name="chk_inventory_log_delta"
        ),
        Index("ix_inventory_logs_product_created", product_id, created_at.desc()),
    )

    def __repr__(self):
        return f"<InventoryLog {self.id}: {self.type} {self.quantity:+d} on product {self.product_id}>"
