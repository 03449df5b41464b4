"""
Inventory schemas
"""
from datetime import datetime
from typing import List, Optional
from pydantic import Field

from storefront.schemas.base import CamelModel


class RestockRequest(CamelModel):
    quantity: int = Field(..., gt=0, le=100000)
    reason: str = Field("Manual restock", max_length=255)
    idempotency_key: Optional[str] = Field(None, max_length=200)


class AdjustRequest(CamelModel):
    delta: int
    reason: str = Field(..., min_length=1, max_length=255)


class InventorySummary(CamelModel):
    product_id: int
    sku: str
    status: str
    quantity: int
    reserved_quantity: int
    available_quantity: int
    low_stock_threshold: int
    is_low_stock: bool
    is_out_of_stock: bool
    can_purchase: bool
    track_quantity: bool
    allow_backorder: bool
    location: Optional[str] = None


class LowStockItem(CamelModel):
    id: int
    sku: str
    title: str
    quantity: int
    reserved_quantity: int
    available_quantity: int
    low_stock_threshold: int


class InventoryLogResponse(CamelModel):
    id: int
    product_id: int
    product_sku: Optional[str] = None
    type: str
    quantity: int
    previous_quantity: int
    new_quantity: int
    reason: Optional[str] = None
    order_id: Optional[int] = None
    user_id: Optional[int] = None
    created_at: datetime


class InventoryLogList(CamelModel):
    logs: List[InventoryLogResponse]
    total: int
    page: int
    limit: int
