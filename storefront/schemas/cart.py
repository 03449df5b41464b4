"""
Cart schemas
"""
from typing import List, Optional
from pydantic import Field

from storefront.schemas.base import CamelModel


class CartItemAdd(CamelModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(1, ge=1)


class CartItemUpdate(CamelModel):
    quantity: int = Field(..., ge=0)


class CartItemResponse(CamelModel):
    product_id: int
    sku: str
    title: str
    image: Optional[str] = None
    price: float
    quantity: int
    subtotal: float


class CartResponse(CamelModel):
    id: Optional[int] = None
    items: List[CartItemResponse] = []
    subtotal: float = 0
    tax: float = 0
    shipping: float = 0
    discount: float = 0
    total: float = 0
    currency: str = "INR"
    item_count: int = 0


class CartEnvelope(CamelModel):
    success: bool = True
    message: Optional[str] = None
    cart: Optional[CartResponse] = None
