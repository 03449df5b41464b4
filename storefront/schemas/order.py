"""
Order schemas
"""
from datetime import datetime
from typing import List, Optional
from pydantic import Field, field_validator, model_validator
import re

from storefront.models.order import PaymentMethod, OrderStatus, PaymentStatus
from storefront.schemas.base import CamelModel


class Address(CamelModel):
    """Postal address captured at checkout."""
    full_name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=7, max_length=20)
    address_line1: str = Field(..., min_length=1, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., min_length=3, max_length=12)
    country: str = Field("India", min_length=2, max_length=100)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        digits = re.sub(r'\D', '', v)
        if len(digits) < 10 or len(digits) > 15:
            raise ValueError("Phone number must be 10-15 digits")
        return v


class OrderCreate(CamelModel):
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod
    idempotency_key: Optional[str] = Field(None, min_length=8, max_length=200)
    customer_notes: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def default_billing_to_shipping(self):
        if self.billing_address is None:
            self.billing_address = self.shipping_address
        return self


class OrderCancel(CamelModel):
    reason: Optional[str] = Field(None, max_length=500)
    idempotency_key: Optional[str] = Field(None, min_length=8, max_length=200)


class OrderStatusUpdate(CamelModel):
    status: OrderStatus
    tracking_number: Optional[str] = Field(None, max_length=100)


class PaymentStatusUpdate(CamelModel):
    payment_status: PaymentStatus


class OrderItemResponse(CamelModel):
    product_id: Optional[int] = None
    product_sku: str
    product_title: str
    image: Optional[str] = None
    price: float
    quantity: int
    total: float


class OrderResponse(CamelModel):
    id: int
    order_number: str
    status: str
    payment_status: str
    payment_method: str
    subtotal: float
    tax: float
    shipping: float
    discount: float
    total: float
    currency: str
    items: List[OrderItemResponse] = []
    shipping_address: dict
    billing_address: dict
    customer_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class OrderEnvelope(CamelModel):
    success: bool = True
    message: Optional[str] = None
    order: OrderResponse


class OrderList(CamelModel):
    orders: List[OrderResponse]
    total: int
    page: int
    limit: int
    pages: int
