"""
Order routes
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_current_user, get_current_staff
from storefront.core.config import settings
from storefront.core.database import get_db
from storefront.core.rate_limit import limiter
from storefront.models import User
from storefront.schemas.order import (
    OrderCancel,
    OrderCreate,
    OrderEnvelope,
    OrderList,
    OrderResponse,
    OrderStatusUpdate,
    PaymentStatusUpdate,
)
from storefront.services.order_service import order_service

logger = logging.getLogger(__name__)

router = APIRouter()

# Failure codes that are the server's fault rather than the request's
SERVER_ERROR_CODES = {"CONFLICT", "STORAGE_ERROR", "INTERNAL_ERROR"}


@router.post("", response_model=OrderEnvelope, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def create_order(
    request: Request,
    order_data: OrderCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Place an order from the current user's cart"""
    result = await order_service.create_order(
        db,
        user_id=user.id,
        shipping_address=order_data.shipping_address.model_dump(),
        billing_address=order_data.billing_address.model_dump(),
        payment_method=order_data.payment_method.value,
        idempotency_key=order_data.idempotency_key,
        customer_notes=order_data.customer_notes,
    )

    if not result.success:
        status_code = 500 if result.code in SERVER_ERROR_CODES else 400
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": result.error, "code": result.code},
        )

    envelope = OrderEnvelope(
        message=result.message,
        order=OrderResponse.model_validate(result.order),
    )
    if result.already_exists:
        return JSONResponse(status_code=200, content=envelope.model_dump(mode="json", by_alias=True))
    return envelope


@router.get("", response_model=OrderList)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get current user's orders"""
    return await order_service.list_orders(db, user.id, page=page, limit=limit, status=status_filter)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get single order"""
    return await order_service.get_order(db, None if user.is_staff else user.id, order_id)


@router.post("/{order_id}/cancel", response_model=OrderEnvelope)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def cancel_order(
    request: Request,
    order_id: int,
    body: Optional[OrderCancel] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    body = body or OrderCancel()
    result = await order_service.cancel_order(
        db,
        None if user.is_staff else user.id,
        order_id,
        reason=body.reason,
        idempotency_key=body.idempotency_key,
    )
    return OrderEnvelope(message=result.message, order=OrderResponse.model_validate(result.order))


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    """Admin: move an order through fulfilment"""
    return await order_service.update_status(
        db, order_id, body.status.value, tracking_number=body.tracking_number, actor_id=staff.id
    )


@router.patch("/{order_id}/payment-status", response_model=OrderResponse)
async def update_payment_status(
    order_id: int,
    body: PaymentStatusUpdate,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    """Admin: record a payment outcome"""
    logger.info(f"Staff {staff.id} setting payment status of order {order_id} to {body.payment_status.value}")
    return await order_service.update_payment_status(db, order_id, body.payment_status.value)
