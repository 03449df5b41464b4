"""
Inventory routes (admin/staff)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_current_staff
from storefront.core.database import get_db
from storefront.models import User
from storefront.schemas.inventory import (
    AdjustRequest,
    InventoryLogList,
    InventorySummary,
    LowStockItem,
    RestockRequest,
)
from storefront.services import inventory_service

router = APIRouter()


@router.get("/low-stock", response_model=List[LowStockItem])
async def low_stock(
    limit: int = Query(50, ge=1, le=500),
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    return await inventory_service.list_low_stock(db, limit=limit)


@router.get("/logs", response_model=InventoryLogList)
async def inventory_logs(
    product_id: Optional[int] = Query(None, alias="productId"),
    order_id: Optional[int] = Query(None, alias="orderId"),
    log_type: Optional[str] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    return await inventory_service.list_inventory_logs(
        db, product_id=product_id, order_id=order_id, log_type=log_type, page=page, limit=limit
    )


@router.get("/{product_id}", response_model=InventorySummary)
async def get_inventory(
    product_id: int,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    return await inventory_service.get_inventory_summary(db, product_id)


@router.post("/{product_id}/restock", response_model=InventorySummary)
async def restock(
    product_id: int,
    body: RestockRequest,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    return await inventory_service.restock_product(
        db,
        product_id,
        body.quantity,
        reason=body.reason,
        user_id=staff.id,
        idempotency_key=body.idempotency_key,
    )


@router.post("/{product_id}/adjust", response_model=InventorySummary)
async def adjust(
    product_id: int,
    body: AdjustRequest,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    return await inventory_service.adjust_stock(db, product_id, body.delta, body.reason, user_id=staff.id)
