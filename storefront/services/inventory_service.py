"""
Inventory Service - stock ledger and reservations

Every counter change on a product is a single conditional UPDATE evaluated
by the database, followed by an InventoryLog row in the same transaction.
No code path reads a counter, computes in Python and writes it back.

Reservation lifecycle:
    reserve_stock  (cart add / increase)  reserved += q
    release_stock  (cart remove / expiry) reserved -= q, floored at 0
    commit_sale    (checkout)             quantity -= q, reserved -= q, sales += q
    restore_order_stock (cancellation)    quantity += q, sales -= q

reserve_stock / release_stock are their own units of work and commit.
commit_sale / restore_order_stock run inside the caller's transaction.
"""
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Iterable

from sqlalchemy import select, update, func, and_, or_, case
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import (
    ConflictError,
    InsufficientStockError,
    ProductUnavailableError,
    NotFoundError,
    RequestValidationError,
)
from storefront.core.retry import retry_on_conflict
from storefront.models import Product, ProductStatus, InventoryLog, InventoryLogType

logger = logging.getLogger(__name__)

RELEASE_CAS_ATTEMPTS = 5


@dataclass
class StockResult:
    """Outcome of a reservation attempt."""
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    available_quantity: Optional[int] = None


async def get_product(db: AsyncSession, product_id: int, *, for_update: bool = False) -> Optional[Product]:
    """Fresh read of a product row, bypassing the identity map."""
    stmt = (
        select(Product)
        .where(Product.id == product_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _log_exists(db: AsyncSession, idempotency_key: str) -> bool:
    result = await db.execute(
        select(InventoryLog.id).where(InventoryLog.idempotency_key == idempotency_key)
    )
    return result.first() is not None


def _log(
    db: AsyncSession,
    product_id: int,
    sku: Optional[str],
    log_type: InventoryLogType,
    quantity: int,
    previous: int,
    new: int,
    *,
    reason: Optional[str] = None,
    order_id: Optional[int] = None,
    user_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> InventoryLog:
    entry = InventoryLog(
        product_id=product_id,
        product_sku=sku,
        type=log_type.value,
        quantity=quantity,
        previous_quantity=previous,
        new_quantity=new,
        reason=reason,
        order_id=order_id,
        user_id=user_id,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    return entry


# =============================================================================
# RESERVATIONS
# =============================================================================

async def reserve_stock(
    db: AsyncSession,
    product_id: int,
    quantity: int,
    user_id: Optional[int] = None,
) -> StockResult:
    """
    Hold `quantity` units for a cart.

    The increment only applies when the product is active and either allows
    backorder or has at least `quantity` units available, so two concurrent
    reservations can never take the same last unit.

    Returns:
        StockResult; on INSUFFICIENT_STOCK `available_quantity` carries the
        current sellable figure.
    """
    if quantity <= 0:
        return StockResult(success=False, error="Quantity must be at least 1", code="VALIDATION_ERROR")

    product = await get_product(db, product_id)
    if product is None:
        return StockResult(success=False, error="Product not found", code="NOT_FOUND")
    if not product.is_active:
        return StockResult(
            success=False,
            error=f"Product {product.sku} is not available",
            code="PRODUCT_UNAVAILABLE",
        )
    if not product.track_quantity:
        return StockResult(success=True, available_quantity=product.available_quantity)

    sku = product.sku

    async def attempt():
        result = await db.execute(
            update(Product)
            .where(
                Product.id == product_id,
                Product.status == ProductStatus.ACTIVE.value,
                or_(
                    Product.allow_backorder.is_(True),
                    Product.quantity - Product.reserved_quantity >= quantity,
                ),
            )
            .values(reserved_quantity=Product.reserved_quantity + quantity)
            .returning(Product.reserved_quantity, Product.quantity)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await db.rollback()
            return None

        new_reserved, on_hand = row
        _log(
            db, product_id, sku, InventoryLogType.RESERVED,
            quantity, new_reserved - quantity, new_reserved,
            reason="Added to cart", user_id=user_id,
        )
        await db.commit()
        return max(0, on_hand - new_reserved)

    available = await retry_on_conflict(
        attempt,
        on_retry=lambda exc: db.rollback(),
        label=f"reserve_stock[{product_id}]",
    )

    if available is None:
        current = await get_product(db, product_id)
        available_now = current.available_quantity if current is not None else 0
        logger.info(
            "Reservation refused for %s: requested %d, available %d",
            sku, quantity, available_now,
        )
        return StockResult(
            success=False,
            error=f"Only {available_now} items available in stock",
            code="INSUFFICIENT_STOCK",
            available_quantity=available_now,
        )

    logger.debug("Reserved %d x %s", quantity, sku)
    return StockResult(success=True, available_quantity=available)


async def release_stock(
    db: AsyncSession,
    product_id: int,
    quantity: int,
    user_id: Optional[int] = None,
    reason: Optional[str] = None,
    *,
    commit: bool = True,
) -> int:
    """
    Give back `quantity` reserved units, never taking reserved below zero.

    Failures are logged and swallowed: a lost release only under-reports
    availability until the next cleanup.

    Returns:
        Units actually released.
    """
    if quantity <= 0:
        return 0

    async def finish():
        if commit:
            await db.commit()
        else:
            await db.flush()

    async def attempt():
        for _ in range(RELEASE_CAS_ATTEMPTS):
            product = await get_product(db, product_id, for_update=True)
            if product is None or not product.track_quantity:
                await finish()
                return 0
            previous = product.reserved_quantity or 0
            new_reserved = max(previous - quantity, 0)
            if new_reserved == previous:
                await finish()
                return 0

            # Compare-and-set: applies only if reserved_quantity is still `previous`
            result = await db.execute(
                update(Product)
                .where(Product.id == product_id, Product.reserved_quantity == previous)
                .values(reserved_quantity=new_reserved)
                .returning(Product.reserved_quantity)
                .execution_options(synchronize_session=False)
            )
            if result.first() is None:
                logger.debug(f"reserved_quantity of product {product_id} moved during release, re-reading")
                continue

            released = previous - new_reserved
            _log(
                db, product_id, product.sku, InventoryLogType.RELEASED,
                -released, previous, new_reserved,
                reason=reason or "Removed from cart", user_id=user_id,
            )
            await finish()
            return released

        raise ConflictError(f"Could not release stock of product {product_id}: reservation kept changing")

    try:
        if not commit:
            return await attempt()
        return await retry_on_conflict(
            attempt,
            on_retry=lambda exc: db.rollback(),
            label=f"release_stock[{product_id}]",
        )
    except Exception as e:
        logger.error(f"Failed to release {quantity} units of product {product_id}: {e}")
        if commit:
            await db.rollback()
        return 0


# =============================================================================
# SALES AND RETURNS (caller's transaction)
# =============================================================================

async def commit_sale(
    db: AsyncSession,
    product_id: int,
    quantity: int,
    order_id: int,
    idempotency_key: str,
    user_id: Optional[int] = None,
    sku: Optional[str] = None,
) -> int:
    """
    Convert a reservation into a sale.

    One UPDATE decrements on-hand and reserved (floored at 0), increments
    sales_count and flips the status to out_of_stock when a tracked,
    non-backorder product reaches zero. Backorder sales may drive quantity
    below zero.

    Raises:
        ProductUnavailableError: product row is gone
        InsufficientStockError: not enough on-hand stock and no backorder

    Returns:
        New on-hand quantity.
    """
    tracked = Product.track_quantity.is_(True)
    sellable_out = and_(tracked, Product.allow_backorder.is_(False))

    result = await db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            or_(
                Product.track_quantity.is_(False),
                Product.allow_backorder.is_(True),
                Product.quantity - quantity >= 0,
            ),
        )
        .values(
            quantity=case((tracked, Product.quantity - quantity), else_=Product.quantity),
            reserved_quantity=case(
                (Product.reserved_quantity >= quantity, Product.reserved_quantity - quantity),
                else_=0,
            ),
            sales_count=Product.sales_count + quantity,
            status=case(
                (and_(sellable_out, Product.quantity - quantity <= 0), ProductStatus.OUT_OF_STOCK.value),
                else_=Product.status,
            ),
        )
        .returning(Product.quantity, Product.track_quantity, Product.sku)
        .execution_options(synchronize_session=False)
    )
    row = result.first()

    if row is None:
        product = await get_product(db, product_id)
        if product is None:
            raise ProductUnavailableError(f"Product {sku or product_id} is no longer available")
        raise InsufficientStockError(
            f"Insufficient stock for {product.sku}",
            sku=product.sku,
            requested_qty=quantity,
            available_qty=max(0, product.quantity),
        )

    new_quantity, is_tracked, product_sku = row
    delta = -quantity if is_tracked else 0
    _log(
        db, product_id, product_sku, InventoryLogType.SALE,
        delta, new_quantity - delta, new_quantity,
        reason="Order placed", order_id=order_id, user_id=user_id,
        idempotency_key=f"{idempotency_key}-order-{order_id}-{product_id}",
    )
    await db.flush()
    return new_quantity


async def restore_order_stock(
    db: AsyncSession,
    items: Iterable[Any],
    order_id: int,
    idempotency_key: str,
    user_id: Optional[int] = None,
) -> int:
    """
    Return the stock of cancelled order lines.

    Each line is keyed "{key}-order-{order_id}-cancellation-{product_id}", so
    replaying the same cancellation never restores twice and two orders
    cancelled with the same client key never collide.

    Returns:
        Number of lines restored.
    """
    restored = 0
    for item in items:
        if item.product_id is None:
            continue
        key = f"{idempotency_key}-order-{order_id}-cancellation-{item.product_id}"
        if await _log_exists(db, key):
            logger.info(f"Stock for order {order_id} product {item.product_id} already restored")
            continue

        tracked = Product.track_quantity.is_(True)
        result = await db.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(
                quantity=case((tracked, Product.quantity + item.quantity), else_=Product.quantity),
                sales_count=case(
                    (Product.sales_count >= item.quantity, Product.sales_count - item.quantity),
                    else_=0,
                ),
                status=case(
                    (
                        and_(
                            Product.status == ProductStatus.OUT_OF_STOCK.value,
                            Product.quantity + item.quantity > 0,
                        ),
                        ProductStatus.ACTIVE.value,
                    ),
                    else_=Product.status,
                ),
            )
            .returning(Product.quantity, Product.track_quantity, Product.sku)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            logger.warning(f"Product {item.product_id} vanished before stock restore for order {order_id}")
            continue

        new_quantity, is_tracked, product_sku = row
        delta = item.quantity if is_tracked else 0
        _log(
            db, item.product_id, product_sku, InventoryLogType.RETURN,
            delta, new_quantity - delta, new_quantity,
            reason="Order cancelled", order_id=order_id, user_id=user_id,
            idempotency_key=key,
        )
        restored += 1

    await db.flush()
    return restored


# =============================================================================
# ADMIN OPERATIONS
# =============================================================================

async def restock_product(
    db: AsyncSession,
    product_id: int,
    quantity: int,
    reason: str = "Manual restock",
    user_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Add on-hand stock. A repeated idempotency key returns the current state unchanged."""
    if quantity <= 0:
        raise RequestValidationError("Restock quantity must be positive")

    log_key = f"{idempotency_key}-restock-{product_id}" if idempotency_key else None
    if log_key and await _log_exists(db, log_key):
        logger.info(f"Restock {log_key} already applied")
        return await get_inventory_summary(db, product_id)

    async def attempt():
        result = await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(
                quantity=Product.quantity + quantity,
                status=case(
                    (
                        and_(
                            Product.status == ProductStatus.OUT_OF_STOCK.value,
                            Product.quantity + quantity > 0,
                        ),
                        ProductStatus.ACTIVE.value,
                    ),
                    else_=Product.status,
                ),
            )
            .returning(Product.quantity, Product.sku)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("Product not found")
        new_quantity, sku = row
        _log(
            db, product_id, sku, InventoryLogType.RESTOCK,
            quantity, new_quantity - quantity, new_quantity,
            reason=reason, user_id=user_id, idempotency_key=log_key,
        )
        await db.commit()

    await retry_on_conflict(attempt, on_retry=lambda exc: db.rollback(), label=f"restock[{product_id}]")
    logger.info(f"Restocked product {product_id} with {quantity} units: {reason}")
    return await get_inventory_summary(db, product_id)


async def adjust_stock(
    db: AsyncSession,
    product_id: int,
    delta: int,
    reason: str,
    user_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Signed manual correction of on-hand stock. Never takes quantity below zero."""
    if delta == 0:
        raise RequestValidationError("Adjustment must be non-zero")

    async def attempt():
        result = await db.execute(
            update(Product)
            .where(Product.id == product_id, Product.quantity + delta >= 0)
            .values(
                quantity=Product.quantity + delta,
                status=case(
                    (
                        and_(
                            Product.status == ProductStatus.OUT_OF_STOCK.value,
                            Product.quantity + delta > 0,
                        ),
                        ProductStatus.ACTIVE.value,
                    ),
                    (
                        and_(
                            Product.status == ProductStatus.ACTIVE.value,
                            Product.track_quantity.is_(True),
                            Product.allow_backorder.is_(False),
                            Product.quantity + delta == 0,
                        ),
                        ProductStatus.OUT_OF_STOCK.value,
                    ),
                    else_=Product.status,
                ),
            )
            .returning(Product.quantity, Product.sku)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await db.rollback()
            product = await get_product(db, product_id)
            if product is None:
                raise NotFoundError("Product not found")
            raise RequestValidationError(
                f"Adjustment would take stock below zero (current: {product.quantity})"
            )
        new_quantity, sku = row
        _log(
            db, product_id, sku, InventoryLogType.ADJUSTMENT,
            delta, new_quantity - delta, new_quantity,
            reason=reason, user_id=user_id,
        )
        await db.commit()

    await retry_on_conflict(attempt, on_retry=lambda exc: db.rollback(), label=f"adjust[{product_id}]")
    logger.info(f"Adjusted product {product_id} by {delta:+d}: {reason}")
    return await get_inventory_summary(db, product_id)


# =============================================================================
# QUERIES
# =============================================================================

async def check_availability(db: AsyncSession, product_id: int, quantity: int) -> Dict[str, Any]:
    product = await get_product(db, product_id)
    if product is None:
        return {"available": False, "available_quantity": 0, "reason": "Product not found"}
    if not product.is_active:
        return {"available": False, "available_quantity": 0, "reason": "Product is not available"}
    if not product.track_quantity or product.allow_backorder:
        return {"available": True, "available_quantity": product.available_quantity, "reason": None}
    if product.available_quantity >= quantity:
        return {"available": True, "available_quantity": product.available_quantity, "reason": None}
    return {
        "available": False,
        "available_quantity": product.available_quantity,
        "reason": f"Only {product.available_quantity} items available in stock",
    }


async def get_inventory_summary(db: AsyncSession, product_id: int) -> Dict[str, Any]:
    product = await get_product(db, product_id)
    if product is None:
        raise NotFoundError("Product not found")

    available = product.available_quantity
    return {
        "product_id": product.id,
        "sku": product.sku,
        "status": product.status,
        "quantity": product.quantity,
        "reserved_quantity": product.reserved_quantity,
        "available_quantity": available,
        "low_stock_threshold": product.low_stock_threshold,
        "is_low_stock": product.track_quantity and available <= product.low_stock_threshold,
        "is_out_of_stock": product.track_quantity and not product.allow_backorder and available <= 0,
        "can_purchase": product.is_active and (
            not product.track_quantity or product.allow_backorder or available > 0
        ),
        "track_quantity": product.track_quantity,
        "allow_backorder": product.allow_backorder,
        "location": product.location,
    }


async def list_low_stock(db: AsyncSession, limit: int = 50) -> List[Product]:
    """Tracked active products at or below their low-stock threshold, emptiest first."""
    available = Product.quantity - Product.reserved_quantity
    result = await db.execute(
        select(Product)
        .where(
            Product.track_quantity.is_(True),
            Product.status == ProductStatus.ACTIVE.value,
            available <= Product.low_stock_threshold,
        )
        .order_by(available.asc(), Product.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_inventory_logs(
    db: AsyncSession,
    product_id: Optional[int] = None,
    order_id: Optional[int] = None,
    log_type: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    filters = []
    if product_id is not None:
        filters.append(InventoryLog.product_id == product_id)
    if order_id is not None:
        filters.append(InventoryLog.order_id == order_id)
    if log_type:
        filters.append(InventoryLog.type == log_type)

    total = (await db.execute(
        select(func.count(InventoryLog.id)).where(*filters)
    )).scalar_one()

    result = await db.execute(
        select(InventoryLog)
        .where(*filters)
        .order_by(InventoryLog.created_at.desc(), InventoryLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "logs": list(result.scalars().all()),
        "total": total,
        "page": page,
        "limit": limit,
    }
