"""
Guest Cart Cleanup Service

Background job that deletes guest carts past their expires_at and gives
their reserved stock back. Run periodically by the app lifespan scheduler
(see main.py) or standalone:

    python -m storefront.services.cart_cleanup
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.utils import utcnow
from storefront.models import Cart
from storefront.services import inventory_service

logger = logging.getLogger(__name__)


async def cleanup_expired_guest_carts(
    db: AsyncSession,
    now: Optional[datetime] = None,
    batch_size: int = 100,
) -> dict:
    """
    Release stock held by expired guest carts and delete them.

    Each cart is its own transaction; one failing cart does not stop the run.

    Returns:
        dict with processed carts, units released and error count
    """
    stats = {
        "processed": 0,
        "stock_released": 0,
        "errors": 0,
    }
    cutoff = now or utcnow()

    result = await db.execute(
        select(Cart.id)
        .where(
            Cart.user_id.is_(None),
            Cart.expires_at.is_not(None),
            Cart.expires_at < cutoff,
        )
        .order_by(Cart.expires_at)
        .limit(batch_size)
    )
    cart_ids = list(result.scalars().all())

    if not cart_ids:
        logger.debug("No expired guest carts to clean up")
        return stats

    for cart_id in cart_ids:
        try:
            cart = (await db.execute(
                select(Cart)
                .where(Cart.id == cart_id)
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()
            if cart is None:
                continue

            released = 0
            for line in list(cart.items):
                released += await inventory_service.release_stock(
                    db,
                    line.product_id,
                    line.quantity,
                    reason="Guest cart expired",
                    commit=False,
                )

            await db.delete(cart)
            await db.commit()
            stats["processed"] += 1
            stats["stock_released"] += released
        except Exception as e:
            logger.error(f"Error cleaning up guest cart {cart_id}: {e}")
            stats["errors"] += 1
            await db.rollback()

    logger.info(
        f"Cleaned up {stats['processed']} expired guest carts, "
        f"released {stats['stock_released']} units ({stats['errors']} errors)"
    )
    return stats


# For running as standalone script
if __name__ == "__main__":
    import asyncio

    from storefront.core.database import get_db_session

    async def main():
        async with get_db_session() as db:
            stats = await cleanup_expired_guest_carts(db)
        print(f"Cleanup complete: {stats}")

    asyncio.run(main())
