"""
Guest cart merge on login

Folds the guest session's cart into the user's cart. Reservations already
held by the guest lines carry over unchanged; only lines that are dropped
give their reservation back.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models import CartItem
from storefront.services import inventory_service
from storefront.services.cart_service import CartOwner, CartService, apply_totals

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    merged: bool = False
    items_merged: int = 0
    items_dropped: int = 0


async def _release_dropped(db: AsyncSession, line: CartItem) -> None:
    await inventory_service.release_stock(
        db, line.product_id, line.quantity, reason="Dropped on cart merge", commit=False
    )


async def merge_guest_cart_into_user(db: AsyncSession, user_id: int, session_id: str) -> MergeResult:
    """
    Merge the cart of `session_id` into the cart of `user_id`.

    - No user cart: the guest cart is relabelled to the user
    - Existing user cart: overlapping lines are summed at the live price,
      guest-only lines are copied, the guest cart is deleted
    - Lines whose product is gone or inactive are dropped
    """
    if not session_id:
        return MergeResult()

    guest_cart = await CartService.get_cart(db, CartOwner(session_id=session_id))
    if guest_cart is None or not guest_cart.items:
        return MergeResult()

    user_cart = await CartService.get_cart(db, CartOwner(user_id=user_id))
    result = MergeResult(merged=True)

    if user_cart is None:
        for line in list(guest_cart.items):
            product = await inventory_service.get_product(db, line.product_id)
            if product is None or not product.is_active:
                await _release_dropped(db, line)
                guest_cart.items.remove(line)
                result.items_dropped += 1
            else:
                result.items_merged += 1

        if not guest_cart.items:
            await db.delete(guest_cart)
            await db.commit()
            logger.info(f"Guest cart for user {user_id} had no purchasable items; deleted")
            return result

        guest_cart.session_id = None
        guest_cart.user_id = user_id
        guest_cart.expires_at = None
        apply_totals(guest_cart)
        await db.commit()
        logger.info(f"Guest cart {guest_cart.id} relabelled to user {user_id}")
        return result

    existing = {line.product_id: line for line in user_cart.items}
    for line in guest_cart.items:
        product = await inventory_service.get_product(db, line.product_id)
        if product is None or not product.is_active:
            await _release_dropped(db, line)
            result.items_dropped += 1
            continue

        target = existing.get(line.product_id)
        if target is None:
            target = CartItem(
                product_id=product.id,
                quantity=line.quantity,
            )
            user_cart.items.append(target)
            existing[product.id] = target
        else:
            target.quantity += line.quantity

        target.price = product.price
        target.sku = product.sku
        target.title = product.title
        target.image = product.primary_image
        result.items_merged += 1

    apply_totals(user_cart)
    await db.delete(guest_cart)
    await db.commit()

    logger.info(
        f"Merged guest cart into user {user_id}: "
        f"{result.items_merged} merged, {result.items_dropped} dropped"
    )
    return result
