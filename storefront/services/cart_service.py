"""
Cart Service

A cart is owned by a user or by a guest session (session-id cookie). Every
quantity change goes through the inventory service first: the cart is only
mutated after the reservation succeeds, and totals are recalculated on every
mutation.

Totals:
    subtotal = sum(price x quantity)
    shipping = 0 if cart empty or subtotal >= FREE_SHIPPING_THRESHOLD
    tax      = round_half_up(subtotal x TAX_RATE, 2)
    total    = subtotal + tax + shipping - discount
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Iterable, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.core.config import settings
from storefront.core.exceptions import (
    CartLimitError,
    InsufficientStockError,
    NotFoundError,
    ProductUnavailableError,
    RequestValidationError,
)
from storefront.core.utils import utcnow, to_money
from storefront.models import Cart, CartItem
from storefront.services import inventory_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartOwner:
    """Exactly one of user_id / session_id is set."""
    user_id: Optional[int] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if (self.user_id is None) == (self.session_id is None):
            raise ValueError("CartOwner needs exactly one of user_id or session_id")

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


@dataclass
class CartTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


def _field(item: Any, name: str):
    if isinstance(item, dict):
        return item[name]
    return getattr(item, name)


def calculate_totals(items: Iterable[Any], discount: Any = 0) -> CartTotals:
    """Pure totals calculation over anything exposing price and quantity."""
    lines = list(items)
    subtotal = to_money(sum(
        (Decimal(str(_field(i, "price"))) * int(_field(i, "quantity")) for i in lines),
        Decimal("0"),
    ))

    if not lines or subtotal >= Decimal(str(settings.FREE_SHIPPING_THRESHOLD)):
        shipping = Decimal("0.00")
    else:
        shipping = to_money(settings.DEFAULT_SHIPPING_COST)

    if settings.CALCULATE_TAX:
        tax = to_money(subtotal * Decimal(str(settings.TAX_RATE)))
    else:
        tax = Decimal("0.00")

    discount = to_money(discount or 0)
    total = to_money(subtotal + tax + shipping - discount)
    return CartTotals(subtotal=subtotal, tax=tax, shipping=shipping, discount=discount, total=total)


def exceeds_price_variance(carted_price: Any, live_price: Any) -> bool:
    """True when the live price moved more than PRICE_VARIANCE_THRESHOLD from the carted one."""
    carted = Decimal(str(carted_price))
    live = Decimal(str(live_price))
    if carted <= 0:
        return carted != live
    return abs(live - carted) / carted > Decimal(str(settings.PRICE_VARIANCE_THRESHOLD))


def apply_totals(cart: Cart) -> Cart:
    """Recompute line subtotals and cart totals in place; refresh guest expiry."""
    for line in cart.items:
        line.subtotal = to_money(Decimal(str(line.price)) * line.quantity)
    totals = calculate_totals(cart.items, cart.discount)
    cart.subtotal = totals.subtotal
    cart.tax = totals.tax
    cart.shipping = totals.shipping
    cart.discount = totals.discount
    cart.total = totals.total
    if cart.session_id is not None:
        cart.expires_at = utcnow() + timedelta(days=settings.GUEST_CART_EXPIRATION_DAYS)
    cart.updated_at = utcnow()
    return cart


class CartService:
    """Cart aggregate operations. All methods take the request's session."""

    @staticmethod
    async def get_cart(db: AsyncSession, owner: CartOwner, *, for_update: bool = False) -> Optional[Cart]:
        if owner.is_guest:
            condition = Cart.session_id == owner.session_id
        else:
            condition = Cart.user_id == owner.user_id
        stmt = (
            select(Cart)
            .where(condition)
            .options(selectinload(Cart.items))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update(of=Cart)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_or_create_cart(db: AsyncSession, owner: CartOwner) -> Cart:
        cart = await CartService.get_cart(db, owner)
        if cart is not None:
            return cart

        cart = Cart(
            user_id=owner.user_id,
            session_id=owner.session_id,
            currency=settings.STORE_CURRENCY,
            items=[],
        )
        apply_totals(cart)
        db.add(cart)
        try:
            await db.flush()
        except IntegrityError:
            # Concurrent request created the same owner's cart
            await db.rollback()
            cart = await CartService.get_cart(db, owner)
            if cart is None:
                raise
        return cart

    @staticmethod
    def _find_line(cart: Optional[Cart], product_id: int) -> Optional[CartItem]:
        if cart is None:
            return None
        return next((line for line in cart.items if line.product_id == product_id), None)

    @staticmethod
    def _raise_reservation_failure(result, sku: str, quantity: int):
        if result.code == "INSUFFICIENT_STOCK":
            raise InsufficientStockError(
                result.error,
                sku=sku,
                requested_qty=quantity,
                available_qty=result.available_quantity,
            )
        if result.code == "NOT_FOUND":
            raise NotFoundError("Product not found")
        raise ProductUnavailableError(result.error or f"Product {sku} is not available")

    @staticmethod
    async def add_item(db: AsyncSession, owner: CartOwner, product_id: int, quantity: int) -> Cart:
        """
        Add `quantity` of a product, merging into an existing line.

        Stock is reserved before the cart is touched; a failed reservation
        leaves the cart exactly as it was.
        """
        max_qty = settings.MAX_QUANTITY_PER_ITEM
        if quantity < 1 or quantity > max_qty:
            raise RequestValidationError(f"Quantity must be between 1 and {max_qty}")

        product = await inventory_service.get_product(db, product_id)
        if product is None:
            raise NotFoundError("Product not found")
        if not product.is_active:
            raise ProductUnavailableError(f"Product {product.sku} is not available")
        sku = product.sku

        cart = await CartService.get_cart(db, owner)
        line = CartService._find_line(cart, product_id)
        if line is not None and line.quantity + quantity > max_qty:
            raise CartLimitError(f"Maximum {max_qty} units per product")
        if line is None and cart is not None and len(cart.items) >= settings.MAX_CART_ITEMS:
            raise CartLimitError(f"Cart cannot hold more than {settings.MAX_CART_ITEMS} items")

        reservation = await inventory_service.reserve_stock(db, product_id, quantity, user_id=owner.user_id)
        if not reservation.success:
            CartService._raise_reservation_failure(reservation, sku, quantity)

        try:
            cart = await CartService.get_or_create_cart(db, owner)
            product = await inventory_service.get_product(db, product_id)
            line = CartService._find_line(cart, product_id)
            if line is not None:
                line.quantity += quantity
            else:
                cart.items.append(CartItem(
                    product_id=product.id,
                    sku=product.sku,
                    title=product.title,
                    image=product.primary_image,
                    price=product.price,
                    quantity=quantity,
                ))
            apply_totals(cart)
            await db.commit()
        except Exception:
            await db.rollback()
            await inventory_service.release_stock(
                db, product_id, quantity, user_id=owner.user_id, reason="Cart update failed"
            )
            raise

        logger.info(f"Cart {cart.id}: added {quantity} x {sku}")
        return await CartService.get_cart(db, owner)

    @staticmethod
    async def update_item(db: AsyncSession, owner: CartOwner, product_id: int, quantity: int) -> Cart:
        """Set a line's quantity. Zero removes the line."""
        max_qty = settings.MAX_QUANTITY_PER_ITEM
        if quantity < 0 or quantity > max_qty:
            raise RequestValidationError(f"Quantity must be between 0 and {max_qty}")
        if quantity == 0:
            return await CartService.remove_item(db, owner, product_id)

        cart = await CartService.get_cart(db, owner)
        if cart is None:
            raise NotFoundError("Cart not found")
        line = CartService._find_line(cart, product_id)
        if line is None:
            raise NotFoundError("Item not found in cart")

        delta = quantity - line.quantity
        sku = line.sku
        if delta > 0:
            reservation = await inventory_service.reserve_stock(db, product_id, delta, user_id=owner.user_id)
            if not reservation.success:
                CartService._raise_reservation_failure(reservation, sku, delta)
        elif delta < 0:
            await inventory_service.release_stock(
                db, product_id, -delta, user_id=owner.user_id, reason="Cart quantity reduced"
            )

        cart = await CartService.get_cart(db, owner)
        line = CartService._find_line(cart, product_id)
        line.quantity = quantity

        product = await inventory_service.get_product(db, product_id)
        if product is not None and exceeds_price_variance(line.price, product.price):
            logger.info(f"Re-pricing {line.sku} in cart {cart.id}: {line.price} -> {product.price}")
            line.price = product.price
            line.sku = product.sku
            line.title = product.title
            line.image = product.primary_image

        apply_totals(cart)
        await db.commit()
        return await CartService.get_cart(db, owner)

    @staticmethod
    async def remove_item(db: AsyncSession, owner: CartOwner, product_id: int) -> Cart:
        cart = await CartService.get_cart(db, owner)
        line = CartService._find_line(cart, product_id)
        if line is None:
            raise NotFoundError("Item not found in cart")

        await inventory_service.release_stock(
            db, product_id, line.quantity, user_id=owner.user_id, reason="Removed from cart"
        )

        cart = await CartService.get_cart(db, owner)
        line = CartService._find_line(cart, product_id)
        if line is not None:
            cart.items.remove(line)
        apply_totals(cart)
        await db.commit()
        return await CartService.get_cart(db, owner)

    @staticmethod
    async def clear_cart(db: AsyncSession, owner: CartOwner) -> Optional[Cart]:
        """Release every line's reservation and empty the cart."""
        cart = await CartService.get_cart(db, owner)
        if cart is None:
            return None

        lines = [(line.product_id, line.quantity) for line in cart.items]
        for product_id, quantity in lines:
            await inventory_service.release_stock(
                db, product_id, quantity, user_id=owner.user_id, reason="Cart cleared"
            )

        cart = await CartService.get_cart(db, owner)
        cart.items.clear()
        apply_totals(cart)
        await db.commit()
        logger.info(f"Cart {cart.id} cleared ({len(lines)} lines released)")
        return await CartService.get_cart(db, owner)


cart_service = CartService()
