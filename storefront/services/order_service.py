"""
Order Service - checkout and order lifecycle

create_order turns the user's cart into an order in one transaction:

    1. Idempotency lookup on (user_id, idempotency_key)
    2. Lock the cart and re-validate every line against the live product
    3. Claim the cart lines (delete them); zero matches means another
       checkout of the same cart got there first
    4. Allocate an order number, insert order + items, commit each line's
       sale on the stock ledger
    5. Bump the user's order statistics, commit

Any failure rolls the whole thing back, so stock, cart and order stay
consistent. Storage conflicts are retried by core.retry; business rule
violations surface to the caller on the first attempt.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from sqlalchemy import delete, select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from storefront.core.exceptions import (
    StorefrontError,
    BusinessRuleError,
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    NotFoundError,
    OrderStateError,
    PermissionDeniedError,
    PriceChangedError,
    ProductUnavailableError,
    RequestValidationError,
    StorageError,
)
from storefront.core.retry import retry_on_conflict
from storefront.core.utils import utcnow, to_money, generate_idempotency_key
from storefront.models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderCounter,
    OrderStatus,
    PaymentStatus,
    ProductStatus,
    TERMINAL_STATUSES,
    User,
)
from storefront.services import inventory_service
from storefront.services.cart_service import (
    CartOwner,
    cart_service,
    apply_totals,
    calculate_totals,
    exceeds_price_variance,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
}

CANCELLABLE_STATUSES = {OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value}


@dataclass
class OrderCreationResult:
    success: bool
    order: Optional[Order] = None
    order_number: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
    already_exists: bool = False

    @property
    def message(self) -> str:
        if not self.success:
            return self.error or "Failed to create order"
        if self.already_exists:
            return "Order already processed"
        return "Order created successfully"


@dataclass
class OrderCancellationResult:
    order: Order
    already_processed: bool = False

    @property
    def message(self) -> str:
        if self.already_processed:
            return "Order cancellation already processed"
        return "Order cancelled successfully"


class OrderService:
    """Checkout engine and order state machine."""

    @staticmethod
    async def _load_order(db: AsyncSession, order_id: int) -> Optional[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_by_idempotency_key(
        db: AsyncSession, user_id: int, idempotency_key: str
    ) -> Optional[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.user_id == user_id, Order.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # ORDER NUMBERS
    # =========================================================================

    @staticmethod
    async def _increment_counter(db: AsyncSession, name: str) -> int:
        """Atomically bump a named counter, creating it at 1."""
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            insert = None

        if insert is not None:
            stmt = (
                insert(OrderCounter)
                .values(name=name, value=1)
                .on_conflict_do_update(
                    index_elements=[OrderCounter.name],
                    set_={"value": OrderCounter.value + 1},
                )
                .returning(OrderCounter.value)
            )
            return (await db.execute(stmt)).scalar_one()

        result = await db.execute(
            update(OrderCounter)
            .where(OrderCounter.name == name)
            .values(value=OrderCounter.value + 1)
            .returning(OrderCounter.value)
            .execution_options(synchronize_session=False)
        )
        value = result.scalar_one_or_none()
        if value is None:
            db.add(OrderCounter(name=name, value=1))
            await db.flush()
            value = 1
        return value

    @staticmethod
    async def generate_order_number(db: AsyncSession) -> str:
        """ORD-{year}-{6-digit sequence}; redraws if the number is somehow taken."""
        year = utcnow().year
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            value = await OrderService._increment_counter(db, f"order-{year}")
            order_number = f"ORD-{year}-{value:06d}"
            taken = await db.execute(select(Order.id).where(Order.order_number == order_number))
            if taken.first() is None:
                return order_number
            logger.warning(f"Order number {order_number} already in use, drawing another")
        raise StorageError("Could not allocate an order number")

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    @staticmethod
    async def _claim_cart_lines(db: AsyncSession, cart: Cart, lines: List[CartItem]) -> None:
        """
        Delete the lines being checked out inside the order transaction.

        A second checkout of the same cart that read the same lines matches
        none of them once the first commits, and rolls back.
        """
        claimed = await db.execute(
            delete(CartItem)
            .where(CartItem.id.in_([line.id for line in lines]))
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            raise EmptyCartError("Cart is empty")
        if claimed.rowcount != len(lines):
            raise ConflictError("Your cart changed during checkout. Please try again.")

        for line in lines:
            db.expunge(line)
        set_committed_value(cart, "items", [])
        apply_totals(cart)

    @staticmethod
    async def _place_order(
        db: AsyncSession,
        user_id: int,
        shipping_address: Dict[str, Any],
        billing_address: Dict[str, Any],
        payment_method: str,
        idempotency_key: str,
        customer_notes: Optional[str],
    ) -> Order:
        cart = await cart_service.get_cart(db, CartOwner(user_id=user_id), for_update=True)
        if cart is None or not cart.items:
            raise EmptyCartError("Cart is empty")
        lines = list(cart.items)

        for line in lines:
            product = await inventory_service.get_product(db, line.product_id)
            if product is None or product.status not in (
                ProductStatus.ACTIVE.value, ProductStatus.OUT_OF_STOCK.value
            ):
                raise ProductUnavailableError(f"Product {line.sku} is no longer available")
            if product.status == ProductStatus.OUT_OF_STOCK.value:
                raise InsufficientStockError(
                    f"Insufficient stock for {line.sku}",
                    sku=line.sku,
                    requested_qty=line.quantity,
                    available_qty=product.available_quantity,
                )
            if exceeds_price_variance(line.price, product.price):
                raise PriceChangedError(f"Price has changed for {line.sku}. Please refresh your cart.")

        totals = calculate_totals(lines, cart.discount)
        if totals.total <= 0:
            raise BusinessRuleError("Order total must be greater than zero")

        await OrderService._claim_cart_lines(db, cart, lines)

        order = Order(
            user_id=user_id,
            order_number=await OrderService.generate_order_number(db),
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=payment_method,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping=totals.shipping,
            discount=totals.discount,
            total=totals.total,
            currency=cart.currency,
            shipping_address=shipping_address,
            billing_address=billing_address,
            customer_notes=customer_notes,
            idempotency_key=idempotency_key,
            items=[
                OrderItem(
                    product_id=line.product_id,
                    product_sku=line.sku,
                    product_title=line.title,
                    image=line.image,
                    price=line.price,
                    quantity=line.quantity,
                    total=to_money(line.price * line.quantity),
                )
                for line in lines
            ],
        )
        db.add(order)
        await db.flush()

        for line in lines:
            await inventory_service.commit_sale(
                db,
                line.product_id,
                line.quantity,
                order_id=order.id,
                idempotency_key=idempotency_key,
                user_id=user_id,
                sku=line.sku,
            )

        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                total_orders=User.total_orders + 1,
                total_spent=User.total_spent + totals.total,
            )
            .execution_options(synchronize_session=False)
        )

        await db.commit()
        return order

    @staticmethod
    async def create_order(
        db: AsyncSession,
        user_id: int,
        shipping_address: Dict[str, Any],
        billing_address: Dict[str, Any],
        payment_method: str,
        idempotency_key: Optional[str] = None,
        customer_notes: Optional[str] = None,
    ) -> OrderCreationResult:
        """
        Place an order from the user's cart.

        Args:
            idempotency_key: Client-supplied key; replays with the same key
                return the first order without side effects. Generated when
                absent.

        Returns:
            OrderCreationResult. Failures carry the error message and code;
            the cart and stock are left untouched.
        """
        key = idempotency_key or generate_idempotency_key("order")

        existing = await OrderService._find_by_idempotency_key(db, user_id, key)
        if existing is not None:
            logger.info(f"Order replay for key {key}: returning {existing.order_number}")
            return OrderCreationResult(
                success=True,
                order=existing,
                order_number=existing.order_number,
                already_exists=True,
            )

        async def attempt():
            return await OrderService._place_order(
                db, user_id, shipping_address, billing_address,
                payment_method, key, customer_notes,
            )

        try:
            order = await retry_on_conflict(
                attempt,
                on_retry=lambda exc: db.rollback(),
                label=f"create_order[user={user_id}]",
            )
        except IntegrityError as e:
            await db.rollback()
            existing = await OrderService._find_by_idempotency_key(db, user_id, key)
            if existing is not None:
                logger.info(f"Concurrent submit for key {key} resolved to {existing.order_number}")
                return OrderCreationResult(
                    success=True,
                    order=existing,
                    order_number=existing.order_number,
                    already_exists=True,
                )
            logger.error(f"Integrity error creating order for user {user_id}: {e}")
            return OrderCreationResult(
                success=False,
                error="Failed to create order. Please try again.",
                code=StorageError.default_code,
            )
        except EmptyCartError as e:
            await db.rollback()
            existing = await OrderService._find_by_idempotency_key(db, user_id, key)
            if existing is not None:
                logger.info(f"Concurrent submit for key {key} resolved to {existing.order_number}")
                return OrderCreationResult(
                    success=True,
                    order=existing,
                    order_number=existing.order_number,
                    already_exists=True,
                )
            return OrderCreationResult(success=False, error=e.message, code=e.code)
        except StorefrontError as e:
            await db.rollback()
            logger.info(f"Order rejected for user {user_id}: {e.code} {e.message}")
            return OrderCreationResult(success=False, error=e.message, code=e.code)
        except Exception as e:
            await db.rollback()
            logger.exception(f"Unexpected error creating order for user {user_id}: {e}")
            return OrderCreationResult(
                success=False,
                error="Failed to create order. Please try again.",
                code="INTERNAL_ERROR",
            )

        order = await OrderService._load_order(db, order.id)
        logger.info(f"Order {order.order_number} created for user {user_id}, total {order.total}")
        return OrderCreationResult(success=True, order=order, order_number=order.order_number)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @staticmethod
    async def _apply_cancellation(
        db: AsyncSession,
        order: Order,
        cancellation_key: str,
        reason: Optional[str],
        actor_id: Optional[int],
    ) -> None:
        await inventory_service.restore_order_stock(
            db, order.items, order.id, cancellation_key, user_id=actor_id
        )
        now = utcnow()
        order.status = OrderStatus.CANCELLED.value
        order.cancelled_at = now
        order.cancellation_key = cancellation_key
        order.cancellation_reason = reason
        if order.payment_status == PaymentStatus.PAID.value:
            order.payment_status = PaymentStatus.REFUNDED.value
        order.updated_at = now

    @staticmethod
    async def cancel_order(
        db: AsyncSession,
        user_id: Optional[int],
        order_id: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OrderCancellationResult:
        """
        Cancel a pending or confirmed order and put its stock back.

        user_id=None skips the ownership check (staff action).
        """
        order = await OrderService._load_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if user_id is not None and order.user_id != user_id:
            raise PermissionDeniedError("You do not have access to this order")

        if order.status == OrderStatus.CANCELLED.value:
            if idempotency_key and order.cancellation_key == idempotency_key:
                return OrderCancellationResult(order=order, already_processed=True)
            raise OrderStateError(
                "Order is already cancelled",
                current_status=order.status,
                requested_status=OrderStatus.CANCELLED.value,
            )
        if order.status == OrderStatus.DELIVERED.value:
            raise OrderStateError(
                "Cannot cancel delivered order",
                current_status=order.status,
                requested_status=OrderStatus.CANCELLED.value,
            )
        if order.status not in CANCELLABLE_STATUSES:
            raise OrderStateError(
                f"Cannot cancel order with status {order.status}",
                current_status=order.status,
                requested_status=OrderStatus.CANCELLED.value,
            )

        key = idempotency_key or generate_idempotency_key("cancel")

        async def attempt():
            current = await OrderService._load_order(db, order_id)
            await OrderService._apply_cancellation(db, current, key, reason, user_id)
            await db.commit()
            return current

        try:
            cancelled = await retry_on_conflict(
                attempt,
                on_retry=lambda exc: db.rollback(),
                label=f"cancel_order[{order_id}]",
            )
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Order {cancelled.order_number} cancelled: {reason or 'no reason given'}")
        return OrderCancellationResult(order=await OrderService._load_order(db, order_id))

    @staticmethod
    async def update_status(
        db: AsyncSession,
        order_id: int,
        new_status: str,
        tracking_number: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> Order:
        """Move an order along pending -> confirmed -> processing -> shipped -> delivered."""
        valid = {s.value for s in OrderStatus}
        if new_status not in valid:
            raise RequestValidationError(f"Invalid order status: {new_status}")

        order = await OrderService._load_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        if new_status == OrderStatus.CANCELLED.value:
            result = await OrderService.cancel_order(db, None, order_id, reason="Cancelled by staff")
            return result.order

        if order.status in TERMINAL_STATUSES or new_status not in ALLOWED_TRANSITIONS.get(order.status, set()):
            raise OrderStateError(
                f"Cannot change order status from {order.status} to {new_status}",
                current_status=order.status,
                requested_status=new_status,
            )

        now = utcnow()
        order.status = new_status
        order.updated_at = now
        if new_status == OrderStatus.SHIPPED.value:
            order.shipped_at = now
            if tracking_number:
                order.tracking_number = tracking_number
        elif new_status == OrderStatus.DELIVERED.value:
            order.delivered_at = now

        await db.commit()
        logger.info(f"Order {order.order_number} moved to {new_status} by {actor_id}")
        return await OrderService._load_order(db, order_id)

    @staticmethod
    async def update_payment_status(db: AsyncSession, order_id: int, payment_status: str) -> Order:
        valid = {s.value for s in PaymentStatus}
        if payment_status not in valid:
            raise RequestValidationError(f"Invalid payment status: {payment_status}")

        order = await OrderService._load_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        now = utcnow()
        if payment_status == PaymentStatus.PAID.value:
            if order.status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
                raise OrderStateError(
                    f"Cannot mark a {order.status} order as paid",
                    current_status=order.status,
                )
            order.paid_at = now
            if order.status == OrderStatus.PENDING.value:
                order.status = OrderStatus.CONFIRMED.value
        elif payment_status == PaymentStatus.REFUNDED.value:
            if order.status not in TERMINAL_STATUSES:
                order.status = OrderStatus.REFUNDED.value

        order.payment_status = payment_status
        order.updated_at = now
        await db.commit()
        logger.info(f"Order {order.order_number} payment status -> {payment_status}")
        return await OrderService._load_order(db, order_id)

    # =========================================================================
    # QUERIES
    # =========================================================================

    @staticmethod
    async def get_order(db: AsyncSession, user_id: Optional[int], order_id: int) -> Order:
        order = await OrderService._load_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if user_id is not None and order.user_id != user_id:
            raise PermissionDeniedError("You do not have access to this order")
        return order

    @staticmethod
    async def list_orders(
        db: AsyncSession,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        filters = [Order.user_id == user_id]
        if status:
            filters.append(Order.status == status)

        total = (await db.execute(select(func.count(Order.id)).where(*filters))).scalar_one()
        result = await db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "orders": list(result.scalars().all()),
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit if limit else 0,
        }


order_service = OrderService()
