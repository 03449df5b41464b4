"""
Tests for checkout: idempotency, atomicity, concurrency and the order
state machine.
"""
import asyncio
import re
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from storefront.core.exceptions import NotFoundError, OrderStateError, PermissionDeniedError
from storefront.models import InventoryLog, Order, Product, ProductStatus, User
from storefront.services import inventory_service
from storefront.services.cart_service import CartOwner, cart_service
from storefront.services.order_service import order_service

ADDRESS = {
    "full_name": "Asha Rao",
    "phone": "+91 98765 43210",
    "address_line1": "12 MG Road",
    "address_line2": None,
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "country": "India",
}


async def place(db, user_id, key=None):
    return await order_service.create_order(
        db,
        user_id=user_id,
        shipping_address=ADDRESS,
        billing_address=ADDRESS,
        payment_method="cod",
        idempotency_key=key,
    )


async def product_state(session, product_id):
    return await inventory_service.get_product(session, product_id)


class TestCreateOrder:

    @pytest.mark.asyncio
    async def test_successful_checkout(self, db, make_user, make_product):
        user = await make_user()
        ring = await make_product(quantity=5, price="1500.00")
        chain = await make_product(quantity=3, price="800.00")
        user_id, ring_id, chain_id = user.id, ring.id, chain.id
        owner = CartOwner(user_id=user_id)
        await cart_service.add_item(db, owner, ring_id, 2)
        await cart_service.add_item(db, owner, chain_id, 1)

        result = await place(db, user_id, key="checkout-0001")

        assert result.success
        assert result.message == "Order created successfully"
        order = result.order
        assert re.fullmatch(r"ORD-\d{4}-000001", order.order_number)
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.subtotal == Decimal("3800.00")
        assert order.tax == Decimal("684.00")
        assert order.shipping == Decimal("100.00")
        assert order.total == Decimal("4584.00")
        assert len(order.items) == 2

        ring_now = await product_state(db, ring_id)
        assert (ring_now.quantity, ring_now.reserved_quantity, ring_now.sales_count) == (3, 0, 2)
        chain_now = await product_state(db, chain_id)
        assert (chain_now.quantity, chain_now.reserved_quantity) == (2, 0)

        cart = await cart_service.get_cart(db, owner)
        assert cart.items == []
        assert cart.total == Decimal("0.00")

        buyer = (await db.execute(
            select(User).where(User.id == user_id).execution_options(populate_existing=True)
        )).scalar_one()
        assert buyer.total_orders == 1
        assert buyer.total_spent == Decimal("4584.00")

        sale_logs = (await db.execute(
            select(InventoryLog).where(InventoryLog.order_id == order.id)
        )).scalars().all()
        assert sorted(log.idempotency_key for log in sale_logs) == sorted(
            [f"checkout-0001-order-{order.id}-{ring_id}", f"checkout-0001-order-{order.id}-{chain_id}"]
        )

    @pytest.mark.asyncio
    async def test_replay_returns_same_order(self, db, make_user, make_product):
        user = await make_user()
        product = await make_product(quantity=5)
        user_id, product_id = user.id, product.id
        await cart_service.add_item(db, CartOwner(user_id=user_id), product_id, 1)

        first = await place(db, user_id, key="checkout-replay")
        second = await place(db, user_id, key="checkout-replay")

        assert first.success and second.success
        assert second.already_exists
        assert second.message == "Order already processed"
        assert second.order.id == first.order.id
        assert (await product_state(db, product_id)).quantity == 4
        count = (await db.execute(select(Order))).scalars().all()
        assert len(count) == 1

    @pytest.mark.asyncio
    async def test_generated_key_when_missing(self, db, make_user, make_product):
        user = await make_user()
        product = await make_product(quantity=5)
        await cart_service.add_item(db, CartOwner(user_id=user.id), product.id, 1)

        result = await place(db, user.id)

        assert result.success
        assert result.order.idempotency_key.startswith("order-")

    @pytest.mark.asyncio
    async def test_empty_cart(self, db, make_user):
        user = await make_user()
        result = await place(db, user.id)
        assert not result.success
        assert result.code == "EMPTY_CART"
        assert result.error == "Cart is empty"

    @pytest.mark.asyncio
    async def test_failure_on_second_line_rolls_back_first(self, db, make_user, make_product):
        user = await make_user()
        first = await make_product(quantity=5)
        second = await make_product(quantity=5)
        user_id, first_id, second_id = user.id, first.id, second.id
        owner = CartOwner(user_id=user_id)
        await cart_service.add_item(db, owner, first_id, 2)
        await cart_service.add_item(db, owner, second_id, 3)

        # Stock of the second line disappears after carting
        await db.execute(update(Product).where(Product.id == second_id).values(quantity=1))
        await db.commit()

        result = await place(db, user_id)

        assert not result.success
        assert "stock" in result.error.lower()
        first_now = await product_state(db, first_id)
        assert (first_now.quantity, first_now.reserved_quantity, first_now.sales_count) == (5, 2, 0)
        cart = await cart_service.get_cart(db, owner)
        assert sorted(line.quantity for line in cart.items) == [2, 3]
        assert (await db.execute(select(Order))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_price_change_rejected(self, db, make_user, make_product):
        user = await make_user()
        product = await make_product(quantity=5, price="1000.00")
        user_id, product_id, sku = user.id, product.id, product.sku
        await cart_service.add_item(db, CartOwner(user_id=user_id), product_id, 1)
        await db.execute(update(Product).where(Product.id == product_id).values(price=Decimal("1200.00")))
        await db.commit()

        result = await place(db, user_id)

        assert not result.success
        assert result.code == "PRICE_CHANGED"
        assert result.error == f"Price has changed for {sku}. Please refresh your cart."

    @pytest.mark.asyncio
    async def test_inactive_product_rejected(self, db, make_user, make_product):
        user = await make_user()
        product = await make_product(quantity=5)
        user_id, product_id, sku = user.id, product.id, product.sku
        await cart_service.add_item(db, CartOwner(user_id=user_id), product_id, 1)
        await db.execute(
            update(Product).where(Product.id == product_id).values(status=ProductStatus.INACTIVE.value)
        )
        await db.commit()

        result = await place(db, user_id)

        assert not result.success
        assert result.code == "PRODUCT_UNAVAILABLE"
        assert result.error == f"Product {sku} is no longer available"

    @pytest.mark.asyncio
    async def test_order_numbers_are_sequential(self, db, make_user, make_product):
        user = await make_user()
        product = await make_product(quantity=10)
        user_id, product_id = user.id, product.id
        numbers = []
        for _ in range(3):
            await cart_service.add_item(db, CartOwner(user_id=user_id), product_id, 1)
            numbers.append((await place(db, user_id)).order_number)

        assert [int(n[-6:]) for n in numbers] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_last_unit_race(self, db, session_factory, make_user, make_product, seed_cart):
        alice = await make_user()
        bob = await make_user()
        product = await make_product(quantity=1)
        alice_id, bob_id, product_id = alice.id, bob.id, product.id
        await seed_cart([(product, 1)], user_id=alice_id)
        await seed_cart([(product, 1)], user_id=bob_id)

        async def checkout(user_id):
            async with session_factory() as session:
                return await place(session, user_id)

        results = await asyncio.gather(checkout(alice_id), checkout(bob_id))

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert "stock" in losers[0].error.lower()

        loser_id = bob_id if winners[0].order.user_id == alice_id else alice_id
        async with session_factory() as session:
            final = await product_state(session, product_id)
            assert final.quantity == 0
            cart = await cart_service.get_cart(session, CartOwner(user_id=loser_id))
            assert [line.quantity for line in cart.items] == [1]

    @pytest.mark.asyncio
    async def test_double_submit_of_one_cart_places_one_order(
        self, db, session_factory, make_user, make_product, seed_cart
    ):
        user = await make_user()
        product = await make_product(quantity=5)
        user_id, product_id = user.id, product.id
        await seed_cart([(product, 1)], user_id=user_id)

        async def checkout(key):
            async with session_factory() as session:
                return await place(session, user_id, key=key)

        results = await asyncio.gather(checkout("tab-1"), checkout("tab-2"))

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].code == "EMPTY_CART"

        async with session_factory() as session:
            orders = (await session.execute(select(Order).where(Order.user_id == user_id))).scalars().all()
            assert len(orders) == 1
            final = await product_state(session, product_id)
            assert final.quantity == 4
            assert final.reserved_quantity == 0
            buyer = await session.get(User, user_id)
            assert buyer.total_orders == 1
            cart = await cart_service.get_cart(session, CartOwner(user_id=user_id))
            assert cart.items == []

    @pytest.mark.asyncio
    async def test_double_submit_with_same_key_resolves_to_one_order(
        self, db, session_factory, make_user, make_product, seed_cart
    ):
        user = await make_user()
        product = await make_product(quantity=5)
        user_id, product_id = user.id, product.id
        await seed_cart([(product, 2)], user_id=user_id)

        async def checkout():
            async with session_factory() as session:
                return await place(session, user_id, key="checkout-twice")

        first, second = await asyncio.gather(checkout(), checkout())

        assert first.success and second.success
        assert first.order_number == second.order_number
        assert sorted([first.already_exists, second.already_exists]) == [False, True]
        async with session_factory() as session:
            final = await product_state(session, product_id)
            assert final.quantity == 3
            logs = (await session.execute(
                select(InventoryLog).where(InventoryLog.product_id == product_id, InventoryLog.type == "sale")
            )).scalars().all()
            assert len(logs) == 1

    @pytest.mark.asyncio
    async def test_shoppers_may_reuse_the_same_key(self, db, make_user, make_product, seed_cart):
        alice = await make_user()
        bob = await make_user()
        product = await make_product(quantity=5)
        alice_id, bob_id, product_id = alice.id, bob.id, product.id
        await seed_cart([(product, 1)], user_id=alice_id)
        await seed_cart([(product, 1)], user_id=bob_id)

        for_alice = await place(db, alice_id, key="checkout-1")
        for_bob = await place(db, bob_id, key="checkout-1")

        assert for_alice.success
        assert for_bob.success
        assert not for_bob.already_exists
        assert for_alice.order.id != for_bob.order.id
        final = await product_state(db, product_id)
        assert final.quantity == 3
        logs = (await db.execute(
            select(InventoryLog)
            .where(InventoryLog.product_id == product_id, InventoryLog.type == "sale")
            .order_by(InventoryLog.id)
        )).scalars().all()
        assert [entry.order_id for entry in logs] == [for_alice.order.id, for_bob.order.id]


class TestOrderLifecycle:

    @pytest.fixture
    def ordered(self, db, make_user, make_product):
        async def _ordered(quantity=2, stock=5):
            user = await make_user()
            product = await make_product(quantity=stock)
            user_id, product_id = user.id, product.id
            await cart_service.add_item(db, CartOwner(user_id=user_id), product_id, quantity)
            result = await place(db, user_id)
            assert result.success
            return user_id, product_id, result.order.id
        return _ordered

    @pytest.mark.asyncio
    async def test_cancel_restores_stock(self, db, ordered):
        user_id, product_id, order_id = await ordered(quantity=2, stock=2)
        assert (await product_state(db, product_id)).status == ProductStatus.OUT_OF_STOCK.value

        result = await order_service.cancel_order(db, user_id, order_id, reason="Changed my mind")

        assert result.message == "Order cancelled successfully"
        assert result.order.status == "cancelled"
        assert result.order.cancelled_at is not None
        product = await product_state(db, product_id)
        assert (product.quantity, product.sales_count, product.status) == (2, 0, ProductStatus.ACTIVE.value)

    @pytest.mark.asyncio
    async def test_cancel_twice(self, db, ordered):
        user_id, product_id, order_id = await ordered()
        await order_service.cancel_order(db, user_id, order_id, idempotency_key="cancel-key-1")

        replay = await order_service.cancel_order(db, user_id, order_id, idempotency_key="cancel-key-1")
        assert replay.already_processed
        assert replay.message == "Order cancellation already processed"

        with pytest.raises(OrderStateError) as exc_info:
            await order_service.cancel_order(db, user_id, order_id)
        assert exc_info.value.message == "Order is already cancelled"
        assert (await product_state(db, product_id)).quantity == 5

    @pytest.mark.asyncio
    async def test_cannot_cancel_delivered(self, db, ordered):
        user_id, _, order_id = await ordered()
        for status in ("confirmed", "processing", "shipped", "delivered"):
            await order_service.update_status(db, order_id, status)

        with pytest.raises(OrderStateError) as exc_info:
            await order_service.cancel_order(db, user_id, order_id)
        assert exc_info.value.message == "Cannot cancel delivered order"

    @pytest.mark.asyncio
    async def test_cannot_cancel_shipped(self, db, ordered):
        user_id, _, order_id = await ordered()
        for status in ("confirmed", "processing", "shipped"):
            await order_service.update_status(db, order_id, status)

        with pytest.raises(OrderStateError):
            await order_service.cancel_order(db, user_id, order_id)

    @pytest.mark.asyncio
    async def test_paid_order_refunded_on_cancel(self, db, ordered):
        user_id, _, order_id = await ordered()
        paid = await order_service.update_payment_status(db, order_id, "paid")
        assert paid.status == "confirmed"
        assert paid.paid_at is not None

        result = await order_service.cancel_order(db, user_id, order_id)
        assert result.order.payment_status == "refunded"

    @pytest.mark.asyncio
    async def test_status_timestamps_and_invalid_transition(self, db, ordered):
        _, _, order_id = await ordered()

        with pytest.raises(OrderStateError):
            await order_service.update_status(db, order_id, "shipped")

        await order_service.update_status(db, order_id, "confirmed")
        await order_service.update_status(db, order_id, "processing")
        shipped = await order_service.update_status(db, order_id, "shipped", tracking_number="BLUEDART123")
        assert shipped.shipped_at is not None
        assert shipped.tracking_number == "BLUEDART123"
        delivered = await order_service.update_status(db, order_id, "delivered")
        assert delivered.delivered_at is not None

    @pytest.mark.asyncio
    async def test_refund_moves_order_to_refunded(self, db, ordered):
        _, _, order_id = await ordered()
        order = await order_service.update_payment_status(db, order_id, "refunded")
        assert order.status == "refunded"
        assert order.payment_status == "refunded"

    @pytest.mark.asyncio
    async def test_foreign_order_forbidden(self, db, ordered, make_user):
        _, _, order_id = await ordered()
        stranger = await make_user()

        with pytest.raises(PermissionDeniedError):
            await order_service.get_order(db, stranger.id, order_id)
        with pytest.raises(NotFoundError):
            await order_service.get_order(db, stranger.id, 424242)

    @pytest.mark.asyncio
    async def test_list_orders(self, db, ordered):
        user_id, _, order_id = await ordered()
        page = await order_service.list_orders(db, user_id)
        assert page["total"] == 1
        assert page["orders"][0].id == order_id
        assert (await order_service.list_orders(db, user_id, status="shipped"))["total"] == 0
