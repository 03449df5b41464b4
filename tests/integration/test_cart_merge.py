"""
Guest cart merge on login.
"""
from decimal import Decimal

import pytest
from sqlalchemy import update

from storefront.models import Product, ProductStatus
from storefront.services import inventory_service
from storefront.services.cart_merge import merge_guest_cart_into_user
from storefront.services.cart_service import CartOwner, cart_service

SESSION = "guest-session-0001"


class TestMergeGuestCart:

    @pytest.mark.asyncio
    async def test_relabels_when_user_has_no_cart(self, db, make_user, make_product):
        user = await make_user()
        product = await make_product(quantity=5)
        user_id, product_id = user.id, product.id
        await cart_service.add_item(db, CartOwner(session_id=SESSION), product_id, 2)

        result = await merge_guest_cart_into_user(db, user_id, SESSION)

        assert (result.merged, result.items_merged, result.items_dropped) == (True, 1, 0)
        assert await cart_service.get_cart(db, CartOwner(session_id=SESSION)) is None
        cart = await cart_service.get_cart(db, CartOwner(user_id=user_id))
        assert cart.expires_at is None
        assert [(line.product_id, line.quantity) for line in cart.items] == [(product_id, 2)]
        assert (await inventory_service.get_product(db, product_id)).reserved_quantity == 2

    @pytest.mark.asyncio
    async def test_sums_overlapping_lines(self, db, make_user, make_product):
        user = await make_user()
        shared = await make_product(quantity=10, price="1000.00")
        guest_only = await make_product(quantity=10, price="500.00")
        user_id, shared_id, guest_only_id = user.id, shared.id, guest_only.id
        await cart_service.add_item(db, CartOwner(user_id=user_id), shared_id, 1)
        await cart_service.add_item(db, CartOwner(session_id=SESSION), shared_id, 2)
        await cart_service.add_item(db, CartOwner(session_id=SESSION), guest_only_id, 1)

        result = await merge_guest_cart_into_user(db, user_id, SESSION)

        assert result.items_merged == 2
        cart = await cart_service.get_cart(db, CartOwner(user_id=user_id))
        quantities = {line.product_id: line.quantity for line in cart.items}
        assert quantities == {shared_id: 3, guest_only_id: 1}
        assert cart.subtotal == Decimal("3500.00")
        assert await cart_service.get_cart(db, CartOwner(session_id=SESSION)) is None
        assert (await inventory_service.get_product(db, shared_id)).reserved_quantity == 3

    @pytest.mark.asyncio
    async def test_drops_inactive_products(self, db, make_user, make_product):
        user = await make_user()
        kept = await make_product(quantity=5)
        retired = await make_product(quantity=5)
        user_id, kept_id, retired_id = user.id, kept.id, retired.id
        await cart_service.add_item(db, CartOwner(session_id=SESSION), kept_id, 1)
        await cart_service.add_item(db, CartOwner(session_id=SESSION), retired_id, 2)
        await db.execute(
            update(Product).where(Product.id == retired_id).values(status=ProductStatus.INACTIVE.value)
        )
        await db.commit()

        result = await merge_guest_cart_into_user(db, user_id, SESSION)

        assert (result.items_merged, result.items_dropped) == (1, 1)
        cart = await cart_service.get_cart(db, CartOwner(user_id=user_id))
        assert [line.product_id for line in cart.items] == [kept_id]
        assert (await inventory_service.get_product(db, retired_id)).reserved_quantity == 0

    @pytest.mark.asyncio
    async def test_nothing_to_merge(self, db, make_user):
        user = await make_user()
        assert not (await merge_guest_cart_into_user(db, user.id, SESSION)).merged
        assert not (await merge_guest_cart_into_user(db, user.id, "")).merged
