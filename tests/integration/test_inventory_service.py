"""
Tests for the stock ledger: reservations, sales, returns and admin moves.
"""
import asyncio

import pytest
from sqlalchemy import select, update

from storefront.core.exceptions import InsufficientStockError, RequestValidationError
from storefront.models import InventoryLog, Product, ProductStatus
from storefront.services import inventory_service


async def logs_for(db, product_id, log_type=None):
    stmt = select(InventoryLog).where(InventoryLog.product_id == product_id)
    if log_type:
        stmt = stmt.where(InventoryLog.type == log_type)
    result = await db.execute(stmt.order_by(InventoryLog.id))
    return list(result.scalars().all())


class TestReserveStock:

    @pytest.mark.asyncio
    async def test_reserve_increments_reserved(self, db, make_product):
        product = await make_product(quantity=5)

        result = await inventory_service.reserve_stock(db, product.id, 2)

        assert result.success
        assert result.available_quantity == 3
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.quantity == 5
        assert fresh.reserved_quantity == 2

        logs = await logs_for(db, product.id, "reserved")
        assert len(logs) == 1
        assert (logs[0].quantity, logs[0].previous_quantity, logs[0].new_quantity) == (2, 0, 2)

    @pytest.mark.asyncio
    async def test_reserve_refuses_beyond_available(self, db, make_product):
        product = await make_product(quantity=3, reserved_quantity=1)
        product_id = product.id

        result = await inventory_service.reserve_stock(db, product_id, 3)

        assert not result.success
        assert result.code == "INSUFFICIENT_STOCK"
        assert result.error == "Only 2 items available in stock"
        assert result.available_quantity == 2
        fresh = await inventory_service.get_product(db, product_id)
        assert fresh.reserved_quantity == 1
        assert await logs_for(db, product_id) == []

    @pytest.mark.asyncio
    async def test_backorder_allows_over_reservation(self, db, make_product):
        product = await make_product(quantity=1, allow_backorder=True)

        result = await inventory_service.reserve_stock(db, product.id, 4)

        assert result.success
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.reserved_quantity == 4

    @pytest.mark.asyncio
    async def test_untracked_product_is_not_counted(self, db, make_product):
        product = await make_product(quantity=0, track_quantity=False)

        result = await inventory_service.reserve_stock(db, product.id, 50)

        assert result.success
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.reserved_quantity == 0
        assert await logs_for(db, product.id) == []

    @pytest.mark.asyncio
    async def test_inactive_product_refused(self, db, make_product):
        product = await make_product(status=ProductStatus.INACTIVE.value)

        result = await inventory_service.reserve_stock(db, product.id, 1)

        assert not result.success
        assert result.code == "PRODUCT_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_missing_product(self, db):
        result = await inventory_service.reserve_stock(db, 9999, 1)
        assert not result.success
        assert result.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_oversell(self, session_factory, make_product):
        product = await make_product(quantity=1)

        async def reserve():
            async with session_factory() as session:
                return await inventory_service.reserve_stock(session, product.id, 1)

        results = await asyncio.gather(reserve(), reserve(), reserve())

        assert sum(1 for r in results if r.success) == 1
        async with session_factory() as session:
            fresh = await inventory_service.get_product(session, product.id)
            assert fresh.reserved_quantity == 1


class TestReleaseStock:

    @pytest.mark.asyncio
    async def test_release_is_symmetric(self, db, make_product):
        product = await make_product(quantity=5)
        await inventory_service.reserve_stock(db, product.id, 3)

        released = await inventory_service.release_stock(db, product.id, 3)

        assert released == 3
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.reserved_quantity == 0
        assert fresh.available_quantity == 5

    @pytest.mark.asyncio
    async def test_release_floors_at_zero(self, db, make_product):
        product = await make_product(quantity=5, reserved_quantity=2)

        released = await inventory_service.release_stock(db, product.id, 5)

        assert released == 2
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.reserved_quantity == 0
        logs = await logs_for(db, product.id, "released")
        assert (logs[0].quantity, logs[0].previous_quantity, logs[0].new_quantity) == (-2, 2, 0)

    @pytest.mark.asyncio
    async def test_release_of_missing_product_is_silent(self, db):
        assert await inventory_service.release_stock(db, 9999, 1) == 0

    @pytest.mark.asyncio
    async def test_release_rereads_when_reservation_moves(self, db, make_product, monkeypatch):
        product = await make_product(quantity=10, reserved_quantity=4)
        real_get_product = inventory_service.get_product
        reads = []

        async def get_product_then_reserve(session, product_id, **kwargs):
            fresh = await real_get_product(session, product_id, **kwargs)
            reads.append(fresh.reserved_quantity)
            if len(reads) == 1:
                # Another cart reserves 2 units between the read and the write
                await session.execute(
                    update(Product)
                    .where(Product.id == product_id)
                    .values(reserved_quantity=Product.reserved_quantity + 2)
                    .execution_options(synchronize_session=False)
                )
            return fresh

        monkeypatch.setattr(inventory_service, "get_product", get_product_then_reserve)

        released = await inventory_service.release_stock(db, product.id, 3)

        assert released == 3
        assert reads == [4, 6]
        fresh = await real_get_product(db, product.id)
        assert fresh.reserved_quantity == 3
        logs = await logs_for(db, product.id, "released")
        assert len(logs) == 1
        assert (logs[0].quantity, logs[0].previous_quantity, logs[0].new_quantity) == (-3, 6, 3)

    @pytest.mark.asyncio
    async def test_concurrent_releases_log_a_consistent_chain(self, session_factory, make_product):
        product = await make_product(quantity=10, reserved_quantity=5)

        async def release(quantity):
            async with session_factory() as session:
                return await inventory_service.release_stock(session, product.id, quantity)

        results = await asyncio.gather(release(2), release(2), release(2))

        assert sum(results) == 5
        async with session_factory() as session:
            fresh = await inventory_service.get_product(session, product.id)
            assert fresh.reserved_quantity == 0
            logs = await logs_for(session, product.id, "released")

        assert logs[0].previous_quantity == 5
        assert logs[-1].new_quantity == 0
        for earlier, later in zip(logs, logs[1:]):
            assert later.previous_quantity == earlier.new_quantity
        for entry in logs:
            assert entry.new_quantity == entry.previous_quantity + entry.quantity


class TestCommitSale:

    @pytest.mark.asyncio
    async def test_sale_moves_reserved_to_sold(self, db, make_product, make_user):
        user = await make_user()
        product = await make_product(quantity=2, reserved_quantity=2)

        new_quantity = await inventory_service.commit_sale(
            db, product.id, 2, order_id=501, idempotency_key="order-key", user_id=user.id
        )
        await db.commit()

        assert new_quantity == 0
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.quantity == 0
        assert fresh.reserved_quantity == 0
        assert fresh.sales_count == 2
        assert fresh.status == ProductStatus.OUT_OF_STOCK.value

        logs = await logs_for(db, product.id, "sale")
        assert logs[0].idempotency_key == f"order-key-order-501-{product.id}"
        assert (logs[0].quantity, logs[0].previous_quantity, logs[0].new_quantity) == (-2, 2, 0)

    @pytest.mark.asyncio
    async def test_sale_refused_without_stock(self, db, make_product):
        product = await make_product(quantity=1)
        product_id = product.id

        with pytest.raises(InsufficientStockError) as exc_info:
            await inventory_service.commit_sale(db, product_id, 2, order_id=None, idempotency_key="k")

        assert "Insufficient stock" in exc_info.value.message
        await db.rollback()
        fresh = await inventory_service.get_product(db, product_id)
        assert fresh.quantity == 1

    @pytest.mark.asyncio
    async def test_backorder_sale_goes_negative(self, db, make_product):
        product = await make_product(quantity=1, allow_backorder=True)

        new_quantity = await inventory_service.commit_sale(db, product.id, 3, order_id=None, idempotency_key="k")
        await db.commit()

        assert new_quantity == -2
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.status == ProductStatus.ACTIVE.value


class TestRestoreAndRestock:

    @pytest.mark.asyncio
    async def test_restore_is_idempotent(self, db, make_product):
        product = await make_product(quantity=0, sales_count=2, status=ProductStatus.OUT_OF_STOCK.value)

        class Line:
            product_id = product.id
            quantity = 2

        restored = await inventory_service.restore_order_stock(db, [Line()], order_id=501, idempotency_key="cancel-1")
        await db.commit()
        again = await inventory_service.restore_order_stock(db, [Line()], order_id=501, idempotency_key="cancel-1")
        await db.commit()

        assert (restored, again) == (1, 0)
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.quantity == 2
        assert fresh.sales_count == 0
        assert fresh.status == ProductStatus.ACTIVE.value
        logs = await logs_for(db, product.id, "return")
        assert [log.idempotency_key for log in logs] == [f"cancel-1-order-501-cancellation-{product.id}"]

    @pytest.mark.asyncio
    async def test_restock_with_key_applies_once(self, db, make_product):
        product = await make_product(quantity=0, status=ProductStatus.OUT_OF_STOCK.value)

        first = await inventory_service.restock_product(db, product.id, 10, idempotency_key="po-77")
        second = await inventory_service.restock_product(db, product.id, 10, idempotency_key="po-77")

        assert first["quantity"] == 10
        assert second["quantity"] == 10
        assert first["status"] == ProductStatus.ACTIVE.value
        logs = await logs_for(db, product.id, "restock")
        assert len(logs) == 1
        assert logs[0].reason == "Manual restock"
        assert logs[0].idempotency_key == f"po-77-restock-{product.id}"

    @pytest.mark.asyncio
    async def test_same_key_restocks_each_product(self, db, make_product):
        ring = await make_product(quantity=1)
        chain = await make_product(quantity=1)

        await inventory_service.restock_product(db, ring.id, 4, idempotency_key="po-78")
        await inventory_service.restock_product(db, chain.id, 6, idempotency_key="po-78")

        assert (await inventory_service.get_product(db, ring.id)).quantity == 5
        assert (await inventory_service.get_product(db, chain.id)).quantity == 7

    @pytest.mark.asyncio
    async def test_same_cancellation_key_on_two_orders(self, db, make_product):
        product = await make_product(quantity=0, sales_count=3, status=ProductStatus.OUT_OF_STOCK.value)

        class Line:
            product_id = product.id
            quantity = 1

        first = await inventory_service.restore_order_stock(db, [Line()], order_id=601, idempotency_key="cancel")
        await db.commit()
        second = await inventory_service.restore_order_stock(db, [Line()], order_id=602, idempotency_key="cancel")
        await db.commit()

        assert (first, second) == (1, 1)
        fresh = await inventory_service.get_product(db, product.id)
        assert fresh.quantity == 2
        assert fresh.sales_count == 1
        logs = await logs_for(db, product.id, "return")
        assert [log.order_id for log in logs] == [601, 602]

    @pytest.mark.asyncio
    async def test_adjust_cannot_go_below_zero(self, db, make_product):
        product = await make_product(quantity=2)
        product_id = product.id

        with pytest.raises(RequestValidationError):
            await inventory_service.adjust_stock(db, product_id, -3, "Damaged in transit")

        summary = await inventory_service.adjust_stock(db, product_id, -2, "Damaged in transit")
        assert summary["quantity"] == 0
        assert summary["status"] == ProductStatus.OUT_OF_STOCK.value


class TestQueries:

    @pytest.mark.asyncio
    async def test_summary_and_low_stock(self, db, make_product):
        low = await make_product(quantity=3, low_stock_threshold=5)
        await make_product(quantity=50)

        summary = await inventory_service.get_inventory_summary(db, low.id)
        assert summary["is_low_stock"]
        assert summary["can_purchase"]

        low_stock = await inventory_service.list_low_stock(db)
        assert [p.id for p in low_stock] == [low.id]

    @pytest.mark.asyncio
    async def test_check_availability(self, db, make_product):
        product = await make_product(quantity=2)
        ok = await inventory_service.check_availability(db, product.id, 2)
        short = await inventory_service.check_availability(db, product.id, 3)
        assert ok["available"]
        assert not short["available"]
        assert short["reason"] == "Only 2 items available in stock"

    @pytest.mark.asyncio
    async def test_log_listing_is_paginated(self, db, make_product):
        product = await make_product(quantity=10)
        for _ in range(3):
            await inventory_service.reserve_stock(db, product.id, 1)

        page = await inventory_service.list_inventory_logs(db, product_id=product.id, page=1, limit=2)
        assert page["total"] == 3
        assert len(page["logs"]) == 2
