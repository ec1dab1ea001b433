"""Tests for the inventory-aware order lifecycle."""

import asyncio
import logging
import random
from decimal import Decimal
from uuid import uuid4

import pytest

from app import commands, queries
from app.errors import InsufficientStock, InvalidInput, InvalidTransition, NotFound
from app.ledger import StockLedger
from app.lookup import product_lookup
from app.memory import MemoryDatabase, MemoryStore
from app.models import Order, OrderStatus, ShippingAddress


async def _setup(store, stock=10, price="20.00"):
    user = await commands.create_user(store, f"{uuid4().hex}@example.com", "Ann", "Lee")
    product = await commands.create_product(store, "Widget", Decimal(price), stock=stock)
    return user, product


async def _stock(database, product_id):
    return (await database.products.get(product_id)).stock


class TestCreateOrder:
    def test_scenario_a_price_and_stock(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=10, price="20.00")
            order = await commands.create_order(store, cache, user.id, product.id, 3)
            return order, await _stock(database, product.id)

        order, stock = asyncio.run(scenario())
        assert order.total_price == Decimal("60.00")
        assert order.status is OrderStatus.PENDING
        assert stock == 7

    def test_scenario_b_insufficient_stock_leaves_stock_unchanged(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=2)
            with pytest.raises(InsufficientStock) as exc_info:
                await commands.create_order(store, cache, user.id, product.id, 5)
            orders = await queries.list_orders(store, user_id=user.id)
            return exc_info.value, await _stock(database, product.id), orders

        error, stock, orders = asyncio.run(scenario())
        assert (error.requested, error.available) == (5, 2)
        assert stock == 2
        assert orders == []

    def test_order_is_persisted_with_shipping_details(self, database, cache):
        address = ShippingAddress(street="1 Main St", city="Tokyo", country="JP", zip_code="100-0001")

        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store)
            order = await commands.create_order(
                store, cache, user.id, product.id, 1, shipping_address=address, notes="leave at door"
            )
            return order, await queries.get_order(store, order.id)

        created, stored = asyncio.run(scenario())
        assert stored == created
        assert stored.shipping_address == address
        assert stored.notes == "leave at door"

    def test_price_is_snapshotted(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, price="20.00")
            order = await commands.create_order(store, cache, user.id, product.id, 2)
            await commands.update_product(store, cache, product.id, {"price": Decimal("99.99")})
            await commands.update_order_status(store, cache, order.id, OrderStatus.CONFIRMED)
            return await queries.get_order(store, order.id)

        order = asyncio.run(scenario())
        assert order.total_price == Decimal("40.00")
        assert order.status is OrderStatus.CONFIRMED

    def test_new_orders_use_current_price(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, price="20.00")
            await product_lookup(store, cache).find_by_id(product.id)
            await commands.update_product(store, cache, product.id, {"price": Decimal("12.50")})
            return await commands.create_order(store, cache, user.id, product.id, 2)

        assert asyncio.run(scenario()).total_price == Decimal("25.00")

    def test_unknown_user_raises_not_found(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            _, product = await _setup(store)
            await commands.create_order(store, cache, uuid4(), product.id, 1)

        with pytest.raises(NotFound, match="User"):
            asyncio.run(scenario())

    def test_deleted_user_raises_not_found(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store)
            await commands.remove_user(store, cache, user.id)
            await commands.create_order(store, cache, user.id, product.id, 1)

        with pytest.raises(NotFound, match="User"):
            asyncio.run(scenario())

    def test_unknown_product_raises_not_found(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, _ = await _setup(store)
            await commands.create_order(store, cache, user.id, uuid4(), 1)

        with pytest.raises(NotFound, match="Product"):
            asyncio.run(scenario())

    def test_quantity_must_be_positive(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store)
            await commands.create_order(store, cache, user.id, product.id, 0)

        with pytest.raises(InvalidInput):
            asyncio.run(scenario())

    def test_product_cache_invalidated_after_create(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=10)
            lookup = product_lookup(store, cache)
            await lookup.find_by_id(product.id)
            await commands.create_order(store, cache, user.id, product.id, 4)
            return await lookup.find_by_id(product.id)

        assert asyncio.run(scenario()).stock == 6


class TestCancelOrder:
    def test_scenario_c_cancel_restores_stock(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=10)
            order = await commands.create_order(store, cache, user.id, product.id, 3)
            after_create = await _stock(database, product.id)
            cancelled = await commands.cancel_order(store, cache, order.id)
            return after_create, cancelled, await _stock(database, product.id)

        after_create, cancelled, after_cancel = asyncio.run(scenario())
        assert after_create == 7
        assert cancelled.status is OrderStatus.CANCELLED
        assert after_cancel == 10

    def test_scenario_d_delivered_order_cannot_be_cancelled(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=10)
            order = await commands.create_order(store, cache, user.id, product.id, 3)
            for status in ("confirmed", "shipped", "delivered"):
                await commands.update_order_status(store, cache, order.id, status)
            with pytest.raises(InvalidTransition, match="cannot cancel a delivered order"):
                await commands.cancel_order(store, cache, order.id)
            return await _stock(database, product.id), await queries.get_order(store, order.id)

        stock, order = asyncio.run(scenario())
        assert stock == 7
        assert order.status is OrderStatus.DELIVERED

    def test_cancel_twice_restores_stock_once(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=10)
            order = await commands.create_order(store, cache, user.id, product.id, 4)
            await commands.cancel_order(store, cache, order.id)
            after_first = await _stock(database, product.id)
            with pytest.raises(InvalidTransition, match="order already cancelled"):
                await commands.cancel_order(store, cache, order.id)
            return after_first, await _stock(database, product.id)

        assert asyncio.run(scenario()) == (10, 10)

    def test_cancel_with_deleted_product_leaves_order_untouched(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=10)
            order = await commands.create_order(store, cache, user.id, product.id, 3)
            await commands.delete_product(store, cache, product.id)
            with pytest.raises(NotFound, match="Product"):
                await commands.cancel_order(store, cache, order.id)
            return await queries.get_order(store, order.id)

        order = asyncio.run(scenario())
        assert order.status is OrderStatus.PENDING

    def test_concurrent_cancels_restore_stock_once(self, database, cache):
        async def scenario():
            user, product = await _setup(MemoryStore(database), stock=10)
            order = await commands.create_order(MemoryStore(database), cache, user.id, product.id, 4)
            results = await asyncio.gather(
                commands.cancel_order(MemoryStore(database), cache, order.id),
                commands.cancel_order(MemoryStore(database), cache, order.id),
                return_exceptions=True,
            )
            return results, await _stock(database, product.id)

        results, stock = asyncio.run(scenario())
        assert sum(isinstance(r, Order) for r in results) == 1
        assert sum(isinstance(r, InvalidTransition) for r in results) == 1
        assert stock == 10

    def test_cancel_unknown_order_raises_not_found(self, database, cache):
        async def scenario():
            await commands.cancel_order(MemoryStore(database), cache, uuid4())

        with pytest.raises(NotFound, match="Order"):
            asyncio.run(scenario())


class TestUpdateOrderStatus:
    def test_forward_path(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store)
            order = await commands.create_order(store, cache, user.id, product.id, 1)
            statuses = []
            for status in (OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
                statuses.append((await commands.update_order_status(store, cache, order.id, status)).status)
            return statuses, await _stock(database, product.id)

        statuses, stock = asyncio.run(scenario())
        assert statuses == [OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED]
        assert stock == 9

    def test_skipping_states_is_rejected(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store)
            order = await commands.create_order(store, cache, user.id, product.id, 1)
            with pytest.raises(InvalidTransition):
                await commands.update_order_status(store, cache, order.id, "delivered")
            return await queries.get_order(store, order.id)

        assert asyncio.run(scenario()).status is OrderStatus.PENDING

    def test_backwards_transition_is_rejected(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store)
            order = await commands.create_order(store, cache, user.id, product.id, 1)
            await commands.update_order_status(store, cache, order.id, "confirmed")
            await commands.update_order_status(store, cache, order.id, "pending")

        with pytest.raises(InvalidTransition):
            asyncio.run(scenario())

    def test_status_cancelled_goes_through_cancel(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=10)
            order = await commands.create_order(store, cache, user.id, product.id, 3)
            updated = await commands.update_order_status(store, cache, order.id, "cancelled")
            return updated, await _stock(database, product.id)

        updated, stock = asyncio.run(scenario())
        assert updated.status is OrderStatus.CANCELLED
        assert stock == 10

    def test_unknown_status_is_rejected(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store)
            order = await commands.create_order(store, cache, user.id, product.id, 1)
            await commands.update_order_status(store, cache, order.id, "lost")

        with pytest.raises(InvalidInput, match="unknown order status"):
            asyncio.run(scenario())

    def test_unknown_order_raises_not_found(self, database, cache):
        async def scenario():
            await commands.update_order_status(MemoryStore(database), cache, uuid4(), "confirmed")

        with pytest.raises(NotFound):
            asyncio.run(scenario())


class TestConcurrentOrders:
    """同じ商品に対する同時注文（シナリオ E）"""

    def test_scenario_e_only_one_order_wins(self, cache):
        database = MemoryDatabase(latency=0.001)

        async def scenario():
            user, product = await _setup(MemoryStore(database), stock=5)
            results = await asyncio.gather(
                commands.create_order(MemoryStore(database), cache, user.id, product.id, 5),
                commands.create_order(MemoryStore(database), cache, user.id, product.id, 5),
                return_exceptions=True,
            )
            orders = await queries.list_orders(MemoryStore(database), user_id=user.id)
            return results, orders, await _stock(database, product.id)

        results, orders, stock = asyncio.run(scenario())
        winners = [r for r in results if isinstance(r, Order)]
        losers = [r for r in results if isinstance(r, InsufficientStock)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert (losers[0].requested, losers[0].available) == (5, 0)
        assert len(orders) == 1
        assert stock == 0

    def test_scenario_e_check_then_adjust_oversells(self, cache, caplog):
        """
        判定と減算を分けた場合（在庫確認 → adjust）は両方の注文が通ってしまう。
        在庫は 0 にクリップされて負にはならないが、5 個の在庫で 10 個売れる。
        create_order はこの経路を使わない。
        """
        database = MemoryDatabase(latency=0.001)

        async def check_then_adjust(user_id, product_id, quantity):
            store = MemoryStore(database)
            products = product_lookup(store, cache)
            product = await products.find_by_id(product_id)
            if product.stock < quantity:
                raise InsufficientStock(product_id, quantity, product.stock)
            await StockLedger(store, products).adjust(product_id, -quantity)
            order = Order(
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
                total_price=product.price * quantity,
            )
            await store.orders.save(order)
            await store.commit()
            return order

        async def scenario():
            user, product = await _setup(MemoryStore(database), stock=5)
            results = await asyncio.gather(
                check_then_adjust(user.id, product.id, 5),
                check_then_adjust(user.id, product.id, 5),
                return_exceptions=True,
            )
            return results, await _stock(database, product.id)

        with caplog.at_level(logging.WARNING, logger="app.ledger"):
            results, stock = asyncio.run(scenario())

        assert all(isinstance(r, Order) for r in results)
        assert sum(r.quantity for r in results) == 10
        assert stock == 0
        assert "Stock clamped to zero" in caplog.text


class TestStockInvariants:
    def test_stock_never_negative_and_round_trips(self, database, cache):
        rng = random.Random(42)

        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=20)
            observed = []
            open_orders = []
            for _ in range(60):
                action = rng.choice(["order", "cancel", "adjust"])
                try:
                    if action == "order":
                        qty = rng.randint(1, 8)
                        open_orders.append(
                            await commands.create_order(store, cache, user.id, product.id, qty)
                        )
                    elif action == "cancel" and open_orders:
                        order = open_orders.pop(rng.randrange(len(open_orders)))
                        await commands.cancel_order(store, cache, order.id)
                    elif action == "adjust":
                        await commands.adjust_stock(store, cache, product.id, rng.randint(-6, 6))
                except InsufficientStock:
                    pass
                observed.append(await _stock(database, product.id))
            return observed

        observed = asyncio.run(scenario())
        assert min(observed) >= 0

    def test_round_trip_restores_original_stock(self, database, cache):
        async def scenario():
            store = MemoryStore(database)
            user, product = await _setup(store, stock=8)
            orders = [
                await commands.create_order(store, cache, user.id, product.id, qty)
                for qty in (1, 2, 5)
            ]
            drained = await _stock(database, product.id)
            for order in orders:
                await commands.cancel_order(store, cache, order.id)
            return drained, await _stock(database, product.id)

        assert asyncio.run(scenario()) == (0, 8)
