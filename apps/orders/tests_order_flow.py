import time
from decimal import Decimal
from unittest.mock import patch

from django.core.cache import caches
from django.db import transaction
from django.test import TestCase, override_settings

from apps.catalog.models import Product
from apps.inventory.services import InventoryService
from apps.orders.idempotency import PENDING, IdempotencyRegistry
from apps.orders.models import CartItem, Order, OrderItem, OrderStatus
from apps.orders.services import CartService, OrderService
from apps.orders.signals import order_created
from apps.orders.tests import OrderFixtures
from apps.utils.exceptions import (
    ConflictException,
    ErrorCode,
    InternalException,
    NotFoundException,
    ValidationException,
)
from apps.utils.utils import UNAMBIGUOUS_ALPHABET

ADDRESS = "221B Baker Street, London"


class OrderFlowTests(OrderFixtures, TestCase):
    def setUp(self):
        caches["idempotency"].clear()
        self.user = self.make_user()
        self.food = self.make_product(sku="DOG-FOOD-2KG", stock=10, price="25.00")
        self.toy = self.make_product(sku="CAT-TOY", stock=3, price="80.00", sale_price=Decimal("60.00"))
        CartService.add_to_cart(self.user.id, self.food.id, 4)
        CartService.add_to_cart(self.user.id, self.toy.id, 1)

    def test_create_order_from_cart(self):
        order = OrderService.create_order_from_cart(self.user.id, ADDRESS, notes="Leave at door")

        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.total_amount, Decimal("160.00"))
        self.assertEqual(order.shipping_address, ADDRESS)
        self.assertEqual(order.notes, "Leave at door")

        items = {i.product_id: i for i in OrderItem.objects.filter(order=order)}
        self.assertEqual(items[self.food.id].quantity, 4)
        self.assertEqual(items[self.food.id].total_price, Decimal("100.00"))
        self.assertEqual(items[self.toy.id].unit_price, Decimal("60.00"))
        self.assertEqual(sum(i.total_price for i in items.values()), order.total_amount)

        self.food.refresh_from_db()
        self.toy.refresh_from_db()
        self.assertEqual(self.food.stock_quantity, 6)
        self.assertEqual(self.toy.stock_quantity, 2)
        self.assertEqual(CartService.count_cart_items(self.user.id), 0)

    def test_order_number_format(self):
        order = OrderService.create_order_from_cart(self.user.id, ADDRESS)

        self.assertTrue(order.order_number.startswith("ORD"))
        self.assertEqual(len(order.order_number), 15)
        self.assertTrue(all(c in UNAMBIGUOUS_ALPHABET for c in order.order_number[3:]))

    def test_order_created_signal_fires_on_commit(self):
        received = []

        def receiver(sender, order, **kwargs):
            received.append(order.pk)

        order_created.connect(receiver)
        self.addCleanup(order_created.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            order = OrderService.create_order_from_cart(self.user.id, ADDRESS)

        self.assertEqual(received, [order.pk])

    def test_empty_cart(self):
        CartService.clear_cart(self.user.id)

        with self.assertRaises(ValidationException) as ctx:
            OrderService.create_order_from_cart(self.user.id, ADDRESS)
        self.assertEqual(ctx.exception.code, ErrorCode.CART_EMPTY)
        self.assertEqual(Order.objects.count(), 0)

    def test_insufficient_stock_leaves_everything_untouched(self):
        Product.objects.filter(pk=self.toy.pk).update(stock_quantity=0)

        with self.assertRaises(ConflictException) as ctx:
            OrderService.create_order_from_cart(self.user.id, ADDRESS)
        self.assertEqual(ctx.exception.code, ErrorCode.INSUFFICIENT_STOCK)

        self.food.refresh_from_db()
        self.assertEqual(self.food.stock_quantity, 10)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartService.count_cart_items(self.user.id), 2)

    def test_partial_stock_failure_rolls_back_earlier_decrements(self):
        # Stock vanishes between the cart check and the second decrement
        real_decrease = InventoryService.decrease_stock
        calls = []

        def flaky_decrease(product_id, quantity):
            calls.append(product_id)
            if len(calls) == 2:
                return False
            return real_decrease(product_id, quantity)

        with patch("apps.orders.services.InventoryService.decrease_stock", side_effect=flaky_decrease):
            with self.assertRaises(ConflictException) as ctx:
                OrderService.create_order_from_cart(self.user.id, ADDRESS)

        self.assertEqual(ctx.exception.code, ErrorCode.INSUFFICIENT_STOCK)
        self.assertEqual(len(calls), 2)

        self.food.refresh_from_db()
        self.toy.refresh_from_db()
        self.assertEqual(self.food.stock_quantity, 10)
        self.assertEqual(self.toy.stock_quantity, 3)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderItem.objects.count(), 0)
        self.assertEqual(CartItem.objects.filter(member=self.user).count(), 2)

    def test_price_drift_does_not_block_checkout(self):
        Product.objects.filter(pk=self.food.pk).update(price=Decimal("30.00"))

        order = OrderService.create_order_from_cart(self.user.id, ADDRESS)
        self.assertEqual(order.total_amount, Decimal("160.00"))

    def test_inactive_product_does_not_block_checkout(self):
        Product.objects.filter(pk=self.toy.pk).update(is_active=False)

        order = OrderService.create_order_from_cart(self.user.id, ADDRESS)
        self.assertEqual(order.items.count(), 2)

    @override_settings(ORDER_NUMBER_MAX_ATTEMPTS=3)
    def test_order_number_exhaustion(self):
        existing = OrderService.create_order_from_cart(self.user.id, ADDRESS)
        CartService.add_to_cart(self.user.id, self.food.id, 1)

        with patch("apps.orders.services.generate_code", return_value=existing.order_number) as gen:
            with self.assertRaises(InternalException):
                OrderService.create_order_from_cart(self.user.id, ADDRESS)

        self.assertEqual(gen.call_count, 3)
        self.assertEqual(Order.objects.count(), 1)
        self.food.refresh_from_db()
        self.assertEqual(self.food.stock_quantity, 6)
        self.assertEqual(CartService.count_cart_items(self.user.id), 1)


class IdempotentOrderTests(OrderFixtures, TestCase):
    def setUp(self):
        caches["idempotency"].clear()
        self.user = self.make_user()
        self.product = self.make_product(stock=10, price="20.00")
        CartService.add_to_cart(self.user.id, self.product.id, 2)
        self.registry = IdempotencyRegistry()

    def checkout(self, member_id, key):
        # Registry is resolved on commit
        with self.captureOnCommitCallbacks(execute=True):
            return OrderService.create_order_from_cart(member_id, ADDRESS, idempotency_key=key)

    def test_retry_returns_same_order(self):
        first = self.checkout(self.user.id, "checkout-1")
        second = self.checkout(self.user.id, "checkout-1")

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Order.objects.count(), 1)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 8)

        key = self.registry.build_key(self.user.id, "checkout-1")
        self.assertEqual(self.registry.lookup(key), str(first.pk))

    def test_key_resolves_only_after_commit(self):
        key = self.registry.build_key(self.user.id, "checkout-1")

        with self.captureOnCommitCallbacks() as callbacks:
            order = OrderService.create_order_from_cart(self.user.id, ADDRESS, idempotency_key="checkout-1")
            self.assertEqual(self.registry.lookup(key), PENDING)

            with self.assertRaises(ConflictException) as ctx:
                OrderService.create_order_from_cart(self.user.id, ADDRESS, idempotency_key="checkout-1")
            self.assertEqual(ctx.exception.code, ErrorCode.CONFLICT)

        for callback in callbacks:
            callback()
        self.assertEqual(self.registry.lookup(key), str(order.pk))

    def test_outer_rollback_does_not_pin_key(self):
        key = self.registry.build_key(self.user.id, "checkout-1")

        with self.assertRaises(RuntimeError):
            with transaction.atomic():
                OrderService.create_order_from_cart(self.user.id, ADDRESS, idempotency_key="checkout-1")
                raise RuntimeError("request aborted")

        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartService.count_cart_items(self.user.id), 1)
        self.assertEqual(self.registry.lookup(key), PENDING)

        with self.assertRaises(ConflictException):
            OrderService.create_order_from_cart(self.user.id, ADDRESS, idempotency_key="checkout-1")

        # Once the placeholder expires the same key goes through
        later = time.time() + self.registry.pending_ttl + 1
        with patch("time.time", return_value=later):
            order = self.checkout(self.user.id, "checkout-1")
            self.assertEqual(self.registry.lookup(key), str(order.pk))

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 8)

    def test_key_in_flight_conflicts(self):
        key = self.registry.build_key(self.user.id, "checkout-1")
        self.assertTrue(self.registry.reserve(key))

        with self.assertRaises(ConflictException) as ctx:
            OrderService.create_order_from_cart(self.user.id, ADDRESS, idempotency_key="checkout-1")
        self.assertEqual(ctx.exception.code, ErrorCode.CONFLICT)

        self.assertEqual(self.registry.lookup(key), PENDING)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartService.count_cart_items(self.user.id), 1)

    def test_failure_releases_key_for_retry(self):
        Product.objects.filter(pk=self.product.pk).update(stock_quantity=1)

        with self.assertRaises(ConflictException):
            self.checkout(self.user.id, "checkout-1")

        key = self.registry.build_key(self.user.id, "checkout-1")
        self.assertIsNone(self.registry.lookup(key))

        Product.objects.filter(pk=self.product.pk).update(stock_quantity=5)
        order = self.checkout(self.user.id, "checkout-1")
        self.assertEqual(self.registry.lookup(key), str(order.pk))

    def test_keys_are_scoped_per_member(self):
        bob = self.make_user("bob")
        CartService.add_to_cart(bob.id, self.product.id, 1)

        mine = self.checkout(self.user.id, "same")
        his = self.checkout(bob.id, "same")

        self.assertNotEqual(mine.pk, his.pk)
        self.assertEqual(his.member_id, bob.id)

    def test_blank_key_is_not_deduplicated(self):
        OrderService.create_order_from_cart(self.user.id, ADDRESS, idempotency_key="")
        CartService.add_to_cart(self.user.id, self.product.id, 1)
        OrderService.create_order_from_cart(self.user.id, ADDRESS, idempotency_key="")

        self.assertEqual(Order.objects.count(), 2)

    def test_replay_of_deleted_order(self):
        order = self.checkout(self.user.id, "checkout-1")
        OrderService.cancel_order(order.pk, self.user.id)
        OrderService.delete_order(order.pk, self.user.id)

        with self.assertRaises(NotFoundException) as ctx:
            self.checkout(self.user.id, "checkout-1")
        self.assertEqual(ctx.exception.code, ErrorCode.ORDER_NOT_FOUND)
