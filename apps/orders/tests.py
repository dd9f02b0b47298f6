# apps/orders/tests.py
import uuid
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.cache import caches
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from apps.catalog.models import Product
from apps.orders.models import (
    CANCELLABLE_STATUSES,
    ORDER_STATUS_TRANSITIONS,
    CartItem,
    Order,
    OrderStatus,
)
from apps.orders.serializers import (
    CartItemSerializer,
    CartValidationResultSerializer,
    CreateOrderSerializer,
    OrderSerializer,
    UpdateOrderStatusSerializer,
)
from apps.orders.services import CartErrorType, CartService, OrderService
from apps.orders.signals import order_status_changed
from apps.orders.tasks import auto_cancel_stale_orders
from apps.utils.exceptions import (
    BusinessLogicException,
    ConflictException,
    ErrorCode,
    InternalException,
    NotFoundException,
    PermissionException,
    StateException,
    ValidationException,
)

User = get_user_model()


class OrderFixtures:
    """Shared setup for order tests. Not a TestCase on its own."""

    def make_user(self, username="alice"):
        return User.objects.create_user(username=username, password="testpass123")

    def make_product(self, sku="SKU-1", stock=10, price="100.00", **kwargs):
        return Product.objects.create(
            sku=sku,
            name=kwargs.pop("name", f"Product {sku}"),
            price=Decimal(price),
            stock_quantity=stock,
            **kwargs,
        )

    def place_order(self, user, product, quantity=1):
        CartService.add_to_cart(user.id, product.id, quantity)
        return OrderService.create_order_from_cart(user.id, "221B Baker Street")

    def force_status(self, order, status):
        Order.objects.filter(pk=order.pk).update(status=status)
        order.refresh_from_db()
        return order


class OrderStatusTests(SimpleTestCase):
    def test_from_id(self):
        self.assertEqual(OrderStatus.from_id(4), OrderStatus.SHIPPED)
        self.assertEqual(OrderStatus.from_id("6"), OrderStatus.CANCELLED)
        for bad in (0, 8, "x", None):
            with self.assertRaises(ValueError):
                OrderStatus.from_id(bad)

    def test_transition_table(self):
        allowed = {
            (OrderStatus.PENDING, OrderStatus.CONFIRMED),
            (OrderStatus.PENDING, OrderStatus.CANCELLED),
            (OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
            (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
            (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
            (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
            (OrderStatus.DELIVERED, OrderStatus.REFUNDED),
        }
        for source in OrderStatus:
            for target in OrderStatus:
                self.assertEqual(
                    source.can_transition_to(target),
                    (source, target) in allowed,
                    f"{source.name} -> {target.name}",
                )

    def test_no_self_transitions(self):
        for status in OrderStatus:
            self.assertFalse(status.can_transition_to(status))

    def test_terminal_states(self):
        self.assertTrue(OrderStatus.CANCELLED.is_terminal)
        self.assertTrue(OrderStatus.REFUNDED.is_terminal)
        self.assertFalse(OrderStatus.DELIVERED.is_terminal)
        self.assertEqual(set(ORDER_STATUS_TRANSITIONS), set(OrderStatus))

    def test_cancellable_subset(self):
        self.assertEqual(CANCELLABLE_STATUSES, {OrderStatus.PENDING, OrderStatus.CONFIRMED})
        self.assertFalse(OrderStatus.PROCESSING.can_cancel())
        self.assertTrue(OrderStatus.CONFIRMED.can_cancel())


class CartServiceTests(OrderFixtures, TestCase):
    def setUp(self):
        self.user = self.make_user()
        self.product = self.make_product(stock=5, price="50.00")

    def test_add_snapshots_effective_price(self):
        sale = self.make_product(sku="SKU-SALE", price="80.00", sale_price=Decimal("60.00"))
        item = CartService.add_to_cart(self.user.id, sale.id, 2)

        self.assertEqual(item.unit_price, Decimal("60.00"))
        self.assertEqual(item.line_total, Decimal("120.00"))

    def test_add_same_product_merges_lines(self):
        CartService.add_to_cart(self.user.id, self.product.id, 2)
        item = CartService.add_to_cart(self.user.id, self.product.id, 3)

        self.assertEqual(item.quantity, 5)
        self.assertEqual(CartService.count_cart_items(self.user.id), 1)

    def test_add_rejects_bad_requests(self):
        cases = [
            (self.product.id, 0, ErrorCode.INVALID_QUANTITY),
            (uuid.uuid4(), 1, ErrorCode.PRODUCT_NOT_FOUND),
            (self.product.id, 6, ErrorCode.INSUFFICIENT_STOCK),
        ]
        for product_id, qty, code in cases:
            with self.assertRaises(BusinessLogicException) as ctx:
                CartService.add_to_cart(self.user.id, product_id, qty)
            self.assertEqual(ctx.exception.code, code)

        inactive = self.make_product(sku="SKU-OFF", is_active=False)
        with self.assertRaises(ValidationException) as ctx:
            CartService.add_to_cart(self.user.id, inactive.id, 1)
        self.assertEqual(ctx.exception.code, ErrorCode.PRODUCT_INACTIVE)

    def test_merge_cannot_exceed_stock(self):
        CartService.add_to_cart(self.user.id, self.product.id, 4)
        with self.assertRaises(ConflictException):
            CartService.add_to_cart(self.user.id, self.product.id, 2)
        self.assertEqual(CartItem.objects.get(member=self.user).quantity, 4)

    def test_update_and_remove(self):
        item = CartService.add_to_cart(self.user.id, self.product.id, 1)

        item = CartService.update_cart_item_quantity(self.user.id, item.id, 3)
        self.assertEqual(item.quantity, 3)

        CartService.remove_from_cart(self.user.id, item.id)
        self.assertEqual(CartService.count_cart_items(self.user.id), 0)

    def test_other_member_cannot_touch_line(self):
        item = CartService.add_to_cart(self.user.id, self.product.id, 1)
        mallory = self.make_user("mallory")

        with self.assertRaises(PermissionException):
            CartService.update_cart_item_quantity(mallory.id, item.id, 2)
        with self.assertRaises(PermissionException):
            CartService.remove_from_cart(mallory.id, item.id)

    def test_total_and_clear(self):
        other = self.make_product(sku="SKU-2", price="12.50")
        CartService.add_to_cart(self.user.id, self.product.id, 2)
        CartService.add_to_cart(self.user.id, other.id, 2)

        self.assertEqual(CartService.calculate_cart_total(self.user.id), Decimal("125.00"))
        self.assertEqual(CartService.clear_cart(self.user.id), 2)
        self.assertEqual(CartService.calculate_cart_total(self.user.id), Decimal("0.00"))

    def test_validate_clean_cart(self):
        CartService.add_to_cart(self.user.id, self.product.id, 2)
        result = CartService.validate_cart(self.user.id)

        self.assertTrue(result.valid)
        self.assertTrue(CartService.validate_cart_stock(self.user.id))

    def test_validate_reports_price_drift_only_in_full_mode(self):
        CartService.add_to_cart(self.user.id, self.product.id, 1)
        Product.objects.filter(pk=self.product.pk).update(price=Decimal("55.00"))

        result = CartService.validate_cart(self.user.id)
        self.assertTrue(result.has_error(CartErrorType.PRICE_CHANGED))
        self.assertTrue(CartService.validate_cart(self.user.id, stock_only=True).valid)

    def test_validate_collects_every_error_on_a_line(self):
        CartService.add_to_cart(self.user.id, self.product.id, 3)
        Product.objects.filter(pk=self.product.pk).update(
            is_active=False, stock_quantity=1, price=Decimal("40.00"),
        )

        result = CartService.validate_cart(self.user.id)
        types = {e.error_type for e in result.errors}
        self.assertEqual(
            types,
            {CartErrorType.PRODUCT_INACTIVE, CartErrorType.OUT_OF_STOCK, CartErrorType.PRICE_CHANGED},
        )

        stock_only = CartService.validate_cart(self.user.id, stock_only=True)
        self.assertEqual([e.error_type for e in stock_only.errors], [CartErrorType.OUT_OF_STOCK])

    def test_validate_missing_product(self):
        doomed = self.make_product(sku="SKU-GONE")
        CartService.add_to_cart(self.user.id, doomed.id, 1)
        Product.objects.filter(pk=doomed.pk).delete()

        result = CartService.validate_cart(self.user.id)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0].error_type, CartErrorType.PRODUCT_NOT_FOUND)
        self.assertEqual(result.errors[0].product_id, str(doomed.id))

        stock_only = CartService.validate_cart(self.user.id, stock_only=True)
        self.assertEqual(stock_only.errors[0].error_type, CartErrorType.OUT_OF_STOCK)

    def test_refresh_cart_prices(self):
        item = CartService.add_to_cart(self.user.id, self.product.id, 1)
        Product.objects.filter(pk=self.product.pk).update(sale_price=Decimal("45.00"))

        self.assertEqual(CartService.refresh_cart_prices(self.user.id), 1)
        item.refresh_from_db()
        self.assertEqual(item.unit_price, Decimal("45.00"))
        self.assertTrue(CartService.validate_cart(self.user.id).valid)
        self.assertEqual(CartService.refresh_cart_prices(self.user.id), 0)

    def test_cart_item_serializer(self):
        item = CartService.add_to_cart(self.user.id, self.product.id, 2)
        data = CartItemSerializer(item).data

        self.assertEqual(data["product_name"], self.product.name)
        self.assertEqual(data["line_total"], "100.00")

    def test_cart_item_serializer_survives_deleted_product(self):
        doomed = self.make_product(sku="SKU-GONE")
        CartService.add_to_cart(self.user.id, doomed.id, 1)
        Product.objects.filter(pk=doomed.pk).delete()

        item = CartItem.objects.get(member=self.user, product_id=doomed.id)
        data = CartItemSerializer(item).data

        self.assertIsNone(data["product_name"])
        self.assertEqual(data["product"], doomed.id)

    def test_validation_result_serializer(self):
        CartService.add_to_cart(self.user.id, self.product.id, 1)
        Product.objects.filter(pk=self.product.pk).update(price=Decimal("1.00"))

        data = CartValidationResultSerializer(CartService.validate_cart(self.user.id)).data
        self.assertFalse(data["valid"])
        self.assertEqual(data["errors"][0]["error_type"], "PRICE_CHANGED")
        self.assertEqual(data["errors"][0]["product_id"], str(self.product.id))


class OrderStatusServiceTests(OrderFixtures, TestCase):
    def setUp(self):
        caches["idempotency"].clear()
        self.user = self.make_user()
        self.product = self.make_product(stock=10)
        self.order = self.place_order(self.user, self.product, quantity=2)

    def test_walks_happy_path(self):
        for target in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED,
                       OrderStatus.DELIVERED, OrderStatus.REFUNDED):
            order = OrderService.update_order_status(self.order.id, target)
            self.assertEqual(order.status, target)

    def test_accepts_raw_status_id(self):
        order = OrderService.update_order_status(self.order.id, 2)
        self.assertEqual(order.order_status, OrderStatus.CONFIRMED)

    def test_shipped_cannot_go_back_to_confirmed(self):
        self.force_status(self.order, OrderStatus.SHIPPED)

        with self.assertRaises(StateException) as ctx:
            OrderService.update_order_status(self.order.id, OrderStatus.CONFIRMED)
        self.assertEqual(ctx.exception.code, ErrorCode.ORDER_INVALID_TRANSITION)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.SHIPPED)
        self.assertEqual(
            OrderService.update_order_status(self.order.id, OrderStatus.DELIVERED).status,
            OrderStatus.DELIVERED,
        )

    def test_same_or_unknown_status(self):
        for target in (OrderStatus.PENDING, 99, "nope"):
            with self.assertRaises(StateException) as ctx:
                OrderService.update_order_status(self.order.id, target)
            self.assertEqual(ctx.exception.code, ErrorCode.ORDER_STATUS_ERROR)

    def test_missing_order(self):
        for order_id in (uuid.uuid4(), "not-a-uuid"):
            with self.assertRaises(NotFoundException) as ctx:
                OrderService.update_order_status(order_id, OrderStatus.CONFIRMED)
            self.assertEqual(ctx.exception.code, ErrorCode.ORDER_NOT_FOUND)

    def test_status_moved_underneath_is_internal_error(self):
        stale = Order.objects.get(pk=self.order.pk)
        Order.objects.filter(pk=self.order.pk).update(status=OrderStatus.CONFIRMED)

        with patch.object(OrderService, "_get_order_or_404", return_value=stale):
            with self.assertLogs("apps.orders.services", level="ERROR"):
                with self.assertRaises(InternalException) as ctx:
                    OrderService.update_order_status(self.order.id, OrderStatus.CANCELLED)

        self.assertEqual(ctx.exception.code, ErrorCode.INTERNAL_SERVER_ERROR)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)

    def test_status_change_signal_fires_on_commit(self):
        received = []

        def receiver(sender, order, old_status, new_status, **kwargs):
            received.append((old_status, new_status))

        order_status_changed.connect(receiver)
        self.addCleanup(order_status_changed.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            OrderService.update_order_status(self.order.id, OrderStatus.CONFIRMED)

        self.assertEqual(received, [(OrderStatus.PENDING, OrderStatus.CONFIRMED)])

    def test_cancel_restores_stock(self):
        order = OrderService.cancel_order(self.order.id, self.user.id)

        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)

        with self.assertRaises(StateException) as ctx:
            OrderService.cancel_order(self.order.id, self.user.id)
        self.assertEqual(ctx.exception.code, ErrorCode.ORDER_STATUS_ERROR)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)

    def test_cancel_confirmed_order(self):
        OrderService.update_order_status(self.order.id, OrderStatus.CONFIRMED)
        order = OrderService.cancel_order(self.order.id)
        self.assertEqual(order.status, OrderStatus.CANCELLED)

    def test_cannot_cancel_once_processing(self):
        self.force_status(self.order, OrderStatus.PROCESSING)

        with self.assertRaises(StateException):
            OrderService.cancel_order(self.order.id, self.user.id)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 8)

    def test_cancel_requires_ownership(self):
        mallory = self.make_user("mallory")
        with self.assertRaises(PermissionException):
            OrderService.cancel_order(self.order.id, mallory.id)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.PENDING)

    def test_delete_only_cancelled(self):
        with self.assertRaises(StateException):
            OrderService.delete_order(self.order.id, self.user.id)

        OrderService.cancel_order(self.order.id, self.user.id)
        OrderService.delete_order(self.order.id, self.user.id)

        self.assertFalse(Order.objects.filter(pk=self.order.id).exists())
        with self.assertRaises(NotFoundException):
            OrderService.get_order(self.order.id, self.user.id)

    def test_admin_delete_skips_ownership(self):
        OrderService.cancel_order(self.order.id)
        OrderService.delete_order_as_admin(self.order.id)
        self.assertEqual(Order.objects.count(), 0)

    def test_member_delete_requires_ownership(self):
        OrderService.cancel_order(self.order.id)
        mallory = self.make_user("mallory")
        with self.assertRaises(PermissionException):
            OrderService.delete_order(self.order.id, mallory.id)


class OrderQueryTests(OrderFixtures, TestCase):
    def setUp(self):
        caches["idempotency"].clear()
        self.user = self.make_user()
        self.product = self.make_product(stock=100)
        self.orders = [self.place_order(self.user, self.product) for _ in range(3)]
        base = timezone.now() - timedelta(days=1)
        for i, order in enumerate(self.orders):
            Order.objects.filter(pk=order.pk).update(created_at=base + timedelta(minutes=i))

    def test_get_order_checks_ownership(self):
        order = OrderService.get_order(self.orders[0].id, self.user.id)
        self.assertEqual(order.pk, self.orders[0].pk)

        mallory = self.make_user("mallory")
        with self.assertRaises(PermissionException):
            OrderService.get_order(self.orders[0].id, mallory.id)

    def test_get_by_number(self):
        order = OrderService.get_order_by_number(self.orders[1].order_number, self.user.id)
        self.assertEqual(order.pk, self.orders[1].pk)

        with self.assertRaises(NotFoundException):
            OrderService.get_order_by_number("ORDMISSING", self.user.id)

    def test_list_newest_first_and_paged(self):
        first_page = OrderService.list_member_orders(self.user.id, page=0, size=2)
        second_page = OrderService.list_member_orders(self.user.id, page=1, size=2)

        self.assertEqual([o.pk for o in first_page], [self.orders[2].pk, self.orders[1].pk])
        self.assertEqual([o.pk for o in second_page], [self.orders[0].pk])
        self.assertEqual(OrderService.count_member_orders(self.user.id), 3)

    def test_list_rejects_bad_paging(self):
        for page, size in ((-1, 10), (0, 0), (0, 101)):
            with self.assertRaises(ValidationException) as ctx:
                OrderService.list_member_orders(self.user.id, page=page, size=size)
            self.assertEqual(ctx.exception.code, ErrorCode.INVALID_PAGINATION)

    def test_get_order_items(self):
        items = OrderService.get_order_items(self.orders[0].id, self.user.id)
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].product_id, self.product.id)

    def test_order_serializer(self):
        data = OrderSerializer(self.orders[0]).data

        self.assertEqual(data["status"], OrderStatus.PENDING)
        self.assertEqual(data["status_display"], "Pending")
        self.assertTrue(data["can_cancel"])
        self.assertEqual(data["total_amount"], "100.00")
        self.assertEqual(len(data["items"]), 1)


class CreateOrderSerializerTests(SimpleTestCase):
    def test_blank_idempotency_key_becomes_none(self):
        serializer = CreateOrderSerializer(data={"shipping_address": " 1 Main St ", "idempotency_key": ""})
        self.assertTrue(serializer.is_valid(), serializer.errors)
        self.assertIsNone(serializer.validated_data["idempotency_key"])
        self.assertEqual(serializer.validated_data["shipping_address"], "1 Main St")

    def test_blank_address_rejected(self):
        serializer = CreateOrderSerializer(data={"shipping_address": "   "})
        self.assertFalse(serializer.is_valid())
        self.assertIn("shipping_address", serializer.errors)


    def test_status_id_must_be_known(self):
        self.assertTrue(UpdateOrderStatusSerializer(data={"status_id": 4}).is_valid())
        self.assertFalse(UpdateOrderStatusSerializer(data={"status_id": 42}).is_valid())


class UpdateOrderStatusCommandTests(OrderFixtures, TestCase):
    def setUp(self):
        caches["idempotency"].clear()
        self.user = self.make_user()
        self.product = self.make_product(stock=10)
        self.order = self.place_order(self.user, self.product, quantity=3)

    def test_moves_status_by_name(self):
        out = StringIO()
        call_command("update_order_status", self.order.order_number, "confirmed", stdout=out)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertIn("Pending -> Confirmed", out.getvalue())

    def test_cancel_by_id_restores_stock(self):
        call_command("update_order_status", self.order.order_number, "6", stdout=StringIO())

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)

    def test_invalid_transition_reports_code(self):
        with self.assertRaisesMessage(CommandError, "ORDER_INVALID_TRANSITION"):
            call_command("update_order_status", self.order.order_number, "SHIPPED", stdout=StringIO())

    def test_unknown_status_or_order(self):
        with self.assertRaises(CommandError):
            call_command("update_order_status", self.order.order_number, "LOST", stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command("update_order_status", "ORDNOPE", "SHIPPED", stdout=StringIO())


@override_settings(ORDER_PENDING_TIMEOUT_MINUTES=60)
class AutoCancelStaleOrdersTests(OrderFixtures, TestCase):
    def setUp(self):
        caches["idempotency"].clear()
        self.user = self.make_user()
        self.product = self.make_product(stock=10)

    def test_cancels_only_old_pending_orders(self):
        stale = self.place_order(self.user, self.product, quantity=2)
        fresh = self.place_order(self.user, self.product, quantity=1)
        old_confirmed = self.place_order(self.user, self.product, quantity=1)

        two_hours_ago = timezone.now() - timedelta(hours=2)
        Order.objects.filter(pk__in=[stale.pk, old_confirmed.pk]).update(created_at=two_hours_ago)
        self.force_status(old_confirmed, OrderStatus.CONFIRMED)

        result = auto_cancel_stale_orders()

        self.assertEqual(result, "Auto-cancelled 1 orders")
        stale.refresh_from_db()
        fresh.refresh_from_db()
        old_confirmed.refresh_from_db()
        self.assertEqual(stale.status, OrderStatus.CANCELLED)
        self.assertEqual(fresh.status, OrderStatus.PENDING)
        self.assertEqual(old_confirmed.status, OrderStatus.CONFIRMED)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 8)
