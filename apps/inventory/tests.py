import concurrent.futures
import uuid
from decimal import Decimal

from django.db import connections
from django.test import TestCase, TransactionTestCase

from apps.catalog.models import Product
from apps.inventory.services import InventoryService
from apps.utils.exceptions import ErrorCode, ValidationException


def make_product(sku="SKU-1", stock=10, price="100.00", **kwargs):
    return Product.objects.create(
        sku=sku,
        name=kwargs.pop("name", f"Product {sku}"),
        price=Decimal(price),
        stock_quantity=stock,
        **kwargs,
    )


class StockMutationTests(TestCase):
    def setUp(self):
        self.product = make_product(stock=5)

    def test_decrease_stock(self):
        self.assertTrue(InventoryService.decrease_stock(self.product.id, 3))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 2)

    def test_decrease_to_exactly_zero(self):
        self.assertTrue(InventoryService.decrease_stock(self.product.id, 5))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 0)

    def test_decrease_rejected_when_insufficient(self):
        self.assertFalse(InventoryService.decrease_stock(self.product.id, 6))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 5)

    def test_decrease_missing_product(self):
        self.assertFalse(InventoryService.decrease_stock(uuid.uuid4(), 1))

    def test_increase_stock(self):
        self.assertTrue(InventoryService.increase_stock(self.product.id, 4))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 9)

    def test_increase_missing_product(self):
        self.assertFalse(InventoryService.increase_stock(uuid.uuid4(), 1))

    def test_non_positive_quantity_rejected(self):
        for qty in (0, -1):
            with self.assertRaises(ValidationException) as ctx:
                InventoryService.decrease_stock(self.product.id, qty)
            self.assertEqual(ctx.exception.code, ErrorCode.INVALID_QUANTITY)

            with self.assertRaises(ValidationException):
                InventoryService.increase_stock(self.product.id, qty)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 5)

    def test_sequential_decreases_never_oversell(self):
        results = [InventoryService.decrease_stock(self.product.id, 1) for _ in range(8)]

        self.assertEqual(results.count(True), 5)
        self.assertEqual(results.count(False), 3)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 0)

    def test_restore_stock_counts_restored_lines(self):
        other = make_product(sku="SKU-2", stock=0)
        restored = InventoryService.restore_stock([
            {"product_id": self.product.id, "quantity": 2},
            {"product_id": other.id, "quantity": 1},
            {"product_id": uuid.uuid4(), "quantity": 3},
        ])

        self.assertEqual(restored, 2)
        self.product.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 7)
        self.assertEqual(other.stock_quantity, 1)


class ConcurrentStockTests(TransactionTestCase):
    # Real transactions so each thread commits on its own connection

    def setUp(self):
        self.product = make_product(stock=5)

    def test_concurrent_decreases_never_oversell(self):
        def buy_one(product_id):
            try:
                return InventoryService.decrease_stock(product_id, 1)
            finally:
                connections.close_all()

        with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
            futures = [executor.submit(buy_one, self.product.id) for _ in range(20)]
            results = [f.result() for f in futures]

        self.assertEqual(results.count(True), 5)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 0)
