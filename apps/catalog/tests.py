# apps/catalog/tests.py
from decimal import Decimal
from io import StringIO

from django.core.cache import caches
from django.core.management import call_command
from django.test import TestCase

from apps.inventory.models import StockRecord
from apps.orders.services import OrderSaga
from apps.utils.exceptions import NotFoundError, ValidationError

from .cache import ProductCache
from .models import Product
from .services import ProductService


class FakeClock:
    def __init__(self, start=1000.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


class ProductCacheTests(TestCase):
    def setUp(self):
        caches["default"].clear()
        self.clock = FakeClock()
        self.cache = ProductCache(ttl=60, clock=self.clock)

    def test_entry_expires_after_ttl(self):
        self.cache.put("product:1", "widget")

        self.clock.advance(59)
        self.assertEqual(self.cache.get("product:1"), "widget")

        self.clock.advance(1)
        self.assertIsNone(self.cache.get("product:1"))

    def test_none_is_not_cached(self):
        self.cache.put("product:2", None)
        self.assertIsNone(self.cache.get("product:2"))

    def test_invalidate_single_key(self):
        self.cache.put("product:1", "a")
        self.cache.put("product:2", "b")

        self.cache.invalidate("product:1")

        self.assertIsNone(self.cache.get("product:1"))
        self.assertEqual(self.cache.get("product:2"), "b")

    def test_invalidate_all(self):
        self.cache.put("product:1", "a")
        self.cache.put("search:mouse", ["a"])

        self.cache.invalidate_all()
        self.assertIsNone(self.cache.get("product:1"))
        self.assertIsNone(self.cache.get("search:mouse"))

        # Works again after a second bump.
        self.cache.put("product:1", "c")
        self.cache.invalidate_all()
        self.assertIsNone(self.cache.get("product:1"))


class ProductServiceTests(TestCase):
    def setUp(self):
        caches["default"].clear()
        self.service = ProductService()

    def test_create_product_opens_stock_record(self):
        product = self.service.create_product(
            "Desk Lamp", "19.90", cost_price="7.25", initial_stock=12, reorder_level=4,
            warehouse_location="C-3", sku="DL-1",
        )

        record = StockRecord.objects.get(product=product)
        self.assertEqual(product.price, Decimal("19.90"))
        self.assertEqual(record.quantity_in_stock, 12)
        self.assertEqual(record.reorder_level, 4)
        self.assertEqual(record.warehouse_location, "C-3")

    def test_create_product_validation(self):
        with self.assertRaises(ValidationError):
            self.service.create_product("Lamp", "-1")
        with self.assertRaises(ValidationError):
            self.service.create_product("   ", "5")
        with self.assertRaises(ValidationError):
            self.service.create_product("Lamp", "5", initial_stock=-3)
        with self.assertRaises(ValidationError):
            self.service.create_product("Lamp", "5", reorder_level=-1)

        self.assertFalse(Product.objects.exists())
        self.assertFalse(StockRecord.objects.exists())

    def test_get_product_reads_through_cache(self):
        product = self.service.create_product("Lamp", "10.00")

        self.assertEqual(self.service.get_product(product.pk).price, Decimal("10.00"))

        # A write that bypasses the service is not seen until invalidation.
        Product.objects.filter(pk=product.pk).update(price=Decimal("12.00"))
        self.assertEqual(self.service.get_product(product.pk).price, Decimal("10.00"))

        self.service.update_price(product.pk, "13.00")
        self.assertEqual(self.service.get_product(product.pk).price, Decimal("13.00"))

    def test_get_missing_product(self):
        with self.assertRaises(NotFoundError):
            self.service.get_product(424242)

    def test_search_and_deactivate(self):
        lamp = self.service.create_product("Desk Lamp", "10.00")
        self.service.create_product("Floor Lamp", "30.00")
        self.service.create_product("Chair", "50.00")

        self.assertEqual(len(self.service.search_products("LAMP")), 2)

        self.service.deactivate(lamp.pk)

        names = [p.name for p in self.service.search_products("lamp")]
        self.assertEqual(names, ["Floor Lamp"])

    def test_order_pricing_ignores_stale_cache(self):
        product = self.service.create_product("Lamp", "10.00", initial_stock=5)
        self.service.get_product(product.pk)
        Product.objects.filter(pk=product.pk).update(price=Decimal("11.00"))

        result = OrderSaga().create_order(3, [(product.pk, 2)], "addr", "COD")

        self.assertTrue(result.ok)
        self.assertEqual(result.order.total_amount, Decimal("22.00"))


class SeedCatalogCommandTests(TestCase):
    def test_seed_and_rerun(self):
        out = StringIO()
        call_command("seed_catalog", qty=7, stdout=out)

        self.assertEqual(Product.objects.count(), 5)
        self.assertEqual(
            set(StockRecord.objects.values_list("quantity_in_stock", flat=True)), {7}
        )
        self.assertIn("Created: 5", out.getvalue())

        out = StringIO()
        call_command("seed_catalog", stdout=out)
        self.assertEqual(Product.objects.count(), 5)
        self.assertIn("skipped existing: 5", out.getvalue())

    def test_negative_qty_is_rejected(self):
        out = StringIO()
        call_command("seed_catalog", qty=-1, stdout=out)
        self.assertFalse(Product.objects.exists())
