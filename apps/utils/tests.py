# apps/utils/tests.py
import json
import logging
from decimal import Decimal

from django.test import SimpleTestCase, TestCase

from apps.catalog.models import Product
from apps.catalog.repositories import ProductRepository

from .exceptions import CompensationError, PersistenceError, ValidationError
from .logging import JSONFormatter
from .utils import money, order_reference
from .validators import validate_not_blank, validate_positive_id, validate_quantity


class ValidatorTests(SimpleTestCase):
    def test_positive_id(self):
        self.assertEqual(validate_positive_id(5, "product_id"), 5)
        for bad in (0, -1, True, "5", None, 1.0):
            with self.assertRaises(ValidationError):
                validate_positive_id(bad, "product_id")

    def test_quantity(self):
        self.assertEqual(validate_quantity(3), 3)
        self.assertEqual(validate_quantity(0, allow_zero=True), 0)
        with self.assertRaises(ValidationError):
            validate_quantity(0)
        with self.assertRaises(ValidationError):
            validate_quantity(-1, allow_zero=True)
        with self.assertRaises(ValidationError):
            validate_quantity(False)

    def test_not_blank(self):
        self.assertEqual(validate_not_blank("  COD ", "payment_method"), "COD")
        with self.assertRaises(ValidationError) as ctx:
            validate_not_blank("   ", "payment_method")
        self.assertEqual(ctx.exception.code, "validation_error")


class UtilsTests(SimpleTestCase):
    def test_money(self):
        self.assertEqual(money(19.99), Decimal("19.99"))
        self.assertEqual(money("2.005"), Decimal("2.01"))
        self.assertEqual(money(3), Decimal("3.00"))

    def test_order_reference(self):
        self.assertEqual(order_reference(42), "ORDER-42")

    def test_compensation_error_keeps_cause(self):
        cause = RuntimeError("db down")
        err = CompensationError("release failed", step="release:7", cause=cause)
        self.assertEqual(err.code, "compensation_error")
        self.assertEqual(err.step, "release:7")
        self.assertIs(err.cause, cause)


class JSONFormatterTests(SimpleTestCase):
    def _record(self, msg, args=None, **extra):
        record = logging.LogRecord("apps.orders.services", logging.WARNING, __file__, 10, msg, args, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_context_fields_are_included(self):
        out = json.loads(JSONFormatter().format(self._record("Order 3 rolled back", order_id=3, reason="insufficient_stock")))

        self.assertEqual(out["msg"], "Order 3 rolled back")
        self.assertEqual(out["lvl"], "WARNING")
        self.assertEqual(out["order_id"], 3)
        self.assertEqual(out["reason"], "insufficient_stock")
        self.assertNotIn("user_id", out)

    def test_sensitive_keys_are_redacted(self):
        record = self._record({"user": "a", "password": "hunter2", "nested": {"token": "t"}})

        out = json.loads(JSONFormatter().format(record))

        self.assertNotIn("hunter2", out["msg"])
        self.assertIn("***REDACTED***", out["msg"])


class ModelRepositoryTests(TestCase):
    def setUp(self):
        self.repo = ProductRepository()

    def test_crud(self):
        product = self.repo.save(Product(name="Cable", price=Decimal("3.00")))
        self.assertEqual(self.repo.find_by_id(product.pk).name, "Cable")

        product.name = "USB Cable"
        self.repo.update(product, fields=["name"])
        self.assertEqual(Product.objects.get(pk=product.pk).name, "USB Cable")

        self.assertTrue(self.repo.delete(product.pk))
        self.assertFalse(self.repo.delete(product.pk))
        self.assertIsNone(self.repo.find_by_id(product.pk))

    def test_database_errors_become_persistence_errors(self):
        self.repo.save(Product(name="Cable", sku="C-1"))

        with self.assertRaises(PersistenceError):
            self.repo.save(Product(name="Other Cable", sku="C-1"))
        with self.assertRaises(PersistenceError):
            self.repo.save(Product(name="Broken", price=Decimal("-1.00")))

        self.assertEqual(Product.objects.count(), 1)
