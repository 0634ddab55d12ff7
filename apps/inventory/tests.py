import concurrent.futures
from decimal import Decimal

from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings

from apps.catalog.models import Product
from apps.inventory.models import StockRecord, StockMovementLog
from apps.inventory.services import StockLedger
from apps.inventory.tasks import report_low_stock


def make_stocked_product(name, qty, reorder_level=10, cost_price="0.00", location=""):
    product = Product.objects.create(name=name, price=Decimal("10.00"), cost_price=Decimal(cost_price))
    StockRecord.objects.create(
        product=product,
        quantity_in_stock=qty,
        reorder_level=reorder_level,
        warehouse_location=location,
    )
    return product


class StockLedgerTests(TestCase):
    def setUp(self):
        self.ledger = StockLedger()
        self.product = make_stocked_product("Keyboard", 10, reorder_level=3)

    def _qty(self, product=None):
        product = product or self.product
        return StockRecord.objects.get(product=product).quantity_in_stock

    def test_check_availability(self):
        self.assertTrue(self.ledger.check_availability(self.product.pk, 10))
        self.assertTrue(self.ledger.check_availability(self.product.pk, 0))
        self.assertFalse(self.ledger.check_availability(self.product.pk, 11))
        self.assertFalse(self.ledger.check_availability(self.product.pk, -1))
        self.assertFalse(self.ledger.check_availability(987654, 1))

    def test_reserve_decrements_and_logs(self):
        self.assertTrue(self.ledger.reserve(self.product.pk, 4, reference="ORDER-1"))

        self.assertEqual(self._qty(), 6)
        log = StockMovementLog.objects.get(record__product=self.product)
        self.assertEqual(log.movement_type, StockMovementLog.MovementType.RESERVATION)
        self.assertEqual(log.quantity_change, -4)
        self.assertEqual(log.balance_after, 6)
        self.assertEqual(log.reference, "ORDER-1")

    def test_reserve_refuses_more_than_available(self):
        self.assertFalse(self.ledger.reserve(self.product.pk, 11))
        self.assertEqual(self._qty(), 10)
        self.assertFalse(StockMovementLog.objects.exists())

    def test_reserve_rejects_bad_arguments(self):
        self.assertFalse(self.ledger.reserve(self.product.pk, 0))
        self.assertFalse(self.ledger.reserve(self.product.pk, -2))
        self.assertFalse(self.ledger.reserve(987654, 1))
        self.assertFalse(self.ledger.reserve(0, 1))
        self.assertEqual(self._qty(), 10)

    def test_reserve_can_take_everything(self):
        self.assertTrue(self.ledger.reserve(self.product.pk, 10))
        self.assertEqual(self._qty(), 0)
        self.assertFalse(self.ledger.reserve(self.product.pk, 1))

    def test_journal_failure_rolls_back_decrement(self):
        def journal(record):
            raise RuntimeError("journal unavailable")

        with self.assertRaises(RuntimeError):
            self.ledger.reserve(self.product.pk, 3, journal=journal)

        self.assertEqual(self._qty(), 10)
        self.assertFalse(StockMovementLog.objects.exists())

    def test_journal_sees_refreshed_record(self):
        seen = []
        self.ledger.reserve(self.product.pk, 3, journal=lambda record: seen.append(record.quantity_in_stock))
        self.assertEqual(seen, [7])

    def test_release_restores_exact_quantity(self):
        self.ledger.reserve(self.product.pk, 3)
        self.ledger.reserve(self.product.pk, 2)

        self.assertTrue(self.ledger.release(self.product.pk, 3))
        self.assertTrue(self.ledger.release(self.product.pk, 2))

        self.assertEqual(self._qty(), 10)

    def test_release_rejects_bad_arguments(self):
        self.assertFalse(self.ledger.release(self.product.pk, 0))
        self.assertFalse(self.ledger.release(987654, 2))
        self.assertEqual(self._qty(), 10)

    def test_set_exact(self):
        self.assertTrue(self.ledger.set_exact(self.product.pk, 25))
        self.assertEqual(self._qty(), 25)

        self.assertTrue(self.ledger.set_exact(self.product.pk, 0))
        self.assertEqual(self._qty(), 0)

        self.assertFalse(self.ledger.set_exact(self.product.pk, -1))
        self.assertFalse(self.ledger.set_exact(987654, 5))
        self.assertEqual(self._qty(), 0)

        changes = list(
            StockMovementLog.objects.filter(movement_type=StockMovementLog.MovementType.SET)
            .order_by("id")
            .values_list("quantity_change", flat=True)
        )
        self.assertEqual(changes, [15, -25])

    def test_mark_restocked(self):
        self.assertIsNone(StockRecord.objects.get(product=self.product).last_restocked)

        self.assertTrue(self.ledger.mark_restocked(self.product.pk))
        self.assertIsNotNone(StockRecord.objects.get(product=self.product).last_restocked)

        self.assertFalse(self.ledger.mark_restocked(987654))

    def test_is_low_stock_uses_reorder_level(self):
        self.assertFalse(self.ledger.is_low_stock(self.product.pk))
        self.ledger.set_exact(self.product.pk, 3)
        self.assertTrue(self.ledger.is_low_stock(self.product.pk))
        self.assertFalse(self.ledger.is_low_stock(987654))

    def test_add_stock_and_restock(self):
        self.assertTrue(self.ledger.add_stock(self.product.pk, 5))
        record = StockRecord.objects.get(product=self.product)
        self.assertEqual(record.quantity_in_stock, 15)
        self.assertIsNotNone(record.last_restocked)

        self.assertTrue(self.ledger.restock(self.product.pk, 5, warehouse_location=" B-12 "))
        record.refresh_from_db()
        self.assertEqual(record.quantity_in_stock, 20)
        self.assertEqual(record.warehouse_location, "B-12")

        self.assertFalse(self.ledger.restock(self.product.pk, 0))

    def test_remove_stock(self):
        self.assertTrue(self.ledger.remove_stock(self.product.pk, 4))
        self.assertFalse(self.ledger.remove_stock(self.product.pk, 7))
        self.assertEqual(self._qty(), 6)

    def test_update_reorder_level(self):
        self.assertTrue(self.ledger.update_reorder_level(self.product.pk, 12))
        self.assertEqual(StockRecord.objects.get(product=self.product).reorder_level, 12)
        self.assertFalse(self.ledger.update_reorder_level(self.product.pk, -1))
        self.assertFalse(self.ledger.update_reorder_level(987654, 4))

    def test_open_record(self):
        mouse = Product.objects.create(name="Mouse", price=Decimal("9.00"))

        self.assertIsNone(self.ledger.open_record(mouse, initial_qty=-1))

        record = self.ledger.open_record(mouse, initial_qty=7, reorder_level=2, warehouse_location="A-1")
        self.assertEqual(record.quantity_in_stock, 7)
        self.assertEqual(record.reorder_level, 2)
        self.assertIsNotNone(record.last_restocked)

        # A second call returns the existing record untouched.
        again = self.ledger.open_record(mouse, initial_qty=99)
        self.assertEqual(again.pk, record.pk)
        self.assertEqual(again.quantity_in_stock, 7)


class StockReportingTests(TestCase):
    def setUp(self):
        self.ledger = StockLedger()
        self.plenty = make_stocked_product("Plenty", 50, reorder_level=5, cost_price="2.00", location="A")
        self.low = make_stocked_product("Low", 2, reorder_level=5, cost_price="10.00", location="A")
        self.empty = make_stocked_product("Empty", 0, reorder_level=5, cost_price="3.00", location="B")

    def test_low_and_out_of_stock_records(self):
        low = [r.product_id for r in self.ledger.low_stock_records()]
        self.assertEqual(low, [self.empty.pk, self.low.pk])

        out = [r.product_id for r in self.ledger.out_of_stock_records()]
        self.assertEqual(out, [self.empty.pk])

    def test_records_in_warehouse(self):
        self.assertEqual(
            [r.product_id for r in self.ledger.records_in_warehouse("A")],
            [self.plenty.pk, self.low.pk],
        )
        self.assertEqual(self.ledger.records_in_warehouse("  "), [])

    def test_total_stock_value_and_summary(self):
        self.assertEqual(self.ledger.total_stock_value(), Decimal("120.00"))

        summary = self.ledger.summary()
        self.assertEqual(summary.total_products, 3)
        self.assertEqual(summary.low_stock, 2)
        self.assertEqual(summary.out_of_stock, 1)
        self.assertEqual(summary.total_value, Decimal("120.00"))

    def test_report_low_stock_task(self):
        with self.assertLogs("apps.inventory.tasks", level="WARNING") as logs:
            result = report_low_stock()

        self.assertEqual(len(logs.records), 2)
        self.assertIn("Low stock: Empty", logs.output[0])
        self.assertEqual(result, "Low stock: 2, out of stock: 1, stock value: 120.00")

    @override_settings(LOW_STOCK_REPORT_LIMIT=1)
    def test_report_low_stock_respects_limit(self):
        with self.assertLogs("apps.inventory.tasks", level="WARNING") as logs:
            report_low_stock()

        self.assertEqual(len(logs.records), 2)
        self.assertIn("1 more low-stock products", logs.output[1])


class StockConcurrencyTests(TransactionTestCase):
    # Real transactions so each worker thread commits on its own connection.

    def setUp(self):
        self.product = make_stocked_product("Last Units", 10)

    def test_concurrent_reservations_never_oversell(self):
        ledger = StockLedger()

        def reserve_three(_):
            try:
                return ledger.reserve(self.product.pk, 3)
            finally:
                connection.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(reserve_three, range(8)))

        self.assertEqual(results.count(True), 3)
        self.assertEqual(results.count(False), 5)
        self.assertEqual(StockRecord.objects.get(product=self.product).quantity_in_stock, 1)
