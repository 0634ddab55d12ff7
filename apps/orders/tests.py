from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from apps.catalog.models import Product
from apps.inventory.models import StockRecord
from apps.inventory.services import StockLedger
from apps.orders.models import Order, OrderItem, OrderTimeline, StockReservation
from apps.orders.repositories import OrderItemRepository, OrderRepository
from apps.orders.services import OrderSaga, OrderService
from apps.orders.state_machine import OrderStatusMachine, parse_status
from apps.orders.tasks import replay_stalled_sagas
from apps.utils.exceptions import InvalidTransitionError, PersistenceError, ValidationError

Status = Order.Status


def make_product(name, price, stock, reorder_level=0):
    product = Product.objects.create(name=name, price=Decimal(price), cost_price=Decimal("1.00"))
    StockRecord.objects.create(product=product, quantity_in_stock=stock, reorder_level=reorder_level)
    return product


def stock_of(product):
    return StockRecord.objects.get(product=product).quantity_in_stock


class FlakyItemRepository(OrderItemRepository):
    """Fails the n-th item insert."""

    def __init__(self, fail_on, error=None):
        self.fail_on = fail_on
        self.error = error or PersistenceError("Simulated insert failure.")
        self.calls = 0

    def save(self, instance):
        self.calls += 1
        if self.calls == self.fail_on:
            raise self.error
        return super().save(instance)


class RacingLedger(StockLedger):
    """Lets a competing buyer take stock of one product right before we reserve it."""

    def __init__(self, product_id, stolen_qty):
        self.product_id = product_id
        self.stolen_qty = stolen_qty

    def reserve(self, product_id, qty, reference="", journal=None):
        if product_id == self.product_id and self.stolen_qty:
            StockLedger().reserve(product_id, self.stolen_qty, reference="OTHER-BUYER")
            self.stolen_qty = 0
        return super().reserve(product_id, qty, reference=reference, journal=journal)


class BrokenReleaseLedger(StockLedger):
    def release(self, product_id, qty, reference=""):
        return False


class CancellingLedger(StockLedger):
    """Fires a cancel for the order being placed right before the n-th reserve."""

    def __init__(self, cancel_before):
        self.cancel_before = cancel_before
        self.calls = 0
        self.cancel_result = None

    def reserve(self, product_id, qty, reference="", journal=None):
        self.calls += 1
        if self.calls == self.cancel_before:
            order_id = int(reference.split("-")[1])
            self.cancel_result = OrderService().cancel_order(order_id)
        return super().reserve(product_id, qty, reference=reference, journal=journal)


class OrderStatusMachineTests(TestCase):
    LEGAL = {
        (Status.PENDING, Status.PROCESSING),
        (Status.PENDING, Status.CANCELLED),
        (Status.PROCESSING, Status.SHIPPED),
        (Status.PROCESSING, Status.CANCELLED),
        (Status.SHIPPED, Status.DELIVERED),
    }

    def test_all_state_pairs(self):
        for current in Status:
            for new in Status:
                with self.subTest(current=current, new=new):
                    expected = (current, new) in self.LEGAL
                    self.assertEqual(OrderStatusMachine.can_transition(current, new), expected)
                    if not expected:
                        with self.assertRaises(InvalidTransitionError):
                            OrderStatusMachine.check(current, new)

    def test_terminal_states(self):
        self.assertTrue(OrderStatusMachine.is_terminal(Status.DELIVERED))
        self.assertTrue(OrderStatusMachine.is_terminal(Status.CANCELLED))
        self.assertFalse(OrderStatusMachine.is_terminal(Status.SHIPPED))

    def test_parse_status_accepts_codes_and_labels(self):
        self.assertEqual(parse_status("shipped"), Status.SHIPPED)
        self.assertEqual(parse_status(" Processing "), Status.PROCESSING)
        with self.assertRaises(ValidationError):
            parse_status("LOST")
        self.assertFalse(OrderStatusMachine.can_transition(Status.PENDING, "LOST"))


class CreateOrderTests(TestCase):
    def setUp(self):
        self.mouse = make_product("Mouse", "19.99", stock=10)
        self.keyboard = make_product("Keyboard", "49.50", stock=4)
        self.saga = OrderSaga()

    def test_successful_order_prices_and_reserves(self):
        result = self.saga.create_order(
            7, [(self.mouse.pk, 3), (self.keyboard.pk, 2)], "1 Main St", "CARD"
        )

        self.assertTrue(result.ok, result.message)
        order = result.order
        self.assertEqual(order.status, Status.PENDING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.UNPAID)
        self.assertEqual(order.saga_state, Order.SagaState.COMMITTED)
        self.assertEqual(order.total_amount, Decimal("158.97"))

        items = list(OrderItem.objects.filter(order=order))
        self.assertEqual(len(items), 2)
        self.assertEqual(sum(i.subtotal for i in items), order.total_amount)
        self.assertEqual(items[0].unit_price, Decimal("19.99"))

        self.assertEqual(stock_of(self.mouse), 7)
        self.assertEqual(stock_of(self.keyboard), 2)
        self.assertEqual(StockReservation.objects.filter(order=order).count(), 2)

    def test_accepts_dict_lines(self):
        result = self.saga.create_order(7, [{"product_id": self.mouse.pk, "quantity": 1}], "addr", "COD")
        self.assertTrue(result.ok)

    def test_unit_price_is_a_snapshot(self):
        result = self.saga.create_order(7, [(self.mouse.pk, 1)], "addr", "COD")
        Product.objects.filter(pk=self.mouse.pk).update(price=Decimal("99.00"))

        item = OrderItem.objects.get(order=result.order)
        self.assertEqual(item.unit_price, Decimal("19.99"))

    def test_invalid_input_is_rejected_without_side_effects(self):
        cases = [
            (0, [(self.mouse.pk, 1)], "addr", "COD"),
            (7, [], "addr", "COD"),
            (7, [(self.mouse.pk, 1)], "   ", "COD"),
            (7, [(self.mouse.pk, 1)], "addr", ""),
            (7, [(self.mouse.pk, 0)], "addr", "COD"),
            (7, [("x", 1)], "addr", "COD"),
        ]
        for args in cases:
            with self.subTest(args=args):
                result = self.saga.create_order(*args)
                self.assertFalse(result.ok)
                self.assertEqual(result.reason, "validation_error")

        self.assertFalse(Order.objects.exists())
        self.assertEqual(stock_of(self.mouse), 10)

    def test_unknown_product_fails_whole_order(self):
        solo = make_product("Solo", "5.00", stock=5)

        result = self.saga.create_order(7, [(solo.pk, 3), (999999, 1)], "addr", "COD")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "not_found")
        self.assertEqual(stock_of(solo), 5)
        self.assertFalse(Order.objects.exists())

    def test_short_item_fails_whole_order(self):
        result = self.saga.create_order(7, [(self.mouse.pk, 2), (self.keyboard.pk, 5)], "addr", "COD")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "insufficient_stock")
        self.assertFalse(Order.objects.exists())
        self.assertEqual(stock_of(self.mouse), 10)

    def test_header_failure_commits_nothing(self):
        class BrokenOrders(OrderRepository):
            def save(self, instance):
                raise PersistenceError("orders table unavailable")

        saga = OrderSaga(orders=BrokenOrders())
        result = saga.create_order(7, [(self.mouse.pk, 1)], "addr", "COD")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "persistence_error")
        self.assertIsNone(result.order)
        self.assertEqual(stock_of(self.mouse), 10)


class CreateOrderRollbackTests(TestCase):
    def setUp(self):
        self.a = make_product("A", "10.00", stock=5)
        self.b = make_product("B", "20.00", stock=5)
        self.c = make_product("C", "30.00", stock=5)
        self.lines = [(self.a.pk, 2), (self.b.pk, 3), (self.c.pk, 1)]

    def assert_fully_rolled_back(self, order):
        self.assertFalse(OrderItem.objects.filter(order=order).exists())
        self.assertEqual([stock_of(p) for p in (self.a, self.b, self.c)], [5, 5, 5])
        self.assertFalse(
            StockReservation.objects.filter(order=order, state=StockReservation.State.RESERVED).exists()
        )
        order.refresh_from_db()
        self.assertEqual(order.status, Status.CANCELLED)
        self.assertEqual(order.saga_state, Order.SagaState.FAILED)

    def test_item_persistence_failure_rolls_back_earlier_items(self):
        saga = OrderSaga(items=FlakyItemRepository(fail_on=3))

        result = saga.create_order(7, self.lines, "addr", "COD")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "persistence_error")
        self.assertEqual(result.compensation_errors, [])
        self.assert_fully_rolled_back(result.order)

    def test_lost_race_on_reservation_rolls_back(self):
        # Someone else buys 4 of B between the availability check and our reserve.
        saga = OrderSaga(ledger=RacingLedger(self.b.pk, stolen_qty=4))

        result = saga.create_order(7, self.lines, "addr", "COD")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "insufficient_stock")
        self.assertFalse(OrderItem.objects.filter(order=result.order).exists())
        self.assertEqual(stock_of(self.a), 5)
        self.assertEqual(stock_of(self.b), 1)  # only the competing buyer's units are gone
        self.assertEqual(stock_of(self.c), 5)

    def test_unexpected_error_still_releases_stock(self):
        saga = OrderSaga(items=FlakyItemRepository(fail_on=2, error=RuntimeError("boom")))

        with self.assertLogs("apps.orders.services", level="ERROR"):
            result = saga.create_order(7, self.lines, "addr", "COD")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "unexpected_error")
        self.assert_fully_rolled_back(result.order)

    def test_failed_compensation_is_recorded_not_masking_cause(self):
        saga = OrderSaga(
            ledger=BrokenReleaseLedger(),
            items=FlakyItemRepository(fail_on=3),
        )

        with self.assertLogs("apps.orders.services", level="ERROR"):
            result = saga.create_order(7, self.lines, "addr", "COD")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "persistence_error")
        self.assertEqual(len(result.compensation_errors), 2)
        self.assertTrue(all(e.step == "release" for e in result.compensation_errors))
        # The ledger refusal is reported as is, not wrapped a second time.
        self.assertTrue(all(e.cause is None for e in result.compensation_errors))
        self.assertIn("rejected the release", result.compensation_errors[0].message)

        order = Order.objects.get(pk=result.order.pk)
        self.assertEqual(order.saga_state, Order.SagaState.COMPENSATING)
        self.assertEqual(
            StockReservation.objects.filter(order=order, state=StockReservation.State.RESERVED).count(), 2
        )

        # A later replay with a healthy ledger finishes the job.
        replayed, failing = OrderSaga().replay_stalled(timedelta(minutes=15))
        self.assertEqual((replayed, failing), (1, 0))
        self.assert_fully_rolled_back(order)

    def test_compensation_is_idempotent(self):
        saga = OrderSaga()
        result = saga.create_order(7, self.lines, "addr", "COD")
        order = result.order

        self.assertEqual(saga.compensate(order), [])
        self.assertEqual(saga.compensate(order), [])
        self.assert_fully_rolled_back(order)


class CancelOrderTests(TestCase):
    def setUp(self):
        self.a = make_product("A", "10.00", stock=6)
        self.b = make_product("B", "2.50", stock=6)
        self.service = OrderService()
        result = self.service.create_order(3, [(self.a.pk, 2), (self.b.pk, 4)], "addr", "CARD")
        self.order = result.order

    def test_cancel_pending_restores_stock(self):
        result = self.service.cancel_order(self.order.pk)

        self.assertTrue(result.ok, result.message)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Status.CANCELLED)
        self.assertEqual(stock_of(self.a), 6)
        self.assertEqual(stock_of(self.b), 6)
        # Items stay: cancellation is a status, not a deletion.
        self.assertEqual(OrderItem.objects.filter(order=self.order).count(), 2)
        self.assertTrue(OrderTimeline.objects.filter(order=self.order, status=Status.CANCELLED).exists())

    def test_cancel_processing_is_allowed(self):
        self.service.update_order_status(self.order.pk, Status.PROCESSING)
        self.assertTrue(self.service.cancel_order(self.order.pk).ok)

    def test_cancel_shipped_fails_without_changes(self):
        self.service.update_order_status(self.order.pk, Status.PROCESSING)
        self.service.update_order_status(self.order.pk, Status.SHIPPED)

        result = self.service.cancel_order(self.order.pk)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "invalid_transition")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Status.SHIPPED)
        self.assertEqual(stock_of(self.a), 4)
        self.assertEqual(stock_of(self.b), 2)

    def test_cancel_twice_releases_once(self):
        self.assertTrue(self.service.cancel_order(self.order.pk).ok)
        self.assertFalse(self.service.cancel_order(self.order.pk).ok)
        self.assertEqual(stock_of(self.a), 6)

    def test_cancel_paid_order_marks_refund(self):
        self.service.mark_order_paid(self.order.pk)
        self.service.cancel_order(self.order.pk)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)

    def test_retry_after_failed_status_flip_does_not_double_release(self):
        class FlakyOrders(OrderRepository):
            fail = True

            def update(self, instance, fields=None):
                if FlakyOrders.fail:
                    FlakyOrders.fail = False
                    raise PersistenceError("write timeout")
                return super().update(instance, fields)

        service = OrderService(orders=FlakyOrders())
        with self.assertLogs("apps.orders.services", level="WARNING"):
            first = service.cancel_order(self.order.pk)
        self.assertFalse(first.ok)
        self.assertEqual(stock_of(self.a), 6)

        second = service.cancel_order(self.order.pk)
        self.assertTrue(second.ok)
        self.assertEqual(stock_of(self.a), 6)
        self.assertEqual(stock_of(self.b), 6)

    def test_unknown_order(self):
        result = self.service.cancel_order(424242)
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "not_found")


class InFlightOrderTests(TestCase):
    def setUp(self):
        self.a = make_product("A", "10.00", stock=5)
        self.b = make_product("B", "20.00", stock=5)
        self.service = OrderService()

    def test_cancel_during_checkout_is_refused_and_leaks_nothing(self):
        ledger = CancellingLedger(cancel_before=2)
        saga = OrderSaga(ledger=ledger)

        result = saga.create_order(7, [(self.a.pk, 2), (self.b.pk, 3)], "addr", "COD")

        self.assertTrue(result.ok, result.message)
        self.assertFalse(ledger.cancel_result.ok)
        self.assertEqual(ledger.cancel_result.reason, "invalid_transition")

        order = Order.objects.get(pk=result.order.pk)
        self.assertEqual(order.status, Status.PENDING)
        self.assertEqual(order.saga_state, Order.SagaState.COMMITTED)
        self.assertEqual(stock_of(self.a), 3)
        self.assertEqual(stock_of(self.b), 2)

        # Once placed, a cancel gives everything back.
        self.assertTrue(self.service.cancel_order(order.pk).ok)
        self.assertEqual(stock_of(self.a), 5)
        self.assertEqual(stock_of(self.b), 5)
        self.assertFalse(
            StockReservation.objects.filter(order=order, state=StockReservation.State.RESERVED).exists()
        )

    def test_uncommitted_orders_are_left_to_the_saga(self):
        for saga_state in (Order.SagaState.STARTED, Order.SagaState.COMPENSATING):
            with self.subTest(saga_state=saga_state):
                order = Order.objects.create(
                    user_id=1, total_amount=Decimal("10.00"), shipping_address="addr",
                    payment_method="COD", saga_state=saga_state,
                )

                for result in (
                    self.service.cancel_order(order.pk),
                    self.service.update_order_status(order.pk, Status.PROCESSING),
                    self.service.mark_order_paid(order.pk),
                ):
                    self.assertFalse(result.ok)
                    self.assertEqual(result.reason, "invalid_transition")

                order.refresh_from_db()
                self.assertEqual(order.status, Status.PENDING)
                self.assertEqual(order.payment_status, Order.PaymentStatus.UNPAID)
                self.assertEqual(order.saga_state, saga_state)


class UpdateOrderStatusTests(TestCase):
    def setUp(self):
        self.product = make_product("A", "10.00", stock=5)
        self.service = OrderService()
        self.order = self.service.create_order(3, [(self.product.pk, 1)], "addr", "CARD").order

    def test_walks_the_happy_path(self):
        for status in ("PROCESSING", "SHIPPED", "DELIVERED"):
            result = self.service.update_order_status(self.order.pk, status)
            self.assertTrue(result.ok, result.message)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Status.DELIVERED)
        self.assertEqual(OrderTimeline.objects.filter(order=self.order).count(), 4)

    def test_illegal_transition_leaves_order_unchanged(self):
        result = self.service.update_order_status(self.order.pk, Status.DELIVERED)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "invalid_transition")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Status.PENDING)

    def test_cancel_through_status_update_releases_stock(self):
        result = self.service.update_order_status(self.order.pk, "cancelled")

        self.assertTrue(result.ok)
        self.assertEqual(stock_of(self.product), 5)

    def test_unknown_status(self):
        self.assertEqual(self.service.update_order_status(self.order.pk, "LOST").reason, "validation_error")


class OrderQueryTests(TestCase):
    def setUp(self):
        self.a = make_product("A", "10.00", stock=50)
        self.b = make_product("B", "5.00", stock=50)
        self.service = OrderService()
        self.o1 = self.service.create_order(1, [(self.a.pk, 1), (self.b.pk, 2)], "addr", "CARD").order
        self.o2 = self.service.create_order(1, [(self.a.pk, 3)], "addr", "CARD").order
        self.o3 = self.service.create_order(2, [(self.b.pk, 1)], "addr", "COD").order

    def test_lookups(self):
        self.assertEqual(len(self.service.get_orders_by_user(1)), 2)
        self.assertEqual(self.service.get_order_count_by_user(2), 1)
        self.assertEqual(len(self.service.get_pending_orders()), 3)
        self.assertEqual(len(self.service.get_recent_orders(2)), 2)
        self.assertEqual(self.service.get_recent_orders(0), [])
        self.assertEqual(self.service.calculate_order_total(self.o1.pk), Decimal("20.00"))

    def test_revenue_counts_paid_orders_only(self):
        self.service.mark_order_paid(self.o1.pk)
        self.service.mark_order_paid(self.o2.pk)

        self.assertEqual(self.service.get_total_revenue(), Decimal("50.00"))

        start = timezone.now() - timedelta(days=1)
        end = timezone.now() + timedelta(days=1)
        self.assertEqual(self.service.get_revenue_by_date_range(start, end), Decimal("50.00"))
        self.assertEqual(self.service.get_revenue_by_date_range(end, start), Decimal("0.00"))

    def test_order_summary(self):
        summary = self.service.get_order_summary(self.o1.pk)

        self.assertEqual(summary.order.pk, self.o1.pk)
        self.assertEqual(summary.total_items, 3)
        self.assertEqual([p.name for p in summary.products], ["A", "B"])
        self.assertIsNone(self.service.get_order_summary(987654))


class ReplayStalledSagaTests(TestCase):
    def setUp(self):
        self.product = make_product("A", "10.00", stock=5)

    def _stalled_order(self, minutes_old):
        """An order whose saga died after reserving its first item."""
        order = Order.objects.create(
            user_id=1, total_amount=Decimal("20.00"), shipping_address="addr",
            payment_method="COD", saga_state=Order.SagaState.STARTED,
        )
        OrderItem.objects.create(
            order=order, product_id=self.product.pk, quantity=2,
            unit_price=Decimal("10.00"), subtotal=Decimal("20.00"),
        )
        StockLedger().reserve(
            self.product.pk, 2,
            journal=lambda record: StockReservation.objects.create(order=order, product_id=self.product.pk, quantity=2),
        )
        Order.objects.filter(pk=order.pk).update(created_at=timezone.now() - timedelta(minutes=minutes_old))
        return order

    def test_task_rolls_back_old_started_orders_only(self):
        old = self._stalled_order(minutes_old=60)
        fresh = self._stalled_order(minutes_old=1)

        message = replay_stalled_sagas()

        self.assertIn("Replayed 1", message)
        old.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(old.saga_state, Order.SagaState.FAILED)
        self.assertEqual(fresh.saga_state, Order.SagaState.STARTED)
        self.assertEqual(stock_of(self.product), 3)

    def test_management_command(self):
        self._stalled_order(minutes_old=5)
        out = StringIO()

        call_command("replay_sagas", minutes=1, stdout=out)

        self.assertIn("Rolled back 1 orders", out.getvalue())
        self.assertEqual(stock_of(self.product), 5)
