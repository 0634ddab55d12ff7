from decimal import Decimal

from django.test import TestCase

from apps.catalog.models import Product
from apps.inventory.models import StockRecord
from apps.inventory.services import StockLedger
from apps.orders.models import CartItem, Order, OrderItem
from apps.orders.services import CartService


class CartCheckoutFlowTests(TestCase):
    def setUp(self):
        self.user_id = 11
        self.tea = Product.objects.create(name="Tea", price=Decimal("4.00"))
        self.mug = Product.objects.create(name="Mug", price=Decimal("8.50"))
        StockRecord.objects.create(product=self.tea, quantity_in_stock=2, reorder_level=1)
        StockRecord.objects.create(product=self.mug, quantity_in_stock=10, reorder_level=1)
        self.carts = CartService()

    def _stock(self, product):
        return StockRecord.objects.get(product=product).quantity_in_stock

    def test_add_to_cart_rejects_total_beyond_stock(self):
        self.assertTrue(self.carts.add_to_cart(self.user_id, self.tea.pk, 2))

        self.assertFalse(self.carts.add_to_cart(self.user_id, self.tea.pk, 1))

        item = CartItem.objects.get(user_id=self.user_id, product_id=self.tea.pk)
        self.assertEqual(item.quantity, 2)
        # Nothing is reserved while sitting in a cart.
        self.assertEqual(self._stock(self.tea), 2)

    def test_add_to_cart_accumulates_quantity(self):
        self.carts.add_to_cart(self.user_id, self.mug.pk, 3)
        self.carts.add_to_cart(self.user_id, self.mug.pk, 4)

        items = CartItem.objects.filter(user_id=self.user_id)
        self.assertEqual(items.count(), 1)
        self.assertEqual(items.get().quantity, 7)

    def test_add_to_cart_rejects_bad_arguments(self):
        self.assertFalse(self.carts.add_to_cart(self.user_id, self.mug.pk, 0))
        self.assertFalse(self.carts.add_to_cart(0, self.mug.pk, 1))
        self.assertFalse(self.carts.add_to_cart(self.user_id, 999999, 1))
        self.assertFalse(CartItem.objects.exists())

    def test_checkout_creates_order_and_clears_cart(self):
        self.carts.add_to_cart(self.user_id, self.tea.pk, 1)
        self.carts.add_to_cart(self.user_id, self.mug.pk, 2)

        order = self.carts.checkout(self.user_id, "221B Baker St", "CARD")

        self.assertIsNotNone(order)
        self.assertEqual(order.total_amount, Decimal("21.00"))
        self.assertEqual(OrderItem.objects.filter(order=order).count(), 2)
        self.assertFalse(CartItem.objects.filter(user_id=self.user_id).exists())
        self.assertEqual(self._stock(self.tea), 1)
        self.assertEqual(self._stock(self.mug), 8)

    def test_checkout_uses_current_price(self):
        self.carts.add_to_cart(self.user_id, self.mug.pk, 1)
        Product.objects.filter(pk=self.mug.pk).update(price=Decimal("9.99"))

        order = self.carts.checkout(self.user_id, "addr", "COD")

        self.assertEqual(order.total_amount, Decimal("9.99"))

    def test_empty_cart_checkout_returns_none(self):
        self.assertIsNone(self.carts.checkout(self.user_id, "addr", "COD"))
        self.assertFalse(Order.objects.exists())

    def test_failed_checkout_leaves_cart_untouched(self):
        self.carts.add_to_cart(self.user_id, self.tea.pk, 2)
        self.carts.add_to_cart(self.user_id, self.mug.pk, 1)
        # Stock shrinks after the items were added to the cart.
        StockLedger().set_exact(self.tea.pk, 1)

        order = self.carts.checkout(self.user_id, "addr", "COD")

        self.assertIsNone(order)
        self.assertEqual(CartItem.objects.filter(user_id=self.user_id).count(), 2)
        self.assertEqual(self._stock(self.mug), 10)

    def test_failed_checkout_with_blank_address_keeps_cart(self):
        self.carts.add_to_cart(self.user_id, self.mug.pk, 1)

        self.assertIsNone(self.carts.checkout(self.user_id, " ", "COD"))
        self.assertEqual(CartItem.objects.filter(user_id=self.user_id).count(), 1)

    def test_update_remove_and_clear(self):
        self.carts.add_to_cart(self.user_id, self.mug.pk, 1)
        self.carts.add_to_cart(self.user_id, self.tea.pk, 1)
        mug_item = CartItem.objects.get(product_id=self.mug.pk)

        self.assertTrue(self.carts.update_quantity(mug_item.pk, 5))
        self.assertFalse(self.carts.update_quantity(mug_item.pk, 11))
        mug_item.refresh_from_db()
        self.assertEqual(mug_item.quantity, 5)

        self.assertEqual(self.carts.cart_total(self.user_id), Decimal("46.50"))

        self.assertTrue(self.carts.update_quantity(mug_item.pk, 0))
        self.assertFalse(CartItem.objects.filter(pk=mug_item.pk).exists())
        self.assertFalse(self.carts.remove_from_cart(mug_item.pk))

        self.assertTrue(self.carts.clear_cart(self.user_id))
        self.assertEqual(self.carts.get_cart_items(self.user_id), [])

    def test_update_quantity_rejects_bad_arguments(self):
        self.carts.add_to_cart(self.user_id, self.mug.pk, 2)
        item = CartItem.objects.get(product_id=self.mug.pk)

        self.assertFalse(self.carts.update_quantity(item.pk, "3"))
        self.assertFalse(self.carts.update_quantity(item.pk, None))
        self.assertFalse(self.carts.update_quantity(item.pk, True))
        self.assertFalse(self.carts.update_quantity(0, 3))
        self.assertFalse(self.carts.update_quantity(-1, 0))

        item.refresh_from_db()
        self.assertEqual(item.quantity, 2)

        self.assertTrue(self.carts.update_quantity(item.pk, -1))
        self.assertFalse(CartItem.objects.filter(pk=item.pk).exists())
