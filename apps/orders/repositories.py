from django.db import DatabaseError
from django.db.models import Sum

from apps.utils.exceptions import PersistenceError
from apps.utils.repository import ModelRepository

from .models import CartItem, Order, OrderItem


class OrderRepository(ModelRepository):
    model = Order

    def find_by_user_id(self, user_id):
        return list(Order.objects.filter(user_id=user_id))

    def find_by_status(self, status):
        return list(Order.objects.filter(status=status))

    def find_recent(self, limit):
        return list(Order.objects.all()[:limit])

    def find_by_saga_state(self, *states):
        return Order.objects.filter(saga_state__in=states)

    def update_status(self, order, status):
        order.status = status
        return self.update(order, fields=["status"])


class OrderItemRepository(ModelRepository):
    model = OrderItem

    def find_by_order_id(self, order_id):
        return list(OrderItem.objects.filter(order_id=order_id))

    def delete_by_order_id(self, order_id) -> int:
        try:
            deleted, _ = OrderItem.objects.filter(order_id=order_id).delete()
        except DatabaseError as e:
            raise PersistenceError(f"Could not delete items of order {order_id}.") from e
        return deleted

    def total_for_order(self, order_id):
        return OrderItem.objects.filter(order_id=order_id).aggregate(total=Sum("subtotal"))["total"]


class CartItemRepository(ModelRepository):
    model = CartItem

    def find_by_user_id(self, user_id):
        return list(CartItem.objects.filter(user_id=user_id))

    def find_by_user_and_product(self, user_id, product_id):
        return CartItem.objects.filter(user_id=user_id, product_id=product_id).first()

    def clear(self, user_id) -> int:
        try:
            deleted, _ = CartItem.objects.filter(user_id=user_id).delete()
        except DatabaseError as e:
            raise PersistenceError(f"Could not clear cart of user {user_id}.") from e
        return deleted
