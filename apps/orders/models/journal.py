from django.db import models

from .order import Order


class StockReservation(models.Model):
    """
    Saga journal: one row per stock reservation made for an order.

    Written in the same DB transaction as the stock decrement. Flipped to
    RELEASED in the same DB transaction as the compensating release, and
    only a successful RESERVED -> RELEASED flip may release stock, so
    replaying a compensation never releases twice.
    """
    class State(models.TextChoices):
        RESERVED = "RESERVED", "Reserved"
        RELEASED = "RELEASED", "Released"

    order = models.ForeignKey(Order, related_name="reservations", on_delete=models.PROTECT)
    product_id = models.BigIntegerField()
    quantity = models.PositiveIntegerField()
    state = models.CharField(max_length=20, choices=State.choices, default=State.RESERVED, db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    released_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.order_id}: {self.product_id} x {self.quantity} [{self.state}]"
