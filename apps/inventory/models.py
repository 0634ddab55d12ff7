from django.db import models

from apps.catalog.models import Product
from apps.utils.models import TimestampedModel


class StockRecord(TimestampedModel):
    """
    Quantity-on-hand for one product.
    Only apps.inventory.services.StockLedger writes to this table.
    """
    product = models.OneToOneField(
        Product,
        on_delete=models.PROTECT,
        related_name='stock_record'
    )

    quantity_in_stock = models.IntegerField(default=0)
    reorder_level = models.IntegerField(default=10)
    warehouse_location = models.CharField(max_length=120, blank=True, db_index=True)
    last_restocked = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Stock Record"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity_in_stock__gte=0),
                name='stock_quantity_non_negative'
            ),
            models.CheckConstraint(
                condition=models.Q(reorder_level__gte=0),
                name='stock_reorder_level_non_negative'
            ),
        ]

    @property
    def is_low_stock(self):
        return self.quantity_in_stock <= self.reorder_level

    def __str__(self):
        return f"{self.product_id} | Qty: {self.quantity_in_stock} | {self.warehouse_location or '-'}"


class StockMovementLog(models.Model):
    """
    Immutable Ledger of all inventory changes.
    """
    class MovementType(models.TextChoices):
        RESERVATION = "RESERVE", "Reservation"
        RELEASE = "RELEASE", "Release"
        SET = "SET", "Administrative Set"
        RESTOCK = "RESTOCK", "Restock"
        REMOVAL = "REMOVE", "Manual Removal"

    record = models.ForeignKey(
        StockRecord,
        on_delete=models.CASCADE,
        related_name='logs'
    )

    quantity_change = models.IntegerField(help_text="Delta value (+/-)")
    movement_type = models.CharField(max_length=20, choices=MovementType.choices)

    reference = models.CharField(max_length=100, blank=True, db_index=True, help_text="Order reference etc.")
    balance_after = models.IntegerField(help_text="Snapshot of quantity after the change")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
