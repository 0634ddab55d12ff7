from decimal import Decimal

from django.db import models
from django.utils import timezone

from apps.utils.models import TimestampedModel


class Order(TimestampedModel):
    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PROCESSING = "PROCESSING", "Processing"
        SHIPPED = "SHIPPED", "Shipped"
        DELIVERED = "DELIVERED", "Delivered"
        CANCELLED = "CANCELLED", "Cancelled"

    class PaymentStatus(models.TextChoices):
        UNPAID = "UNPAID", "Unpaid"
        PAID = "PAID", "Paid"
        REFUNDED = "REFUNDED", "Refunded"

    class SagaState(models.TextChoices):
        STARTED = "STARTED", "Items being committed"
        COMMITTED = "COMMITTED", "All items committed"
        COMPENSATING = "COMPENSATING", "Rolling back"
        FAILED = "FAILED", "Rolled back"

    user_id = models.BigIntegerField(db_index=True)
    order_date = models.DateTimeField(default=timezone.now)

    # Sum of item subtotals, computed server-side
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    payment_status = models.CharField(max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)

    shipping_address = models.TextField()
    payment_method = models.CharField(max_length=50)
    notes = models.TextField(blank=True)

    saga_state = models.CharField(
        max_length=20, choices=SagaState.choices, default=SagaState.STARTED, db_index=True
    )

    class Meta:
        ordering = ["-order_date", "-id"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_amount__gte=0),
                name="order_total_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.pk} [{self.status}]"

    @property
    def can_cancel(self):
        return self.status in [self.Status.PENDING, self.Status.PROCESSING]
