# apps/catalog/models.py
from decimal import Decimal

from django.db import models

from apps.utils.models import TimestampedModel


class Product(TimestampedModel):
    """
    Sellable catalog entry.
    `price` is what the customer pays; `cost_price` feeds stock valuation.
    """
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    sku = models.CharField(max_length=64, unique=True, null=True, blank=True)
    brand = models.CharField(max_length=120, blank=True)

    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    cost_price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        ordering = ["name"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(price__gte=0),
                name="product_price_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(cost_price__gte=0),
                name="product_cost_price_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.sku or self.pk})"
