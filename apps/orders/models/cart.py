from django.db import models


class CartItem(models.Model):
    """
    One pending product selection for a user.
    Price is deliberately not stored: checkout always re-reads it.
    """

    user_id = models.BigIntegerField(db_index=True)
    product_id = models.BigIntegerField()
    quantity = models.PositiveIntegerField(default=1)

    added_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "cart_items"
        ordering = ["added_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["user_id", "product_id"],
                name="uniq_cart_item_per_user_product",
            ),
            models.CheckConstraint(
                condition=models.Q(quantity__gt=0),
                name="cart_item_quantity_positive",
            ),
        ]

    def __str__(self):
        return f"{self.user_id} -> {self.product_id} x {self.quantity}"
