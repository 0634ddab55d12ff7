from django.db import models

from .order import Order


class OrderTimeline(models.Model):
    order = models.ForeignKey(Order, related_name="timeline", on_delete=models.CASCADE)

    status = models.CharField(max_length=20)  # Stores the status *after* change
    timestamp = models.DateTimeField(auto_now_add=True)
    note = models.TextField(blank=True)

    class Meta:
        ordering = ["-timestamp", "-id"]
