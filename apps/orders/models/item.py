import uuid

from django.db import models

from apps.catalog.models import Product
from .order import Order

__all__ = ["OrderItem"]


class OrderItem(models.Model):
    """
    Immutable order line. Prices are the cart snapshot at checkout.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name='order_items')

    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_items"

    def __str__(self):
        return f"{self.quantity}x {self.product_id} @ {self.unit_price}"
