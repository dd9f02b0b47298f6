from decimal import Decimal

from django.conf import settings
from django.db import models

from apps.utils.models import TimestampedModel

__all__ = ["CartItem"]


class CartItem(TimestampedModel):
    """
    One line of a member's cart.

    `unit_price` is the effective product price at add time and is kept
    as-is until refreshed, so it may drift from the live price.
    The product reference carries no DB constraint: a line can outlive its
    product, and cart validation reports that as PRODUCT_NOT_FOUND.
    """
    member = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="cart_items",
        on_delete=models.CASCADE,
    )
    product = models.ForeignKey(
        "catalog.Product",
        related_name="cart_items",
        on_delete=models.DO_NOTHING,
        db_constraint=False,
    )

    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)

    class Meta:
        db_table = "cart_items"
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(fields=["member", "product"], name="uniq_cart_item_per_product"),
        ]

    def __str__(self):
        return f"{self.member_id} -> {self.product_id} x {self.quantity}"

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price or Decimal("0.00")) * self.quantity
