from decimal import Decimal

from django.conf import settings
from django.db import models

from apps.utils.models import TimestampedModel
from .status import OrderStatus

__all__ = ["Order"]


class Order(TimestampedModel):
    """
    Immutable order header. Money fields are frozen at creation and never
    recomputed from live prices; only `status` changes afterwards.
    """
    order_number = models.CharField(max_length=32, unique=True, editable=False)
    member = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='orders')

    status = models.PositiveSmallIntegerField(
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
        db_index=True,
    )

    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    shipping_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    tax_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    # Snapshot of the address as typed at checkout
    shipping_address = models.TextField()
    notes = models.TextField(blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["member", "created_at"], name="order_member_created_idx"),
        ]

    def __str__(self):
        return f"{self.order_number} [{self.get_status_display()}]"

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    @property
    def can_cancel(self):
        return self.order_status.can_cancel()
