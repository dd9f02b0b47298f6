# apps/catalog/models.py
from django.db import models

from apps.utils.models import TimestampedModel


class Product(TimestampedModel):
    """
    Sellable item. Owned by the catalog; the stock column is the
    inventory ledger and is only ever changed through
    apps.inventory.services.InventoryService.
    """
    sku = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Human-readable code (e.g. DOG-FOOD-2KG)",
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)

    price = models.DecimalField(max_digits=10, decimal_places=2)
    sale_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Overrides price while set",
    )

    stock_quantity = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["is_active"], name="product_is_active_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(stock_quantity__gte=0),
                name="product_stock_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.sku} | {self.name} | Stock: {self.stock_quantity}"

    @property
    def effective_price(self):
        """
        Price a customer pays right now: sale price if present, else base price.
        """
        return self.sale_price if self.sale_price is not None else self.price
