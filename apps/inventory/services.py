import logging
from typing import Dict, List

from django.db.models import F
from django.utils import timezone

from apps.catalog.models import Product
from apps.utils.exceptions import ErrorCode, ValidationException

logger = logging.getLogger(__name__)


class InventoryService:
    """
    Core Logic for Inventory Management.
    ALL stock changes must pass through here.

    Every mutation is a single conditional UPDATE evaluated by the database,
    so concurrent callers never read-check-write in Python. Callers that need
    several changes to succeed or fail together wrap them in transaction.atomic().
    """

    @staticmethod
    def _validate_quantity(quantity: int):
        if quantity is None or quantity <= 0:
            raise ValidationException(
                "Stock change quantity must be greater than 0.",
                code=ErrorCode.INVALID_QUANTITY,
            )

    @staticmethod
    def decrease_stock(product_id, quantity: int) -> bool:
        """
        UPDATE ... SET stock = stock - qty WHERE id = ? AND stock >= qty.
        Returns False when the row did not match, i.e. stock was insufficient
        at the instant of the statement (or the product is gone).
        """
        InventoryService._validate_quantity(quantity)

        updated = Product.objects.filter(
            pk=product_id,
            stock_quantity__gte=quantity,
        ).update(
            stock_quantity=F("stock_quantity") - quantity,
            updated_at=timezone.now(),
        )

        if not updated:
            logger.warning(
                f"Stock decrease rejected: product={product_id} qty={quantity} reason=insufficient_stock",
                extra={"product_id": product_id},
            )
            return False

        logger.info(f"Stock decreased: product={product_id} qty={quantity}", extra={"product_id": product_id})
        return True

    @staticmethod
    def increase_stock(product_id, quantity: int) -> bool:
        """
        UPDATE ... SET stock = stock + qty WHERE id = ?.
        Returns False only when the product no longer exists.
        """
        InventoryService._validate_quantity(quantity)

        updated = Product.objects.filter(pk=product_id).update(
            stock_quantity=F("stock_quantity") + quantity,
            updated_at=timezone.now(),
        )

        if not updated:
            logger.warning(
                f"Stock increase skipped: product={product_id} qty={quantity} reason=product_missing",
                extra={"product_id": product_id},
            )
            return False

        logger.info(f"Stock increased: product={product_id} qty={quantity}", extra={"product_id": product_id})
        return True

    @staticmethod
    def restore_stock(items: List[Dict[str, int]]) -> int:
        """
        Compensating restore for a list of {"product_id", "quantity"} lines
        (e.g. Order Cancellation). Returns how many lines were restored.
        """
        restored = 0
        for item in items:
            if InventoryService.increase_stock(item["product_id"], item["quantity"]):
                restored += 1
        return restored
