from django.db import models

__all__ = ["OrderStatus", "ORDER_STATUS_TRANSITIONS", "CANCELLABLE_STATUSES"]


class OrderStatus(models.IntegerChoices):
    """
    Closed set of order states. Stored as the numeric id; moved only
    through OrderService.update_order_status.
    """
    PENDING = 1, "Pending"
    CONFIRMED = 2, "Confirmed"
    PROCESSING = 3, "Processing"
    SHIPPED = 4, "Shipped"
    DELIVERED = 5, "Delivered"
    CANCELLED = 6, "Cancelled"
    REFUNDED = 7, "Refunded"

    @classmethod
    def from_id(cls, status_id):
        """Raises ValueError for ids outside the enumeration."""
        try:
            return cls(int(status_id))
        except (TypeError, ValueError):
            raise ValueError(f"Unknown order status id: {status_id!r}")

    def can_transition_to(self, target) -> bool:
        return target in ORDER_STATUS_TRANSITIONS[self]

    def can_cancel(self) -> bool:
        return self in CANCELLABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not ORDER_STATUS_TRANSITIONS[self]


ORDER_STATUS_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})
