from celery import shared_task
from django.conf import settings
from django.utils import timezone
from datetime import timedelta
import logging

from apps.utils.exceptions import BusinessLogicException
from .models import Order, OrderStatus
from .services import OrderService

logger = logging.getLogger(__name__)


@shared_task
def auto_cancel_stale_orders():
    """
    Runs every 15 minutes.
    Cancels orders stuck in PENDING longer than ORDER_PENDING_TIMEOUT_MINUTES,
    which hands their reserved stock back to the inventory ledger.
    """
    timeout = getattr(settings, "ORDER_PENDING_TIMEOUT_MINUTES", 1440)
    cutoff = timezone.now() - timedelta(minutes=timeout)

    stale_ids = list(
        Order.objects.filter(
            status=OrderStatus.PENDING,
            created_at__lt=cutoff,
        ).values_list("id", flat=True)
    )

    count = 0
    for order_id in stale_ids:
        try:
            OrderService.cancel_order(order_id)
            count += 1
        except BusinessLogicException as e:
            # Usually moved on (confirmed/cancelled) since the query ran
            logger.info(f"Auto-cancel skipped for order {order_id}: {e.code.value}", extra={"order_id": order_id})
        except Exception:
            logger.exception(f"Failed to auto-cancel order {order_id}", extra={"order_id": order_id})

    logger.info(f"Auto-cancelled {count} of {len(stale_ids)} stale orders")
    return f"Auto-cancelled {count} orders"
