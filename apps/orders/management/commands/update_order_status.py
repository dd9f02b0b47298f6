from django.core.management.base import BaseCommand, CommandError

from apps.orders.models import Order, OrderStatus
from apps.orders.services import OrderService
from apps.utils.exceptions import BusinessLogicException


class Command(BaseCommand):
    help = "Moves an order to a new status through the order state machine"

    def add_arguments(self, parser):
        parser.add_argument("order_number")
        parser.add_argument("status", help="Status name (e.g. SHIPPED) or numeric id")

    def _parse_status(self, raw):
        if raw.isdigit():
            try:
                return OrderStatus.from_id(raw)
            except ValueError:
                pass
        elif raw.upper() in OrderStatus.names:
            return OrderStatus[raw.upper()]

        valid = ", ".join(f"{s.name}({s.value})" for s in OrderStatus)
        raise CommandError(f"Unknown status '{raw}'. Valid: {valid}")

    def handle(self, *args, **options):
        target = self._parse_status(options["status"])

        order = Order.objects.filter(order_number=options["order_number"]).first()
        if order is None:
            raise CommandError(f"Order {options['order_number']} not found.")

        old_label = order.get_status_display()
        try:
            # Cancelling must hand stock back, not just flip the status
            if target == OrderStatus.CANCELLED:
                order = OrderService.cancel_order(order.pk)
            else:
                order = OrderService.update_order_status(order.pk, target)
        except BusinessLogicException as e:
            raise CommandError(f"{e.code.value}: {e.message}")

        self.stdout.write(
            self.style.SUCCESS(f"{order.order_number}: {old_label} -> {order.get_status_display()}")
        )
