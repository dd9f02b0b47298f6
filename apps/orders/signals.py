# apps/orders/signals.py
from django.dispatch import Signal

# Fired after an order creation commits.
# args: order
order_created = Signal()

# Fired after a status transition commits.
# args: order, old_status, new_status
order_status_changed = Signal()
