"""
Top-level models import shim for the Orders app, so that

    from apps.orders.models import Order

works while the models live in separate modules.
"""

from .status import *         # OrderStatus, ORDER_STATUS_TRANSITIONS, CANCELLABLE_STATUSES
from .order import *          # Order
from .item import *           # OrderItem
from .cart import *           # CartItem
