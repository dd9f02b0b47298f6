import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone

from apps.catalog.services import ProductService
from apps.inventory.services import InventoryService
from apps.utils.exceptions import (
    ConflictException,
    ErrorCode,
    InternalException,
    NotFoundException,
    PermissionException,
    StateException,
    ValidationException,
)
from apps.utils.utils import generate_code
from .idempotency import IdempotencyRegistry
from .models import CartItem, Order, OrderItem, OrderStatus
from .signals import order_created, order_status_changed

logger = logging.getLogger(__name__)


def _same_member(owner_id, member_id) -> bool:
    return str(owner_id) == str(member_id)


class CartErrorType(str, Enum):
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PRICE_CHANGED = "PRICE_CHANGED"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    PRODUCT_INACTIVE = "PRODUCT_INACTIVE"


@dataclass(frozen=True)
class CartError:
    error_type: CartErrorType
    product_id: str
    message: str


@dataclass
class CartValidationResult:
    errors: List[CartError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add_error(self, error_type: CartErrorType, product_id, message: str):
        self.errors.append(CartError(error_type, str(product_id), message))

    def has_error(self, error_type: CartErrorType) -> bool:
        return any(e.error_type == error_type for e in self.errors)


class CartService:
    """
    Per-member cart lines with a price snapshot taken at add time.
    """

    @staticmethod
    def _validate_quantity(quantity):
        if quantity is None or quantity <= 0:
            raise ValidationException("Quantity must be greater than 0.", code=ErrorCode.INVALID_QUANTITY)

    @staticmethod
    def _get_owned_item(member_id, cart_item_id) -> CartItem:
        try:
            item = CartItem.objects.filter(pk=cart_item_id).first()
        except DjangoValidationError:
            item = None
        if item is None:
            raise NotFoundException("Cart item not found.", code=ErrorCode.NOT_FOUND)
        if not _same_member(item.member_id, member_id):
            raise PermissionException("Cart item belongs to another member.")
        return item

    @staticmethod
    def get_cart_items(member_id) -> List[CartItem]:
        return list(CartItem.objects.filter(member_id=member_id).order_by("created_at"))

    @staticmethod
    @transaction.atomic
    def add_to_cart(member_id, product_id, quantity: int) -> CartItem:
        logger.info(f"Add to cart: member={member_id} product={product_id} qty={quantity}",
                    extra={"member_id": member_id})
        CartService._validate_quantity(quantity)

        product = ProductService.find_by_id(product_id)
        if product is None:
            raise NotFoundException("Product not found.", code=ErrorCode.PRODUCT_NOT_FOUND)
        if not product.is_active:
            raise ValidationException(f"{product.name} is currently unavailable.", code=ErrorCode.PRODUCT_INACTIVE)
        if product.stock_quantity < quantity:
            raise ConflictException(f"Only {product.stock_quantity} of {product.name} left.",
                                    code=ErrorCode.INSUFFICIENT_STOCK)

        item = CartItem.objects.filter(member_id=member_id, product=product).first()
        if item is not None:
            new_quantity = item.quantity + quantity
            if product.stock_quantity < new_quantity:
                raise ConflictException(f"Only {product.stock_quantity} of {product.name} left.",
                                        code=ErrorCode.INSUFFICIENT_STOCK)
            item.quantity = new_quantity
            item.save(update_fields=["quantity", "updated_at"])
            return item

        return CartItem.objects.create(
            member_id=member_id,
            product=product,
            quantity=quantity,
            unit_price=product.effective_price,
        )

    @staticmethod
    @transaction.atomic
    def update_cart_item_quantity(member_id, cart_item_id, quantity: int) -> CartItem:
        CartService._validate_quantity(quantity)
        item = CartService._get_owned_item(member_id, cart_item_id)

        product = ProductService.find_by_id(item.product_id)
        if product is None:
            raise NotFoundException("Product not found.", code=ErrorCode.PRODUCT_NOT_FOUND)
        if product.stock_quantity < quantity:
            raise ConflictException(f"Only {product.stock_quantity} of {product.name} left.",
                                    code=ErrorCode.INSUFFICIENT_STOCK)

        item.quantity = quantity
        item.save(update_fields=["quantity", "updated_at"])
        return item

    @staticmethod
    def remove_from_cart(member_id, cart_item_id):
        item = CartService._get_owned_item(member_id, cart_item_id)
        item.delete()
        logger.info(f"Removed cart item {cart_item_id}", extra={"member_id": member_id})

    @staticmethod
    def clear_cart(member_id) -> int:
        deleted, _ = CartItem.objects.filter(member_id=member_id).delete()
        logger.info(f"Cart cleared: member={member_id} lines={deleted}", extra={"member_id": member_id})
        return deleted

    @staticmethod
    def calculate_cart_total(member_id, items: Optional[List[CartItem]] = None) -> Decimal:
        if items is None:
            items = CartService.get_cart_items(member_id)
        return sum((item.line_total for item in items), Decimal("0.00"))

    @staticmethod
    def count_cart_items(member_id) -> int:
        return CartItem.objects.filter(member_id=member_id).count()

    @staticmethod
    def validate_cart(member_id, stock_only: bool = False,
                      items: Optional[List[CartItem]] = None) -> CartValidationResult:
        """
        Read-only check of every cart line against live product data.

        Full mode collects, per line: PRODUCT_NOT_FOUND (ends the line),
        PRODUCT_INACTIVE, OUT_OF_STOCK and PRICE_CHANGED.
        Stock-only mode is the checkout gate: price and activity drift are
        tolerated and a vanished product counts as OUT_OF_STOCK.
        """
        if items is None:
            items = CartService.get_cart_items(member_id)

        result = CartValidationResult()
        products = ProductService.in_bulk({item.product_id for item in items})

        for item in items:
            product = products.get(str(item.product_id))
            if product is None:
                if stock_only:
                    result.add_error(CartErrorType.OUT_OF_STOCK, item.product_id, "Product is no longer available.")
                else:
                    result.add_error(CartErrorType.PRODUCT_NOT_FOUND, item.product_id, "Product not found.")
                continue

            if not stock_only and not product.is_active:
                result.add_error(CartErrorType.PRODUCT_INACTIVE, item.product_id,
                                 f"{product.name} is currently unavailable.")

            if product.stock_quantity < item.quantity:
                result.add_error(
                    CartErrorType.OUT_OF_STOCK, item.product_id,
                    f"Insufficient stock for {product.name}. "
                    f"Required: {item.quantity}, Available: {product.stock_quantity}",
                )

            if not stock_only and product.effective_price != item.unit_price:
                result.add_error(
                    CartErrorType.PRICE_CHANGED, item.product_id,
                    f"Price of {product.name} changed from {item.unit_price} to {product.effective_price}.",
                )

        if not result.valid:
            logger.info(f"Cart validation failed: member={member_id} errors={len(result.errors)}",
                        extra={"member_id": member_id})
        return result

    @staticmethod
    def validate_cart_stock(member_id) -> bool:
        return CartService.validate_cart(member_id, stock_only=True).valid

    @staticmethod
    @transaction.atomic
    def refresh_cart_prices(member_id) -> int:
        """
        Rewrite stale price snapshots to the current effective price so the
        client can re-confirm. Lines whose product is gone are left alone.
        """
        items = CartService.get_cart_items(member_id)
        products = ProductService.in_bulk({item.product_id for item in items})

        refreshed = 0
        for item in items:
            product = products.get(str(item.product_id))
            if product is None or product.effective_price == item.unit_price:
                continue
            item.unit_price = product.effective_price
            item.save(update_fields=["unit_price", "updated_at"])
            refreshed += 1

        if refreshed:
            logger.info(f"Cart prices refreshed: member={member_id} lines={refreshed}",
                        extra={"member_id": member_id})
        return refreshed


class OrderService:

    # ---------------------------------------------------------------
    # Lookups
    # ---------------------------------------------------------------

    @staticmethod
    def _get_order_or_404(order_id) -> Order:
        try:
            order = Order.objects.filter(pk=order_id).first()
        except DjangoValidationError:
            order = None
        if order is None:
            raise NotFoundException("Order not found.", code=ErrorCode.ORDER_NOT_FOUND)
        return order

    @staticmethod
    def _validate_ownership(order: Order, member_id):
        if not _same_member(order.member_id, member_id):
            raise PermissionException("You do not have access to this order.")

    @staticmethod
    def get_order(order_id, member_id) -> Order:
        order = OrderService._get_order_or_404(order_id)
        OrderService._validate_ownership(order, member_id)
        return order

    @staticmethod
    def get_order_by_number(order_number: str, member_id) -> Order:
        order = Order.objects.filter(order_number=order_number).first()
        if order is None:
            raise NotFoundException("Order not found.", code=ErrorCode.ORDER_NOT_FOUND)
        OrderService._validate_ownership(order, member_id)
        return order

    @staticmethod
    def list_member_orders(member_id, page: int = 0, size: int = 10) -> List[Order]:
        max_size = getattr(settings, "ORDER_PAGE_SIZE_MAX", 100)
        if page < 0 or size <= 0 or size > max_size:
            raise ValidationException("Invalid pagination parameters.", code=ErrorCode.INVALID_PAGINATION)
        offset = page * size
        return list(
            Order.objects.filter(member_id=member_id)
            .order_by("-created_at")[offset:offset + size]
        )

    @staticmethod
    def get_order_items(order_id, member_id) -> List[OrderItem]:
        order = OrderService.get_order(order_id, member_id)
        return list(order.items.order_by("created_at"))

    @staticmethod
    def count_member_orders(member_id) -> int:
        return Order.objects.filter(member_id=member_id).count()

    # ---------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------

    @staticmethod
    def _generate_order_number() -> str:
        prefix = getattr(settings, "ORDER_NUMBER_PREFIX", "ORD")
        length = getattr(settings, "ORDER_NUMBER_LENGTH", 12)
        attempts = getattr(settings, "ORDER_NUMBER_MAX_ATTEMPTS", 10)

        for _ in range(attempts):
            order_number = generate_code(prefix=prefix, length=length)
            if not Order.objects.filter(order_number=order_number).exists():
                return order_number

        logger.error(f"Order number generation exhausted after {attempts} attempts (prefix={prefix})")
        raise InternalException("Could not generate a unique order number.")

    @staticmethod
    def create_order_from_cart(member_id, shipping_address: str, notes: str = "",
                               idempotency_key: Optional[str] = None) -> Order:
        """
        Checkout. With an idempotency key, at most one order is ever created
        per (member, key): a finished key replays its order, a key still in
        flight fails fast with CONFLICT.
        """
        if not idempotency_key:
            return OrderService._create_order_from_cart(member_id, shipping_address, notes)

        registry = IdempotencyRegistry()
        key = registry.build_key(member_id, idempotency_key)

        if not registry.reserve(key):
            existing = registry.lookup(key)
            if registry.is_pending(existing):
                logger.info(f"Order creation already in progress: member={member_id}",
                            extra={"member_id": member_id})
                raise ConflictException("Order creation in progress, please retry shortly.",
                                        code=ErrorCode.CONFLICT)

            logger.info(f"Idempotent replay: member={member_id} order={existing}",
                        extra={"member_id": member_id, "order_id": existing})
            return OrderService._get_order_or_404(existing)

        try:
            with transaction.atomic():
                order = OrderService._create_order_from_cart(member_id, shipping_address, notes)
                # Only a committed order may be replayed; if an outer
                # transaction rolls back, the PENDING placeholder just expires.
                transaction.on_commit(lambda: registry.resolve(key, order.pk))
        except Exception:
            registry.release(key)
            raise

        return order

    @staticmethod
    def _create_order_from_cart(member_id, shipping_address: str, notes: str = "") -> Order:
        logger.info(f"Creating order from cart: member={member_id}", extra={"member_id": member_id})

        with transaction.atomic():
            # 1. Cart
            cart_items = CartService.get_cart_items(member_id)
            if not cart_items:
                raise ValidationException("Cart is empty.", code=ErrorCode.CART_EMPTY)

            # 2. Stock gate (price drift tolerated, snapshot prices are used)
            validation = CartService.validate_cart(member_id, stock_only=True, items=cart_items)
            if not validation.valid:
                raise ConflictException("Some items in your cart are out of stock.",
                                        code=ErrorCode.INSUFFICIENT_STOCK)

            # 3. Total from snapshots
            total_amount = CartService.calculate_cart_total(member_id, items=cart_items)

            # 4. Reserve stock; sorted by product id for a stable row-lock order
            for item in sorted(cart_items, key=lambda i: str(i.product_id)):
                if not InventoryService.decrease_stock(item.product_id, item.quantity):
                    raise ConflictException(f"Insufficient stock for product {item.product_id}.",
                                            code=ErrorCode.INSUFFICIENT_STOCK)

            # 5. Header + lines
            order = Order.objects.create(
                order_number=OrderService._generate_order_number(),
                member_id=member_id,
                status=OrderStatus.PENDING,
                total_amount=total_amount,
                shipping_address=shipping_address,
                notes=notes or "",
            )
            OrderItem.objects.bulk_create([
                OrderItem(
                    order=order,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.line_total,
                ) for item in cart_items
            ])

            # 6. Empty the cart
            CartService.clear_cart(member_id)

            transaction.on_commit(lambda: order_created.send(sender=Order, order=order))

        logger.info(
            f"Order created: {order.order_number} total={total_amount} lines={len(cart_items)}",
            extra={"member_id": member_id, "order_id": order.pk, "order_number": order.order_number},
        )
        return order

    # ---------------------------------------------------------------
    # Status
    # ---------------------------------------------------------------

    @staticmethod
    @transaction.atomic
    def update_order_status(order_id, target_status_id) -> Order:
        order = OrderService._get_order_or_404(order_id)

        try:
            target = OrderStatus.from_id(target_status_id)
        except ValueError:
            raise StateException("Invalid order status.", code=ErrorCode.ORDER_STATUS_ERROR)

        current = order.order_status
        if current == target:
            raise StateException("Order status is unchanged.", code=ErrorCode.ORDER_STATUS_ERROR)

        if not current.can_transition_to(target):
            raise StateException(
                f"Cannot move order from {current.label} to {target.label}.",
                code=ErrorCode.ORDER_INVALID_TRANSITION,
            )

        updated = Order.objects.filter(pk=order.pk, status=current).update(
            status=target,
            updated_at=timezone.now(),
        )
        if not updated:
            if not Order.objects.filter(pk=order.pk).exists():
                raise NotFoundException("Order not found.", code=ErrorCode.ORDER_NOT_FOUND)
            logger.error(
                f"Status update matched no rows: order={order.order_number} "
                f"expected={current.name} target={target.name}",
                extra={"order_id": order.pk, "order_number": order.order_number},
            )
            raise InternalException("Order status changed concurrently.")

        order.refresh_from_db(fields=["status", "updated_at"])
        transaction.on_commit(lambda: order_status_changed.send(
            sender=Order, order=order, old_status=current, new_status=target,
        ))

        logger.info(
            f"Order {order.order_number} status {current.name} -> {target.name}",
            extra={"order_id": order.pk},
        )
        return order

    @staticmethod
    @transaction.atomic
    def cancel_order(order_id, member_id=None) -> Order:
        """
        Handles Cancellation & Inventory Release.

        member_id=None is the system/admin path (no ownership check).
        Stock restore and the status change share one transaction, so a
        lost status race also undoes the restores.
        """
        order = OrderService._get_order_or_404(order_id)
        if member_id is not None:
            OrderService._validate_ownership(order, member_id)

        current = order.order_status
        if not current.can_cancel():
            raise StateException(
                f"Order is {current.label} and can no longer be cancelled.",
                code=ErrorCode.ORDER_STATUS_ERROR,
            )

        # 1. Release Stock
        items = list(order.items.values("product_id", "quantity"))
        restored = InventoryService.restore_stock(items)
        if restored != len(items):
            logger.warning(
                f"Cancel {order.order_number}: restored {restored}/{len(items)} lines, products missing",
                extra={"order_id": order.pk},
            )

        # 2. Update Status
        order = OrderService.update_order_status(order.pk, OrderStatus.CANCELLED)

        logger.info(f"Order cancelled: {order.order_number}", extra={"order_id": order.pk})
        return order

    # ---------------------------------------------------------------
    # Deletion
    # ---------------------------------------------------------------

    @staticmethod
    def _delete_cancelled(order: Order):
        if order.order_status != OrderStatus.CANCELLED:
            raise StateException("Only cancelled orders can be deleted.", code=ErrorCode.ORDER_STATUS_ERROR)

        # Lines first, then header
        OrderItem.objects.filter(order=order).delete()
        order.delete()

    @staticmethod
    @transaction.atomic
    def delete_order(order_id, member_id):
        order = OrderService._get_order_or_404(order_id)
        OrderService._validate_ownership(order, member_id)
        OrderService._delete_cancelled(order)
        logger.info(f"Order deleted: {order_id}", extra={"member_id": member_id, "order_id": order_id})

    @staticmethod
    @transaction.atomic
    def delete_order_as_admin(order_id):
        order = OrderService._get_order_or_404(order_id)
        OrderService._delete_cancelled(order)
        logger.info(f"Order deleted by admin: {order_id}", extra={"order_id": order_id})
