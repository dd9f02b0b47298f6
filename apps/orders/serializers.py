from rest_framework import serializers

from apps.catalog.models import Product
from .models import CartItem, Order, OrderItem, OrderStatus


class CartItemSerializer(serializers.ModelSerializer):
    product_name = serializers.SerializerMethodField()
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = CartItem
        fields = ["id", "product", "product_name", "quantity", "unit_price", "line_total", "updated_at"]

    def get_product_name(self, obj):
        # Lines can outlive their product
        try:
            return obj.product.name
        except Product.DoesNotExist:
            return None


class CartErrorSerializer(serializers.Serializer):
    error_type = serializers.CharField(source="error_type.value")
    product_id = serializers.CharField()
    message = serializers.CharField()


class CartValidationResultSerializer(serializers.Serializer):
    valid = serializers.BooleanField(read_only=True)
    errors = CartErrorSerializer(many=True, read_only=True)


class OrderItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = OrderItem
        fields = ["id", "product", "product_name", "quantity", "unit_price", "total_price", "created_at"]


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    status_display = serializers.CharField(source="get_status_display", read_only=True)
    can_cancel = serializers.BooleanField(read_only=True)

    class Meta:
        model = Order
        fields = [
            "id", "order_number", "member", "status", "status_display", "can_cancel",
            "total_amount", "shipping_amount", "tax_amount", "discount_amount",
            "shipping_address", "notes", "created_at", "updated_at", "items",
        ]


class CreateOrderSerializer(serializers.Serializer):
    shipping_address = serializers.CharField(max_length=500)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default="")
    idempotency_key = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)

    def validate_shipping_address(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Shipping address is required.")
        return value

    def validate_idempotency_key(self, value):
        if not value:
            return None
        return value.strip() or None


class UpdateOrderStatusSerializer(serializers.Serializer):
    status_id = serializers.ChoiceField(choices=OrderStatus.choices)
