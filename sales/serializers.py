from rest_framework import serializers

from sales.models import Customer, Payment, PreOrder, PreOrderItem, Refund, Sale, SaleItem


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "name", "phone", "email", "address", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Name is required.")
        return value


class SaleItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    sku = serializers.CharField(source="product.sku", read_only=True)

    class Meta:
        model = SaleItem
        fields = [
            "id",
            "product",
            "product_name",
            "sku",
            "imei",
            "quantity",
            "unit_price",
            "discount_amount",
            "subtotal",
        ]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    created_by_username = serializers.CharField(source="created_by.username", read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "sale",
            "amount",
            "payment_method",
            "payment_reference",
            "notes",
            "created_by",
            "created_by_username",
            "created_at",
        ]
        read_only_fields = fields


class RefundSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source="sale.invoice_number", read_only=True)
    branch = serializers.UUIDField(source="sale.branch_id", read_only=True)
    requested_by_username = serializers.CharField(source="requested_by.username", read_only=True)
    processed_by_username = serializers.CharField(source="processed_by.username", read_only=True, default=None)

    class Meta:
        model = Refund
        fields = [
            "id",
            "refund_number",
            "sale",
            "invoice_number",
            "branch",
            "amount",
            "reason",
            "status",
            "requested_by",
            "requested_by_username",
            "processed_by",
            "processed_by_username",
            "processed_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class SaleSerializer(serializers.ModelSerializer):
    branch_code = serializers.CharField(source="branch.code", read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    cashier = serializers.CharField(source="user.username", read_only=True)
    items = SaleItemSerializer(many=True, read_only=True)
    payments = PaymentSerializer(many=True, read_only=True)
    refunds = RefundSerializer(many=True, read_only=True)

    class Meta:
        model = Sale
        fields = [
            "id",
            "invoice_number",
            "branch",
            "branch_code",
            "customer",
            "customer_name",
            "user",
            "cashier",
            "total_amount",
            "discount_amount",
            "tax_amount",
            "paid_amount",
            "due_amount",
            "payment_status",
            "sale_status",
            "notes",
            "items",
            "payments",
            "refunds",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class SaleListSerializer(serializers.ModelSerializer):
    branch_code = serializers.CharField(source="branch.code", read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    cashier = serializers.CharField(source="user.username", read_only=True)

    class Meta:
        model = Sale
        fields = [
            "id",
            "invoice_number",
            "branch",
            "branch_code",
            "customer",
            "customer_name",
            "cashier",
            "total_amount",
            "paid_amount",
            "due_amount",
            "payment_status",
            "sale_status",
            "created_at",
        ]
        read_only_fields = fields


class SaleItemInputSerializer(serializers.Serializer):
    productId = serializers.UUIDField(source="product_id")
    quantity = serializers.IntegerField(min_value=1)
    unitPrice = serializers.DecimalField(source="unit_price", max_digits=12, decimal_places=2, min_value=0)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, default=0)
    imei = serializers.CharField(max_length=15, required=False, allow_blank=True, allow_null=True)


class SaleCreateSerializer(serializers.Serializer):
    items = SaleItemInputSerializer(many=True, allow_empty=False)
    discountAmount = serializers.DecimalField(
        source="discount_amount", max_digits=12, decimal_places=2, min_value=0, required=False, default=0
    )
    taxRate = serializers.DecimalField(
        source="tax_rate", max_digits=5, decimal_places=2, min_value=0, max_value=100, required=False, default=0
    )
    paidAmount = serializers.DecimalField(
        source="paid_amount", max_digits=12, decimal_places=2, min_value=0, required=False, default=0
    )
    customerId = serializers.UUIDField(source="customer_id", required=False, allow_null=True)
    branchId = serializers.UUIDField(source="branch_id", required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class PaymentCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    paymentMethod = serializers.ChoiceField(source="payment_method", choices=Payment.Method.choices, default=Payment.Method.CASH)
    paymentReference = serializers.CharField(source="payment_reference", required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Amount must be greater than 0")
        return value


class SaleCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class RefundCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    reason = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Amount must be greater than 0")
        return value


class RefundProcessSerializer(serializers.Serializer):
    action = serializers.CharField()


class PreOrderItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True, default=None)
    inventory_type = serializers.CharField(source="product.inventory_type", read_only=True, default=None)

    class Meta:
        model = PreOrderItem
        fields = [
            "id",
            "product",
            "product_name",
            "inventory_type",
            "custom_product_name",
            "display_name",
            "quantity",
            "unit_price",
            "subtotal",
        ]
        read_only_fields = fields


class PreOrderSerializer(serializers.ModelSerializer):
    branch_code = serializers.CharField(source="branch.code", read_only=True)
    created_by_username = serializers.CharField(source="user.username", read_only=True)
    invoice_number = serializers.CharField(source="converted_sale.invoice_number", read_only=True, default=None)
    items = PreOrderItemSerializer(many=True, read_only=True)

    class Meta:
        model = PreOrder
        fields = [
            "id",
            "order_number",
            "branch",
            "branch_code",
            "customer",
            "user",
            "created_by_username",
            "customer_name",
            "customer_phone",
            "customer_email",
            "customer_address",
            "subtotal",
            "advance_payment",
            "due_amount",
            "payment_status",
            "status",
            "expected_delivery_date",
            "notes",
            "converted_sale",
            "invoice_number",
            "cancelled_by",
            "cancelled_at",
            "cancel_reason",
            "refund_advance",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PreOrderItemInputSerializer(serializers.Serializer):
    productId = serializers.UUIDField(source="product_id", required=False, allow_null=True)
    customProductName = serializers.CharField(
        source="custom_product_name", max_length=255, required=False, allow_blank=True, default=""
    )
    quantity = serializers.IntegerField(min_value=1, default=1)
    unitPrice = serializers.DecimalField(source="unit_price", max_digits=12, decimal_places=2, min_value=0)

    def validate(self, attrs):
        if not attrs.get("product_id") and not attrs.get("custom_product_name", "").strip():
            raise serializers.ValidationError("Choose a product or enter a custom product name.")
        return attrs


class PreOrderCreateSerializer(serializers.Serializer):
    customerName = serializers.CharField(source="customer_name", max_length=255)
    customerPhone = serializers.CharField(source="customer_phone", max_length=32)
    customerEmail = serializers.EmailField(source="customer_email", required=False, allow_blank=True, default="")
    customerAddress = serializers.CharField(source="customer_address", required=False, allow_blank=True, default="")
    customerId = serializers.UUIDField(source="customer_id", required=False, allow_null=True)
    items = PreOrderItemInputSerializer(many=True, allow_empty=False)
    advancePayment = serializers.DecimalField(
        source="advance_payment", max_digits=12, decimal_places=2, min_value=0, required=False, default=0
    )
    expectedDeliveryDate = serializers.DateField(source="expected_delivery_date", required=False, allow_null=True)
    branchId = serializers.UUIDField(source="branch_id", required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class PreOrderUpdateSerializer(serializers.Serializer):
    advancePayment = serializers.DecimalField(source="advance_payment", max_digits=12, decimal_places=2, min_value=0)
    expectedDeliveryDate = serializers.DateField(source="expected_delivery_date", allow_null=True)
    notes = serializers.CharField(allow_blank=True, allow_null=True)


class PreOrderCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    refund = serializers.BooleanField(source="refund_advance", required=False, default=False)


class PreOrderConversionItemSerializer(serializers.Serializer):
    preOrderItemId = serializers.UUIDField(source="pre_order_item_id")
    productId = serializers.UUIDField(source="product_id", required=False, allow_null=True)
    imeis = serializers.ListField(child=serializers.CharField(max_length=15), required=False, default=list)


class PreOrderConvertSerializer(serializers.Serializer):
    items = PreOrderConversionItemSerializer(many=True, required=False, default=list)
    remainingPayment = serializers.DecimalField(
        source="remaining_payment", max_digits=12, decimal_places=2, min_value=0, required=False, default=0
    )
    paymentMethod = serializers.ChoiceField(source="payment_method", choices=Payment.Method.choices, default=Payment.Method.CASH)
