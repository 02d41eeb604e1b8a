from rest_framework import serializers

from common.exceptions import ConflictError
from inventory.models import BranchStock, Product, ProductImei, StockTransfer


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = [
            "id",
            "name",
            "sku",
            "description",
            "category",
            "brand",
            "base_price",
            "wholesale_price",
            "retail_price",
            "inventory_type",
            "stock",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]
        # Duplicate SKUs are a conflict (409), not a field error.
        extra_kwargs = {"sku": {"validators": []}}

    def validate_sku(self, value):
        value = value.strip()
        queryset = Product.objects.filter(sku=value)
        if self.instance is not None:
            queryset = queryset.exclude(pk=self.instance.pk)
        if queryset.exists():
            raise ConflictError("SKU already exists")
        return value


class BranchStockSerializer(serializers.ModelSerializer):
    branch_code = serializers.CharField(source="branch.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    sku = serializers.CharField(source="product.sku", read_only=True)
    category = serializers.CharField(source="product.category", read_only=True)
    brand = serializers.CharField(source="product.brand", read_only=True)
    retail_price = serializers.DecimalField(source="product.retail_price", max_digits=12, decimal_places=2, read_only=True)
    available_quantity = serializers.IntegerField(read_only=True)
    is_low_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = BranchStock
        fields = [
            "id",
            "branch",
            "branch_code",
            "product",
            "product_name",
            "sku",
            "category",
            "brand",
            "retail_price",
            "quantity",
            "reserved_quantity",
            "available_quantity",
            "min_stock_level",
            "is_low_stock",
            "updated_at",
        ]
        read_only_fields = fields


class StockLevelSerializer(serializers.Serializer):
    branchId = serializers.UUIDField(source="branch_id", required=False, allow_null=True)
    productId = serializers.UUIDField(source="product_id")
    quantity = serializers.IntegerField(min_value=0)
    minStockLevel = serializers.IntegerField(source="min_stock_level", min_value=0, required=False, allow_null=True)


class ProductImeiSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    sku = serializers.CharField(source="product.sku", read_only=True)
    branch_code = serializers.CharField(source="branch.code", read_only=True)

    class Meta:
        model = ProductImei
        fields = [
            "id",
            "product",
            "product_name",
            "sku",
            "branch",
            "branch_code",
            "imei",
            "purchase_price",
            "status",
            "sale",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ImeiRegistrationSerializer(serializers.Serializer):
    branchId = serializers.UUIDField(source="branch_id", required=False, allow_null=True)
    productId = serializers.UUIDField(source="product_id")
    imei = serializers.CharField(max_length=32)
    purchasePrice = serializers.DecimalField(
        source="purchase_price",
        max_digits=12,
        decimal_places=2,
        min_value=0,
        required=False,
        allow_null=True,
    )


class StockTransferSerializer(serializers.ModelSerializer):
    from_branch_code = serializers.CharField(source="from_branch.code", read_only=True)
    to_branch_code = serializers.CharField(source="to_branch.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    requested_by_username = serializers.CharField(source="requested_by.username", read_only=True)
    approved_by_username = serializers.CharField(source="approved_by.username", read_only=True, default=None)

    class Meta:
        model = StockTransfer
        fields = [
            "id",
            "transfer_number",
            "from_branch",
            "from_branch_code",
            "to_branch",
            "to_branch_code",
            "product",
            "product_name",
            "quantity",
            "imei",
            "status",
            "reserves_stock",
            "notes",
            "requested_by",
            "requested_by_username",
            "approved_by",
            "approved_by_username",
            "completed_at",
            "cancelled_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class StockTransferCreateSerializer(serializers.Serializer):
    fromBranchId = serializers.UUIDField(source="from_branch_id", default=None, allow_null=True)
    toBranchId = serializers.UUIDField(source="to_branch_id")
    productId = serializers.UUIDField(source="product_id")
    quantity = serializers.IntegerField(min_value=1)
    imei = serializers.CharField(max_length=15, required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class TransferCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)
