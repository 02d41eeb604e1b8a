import uuid

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from core.models import Branch


class Product(models.Model):
    class InventoryType(models.TextChoices):
        QUANTITY = "quantity", "Quantity tracked"
        UNIQUE = "unique", "IMEI tracked"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    sku = models.CharField(max_length=64, unique=True)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=128, blank=True)
    brand = models.CharField(max_length=128, blank=True)
    base_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    wholesale_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    retail_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    inventory_type = models.CharField(max_length=16, choices=InventoryType, default=InventoryType.QUANTITY)
    # Catalog-level count for quantity products; per-branch truth lives in BranchStock.
    stock = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["category", "brand"], name="inv_product_cat_brand_idx"),
            models.Index(fields=["is_active"], name="inv_product_active_idx"),
        ]

    def __str__(self):
        return f"{self.sku} - {self.name}"

    @property
    def is_imei_tracked(self):
        return self.inventory_type == self.InventoryType.UNIQUE


class BranchStock(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="stock_entries")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="branch_stock")
    quantity = models.IntegerField(default=0)
    reserved_quantity = models.IntegerField(default=0)
    min_stock_level = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["branch", "product"], name="inv_branchstock_branch_product_uniq"),
            models.CheckConstraint(condition=Q(reserved_quantity__gte=0), name="inv_branchstock_reserved_gte_0"),
            models.CheckConstraint(condition=Q(quantity__gte=F("reserved_quantity")), name="inv_branchstock_qty_gte_reserved"),
        ]
        indexes = [
            models.Index(fields=["product"], name="inv_branchstock_product_idx"),
        ]

    @property
    def available_quantity(self):
        return self.quantity - self.reserved_quantity

    @property
    def is_low_stock(self):
        return self.available_quantity <= self.min_stock_level


class ProductImei(models.Model):
    class Status(models.TextChoices):
        AVAILABLE = "available", "Available"
        IN_STOCK = "in_stock", "In stock"
        SOLD = "sold", "Sold"
        RESERVED = "reserved", "Reserved"
        TRANSFERRED = "transferred", "Transferred"
        RETURNED = "returned", "Returned"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="imeis")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="imeis")
    imei = models.CharField(max_length=15, unique=True)
    purchase_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=16, choices=Status, default=Status.AVAILABLE)
    sale = models.ForeignKey("sales.Sale", on_delete=models.SET_NULL, null=True, blank=True, related_name="imeis")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "status"], name="inv_imei_branch_status_idx"),
            models.Index(fields=["product", "status"], name="inv_imei_product_status_idx"),
        ]


class StockTransfer(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        IN_TRANSIT = "in_transit", "In transit"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    transfer_number = models.CharField(max_length=64, unique=True)
    from_branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="outgoing_transfers")
    to_branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="incoming_transfers")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="transfers")
    quantity = models.IntegerField()
    imei = models.CharField(max_length=15, null=True, blank=True)
    status = models.CharField(max_length=16, choices=Status, default=Status.PENDING)
    # Mode the transfer was created under; completion and cancellation follow it.
    reserves_stock = models.BooleanField(default=True)
    notes = models.TextField(blank=True)
    requested_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="requested_transfers")
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="approved_transfers",
    )
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name="inv_transfer_quantity_gt_0"),
            models.CheckConstraint(condition=~Q(from_branch=F("to_branch")), name="inv_transfer_distinct_branches"),
        ]
        indexes = [
            models.Index(fields=["from_branch", "status"], name="inv_transfer_from_status_idx"),
            models.Index(fields=["to_branch", "status"], name="inv_transfer_to_status_idx"),
        ]
