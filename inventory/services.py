import logging
import re

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.audit import create_audit_log
from common.exceptions import BusinessRuleError, ConflictError
from common.utils import generate_unique_document_number, to_money
from core.models import Branch
from inventory.models import BranchStock, Product, ProductImei, StockTransfer

logger = logging.getLogger(__name__)

IMEI_PATTERN = re.compile(r"^\d{15}$")
TRANSFER_NOT_FOUND_MESSAGE = "Transfer not found or already processed"


class InsufficientStockError(BusinessRuleError):
    default_detail = "Insufficient stock."
    default_code = "insufficient_stock"


class ImeiUnavailableError(BusinessRuleError):
    default_detail = "IMEI is not available."
    default_code = "imei_unavailable"


def transfers_reserve_stock():
    return getattr(settings, "POS_TRANSFER_RESERVES_STOCK", True)


def get_active_branch(branch_id):
    branch = Branch.objects.filter(pk=branch_id).first()
    if branch is None:
        raise NotFound("Branch not found")
    if not branch.is_active:
        raise BusinessRuleError(f"Branch {branch.code} is not active")
    return branch


def stock_snapshot(entry):
    return {
        "branch_id": entry.branch_id,
        "product_id": entry.product_id,
        "quantity": entry.quantity,
        "reserved_quantity": entry.reserved_quantity,
        "min_stock_level": entry.min_stock_level,
    }


def _ledger(branch_id, product_id):
    return BranchStock.objects.filter(branch_id=branch_id, product_id=product_id)


def available_quantity(branch_id, product_id):
    row = _ledger(branch_id, product_id).values("quantity", "reserved_quantity").first()
    if row is None:
        return 0
    return row["quantity"] - row["reserved_quantity"]


def lock_stock(branch_id, product_ids):
    """Row-lock the ledger entries for ``product_ids`` at a branch until commit.

    Rows are locked in primary-key order so concurrent sales touching the same
    products cannot deadlock each other.
    """
    rows = (
        BranchStock.objects.select_for_update()
        .filter(branch_id=branch_id, product_id__in=list(product_ids))
        .order_by("product_id")
    )
    return {row.product_id: row for row in rows}


def decrement_stock(branch_id, product_id, quantity, message=None):
    updated = _ledger(branch_id, product_id).filter(quantity__gte=F("reserved_quantity") + quantity).update(
        quantity=F("quantity") - quantity,
        updated_at=timezone.now(),
    )
    if not updated:
        raise InsufficientStockError(message or f"Insufficient stock for product ID {product_id}")


def increment_stock(branch_id, product_id, quantity):
    now = timezone.now()
    if _ledger(branch_id, product_id).update(quantity=F("quantity") + quantity, updated_at=now):
        return
    try:
        with transaction.atomic():
            BranchStock.objects.create(branch_id=branch_id, product_id=product_id, quantity=quantity)
    except IntegrityError:
        # Lost the insert race; the row exists now.
        _ledger(branch_id, product_id).update(quantity=F("quantity") + quantity, updated_at=now)


def reserve_stock(branch_id, product_id, quantity):
    updated = _ledger(branch_id, product_id).filter(quantity__gte=F("reserved_quantity") + quantity).update(
        reserved_quantity=F("reserved_quantity") + quantity,
        updated_at=timezone.now(),
    )
    if not updated:
        raise InsufficientStockError("Insufficient stock available for transfer")


def release_reservation(branch_id, product_id, quantity):
    updated = _ledger(branch_id, product_id).filter(reserved_quantity__gte=quantity).update(
        reserved_quantity=F("reserved_quantity") - quantity,
        updated_at=timezone.now(),
    )
    if not updated:
        raise BusinessRuleError(f"Reserved stock for product ID {product_id} is lower than {quantity}")


def consume_reservation(branch_id, product_id, quantity):
    updated = _ledger(branch_id, product_id).filter(reserved_quantity__gte=quantity, quantity__gte=quantity).update(
        quantity=F("quantity") - quantity,
        reserved_quantity=F("reserved_quantity") - quantity,
        updated_at=timezone.now(),
    )
    if not updated:
        raise BusinessRuleError(f"Reserved stock for product ID {product_id} is lower than {quantity}")


def validate_imei_format(imei):
    if not imei or not IMEI_PATTERN.match(str(imei)):
        raise ValidationError({"imei": "Invalid IMEI format (must be 15 digits)"})
    return str(imei)


def sellable_imei(branch_id, imei, product_id=None):
    record = ProductImei.objects.select_for_update().filter(imei=imei, branch_id=branch_id).first()
    if record is None or record.status != ProductImei.Status.AVAILABLE:
        raise ImeiUnavailableError(f"IMEI {imei} is not available")
    if product_id is not None and str(record.product_id) != str(product_id):
        raise ImeiUnavailableError(f"IMEI {imei} does not belong to product ID {product_id}")
    return record


@transaction.atomic
def set_stock_level(policy, actor, *, product_id, quantity, min_stock_level=None, branch_id=None, request_id=None):
    branch_id = policy.resolve_branch_id(branch_id)
    branch = get_active_branch(branch_id)
    product = Product.objects.filter(pk=product_id).first()
    if product is None:
        raise NotFound("Product not found")
    if quantity < 0:
        raise ValidationError({"quantity": "Quantity cannot be negative"})

    entry = BranchStock.objects.select_for_update().filter(branch=branch, product=product).first()
    before = stock_snapshot(entry) if entry else None
    if entry is None:
        entry = BranchStock(branch=branch, product=product, min_stock_level=min_stock_level or 0)

    if quantity < entry.reserved_quantity:
        raise BusinessRuleError(
            f"Quantity cannot be lower than the reserved quantity ({entry.reserved_quantity}) for product ID {product.id}"
        )

    entry.quantity = quantity
    if min_stock_level is not None:
        entry.min_stock_level = min_stock_level
    entry.save()

    create_audit_log(
        actor=actor,
        branch_id=branch.id,
        action="stock.set",
        entity="branch_stock",
        entity_id=entry.id,
        before_snapshot=before,
        after_snapshot=stock_snapshot(entry),
        request_id=request_id,
    )
    logger.info(
        "stock_level_set",
        extra={"branch_id": branch.id, "product_id": product.id, "request_id": request_id},
    )
    return entry


@transaction.atomic
def register_imei(policy, actor, *, product_id, imei, purchase_price=None, branch_id=None, request_id=None):
    branch_id = policy.resolve_branch_id(branch_id)
    branch = get_active_branch(branch_id)
    imei = validate_imei_format(imei)

    product = Product.objects.filter(pk=product_id).first()
    if product is None:
        raise NotFound("Product not found")
    if not product.is_imei_tracked:
        raise BusinessRuleError(f"Product {product.sku} is not IMEI tracked")
    if ProductImei.objects.filter(imei=imei).exists():
        raise ConflictError("IMEI already exists")

    record = ProductImei.objects.create(
        product=product,
        branch=branch,
        imei=imei,
        purchase_price=to_money(purchase_price) if purchase_price is not None else None,
        status=ProductImei.Status.AVAILABLE,
    )
    increment_stock(branch.id, product.id, 1)

    create_audit_log(
        actor=actor,
        branch_id=branch.id,
        action="imei.register",
        entity="product_imei",
        entity_id=record.id,
        after_snapshot={"imei": imei, "product_id": product.id, "status": record.status},
        request_id=request_id,
    )
    logger.info(
        "imei_registered",
        extra={"branch_id": branch.id, "product_id": product.id, "request_id": request_id},
    )
    return record


def transfer_snapshot(transfer):
    return {
        "transfer_number": transfer.transfer_number,
        "from_branch_id": transfer.from_branch_id,
        "to_branch_id": transfer.to_branch_id,
        "product_id": transfer.product_id,
        "quantity": transfer.quantity,
        "imei": transfer.imei,
        "status": transfer.status,
        "reserves_stock": transfer.reserves_stock,
    }


@transaction.atomic
def transfer_stock(policy, actor, *, to_branch_id, product_id, quantity, from_branch_id=None, imei=None, notes=None, request_id=None):
    """Create a pending transfer.

    In two-phase mode the quantity is reserved at the source and only moves on
    completion. In legacy mode the stock moves now and completion is a marker.
    """
    from_branch_id = policy.resolve_branch_id(from_branch_id)
    if not to_branch_id:
        raise ValidationError({"toBranchId": "This field is required."})
    if str(from_branch_id) == str(to_branch_id):
        raise BusinessRuleError("Cannot transfer to the same branch")
    if quantity is None or quantity <= 0:
        raise ValidationError({"quantity": "Quantity must be greater than 0"})

    from_branch = get_active_branch(from_branch_id)
    to_branch = get_active_branch(to_branch_id)
    product = Product.objects.filter(pk=product_id).first()
    if product is None:
        raise NotFound("Product not found")

    lock_stock(from_branch.id, [product.id])
    if available_quantity(from_branch.id, product.id) < quantity:
        raise InsufficientStockError("Insufficient stock available for transfer")

    imei_record = None
    if imei:
        imei_record = (
            ProductImei.objects.select_for_update()
            .filter(imei=imei, branch=from_branch, product=product, status=ProductImei.Status.AVAILABLE)
            .first()
        )
        if imei_record is None:
            raise ImeiUnavailableError(f"IMEI {imei} is not available")

    reserves = transfers_reserve_stock()
    transfer = StockTransfer.objects.create(
        transfer_number=generate_unique_document_number(StockTransfer, "transfer_number", "TRF"),
        from_branch=from_branch,
        to_branch=to_branch,
        product=product,
        quantity=quantity,
        imei=imei or None,
        notes=notes or "",
        reserves_stock=reserves,
        requested_by=actor,
    )

    if reserves:
        reserve_stock(from_branch.id, product.id, quantity)
        if imei_record is not None:
            imei_record.status = ProductImei.Status.TRANSFERRED
            imei_record.save(update_fields=["status", "updated_at"])
    else:
        decrement_stock(from_branch.id, product.id, quantity, message="Insufficient stock available for transfer")
        increment_stock(to_branch.id, product.id, quantity)
        if imei_record is not None:
            imei_record.status = ProductImei.Status.TRANSFERRED
            imei_record.branch = to_branch
            imei_record.save(update_fields=["status", "branch", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=from_branch.id,
        action="transfer.create",
        entity="stock_transfer",
        entity_id=transfer.id,
        after_snapshot=transfer_snapshot(transfer),
        request_id=request_id,
    )
    logger.info(
        "stock_transfer_created",
        extra={
            "transfer_id": transfer.id,
            "transfer_number": transfer.transfer_number,
            "branch_id": from_branch.id,
            "request_id": request_id,
        },
    )
    return transfer


def _pending_transfer_for_update(policy, transfer_id):
    transfer = (
        StockTransfer.objects.select_for_update()
        .filter(pk=transfer_id, status=StockTransfer.Status.PENDING)
        .first()
    )
    if transfer is None:
        raise NotFound(TRANSFER_NOT_FOUND_MESSAGE)
    if not (policy.can_access_branch(transfer.from_branch_id) or policy.can_access_branch(transfer.to_branch_id)):
        policy.require_branch_access(transfer.from_branch_id, entity="transfer")
    return transfer


def _transfer_imei(transfer):
    if not transfer.imei:
        return None
    return ProductImei.objects.select_for_update().filter(imei=transfer.imei).first()


@transaction.atomic
def complete_transfer(policy, actor, transfer_id, request_id=None):
    transfer = _pending_transfer_for_update(policy, transfer_id)
    before = transfer_snapshot(transfer)
    imei_record = _transfer_imei(transfer)

    if transfer.reserves_stock:
        consume_reservation(transfer.from_branch_id, transfer.product_id, transfer.quantity)
        increment_stock(transfer.to_branch_id, transfer.product_id, transfer.quantity)
    if imei_record is not None and imei_record.status == ProductImei.Status.TRANSFERRED:
        imei_record.branch_id = transfer.to_branch_id
        imei_record.status = ProductImei.Status.AVAILABLE
        imei_record.save(update_fields=["branch", "status", "updated_at"])

    transfer.status = StockTransfer.Status.COMPLETED
    transfer.approved_by = actor
    transfer.completed_at = timezone.now()
    transfer.save(update_fields=["status", "approved_by", "completed_at", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=transfer.to_branch_id,
        action="transfer.complete",
        entity="stock_transfer",
        entity_id=transfer.id,
        before_snapshot=before,
        after_snapshot=transfer_snapshot(transfer),
        request_id=request_id,
    )
    logger.info(
        "stock_transfer_completed",
        extra={"transfer_id": transfer.id, "transfer_number": transfer.transfer_number, "request_id": request_id},
    )
    return transfer


@transaction.atomic
def cancel_transfer(policy, actor, transfer_id, reason=None, request_id=None):
    transfer = _pending_transfer_for_update(policy, transfer_id)
    before = transfer_snapshot(transfer)
    imei_record = _transfer_imei(transfer)

    if transfer.reserves_stock:
        release_reservation(transfer.from_branch_id, transfer.product_id, transfer.quantity)
    else:
        decrement_stock(
            transfer.to_branch_id,
            transfer.product_id,
            transfer.quantity,
            message="Transferred stock has already been used at the destination branch",
        )
        increment_stock(transfer.from_branch_id, transfer.product_id, transfer.quantity)
    if imei_record is not None and imei_record.status == ProductImei.Status.TRANSFERRED:
        imei_record.branch_id = transfer.from_branch_id
        imei_record.status = ProductImei.Status.AVAILABLE
        imei_record.save(update_fields=["branch", "status", "updated_at"])

    transfer.status = StockTransfer.Status.CANCELLED
    transfer.cancelled_at = timezone.now()
    if reason:
        transfer.notes = f"{transfer.notes}\nCancelled: {reason}".strip()
    transfer.save(update_fields=["status", "cancelled_at", "notes", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=transfer.from_branch_id,
        action="transfer.cancel",
        entity="stock_transfer",
        entity_id=transfer.id,
        before_snapshot=before,
        after_snapshot=transfer_snapshot(transfer),
        request_id=request_id,
    )
    logger.info(
        "stock_transfer_cancelled",
        extra={"transfer_id": transfer.id, "transfer_number": transfer.transfer_number, "request_id": request_id},
    )
    return transfer
