import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError

from common.audit import create_audit_log
from common.exceptions import BusinessRuleError
from common.utils import generate_unique_document_number, to_money
from core.services import get_system_actor
from inventory.models import Product, ProductImei
from inventory.services import (
    InsufficientStockError,
    decrement_stock,
    get_active_branch,
    increment_stock,
    lock_stock,
    sellable_imei,
)
from sales.models import Customer, Payment, PreOrder, PreOrderItem, Refund, Sale, SaleItem

logger = logging.getLogger(__name__)

ADMIN_CANNOT_SELL_MESSAGE = "Admin cannot make sales. Use a staff, manager, or cashier account."
REFUND_NOT_FOUND_MESSAGE = "Refund not found or already processed"
REFUND_ACTIONS = ("approve", "reject")
PRE_ORDER_NOT_FOUND_MESSAGE = "Pre-order not found"


def classify_payment_status(due_amount, paid_amount):
    if due_amount <= 0:
        return Sale.PaymentStatus.PAID
    if paid_amount > 0:
        return Sale.PaymentStatus.PARTIAL
    return Sale.PaymentStatus.DUE


def compute_sale_totals(lines, discount_amount=0, tax_rate=0, paid_amount=0):
    """Price a basket.

    ``lines`` is a list of dicts with ``quantity``, ``unit_price`` and optional
    ``discount``. Every amount is quantized to cents before it is summed.
    """
    line_subtotals = [
        to_money(Decimal(line["unit_price"]) * line["quantity"] - Decimal(line.get("discount") or 0))
        for line in lines
    ]
    subtotal = to_money(sum(line_subtotals, Decimal("0")))
    discount = to_money(discount_amount)
    tax = to_money((subtotal - discount) * Decimal(tax_rate or 0) / Decimal("100"))
    total = to_money(subtotal - discount + tax)
    paid = to_money(paid_amount)
    due = to_money(total - paid)
    return {
        "line_subtotals": line_subtotals,
        "subtotal": subtotal,
        "discount_amount": discount,
        "tax_amount": tax,
        "total_amount": total,
        "paid_amount": paid,
        "due_amount": due,
        "payment_status": classify_payment_status(due, paid),
    }


def sale_snapshot(sale):
    return {
        "invoice_number": sale.invoice_number,
        "branch_id": sale.branch_id,
        "total_amount": sale.total_amount,
        "paid_amount": sale.paid_amount,
        "due_amount": sale.due_amount,
        "payment_status": sale.payment_status,
        "sale_status": sale.sale_status,
    }


def find_sale(policy, identifier):
    """Look a sale up by id or invoice number, hiding other branches' sales."""
    queryset = policy.scope(Sale.objects.all())
    try:
        lookup = {"pk": uuid.UUID(str(identifier))}
    except (TypeError, ValueError):
        lookup = {"invoice_number": identifier}
    sale = queryset.filter(**lookup).first()
    if sale is None:
        raise NotFound("Sale not found")
    return sale


def _sale_for_update(policy, sale_id):
    sale = Sale.objects.select_for_update().filter(pk=sale_id).first()
    if sale is None:
        raise NotFound("Sale not found")
    policy.require_branch_access(sale.branch_id, entity="sale")
    return sale


def _validate_lines(items):
    if not items:
        raise ValidationError({"items": "At least one item is required"})

    seen_imeis = set()
    for index, item in enumerate(items):
        if item["quantity"] <= 0:
            raise ValidationError({"items": f"Item {index + 1}: quantity must be greater than 0"})
        if Decimal(item.get("discount") or 0) > Decimal(item["unit_price"]) * item["quantity"]:
            raise ValidationError({"items": f"Item {index + 1}: discount cannot exceed the line amount"})
        imei = item.get("imei")
        if imei:
            if item["quantity"] != 1:
                raise ValidationError({"items": f"Item {index + 1}: a line with an IMEI must have quantity 1"})
            if imei in seen_imeis:
                raise ValidationError({"items": f"IMEI {imei} appears more than once"})
            seen_imeis.add(imei)


@transaction.atomic
def create_sale(
    policy,
    actor,
    *,
    items,
    customer_id=None,
    discount_amount=0,
    tax_rate=0,
    paid_amount=0,
    payment_method=Payment.Method.CASH,
    notes="",
    branch_id=None,
    request_id=None,
):
    if policy.is_admin:
        raise PermissionDenied(ADMIN_CANNOT_SELL_MESSAGE)

    _validate_lines(items)
    branch = get_active_branch(policy.resolve_branch_id(branch_id))

    customer = None
    if customer_id:
        customer = Customer.objects.filter(pk=customer_id).first()
        if customer is None:
            raise NotFound("Customer not found")

    requested = OrderedDict()
    for item in items:
        product_id = uuid.UUID(str(item["product_id"]))
        requested[product_id] = requested.get(product_id, 0) + item["quantity"]

    products = Product.objects.in_bulk(list(requested))
    for product_id in requested:
        if product_id not in products:
            raise NotFound(f"Product ID {product_id} not found")

    ledger = lock_stock(branch.id, requested)
    for product_id, quantity in requested.items():
        entry = ledger.get(product_id)
        if entry is None or entry.available_quantity < quantity:
            raise InsufficientStockError(f"Insufficient stock for product ID {product_id}")

    imei_records = {}
    for item in items:
        if item.get("imei"):
            imei_records[item["imei"]] = sellable_imei(branch.id, item["imei"], product_id=item["product_id"])

    totals = compute_sale_totals(items, discount_amount, tax_rate, paid_amount)
    if totals["discount_amount"] > totals["subtotal"]:
        raise ValidationError({"discountAmount": "Discount cannot exceed the sale subtotal"})

    sale = Sale.objects.create(
        invoice_number=generate_unique_document_number(Sale, "invoice_number", "INV", prefix=branch.code),
        branch=branch,
        customer=customer,
        user=actor,
        total_amount=totals["total_amount"],
        discount_amount=totals["discount_amount"],
        tax_amount=totals["tax_amount"],
        paid_amount=totals["paid_amount"],
        due_amount=totals["due_amount"],
        payment_status=totals["payment_status"],
        sale_status=Sale.SaleStatus.COMPLETED,
        notes=notes or "",
    )

    for item, line_subtotal in zip(items, totals["line_subtotals"]):
        product_id = uuid.UUID(str(item["product_id"]))
        SaleItem.objects.create(
            sale=sale,
            product_id=product_id,
            imei=item.get("imei") or None,
            quantity=item["quantity"],
            unit_price=to_money(item["unit_price"]),
            discount_amount=to_money(item.get("discount") or 0),
            subtotal=line_subtotal,
        )
        decrement_stock(branch.id, product_id, item["quantity"])
        if item.get("imei"):
            record = imei_records[item["imei"]]
            record.status = ProductImei.Status.SOLD
            record.sale = sale
            record.save(update_fields=["status", "sale", "updated_at"])

    if totals["paid_amount"] > 0:
        Payment.objects.create(
            sale=sale,
            amount=totals["paid_amount"],
            payment_method=payment_method or Payment.Method.CASH,
            created_by=actor,
        )

    create_audit_log(
        actor=actor,
        branch_id=branch.id,
        action="sale.create",
        entity="sale",
        entity_id=sale.id,
        after_snapshot=sale_snapshot(sale),
        request_id=request_id,
    )
    logger.info(
        "sale_created",
        extra={
            "sale_id": sale.id,
            "invoice_number": sale.invoice_number,
            "branch_id": branch.id,
            "user_id": actor.id,
            "request_id": request_id,
        },
    )
    return sale


@transaction.atomic
def add_payment(
    policy,
    actor,
    sale_id,
    *,
    amount,
    payment_method=Payment.Method.CASH,
    payment_reference="",
    notes="",
    request_id=None,
):
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError({"amount": "Amount must be greater than 0"})

    sale = _sale_for_update(policy, sale_id)
    if sale.sale_status != Sale.SaleStatus.COMPLETED:
        raise BusinessRuleError("Cannot add payment to cancelled or refunded sale")

    before = sale_snapshot(sale)
    new_paid = to_money(sale.paid_amount + amount)
    new_due = to_money(sale.total_amount - new_paid)

    payment = Payment.objects.create(
        sale=sale,
        amount=amount,
        payment_method=payment_method or Payment.Method.CASH,
        payment_reference=payment_reference or "",
        notes=notes or "",
        created_by=actor,
    )
    sale.paid_amount = new_paid
    sale.due_amount = new_due
    sale.payment_status = Sale.PaymentStatus.PAID if new_due <= 0 else Sale.PaymentStatus.PARTIAL
    sale.save(update_fields=["paid_amount", "due_amount", "payment_status", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=sale.branch_id,
        action="sale.payment",
        entity="sale",
        entity_id=sale.id,
        before_snapshot=before,
        after_snapshot={**sale_snapshot(sale), "payment_id": payment.id, "amount": amount},
        request_id=request_id,
    )
    logger.info(
        "payment_added",
        extra={"sale_id": sale.id, "invoice_number": sale.invoice_number, "request_id": request_id},
    )
    return sale, payment


@transaction.atomic
def cancel_sale(policy, actor, sale_id, reason=None, request_id=None):
    sale = _sale_for_update(policy, sale_id)
    if sale.sale_status != Sale.SaleStatus.COMPLETED:
        raise BusinessRuleError("Sale is already cancelled or refunded")

    before = sale_snapshot(sale)
    now = timezone.now()
    for item in sale.items.all():
        increment_stock(sale.branch_id, item.product_id, item.quantity)
        if item.imei:
            ProductImei.objects.filter(imei=item.imei, sale=sale).update(
                status=ProductImei.Status.AVAILABLE,
                sale=None,
                updated_at=now,
            )

    closed_refunds = sale.refunds.filter(status=Refund.Status.PENDING).update(
        status=Refund.Status.REJECTED,
        processed_by=actor,
        processed_at=now,
        updated_at=now,
    )

    cancellation_note = f"Cancelled: {reason or 'No reason provided'}"
    sale.notes = f"{sale.notes}\n{cancellation_note}" if sale.notes else cancellation_note
    sale.sale_status = Sale.SaleStatus.CANCELLED
    sale.save(update_fields=["notes", "sale_status", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=sale.branch_id,
        action="sale.cancel",
        entity="sale",
        entity_id=sale.id,
        before_snapshot=before,
        after_snapshot={**sale_snapshot(sale), "reason": reason, "rejected_refunds": closed_refunds},
        request_id=request_id,
    )
    logger.info(
        "sale_cancelled",
        extra={"sale_id": sale.id, "invoice_number": sale.invoice_number, "request_id": request_id},
    )
    return sale


@transaction.atomic
def create_refund(policy, actor, sale_id, *, amount, reason="", request_id=None):
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError({"amount": "Amount must be greater than 0"})

    sale = _sale_for_update(policy, sale_id)
    if sale.sale_status == Sale.SaleStatus.CANCELLED:
        raise BusinessRuleError("Cannot refund a cancelled sale")
    if amount > sale.paid_amount:
        raise BusinessRuleError("Refund amount cannot exceed paid amount")

    refund = Refund.objects.create(
        sale=sale,
        refund_number=generate_unique_document_number(Refund, "refund_number", "REF"),
        amount=amount,
        reason=reason or "",
        status=Refund.Status.PENDING,
        requested_by=actor,
    )

    create_audit_log(
        actor=actor,
        branch_id=sale.branch_id,
        action="refund.request",
        entity="refund",
        entity_id=refund.id,
        after_snapshot={"refund_number": refund.refund_number, "sale_id": sale.id, "amount": amount, "status": refund.status},
        request_id=request_id,
    )
    logger.info(
        "refund_requested",
        extra={
            "refund_id": refund.id,
            "refund_number": refund.refund_number,
            "sale_id": sale.id,
            "request_id": request_id,
        },
    )
    return refund


@transaction.atomic
def process_refund(policy, actor, refund_id, action, request_id=None):
    if action not in REFUND_ACTIONS:
        raise ValidationError({"action": 'Action must be "approve" or "reject"'})

    refund = Refund.objects.select_for_update().filter(pk=refund_id, status=Refund.Status.PENDING).first()
    if refund is None:
        raise NotFound(REFUND_NOT_FOUND_MESSAGE)
    sale = _sale_for_update(policy, refund.sale_id)
    before = sale_snapshot(sale)

    if action == "approve":
        if sale.sale_status == Sale.SaleStatus.CANCELLED:
            raise BusinessRuleError("Cannot refund a cancelled sale")
        if refund.amount > sale.paid_amount:
            raise BusinessRuleError("Refund amount cannot exceed paid amount")
        new_paid = to_money(sale.paid_amount - refund.amount)
        new_due = to_money(sale.total_amount - new_paid)
        sale.paid_amount = new_paid
        sale.due_amount = new_due
        sale.payment_status = classify_payment_status(new_due, new_paid)
        # Partial refunds also close the sale to further payments.
        sale.sale_status = Sale.SaleStatus.REFUNDED
        sale.save(update_fields=["paid_amount", "due_amount", "payment_status", "sale_status", "updated_at"])
        refund.status = Refund.Status.COMPLETED
    else:
        refund.status = Refund.Status.REJECTED

    refund.processed_by = actor
    refund.processed_at = timezone.now()
    refund.save(update_fields=["status", "processed_by", "processed_at", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=sale.branch_id,
        action=f"refund.{action}",
        entity="refund",
        entity_id=refund.id,
        before_snapshot=before,
        after_snapshot={**sale_snapshot(sale), "refund_status": refund.status},
        request_id=request_id,
    )
    logger.info(
        "refund_processed",
        extra={
            "refund_id": refund.id,
            "refund_number": refund.refund_number,
            "sale_id": sale.id,
            "request_id": request_id,
        },
    )
    return refund


def pre_order_snapshot(order):
    return {
        "order_number": order.order_number,
        "branch_id": order.branch_id,
        "subtotal": order.subtotal,
        "advance_payment": order.advance_payment,
        "due_amount": order.due_amount,
        "payment_status": order.payment_status,
        "status": order.status,
        "converted_sale_id": order.converted_sale_id,
    }


def _pre_order_for_update(policy, pre_order_id):
    order = PreOrder.objects.select_for_update().filter(pk=pre_order_id).first()
    if order is None:
        raise NotFound(PRE_ORDER_NOT_FOUND_MESSAGE)
    policy.require_branch_access(order.branch_id, entity="order")
    return order


def _require_pending(order, verb):
    if order.status != PreOrder.Status.PENDING:
        raise BusinessRuleError(f"Only pending pre-orders can be {verb}")


def _apply_advance(order, advance_payment):
    advance = to_money(advance_payment)
    if advance < 0:
        raise ValidationError({"advancePayment": "Advance payment cannot be negative"})
    if advance > order.subtotal:
        raise ValidationError({"advancePayment": "Advance payment cannot exceed the order subtotal"})
    order.advance_payment = advance
    order.due_amount = to_money(order.subtotal - advance)
    order.payment_status = classify_payment_status(order.due_amount, advance)


@transaction.atomic
def create_pre_order(
    policy,
    actor,
    *,
    customer_name,
    customer_phone,
    items,
    customer_id=None,
    customer_email="",
    customer_address="",
    advance_payment=0,
    expected_delivery_date=None,
    notes="",
    branch_id=None,
    request_id=None,
):
    """Record a customer order for goods to be delivered later.

    Nothing touches the stock ledger or the IMEI registry until the order is
    converted into a sale.
    """
    branch = get_active_branch(policy.resolve_branch_id(branch_id))
    customer_name = (customer_name or "").strip()
    customer_phone = (customer_phone or "").strip()
    if not customer_name or not customer_phone:
        raise ValidationError({"customer": "Customer name and phone are required"})
    if not items:
        raise ValidationError({"items": "At least one order item is required"})

    customer = None
    if customer_id:
        customer = Customer.objects.filter(pk=customer_id).first()
        if customer is None:
            raise NotFound("Customer not found")

    requested = {uuid.UUID(str(item["product_id"])) for item in items if item.get("product_id")}
    products = Product.objects.in_bulk(list(requested))
    for index, item in enumerate(items):
        if not item.get("product_id") and not (item.get("custom_product_name") or "").strip():
            raise ValidationError({"items": f"Item {index + 1}: choose a product or enter a custom product name"})
    for product_id in requested:
        if product_id not in products:
            raise NotFound(f"Product ID {product_id} not found")

    totals = compute_sale_totals(items)
    order = PreOrder(
        order_number=generate_unique_document_number(PreOrder, "order_number", "ORD", prefix=branch.code),
        branch=branch,
        customer=customer,
        user=actor,
        customer_name=customer_name,
        customer_phone=customer_phone,
        customer_email=(customer_email or "").strip(),
        customer_address=(customer_address or "").strip(),
        subtotal=totals["subtotal"],
        expected_delivery_date=expected_delivery_date,
        notes=(notes or "").strip(),
    )
    _apply_advance(order, advance_payment)
    order.save()

    PreOrderItem.objects.bulk_create(
        [
            PreOrderItem(
                pre_order=order,
                product_id=item.get("product_id") or None,
                custom_product_name=(item.get("custom_product_name") or "").strip(),
                quantity=item["quantity"],
                unit_price=to_money(item["unit_price"]),
                subtotal=line_subtotal,
                position=index,
            )
            for index, (item, line_subtotal) in enumerate(zip(items, totals["line_subtotals"]))
        ]
    )

    create_audit_log(
        actor=actor,
        branch_id=branch.id,
        action="pre_order.create",
        entity="pre_order",
        entity_id=order.id,
        after_snapshot=pre_order_snapshot(order),
        request_id=request_id,
    )
    logger.info(
        "pre_order_created",
        extra={
            "pre_order_id": order.id,
            "order_number": order.order_number,
            "branch_id": branch.id,
            "user_id": actor.id,
            "request_id": request_id,
        },
    )
    return order


@transaction.atomic
def update_pre_order(policy, actor, pre_order_id, changes, request_id=None):
    order = _pre_order_for_update(policy, pre_order_id)
    _require_pending(order, "updated")
    before = pre_order_snapshot(order)

    if "notes" in changes:
        order.notes = (changes["notes"] or "").strip()
    if "expected_delivery_date" in changes:
        order.expected_delivery_date = changes["expected_delivery_date"]
    if "advance_payment" in changes:
        _apply_advance(order, changes["advance_payment"] or 0)
    order.save()

    create_audit_log(
        actor=actor,
        branch_id=order.branch_id,
        action="pre_order.update",
        entity="pre_order",
        entity_id=order.id,
        before_snapshot=before,
        after_snapshot=pre_order_snapshot(order),
        request_id=request_id,
    )
    return order


@transaction.atomic
def cancel_pre_order(policy, actor, pre_order_id, reason=None, refund_advance=False, request_id=None):
    order = _pre_order_for_update(policy, pre_order_id)
    _require_pending(order, "cancelled")
    before = pre_order_snapshot(order)

    order.status = PreOrder.Status.CANCELLED
    order.cancelled_by = actor
    order.cancelled_at = timezone.now()
    order.cancel_reason = (reason or "").strip()
    order.refund_advance = bool(refund_advance) and order.advance_payment > 0
    order.save(update_fields=["status", "cancelled_by", "cancelled_at", "cancel_reason", "refund_advance", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=order.branch_id,
        action="pre_order.cancel",
        entity="pre_order",
        entity_id=order.id,
        before_snapshot=before,
        after_snapshot={**pre_order_snapshot(order), "reason": reason, "refund_advance": order.refund_advance},
        request_id=request_id,
    )
    logger.info(
        "pre_order_cancelled",
        extra={"pre_order_id": order.id, "order_number": order.order_number, "request_id": request_id},
    )
    return order


@transaction.atomic
def delete_pre_order(policy, actor, pre_order_id, request_id=None):
    order = _pre_order_for_update(policy, pre_order_id)
    if order.status == PreOrder.Status.COMPLETED:
        raise BusinessRuleError("Converted pre-orders cannot be deleted")

    create_audit_log(
        actor=actor,
        branch_id=order.branch_id,
        action="pre_order.delete",
        entity="pre_order",
        entity_id=order.id,
        before_snapshot=pre_order_snapshot(order),
        request_id=request_id,
    )
    order.delete()


def _conversion_lines(order, choices):
    known = {str(item.id) for item in order.items.all()}
    for item_id in choices:
        if item_id not in known:
            raise ValidationError({"items": f"Pre-order item {item_id} does not belong to {order.order_number}"})

    lines = []
    for position, item in enumerate(order.items.select_related("product"), start=1):
        choice = choices.get(str(item.id), {})
        product = item.product
        if product is None:
            if not choice.get("product_id"):
                raise ValidationError(
                    {"items": f'Item {position}: "{item.custom_product_name}" must be matched to a catalog product'}
                )
            product = Product.objects.filter(pk=choice["product_id"]).first()
            if product is None:
                raise NotFound(f"Product ID {choice['product_id']} not found")

        imeis = [imei for imei in choice.get("imeis") or [] if imei]
        if product.is_imei_tracked:
            if len(imeis) != item.quantity:
                raise ValidationError({"items": f"Item {position}: {product.name} needs {item.quantity} IMEI(s)"})
            lines.extend(
                {"product_id": product.id, "quantity": 1, "unit_price": item.unit_price, "imei": imei} for imei in imeis
            )
        else:
            if imeis:
                raise ValidationError({"items": f"Item {position}: {product.name} is not IMEI tracked"})
            lines.append({"product_id": product.id, "quantity": item.quantity, "unit_price": item.unit_price})
    return lines


@transaction.atomic
def convert_pre_order(
    policy,
    actor,
    pre_order_id,
    *,
    items=None,
    remaining_payment=0,
    payment_method=Payment.Method.CASH,
    request_id=None,
):
    """Turn a pending pre-order into a sale at its branch.

    The sale goes through ``create_sale`` so stock, IMEI and payment effects
    are the same as for a counter sale. The advance counts towards the paid
    amount.
    """
    order = _pre_order_for_update(policy, pre_order_id)
    _require_pending(order, "converted to a sale")
    remaining = to_money(remaining_payment)
    if remaining < 0:
        raise ValidationError({"remainingPayment": "Remaining payment cannot be negative"})
    if remaining > order.due_amount:
        raise ValidationError({"remainingPayment": "Remaining payment cannot exceed the amount due"})

    choices = {str(entry["pre_order_item_id"]): entry for entry in items or []}
    lines = _conversion_lines(order, choices)
    before = pre_order_snapshot(order)

    note = f"Converted from pre-order {order.order_number}"
    sale = create_sale(
        policy,
        actor,
        items=lines,
        customer_id=order.customer_id,
        paid_amount=order.advance_payment + remaining,
        payment_method=payment_method,
        notes=f"{order.notes}\n{note}" if order.notes else note,
        branch_id=order.branch_id,
        request_id=request_id,
    )

    order.status = PreOrder.Status.COMPLETED
    order.converted_sale = sale
    order.save(update_fields=["status", "converted_sale", "updated_at"])

    create_audit_log(
        actor=actor,
        branch_id=order.branch_id,
        action="pre_order.convert",
        entity="pre_order",
        entity_id=order.id,
        before_snapshot=before,
        after_snapshot=pre_order_snapshot(order),
        request_id=request_id,
    )
    logger.info(
        "pre_order_converted",
        extra={
            "pre_order_id": order.id,
            "order_number": order.order_number,
            "sale_id": sale.id,
            "invoice_number": sale.invoice_number,
            "request_id": request_id,
        },
    )
    return order, sale


@dataclass(frozen=True)
class SaleBalance:
    sale_id: uuid.UUID
    invoice_number: str
    recorded_paid: Decimal
    expected_paid: Decimal
    recorded_due: Decimal
    expected_due: Decimal
    recorded_status: str
    expected_status: str

    @property
    def has_drift(self):
        return (
            self.recorded_paid != self.expected_paid
            or self.recorded_due != self.expected_due
            or self.recorded_status != self.expected_status
        )


def reconcile_sale_totals(sale):
    """Compare the running totals on a sale with its payment and refund rows."""
    payments = sale.payments.aggregate(total=Sum("amount"))["total"] or Decimal("0")
    refunds = sale.refunds.filter(status=Refund.Status.COMPLETED).aggregate(total=Sum("amount"))["total"] or Decimal("0")
    expected_paid = to_money(payments - refunds)
    expected_due = to_money(sale.total_amount - expected_paid)
    return SaleBalance(
        sale_id=sale.id,
        invoice_number=sale.invoice_number,
        recorded_paid=to_money(sale.paid_amount),
        expected_paid=expected_paid,
        recorded_due=to_money(sale.due_amount),
        expected_due=expected_due,
        recorded_status=sale.payment_status,
        expected_status=classify_payment_status(expected_due, expected_paid),
    )


@transaction.atomic
def apply_sale_balance(balance, request_id=None):
    sale = Sale.objects.select_for_update().get(pk=balance.sale_id)
    before = sale_snapshot(sale)
    sale.paid_amount = balance.expected_paid
    sale.due_amount = balance.expected_due
    sale.payment_status = balance.expected_status
    sale.save(update_fields=["paid_amount", "due_amount", "payment_status", "updated_at"])
    create_audit_log(
        actor=get_system_actor(),
        branch_id=sale.branch_id,
        action="sale.reconcile",
        entity="sale",
        entity_id=sale.id,
        before_snapshot=before,
        after_snapshot=sale_snapshot(sale),
        request_id=request_id,
    )
    return sale
