from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog, Branch
from inventory.models import BranchStock, Product, ProductImei
from inventory.services import InsufficientStockError
from sales.models import Customer, Payment, PreOrder, Refund, Sale, SaleItem
from sales.services import compute_sale_totals, reconcile_sale_totals

IMEI_1 = "356938035643809"
IMEI_2 = "356938035643817"


class SalesTestMixin:
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="SA", name="Sales A")
        self.branch_b = Branch.objects.create(code="SB", name="Sales B")

        self.admin = self.user_model.objects.create_user(username="sales-admin", password="pass1234", role="admin")
        self.manager_a = self.user_model.objects.create_user(
            username="sales-manager-a",
            password="pass1234",
            role="manager",
            branch=self.branch_a,
        )
        self.cashier_a = self.user_model.objects.create_user(
            username="sales-cashier-a",
            password="pass1234",
            role="cashier",
            branch=self.branch_a,
        )
        self.cashier_b = self.user_model.objects.create_user(
            username="sales-cashier-b",
            password="pass1234",
            role="cashier",
            branch=self.branch_b,
        )

        self.case = Product.objects.create(name="Phone case", sku="CASE-100", retail_price=Decimal("100.00"))
        self.cable = Product.objects.create(name="Cable", sku="CABLE-50", retail_price=Decimal("50.00"))
        self.phone = Product.objects.create(
            name="Phone",
            sku="PHONE-1",
            retail_price=Decimal("300.00"),
            inventory_type=Product.InventoryType.UNIQUE,
        )
        BranchStock.objects.create(branch=self.branch_a, product=self.case, quantity=10)
        BranchStock.objects.create(branch=self.branch_a, product=self.cable, quantity=10)
        BranchStock.objects.create(branch=self.branch_a, product=self.phone, quantity=2)
        ProductImei.objects.create(product=self.phone, branch=self.branch_a, imei=IMEI_1)
        ProductImei.objects.create(product=self.phone, branch=self.branch_a, imei=IMEI_2)

        self.customer = Customer.objects.create(name="Mona", phone="0100")

    def basket(self):
        return [
            {"productId": str(self.case.id), "quantity": 2, "unitPrice": "100.00"},
            {"productId": str(self.cable.id), "quantity": 1, "unitPrice": "50.00"},
        ]

    def create_sale(self, user=None, items=None, **body):
        self.client.force_authenticate(user=user or self.cashier_a)
        payload = {"items": items if items is not None else self.basket(), "discountAmount": "10", "taxRate": "10"}
        payload.update(body)
        return self.client.post("/api/v1/sales/", payload, format="json")

    def quantity(self, product, branch=None):
        return BranchStock.objects.get(branch=branch or self.branch_a, product=product).quantity

    def assert_sale_invariants(self, sale):
        subtotal = sum((item.subtotal for item in sale.items.all()), Decimal("0"))
        self.assertEqual(sale.total_amount, subtotal - sale.discount_amount + sale.tax_amount)
        self.assertEqual(sale.due_amount, sale.total_amount - sale.paid_amount)
        self.assertEqual(reconcile_sale_totals(sale).expected_status, sale.payment_status)


class SaleTotalsTests(TestCase):
    def test_totals_for_two_line_basket(self):
        lines = [
            {"quantity": 2, "unit_price": Decimal("100")},
            {"quantity": 1, "unit_price": Decimal("50")},
        ]

        totals = compute_sale_totals(lines, discount_amount=10, tax_rate=10, paid_amount=264)

        self.assertEqual(totals["subtotal"], Decimal("250.00"))
        self.assertEqual(totals["tax_amount"], Decimal("24.00"))
        self.assertEqual(totals["total_amount"], Decimal("264.00"))
        self.assertEqual(totals["due_amount"], Decimal("0.00"))
        self.assertEqual(totals["payment_status"], Sale.PaymentStatus.PAID)

    def test_line_discount_reduces_line_subtotal(self):
        totals = compute_sale_totals([{"quantity": 3, "unit_price": "9.99", "discount": "0.97"}])

        self.assertEqual(totals["line_subtotals"], [Decimal("29.00")])
        self.assertEqual(totals["payment_status"], Sale.PaymentStatus.DUE)


class SaleCreationTests(SalesTestMixin, TestCase):
    def test_fully_paid_sale(self):
        response = self.create_sale(paidAmount="264")

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["total_amount"], "264.00")
        self.assertEqual(data["tax_amount"], "24.00")
        self.assertEqual(data["due_amount"], "0.00")
        self.assertEqual(data["payment_status"], "paid")
        self.assertEqual(data["sale_status"], "completed")
        self.assertTrue(data["invoice_number"].startswith("SA-INV-"))
        self.assertEqual(len(data["items"]), 2)
        self.assertEqual([payment["amount"] for payment in data["payments"]], ["264.00"])

        sale = Sale.objects.get(pk=data["id"])
        self.assertEqual(sale.user, self.cashier_a)
        self.assert_sale_invariants(sale)
        self.assertEqual(self.quantity(self.case), 8)
        self.assertEqual(self.quantity(self.cable), 9)
        self.assertTrue(AuditLog.objects.filter(action="sale.create", entity_id=sale.id).exists())

    def test_partially_paid_sale(self):
        response = self.create_sale(paidAmount="100")

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["due_amount"], "164.00")
        self.assertEqual(data["payment_status"], "partial")
        self.assert_sale_invariants(Sale.objects.get(pk=data["id"]))

    def test_unpaid_sale_records_no_payment(self):
        response = self.create_sale(customerId=str(self.customer.id))

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["payment_status"], "due")
        self.assertEqual(data["customer_name"], "Mona")
        self.assertFalse(Payment.objects.exists())

    def test_admin_cannot_sell(self):
        response = self.create_sale(user=self.admin, branchId=str(self.branch_a.id))

        self.assertEqual(response.status_code, 403)
        self.assertIn("Admin cannot make sales", response.json()["message"])
        self.assertFalse(Sale.objects.exists())

    def test_insufficient_stock_writes_nothing(self):
        items = self.basket()
        items[1]["quantity"] = 11

        response = self.create_sale(items=items)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], f"Insufficient stock for product ID {self.cable.id}")
        self.assertFalse(Sale.objects.exists())
        self.assertEqual(self.quantity(self.case), 10)

    def test_quantities_of_repeated_product_lines_are_combined(self):
        items = [
            {"productId": str(self.cable.id), "quantity": 6, "unitPrice": "50.00"},
            {"productId": str(self.cable.id), "quantity": 5, "unitPrice": "50.00"},
        ]

        response = self.create_sale(items=items, discountAmount="0")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.quantity(self.cable), 10)

    def test_failure_mid_sale_rolls_everything_back(self):
        failure = InsufficientStockError(f"Insufficient stock for product ID {self.cable.id}")
        with patch("sales.services.decrement_stock", side_effect=[None, failure]):
            response = self.create_sale(paidAmount="50")

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Sale.objects.exists())
        self.assertFalse(SaleItem.objects.exists())
        self.assertFalse(Payment.objects.exists())
        self.assertFalse(AuditLog.objects.filter(action="sale.create").exists())

    def test_discount_cannot_exceed_subtotal(self):
        response = self.create_sale(discountAmount="251")

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Sale.objects.exists())

    def test_empty_basket_is_rejected(self):
        response = self.create_sale(items=[])

        self.assertEqual(response.status_code, 400)

    def test_imei_sale_marks_device_sold(self):
        items = [{"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00", "imei": IMEI_1}]

        response = self.create_sale(items=items, discountAmount="0", taxRate="0", paidAmount="300")

        self.assertEqual(response.status_code, 201)
        record = ProductImei.objects.get(imei=IMEI_1)
        self.assertEqual(record.status, ProductImei.Status.SOLD)
        self.assertEqual(str(record.sale_id), response.json()["data"]["id"])
        self.assertEqual(self.quantity(self.phone), 1)

    def test_sold_imei_cannot_be_sold_again(self):
        items = [{"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00", "imei": IMEI_1}]
        self.create_sale(items=items, discountAmount="0")

        response = self.create_sale(items=items, discountAmount="0")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], f"IMEI {IMEI_1} is not available")
        self.assertEqual(Sale.objects.count(), 1)
        self.assertEqual(self.quantity(self.phone), 1)

    def test_imei_lines_must_be_single_unique_units(self):
        repeated = [
            {"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00", "imei": IMEI_1},
            {"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00", "imei": IMEI_1},
        ]
        bulk = [{"productId": str(self.phone.id), "quantity": 2, "unitPrice": "300.00", "imei": IMEI_1}]

        for items in (repeated, bulk):
            with self.subTest(lines=len(items)):
                response = self.create_sale(items=items, discountAmount="0")
                self.assertEqual(response.status_code, 400)
        self.assertFalse(Sale.objects.exists())

    def test_imei_from_another_branch_is_unavailable(self):
        ProductImei.objects.filter(imei=IMEI_2).update(branch=self.branch_b)
        items = [{"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00", "imei": IMEI_2}]

        response = self.create_sale(items=items, discountAmount="0")

        self.assertEqual(response.status_code, 400)

    def test_only_available_imeis_can_be_sold(self):
        items = [{"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00", "imei": IMEI_2}]

        for status in (ProductImei.Status.IN_STOCK, ProductImei.Status.RESERVED):
            with self.subTest(status=status):
                ProductImei.objects.filter(imei=IMEI_2).update(status=status)
                response = self.create_sale(items=items, discountAmount="0")
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["message"], f"IMEI {IMEI_2} is not available")
        self.assertFalse(Sale.objects.exists())
        self.assertEqual(self.quantity(self.phone), 2)


class SaleReadTests(SalesTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.sale_id = self.create_sale(paidAmount="100").json()["data"]["id"]
        self.sale = Sale.objects.get(pk=self.sale_id)

    def test_fetch_by_id_or_invoice_number(self):
        self.client.force_authenticate(user=self.cashier_a)

        by_id = self.client.get(f"/api/v1/sales/{self.sale_id}/")
        by_invoice = self.client.get(f"/api/v1/sales/{self.sale.invoice_number}/")

        self.assertEqual(by_id.status_code, 200)
        self.assertEqual(by_invoice.status_code, 200)
        self.assertEqual(by_invoice.json()["data"]["id"], self.sale_id)
        self.assertEqual(len(by_id.json()["data"]["payments"]), 1)

    def test_other_branch_cannot_see_sale(self):
        self.client.force_authenticate(user=self.cashier_b)

        detail = self.client.get(f"/api/v1/sales/{self.sale_id}/")
        listing = self.client.get("/api/v1/sales/")

        self.assertEqual(detail.status_code, 404)
        self.assertEqual(listing.json()["count"], 0)

    def test_list_filters(self):
        self.create_sale(paidAmount="264")
        self.client.force_authenticate(user=self.cashier_a)
        today = timezone.localdate().isoformat()

        everything = self.client.get("/api/v1/sales/", {"startDate": today, "endDate": today})
        partial = self.client.get("/api/v1/sales/", {"paymentStatus": "partial"})
        first_page = self.client.get("/api/v1/sales/", {"limit": 1, "offset": 0})

        self.assertEqual(everything.json()["count"], 2)
        self.assertEqual([row["id"] for row in partial.json()["data"]], [self.sale_id])
        self.assertEqual(first_page.json()["count"], 2)
        self.assertEqual(len(first_page.json()["data"]), 1)

    def test_invalid_date_filter_is_rejected(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.get("/api/v1/sales/", {"startDate": "15/03/2024"})

        self.assertEqual(response.status_code, 400)

    def test_admin_filters_by_branch(self):
        self.client.force_authenticate(user=self.admin)

        own = self.client.get("/api/v1/sales/", {"branchId": str(self.branch_a.id)})
        other = self.client.get("/api/v1/sales/", {"branchId": str(self.branch_b.id)})

        self.assertEqual(own.json()["count"], 1)
        self.assertEqual(other.json()["count"], 0)

    def test_user_without_branch_cannot_list(self):
        floating = self.user_model.objects.create_user(username="floating", password="pass1234", role="cashier")
        self.client.force_authenticate(user=floating)

        response = self.client.get("/api/v1/sales/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["message"], "User must be assigned to a branch")


class PaymentTests(SalesTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.sale_id = self.create_sale(paidAmount="100").json()["data"]["id"]

    def pay(self, amount, user=None, sale_id=None):
        self.client.force_authenticate(user=user or self.cashier_a)
        return self.client.post(
            f"/api/v1/sales/{sale_id or self.sale_id}/payments/",
            {"amount": amount, "paymentMethod": "card", "paymentReference": "POS-778"},
            format="json",
        )

    def test_payment_settles_balance(self):
        partial = self.pay("64")
        settled = self.pay("100")

        self.assertEqual(partial.status_code, 200)
        self.assertEqual(partial.json()["data"]["sale"]["payment_status"], "partial")
        self.assertEqual(settled.json()["data"]["sale"]["payment_status"], "paid")
        sale = Sale.objects.get(pk=self.sale_id)
        self.assertEqual(sale.paid_amount, Decimal("264.00"))
        self.assertEqual(sale.due_amount, Decimal("0.00"))
        self.assertEqual(sale.payments.count(), 3)
        self.assert_sale_invariants(sale)

    def test_payment_amount_must_be_positive(self):
        response = self.pay("0")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Payment.objects.count(), 1)

    def test_unknown_payment_method_is_rejected(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.post(
            f"/api/v1/sales/{self.sale_id}/payments/",
            {"amount": "10", "paymentMethod": "cheque"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_other_branch_cannot_take_payment(self):
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.pay("10", user=self.cashier_b)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["message"], "Access denied to this sale")
        self.assertEqual(Payment.objects.count(), 1)

    def test_payment_by_invoice_number(self):
        invoice_number = Sale.objects.get(pk=self.sale_id).invoice_number

        response = self.pay("10", sale_id=invoice_number)

        self.assertEqual(response.status_code, 200)

    def test_unknown_sale_is_not_found(self):
        response = self.pay("10", sale_id="SA-INV-20000101-XXXXXX")

        self.assertEqual(response.status_code, 404)

    def test_cancelled_sale_takes_no_payment(self):
        self.client.force_authenticate(user=self.manager_a)
        self.client.put(f"/api/v1/sales/{self.sale_id}/cancel/", {"reason": "customer left"}, format="json")

        response = self.pay("10")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Cannot add payment to cancelled or refunded sale")


class CancelSaleTests(SalesTestMixin, TestCase):
    def cancel(self, sale_id, user=None, reason="customer changed mind"):
        self.client.force_authenticate(user=user or self.manager_a)
        return self.client.put(f"/api/v1/sales/{sale_id}/cancel/", {"reason": reason}, format="json")

    def test_cancel_restores_stock_and_imeis(self):
        items = self.basket() + [{"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00", "imei": IMEI_1}]
        before = {product.id: self.quantity(product) for product in (self.case, self.cable, self.phone)}
        sale_id = self.create_sale(items=items).json()["data"]["id"]

        response = self.cancel(sale_id)

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["sale_status"], "cancelled")
        self.assertIn("Cancelled: customer changed mind", data["notes"])
        after = {product.id: self.quantity(product) for product in (self.case, self.cable, self.phone)}
        self.assertEqual(before, after)
        record = ProductImei.objects.get(imei=IMEI_1)
        self.assertEqual(record.status, ProductImei.Status.AVAILABLE)
        self.assertIsNone(record.sale_id)

    def test_cancel_without_reason(self):
        sale_id = self.create_sale().json()["data"]["id"]

        response = self.cancel(sale_id, reason="")

        self.assertIn("Cancelled: No reason provided", response.json()["data"]["notes"])

    def test_second_cancel_fails_without_side_effects(self):
        sale_id = self.create_sale().json()["data"]["id"]
        self.cancel(sale_id)

        response = self.cancel(sale_id)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.quantity(self.case), 10)
        self.assertEqual(AuditLog.objects.filter(action="sale.cancel").count(), 1)

    def test_cashier_cannot_cancel(self):
        sale_id = self.create_sale().json()["data"]["id"]

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.cancel(sale_id, user=self.cashier_a)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(Sale.objects.get(pk=sale_id).sale_status, Sale.SaleStatus.COMPLETED)


class RefundTests(SalesTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.sale_id = self.create_sale(paidAmount="264").json()["data"]["id"]

    def request_refund(self, amount, sale_id=None):
        self.client.force_authenticate(user=self.manager_a)
        return self.client.post(
            f"/api/v1/sales/{sale_id or self.sale_id}/refunds/",
            {"amount": amount, "reason": "screen defect"},
            format="json",
        )

    def process(self, refund_id, action):
        self.client.force_authenticate(user=self.manager_a)
        return self.client.put(f"/api/v1/refunds/{refund_id}/process/", {"action": action}, format="json")

    def test_approved_partial_refund(self):
        created = self.request_refund("50")

        self.assertEqual(created.status_code, 201)
        refund_id = created.json()["data"]["refundId"]
        self.assertTrue(created.json()["data"]["refundNumber"].startswith("REF-"))
        self.assertEqual(Sale.objects.get(pk=self.sale_id).paid_amount, Decimal("264.00"))

        response = self.process(refund_id, "approve")

        self.assertEqual(response.status_code, 200)
        sale = Sale.objects.get(pk=self.sale_id)
        self.assertEqual(sale.paid_amount, Decimal("214.00"))
        self.assertEqual(sale.due_amount, Decimal("50.00"))
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PARTIAL)
        self.assertEqual(sale.sale_status, Sale.SaleStatus.REFUNDED)
        refund = Refund.objects.get(pk=refund_id)
        self.assertEqual(refund.status, Refund.Status.COMPLETED)
        self.assertEqual(refund.processed_by, self.manager_a)
        self.assertFalse(reconcile_sale_totals(sale).has_drift)

    def test_rejected_refund_leaves_sale_untouched(self):
        refund_id = self.request_refund("50").json()["data"]["refundId"]

        response = self.process(refund_id, "reject")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Refund.objects.get(pk=refund_id).status, Refund.Status.REJECTED)
        sale = Sale.objects.get(pk=self.sale_id)
        self.assertEqual(sale.paid_amount, Decimal("264.00"))
        self.assertEqual(sale.sale_status, Sale.SaleStatus.COMPLETED)

    def test_processed_refund_cannot_be_processed_again(self):
        refund_id = self.request_refund("50").json()["data"]["refundId"]
        self.process(refund_id, "approve")

        response = self.process(refund_id, "approve")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["message"], "Refund not found or already processed")
        self.assertEqual(Sale.objects.get(pk=self.sale_id).paid_amount, Decimal("214.00"))

    def test_unknown_action_is_rejected(self):
        refund_id = self.request_refund("50").json()["data"]["refundId"]

        response = self.process(refund_id, "maybe")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Refund.objects.get(pk=refund_id).status, Refund.Status.PENDING)

    def test_refund_cannot_exceed_paid_amount(self):
        response = self.request_refund("264.01")

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Refund.objects.exists())

    def test_cancelled_sale_cannot_be_refunded(self):
        self.client.force_authenticate(user=self.manager_a)
        self.client.put(f"/api/v1/sales/{self.sale_id}/cancel/", {}, format="json")

        response = self.request_refund("10")

        self.assertEqual(response.status_code, 400)

    def test_cancelling_sale_closes_its_pending_refunds(self):
        refund_id = self.request_refund("50").json()["data"]["refundId"]
        cancel_res = self.client.put(f"/api/v1/sales/{self.sale_id}/cancel/", {}, format="json")

        response = self.process(refund_id, "approve")

        self.assertEqual(cancel_res.status_code, 200)
        self.assertEqual(response.status_code, 404)
        refund = Refund.objects.get(pk=refund_id)
        self.assertEqual(refund.status, Refund.Status.REJECTED)
        self.assertEqual(refund.processed_by, self.manager_a)
        sale = Sale.objects.get(pk=self.sale_id)
        self.assertEqual(sale.sale_status, Sale.SaleStatus.CANCELLED)
        self.assertEqual(sale.paid_amount, Decimal("264.00"))

    def test_refund_on_cancelled_sale_cannot_be_approved(self):
        sale = Sale.objects.get(pk=self.sale_id)
        Sale.objects.filter(pk=sale.pk).update(sale_status=Sale.SaleStatus.CANCELLED)
        refund = Refund.objects.create(
            sale=sale,
            refund_number="REF-20240101-AAAAAA",
            amount=Decimal("50.00"),
            requested_by=self.manager_a,
        )

        response = self.process(refund.id, "approve")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Cannot refund a cancelled sale")
        refund.refresh_from_db()
        self.assertEqual(refund.status, Refund.Status.PENDING)
        sale.refresh_from_db()
        self.assertEqual(sale.sale_status, Sale.SaleStatus.CANCELLED)
        self.assertEqual(sale.paid_amount, Decimal("264.00"))

    def test_refunded_sale_cannot_be_cancelled(self):
        self.process(self.request_refund("50").json()["data"]["refundId"], "approve")

        response = self.client.put(f"/api/v1/sales/{self.sale_id}/cancel/", {}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.quantity(self.case), 8)

    def test_refund_list_is_branch_scoped(self):
        self.request_refund("10")
        manager_b = self.user_model.objects.create_user(
            username="sales-manager-b",
            password="pass1234",
            role="manager",
            branch=self.branch_b,
        )

        own = self.client.get("/api/v1/refunds/")
        self.client.force_authenticate(user=manager_b)
        other = self.client.get("/api/v1/refunds/")

        self.assertEqual(own.json()["count"], 1)
        self.assertEqual(other.json()["count"], 0)

    def test_cashier_cannot_request_refund(self):
        self.client.force_authenticate(user=self.cashier_a)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(f"/api/v1/sales/{self.sale_id}/refunds/", {"amount": "5"}, format="json")

        self.assertEqual(response.status_code, 403)


class CustomerTests(SalesTestMixin, TestCase):
    def test_create_and_search_customers(self):
        self.client.force_authenticate(user=self.cashier_a)

        created = self.client.post(
            "/api/v1/customers/",
            {"name": "Karim", "phone": "0111222333", "email": "karim@example.com"},
            format="json",
        )
        found = self.client.get("/api/v1/customers/", {"search": "0111"})

        self.assertEqual(created.status_code, 201)
        self.assertEqual([row["name"] for row in found.json()["data"]], ["Karim"])
        self.assertTrue(AuditLog.objects.filter(action="customer.create", branch=self.branch_a).exists())

    def test_blank_name_is_rejected(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.post("/api/v1/customers/", {"name": "   "}, format="json")

        self.assertEqual(response.status_code, 400)


class ReconcileCommandTests(SalesTestMixin, TestCase):
    def test_reports_and_fixes_drift(self):
        sale_id = self.create_sale(paidAmount="100").json()["data"]["id"]
        Sale.objects.filter(pk=sale_id).update(paid_amount=Decimal("150.00"), due_amount=Decimal("114.00"))

        dry_run = StringIO()
        call_command("reconcile_sale_balances", stdout=dry_run)
        self.assertIn("Found 1 sale(s)", dry_run.getvalue())
        self.assertEqual(Sale.objects.get(pk=sale_id).paid_amount, Decimal("150.00"))

        fixed = StringIO()
        call_command("reconcile_sale_balances", "--fix", stdout=fixed)

        sale = Sale.objects.get(pk=sale_id)
        self.assertEqual(sale.paid_amount, Decimal("100.00"))
        self.assertEqual(sale.due_amount, Decimal("164.00"))
        self.assertTrue(AuditLog.objects.filter(action="sale.reconcile", actor__is_system_actor=True).exists())

    def test_clean_ledger_reports_nothing(self):
        self.create_sale(paidAmount="264")
        out = StringIO()

        call_command("reconcile_sale_balances", "--branch-id", str(self.branch_a.id), stdout=out)

        self.assertIn("All sale balances match", out.getvalue())


class PreOrderTests(SalesTestMixin, TestCase):
    def create_pre_order(self, user=None, items=None, **body):
        self.client.force_authenticate(user=user or self.cashier_a)
        payload = {
            "customerName": "Mona",
            "customerPhone": "0100",
            "customerId": str(self.customer.id),
            "advancePayment": "100",
            "items": items
            if items is not None
            else [
                {"productId": str(self.case.id), "quantity": 2, "unitPrice": "100.00"},
                {"productId": str(self.phone.id), "quantity": 1, "unitPrice": "300.00"},
            ],
        }
        payload.update(body)
        return self.client.post("/api/v1/pre-orders/", payload, format="json")

    def convert(self, order_id, user=None, **body):
        self.client.force_authenticate(user=user or self.cashier_a)
        return self.client.post(f"/api/v1/pre-orders/{order_id}/convert/", body, format="json")

    def phone_line(self, order):
        return order.items.get(product=self.phone)

    def test_create_records_advance_without_touching_stock(self):
        response = self.create_pre_order()

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertTrue(data["order_number"].startswith("SA-ORD-"))
        self.assertEqual(data["status"], "pending")
        self.assertEqual(len(data["items"]), 2)
        order = PreOrder.objects.get(pk=data["id"])
        self.assertEqual(order.subtotal, Decimal("500.00"))
        self.assertEqual(order.advance_payment, Decimal("100.00"))
        self.assertEqual(order.due_amount, Decimal("400.00"))
        self.assertEqual(order.payment_status, Sale.PaymentStatus.PARTIAL)
        self.assertEqual(order.branch, self.branch_a)
        self.assertEqual(self.quantity(self.case), 10)
        self.assertEqual(ProductImei.objects.get(imei=IMEI_1).status, ProductImei.Status.AVAILABLE)
        self.assertTrue(AuditLog.objects.filter(action="pre_order.create", entity_id=order.id).exists())

    def test_custom_items_need_no_catalog_product(self):
        response = self.create_pre_order(
            items=[{"customProductName": "Blue leather cover", "quantity": 1, "unitPrice": "30.00"}],
            advancePayment="30",
        )

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["items"][0]["display_name"], "Blue leather cover")
        self.assertEqual(data["payment_status"], "paid")
        self.assertEqual(data["status"], "pending")

    def test_invalid_orders_are_rejected(self):
        cases = {
            "advance over subtotal": {"advancePayment": "500.01"},
            "item without product": {"items": [{"quantity": 1, "unitPrice": "10.00"}]},
            "empty items": {"items": []},
            "missing phone": {"customerPhone": ""},
        }
        for label, body in cases.items():
            with self.subTest(label):
                response = self.create_pre_order(**body)
                self.assertEqual(response.status_code, 400)
        self.assertFalse(PreOrder.objects.exists())

    def test_convert_creates_sale_and_moves_stock(self):
        order = PreOrder.objects.get(pk=self.create_pre_order().json()["data"]["id"])

        response = self.convert(
            order.id,
            items=[{"preOrderItemId": str(self.phone_line(order).id), "imeis": [IMEI_1]}],
            remainingPayment="400",
            paymentMethod="card",
        )

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertTrue(data["invoiceNumber"].startswith("SA-INV-"))
        self.assertEqual(data["preOrder"]["status"], "completed")
        sale = Sale.objects.get(pk=data["saleId"])
        self.assertEqual(sale.total_amount, Decimal("500.00"))
        self.assertEqual(sale.paid_amount, Decimal("500.00"))
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PAID)
        self.assertEqual(sale.customer, self.customer)
        self.assertIn(order.order_number, sale.notes)
        self.assert_sale_invariants(sale)
        payment = Payment.objects.get(sale=sale)
        self.assertEqual((payment.amount, payment.payment_method), (Decimal("500.00"), "card"))
        self.assertEqual(self.quantity(self.case), 8)
        self.assertEqual(self.quantity(self.phone), 1)
        record = ProductImei.objects.get(imei=IMEI_1)
        self.assertEqual((record.status, record.sale_id), (ProductImei.Status.SOLD, sale.id))
        order.refresh_from_db()
        self.assertEqual(order.converted_sale, sale)
        self.assertTrue(AuditLog.objects.filter(action="pre_order.convert", entity_id=order.id).exists())

    def test_convert_without_remaining_payment_leaves_balance_due(self):
        order = PreOrder.objects.get(pk=self.create_pre_order().json()["data"]["id"])

        response = self.convert(order.id, items=[{"preOrderItemId": str(self.phone_line(order).id), "imeis": [IMEI_2]}])

        self.assertEqual(response.status_code, 201)
        sale = Sale.objects.get(pk=response.json()["data"]["saleId"])
        self.assertEqual(sale.paid_amount, Decimal("100.00"))
        self.assertEqual(sale.due_amount, Decimal("400.00"))
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PARTIAL)

    def test_imei_product_needs_imeis_to_convert(self):
        order_id = self.create_pre_order().json()["data"]["id"]

        response = self.convert(order_id)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(PreOrder.objects.get(pk=order_id).status, PreOrder.Status.PENDING)
        self.assertFalse(Sale.objects.exists())
        self.assertEqual(self.quantity(self.case), 10)

    def test_custom_item_must_be_matched_to_a_product(self):
        order = PreOrder.objects.get(
            pk=self.create_pre_order(
                items=[{"customProductName": "Charging cable", "quantity": 3, "unitPrice": "50.00"}],
                advancePayment="0",
            ).json()["data"]["id"]
        )
        line = order.items.get()

        unmatched = self.convert(order.id)
        matched = self.convert(order.id, items=[{"preOrderItemId": str(line.id), "productId": str(self.cable.id)}])

        self.assertEqual(unmatched.status_code, 400)
        self.assertEqual(matched.status_code, 201)
        self.assertEqual(self.quantity(self.cable), 7)
        sale = Sale.objects.get(pk=matched.json()["data"]["saleId"])
        self.assertEqual(sale.total_amount, Decimal("150.00"))
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.DUE)

    def test_conversion_is_all_or_nothing(self):
        order = PreOrder.objects.get(
            pk=self.create_pre_order(
                items=[
                    {"productId": str(self.case.id), "quantity": 2, "unitPrice": "100.00"},
                    {"productId": str(self.cable.id), "quantity": 11, "unitPrice": "50.00"},
                ],
            ).json()["data"]["id"]
        )

        response = self.convert(order.id)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], f"Insufficient stock for product ID {self.cable.id}")
        order.refresh_from_db()
        self.assertEqual(order.status, PreOrder.Status.PENDING)
        self.assertIsNone(order.converted_sale)
        self.assertEqual(self.quantity(self.case), 10)

    def test_converted_order_cannot_be_converted_again(self):
        order = PreOrder.objects.get(pk=self.create_pre_order().json()["data"]["id"])
        choice = [{"preOrderItemId": str(self.phone_line(order).id), "imeis": [IMEI_1]}]
        self.convert(order.id, items=choice)

        again = self.convert(order.id, items=choice)

        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["message"], "Only pending pre-orders can be converted to a sale")
        self.assertEqual(Sale.objects.count(), 1)

    def test_remaining_payment_cannot_exceed_due(self):
        order = PreOrder.objects.get(pk=self.create_pre_order().json()["data"]["id"])

        response = self.convert(
            order.id,
            items=[{"preOrderItemId": str(self.phone_line(order).id), "imeis": [IMEI_1]}],
            remainingPayment="400.01",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Sale.objects.exists())

    def test_update_recomputes_balance(self):
        order_id = self.create_pre_order().json()["data"]["id"]

        response = self.client.patch(
            f"/api/v1/pre-orders/{order_id}/",
            {"advancePayment": "500", "notes": "call before delivery"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        order = PreOrder.objects.get(pk=order_id)
        self.assertEqual(order.due_amount, Decimal("0.00"))
        self.assertEqual(order.payment_status, Sale.PaymentStatus.PAID)
        self.assertEqual(order.status, PreOrder.Status.PENDING)
        self.assertEqual(order.notes, "call before delivery")

    def test_manager_cancels_with_advance_refund(self):
        order_id = self.create_pre_order().json()["data"]["id"]

        with self.assertLogs("security.authorization", level="WARNING"):
            denied = self.client.put(f"/api/v1/pre-orders/{order_id}/cancel/", {}, format="json")
        self.client.force_authenticate(user=self.manager_a)
        response = self.client.put(
            f"/api/v1/pre-orders/{order_id}/cancel/",
            {"reason": "customer changed mind", "refund": True},
            format="json",
        )
        convert = self.convert(order_id)

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(response.status_code, 200)
        self.assertIn("advance will be refunded", response.json()["message"])
        order = PreOrder.objects.get(pk=order_id)
        self.assertEqual(order.status, PreOrder.Status.CANCELLED)
        self.assertEqual(order.cancelled_by, self.manager_a)
        self.assertTrue(order.refund_advance)
        self.assertEqual(convert.status_code, 400)

    def test_delete_pending_but_not_converted_orders(self):
        pending_id = self.create_pre_order().json()["data"]["id"]
        converted = PreOrder.objects.get(pk=self.create_pre_order().json()["data"]["id"])
        self.convert(converted.id, items=[{"preOrderItemId": str(self.phone_line(converted).id), "imeis": [IMEI_1]}])
        self.client.force_authenticate(user=self.manager_a)

        deleted = self.client.delete(f"/api/v1/pre-orders/{pending_id}/")
        refused = self.client.delete(f"/api/v1/pre-orders/{converted.id}/")

        self.assertEqual(deleted.status_code, 200)
        self.assertFalse(PreOrder.objects.filter(pk=pending_id).exists())
        self.assertTrue(AuditLog.objects.filter(action="pre_order.delete").exists())
        self.assertEqual(refused.status_code, 400)
        self.assertTrue(PreOrder.objects.filter(pk=converted.id).exists())

    def test_other_branch_cannot_see_or_convert_orders(self):
        order_id = self.create_pre_order().json()["data"]["id"]
        self.client.force_authenticate(user=self.cashier_b)

        listed = self.client.get("/api/v1/pre-orders/")
        fetched = self.client.get(f"/api/v1/pre-orders/{order_id}/")
        with self.assertLogs("security.authorization", level="WARNING"):
            converted = self.convert(order_id, user=self.cashier_b)

        self.assertEqual(listed.json()["count"], 0)
        self.assertEqual(fetched.status_code, 404)
        self.assertEqual(converted.status_code, 403)
        self.assertEqual(converted.json()["message"], "Access denied to this order")

    def test_admin_creates_order_for_named_branch(self):
        response = self.create_pre_order(user=self.admin, branchId=str(self.branch_b.id))
        listed = self.client.get("/api/v1/pre-orders/", {"branchId": str(self.branch_b.id)})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["data"]["branch"], str(self.branch_b.id))
        self.assertEqual(listed.json()["count"], 1)
