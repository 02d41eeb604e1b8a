from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from core.models import AuditLog, Branch
from inventory.models import BranchStock, Product, ProductImei, StockTransfer

IMEI_1 = "356938035643809"
IMEI_2 = "356938035643817"


class InventoryTestMixin:
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="IA", name="Inventory A")
        self.branch_b = Branch.objects.create(code="IB", name="Inventory B")

        self.admin = self.user_model.objects.create_user(username="inv-admin", password="pass1234", role="admin")
        self.manager_a = self.user_model.objects.create_user(
            username="inv-manager-a",
            password="pass1234",
            role="manager",
            branch=self.branch_a,
        )
        self.manager_b = self.user_model.objects.create_user(
            username="inv-manager-b",
            password="pass1234",
            role="manager",
            branch=self.branch_b,
        )
        self.cashier_a = self.user_model.objects.create_user(
            username="inv-cashier-a",
            password="pass1234",
            role="cashier",
            branch=self.branch_a,
        )

        self.charger = Product.objects.create(name="Charger", sku="CHG-1", retail_price=Decimal("12.00"))
        self.phone = Product.objects.create(
            name="Phone",
            sku="PH-1",
            retail_price=Decimal("300.00"),
            inventory_type=Product.InventoryType.UNIQUE,
        )

    def stock(self, branch, product):
        return BranchStock.objects.filter(branch=branch, product=product).first()


class ProductCatalogTests(InventoryTestMixin, TestCase):
    def test_cashier_can_list_but_not_create_products(self):
        self.client.force_authenticate(user=self.cashier_a)

        list_res = self.client.get("/api/v1/inventory/products/", {"search": "charg"})
        with self.assertLogs("security.authorization", level="WARNING"):
            create_res = self.client.post(
                "/api/v1/inventory/products/",
                {"name": "Case", "sku": "CASE-1"},
                format="json",
            )

        self.assertEqual(list_res.status_code, 200)
        self.assertEqual([item["sku"] for item in list_res.json()["data"]], ["CHG-1"])
        self.assertEqual(create_res.status_code, 403)

    def test_manager_creates_product_with_audit_row(self):
        self.client.force_authenticate(user=self.manager_a)

        response = self.client.post(
            "/api/v1/inventory/products/",
            {"name": "Case", "sku": "CASE-1", "retail_price": "9.50"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["success"])
        self.assertTrue(AuditLog.objects.filter(action="product.create", entity="product").exists())

    def test_duplicate_sku_is_a_conflict(self):
        self.client.force_authenticate(user=self.manager_a)

        response = self.client.post(
            "/api/v1/inventory/products/",
            {"name": "Other charger", "sku": "CHG-1"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["message"], "SKU already exists")

    def test_products_cannot_be_deleted(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/inventory/products/{self.charger.id}/")

        self.assertEqual(response.status_code, 405)


class StockLevelTests(InventoryTestMixin, TestCase):
    def test_manager_sets_stock_for_own_branch(self):
        self.client.force_authenticate(user=self.manager_a)

        response = self.client.put(
            "/api/v1/inventory/stock/",
            {"productId": str(self.charger.id), "quantity": 12, "minStockLevel": 3},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        entry = self.stock(self.branch_a, self.charger)
        self.assertEqual((entry.quantity, entry.min_stock_level), (12, 3))
        self.assertEqual(response.json()["data"]["available_quantity"], 12)
        self.assertTrue(AuditLog.objects.filter(action="stock.set", branch=self.branch_a).exists())

    def test_manager_cannot_set_other_branch_stock(self):
        self.client.force_authenticate(user=self.manager_a)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.put(
                "/api/v1/inventory/stock/",
                {"branchId": str(self.branch_b.id), "productId": str(self.charger.id), "quantity": 5},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.assertIsNone(self.stock(self.branch_b, self.charger))

    def test_quantity_cannot_drop_below_reserved(self):
        BranchStock.objects.create(branch=self.branch_a, product=self.charger, quantity=10, reserved_quantity=4)
        self.client.force_authenticate(user=self.manager_a)

        response = self.client.put(
            "/api/v1/inventory/stock/",
            {"productId": str(self.charger.id), "quantity": 3},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.stock(self.branch_a, self.charger).quantity, 10)

    def test_cashier_cannot_set_stock(self):
        self.client.force_authenticate(user=self.cashier_a)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.put(
                "/api/v1/inventory/stock/",
                {"productId": str(self.charger.id), "quantity": 3},
                format="json",
            )

        self.assertEqual(response.status_code, 403)

    def test_list_is_branch_scoped_and_filters_low_stock(self):
        BranchStock.objects.create(branch=self.branch_a, product=self.charger, quantity=2, min_stock_level=5)
        BranchStock.objects.create(branch=self.branch_a, product=self.phone, quantity=9, min_stock_level=1)
        BranchStock.objects.create(branch=self.branch_b, product=self.charger, quantity=1, min_stock_level=5)
        self.client.force_authenticate(user=self.cashier_a)

        all_res = self.client.get("/api/v1/inventory/stock/")
        low_res = self.client.get("/api/v1/inventory/stock/", {"low_stock": "true"})

        self.assertEqual(all_res.status_code, 200)
        self.assertEqual(all_res.json()["count"], 2)
        self.assertEqual([row["sku"] for row in low_res.json()["data"]], ["CHG-1"])
        self.assertTrue(low_res.json()["data"][0]["is_low_stock"])

    def test_invalid_product_filter_is_a_validation_error(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.get("/api/v1/inventory/stock/", {"productId": "not-a-uuid"})

        self.assertEqual(response.status_code, 400)


class ImeiRegistryTests(InventoryTestMixin, TestCase):
    def register(self, imei, product=None, user=None):
        self.client.force_authenticate(user=user or self.manager_a)
        return self.client.post(
            "/api/v1/inventory/imeis/",
            {"productId": str((product or self.phone).id), "imei": imei, "purchasePrice": "250.00"},
            format="json",
        )

    def test_register_imei_adds_one_unit_of_stock(self):
        response = self.register(IMEI_1)

        self.assertEqual(response.status_code, 201)
        record = ProductImei.objects.get(imei=IMEI_1)
        self.assertEqual(record.status, ProductImei.Status.AVAILABLE)
        self.assertEqual(record.branch, self.branch_a)
        self.assertEqual(self.stock(self.branch_a, self.phone).quantity, 1)

    def test_duplicate_imei_is_a_conflict(self):
        self.register(IMEI_1)

        response = self.register(IMEI_1)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["message"], "IMEI already exists")
        self.assertEqual(self.stock(self.branch_a, self.phone).quantity, 1)

    def test_imei_must_be_fifteen_digits(self):
        for imei in ("12345", "35693803564380A", "3569380356438091"):
            with self.subTest(imei=imei):
                response = self.register(imei)
                self.assertEqual(response.status_code, 400)
        self.assertFalse(ProductImei.objects.exists())

    def test_quantity_products_do_not_take_imeis(self):
        response = self.register(IMEI_1, product=self.charger)

        self.assertEqual(response.status_code, 400)

    def test_list_filters_by_status(self):
        self.register(IMEI_1)
        self.register(IMEI_2)
        ProductImei.objects.filter(imei=IMEI_2).update(status=ProductImei.Status.SOLD)

        response = self.client.get("/api/v1/inventory/imeis/", {"status": "available"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["imei"] for row in response.json()["data"]], [IMEI_1])


class StockTransferTests(InventoryTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        BranchStock.objects.create(branch=self.branch_a, product=self.charger, quantity=10)

    def create_transfer(self, quantity=5, user=None, **extra):
        self.client.force_authenticate(user=user or self.manager_a)
        body = {"toBranchId": str(self.branch_b.id), "productId": str(self.charger.id), "quantity": quantity}
        body.update(extra)
        return self.client.post("/api/v1/inventory/transfers/", body, format="json")

    def assert_ledger_invariant(self):
        for entry in BranchStock.objects.all():
            self.assertGreaterEqual(entry.quantity - entry.reserved_quantity, 0)

    @override_settings(POS_TRANSFER_RESERVES_STOCK=False)
    def test_immediate_transfer_moves_stock_on_creation(self):
        response = self.create_transfer(quantity=5)

        self.assertEqual(response.status_code, 201)
        payload = response.json()["data"]
        self.assertTrue(payload["transferNumber"].startswith("TRF-"))
        transfer = StockTransfer.objects.get(pk=payload["transferId"])
        self.assertEqual(transfer.status, StockTransfer.Status.PENDING)
        self.assertFalse(transfer.reserves_stock)
        self.assertEqual(self.stock(self.branch_a, self.charger).quantity, 5)
        self.assertEqual(self.stock(self.branch_b, self.charger).quantity, 5)

        complete_res = self.client.put(f"/api/v1/inventory/transfers/{transfer.id}/complete/")

        self.assertEqual(complete_res.status_code, 200)
        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.assertEqual(transfer.approved_by, self.manager_a)
        self.assertEqual(self.stock(self.branch_a, self.charger).quantity, 5)
        self.assertEqual(self.stock(self.branch_b, self.charger).quantity, 5)
        self.assert_ledger_invariant()

    def test_two_phase_transfer_reserves_then_moves(self):
        response = self.create_transfer(quantity=5)

        self.assertEqual(response.status_code, 201)
        transfer = StockTransfer.objects.get(pk=response.json()["data"]["transferId"])
        self.assertTrue(transfer.reserves_stock)
        source = self.stock(self.branch_a, self.charger)
        self.assertEqual((source.quantity, source.reserved_quantity), (10, 5))
        self.assertIsNone(self.stock(self.branch_b, self.charger))

        self.client.force_authenticate(user=self.manager_b)
        complete_res = self.client.put(f"/api/v1/inventory/transfers/{transfer.id}/complete/")

        self.assertEqual(complete_res.status_code, 200)
        source.refresh_from_db()
        self.assertEqual((source.quantity, source.reserved_quantity), (5, 0))
        self.assertEqual(self.stock(self.branch_b, self.charger).quantity, 5)
        self.assert_ledger_invariant()

    def test_source_branch_defaults_to_the_managers_branch(self):
        response = self.create_transfer(quantity=3)

        self.assertEqual(response.status_code, 201)
        transfer = StockTransfer.objects.get(pk=response.json()["data"]["transferId"])
        self.assertEqual(transfer.from_branch, self.branch_a)
        self.assertEqual(transfer.to_branch, self.branch_b)
        self.assertEqual(self.stock(self.branch_a, self.charger).reserved_quantity, 3)

    def test_admin_must_name_the_source_branch(self):
        response = self.create_transfer(quantity=3, user=self.admin)
        explicit = self.create_transfer(quantity=3, user=self.admin, fromBranchId=str(self.branch_a.id))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(explicit.status_code, 201)
        self.assertEqual(StockTransfer.objects.count(), 1)

    def test_reserved_stock_is_not_available_to_a_second_transfer(self):
        self.create_transfer(quantity=7)

        response = self.create_transfer(quantity=4)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Insufficient stock available for transfer")
        self.assertEqual(StockTransfer.objects.count(), 1)

    def test_cancel_releases_reservation(self):
        transfer_id = self.create_transfer(quantity=5).json()["data"]["transferId"]

        response = self.client.put(f"/api/v1/inventory/transfers/{transfer_id}/cancel/", {"reason": "wrong branch"}, format="json")

        self.assertEqual(response.status_code, 200)
        source = self.stock(self.branch_a, self.charger)
        self.assertEqual((source.quantity, source.reserved_quantity), (10, 0))
        self.assertEqual(StockTransfer.objects.get(pk=transfer_id).status, StockTransfer.Status.CANCELLED)

    @override_settings(POS_TRANSFER_RESERVES_STOCK=False)
    def test_cancel_moves_immediate_transfer_back(self):
        transfer_id = self.create_transfer(quantity=5).json()["data"]["transferId"]

        response = self.client.put(f"/api/v1/inventory/transfers/{transfer_id}/cancel/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.stock(self.branch_a, self.charger).quantity, 10)
        self.assertEqual(self.stock(self.branch_b, self.charger).quantity, 0)

    def test_completed_transfer_cannot_be_processed_again(self):
        transfer_id = self.create_transfer(quantity=5).json()["data"]["transferId"]
        self.client.put(f"/api/v1/inventory/transfers/{transfer_id}/complete/")

        again = self.client.put(f"/api/v1/inventory/transfers/{transfer_id}/complete/")
        cancel = self.client.put(f"/api/v1/inventory/transfers/{transfer_id}/cancel/")

        self.assertEqual(again.status_code, 404)
        self.assertEqual(again.json()["message"], "Transfer not found or already processed")
        self.assertEqual(cancel.status_code, 404)
        self.assertEqual(self.stock(self.branch_b, self.charger).quantity, 5)

    def test_transfer_to_same_branch_is_rejected(self):
        self.client.force_authenticate(user=self.manager_a)

        response = self.client.post(
            "/api/v1/inventory/transfers/",
            {"toBranchId": str(self.branch_a.id), "productId": str(self.charger.id), "quantity": 1},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(StockTransfer.objects.exists())

    def test_manager_cannot_transfer_out_of_another_branch(self):
        BranchStock.objects.create(branch=self.branch_b, product=self.charger, quantity=10)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.create_transfer(user=self.manager_b, fromBranchId=str(self.branch_a.id))

        self.assertEqual(response.status_code, 403)

    def test_unrelated_branch_cannot_complete_transfer(self):
        branch_c = Branch.objects.create(code="IC", name="Inventory C")
        manager_c = self.user_model.objects.create_user(
            username="inv-manager-c",
            password="pass1234",
            role="manager",
            branch=branch_c,
        )
        transfer_id = self.create_transfer(quantity=2).json()["data"]["transferId"]
        self.client.force_authenticate(user=manager_c)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.put(f"/api/v1/inventory/transfers/{transfer_id}/complete/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(StockTransfer.objects.get(pk=transfer_id).status, StockTransfer.Status.PENDING)

    def test_imei_follows_the_transfer(self):
        ProductImei.objects.create(product=self.phone, branch=self.branch_a, imei=IMEI_1)
        BranchStock.objects.create(branch=self.branch_a, product=self.phone, quantity=1)
        self.client.force_authenticate(user=self.manager_a)

        response = self.client.post(
            "/api/v1/inventory/transfers/",
            {"toBranchId": str(self.branch_b.id), "productId": str(self.phone.id), "quantity": 1, "imei": IMEI_1},
            format="json",
        )
        record = ProductImei.objects.get(imei=IMEI_1)
        self.assertEqual(record.status, ProductImei.Status.TRANSFERRED)

        self.client.put(f"/api/v1/inventory/transfers/{response.json()['data']['transferId']}/complete/")

        record.refresh_from_db()
        self.assertEqual(record.status, ProductImei.Status.AVAILABLE)
        self.assertEqual(record.branch, self.branch_b)
        self.assertEqual(self.stock(self.branch_b, self.phone).quantity, 1)

    def test_list_shows_transfers_touching_own_branch(self):
        transfer_id = self.create_transfer(quantity=1).json()["data"]["transferId"]
        self.client.force_authenticate(user=self.manager_b)

        response = self.client.get("/api/v1/inventory/transfers/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.json()["data"]], [transfer_id])
