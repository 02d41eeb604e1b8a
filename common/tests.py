import uuid
from datetime import datetime
from decimal import Decimal

from django.db import IntegrityError, OperationalError
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError

from common.access import NO_BRANCH_MESSAGE, AccessPolicy
from common.exceptions import (
    DATABASE_UNAVAILABLE_MESSAGE,
    DUPLICATE_ENTRY_MESSAGE,
    GENERIC_SERVER_ERROR_MESSAGE,
    BusinessRuleError,
    custom_exception_handler,
    get_sqlstate,
)
from common.utils import generate_document_number, to_money
from core.models import Branch, User


class _DriverError(Exception):
    def __init__(self, sqlstate):
        super().__init__(f"driver error {sqlstate}")
        self.sqlstate = sqlstate


def _wrapped(exc_class, sqlstate, message="database error"):
    exc = exc_class(message)
    exc.__cause__ = _DriverError(sqlstate)
    return exc


class AccessPolicyTests(SimpleTestCase):
    def setUp(self):
        self.branch_a = str(uuid.uuid4())
        self.branch_b = str(uuid.uuid4())

    def test_admin_can_access_any_branch(self):
        policy = AccessPolicy(role=User.Role.ADMIN, branch_id=None)

        self.assertTrue(policy.can_access_branch(self.branch_a))
        self.assertTrue(policy.can_access_branch(self.branch_b))

    def test_non_admin_is_limited_to_own_branch(self):
        policy = AccessPolicy(role=User.Role.CASHIER, branch_id=self.branch_a)

        self.assertTrue(policy.can_access_branch(self.branch_a))
        self.assertFalse(policy.can_access_branch(self.branch_b))

    def test_non_admin_without_branch_cannot_access_anything(self):
        policy = AccessPolicy(role=User.Role.MANAGER, branch_id=None)

        self.assertFalse(policy.can_access_branch(self.branch_a))

    def test_require_branch_access_raises_and_logs(self):
        policy = AccessPolicy(role=User.Role.CASHIER, branch_id=self.branch_a)

        with self.assertLogs("security.authorization", level="WARNING"):
            with self.assertRaisesMessage(PermissionDenied, "Access denied to this sale"):
                policy.require_branch_access(self.branch_b, entity="sale")

    def test_resolve_branch_id_for_admin(self):
        policy = AccessPolicy(role=User.Role.ADMIN, branch_id=None)

        self.assertEqual(policy.resolve_branch_id(self.branch_b), self.branch_b)
        with self.assertRaises(ValidationError):
            policy.resolve_branch_id(None)

    def test_resolve_branch_id_pins_non_admin(self):
        policy = AccessPolicy(role=User.Role.CASHIER, branch_id=self.branch_a)

        self.assertEqual(policy.resolve_branch_id(None), self.branch_a)
        self.assertEqual(policy.resolve_branch_id(self.branch_a), self.branch_a)
        with self.assertLogs("security.authorization", level="WARNING"):
            with self.assertRaises(PermissionDenied):
                policy.resolve_branch_id(self.branch_b)

    def test_resolve_branch_id_requires_assigned_branch(self):
        policy = AccessPolicy(role=User.Role.CASHIER, branch_id=None)

        with self.assertRaisesMessage(PermissionDenied, NO_BRANCH_MESSAGE):
            policy.resolve_branch_id(None)


class AccessPolicyScopeTests(TestCase):
    def setUp(self):
        self.branch_a = Branch.objects.create(code="PA", name="Policy A")
        self.branch_b = Branch.objects.create(code="PB", name="Policy B")

    def test_scope_filters_for_non_admin(self):
        policy = AccessPolicy(role=User.Role.CASHIER, branch_id=str(self.branch_a.id))

        ids = set(policy.scope(Branch.objects.all(), field="id").values_list("id", flat=True))

        self.assertEqual(ids, {self.branch_a.id})

    def test_scope_returns_nothing_without_branch(self):
        policy = AccessPolicy(role=User.Role.CASHIER, branch_id=None)

        self.assertFalse(policy.scope(Branch.objects.all(), field="id").exists())

    def test_for_user_reads_role_and_branch(self):
        user = User.objects.create_user(username="policy-mgr", password="pass1234", role="manager", branch=self.branch_b)

        policy = AccessPolicy.for_user(user)

        self.assertEqual(policy.role, User.Role.MANAGER)
        self.assertEqual(policy.branch_id, str(self.branch_b.id))
        self.assertTrue(policy.is_manager)
        self.assertFalse(policy.is_admin)


class ExceptionHandlerTests(SimpleTestCase):
    def test_unique_violation_maps_to_409(self):
        response = custom_exception_handler(_wrapped(IntegrityError, "23505"), {})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["message"], DUPLICATE_ENTRY_MESSAGE)
        self.assertFalse(response.data["success"])

    def test_foreign_key_violation_maps_to_400(self):
        response = custom_exception_handler(_wrapped(IntegrityError, "23503"), {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_reference")

    def test_check_violation_maps_to_409(self):
        response = custom_exception_handler(_wrapped(IntegrityError, "23514"), {})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "integrity_violation")

    def test_schema_errors_map_to_503(self):
        for sqlstate in ("42P01", "42703", "42501"):
            with self.subTest(sqlstate=sqlstate):
                response = custom_exception_handler(_wrapped(IntegrityError, sqlstate), {})
                self.assertEqual(response.status_code, 503)

    def test_sqlite_messages_are_classified(self):
        exc = IntegrityError("UNIQUE constraint failed: inventory_product.sku")

        self.assertEqual(get_sqlstate(exc), "23505")

    def test_connection_failure_maps_to_503(self):
        with self.assertLogs("common.exceptions", level="ERROR"):
            response = custom_exception_handler(OperationalError("connection refused"), {})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["message"], DATABASE_UNAVAILABLE_MESSAGE)

    def test_api_exceptions_keep_their_status_and_message(self):
        cases = [
            (NotFound("Sale not found"), 404, "Sale not found"),
            (PermissionDenied("Access denied to this sale"), 403, "Access denied to this sale"),
            (BusinessRuleError("Insufficient stock for product ID 1"), 400, "Insufficient stock for product ID 1"),
        ]
        for exc, status_code, message in cases:
            with self.subTest(exc=exc.__class__.__name__):
                response = custom_exception_handler(exc, {})
                self.assertEqual(response.status_code, status_code)
                self.assertEqual(response.data["message"], message)

    def test_validation_error_message_names_the_field(self):
        response = custom_exception_handler(ValidationError({"amount": ["Amount must be greater than 0"]}), {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "validation_error")
        self.assertEqual(response.data["message"], "amount: Amount must be greater than 0")

    @override_settings(DEBUG=False)
    def test_unexpected_error_hides_details_outside_debug(self):
        with self.assertLogs("common.exceptions", level="ERROR"):
            response = custom_exception_handler(RuntimeError("boom"), {})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["message"], GENERIC_SERVER_ERROR_MESSAGE)
        self.assertNotIn("detail", response.data)

    @override_settings(DEBUG=True)
    def test_unexpected_error_exposes_stack_in_debug(self):
        with self.assertLogs("common.exceptions", level="ERROR"):
            response = custom_exception_handler(RuntimeError("boom"), {})

        self.assertEqual(response.data["message"], "boom")
        self.assertIn("stack", response.data["detail"])


class DocumentNumberTests(SimpleTestCase):
    def test_number_has_prefix_kind_date_and_suffix(self):
        number = generate_document_number("INV", prefix="DT01", now=datetime(2024, 3, 15, 10, 0))

        prefix, kind, day, suffix = number.split("-")
        self.assertEqual((prefix, kind, day), ("DT01", "INV", "20240315"))
        self.assertEqual(len(suffix), 6)
        self.assertTrue(suffix.isalnum() and suffix == suffix.upper())

    def test_number_without_prefix(self):
        number = generate_document_number("REF", now=datetime(2024, 3, 15))

        self.assertTrue(number.startswith("REF-20240315-"))

    def test_to_money_rounds_half_up(self):
        self.assertEqual(to_money("10.005"), Decimal("10.01"))
        self.assertEqual(to_money(None), Decimal("0.00"))
