from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.db import OperationalError
from django.test import TestCase
from rest_framework.test import APIClient
from rest_framework_simplejwt.models import TokenUser
from rest_framework_simplejwt.tokens import AccessToken

from common.exceptions import DATABASE_UNAVAILABLE_MESSAGE
from core.models import AuditLog, Branch
from core.services import get_system_actor, resolve_effective_user


class SystemActorTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="SY", name="System")

    def test_system_actor_is_seeded_once(self):
        actor = get_system_actor()

        self.assertTrue(actor.is_system_actor)
        self.assertFalse(actor.has_usable_password())
        self.assertEqual(get_system_actor().pk, actor.pk)
        self.assertEqual(self.user_model.objects.filter(is_system_actor=True).count(), 1)

    def test_system_actor_is_recreated_when_missing(self):
        self.user_model.objects.filter(is_system_actor=True).delete()

        actor = get_system_actor()

        self.assertTrue(actor.is_system_actor)
        self.assertEqual(actor.role, self.user_model.Role.ADMIN)

    def test_persisted_active_user_is_its_own_actor(self):
        user = self.user_model.objects.create_user(username="actor-user", password="pass1234", branch=self.branch)

        self.assertEqual(resolve_effective_user(user), user)

    def test_stateless_identities_resolve_to_system_actor(self):
        inactive = self.user_model.objects.create_user(username="inactive", password="pass1234", is_active=False)
        unsaved = self.user_model(username="unsaved")
        token_user = TokenUser({"user_id": "42"})

        for identity in (None, AnonymousUser(), inactive, unsaved, token_user):
            with self.subTest(identity=identity):
                self.assertTrue(resolve_effective_user(identity).is_system_actor)


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.branch = Branch.objects.create(code="TK", name="Token")
        self.user = get_user_model().objects.create_user(
            username="token-cashier",
            email="Token.Cashier@Example.com",
            password="pass1234",
            branch=self.branch,
            role="cashier",
        )

    def test_token_carries_role_and_branch_claims(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-cashier", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], "cashier")
        self.assertEqual(token["branch_id"], str(self.branch.id))
        self.assertEqual(response.json()["user"]["username"], "token-cashier")

    def test_token_accepts_email_case_insensitively(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "TOKEN.cashier@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("refresh", response.json())

    def test_wrong_password_is_rejected(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-cashier", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.json()["success"])


class HealthTests(TestCase):
    def setUp(self):
        self.client = APIClient()

    def test_healthz_needs_no_token(self):
        response = self.client.get("/api/v1/healthz/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_readyz_reports_database_ready(self):
        response = self.client.get("/api/v1/readyz/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")

    def test_readyz_returns_503_when_database_is_down(self):
        with patch("core.views.connections") as mocked:
            mocked.__getitem__.return_value.cursor.side_effect = OperationalError("connection refused")
            with self.assertLogs("core.views", level="ERROR"):
                response = self.client.get("/api/v1/readyz/")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["message"], DATABASE_UNAVAILABLE_MESSAGE)

    def test_responses_carry_request_id(self):
        response = self.client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-health-1")

        self.assertEqual(response["X-Request-ID"], "req-health-1")


class BranchAccessRoleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="BA", name="Branch A")
        self.branch_b = Branch.objects.create(code="BB", name="Branch B")

        self.admin = self.user_model.objects.create_user(username="branch-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(
            username="branch-cashier",
            password="pass1234",
            branch=self.branch_a,
            role="cashier",
        )

    def test_admin_can_list_every_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        ids = {item["id"] for item in payload["data"]}
        self.assertIn(str(self.branch_a.id), ids)
        self.assertIn(str(self.branch_b.id), ids)

    def test_non_admin_sees_only_own_branch(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["data"]}
        self.assertEqual(ids, {str(self.branch_a.id)})

    def test_cashier_cannot_create_branch_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/branches/", {"code": "NEW", "name": "New"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_branch_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/branches/",
            {"code": "NEW", "name": "New Branch"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["data"]["code"], "NEW")
        log = AuditLog.objects.get(action="branch.create", request_id="req-123")
        self.assertEqual(str(log.branch_id), response.json()["data"]["id"])
        self.assertEqual(log.actor, self.admin)

    def test_duplicate_branch_code_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/branches/", {"code": "BA", "name": "Again"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])

    def test_unauthenticated_request_is_rejected(self):
        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 401)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="AL", name="Audit")
        self.other_branch = Branch.objects.create(code="AO", name="Audit Other")
        self.admin = self.user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.manager = self.user_model.objects.create_user(
            username="audit-manager",
            password="pass1234",
            role="manager",
            branch=self.branch,
        )
        self.cashier = self.user_model.objects.create_user(
            username="audit-cashier",
            password="pass1234",
            role="cashier",
            branch=self.branch,
        )

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", branch=self.branch, actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_manager_sees_only_own_branch_logs(self):
        own = AuditLog.objects.create(action="sale.create", entity="sale", branch=self.branch)
        other = AuditLog.objects.create(action="sale.create", entity="sale", branch=self.other_branch)
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/admin/audit-logs/", {"action": "sale.create"})

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["data"]}
        self.assertIn(str(own.id), ids)
        self.assertNotIn(str(other.id), ids)

    def test_cashier_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.cashier)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)

    def test_export_returns_csv(self):
        AuditLog.objects.create(action="sale.cancel", entity="sale", branch=self.branch, actor=self.manager)
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertIn("sale.cancel", response.content.decode())
