from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import AuditLog


class RolePermissionCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(
            username="cashier-core",
            password="pass1234",
            role="cashier",
        )
        self.admin = self.user_model.objects.create_user(
            username="admin-core",
            password="pass1234",
            role="admin",
        )

    def test_cashier_cannot_manage_users_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post(
                "/api/v1/admin/users/",
                {"username": "new-cashier", "password": "pass12345", "role": "cashier"},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_can_create_user_with_role(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/v1/admin/users/",
            {"username": "new-supervisor", "email": "Sup@Example.com", "password": "pass12345", "role": "supervisor"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        created = self.user_model.objects.get(username="new-supervisor")
        self.assertEqual(created.role, "supervisor")
        self.assertEqual(created.email, "sup@example.com")
        self.assertTrue(created.check_password("pass12345"))
        self.assertNotIn("password", response.json())

    def test_admin_create_user_rejects_case_insensitive_duplicate_email(self):
        self.user_model.objects.create_user(username="existing", email="existing@example.com", password="pass1234")
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/admin/users/",
            {"username": "dupe", "email": "EXISTING@example.com", "password": "pass12345"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["errors"], {"email": ["A user with this email already exists."]})

    def test_deleting_user_deactivates_instead(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/admin/users/{self.cashier.id}/")

        self.assertEqual(response.status_code, 204)
        self.cashier.refresh_from_db()
        self.assertFalse(self.cashier.is_active)
        self.assertTrue(AuditLog.objects.filter(action="user.deactivate", entity_id=self.cashier.id).exists())

    def test_admin_cannot_delete_own_account(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/admin/users/{self.admin.id}/")

        self.assertEqual(response.status_code, 400)
        self.admin.refresh_from_db()
        self.assertTrue(self.admin.is_active)


class CurrentUserTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

    def test_me_lists_capabilities_for_role(self):
        cashier = self.user_model.objects.create_user(username="me-cashier", password="pass1234", role="cashier")
        self.client.force_authenticate(user=cashier)

        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 200)
        capabilities = response.json()["capabilities"]
        self.assertIn("sales.pos.access", capabilities)
        self.assertNotIn("sales.void", capabilities)
        self.assertNotIn("reports.view", capabilities)

    def test_unauthenticated_request_uses_error_envelope(self):
        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)


class TokenLoginTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(
            username="login-user",
            email="login@example.com",
            password="pass12345",
            role="supervisor",
        )

    def test_login_with_username(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "login-user", "password": "pass12345"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_login_with_email_is_case_insensitive(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "LOGIN@example.com", "password": "pass12345"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())

    def test_login_with_wrong_password_fails(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "login-user", "password": "wrong-password"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            role="admin",
        )

    def test_user_create_writes_audit_log_with_request_id(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.post(
            "/api/v1/admin/users/",
            {"username": "audited", "password": "pass12345"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        self.assertEqual(res["X-Request-ID"], "req-123")
        self.assertTrue(AuditLog.objects.filter(action="user.create", entity="user", request_id="req-123").exists())

    def test_request_id_is_generated_when_missing(self):
        self.client.force_authenticate(user=self.admin)

        res = self.client.get("/api/v1/me/")

        self.assertTrue(res["X-Request-ID"])

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_by_action(self):
        AuditLog.objects.create(action="sale.void", entity="sale", actor=self.admin)
        AuditLog.objects.create(action="product.create", entity="product", actor=self.admin)
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/?action=sale.void")

        self.assertEqual(response.status_code, 200)
        actions = {item["action"] for item in response.json()["results"]}
        self.assertEqual(actions, {"sale.void"})
