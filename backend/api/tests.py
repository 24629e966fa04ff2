from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient

from api import rbac
from api.authentication import Principal, _parse_roles, _parse_scope_id
from api.permissions import _required_permission_for


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class AuthWhoAmITests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="scm-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_ROLES_CLAIM="roles",
    )
    def test_whoami_requires_auth(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 401)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["VIEWER"],
        DEV_AUTH_WAREHOUSE_ID=None,
        DEV_AUTH_SUPPLIER_ID=None,
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_unmapped_role_has_no_permissions(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "dev-user")
        self.assertEqual(body["roles"], ["VIEWER"])
        self.assertEqual(body["permissions"], [])

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["warehouse_staff"],
        DEV_AUTH_WAREHOUSE_ID=3,
        DEV_AUTH_SUPPLIER_ID=None,
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_reports_role_permissions_and_scope(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["roles"], ["WAREHOUSE_STAFF"])
        self.assertIn(rbac.PERM_ORDER_VIEW, body["permissions"])
        self.assertIn(rbac.PERM_SHIPMENT_DELIVER, body["permissions"])
        self.assertNotIn(rbac.PERM_ORDER_APPROVE, body["permissions"])
        self.assertEqual(body["warehouse_id"], 3)
        self.assertIsNone(body["supplier_id"])


class RbacResolutionTests(SimpleTestCase):
    def _request(self):
        return type("Request", (), {})()

    def test_roles_map_to_permissions(self) -> None:
        principal = Principal(user_id="u1", username="vendor", roles=["supplier"])

        roles, permissions = rbac.resolve_roles_and_permissions(self._request(), principal)

        self.assertEqual(roles, ["SUPPLIER"])
        self.assertIn(rbac.PERM_ORDER_SUPPLIER_CONFIRM, permissions)
        self.assertIn(rbac.PERM_INVOICE_MANAGE, permissions)
        self.assertNotIn(rbac.PERM_ORDER_CREATE, permissions)

    def test_admin_role_matches_admin_only_transitions(self) -> None:
        principal = Principal(user_id="u1", username="ops", roles=["ADMIN"])

        _, permissions = rbac.resolve_roles_and_permissions(self._request(), principal)

        self.assertIn(rbac.PERM_ORDER_APPROVE, permissions)
        self.assertIn(rbac.PERM_ORDER_SHIP, permissions)
        self.assertNotIn(rbac.PERM_ORDER_CREATE, permissions)
        self.assertNotIn(rbac.PERM_ORDER_EDIT_ITEMS, permissions)
        self.assertNotIn(rbac.PERM_SHIPMENT_DELIVER, permissions)

    def test_explicit_permissions_win_over_roles(self) -> None:
        principal = Principal(
            user_id="u1",
            username="ops",
            roles=["ADMIN"],
            permissions=[rbac.PERM_ORDER_VIEW],
        )

        _, permissions = rbac.resolve_roles_and_permissions(self._request(), principal)

        self.assertEqual(permissions, [rbac.PERM_ORDER_VIEW])

    def test_resolution_is_cached_per_request(self) -> None:
        request = self._request()
        first = Principal(user_id="u1", username="a", roles=["ADMIN"])
        second = Principal(user_id="u2", username="b", roles=["SUPPLIER"])

        rbac.resolve_roles_and_permissions(request, first)
        roles, _ = rbac.resolve_roles_and_permissions(request, second)

        self.assertEqual(roles, ["ADMIN"])


class ClaimParsingTests(SimpleTestCase):
    def test_parse_roles_accepts_csv_and_lists(self) -> None:
        self.assertEqual(_parse_roles("ADMIN, SUPPLIER"), ["ADMIN", "SUPPLIER"])
        self.assertEqual(_parse_roles(["ADMIN"]), ["ADMIN"])
        self.assertEqual(_parse_roles(None), [])

    def test_parse_scope_id_ignores_garbage(self) -> None:
        self.assertEqual(_parse_scope_id("12"), 12)
        self.assertIsNone(_parse_scope_id("north"))
        self.assertIsNone(_parse_scope_id(""))


class RequiredPermissionTests(SimpleTestCase):
    def test_method_mapping_selects_permission(self) -> None:
        view = type("View", (), {"required_permission": {"GET": "a.view", "POST": "a.create"}})()
        request = type("Request", (), {"method": "POST"})()

        self.assertEqual(_required_permission_for(request, view), "a.create")
