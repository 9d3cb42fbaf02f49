"""Tests for role and permission based route access."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from bastion.config import AccessPolicy, ProtectedRoute
from bastion.service.authorization import AuthorizationEngine
from bastion.storage.models import Principal


@pytest.fixture
def engine():
    return AuthorizationEngine(AccessPolicy())


def _principal(engine, role, authenticated=True):
    return Principal(
        id=None if role == "GUEST" else f"{role.lower()}-1",
        role=role,
        permissions=engine.permissions_for(role),
        authenticated=authenticated,
    )


class TestProtectedRoutes:
    def test_super_admin_passes_everything(self, engine):
        root = _principal(engine, "SUPER_ADMIN")
        assert engine.check_access(root, "/api/config/keys", "POST")
        assert engine.check_access(root, "/nowhere/at/all", "DELETE")

    def test_admin_routes_require_admin_role(self, engine):
        assert not engine.check_access(_principal(engine, "USER"), "/api/admin/users", "GET")
        assert engine.check_access(_principal(engine, "ADMIN"), "/api/admin/users", "GET")

    def test_config_routes_are_super_admin_only(self, engine):
        assert not engine.check_access(_principal(engine, "ADMIN"), "/api/config/keys", "GET")

    def test_first_matching_rule_wins(self):
        policy = AccessPolicy(
            protected_routes=[
                ProtectedRoute(pattern="/api/admin/reports/*", roles=["USER"]),
                ProtectedRoute(pattern="/api/admin/*", roles=["ADMIN"]),
            ]
        )
        engine = AuthorizationEngine(policy)
        assert engine.check_access(_principal(engine, "USER"), "/api/admin/reports/daily", "GET")
        assert not engine.check_access(_principal(engine, "USER"), "/api/admin/users", "GET")


class TestPermissionMap:
    def test_guest_permissions(self, engine):
        guest = engine.guest()
        assert engine.check_access(guest, "/api/public/news", "GET")
        assert engine.check_access(guest, "/api/products/42", "GET")
        assert engine.check_access(guest, "/api/contact", "POST")
        assert not engine.check_access(guest, "/api/contact", "PUT")

    def test_missing_permission_denied(self, engine):
        assert not engine.check_access(_principal(engine, "ADMIN"), "/api/orders/1", "DELETE")

    def test_security_metrics_need_view_security(self, engine):
        path = "/v1/admin/security/metrics"
        assert not engine.check_access(_principal(engine, "USER"), path, "GET")
        assert engine.check_access(_principal(engine, "ADMIN"), path, "GET")

    def test_category_wildcard(self, engine):
        admin = _principal(engine, "ADMIN")
        assert engine.has_permission(admin, "read:anything")
        assert engine.has_permission(admin, "view:security")
        assert not engine.has_permission(admin, "delete:resource")


class TestDefaults:
    def test_public_routes(self, engine):
        assert engine.check_access(engine.guest(), "/healthz", "GET")
        assert engine.check_access(engine.guest(), "/v1/auth/login", "POST")

    def test_authenticated_routes(self, engine):
        assert not engine.check_access(engine.guest(), "/v1/me", "GET")
        assert engine.check_access(_principal(engine, "USER"), "/v1/me", "GET")
        assert engine.check_access(_principal(engine, "USER"), "/v1/auth/mfa/status", "GET")

    def test_unmatched_route_denied_by_default(self, engine):
        decision = engine.decide(_principal(engine, "USER"), "/v1/unknown", "GET")
        assert not decision.allowed
        assert decision.reason == "no rule matched"

    def test_default_allow_opt_in(self):
        engine = AuthorizationEngine(AccessPolicy(default_allow=True))
        assert engine.check_access(_principal(engine, "USER"), "/v1/unknown", "GET")
        # Explicit rules still apply
        assert not engine.check_access(_principal(engine, "USER"), "/api/admin/users", "GET")


class TestPolicyValidation:
    def test_unknown_guest_role(self):
        with pytest.raises(PydanticValidationError):
            AccessPolicy(guest_role="NOBODY")

    def test_unknown_role_in_protected_route(self):
        with pytest.raises(PydanticValidationError):
            AccessPolicy(protected_routes=[ProtectedRoute(pattern="/x/*", roles=["OWNER"])])

    def test_malformed_permission_key(self):
        with pytest.raises(PydanticValidationError):
            AccessPolicy(permission_map={"get /x": "read:x"})
