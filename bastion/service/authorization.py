from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import List, Optional

from bastion.config import AccessPolicy
from bastion.logging import get_logger
from bastion.storage.models import Principal

logger = get_logger(__name__)


@dataclass
class AccessDecision:
    allowed: bool
    reason: str
    required_roles: Optional[List[str]] = None
    required_permission: Optional[str] = None


class AuthorizationEngine:
    """Route access by role and permission.

    Evaluation order: the ``*`` grant, protected-route role lists, the
    ``METHOD /path`` permission map, public routes, routes open to any
    authenticated caller, then the configured default.
    """

    def __init__(self, policy: AccessPolicy) -> None:
        self.policy = policy

    def permissions_for(self, role: str) -> List[str]:
        return list(self.policy.role_permissions.get(role, []))

    def guest(self) -> Principal:
        role = self.policy.guest_role
        return Principal(id=None, role=role, permissions=self.permissions_for(role))

    @staticmethod
    def has_permission(principal: Principal, permission: str) -> bool:
        granted = principal.permissions
        if "*" in granted or permission in granted:
            return True
        category = permission.split(":", 1)[0]
        return f"{category}:*" in granted

    def _required_permission(self, method: str, path: str) -> Optional[str]:
        request_key = f"{method.upper()} {path}"
        for pattern, permission in self.policy.permission_map.items():
            if fnmatchcase(request_key, pattern):
                return permission
        return None

    def decide(self, principal: Principal, path: str, method: str) -> AccessDecision:
        if "*" in principal.permissions:
            return AccessDecision(True, "superuser")

        for route in self.policy.protected_routes:
            if fnmatchcase(path, route.pattern):
                if principal.authenticated and principal.role in route.roles:
                    return AccessDecision(True, "role", required_roles=route.roles)
                return AccessDecision(False, "role required", required_roles=route.roles)

        permission = self._required_permission(method, path)
        if permission is not None:
            if self.has_permission(principal, permission):
                return AccessDecision(True, "permission", required_permission=permission)
            return AccessDecision(False, "permission required", required_permission=permission)

        if any(fnmatchcase(path, pattern) for pattern in self.policy.public_routes):
            return AccessDecision(True, "public route")
        if any(fnmatchcase(path, pattern) for pattern in self.policy.authenticated_routes):
            if principal.authenticated:
                return AccessDecision(True, "authenticated route")
            return AccessDecision(False, "authentication required")

        if self.policy.default_allow:
            return AccessDecision(True, "default allow")
        return AccessDecision(False, "no rule matched")

    def check_access(self, principal: Principal, path: str, method: str) -> bool:
        decision = self.decide(principal, path, method)
        if not decision.allowed:
            logger.warning(
                "access_denied",
                user_id=principal.id,
                role=principal.role,
                path=path,
                method=method.upper(),
                reason=decision.reason,
            )
        return decision.allowed
