"""
auth/authorization.py -- Role + permission decision engine.

decide(principal, required_permissions, allowed_roles):
  1. allowed_roles non-empty and principal.role not in it -> deny role_not_allowed
  2. effective = (role baseline | granted) - denied
  3. any required permission missing from effective      -> deny permission_missing
  4. otherwise allow

The two axes are independent: allowed roles are OR-ed (any one suffices),
required permissions are AND-ed (all must be present). An empty role set
means the role is irrelevant and only permissions decide; an empty
permission set means only the role decides.

Denials always win: a permission in principal.denied is absent from the
effective set even if the role baseline or an explicit grant includes it.

The engine is pure -- it never reads a store. The authentication guard is
responsible for building the Principal with freshly read overrides.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from auth.errors import DenyReason
from auth.models import Principal
from auth.permissions import Permission, Role, baseline_permissions


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None
    missing: frozenset[Permission] = field(default_factory=frozenset)

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, missing: Iterable[Permission] = ()) -> "Decision":
        return cls(allowed=False, reason=reason, missing=frozenset(missing))


@dataclass(frozen=True)
class Requirement:
    """What an operation demands: all of `permissions`, and one of `roles` (if any)."""

    permissions: frozenset[Permission] = field(default_factory=frozenset)
    roles: frozenset[Role] = field(default_factory=frozenset)


def requirement(*items: Role | Permission) -> Requirement:
    """Build a Requirement from a mix of roles and permissions.

        requirement(Role.SUPERADMIN, Role.ADMIN, Permission.VIEW_USER)

    Roles are alternatives, permissions are all required.
    """
    roles = frozenset(i for i in items if isinstance(i, Role))
    permissions = frozenset(i for i in items if isinstance(i, Permission))
    unknown = [i for i in items if not isinstance(i, (Role, Permission))]
    if unknown:
        raise TypeError(f"requirement() accepts Role and Permission members, got {unknown!r}")
    return Requirement(permissions=permissions, roles=roles)


def effective_permissions(principal: Principal) -> frozenset[Permission]:
    """(role baseline | granted) - denied."""
    return (baseline_permissions(principal.role) | principal.granted) - principal.denied


class AuthorizationEngine:
    def decide(
        self,
        principal: Principal,
        required_permissions: Permission | Iterable[Permission] = (),
        allowed_roles: Iterable[Role] = (),
    ) -> Decision:
        if isinstance(required_permissions, Permission):
            required = frozenset({required_permissions})
        else:
            required = frozenset(required_permissions)
        roles = frozenset(allowed_roles)

        if roles and principal.role not in roles:
            return Decision.deny(DenyReason.ROLE_NOT_ALLOWED)

        missing = required - effective_permissions(principal)
        if missing:
            return Decision.deny(DenyReason.PERMISSION_MISSING, missing)
        return Decision.allow()

    def check(self, principal: Principal, req: Requirement) -> Decision:
        return self.decide(principal, req.permissions, req.roles)
