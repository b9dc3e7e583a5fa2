"""
auth/permissions.py -- Roles, permissions and the role baseline table.

Roles are ordered: USER < ADMIN < SUPERADMIN. The ordering is used by the
user-management handlers (an actor cannot create, promote to, or edit a rank
above their own); it is NOT used for permission inheritance. A role gets
exactly the permissions listed for it in ROLE_PERMISSIONS and nothing from
the roles below it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    # str already defines the rich comparisons (alphabetical), so all four
    # are overridden to compare by rank instead.
    def __lt__(self, other):
        if isinstance(other, Role):
            return self.rank < other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Role):
            return self.rank <= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Role):
            return self.rank > other.rank
        return NotImplemented

    def __ge__(self, other):
        if isinstance(other, Role):
            return self.rank >= other.rank
        return NotImplemented


_ROLE_RANK = {Role.USER: 0, Role.ADMIN: 1, Role.SUPERADMIN: 2}


class Permission(str, Enum):
    VIEW_USER = "view_user"
    VIEW_ONE_USER = "view_one_user"
    CREATE_USER = "create_user"
    PATCH_USER = "patch_user"
    PATCH_USER_ROLE = "patch_user_role"
    GRANT_USER_PERMISSIONS = "grant_user_permissions"
    DENY_USER_PERMISSIONS = "deny_user_permissions"
    VIEW_USER_ROLE_PERMISSIONS = "view_user_role_permissions"


# Baseline permissions per role. Read-only so nothing can widen a role at
# runtime; per-user changes go through the permission-override record.
ROLE_PERMISSIONS: MappingProxyType[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.USER: frozenset({Permission.VIEW_ONE_USER}),
        Role.ADMIN: frozenset(
            {
                Permission.VIEW_USER,
                Permission.VIEW_ONE_USER,
                Permission.CREATE_USER,
                Permission.PATCH_USER,
                Permission.VIEW_USER_ROLE_PERMISSIONS,
            }
        ),
        Role.SUPERADMIN: frozenset(Permission),
    }
)


def baseline_permissions(role: Role) -> frozenset[Permission]:
    """Return the fixed permission set for a role."""
    return ROLE_PERMISSIONS[role]


def parse_permissions(values) -> frozenset[Permission]:
    """Convert stored permission names to Permission members.

    Unknown names (a permission removed from the enum after an override was
    written) are dropped rather than failing the whole request.
    """
    known = {p.value for p in Permission}
    return frozenset(Permission(v) for v in values if v in known)
