"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, the token service and the guards do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from auth.permissions import Permission, Role


@dataclass
class User:
    """A local account.

    hashed_password is a bcrypt hash; the default CredentialVerifier is the
    only reader. role is the baseline role; per-user exceptions live in the
    PermissionOverrides record, not here.
    """

    username: str
    role: Role
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True
    last_login: str | None = None


@dataclass(frozen=True)
class PermissionOverrides:
    """Per-user grants and denials on top of the role baseline.

    version increases by one on every write. Writers compare-and-set on it so
    two concurrent admin edits cannot silently overwrite each other. version 0
    means no record has been written yet.
    """

    user_id: int
    granted: frozenset[Permission] = frozenset()
    denied: frozenset[Permission] = frozenset()
    version: int = 0


@dataclass(frozen=True)
class Session:
    """One refresh-token lifetime for one device.

    Rotation revokes this row and creates a successor with rotated_from set
    to this id. All rows descending from the same login share family_id
    (the id of the first session in the chain).
    """

    id: str
    user_id: int
    family_id: str
    refresh_token_hash: str
    issued_at: datetime
    expires_at: datetime
    rotated_from: str | None = None
    revoked: bool = False
    revoked_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class AccessClaims:
    """Verified content of an access token. Never includes permission overrides."""

    user_id: int
    role: Role
    session_id: str | None
    expires_at: datetime


@dataclass(frozen=True)
class Principal:
    """The authenticated actor for the duration of one request.

    Rebuilt on every request from the access token claims plus a fresh read
    of the permission overrides. Never persisted.
    """

    user_id: int
    role: Role
    granted: frozenset[Permission] = field(default_factory=frozenset)
    denied: frozenset[Permission] = field(default_factory=frozenset)
    session_id: str | None = None
    overrides_version: int = 0


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    session_id: str
    token_type: str = "bearer"
