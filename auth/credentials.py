"""
auth/credentials.py -- Password hashing and the default CredentialVerifier.

The token service does not know how credentials are checked. It calls a
CredentialVerifier, which returns the verified User or raises
InvalidCredentials. PasswordVerifier is the local username/password
implementation backed by UserStore; other verifiers (LDAP, an upstream
identity service) only need the same verify() method.

Passwords: bcrypt directly (no passlib wrapper). bcrypt's cost factor makes
offline brute force of low-entropy secrets expensive.

Timing equalization: verify() always runs bcrypt, against _DUMMY_HASH when
the username does not exist, so response time does not reveal whether an
account exists. Unknown user, wrong password and inactive account all raise
the same InvalidCredentials.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import Protocol

import bcrypt

from auth.errors import InvalidCredentials
from auth.models import User
from auth.store import UserStore


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes; the API models and the CLI reject
    passwords longer than 72 UTF-8 bytes so nothing is silently truncated.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input
        return False


# Computed once at import so the first failed login is not measurably slower
# than later ones.
_DUMMY_HASH: str = hash_password("authguard_timing_dummy")


class CredentialVerifier(Protocol):
    def verify(self, username: str, password: str) -> User:
        """Return the verified user or raise InvalidCredentials."""
        ...


class PasswordVerifier:
    """Verify local username/password logins against UserStore."""

    def __init__(self, store: UserStore) -> None:
        self._store = store

    def verify(self, username: str, password: str) -> User:
        user = self._store.get_by_username(username)
        if user is None or user.hashed_password is None:
            # Do NOT return before running bcrypt
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            raise InvalidCredentials()
        if not user.is_active:
            raise InvalidCredentials()
        return user
