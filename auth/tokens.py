"""
auth/tokens.py -- Access/refresh token issuance, validation and rotation.

Security design decisions:
  Access tokens: python-jose JWT (HS256 by default) carrying user id, role,
       session id and expiry. They are validated statelessly: no store
       lookup, so they stay valid until exp even after their session is
       revoked. access_token_expire_seconds is that exposure window.

  Refresh tokens: 256-bit random strings, single use. Only
       HMAC-SHA256(SECRET_KEY, token) is stored (the session fingerprint),
       so a leaked sessions table cannot be replayed without the key, and
       lookup stays an O(1) index hit.

  Rotation: refresh() revokes the presented session and creates its
       successor in one conditional transaction (SessionStore.rotate). A
       revoked session that already has a successor means the token was
       used twice -- a stolen token replayed after the legitimate client
       rotated, or two holders racing -- and the whole family is revoked.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.audit import SecurityEventLogger
from auth.credentials import CredentialVerifier
from auth.errors import InvalidCredentials, TokenExpired, TokenReplayDetected, TokenRevoked, Unauthorized
from auth.models import AccessClaims, Session, TokenPair
from auth.permissions import Role
from auth.sessions import SessionStore
from auth.store import UserStore

logger = logging.getLogger("authguard.tokens")

_ACCESS_TOKEN_TYPE = "access"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    role: Role | str,
    *,
    secret_key: str,
    expire_seconds: int,
    session_id: str | None = None,
    algorithm: str = "HS256",
    now: datetime | None = None,
) -> str:
    """Encode a signed JWT access token.

    A negative expire_seconds produces an already-expired token (tests use
    this to exercise the expiry path).
    """
    issued = now or _utcnow()
    payload = {
        "sub": str(user_id),
        "role": Role(role).value,
        "sid": session_id,
        "type": _ACCESS_TOKEN_TYPE,
        "iat": issued,
        "exp": issued + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, secret_key, algorithm=algorithm)


def decode_access_token(token: str, *, secret_key: str, algorithm: str = "HS256") -> AccessClaims:
    """Verify signature and expiry of an access token.

    Raises Unauthorized on any failure; the message distinguishes an expired
    token from a malformed one so clients know to refresh.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
    except ExpiredSignatureError as exc:
        raise Unauthorized("Access token has expired.") from exc
    except JWTError as exc:
        raise Unauthorized("Invalid access token.") from exc

    if payload.get("type") != _ACCESS_TOKEN_TYPE:
        raise Unauthorized("Invalid access token.")
    try:
        user_id = int(payload["sub"])
        role = Role(payload["role"])
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise Unauthorized("Invalid access token.") from exc
    return AccessClaims(user_id=user_id, role=role, session_id=payload.get("sid"), expires_at=expires_at)


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque refresh token (256 bits of entropy, URL-safe)."""
    return secrets.token_urlsafe(32)


def fingerprint_refresh_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as hex, the stored session fingerprint."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Session and token lifecycle: login, refresh-with-rotation, logout, logout-all.

    Usage:
        service = TokenService(sessions, users, PasswordVerifier(users), secret_key=key)
        pair = service.login("alice", "correct horse")
        pair = service.refresh(pair.refresh_token)
        claims = service.validate_access_token(pair.access_token)
    """

    def __init__(
        self,
        sessions: SessionStore,
        users: UserStore,
        verifier: CredentialVerifier,
        *,
        secret_key: str,
        algorithm: str = "HS256",
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 14 * 24 * 3600,
        audit: SecurityEventLogger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.sessions = sessions
        self.users = users
        self.verifier = verifier
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.audit = audit or SecurityEventLogger()
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock

    # ------------------------------------------------------------------
    # Login / refresh
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> TokenPair:
        """Verify credentials and open a new session family.

        Raises InvalidCredentials when the verifier rejects the credentials.
        """
        try:
            user = self.verifier.verify(username, password)
        except InvalidCredentials:
            self.audit.record("login_failed", username=username)
            raise
        refresh_token = generate_refresh_token()
        now = self._clock()
        session_id = str(uuid.uuid4())
        session = Session(
            id=session_id,
            user_id=user.id,
            family_id=session_id,
            refresh_token_hash=self.fingerprint(refresh_token),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
        )
        self.sessions.create(session)
        self.users.update_last_login(user.id)
        logger.info("Login user_id=%s session=%s", user.id, session_id)
        return self._issue(user.id, user.role, session, refresh_token)

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, rotating its session.

        Raises:
            Unauthorized         -- token unknown.
            TokenReplayDetected  -- token already rotated while its family was live.
            TokenRevoked         -- session revoked by logout/logout-all, or
                                    the user no longer exists or is inactive.
            TokenExpired         -- session past its expiry.
        """
        session = self.sessions.get_by_fingerprint(self.fingerprint(refresh_token))
        if session is None:
            raise Unauthorized("Invalid refresh token.")
        if session.revoked:
            self._raise_for_revoked(session)
        now = self._clock()
        if session.is_expired(now):
            raise TokenExpired()

        user = self.users.get_by_id(session.user_id)
        if user is None or not user.is_active:
            self.sessions.revoke_family(session.family_id)
            raise TokenRevoked()

        new_refresh_token = generate_refresh_token()
        successor = Session(
            id=str(uuid.uuid4()),
            user_id=session.user_id,
            family_id=session.family_id,
            refresh_token_hash=self.fingerprint(new_refresh_token),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
            rotated_from=session.id,
        )
        if not self.sessions.rotate(session.id, session.user_id, successor):
            # Lost the conditional update: someone revoked or rotated the
            # session between our read and our write.
            current = self.sessions.get(session.id) or session
            self._raise_for_revoked(current)
        return self._issue(user.id, user.role, successor, new_refresh_token)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str) -> None:
        """Revoke the session bound to refresh_token. Unknown or already-revoked tokens are a no-op."""
        session = self.sessions.get_by_fingerprint(self.fingerprint(refresh_token))
        if session is not None:
            self.revoke_session(session.id)

    def revoke_session(self, session_id: str) -> bool:
        revoked = self.sessions.revoke(session_id)
        if revoked:
            logger.info("Session revoked session=%s", session_id)
        return revoked

    def logout_all(self, user_id: int) -> int:
        """Revoke every active session of user_id. Returns the number revoked."""
        revoked = self.sessions.revoke_all_for_user(user_id)
        self.audit.record("logout_all", user_id=user_id, sessions_revoked=revoked)
        return revoked

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def validate_access_token(self, token: str) -> AccessClaims:
        """Stateless signature and expiry check. Does not consult SessionStore."""
        return decode_access_token(token, secret_key=self._secret_key, algorithm=self._algorithm)

    def fingerprint(self, refresh_token: str) -> str:
        return fingerprint_refresh_token(refresh_token, self._secret_key)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(self, user_id: int, role: Role, session: Session, refresh_token: str) -> TokenPair:
        access_token = create_access_token(
            user_id,
            role,
            secret_key=self._secret_key,
            expire_seconds=self.access_ttl_seconds,
            session_id=session.id,
            algorithm=self._algorithm,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_in=self.access_ttl_seconds,
            refresh_expires_in=self.refresh_ttl_seconds,
            session_id=session.id,
        )

    def _raise_for_revoked(self, session: Session) -> None:
        """Raise TokenReplayDetected if a rotated session is presented while its
        family is still live, TokenRevoked otherwise.

        A stale token from a family with no live session left (logout-all,
        deactivation, an earlier replay) is reported as revoked and records
        no security event.
        """
        if self.sessions.has_successor(session.id):
            revoked = self.sessions.revoke_family(session.family_id)
            if revoked:
                self.audit.replay_detected(
                    user_id=session.user_id,
                    session_id=session.id,
                    family_id=session.family_id,
                    revoked=revoked,
                )
                raise TokenReplayDetected()
        raise TokenRevoked()
