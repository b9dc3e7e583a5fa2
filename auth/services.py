"""
auth/services.py -- Explicitly constructed service container.

Everything that holds shared mutable state (the two stores, the rate
limiter's counters) is built here once and handed to the guards through
GuardContext, instead of living in module-level singletons. The API lifespan
builds one AuthServices per application; tests build their own against
throwaway databases.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from auth.audit import SecurityEventLogger
from auth.authorization import AuthorizationEngine
from auth.credentials import CredentialVerifier, PasswordVerifier
from auth.ratelimit import RateLimiter, RatePolicy
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import Settings

LOGIN_IP_POLICY = "login-ip"
LOGIN_ACCOUNT_POLICY = "login-account"


@dataclass
class AuthServices:
    settings: Settings
    users: UserStore
    sessions: SessionStore
    tokens: TokenService
    rate_limiter: RateLimiter
    authorization: AuthorizationEngine
    audit: SecurityEventLogger
    rate_policies: dict[str, RatePolicy] = field(default_factory=dict)

    def purge_expired_sessions(self) -> int:
        """Delete sessions that expired longer ago than the retention period."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.settings.session_retention_seconds)
        return self.sessions.purge_expired(cutoff)

    def close(self) -> None:
        self.users.close()
        self.sessions.close()


def build_services(
    settings: Settings,
    *,
    db_url: str | None = None,
    verifier: CredentialVerifier | None = None,
    clock: Callable[[], datetime] | None = None,
) -> AuthServices:
    """Wire stores, token service, limiter and engine from settings.

    db_url overrides settings.database_url (tests pass an in-memory URL).
    verifier defaults to local username/password verification.
    """
    url = db_url or settings.database_url
    users = UserStore(url)
    sessions = SessionStore(url)
    audit = SecurityEventLogger()
    token_kwargs = {"clock": clock} if clock is not None else {}
    tokens = TokenService(
        sessions,
        users,
        verifier or PasswordVerifier(users),
        secret_key=settings.secret_key,
        algorithm=settings.jwt_algorithm,
        access_ttl_seconds=settings.access_token_expire_seconds,
        refresh_ttl_seconds=settings.refresh_token_expire_seconds,
        audit=audit,
        **token_kwargs,
    )
    policies = {
        LOGIN_IP_POLICY: RatePolicy(LOGIN_IP_POLICY, settings.login_ip_limit, settings.login_ip_window_seconds),
        LOGIN_ACCOUNT_POLICY: RatePolicy(
            LOGIN_ACCOUNT_POLICY, settings.login_account_limit, settings.login_account_window_seconds
        ),
    }
    return AuthServices(
        settings=settings,
        users=users,
        sessions=sessions,
        tokens=tokens,
        rate_limiter=RateLimiter(settings.rate_limit_storage_uri),
        authorization=AuthorizationEngine(),
        audit=audit,
        rate_policies=policies,
    )
