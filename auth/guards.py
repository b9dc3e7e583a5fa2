"""
auth/guards.py -- Guard chain: ordered checks run before a handler.

A guard is anything with evaluate(request, context) -> Outcome, where the
outcome is either Proceed(updated context) or Reject(error). run_guards()
applies a sequence of guards strictly in order and stops at the first
Reject; compose() wraps a handler so it only runs when every guard passed,
receiving the context the guards built (notably the Principal).

Nothing here knows about HTTP. auth/dependencies.py converts a Starlette
request into a GuardRequest and a Reject into a JSON response.

Built-in guards:
  RateLimitGuard       -- counts the attempt under a named policy; rejects
                          with RateLimited. Counting happens whether or not
                          later guards or the handler succeed.
  AuthenticationGuard  -- validates the bearer access token (stateless) and
                          builds the Principal from its claims plus a fresh
                          read of the user's permission overrides.
  AuthorizationGuard   -- asks the AuthorizationEngine about the Principal;
                          rejects with Forbidden(reason).

Usage:
    list_users = compose(
        _list_users,
        authenticate,
        authorize(Role.SUPERADMIN, Role.ADMIN, Permission.VIEW_USER),
        on_reject=rejection_response,
    )
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Protocol, Union

from auth.authorization import Requirement, requirement
from auth.errors import AuthError, Forbidden, RateLimited, Unauthorized
from auth.models import AccessClaims, Principal
from auth.permissions import Permission, Role

if TYPE_CHECKING:
    from auth.services import AuthServices

logger = logging.getLogger("authguard.guards")


# ---------------------------------------------------------------------------
# Request, context, outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuardRequest:
    """The parts of an incoming request the guards look at."""

    client_ip: str
    access_token: str | None = None
    account: str | None = None
    method: str = "GET"
    path: str = "/"


@dataclass(frozen=True)
class GuardContext:
    """Per-request state threaded through the guards into the handler."""

    services: AuthServices
    claims: AccessClaims | None = None
    principal: Principal | None = None

    def evolve(self, **changes: Any) -> "GuardContext":
        return replace(self, **changes)


@dataclass(frozen=True)
class Proceed:
    context: GuardContext


@dataclass(frozen=True)
class Reject:
    error: AuthError
    guard: str = ""


Outcome = Union[Proceed, Reject]


class Guard(Protocol):
    name: str

    def evaluate(self, request: GuardRequest, context: GuardContext) -> Outcome: ...


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def run_guards(guards: Sequence[Guard], request: GuardRequest, context: GuardContext) -> Outcome:
    """Evaluate guards in order, short-circuiting on the first rejection."""
    for guard in guards:
        outcome = guard.evaluate(request, context)
        if isinstance(outcome, Reject):
            logger.info(
                "%s %s rejected by %s: %s",
                request.method,
                request.path,
                outcome.guard or guard.name,
                outcome.error.code,
            )
            return outcome
        context = outcome.context
    return Proceed(context)


def compose(
    handler: Callable[..., Any],
    *guards: Guard,
    on_reject: Callable[[Reject], Any] | None = None,
) -> Callable[..., Any]:
    """Return handler wrapped by guards.

    The wrapped callable takes (request, context, *args, **kwargs). If a guard
    rejects, it returns on_reject(reject) (or the Reject itself when no
    on_reject is given) and the handler is never called. Otherwise it calls
    handler(request, final_context, *args, **kwargs).
    """
    chain = tuple(guards)

    @functools.wraps(handler)
    def guarded(request: GuardRequest, context: GuardContext, *args: Any, **kwargs: Any) -> Any:
        outcome = run_guards(chain, request, context)
        if isinstance(outcome, Reject):
            return on_reject(outcome) if on_reject is not None else outcome
        return handler(request, outcome.context, *args, **kwargs)

    return guarded


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


def by_ip(request: GuardRequest) -> str | None:
    return request.client_ip


def by_ip_and_account(request: GuardRequest) -> str | None:
    """Key on (IP, submitted account). Account names are compared case-insensitively."""
    if not request.account:
        return None
    return f"{request.client_ip}|{request.account.strip().lower()}"


class RateLimitGuard:
    def __init__(self, policy: str, key: Callable[[GuardRequest], str | None] = by_ip) -> None:
        self.policy = policy
        self.key = key
        self.name = f"rate_limit[{policy}]"

    def evaluate(self, request: GuardRequest, context: GuardContext) -> Outcome:
        identity = self.key(request)
        if identity is None:
            return Proceed(context)
        services = context.services
        decision = services.rate_limiter.check_policy(services.rate_policies[self.policy], identity)
        if decision.allowed:
            return Proceed(context)
        services.audit.record(
            "rate_limited",
            policy=self.policy,
            client_ip=request.client_ip,
            path=request.path,
            retry_after=decision.retry_after,
        )
        return Reject(RateLimited(decision.retry_after), guard=self.name)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationGuard:
    name = "authenticate"

    def evaluate(self, request: GuardRequest, context: GuardContext) -> Outcome:
        if not request.access_token:
            return Reject(Unauthorized(), guard=self.name)
        services = context.services
        try:
            claims = services.tokens.validate_access_token(request.access_token)
        except Unauthorized as exc:
            return Reject(exc, guard=self.name)

        # Overrides are read fresh on every request; never baked into the token.
        overrides = services.users.get_overrides(claims.user_id)
        principal = Principal(
            user_id=claims.user_id,
            role=claims.role,
            granted=overrides.granted,
            denied=overrides.denied,
            session_id=claims.session_id,
            overrides_version=overrides.version,
        )
        return Proceed(context.evolve(claims=claims, principal=principal))


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationGuard:
    def __init__(self, required: Requirement) -> None:
        self.requirement = required
        self.name = "authorize"

    def evaluate(self, request: GuardRequest, context: GuardContext) -> Outcome:
        if context.principal is None:
            # Composed without an authentication guard in front of it
            return Reject(Unauthorized(), guard=self.name)
        decision = context.services.authorization.check(context.principal, self.requirement)
        if decision.allowed:
            return Proceed(context)
        return Reject(Forbidden(decision.reason), guard=self.name)


authenticate = AuthenticationGuard()


def authorize(*items: Role | Permission) -> AuthorizationGuard:
    """Guard requiring one of the given roles (if any) and all of the given permissions."""
    return AuthorizationGuard(requirement(*items))


def rate_limit(policy: str, key: Callable[[GuardRequest], str | None] = by_ip) -> RateLimitGuard:
    return RateLimitGuard(policy, key)
