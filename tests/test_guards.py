"""
tests/test_guards.py -- Unit tests for the guard chain, independent of HTTP.

Covers:
  - run_guards(): strict order, short-circuit on first Reject, context threading
  - compose(): handler only runs on Proceed; on_reject hook
  - AuthenticationGuard: missing/invalid token, Principal built with fresh overrides
  - AuthorizationGuard: Forbidden with reason; Unauthorized without a Principal
  - RateLimitGuard: counts by key, rejects with RateLimited + retry hint
"""

from __future__ import annotations

from auth.errors import DenyReason, Forbidden, RateLimited, Unauthorized
from auth.guards import (
    GuardContext,
    GuardRequest,
    Proceed,
    Reject,
    authenticate,
    authorize,
    by_ip_and_account,
    compose,
    rate_limit,
    run_guards,
)
from auth.permissions import Permission, Role
from auth.ratelimit import RatePolicy
from auth.services import AuthServices
from conftest import PASSWORD, add_user


class _Recorder:
    """Test guard that records calls and returns a fixed outcome kind."""

    def __init__(self, name: str, calls: list[str], reject: bool = False) -> None:
        self.name = name
        self.calls = calls
        self.reject = reject

    def evaluate(self, request, context):
        self.calls.append(self.name)
        if self.reject:
            return Reject(Unauthorized())
        return Proceed(context)


def _request(token: str | None = None, account: str | None = None) -> GuardRequest:
    return GuardRequest(client_ip="203.0.113.7", access_token=token, account=account, method="GET", path="/t")


class TestComposition:
    def test_guards_run_in_order(self, services: AuthServices) -> None:
        calls: list[str] = []
        guards = [_Recorder("a", calls), _Recorder("b", calls), _Recorder("c", calls)]
        outcome = run_guards(guards, _request(), GuardContext(services=services))
        assert isinstance(outcome, Proceed)
        assert calls == ["a", "b", "c"]

    def test_first_reject_short_circuits(self, services: AuthServices) -> None:
        calls: list[str] = []
        guards = [_Recorder("a", calls), _Recorder("b", calls, reject=True), _Recorder("c", calls)]
        outcome = run_guards(guards, _request(), GuardContext(services=services))
        assert isinstance(outcome, Reject)
        assert calls == ["a", "b"]

    def test_handler_skipped_on_reject(self, services: AuthServices) -> None:
        handled: list[str] = []
        guarded = compose(lambda req, ctx: handled.append("ran"), _Recorder("no", [], reject=True))
        outcome = guarded(_request(), GuardContext(services=services))
        assert isinstance(outcome, Reject)
        assert handled == []

    def test_on_reject_hook(self, services: AuthServices) -> None:
        guarded = compose(
            lambda req, ctx: "handled",
            _Recorder("no", [], reject=True),
            on_reject=lambda reject: reject.error.code,
        )
        assert guarded(_request(), GuardContext(services=services)) == "unauthorized"

    def test_handler_gets_extra_args_and_final_context(self, services: AuthServices) -> None:
        add_user(services, "alice")
        pair = services.tokens.login("alice", PASSWORD)
        guarded = compose(lambda req, ctx, n: (ctx.principal.user_id, n), authenticate)
        user_id, n = guarded(_request(pair.access_token), GuardContext(services=services), 42)
        assert n == 42
        assert user_id == services.users.get_by_username("alice").id

    def test_no_guards_always_proceeds(self, services: AuthServices) -> None:
        assert isinstance(run_guards([], _request(), GuardContext(services=services)), Proceed)


class TestAuthentication:
    def test_missing_token(self, services: AuthServices) -> None:
        outcome = authenticate.evaluate(_request(), GuardContext(services=services))
        assert isinstance(outcome, Reject)
        assert isinstance(outcome.error, Unauthorized)

    def test_invalid_token(self, services: AuthServices) -> None:
        outcome = authenticate.evaluate(_request("garbage"), GuardContext(services=services))
        assert isinstance(outcome, Reject)
        assert outcome.error.code == "unauthorized"

    def test_principal_reads_overrides_fresh(self, services: AuthServices) -> None:
        uid = add_user(services, "alice")
        token = services.tokens.login("alice", PASSWORD).access_token
        ctx = GuardContext(services=services)

        first = authenticate.evaluate(_request(token), ctx)
        assert first.context.principal.granted == frozenset()
        assert first.context.principal.role is Role.USER

        services.users.save_overrides(uid, frozenset({Permission.VIEW_USER}), frozenset(), expected_version=0)

        second = authenticate.evaluate(_request(token), ctx)
        assert second.context.principal.granted == frozenset({Permission.VIEW_USER})
        assert second.context.principal.overrides_version == 1


class TestAuthorization:
    def test_without_principal(self, services: AuthServices) -> None:
        outcome = authorize(Role.ADMIN).evaluate(_request(), GuardContext(services=services))
        assert isinstance(outcome.error, Unauthorized)

    def test_role_not_allowed(self, services: AuthServices) -> None:
        add_user(services, "alice")
        token = services.tokens.login("alice", PASSWORD).access_token
        outcome = run_guards(
            [authenticate, authorize(Role.SUPERADMIN, Role.ADMIN, Permission.VIEW_USER)],
            _request(token),
            GuardContext(services=services),
        )
        assert isinstance(outcome, Reject)
        assert isinstance(outcome.error, Forbidden)
        assert outcome.error.reason is DenyReason.ROLE_NOT_ALLOWED
        assert outcome.error.to_dict()["reason"] == "role_not_allowed"

    def test_denied_permission(self, services: AuthServices) -> None:
        uid = add_user(services, "admin", Role.ADMIN)
        services.users.save_overrides(uid, frozenset(), frozenset({Permission.VIEW_USER}), expected_version=0)
        token = services.tokens.login("admin", PASSWORD).access_token
        outcome = run_guards(
            [authenticate, authorize(Role.ADMIN, Permission.VIEW_USER)],
            _request(token),
            GuardContext(services=services),
        )
        assert outcome.error.reason is DenyReason.PERMISSION_MISSING

    def test_allowed(self, services: AuthServices) -> None:
        add_user(services, "admin", Role.ADMIN)
        token = services.tokens.login("admin", PASSWORD).access_token
        outcome = run_guards(
            [authenticate, authorize(Role.SUPERADMIN, Role.ADMIN, Permission.VIEW_USER)],
            _request(token),
            GuardContext(services=services),
        )
        assert isinstance(outcome, Proceed)
        assert outcome.context.principal.role is Role.ADMIN


class TestRateLimitGuard:
    def test_rejects_after_limit(self, services: AuthServices) -> None:
        services.rate_policies["test"] = RatePolicy("test", limit=2, window_seconds=60)
        guard = rate_limit("test")
        ctx = GuardContext(services=services)
        outcomes = [guard.evaluate(_request(), ctx) for _ in range(3)]
        assert [type(o) for o in outcomes] == [Proceed, Proceed, Reject]
        assert isinstance(outcomes[2].error, RateLimited)
        assert outcomes[2].error.retry_after > 0
        assert outcomes[2].error.to_dict()["retry_after"] == outcomes[2].error.retry_after

    def test_account_key_is_case_insensitive(self, services: AuthServices) -> None:
        services.rate_policies["acct"] = RatePolicy("acct", limit=1, window_seconds=60)
        guard = rate_limit("acct", key=by_ip_and_account)
        ctx = GuardContext(services=services)
        assert isinstance(guard.evaluate(_request(account="Alice"), ctx), Proceed)
        assert isinstance(guard.evaluate(_request(account="alice "), ctx), Reject)
        assert isinstance(guard.evaluate(_request(account="bob"), ctx), Proceed)

    def test_account_key_skipped_without_account(self, services: AuthServices) -> None:
        services.rate_policies["acct"] = RatePolicy("acct", limit=1, window_seconds=60)
        guard = rate_limit("acct", key=by_ip_and_account)
        ctx = GuardContext(services=services)
        assert all(isinstance(guard.evaluate(_request(), ctx), Proceed) for _ in range(3))
