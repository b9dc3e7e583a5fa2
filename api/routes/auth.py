"""
api/routes/auth.py -- Session and token endpoints.

Routes:
  POST /auth/login       -- username/password login; returns access + refresh pair
  POST /auth/refresh     -- exchange a refresh token for a new pair (rotation)
  POST /auth/logout      -- revoke the current session; 204 (idempotent)
  POST /auth/logout_all  -- revoke every session of the caller; 204
  GET  /auth/me          -- resolved principal incl. effective permissions
  GET  /auth/sessions    -- caller's active sessions

Security:
  Login runs two RateLimitGuards before credentials are checked: one keyed
  by client IP, one by (IP, submitted username). Both count every attempt.
  Refresh carries a slowapi per-IP limit.
  Token responses carry Cache-Control: no-store.
  Wrong username and wrong password both produce invalid_credentials.
"""

# No `from __future__ import annotations` here: FastAPI resolves the body
# model annotations through the slowapi wrapper's globals.

from typing import Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LogoutRequest,
    MeResponse,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
)
from auth.authorization import effective_permissions
from auth.dependencies import get_services, guard_context, guard_request, rejection_response
from auth.errors import NotFound
from auth.guards import GuardContext, GuardRequest, authenticate, by_ip_and_account, compose, rate_limit
from auth.models import TokenPair
from auth.services import LOGIN_ACCOUNT_POLICY, LOGIN_IP_POLICY
from core.config import get_settings

# Auth policy:
# - POST /auth/login:       public, rate-limited by IP and by (IP, username)
# - POST /auth/refresh:     public (the refresh token is the credential), slowapi per-IP limit
# - POST /auth/logout:      refresh token in body, or bearer access token
# - POST /auth/logout_all:  requires auth
# - GET  /auth/me:          requires auth
# - GET  /auth/sessions:    requires auth
router = APIRouter()


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=TokenResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Guarded handlers
#
# Each handler receives (GuardRequest, GuardContext, ...) and only runs when
# every guard in front of it returned Proceed.
# ---------------------------------------------------------------------------


def _login(greq: GuardRequest, ctx: GuardContext, body: LoginRequest) -> JSONResponse:
    pair = ctx.services.tokens.login(body.username, body.password)
    return _token_response(pair)


def _logout_current(greq: GuardRequest, ctx: GuardContext) -> Response:
    if ctx.claims.session_id:
        ctx.services.tokens.revoke_session(ctx.claims.session_id)
    return Response(status_code=204)


def _logout_all(greq: GuardRequest, ctx: GuardContext) -> Response:
    ctx.services.tokens.logout_all(ctx.principal.user_id)
    return Response(status_code=204)


def _me(greq: GuardRequest, ctx: GuardContext) -> MeResponse:
    principal = ctx.principal
    user = ctx.services.users.get_by_id(principal.user_id)
    if user is None:
        raise NotFound("User not found.")
    return MeResponse(
        user_id=principal.user_id,
        username=user.username,
        role=principal.role,
        session_id=principal.session_id,
        permissions=sorted(effective_permissions(principal), key=lambda p: p.value),
    )


def _sessions(greq: GuardRequest, ctx: GuardContext) -> list[SessionResponse]:
    active = ctx.services.sessions.list_active(ctx.principal.user_id)
    return [SessionResponse.from_session(s, ctx.principal.session_id) for s in active]


_guarded_login = compose(
    _login,
    rate_limit(LOGIN_IP_POLICY),
    rate_limit(LOGIN_ACCOUNT_POLICY, key=by_ip_and_account),
    on_reject=rejection_response,
)
_guarded_logout = compose(_logout_current, authenticate, on_reject=rejection_response)
_guarded_logout_all = compose(_logout_all, authenticate, on_reject=rejection_response)
_guarded_me = compose(_me, authenticate, on_reject=rejection_response)
_guarded_sessions = compose(_sessions, authenticate, on_reject=rejection_response)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a new token pair.

    Every attempt, successful or not, counts against both login windows.
    """
    return _guarded_login(guard_request(request, account=body.username), guard_context(request), body)


@router.post("/auth/refresh", response_model=TokenResponse)
@limiter.limit(get_settings().refresh_rate_limit)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate a refresh token.

    The presented token becomes unusable; presenting it again revokes the
    whole session family (replay_detected).
    """
    pair = get_services(request).tokens.refresh(body.refresh_token)
    return _token_response(pair)


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: Optional[LogoutRequest] = None) -> Response:
    """Revoke the caller's current session.

    A refresh token in the body identifies the session directly; unknown or
    already-revoked tokens still get 204. Without one, the bearer access
    token must be valid and its session is revoked.
    """
    if body is not None and body.refresh_token:
        get_services(request).tokens.logout(body.refresh_token)
        return Response(status_code=204)
    return _guarded_logout(guard_request(request), guard_context(request))


@router.post("/auth/logout_all", status_code=204)
def logout_all(request: Request) -> Response:
    """Revoke every active session of the authenticated user."""
    return _guarded_logout_all(guard_request(request), guard_context(request))


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request):
    return _guarded_me(guard_request(request), guard_context(request))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request):
    """List the caller's active (non-revoked, unexpired) sessions."""
    return _guarded_sessions(guard_request(request), guard_context(request))
