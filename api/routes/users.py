"""
api/routes/users.py -- Permission-gated user management endpoints.

Routes (all require authentication, then role ADMIN or SUPERADMIN plus the
listed permission):
  GET   /users                             -- VIEW_USER
  POST  /users                             -- CREATE_USER
  GET   /users/{id}                        -- VIEW_ONE_USER
  PATCH /users/{id}                        -- PATCH_USER (is_active, password)
  PATCH /users/{id}/role                   -- PATCH_USER_ROLE
  GET   /users/{id}/permissions            -- VIEW_USER_ROLE_PERMISSIONS
  POST  /users/{id}/permissions/grant      -- GRANT_USER_PERMISSIONS
  POST  /users/{id}/permissions/deny       -- DENY_USER_PERMISSIONS

Rules enforced after the guards:
  - Nobody creates, edits or assigns a role above their own rank
    (403 forbidden, reason role_not_allowed).
  - Self-deactivation is rejected (400).
  - Deactivating a user revokes all of that user's sessions.
  - Grant adds to the granted set and removes from the denied set; deny does
    the opposite. Each edit is a compare-and-set on the override version,
    retried a few times before giving up with 409 conflict.
"""

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    PermissionsChange,
    RolePatch,
    UserCreate,
    UserPatch,
    UserPermissionsResponse,
    UserResponse,
)
from auth.authorization import effective_permissions
from auth.credentials import hash_password
from auth.dependencies import guard_context, guard_request, rejection_response
from auth.errors import Conflict, DenyReason, Forbidden, NotFound
from auth.guards import GuardContext, GuardRequest, authenticate, authorize, compose
from auth.models import PermissionOverrides, Principal, User
from auth.permissions import Permission, Role, baseline_permissions
from auth.services import AuthServices

router = APIRouter()

_OVERRIDE_CAS_ATTEMPTS = 3


def _gated(handler, permission: Permission):
    return compose(
        handler,
        authenticate,
        authorize(Role.SUPERADMIN, Role.ADMIN, permission),
        on_reject=rejection_response,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_user_or_404(services: AuthServices, user_id: int) -> User:
    user = services.users.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


def _require_rank(actor: Principal, role: Role) -> None:
    """Reject acting on or assigning a role ranked above the actor's own."""
    if role > actor.role:
        raise Forbidden(DenyReason.ROLE_NOT_ALLOWED, "You cannot act on a role above your own.")


def _sorted(perms) -> list[Permission]:
    return sorted(perms, key=lambda p: p.value)


def _permissions_response(user: User, overrides: PermissionOverrides) -> UserPermissionsResponse:
    principal = Principal(
        user_id=user.id,
        role=user.role,
        granted=overrides.granted,
        denied=overrides.denied,
    )
    return UserPermissionsResponse(
        user_id=user.id,
        role=user.role,
        baseline=_sorted(baseline_permissions(user.role)),
        granted=_sorted(overrides.granted),
        denied=_sorted(overrides.denied),
        effective=_sorted(effective_permissions(principal)),
        version=overrides.version,
    )


def _change_overrides(
    services: AuthServices,
    actor: Principal,
    user_id: int,
    permissions: frozenset[Permission],
    *,
    grant: bool,
) -> PermissionOverrides:
    """Apply a grant or deny with compare-and-set, retrying on lost races."""
    for _ in range(_OVERRIDE_CAS_ATTEMPTS):
        current = services.users.get_overrides(user_id)
        if grant:
            granted = current.granted | permissions
            denied = current.denied - permissions
        else:
            granted = current.granted - permissions
            denied = current.denied | permissions
        saved = services.users.save_overrides(user_id, granted, denied, current.version)
        if saved is not None:
            services.audit.record(
                "permissions_granted" if grant else "permissions_denied",
                actor_id=actor.user_id,
                user_id=user_id,
                permissions=",".join(p.value for p in _sorted(permissions)),
                version=saved.version,
            )
            return saved
    raise Conflict("Permission overrides were modified concurrently. Retry the request.")


# ---------------------------------------------------------------------------
# Guarded handlers
# ---------------------------------------------------------------------------


def _list_users(greq: GuardRequest, ctx: GuardContext) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in ctx.services.users.list_users()]


def _create_user(greq: GuardRequest, ctx: GuardContext, body: UserCreate) -> UserResponse:
    _require_rank(ctx.principal, body.role)
    user_store = ctx.services.users
    new_user = User(username=body.username, role=body.role, hashed_password=hash_password(body.password))
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise Conflict("A user with that username already exists.") from exc
    ctx.services.audit.record("user_created", actor_id=ctx.principal.user_id, user_id=user_id, role=body.role.value)
    return UserResponse.from_user(_get_user_or_404(ctx.services, user_id))


def _get_user(greq: GuardRequest, ctx: GuardContext, user_id: int) -> UserResponse:
    return UserResponse.from_user(_get_user_or_404(ctx.services, user_id))


def _patch_user(greq: GuardRequest, ctx: GuardContext, user_id: int, body: UserPatch) -> UserResponse:
    services = ctx.services
    target = _get_user_or_404(services, user_id)
    _require_rank(ctx.principal, target.role)

    updates: dict = {}
    if body.is_active is not None:
        if not body.is_active and target.id == ctx.principal.user_id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        updates["is_active"] = body.is_active
    if body.password is not None:
        updates["hashed_password"] = hash_password(body.password)

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    services.users.update_user(user_id, **updates)
    if updates.get("is_active") is False:
        services.tokens.logout_all(user_id)
    return UserResponse.from_user(_get_user_or_404(services, user_id))


def _patch_role(greq: GuardRequest, ctx: GuardContext, user_id: int, body: RolePatch) -> UserResponse:
    services = ctx.services
    target = _get_user_or_404(services, user_id)
    _require_rank(ctx.principal, target.role)
    _require_rank(ctx.principal, body.role)
    if body.role != target.role:
        services.users.update_user(user_id, role=body.role)
        services.audit.record(
            "role_changed",
            actor_id=ctx.principal.user_id,
            user_id=user_id,
            old_role=target.role.value,
            new_role=body.role.value,
        )
    return UserResponse.from_user(_get_user_or_404(services, user_id))


def _get_permissions(greq: GuardRequest, ctx: GuardContext, user_id: int) -> UserPermissionsResponse:
    target = _get_user_or_404(ctx.services, user_id)
    return _permissions_response(target, ctx.services.users.get_overrides(user_id))


def _grant(greq: GuardRequest, ctx: GuardContext, user_id: int, body: PermissionsChange) -> UserPermissionsResponse:
    target = _get_user_or_404(ctx.services, user_id)
    _require_rank(ctx.principal, target.role)
    saved = _change_overrides(ctx.services, ctx.principal, user_id, frozenset(body.permissions), grant=True)
    return _permissions_response(target, saved)


def _deny(greq: GuardRequest, ctx: GuardContext, user_id: int, body: PermissionsChange) -> UserPermissionsResponse:
    target = _get_user_or_404(ctx.services, user_id)
    _require_rank(ctx.principal, target.role)
    saved = _change_overrides(ctx.services, ctx.principal, user_id, frozenset(body.permissions), grant=False)
    return _permissions_response(target, saved)


_guarded_list_users = _gated(_list_users, Permission.VIEW_USER)
_guarded_create_user = _gated(_create_user, Permission.CREATE_USER)
_guarded_get_user = _gated(_get_user, Permission.VIEW_ONE_USER)
_guarded_patch_user = _gated(_patch_user, Permission.PATCH_USER)
_guarded_patch_role = _gated(_patch_role, Permission.PATCH_USER_ROLE)
_guarded_get_permissions = _gated(_get_permissions, Permission.VIEW_USER_ROLE_PERMISSIONS)
_guarded_grant = _gated(_grant, Permission.GRANT_USER_PERMISSIONS)
_guarded_deny = _gated(_deny, Permission.DENY_USER_PERMISSIONS)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request):
    """List all user accounts."""
    return _guarded_list_users(guard_request(request), guard_context(request))


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate):
    """Create a local account. The new role may not outrank the caller's."""
    return _guarded_create_user(guard_request(request), guard_context(request), body)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int):
    return _guarded_get_user(guard_request(request), guard_context(request), user_id)


@router.patch("/users/{user_id}", response_model=UserResponse)
def patch_user(request: Request, user_id: int, body: UserPatch):
    """Activate/deactivate a user or reset their password.

    Deactivation also revokes every session the user holds.
    """
    return _guarded_patch_user(guard_request(request), guard_context(request), user_id, body)


@router.patch("/users/{user_id}/role", response_model=UserResponse)
def patch_user_role(request: Request, user_id: int, body: RolePatch):
    """Change a user's role.

    Access tokens already issued keep the old role until they expire; the
    next refresh picks up the new one.
    """
    return _guarded_patch_role(guard_request(request), guard_context(request), user_id, body)


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
def get_user_permissions(request: Request, user_id: int):
    return _guarded_get_permissions(guard_request(request), guard_context(request), user_id)


@router.post("/users/{user_id}/permissions/grant", response_model=UserPermissionsResponse)
def grant_user_permissions(request: Request, user_id: int, body: PermissionsChange):
    """Grant permissions on top of the user's role baseline. Takes effect on the next request."""
    return _guarded_grant(guard_request(request), guard_context(request), user_id, body)


@router.post("/users/{user_id}/permissions/deny", response_model=UserPermissionsResponse)
def deny_user_permissions(request: Request, user_id: int, body: PermissionsChange):
    """Deny permissions, overriding both the role baseline and earlier grants."""
    return _guarded_deny(guard_request(request), guard_context(request), user_id, body)
