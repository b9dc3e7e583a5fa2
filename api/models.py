"""
API request and response models for the authguard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Session, TokenPair, User
from auth.permissions import Permission, Role

# bcrypt only looks at the first 72 bytes; longer passwords would silently
# collide, so they are rejected at the edge.
_BCRYPT_MAX_BYTES = 72


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
    return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=150)
    # Not stripped: whitespace is significant in passwords.
    password: str = Field(min_length=1, max_length=1024)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    """Request body for POST /auth/logout.

    With refresh_token: revokes that token's session (no access token needed).
    Without it: revokes the session bound to the bearer access token.
    """

    refresh_token: Optional[str] = Field(default=None, min_length=1, max_length=512)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Response for POST /auth/login and POST /auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    session_id: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.access_expires_in,
            refresh_expires_in=pair.refresh_expires_in,
            session_id=pair.session_id,
        )


class MeResponse(BaseModel):
    """Response for GET /auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    role: Role
    session_id: Optional[str] = None
    permissions: list[Permission]


class SessionResponse(BaseModel):
    """One active session in GET /auth/sessions. Never exposes the token fingerprint."""

    model_config = ConfigDict(frozen=True)

    id: str
    family_id: str
    issued_at: str
    expires_at: str
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            family_id=session.family_id,
            issued_at=session.issued_at.isoformat(),
            expires_at=session.expires_at.isoformat(),
            current=session.id == current_session_id,
        )


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=8, max_length=1024)
    role: Role = Role.USER

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class UserPatch(BaseModel):
    """Request body for PATCH /users/{id}. Role changes go through /users/{id}/role."""

    is_active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=8, max_length=1024)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value) if value is not None else value


class RolePatch(BaseModel):
    """Request body for PATCH /users/{id}/role."""

    role: Role


class PermissionsChange(BaseModel):
    """Request body for POST /users/{id}/permissions/grant and .../deny."""

    permissions: list[Permission] = Field(min_length=1, max_length=len(Permission))


class UserResponse(BaseModel):
    """Public representation of a user. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: Role
    is_active: bool
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class UserPermissionsResponse(BaseModel):
    """Response for GET /users/{id}/permissions and the grant/deny endpoints."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    role: Role
    baseline: list[Permission]
    granted: list[Permission]
    denied: list[Permission]
    effective: list[Permission]
    version: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    reason: Optional[str] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
