"""
auth/errors.py -- Error taxonomy for the guard layer.

Every failure the guard layer can produce is an AuthError subclass carrying
an HTTP status and a machine-readable code. Guards never let these reach
handler code: the guard chain turns them into a Reject outcome, and
auth/dependencies.py renders that as the shared error envelope. Errors
raised by handlers themselves (NotFound, Conflict, token errors from
/auth/refresh) are rendered by the AuthError exception handler in
api/main.py, so both paths produce the same response shape.

Messages are deliberately generic: InvalidCredentials never says whether
the username or the password was wrong.
"""

from __future__ import annotations

from enum import Enum


class DenyReason(str, Enum):
    """Why the authorization engine refused a principal."""

    ROLE_NOT_ALLOWED = "role_not_allowed"
    PERMISSION_MISSING = "permission_missing"


class AuthError(Exception):
    status_code: int = 401
    code: str = "unauthorized"
    message: str = "Authentication required."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Return the error payload placed under the "error" key of a response."""
        payload: dict = {"code": self.code, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."


class Unauthorized(AuthError):
    """Missing, malformed or expired access token."""

    code = "unauthorized"
    message = "Authentication required."


class TokenExpired(AuthError):
    code = "expired"
    message = "Refresh token has expired."


class TokenRevoked(AuthError):
    code = "revoked"
    message = "Refresh token has been revoked."


class TokenReplayDetected(AuthError):
    """A superseded refresh token was presented again.

    Either a stolen token was used after the legitimate client rotated it,
    or two holders raced the same token. The session family is revoked.
    """

    code = "replay_detected"
    message = "Refresh token reuse detected. All sessions in this family have been revoked."


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        return payload


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    message = "You do not have access to this operation."

    def __init__(self, reason: DenyReason, message: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason.value
        return payload


class NotFound(AuthError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    message = "The resource was modified concurrently or already exists."
