"""
auth/dependencies.py -- FastAPI glue for the guard chain.

Converts a Starlette Request into the framework-neutral GuardRequest /
GuardContext pair that auth/guards.py evaluates, and converts a Reject (or
any AuthError) back into the JSON error envelope:

    {"error": {"code": ..., "message": ..., "reason"?: ..., "retry_after"?: ...}}

Every error response carries Cache-Control: no-store; 429 responses also
carry Retry-After.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request/JSONResponse)
  because this module is the seam between the guards and the HTTP layer.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from auth.errors import AuthError, RateLimited
from auth.guards import GuardContext, GuardRequest, Reject
from auth.services import AuthServices


def bearer_token(request: Request) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def guard_request(request: Request, *, account: str | None = None) -> GuardRequest:
    """Build the GuardRequest for an incoming HTTP request.

    account is the submitted username on login; other routes leave it None.
    """
    return GuardRequest(
        client_ip=get_remote_address(request) or "unknown",
        access_token=bearer_token(request),
        account=account,
        method=request.method,
        path=request.url.path,
    )


def get_services(request: Request) -> AuthServices:
    return request.app.state.services


def guard_context(request: Request) -> GuardContext:
    return GuardContext(services=get_services(request))


def error_response(error: AuthError) -> JSONResponse:
    """Render an AuthError as the structured error envelope."""
    response = JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})
    if isinstance(error, RateLimited):
        response.headers["Retry-After"] = str(error.retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response


def rejection_response(reject: Reject) -> JSONResponse:
    """on_reject hook for compose(): turn a guard rejection into a response."""
    return error_response(reject.error)
