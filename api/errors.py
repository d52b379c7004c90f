"""
api/errors.py -- Maps auth core error kinds to HTTP responses.

The core keeps its error kinds distinct so control flow can branch on them.
Externally most of them collapse into one deliberately vague answer per
flow, so a client cannot tell "no such email" from "wrong password" from
"locked", or a guessed refresh token from a revoked one.

Flows:
  login   -- InvalidCredentials / AccountLocked / AccountInactive -> 401 invalid_credentials
  refresh -- TokenNotFound / TokenRevoked / TokenExpired          -> 401 invalid_refresh_token
  reset   -- TokenNotFound / TokenExpired / TokenAlreadyUsed      -> 400 invalid_reset_token
  change  -- InvalidCredentials                                   -> 400 invalid_credentials
Access-token failures keep their own codes: a client retries a refresh on
token_expired and must not on invalid_token. PasswordTooLong is a 422 in
every flow, the same answer request validation gives.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthError, ErrorKind

_FLOW_ERRORS: dict[str, tuple[int, str, str]] = {
    "login": (401, "invalid_credentials", "Invalid email or password."),
    "refresh": (401, "invalid_refresh_token", "Session is no longer valid. Please log in again."),
    "reset": (400, "invalid_reset_token", "This reset link is invalid or has expired."),
    "change": (400, "invalid_credentials", "Current password is incorrect."),
}

# Kinds that keep their own answer whatever the flow.
_KIND_ERRORS: dict[ErrorKind, tuple[int, str, str]] = {
    ErrorKind.invalid_token: (401, "invalid_token", "Access token is invalid."),
    ErrorKind.expired_token: (401, "token_expired", "Access token has expired."),
    ErrorKind.password_too_long: (422, "validation_error", "Password must be at most 72 bytes."),
}

# Flow assumed when an AuthError escapes a route without an explicit flow.
_DEFAULT_FLOW: dict[ErrorKind, str] = {
    ErrorKind.invalid_credentials: "login",
    ErrorKind.account_locked: "login",
    ErrorKind.account_inactive: "login",
    ErrorKind.token_not_found: "refresh",
    ErrorKind.token_revoked: "refresh",
    ErrorKind.token_expired: "refresh",
    ErrorKind.token_already_used: "reset",
}


def error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Wrap an error in the {"error": {"code", "message", "detail"}} envelope every endpoint uses."""
    payload = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=payload.model_dump(), headers=headers)


def auth_error_response(exc: AuthError, flow: str | None = None) -> JSONResponse:
    """Build the external response for an auth core error."""
    if exc.kind in _KIND_ERRORS:
        status, code, message = _KIND_ERRORS[exc.kind]
    else:
        status, code, message = _FLOW_ERRORS[flow or _DEFAULT_FLOW[exc.kind]]
    headers = {"Cache-Control": "no-store"}
    if status == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return error_response(status, code, message, headers=headers)
