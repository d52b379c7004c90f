"""
api/routes/v1/auth.py -- Authentication and password REST endpoints.

Routes:
  POST /api/v1/auth/login             -- password login; returns access + refresh tokens
  POST /api/v1/auth/refresh           -- rotate refresh token; returns a new pair
  POST /api/v1/auth/logout            -- revoke one refresh token (idempotent)
  POST /api/v1/auth/logout-all        -- revoke every session of the caller (bearer)
  GET  /api/v1/auth/me                -- current account (bearer)
  POST /api/v1/auth/password/forgot   -- request a reset link; uniform 202
  POST /api/v1/auth/password/reset    -- consume a reset token, set new password
  POST /api/v1/auth/password/change   -- change password with the current one (bearer)

Security:
  POST /login and /password/forgot are rate-limited per IP (LOGIN_RATE_LIMIT).
  Login failures of every kind return the same 401 body (api/errors.py).
  Every response that carries a credential sets Cache-Control: no-store.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.errors import auth_error_response
from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    ResetPasswordRequest,
    TokenResponse,
)
from auth.dependencies import get_access_claims
from auth.errors import AuthError
from auth.models import AccessClaims
from auth.service import AuthService, PasswordService

# Auth policy:
# - POST /auth/login, /auth/refresh, /auth/logout:  public -- the credential is in the body
# - POST /auth/password/forgot, /password/reset:    public -- the reset token is the credential
# - POST /auth/logout-all, /password/change:        requires bearer (get_access_claims)
# - GET  /auth/me:                                  requires bearer (get_access_claims)
router = APIRouter()


def _client(request: Request) -> tuple[str | None, str | None]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("User-Agent")


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)  # below @router so the registered endpoint is the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh token pair."""
    auth_service: AuthService = request.app.state.auth_service
    ip, user_agent = _client(request)
    try:
        result = auth_service.login(body.email, body.password, ip, user_agent)
    except AuthError as exc:
        return auth_error_response(exc, flow="login")

    payload = LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=result.tokens.access_expires_in,
        account=AccountResponse.from_public(result.account),
    )
    return _no_store(payload.model_dump(mode="json"))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is revoked.

    Presenting an already-rotated token revokes the whole session chain.
    """
    auth_service: AuthService = request.app.state.auth_service
    ip, user_agent = _client(request)
    try:
        tokens = auth_service.refresh(body.refresh_token, ip, user_agent)
    except AuthError as exc:
        return auth_error_response(exc, flow="refresh")
    payload = TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.access_expires_in,
    )
    return _no_store(payload.model_dump())


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest) -> MessageResponse:
    """Revoke the given refresh token. Always 200, even for unknown tokens."""
    auth_service: AuthService = request.app.state.auth_service
    ip, user_agent = _client(request)
    auth_service.logout(body.refresh_token, ip, user_agent)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, claims: AccessClaims = Depends(get_access_claims)) -> MessageResponse:
    """Revoke every refresh token of the authenticated account."""
    auth_service: AuthService = request.app.state.auth_service
    ip, user_agent = _client(request)
    revoked = auth_service.logout_account(claims.account_id, ip, user_agent)
    return MessageResponse(message=f"Logged out of {revoked} session(s).")


@router.get("/auth/me", response_model=AccountResponse)
def me(request: Request, claims: AccessClaims = Depends(get_access_claims)) -> AccountResponse:
    """Return the current account, re-read from the store."""
    auth_service: AuthService = request.app.state.auth_service
    account = auth_service.get_account(claims.account_id)
    if account is None or not account.is_active:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return AccountResponse.from_public(account)


# ---------------------------------------------------------------------------
# Password endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/password/forgot", response_model=MessageResponse, status_code=202)
@limiter.limit(login_rate_limit)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Request a password reset link. Same 202 response whether or not the account exists."""
    password_service: PasswordService = request.app.state.password_service
    ip, user_agent = _client(request)
    message = password_service.request_reset(body.email, ip, user_agent)
    return JSONResponse(status_code=202, content=MessageResponse(message=message).model_dump())


@router.post("/auth/password/reset", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Consume a reset token and set a new password. Signs the account out everywhere."""
    password_service: PasswordService = request.app.state.password_service
    ip, user_agent = _client(request)
    try:
        password_service.reset_password(body.token, body.new_password, ip, user_agent)
    except AuthError as exc:
        return auth_error_response(exc, flow="reset")
    return _no_store(MessageResponse(message="Password has been reset. Please log in again.").model_dump())


@router.post("/auth/password/change", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    claims: AccessClaims = Depends(get_access_claims),
) -> JSONResponse:
    """Change the caller's password. Requires the current password; signs out every session."""
    password_service: PasswordService = request.app.state.password_service
    ip, user_agent = _client(request)
    try:
        password_service.change_password(claims.account_id, body.current_password, body.new_password, ip, user_agent)
    except AuthError as exc:
        return auth_error_response(exc, flow="change")
    return _no_store(MessageResponse(message="Password changed. Please log in again.").model_dump())
