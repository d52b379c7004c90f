"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

get_access_claims() reads "Authorization: Bearer <token>", verifies it with
the AuthService and returns the AccessClaims. InvalidToken / ExpiredToken
propagate as AuthError and the app-level handler turns them into 401s with
distinct codes.

require_role() builds a dependency that re-checks the account's CURRENT role
in the store via AuthService.verify_role_access(). The role embedded in the
token is never trusted for authorization.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import Depends, HTTPException, Request

from auth.errors import ExpiredToken, InvalidToken
from auth.models import AccessClaims, Role
from auth.service import AuthService

logger = logging.getLogger("authcore.auth.dependencies")


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_access_claims(request: Request) -> AccessClaims:
    """Require a valid bearer access token. Raises HTTP 401 when none is sent."""
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    auth_service: AuthService = request.app.state.auth_service
    try:
        return auth_service.authenticate(token)
    except ExpiredToken:
        try:
            subject = request.app.state.codec.decode_unverified(token).get("sub")
        except InvalidToken:
            subject = None
        logger.debug("Expired access token presented for account %s", subject)
        raise


def require_role(role: Role, exact: bool = False) -> Callable[..., AccessClaims]:
    """Return a dependency that allows only accounts whose current role satisfies `role`.

    Use as:
        @router.get("/admin-only")
        async def route(claims: AccessClaims = Depends(require_role(Role.admin))): ...
    """

    def dependency(request: Request, claims: AccessClaims = Depends(get_access_claims)) -> AccessClaims:
        auth_service: AuthService = request.app.state.auth_service
        if not auth_service.verify_role_access(claims.account_id, role, exact=exact):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role for this operation."},
            )
        return claims

    return dependency
