"""
api/routes/v1/admin.py -- Administrative read endpoints.

Routes:
  GET /api/v1/admin/accounts/{account_id}/events -- activity log (admin only)

Role checks go through require_role(), which re-reads the caller's role
from the store on every request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuthEventResponse
from auth.dependencies import require_role
from auth.models import AccessClaims, Role
from auth.store import CredentialStore

router = APIRouter()


@router.get("/admin/accounts/{account_id}/events", response_model=list[AuthEventResponse])
def list_account_events(
    request: Request,
    account_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    _claims: AccessClaims = Depends(require_role(Role.admin)),
) -> list[AuthEventResponse]:
    """Return the account's authentication activity, newest first."""
    store: CredentialStore = request.app.state.store
    if store.find_account_by_id(account_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Account not found."},
        )
    return [AuthEventResponse.from_event(e) for e in store.list_events(account_id, limit=limit)]
