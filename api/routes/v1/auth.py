"""
api/routes/v1/auth.py -- Session introspection endpoint.

Routes:
  GET /api/v1/auth/me  -- claims of the caller's access token (requires auth)

Bearer validation re-reads the principal, so a deactivated account gets 401
here even while its access token has not yet expired.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import MeResponse
from auth.dependencies import AuthenticatedSession, get_current_session

# Auth policy:
# - GET /api/v1/auth/me: requires auth (get_current_session)
router = APIRouter()


@router.get("/auth/me", response_model=MeResponse)
def me(session: AuthenticatedSession = Depends(get_current_session)) -> MeResponse:
    """Return the identity, roles and permissions of the authenticated principal."""
    return MeResponse.from_session(session)
