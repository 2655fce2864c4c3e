"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Callers present the access token as "Authorization: Bearer <token>". The token
is verified (signature, issuer, audience, expiry) and then the principal it
names is re-read from storage: a principal deactivated or deleted after the
token was issued is rejected immediately, not at the next refresh.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_permission(name) returns a dependency that also raises HTTP 403 when
the token does not carry the named permission.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.models import Principal, normalize_name
from auth.store import IdentityStore
from auth.tokens import decode_access_token


@dataclass
class AuthenticatedSession:
    """The principal behind a verified access token, plus the token's claims."""

    principal: Principal
    claims: dict

    @property
    def permissions(self) -> list[str]:
        return list(self.claims.get("permission", []))

    def has_permission(self, name: str) -> bool:
        wanted = normalize_name(name)
        return any(normalize_name(value) == wanted for value in self.permissions)


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_session(request: Request) -> AuthenticatedSession | None:
    """Authenticate the request via its Bearer token.

    Returns None on any failure. Never raises -- callers that need a hard 401
    should use get_current_session().
    """
    token = bearer_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    try:
        principal_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None

    identity: IdentityStore = request.app.state.identity_store
    principal = identity.get_principal(principal_id)
    if principal is None or not principal.is_active or principal.tenant_id != payload["tenant_id"]:
        return None
    return AuthenticatedSession(principal=principal, claims=payload)


def get_current_session(request: Request) -> AuthenticatedSession:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: AuthenticatedSession = Depends(get_current_session)): ...
    """
    session = try_get_current_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


def require_permission(name: str) -> Callable[[Request], AuthenticatedSession]:
    """Build a dependency that requires the named permission claim.

    Use as a FastAPI dependency:
        @router.get("/tickets")
        async def route(session = Depends(require_permission("ticket:read"))): ...
    """

    def dependency(request: Request) -> AuthenticatedSession:
        session = get_current_session(request)
        if not session.has_permission(name):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission {name!r} required."},
            )
        return session

    return dependency
