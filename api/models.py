"""
API request and response models for the DeskGate HTTP endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The token endpoint's success and error bodies follow RFC 6749 field names
(access_token, token_type, error, error_description) because OAuth client
libraries parse them by name. Everything else uses the ErrorResponse envelope.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from auth.dependencies import AuthenticatedSession
from auth.models import IssuedTokens

# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Successful POST /oauth/token body."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    scope: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None

    @classmethod
    def from_issued(cls, issued: IssuedTokens) -> "TokenResponse":
        return cls(
            access_token=issued.access_token,
            token_type=issued.token_type,
            expires_in=issued.expires_in,
            scope=" ".join(issued.scopes),
            refresh_token=issued.refresh_token,
            id_token=issued.id_token,
        )


class OAuthErrorResponse(BaseModel):
    error: str
    error_description: str


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Claim set carried by the caller's access token."""

    subject_id: int
    tenant_id: int
    login: str
    name: str
    email: str
    profile: Optional[str] = None
    roles: list[str]
    permissions: list[str]
    scope: str

    @classmethod
    def from_session(cls, session: AuthenticatedSession) -> "MeResponse":
        claims = session.claims
        return cls(
            subject_id=session.principal.id,
            tenant_id=session.principal.tenant_id,
            login=session.principal.login,
            name=claims.get("name", ""),
            email=claims.get("email", ""),
            profile=claims.get("profile"),
            roles=list(claims.get("role", [])),
            permissions=list(claims.get("permission", [])),
            scope=claims.get("scope", ""),
        )


# ---------------------------------------------------------------------------
# Envelope and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every non-OAuth exception handler."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    database: str = "ok"
