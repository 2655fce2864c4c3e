"""
api/routes/oauth.py -- OAuth 2.0 endpoints.

Routes:
  POST /oauth/token      -- authorization_code, password and refresh_token grants
  GET  /oauth/authorize  -- code for an already signed-in principal (Bearer)
  POST /oauth/authorize  -- code after a login form post
  POST /oauth/revoke     -- revoke one refresh token (RFC 7009); always 200
  POST /oauth/logout     -- revoke every refresh token of the caller (requires auth)

Security:
  Token and authorize endpoints are rate-limited per IP (TOKEN_RATE_LIMIT).
  Token responses carry Cache-Control: no-store and Pragma: no-cache.
  An unknown client or unregistered redirect_uri is answered with an
  invalid_client JSON error, never with a redirect.
  Client credentials are accepted as form fields or HTTP Basic.

The routes are sync (def) on purpose: every store call is blocking SQLAlchemy
I/O, so FastAPI runs them in its threadpool.
"""

from __future__ import annotations

import base64
import binascii
import logging
from urllib.parse import unquote, urlencode

from fastapi import APIRouter, Depends, Form, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, token_rate_limit
from api.models import MessageResponse, OAuthErrorResponse, TokenResponse
from auth.dependencies import AuthenticatedSession, get_current_session, try_get_current_session
from auth.grants import GrantRequest, TokenService
from auth.issuer import parse_scope

logger = logging.getLogger("deskgate.api.oauth")

# Auth policy:
# - POST /oauth/token:      client authentication inside the token service
# - GET  /oauth/authorize:  requires a Bearer session (try_get_current_session)
# - POST /oauth/authorize:  credentials in the form body
# - POST /oauth/revoke:     client authentication inside the token service
# - POST /oauth/logout:     requires auth (get_current_session)
router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def _parse_tenant(header_value: str | None, form_value: str | None) -> int | None:
    raw = header_value or form_value
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _client_credentials(
    request: Request, client_id: str | None, client_secret: str | None
) -> tuple[str | None, str | None]:
    """Form fields win; otherwise fall back to an HTTP Basic Authorization header."""
    if client_id:
        return client_id, client_secret
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Basic "):
        return client_id, client_secret
    try:
        decoded = base64.b64decode(auth_header[6:]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return client_id, client_secret
    basic_id, _, basic_secret = decoded.partition(":")
    return unquote(basic_id) or None, unquote(basic_secret) or None


def _redirect_with(redirect_uri: str, params: dict) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(f"{redirect_uri}{separator}{query}", status_code=302)


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


@limiter.limit(token_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post(
    "/oauth/token",
    response_model=TokenResponse,
    responses={400: {"model": OAuthErrorResponse}, 401: {"model": OAuthErrorResponse}},
)
def token(
    request: Request,
    grant_type: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    scope: str | None = Form(None),
    username: str | None = Form(None),
    password: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    tenant_id: str | None = Form(None),
    x_tenant_id: str | None = Header(None),
) -> JSONResponse:
    """Exchange a grant for tokens.

    Failures raise OAuthError, rendered by the handler in api/main.py as
    {"error": ..., "error_description": ...}.
    """
    service: TokenService = request.app.state.token_service
    client_id, client_secret = _client_credentials(request, client_id, client_secret)
    issued = service.token(
        GrantRequest(
            grant_type=grant_type,
            client_id=client_id,
            client_secret=client_secret,
            scopes=parse_scope(scope),
            tenant_id=_parse_tenant(x_tenant_id, tenant_id),
            username=username,
            password=password,
            code=code,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
            refresh_token=refresh_token,
            source_ip=_client_ip(request),
            device=request.headers.get("User-Agent"),
        )
    )
    return JSONResponse(
        content=TokenResponse.from_issued(issued).model_dump(exclude_none=True),
        headers=NO_STORE_HEADERS,
    )


# ---------------------------------------------------------------------------
# Authorize endpoints
# ---------------------------------------------------------------------------


@limiter.limit(token_rate_limit)
@router.get("/oauth/authorize", response_model=None)
def authorize_session(
    request: Request,
    response_type: str = Query("code"),
    client_id: str | None = Query(None),
    redirect_uri: str | None = Query(None),
    scope: str | None = Query(None),
    state: str | None = Query(None),
    code_challenge: str | None = Query(None),
    code_challenge_method: str | None = Query(None),
    nonce: str | None = Query(None),
) -> RedirectResponse | JSONResponse:
    """Issue an authorization code for the principal behind the Bearer token."""
    service: TokenService = request.app.state.token_service
    client = service.validate_authorize(client_id, redirect_uri)
    if response_type != "code":
        logger.info("Unsupported response_type %r from client %s", response_type, client.client_id)
        return _redirect_with(redirect_uri, {"error": "unsupported_response_type", "state": state})

    session = try_get_current_session(request)
    if session is None:
        return JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Authentication required."}},
            headers={"WWW-Authenticate": "Bearer"},
        )

    code = service.authorize_session(
        client,
        session.principal.id,
        redirect_uri,
        parse_scope(scope),
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    return _redirect_with(redirect_uri, {"code": code, "state": state})


@limiter.limit(token_rate_limit)
@router.post("/oauth/authorize", response_model=None)
def authorize_login(
    request: Request,
    client_id: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    response_type: str = Form("code"),
    scope: str | None = Form(None),
    state: str | None = Form(None),
    code_challenge: str | None = Form(None),
    code_challenge_method: str | None = Form(None),
    nonce: str | None = Form(None),
    username: str | None = Form(None),
    password: str | None = Form(None),
    tenant_id: str | None = Form(None),
    x_tenant_id: str | None = Header(None),
) -> RedirectResponse:
    """Verify the login form and redirect back to the client with a code."""
    service: TokenService = request.app.state.token_service
    client = service.validate_authorize(client_id, redirect_uri)
    if response_type != "code":
        logger.info("Unsupported response_type %r from client %s", response_type, client.client_id)
        return _redirect_with(redirect_uri, {"error": "unsupported_response_type", "state": state})

    code = service.authorize_login(
        client,
        redirect_uri,
        parse_scope(scope),
        login=username,
        password=password,
        tenant_id=_parse_tenant(x_tenant_id, tenant_id),
        source_ip=_client_ip(request),
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    return _redirect_with(redirect_uri, {"code": code, "state": state})


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


@router.post("/oauth/revoke", response_model=MessageResponse)
def revoke(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
) -> JSONResponse:
    """Revoke a refresh token. Unknown tokens are not an error (RFC 7009 section 2.2)."""
    service: TokenService = request.app.state.token_service
    client_id, client_secret = _client_credentials(request, client_id, client_secret)
    service.revoke(token, client_id, client_secret)
    return JSONResponse(content={"message": "Revoked."}, headers=NO_STORE_HEADERS)


@router.post("/oauth/logout", response_model=MessageResponse)
def logout(request: Request, session: AuthenticatedSession = Depends(get_current_session)) -> MessageResponse:
    """Revoke every refresh token of the calling principal."""
    service: TokenService = request.app.state.token_service
    service.logout(session.principal.id, session.principal.tenant_id, _client_ip(request))
    return MessageResponse(message="Logged out.")
