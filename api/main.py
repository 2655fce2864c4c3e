"""
api/main.py -- FastAPI application entry point for DeskGate.

Exposes the authentication and token-issuance core over HTTP: the OAuth
token/authorize/revoke endpoints plus session introspection and health.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph once per process: engine -> stores ->
verifier / assembler / issuer -> grant handlers -> token service, and hangs
the pieces routes need on app.state. Shutdown disposes the engine pool.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.oauth import NO_STORE_HEADERS
from api.routes.oauth import router as oauth_router
from api.routes.v1.auth import router as auth_router
from auth.audit import AuditRecorder, AuditStore
from auth.claims import ClaimsAssembler
from auth.codes import AuthorizationCodeStore
from auth.errors import INVALID_CLIENT, OAuthError
from auth.grants import (
    AuthorizationCodeGrantHandler,
    PasswordGrantHandler,
    RefreshTokenGrantHandler,
    TokenService,
)
from auth.issuer import TokenIssuer
from auth.refresh import RefreshTokenStore
from auth.store import IdentityStore, init_schema
from auth.verifier import CredentialVerifier
from core.config import get_settings
from core.database import check_db_connected, create_db_engine

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("deskgate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Object graph
# ---------------------------------------------------------------------------


def wire_app_state(app: FastAPI, engine: Engine) -> None:
    """Build every store and handler on top of engine and attach them to app.state.

    Tests call this directly with an in-memory engine.
    """
    identity = IdentityStore(engine)
    refresh_store = RefreshTokenStore(engine)
    codes = AuthorizationCodeStore(engine)
    audit_store = AuditStore(engine)
    audit = AuditRecorder(audit_store)

    verifier = CredentialVerifier(identity)
    assembler = ClaimsAssembler(identity)
    issuer = TokenIssuer(refresh_store)

    code_handler = AuthorizationCodeGrantHandler(identity, verifier, assembler, issuer, codes, audit)
    password_handler = PasswordGrantHandler(verifier, assembler, issuer, audit)
    refresh_handler = RefreshTokenGrantHandler(identity, refresh_store, assembler, issuer, audit)

    app.state.engine = engine
    app.state.identity_store = identity
    app.state.refresh_store = refresh_store
    app.state.audit_store = audit_store
    app.state.token_service = TokenService(
        identity, refresh_store, code_handler, [password_handler, refresh_handler], audit
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the engine and schema on startup; dispose the pool on shutdown."""
    logger.info("DeskGate API starting up")
    engine = create_db_engine(_settings.database_url)
    init_schema(engine)
    wire_app_state(app, engine)
    logger.info("Auth core initialized")

    yield

    engine.dispose()
    logger.info("DeskGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DeskGate API",
    description="Authentication and token issuance for the DeskGate helpdesk.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-Tenant-ID"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(oauth_router, tags=["OAuth"])
app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# OAuthError keeps the RFC 6749 body so OAuth client libraries can parse it.
# Every other handler returns the ErrorResponse envelope.
# ---------------------------------------------------------------------------


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    headers = dict(NO_STORE_HEADERS)
    if exc.error == INVALID_CLIENT:
        headers["WWW-Authenticate"] = 'Basic realm="deskgate"'
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured dict details are used as-is; anything else is wrapped."""
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No rate limit: load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and database reachability."""
    engine = getattr(request.app.state, "engine", None)
    db_ok = engine is not None and check_db_connected(engine)
    body = HealthResponse(
        status="ok" if db_ok else "degraded",
        version=VERSION,
        database="ok" if db_ok else "unavailable",
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
