"""
auth/grants.py -- Grant handlers and the token service that dispatches to them.

Flows:
  password            verify credentials -> audit -> assemble claims -> issue
  authorization_code  authorize leg: session or login form -> short-lived code
                      exchange leg: consume code -> fresh principal read ->
                      assemble claims -> issue with the code's scopes
  refresh_token       rotate -> fresh principal read -> assemble -> issue

Every handler raises AuthError subclasses with full internal detail. Only
TokenService translates them to OAuthError, using the handler's generic
invalid_grant description, so "unknown login", "deactivated account",
"expired token" and "replayed token" all look the same on the wire.

A principal that is missing or deactivated fails every flow. On the refresh
flow the successor token minted by rotation is revoked together with the rest
of the principal's tokens before the failure is returned.

Audit writes go through AuditRecorder and never block issuance.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from auth.audit import (
    ACCOUNT_NOT_ACTIVE,
    CODE_EXCHANGE_DENIED,
    INVALID_CREDENTIAL,
    LOGIN_SUCCESSFUL,
    OAUTH_PREFIX,
    REFRESH_DENIED,
    REFRESH_REUSE_DETECTED,
    TOKENS_REVOKED,
    UNKNOWN_LOGIN,
    AuditRecorder,
)
from auth.claims import ClaimsAssembler
from auth.codes import AuthorizationCodeStore
from auth.errors import (
    AccountInactive,
    AuthError,
    AuthorizationCodeInvalid,
    GrantError,
    InvalidCredentials,
    OAuthError,
    PrincipalNotFound,
    TokenNotFound,
    TokenReused,
    UnknownClient,
    UnsupportedGrant,
)
from auth.issuer import TokenIssuer, grant_scopes
from auth.models import AuditEventKind, Client, GrantKind, IssuedTokens, Principal
from auth.refresh import RefreshTokenStore
from auth.store import IdentityStore
from auth.tokens import hash_secret, secret_matches
from auth.verifier import CredentialVerifier

logger = logging.getLogger("deskgate.auth.grants")

PASSWORD_GRANT_DESCRIPTION = "Invalid login or password."
CODE_GRANT_DESCRIPTION = "The authorization code is no longer valid."
REFRESH_GRANT_DESCRIPTION = "The refresh token is no longer valid."


@dataclass
class GrantRequest:
    """One inbound token request, already parsed off the wire."""

    grant_type: str | None
    client_id: str | None
    client_secret: str | None = None
    scopes: tuple[str, ...] = ()
    tenant_id: int | None = None
    username: str | None = None
    password: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    source_ip: str = ""
    device: str | None = None


def authenticate_client(identity: IdentityStore, client_id: str | None, client_secret: str | None) -> Client:
    """Resolve the calling client. Confidential clients must present their secret."""
    client = identity.get_client(client_id) if client_id else None
    if client is None:
        raise UnknownClient(f"client {client_id!r} is not registered")
    if client.is_confidential and not (client_secret and secret_matches(client_secret, client.secret_hash)):
        raise UnknownClient(f"client {client_id!r} failed authentication")
    return client


def _require_usable(principal: Principal | None, principal_id: int) -> Principal:
    if principal is None:
        raise PrincipalNotFound(f"principal {principal_id} no longer exists", principal_id=principal_id)
    if not principal.is_active:
        raise AccountInactive("account not active", principal_id=principal_id)
    return principal


# ---------------------------------------------------------------------------
# Password
# ---------------------------------------------------------------------------


class PasswordGrantHandler:
    grant_kind = GrantKind.PASSWORD
    error_description = PASSWORD_GRANT_DESCRIPTION

    def __init__(
        self,
        verifier: CredentialVerifier,
        assembler: ClaimsAssembler,
        issuer: TokenIssuer,
        audit: AuditRecorder,
    ) -> None:
        self.verifier = verifier
        self.assembler = assembler
        self.issuer = issuer
        self.audit = audit

    def handle(self, request: GrantRequest, client: Client) -> IssuedTokens:
        principal = verify_and_audit(
            self.verifier, self.audit, request.username, request.password, request.tenant_id, request.source_ip
        )
        claim_set = self.assembler.assemble(principal)
        return self.issuer.issue(
            claim_set,
            request.scopes,
            self.grant_kind,
            client,
            source_ip=request.source_ip,
            device=request.device,
        )


def verify_and_audit(
    verifier: CredentialVerifier,
    audit: AuditRecorder,
    login: str | None,
    password: str | None,
    tenant_id: int | None,
    source_ip: str,
    detail_prefix: str = "",
) -> Principal:
    """Run the credential verifier and record the outcome with the audit sink."""
    if not login or password is None or tenant_id is None:
        audit.record(detail_prefix + UNKNOWN_LOGIN, None, tenant_id, source_ip)
        raise InvalidCredentials("login, password and tenant are required")
    try:
        principal = verifier.verify(login, password, tenant_id)
    except AccountInactive as exc:
        audit.record(detail_prefix + ACCOUNT_NOT_ACTIVE, exc.principal_id, tenant_id, source_ip)
        raise
    except InvalidCredentials as exc:
        detail = INVALID_CREDENTIAL if exc.principal_id is not None else UNKNOWN_LOGIN
        audit.record(detail_prefix + detail, exc.principal_id, tenant_id, source_ip)
        raise
    audit.record(detail_prefix + LOGIN_SUCCESSFUL, principal.id, tenant_id, source_ip)
    return principal


# ---------------------------------------------------------------------------
# Authorization code
# ---------------------------------------------------------------------------


class AuthorizationCodeGrantHandler:
    grant_kind = GrantKind.AUTHORIZATION_CODE
    error_description = CODE_GRANT_DESCRIPTION

    def __init__(
        self,
        identity: IdentityStore,
        verifier: CredentialVerifier,
        assembler: ClaimsAssembler,
        issuer: TokenIssuer,
        codes: AuthorizationCodeStore,
        audit: AuditRecorder,
    ) -> None:
        self.identity = identity
        self.verifier = verifier
        self.assembler = assembler
        self.issuer = issuer
        self.codes = codes
        self.audit = audit

    # -- authorize leg ---------------------------------------------------

    def validate_client(self, client_id: str | None, redirect_uri: str | None) -> Client:
        """Check the client and its redirect URI before anything is redirected there."""
        client = self.identity.get_client(client_id) if client_id else None
        if client is None:
            raise UnknownClient(f"client {client_id!r} is not registered")
        if not redirect_uri or redirect_uri not in client.redirect_uris:
            raise UnknownClient(f"redirect_uri {redirect_uri!r} is not registered for client {client_id!r}")
        if self.grant_kind not in client.grant_types:
            raise UnsupportedGrant(f"client {client_id!r} may not use the authorization code flow")
        return client

    def authorize_session(
        self,
        client: Client,
        principal_id: int,
        redirect_uri: str,
        scopes: tuple[str, ...],
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        nonce: str | None = None,
    ) -> str:
        """Issue a code for a principal that is already signed in."""
        principal = _require_usable(self.identity.get_principal(principal_id), principal_id)
        return self._issue_code(client, principal, redirect_uri, scopes, code_challenge, code_challenge_method, nonce)

    def authorize_login(
        self,
        client: Client,
        login: str | None,
        password: str | None,
        tenant_id: int | None,
        redirect_uri: str,
        scopes: tuple[str, ...],
        source_ip: str = "",
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        nonce: str | None = None,
    ) -> str:
        """Verify credentials from the login form, then issue a code."""
        principal = verify_and_audit(
            self.verifier, self.audit, login, password, tenant_id, source_ip, detail_prefix=OAUTH_PREFIX
        )
        return self._issue_code(client, principal, redirect_uri, scopes, code_challenge, code_challenge_method, nonce)

    def _issue_code(
        self,
        client: Client,
        principal: Principal,
        redirect_uri: str,
        scopes: tuple[str, ...],
        code_challenge: str | None,
        code_challenge_method: str | None,
        nonce: str | None,
    ) -> str:
        if not client.is_confidential and not code_challenge:
            raise AuthorizationCodeInvalid(
                f"public client {client.client_id!r} must use PKCE", principal_id=principal.id
            )
        code, _ = self.codes.issue(
            client_id=client.client_id,
            principal_id=principal.id,
            tenant_id=principal.tenant_id,
            redirect_uri=redirect_uri,
            scopes=grant_scopes(scopes, self.grant_kind, client),
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            nonce=nonce,
        )
        return code

    # -- exchange leg ----------------------------------------------------

    def handle(self, request: GrantRequest, client: Client) -> IssuedTokens:
        if not request.code:
            raise TokenNotFound("authorization code missing")
        record = self.codes.consume(request.code, client.client_id, request.redirect_uri, request.code_verifier)

        # Fresh read: the principal may have been deactivated since the code was issued.
        try:
            principal = _require_usable(self.identity.get_principal(record.principal_id), record.principal_id)
        except GrantError as exc:
            self.audit.record(
                OAUTH_PREFIX + CODE_EXCHANGE_DENIED + f" ({exc})",
                record.principal_id,
                record.tenant_id,
                request.source_ip,
                kind=AuditEventKind.TOKEN,
            )
            raise

        claim_set = self.assembler.assemble(principal)
        return self.issuer.issue(
            claim_set,
            record.scopes,
            self.grant_kind,
            client,
            nonce=record.nonce,
            source_ip=request.source_ip,
            device=request.device,
        )


# ---------------------------------------------------------------------------
# Refresh token
# ---------------------------------------------------------------------------


class RefreshTokenGrantHandler:
    grant_kind = GrantKind.REFRESH_TOKEN
    error_description = REFRESH_GRANT_DESCRIPTION

    def __init__(
        self,
        identity: IdentityStore,
        refresh_store: RefreshTokenStore,
        assembler: ClaimsAssembler,
        issuer: TokenIssuer,
        audit: AuditRecorder,
    ) -> None:
        self.identity = identity
        self.refresh_store = refresh_store
        self.assembler = assembler
        self.issuer = issuer
        self.audit = audit

    def handle(self, request: GrantRequest, client: Client) -> IssuedTokens:
        if not request.refresh_token:
            raise TokenNotFound("refresh token missing")
        try:
            successor = self.refresh_store.redeem(request.refresh_token, client_id=client.client_id)
        except TokenReused as exc:
            self.audit.record(
                REFRESH_REUSE_DETECTED, exc.principal_id, exc.tenant_id, request.source_ip, kind=AuditEventKind.TOKEN
            )
            raise

        record = successor.record
        try:
            principal = _require_usable(self.identity.get_principal(record.principal_id), record.principal_id)
        except GrantError as exc:
            try:
                revoked = self.refresh_store.revoke_for_principal(record.principal_id)
            except SQLAlchemyError:
                logger.exception("Revocation after denied refresh failed for principal %s", record.principal_id)
            else:
                logger.warning(
                    "Refresh denied for principal %s (%s); revoked %d token(s)", record.principal_id, exc, revoked
                )
            self.audit.record(
                REFRESH_DENIED + f" ({exc})",
                record.principal_id,
                record.tenant_id,
                request.source_ip,
                kind=AuditEventKind.TOKEN,
            )
            raise

        # A refresh request may narrow the original grant, never widen it.
        scopes = record.scopes
        if request.scopes:
            scopes = tuple(scope for scope in request.scopes if scope in record.scopes)

        claim_set = self.assembler.assemble(principal)
        return self.issuer.issue(
            claim_set,
            scopes,
            self.grant_kind,
            client,
            rotated_refresh=successor,
            source_ip=request.source_ip,
        )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TokenService:
    """Entry point for the HTTP layer. Raises only OAuthError.

    Usage:
        service = TokenService(identity, refresh_store, code_handler, [password_handler, refresh_handler], audit)
        tokens = service.token(GrantRequest(grant_type="password", client_id="web", ...))
    """

    def __init__(
        self,
        identity: IdentityStore,
        refresh_store: RefreshTokenStore,
        code_handler: AuthorizationCodeGrantHandler,
        other_handlers: list,
        audit: AuditRecorder,
    ) -> None:
        self.identity = identity
        self.refresh_store = refresh_store
        self.code_handler = code_handler
        self.handlers = {handler.grant_kind: handler for handler in [code_handler, *other_handlers]}
        self.audit = audit

    def token(self, request: GrantRequest) -> IssuedTokens:
        grant_kind = GrantKind.parse(request.grant_type)
        handler = self.handlers.get(grant_kind) if grant_kind is not None else None
        description = getattr(handler, "error_description", PASSWORD_GRANT_DESCRIPTION)
        try:
            if handler is None:
                raise UnsupportedGrant(f"grant_type {request.grant_type!r} is not supported")
            client = authenticate_client(self.identity, request.client_id, request.client_secret)
            if grant_kind not in client.grant_types:
                raise UnsupportedGrant(f"client {client.client_id!r} may not use {grant_kind.value}")
            return handler.handle(request, client)
        except AuthError as exc:
            logger.info(
                "Token request denied (grant=%s, client=%s): %s: %s",
                request.grant_type,
                request.client_id,
                type(exc).__name__,
                exc,
            )
            raise OAuthError.from_auth_error(exc, description) from exc

    def validate_authorize(self, client_id: str | None, redirect_uri: str | None) -> Client:
        try:
            return self.code_handler.validate_client(client_id, redirect_uri)
        except AuthError as exc:
            logger.info("Authorize request rejected (client=%s): %s", client_id, exc)
            raise OAuthError.from_auth_error(exc, CODE_GRANT_DESCRIPTION) from exc

    def authorize_session(self, client: Client, principal_id: int, redirect_uri: str, scopes, **kwargs) -> str:
        try:
            return self.code_handler.authorize_session(client, principal_id, redirect_uri, scopes, **kwargs)
        except AuthError as exc:
            logger.info("Authorize (session) denied for principal %s: %s", principal_id, exc)
            raise OAuthError.from_auth_error(exc, CODE_GRANT_DESCRIPTION) from exc

    def authorize_login(self, client: Client, redirect_uri: str, scopes, **kwargs) -> str:
        try:
            return self.code_handler.authorize_login(client, redirect_uri=redirect_uri, scopes=scopes, **kwargs)
        except AuthError as exc:
            logger.info("Authorize (login form) denied for client %s: %s", client.client_id, exc)
            raise OAuthError.from_auth_error(exc, PASSWORD_GRANT_DESCRIPTION) from exc

    def revoke(self, token: str | None, client_id: str | None, client_secret: str | None) -> None:
        """Revoke one refresh token. Succeeds silently when the token is unknown."""
        try:
            client = authenticate_client(self.identity, client_id, client_secret)
        except AuthError as exc:
            raise OAuthError.from_auth_error(exc, REFRESH_GRANT_DESCRIPTION) from exc
        if not token:
            return
        token_hash = hash_secret(token)
        record = self.refresh_store.get_by_hash(token_hash)
        if record is None or record.client_id not in (None, client.client_id):
            return
        if self.refresh_store.revoke_by_hash(token_hash):
            logger.info("Refresh token %s revoked by client %s", record.id, client.client_id)

    def logout(self, principal_id: int, tenant_id: int | None, source_ip: str = "") -> int:
        """Revoke every refresh token of the principal. Returns the count revoked."""
        revoked = self.refresh_store.revoke_for_principal(principal_id)
        self.audit.record(TOKENS_REVOKED, principal_id, tenant_id, source_ip, kind=AuditEventKind.TOKEN)
        logger.info("Principal %s logged out; revoked %d refresh token(s)", principal_id, revoked)
        return revoked
