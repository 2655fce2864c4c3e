"""
auth/issuer.py -- Access token, identity token and refresh token minting.

Scopes:
  granted = requested ∩ allowed-for-grant ∩ allowed-for-client. Unknown scope
  names are dropped silently; an empty request yields an empty grant.

Claim destinations:
  Every claim is emitted to the access token. A claim is copied into the
  identity token only when "openid" is granted and the scope that governs it
  is granted too (see _IDENTITY_SCOPE). The identity token is therefore a
  strict subset of the access token.

Refresh tokens:
  Minted only for grants allowed to hold one (authorization_code, password).
  The refresh grant does not mint: its successor was already created by the
  rotator and is passed in as rotated_refresh.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.models import ClaimSet, Client, GrantKind, IssuedRefreshToken, IssuedTokens
from auth.refresh import RefreshTokenStore
from auth.tokens import encode_jwt
from core.clock import Clock, utcnow
from core.config import get_settings

logger = logging.getLogger("deskgate.auth.issuer")

SCOPE_OPENID = "openid"
SCOPE_PROFILE = "profile"
SCOPE_EMAIL = "email"
SCOPE_ROLES = "roles"
SCOPE_OFFLINE = "offline_access"
SCOPE_API = "api"

SUPPORTED_SCOPES: frozenset[str] = frozenset(
    {SCOPE_OPENID, SCOPE_PROFILE, SCOPE_EMAIL, SCOPE_ROLES, SCOPE_OFFLINE, SCOPE_API}
)

_GRANT_SCOPES: dict[GrantKind, frozenset[str]] = {
    GrantKind.AUTHORIZATION_CODE: SUPPORTED_SCOPES,
    GrantKind.PASSWORD: SUPPORTED_SCOPES,
    GrantKind.REFRESH_TOKEN: SUPPORTED_SCOPES,
    GrantKind.CLIENT_CREDENTIALS: frozenset({SCOPE_API}),
}

_REFRESH_ELIGIBLE: frozenset[GrantKind] = frozenset({GrantKind.AUTHORIZATION_CODE, GrantKind.PASSWORD})

# Identity-token claim -> scope that must be granted for it. None = always (with openid).
_IDENTITY_SCOPE: dict[str, str | None] = {
    "sub": None,
    "name": SCOPE_PROFILE,
    "email": SCOPE_EMAIL,
    "role": SCOPE_ROLES,
}


def parse_scope(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """Split a space-delimited scope string, dropping duplicates, keeping order."""
    if raw is None:
        return ()
    items = raw.split() if isinstance(raw, str) else list(raw)
    seen: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return tuple(seen)


def grant_scopes(
    requested: Iterable[str],
    grant_kind: GrantKind,
    client: Client | None = None,
) -> tuple[str, ...]:
    allowed = _GRANT_SCOPES.get(grant_kind, frozenset())
    if client is not None:
        allowed = allowed & client.scopes
    return tuple(sorted(scope for scope in set(requested) if scope in allowed))


def access_token_claims(claim_set: ClaimSet, scopes: tuple[str, ...], client_id: str | None) -> dict:
    claims = {
        "sub": str(claim_set.subject_id),
        "tenant_id": claim_set.tenant_id,
        "name": claim_set.display_name,
        "email": claim_set.email,
        "role": sorted(claim_set.roles),
        "permission": sorted(claim_set.permissions),
        "scope": " ".join(scopes),
    }
    if claim_set.profile:
        claims["profile"] = claim_set.profile
    if client_id:
        claims["client_id"] = client_id
    return claims


def identity_token_claims(access_claims: dict, scopes: tuple[str, ...]) -> dict:
    granted = set(scopes)
    return {
        name: access_claims[name]
        for name, scope in _IDENTITY_SCOPE.items()
        if name in access_claims and (scope is None or scope in granted)
    }


class TokenIssuer:
    def __init__(
        self,
        refresh_store: RefreshTokenStore,
        access_lifetime_seconds: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        self.refresh_store = refresh_store
        self.access_lifetime = (
            access_lifetime_seconds if access_lifetime_seconds is not None else settings.access_token_expire_seconds
        )
        self.audience = settings.jwt_audience
        self._clock = clock

    def issue(
        self,
        claim_set: ClaimSet,
        requested_scopes: Iterable[str],
        grant_kind: GrantKind,
        client: Client | None = None,
        *,
        rotated_refresh: IssuedRefreshToken | None = None,
        nonce: str | None = None,
        source_ip: str | None = None,
        device: str | None = None,
    ) -> IssuedTokens:
        scopes = grant_scopes(requested_scopes, grant_kind, client)
        client_id = client.client_id if client is not None else None
        now = self._clock()

        claims = access_token_claims(claim_set, scopes, client_id)
        access_token = encode_jwt({**claims, "aud": self.audience}, now, self.access_lifetime)

        id_token = None
        if SCOPE_OPENID in scopes:
            id_claims = identity_token_claims(claims, scopes)
            if nonce:
                id_claims["nonce"] = nonce
            id_claims["aud"] = client_id or self.audience
            id_token = encode_jwt(id_claims, now, self.access_lifetime)

        refresh_secret = None
        if grant_kind in _REFRESH_ELIGIBLE:
            minted = self.refresh_store.issue(
                principal_id=claim_set.subject_id,
                tenant_id=claim_set.tenant_id,
                client_id=client_id,
                scopes=scopes,
                device=device,
                ip_address=source_ip,
            )
            refresh_secret = minted.secret
        elif grant_kind is GrantKind.REFRESH_TOKEN and rotated_refresh is not None:
            refresh_secret = rotated_refresh.secret

        logger.info(
            "Issued %s tokens for principal %s (scopes=%s, refresh=%s)",
            grant_kind.value,
            claim_set.subject_id,
            " ".join(scopes) or "-",
            refresh_secret is not None,
        )
        return IssuedTokens(
            access_token=access_token,
            expires_in=self.access_lifetime,
            scopes=scopes,
            refresh_token=refresh_secret,
            id_token=id_token,
        )
