"""
tests/test_issuer.py -- TokenIssuer scopes, claim destinations and refresh minting.

Token payloads are read with jose's get_unverified_claims because the frozen
clock sits in the past; signature and expiry checks belong to the API tests.

Covers:
  - granted = requested ∩ grant-allowed ∩ client-allowed; unknown scopes dropped
  - access token always carries identity, tenant, roles and permissions
  - id_token only with openid; name/email/role gated by their scopes; nonce copied
  - refresh minted for password and authorization_code, never client_credentials
  - refresh grant hands back the rotated secret instead of minting
"""

from __future__ import annotations

import pytest
from jose import jwt

from auth.issuer import TokenIssuer, grant_scopes, parse_scope
from auth.models import ClaimSet, Client, GrantKind
from auth.refresh import RefreshTokenStore

CLAIMS = ClaimSet(
    subject_id=42,
    tenant_id=3,
    display_name="Alice Moreau",
    email="alice@example.com",
    profile="agent",
    roles=frozenset({"agent"}),
    permissions=frozenset({"ticket:read", "ticket:reply"}),
)


@pytest.fixture
def refresh_store(engine, clock) -> RefreshTokenStore:
    return RefreshTokenStore(engine, lifetime_seconds=3600, clock=clock)


@pytest.fixture
def issuer(refresh_store, clock) -> TokenIssuer:
    return TokenIssuer(refresh_store, access_lifetime_seconds=600, clock=clock)


def _client(scopes: set[str]) -> Client:
    return Client(client_id="web", display_name="Web", scopes=scopes, grant_types=set(GrantKind))


class TestScopes:
    def test_unknown_scopes_dropped(self) -> None:
        assert grant_scopes(("api", "launch-missiles"), GrantKind.PASSWORD) == ("api",)

    def test_client_restricts(self) -> None:
        assert grant_scopes(("api", "email"), GrantKind.PASSWORD, _client({"api"})) == ("api",)

    def test_client_credentials_only_api(self) -> None:
        assert grant_scopes(("openid", "api"), GrantKind.CLIENT_CREDENTIALS) == ("api",)

    def test_empty_request_is_empty_grant(self) -> None:
        assert grant_scopes((), GrantKind.PASSWORD) == ()

    def test_parse_scope(self) -> None:
        assert parse_scope("openid  api openid") == ("openid", "api")
        assert parse_scope(None) == ()


class TestAccessToken:
    def test_claims(self, issuer: TokenIssuer) -> None:
        issued = issuer.issue(CLAIMS, ("api",), GrantKind.PASSWORD, _client({"api"}))
        payload = jwt.get_unverified_claims(issued.access_token)
        assert payload["sub"] == "42"
        assert payload["tenant_id"] == 3
        assert payload["role"] == ["agent"]
        assert payload["permission"] == ["ticket:read", "ticket:reply"]
        assert payload["scope"] == "api"
        assert payload["client_id"] == "web"
        assert payload["iss"] == "deskgate"
        assert payload["aud"] == "deskgate-api"
        assert payload["exp"] - payload["iat"] == 600
        assert issued.expires_in == 600
        assert issued.token_type == "Bearer"

    def test_unique_jti(self, issuer: TokenIssuer) -> None:
        first = jwt.get_unverified_claims(issuer.issue(CLAIMS, (), GrantKind.CLIENT_CREDENTIALS).access_token)
        second = jwt.get_unverified_claims(issuer.issue(CLAIMS, (), GrantKind.CLIENT_CREDENTIALS).access_token)
        assert first["jti"] != second["jti"]


class TestIdentityToken:
    def test_absent_without_openid(self, issuer: TokenIssuer) -> None:
        assert issuer.issue(CLAIMS, ("api", "profile"), GrantKind.PASSWORD).id_token is None

    def test_sub_only_with_bare_openid(self, issuer: TokenIssuer) -> None:
        issued = issuer.issue(CLAIMS, ("openid",), GrantKind.PASSWORD, _client({"openid"}))
        payload = jwt.get_unverified_claims(issued.id_token)
        assert payload["sub"] == "42"
        assert payload["aud"] == "web"
        for name in ("name", "email", "role", "permission", "tenant_id"):
            assert name not in payload

    def test_scope_gated_claims(self, issuer: TokenIssuer) -> None:
        scopes = ("openid", "profile", "email", "roles")
        issued = issuer.issue(CLAIMS, scopes, GrantKind.AUTHORIZATION_CODE, nonce="xyz")
        payload = jwt.get_unverified_claims(issued.id_token)
        assert payload["name"] == "Alice Moreau"
        assert payload["email"] == "alice@example.com"
        assert payload["role"] == ["agent"]
        assert payload["nonce"] == "xyz"
        assert "permission" not in payload


class TestRefreshMinting:
    @pytest.mark.parametrize("grant", [GrantKind.PASSWORD, GrantKind.AUTHORIZATION_CODE])
    def test_minted_for_interactive_grants(self, issuer: TokenIssuer, refresh_store, grant) -> None:
        issued = issuer.issue(CLAIMS, ("api",), grant, _client({"api"}))
        assert issued.refresh_token is not None
        [record] = refresh_store.list_for_principal(42)
        assert record.scopes == ("api",)
        assert record.client_id == "web"

    def test_never_for_client_credentials(self, issuer: TokenIssuer, refresh_store) -> None:
        issued = issuer.issue(CLAIMS, ("api", "offline_access"), GrantKind.CLIENT_CREDENTIALS)
        assert issued.refresh_token is None
        assert refresh_store.list_for_principal(42) == []

    def test_refresh_grant_returns_rotated_secret(self, issuer: TokenIssuer, refresh_store) -> None:
        first = refresh_store.issue(principal_id=42, tenant_id=3)
        successor = refresh_store.redeem(first.secret)
        issued = issuer.issue(CLAIMS, (), GrantKind.REFRESH_TOKEN, rotated_refresh=successor)
        assert issued.refresh_token == successor.secret
        assert len(refresh_store.list_for_principal(42)) == 2
