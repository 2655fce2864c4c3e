"""
auth/codes.py -- Authorization codes for the code-with-redirect flow.

A code is a random secret bound to the client, principal, tenant, redirect URI,
granted scopes, nonce and optional PKCE challenge chosen at authorize time.
Only its HMAC hash is stored.

Exchange is single-use: the consume step is a conditional UPDATE on
consumed_at IS NULL, so of two concurrent exchanges exactly one wins. Every
failure is an AuthorizationCodeInvalid with the concrete reason in the
message; the grant handler collapses it to invalid_grant.

PKCE (RFC 7636): S256 challenges are verified with Authlib's
create_s256_code_challenge; "plain" compares the verifier directly.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
from datetime import timedelta

from authlib.oauth2.rfc7636 import create_s256_code_challenge
from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Engine

from auth.errors import AuthorizationCodeInvalid
from auth.models import AuthorizationCode
from auth.store import metadata
from auth.tokens import generate_secret, hash_secret
from core.clock import Clock, from_iso, to_iso, utcnow
from core.config import get_settings

logger = logging.getLogger("deskgate.auth.codes")

_SECRET_PREFIX = "ac"

SUPPORTED_CHALLENGE_METHODS = ("S256", "plain")

authorization_codes = Table(
    "authorization_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code_hash", String(64), nullable=False, unique=True),
    Column("client_id", String(100), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("tenant_id", Integer, nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("scopes", Text, nullable=False, server_default=""),
    Column("code_challenge", String(128)),
    Column("code_challenge_method", String(10)),
    Column("nonce", String(255)),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)


def verify_code_verifier(verifier: str | None, challenge: str, method: str | None) -> bool:
    if not verifier:
        return False
    if (method or "plain") == "S256":
        expected = create_s256_code_challenge(verifier)
    else:
        expected = verifier
    return hmac.compare_digest(expected, challenge)


class AuthorizationCodeStore:
    def __init__(self, engine: Engine, lifetime_seconds: int | None = None, clock: Clock = utcnow) -> None:
        self.engine = engine
        self.lifetime = timedelta(
            seconds=lifetime_seconds
            if lifetime_seconds is not None
            else get_settings().authorization_code_expire_seconds
        )
        self._clock = clock

    def issue(
        self,
        client_id: str,
        principal_id: int,
        tenant_id: int,
        redirect_uri: str,
        scopes: tuple[str, ...],
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        nonce: str | None = None,
    ) -> tuple[str, AuthorizationCode]:
        """Persist a code and return (plaintext code, record)."""
        if code_challenge and (code_challenge_method or "plain") not in SUPPORTED_CHALLENGE_METHODS:
            raise AuthorizationCodeInvalid(f"unsupported code_challenge_method {code_challenge_method!r}")
        now = self._clock()
        code = generate_secret(_SECRET_PREFIX)
        record = AuthorizationCode(
            client_id=client_id,
            principal_id=principal_id,
            tenant_id=tenant_id,
            code_hash=hash_secret(code),
            redirect_uri=redirect_uri,
            scopes=tuple(scopes),
            issued_at=now,
            expires_at=now + self.lifetime,
            code_challenge=code_challenge or None,
            code_challenge_method=(code_challenge_method or "plain") if code_challenge else None,
            nonce=nonce,
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                authorization_codes.insert().values(
                    code_hash=record.code_hash,
                    client_id=record.client_id,
                    principal_id=record.principal_id,
                    tenant_id=record.tenant_id,
                    redirect_uri=record.redirect_uri,
                    scopes=" ".join(record.scopes),
                    code_challenge=record.code_challenge,
                    code_challenge_method=record.code_challenge_method,
                    nonce=record.nonce,
                    issued_at=to_iso(record.issued_at),
                    expires_at=to_iso(record.expires_at),
                )
            )
            conn.commit()
            record.id = result.inserted_primary_key[0]
        logger.info("Issued authorization code %s for principal %s (client %s)", record.id, principal_id, client_id)
        return code, record

    def consume(
        self,
        code: str,
        client_id: str,
        redirect_uri: str | None,
        code_verifier: str | None = None,
    ) -> AuthorizationCode:
        """Validate and consume a code exactly once. Returns the stored record."""
        now = self._clock()
        with self.engine.connect() as conn:
            row = conn.execute(
                authorization_codes.select().where(authorization_codes.c.code_hash == hash_secret(code))
            ).fetchone()
        if row is None:
            raise AuthorizationCodeInvalid("unknown authorization code")
        record = _row_to_code(row)

        if record.consumed_at is not None:
            raise AuthorizationCodeInvalid(f"code {record.id} already exchanged", principal_id=record.principal_id)
        if record.client_id != client_id:
            raise AuthorizationCodeInvalid(
                f"code {record.id} issued to another client", principal_id=record.principal_id
            )
        if redirect_uri != record.redirect_uri:
            raise AuthorizationCodeInvalid(f"code {record.id} redirect_uri mismatch", principal_id=record.principal_id)
        if record.is_expired(now):
            raise AuthorizationCodeInvalid(f"code {record.id} expired", principal_id=record.principal_id)
        if record.code_challenge and not verify_code_verifier(
            code_verifier, record.code_challenge, record.code_challenge_method
        ):
            raise AuthorizationCodeInvalid(
                f"code {record.id} PKCE verification failed", principal_id=record.principal_id
            )

        with self.engine.connect() as conn:
            result = conn.execute(
                authorization_codes.update()
                .where((authorization_codes.c.id == record.id) & authorization_codes.c.consumed_at.is_(None))
                .values(consumed_at=to_iso(now))
            )
            conn.commit()
        if result.rowcount != 1:
            raise AuthorizationCodeInvalid(
                f"code {record.id} exchanged concurrently", principal_id=record.principal_id
            )
        record.consumed_at = now
        return record


def _row_to_code(row) -> AuthorizationCode:
    return AuthorizationCode(
        id=row.id,
        code_hash=row.code_hash,
        client_id=row.client_id,
        principal_id=row.principal_id,
        tenant_id=row.tenant_id,
        redirect_uri=row.redirect_uri,
        scopes=tuple((row.scopes or "").split()),
        code_challenge=row.code_challenge,
        code_challenge_method=row.code_challenge_method,
        nonce=row.nonce,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        consumed_at=from_iso(row.consumed_at),
    )
