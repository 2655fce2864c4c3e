"""
auth/refresh.py -- Refresh token persistence, rotation and reuse detection.

Record lifecycle:

    Issued --(first redeem)--> Consumed --(same transaction)--> successor Issued
    Issued --(now >= expires_at)--> Expired   (inert, retained for audit)
    any    --(logout / reuse cascade / admin)--> Revoked

Only HMAC hashes are stored; the plaintext secret is returned once from
issue() / redeem() and is unrecoverable afterwards.

Race guard:
  Two concurrent redemptions of one secret must produce exactly one success.
  The consume step is a conditional UPDATE keyed on the counter's prior value
  (used_counter = 0 AND used_at IS NULL AND revoked_at IS NULL). The successor
  insert and the replaced_by_id link happen in the same transaction. A caller
  whose UPDATE touches zero rows lost the race and is handled as reuse.

Reuse:
  Presenting an already-consumed secret revokes every active refresh token of
  the principal. The cascade is best-effort: a storage failure while revoking
  is logged and the caller still gets TokenReused.

Once committed, a rotation is final. Nothing here rolls it back, so a client
disconnect after commit cannot reopen a reuse window.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import TokenExpired, TokenNotFound, TokenReused, TokenRevoked
from auth.models import IssuedRefreshToken, RefreshTokenRecord
from auth.store import metadata
from auth.tokens import generate_secret, hash_secret
from core.clock import Clock, from_iso, to_iso, utcnow
from core.config import get_settings

logger = logging.getLogger("deskgate.auth.refresh")

_SECRET_PREFIX = "rt"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", Integer, nullable=False, index=True),
    Column("tenant_id", Integer, nullable=False),
    Column("client_id", String(100)),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("scopes", Text, nullable=False, server_default=""),  # space separated
    Column("device", String(255)),
    Column("ip_address", String(60)),
    Column("issued_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("used_counter", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("replaced_by_id", Integer),
)


class RefreshTokenStore:
    """Repository and rotator for refresh tokens.

    Usage:
        store = RefreshTokenStore(engine)
        issued = store.issue(principal_id=7, tenant_id=1, client_id="web", scopes=("api",))
        successor = store.redeem(issued.secret, client_id="web")
        store.revoke_for_principal(7)
    """

    def __init__(self, engine: Engine, lifetime_seconds: int | None = None, clock: Clock = utcnow) -> None:
        self.engine = engine
        self.lifetime = timedelta(
            seconds=lifetime_seconds if lifetime_seconds is not None else get_settings().refresh_token_expire_seconds
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        principal_id: int,
        tenant_id: int,
        client_id: str | None = None,
        scopes: tuple[str, ...] = (),
        device: str | None = None,
        ip_address: str | None = None,
    ) -> IssuedRefreshToken:
        """Persist a new record and return it with its plaintext secret."""
        now = self._clock()
        secret = generate_secret(_SECRET_PREFIX)
        record = RefreshTokenRecord(
            principal_id=principal_id,
            tenant_id=tenant_id,
            client_id=client_id,
            scopes=tuple(scopes),
            token_hash=hash_secret(secret),
            issued_at=now,
            expires_at=now + self.lifetime,
            device=device,
            ip_address=ip_address,
        )
        with self.engine.connect() as conn:
            record.id = self._insert(conn, record, now)
            conn.commit()
        logger.info("Issued refresh token %s for principal %s", record.id, principal_id)
        return IssuedRefreshToken(record=record, secret=secret)

    # ------------------------------------------------------------------
    # Redeem / rotate
    # ------------------------------------------------------------------

    def redeem(self, secret: str, client_id: str | None = None) -> IssuedRefreshToken:
        """Consume a refresh secret and rotate it.

        Returns the successor (new record + new plaintext secret). The successor
        keeps the principal, tenant, client and scopes of the redeemed record but
        gets a fresh secret and a fresh expiry.

        Raises TokenNotFound, TokenRevoked, TokenReused or TokenExpired.
        """
        now = self._clock()
        record = self.get_by_hash(hash_secret(secret))
        if record is None:
            raise TokenNotFound("no refresh token with this hash")
        if client_id is not None and record.client_id != client_id:
            # Do not consume: the presenting client is not the token's owner.
            raise TokenNotFound("refresh token belongs to another client", principal_id=record.principal_id)
        if record.revoked_at is not None:
            raise TokenRevoked(f"refresh token {record.id} was revoked", principal_id=record.principal_id)
        if record.is_consumed:
            self._handle_reuse(record)
            raise TokenReused(
                f"refresh token {record.id} was already redeemed",
                principal_id=record.principal_id,
                tenant_id=record.tenant_id,
            )
        if record.is_expired(now):
            raise TokenExpired(f"refresh token {record.id} expired", principal_id=record.principal_id)

        new_secret = generate_secret(_SECRET_PREFIX)
        successor = RefreshTokenRecord(
            principal_id=record.principal_id,
            tenant_id=record.tenant_id,
            client_id=record.client_id,
            scopes=record.scopes,
            token_hash=hash_secret(new_secret),
            issued_at=now,
            expires_at=now + self.lifetime,
            device=record.device,
            ip_address=record.ip_address,
        )
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            consumed = conn.execute(
                refresh_tokens.update()
                .where(
                    (refresh_tokens.c.id == record.id)
                    & (refresh_tokens.c.used_counter == 0)
                    & refresh_tokens.c.used_at.is_(None)
                    & refresh_tokens.c.revoked_at.is_(None)
                )
                .values(
                    used_counter=refresh_tokens.c.used_counter + 1,
                    used_at=now_iso,
                    updated_at=now_iso,
                )
            )
            if consumed.rowcount != 1:
                conn.rollback()
                lost_race = True
            else:
                successor.id = self._insert(conn, successor, now)
                conn.execute(
                    refresh_tokens.update().where(refresh_tokens.c.id == record.id).values(replaced_by_id=successor.id)
                )
                conn.commit()
                lost_race = False

        if lost_race:
            self._handle_reuse(record)
            raise TokenReused(
                f"refresh token {record.id} was redeemed concurrently",
                principal_id=record.principal_id,
                tenant_id=record.tenant_id,
            )

        logger.info("Rotated refresh token %s -> %s for principal %s", record.id, successor.id, record.principal_id)
        return IssuedRefreshToken(record=successor, secret=new_secret)

    def _handle_reuse(self, record: RefreshTokenRecord) -> None:
        logger.warning(
            "Refresh token reuse detected (token %s, principal %s); revoking all tokens of the principal",
            record.id,
            record.principal_id,
        )
        try:
            revoked = self.revoke_for_principal(record.principal_id)
        except SQLAlchemyError:
            logger.exception("Cascading revocation failed for principal %s", record.principal_id)
            return
        logger.warning("Revoked %d refresh token(s) of principal %s after reuse", revoked, record.principal_id)

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke_for_principal(self, principal_id: int) -> int:
        """Revoke every active refresh token of a principal. Returns the count revoked."""
        now_iso = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.principal_id == principal_id) & refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=now_iso, updated_at=now_iso)
            )
            conn.commit()
        return result.rowcount

    def revoke_by_hash(self, token_hash: str) -> bool:
        now_iso = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.token_hash == token_hash) & refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=now_iso, updated_at=now_iso)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_secret(self, secret: str) -> bool:
        return self.revoke_by_hash(hash_secret(secret))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_record(row) if row is not None else None

    def get(self, record_id: int) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_for_principal(self, principal_id: int) -> list[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where(refresh_tokens.c.principal_id == principal_id)
                .order_by(refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    @staticmethod
    def _insert(conn, record: RefreshTokenRecord, now: datetime) -> int:
        result = conn.execute(
            refresh_tokens.insert().values(
                principal_id=record.principal_id,
                tenant_id=record.tenant_id,
                client_id=record.client_id,
                token_hash=record.token_hash,
                scopes=" ".join(record.scopes),
                device=record.device,
                ip_address=record.ip_address,
                issued_at=to_iso(record.issued_at),
                updated_at=to_iso(now),
                expires_at=to_iso(record.expires_at),
                used_counter=0,
            )
        )
        return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        principal_id=row.principal_id,
        tenant_id=row.tenant_id,
        client_id=row.client_id,
        token_hash=row.token_hash,
        scopes=tuple((row.scopes or "").split()),
        device=row.device,
        ip_address=row.ip_address,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        used_counter=row.used_counter or 0,
        revoked_at=from_iso(row.revoked_at),
        replaced_by_id=row.replaced_by_id,
    )
