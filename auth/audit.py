"""
auth/audit.py -- Audit sink contract, the SQL-backed sink, and the safe recorder.

The grant handlers talk to an AuditSink through AuditRecorder. Recording is
fire-and-forget from the handler's point of view: any exception raised by the
sink is logged and swallowed so a broken audit store never blocks a login or
token issuance.

Detail strings are the human-readable event descriptions shown in the
tenant's audit log. Not-found, inactive and wrong-password outcomes each get
their own detail even though they share one external error.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Engine

from auth.models import AuditEvent, AuditEventKind
from auth.store import metadata
from core.clock import to_iso, utcnow

logger = logging.getLogger("deskgate.auth.audit")

# ---------------------------------------------------------------------------
# Event details
# ---------------------------------------------------------------------------

LOGIN_SUCCESSFUL = "Login Successful"
INVALID_CREDENTIAL = "Invalid Credential"
ACCOUNT_NOT_ACTIVE = "Login Denied - Account not Active"
UNKNOWN_LOGIN = "Login Denied - Unknown Login"
OAUTH_PREFIX = "OAuth "
CODE_EXCHANGE_DENIED = "Authorization Code Exchange Denied"
REFRESH_DENIED = "Refresh Denied"
REFRESH_REUSE_DETECTED = "Refresh Token Reuse Detected"
TOKENS_REVOKED = "Refresh Tokens Revoked"

audit_events = Table(
    "audit_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event", String(30), nullable=False),
    Column("principal_id", Integer),
    Column("tenant_id", Integer),
    Column("source_ip", String(60), nullable=False, server_default=""),
    Column("detail", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)


class AuditSink(Protocol):
    def record_event(
        self,
        kind: AuditEventKind,
        principal_id: int | None,
        source_ip: str,
        detail: str,
        tenant_id: int | None,
    ) -> None: ...


class AuditStore:
    """AuditSink that appends rows to the audit_events table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record_event(
        self,
        kind: AuditEventKind,
        principal_id: int | None,
        source_ip: str,
        detail: str,
        tenant_id: int | None,
    ) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                audit_events.insert().values(
                    event=kind.value,
                    principal_id=principal_id,
                    tenant_id=tenant_id,
                    source_ip=source_ip or "",
                    detail=detail,
                    created_at=to_iso(utcnow()),
                )
            )
            conn.commit()

    def list_events(self, principal_id: int | None = None) -> list[AuditEvent]:
        """Events oldest first, optionally filtered by principal."""
        query = audit_events.select().order_by(audit_events.c.id)
        if principal_id is not None:
            query = query.where(audit_events.c.principal_id == principal_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            AuditEvent(
                id=r.id,
                kind=AuditEventKind(r.event),
                principal_id=r.principal_id,
                tenant_id=r.tenant_id,
                source_ip=r.source_ip,
                detail=r.detail,
                created_at=r.created_at,
            )
            for r in rows
        ]


class AuditRecorder:
    """Wraps a sink so that audit failures never propagate to the caller."""

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(
        self,
        detail: str,
        principal_id: int | None,
        tenant_id: int | None,
        source_ip: str,
        kind: AuditEventKind = AuditEventKind.LOGIN,
    ) -> None:
        try:
            self.sink.record_event(kind, principal_id, source_ip, detail, tenant_id)
        except Exception:
            logger.exception("Audit write failed (%s, principal %s)", detail, principal_id)
