"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, minimal logic). Stores return these;
the verifier, assembler, issuer and grant handlers do the work.

Wire values ("Y"/"N" active flags, "permission"/"role" claim types, grant type
strings) live only on the enums below. Everything past the storage boundary
compares enum members, never raw strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ActiveFlag(str, Enum):
    """Account activation state. Stored as the single-character wire value."""

    ACTIVE = "Y"
    INACTIVE = "N"

    @classmethod
    def from_wire(cls, value: str | None) -> "ActiveFlag":
        # Anything other than an explicit "Y" is treated as inactive.
        return cls.ACTIVE if value == cls.ACTIVE.value else cls.INACTIVE


class ClaimKind(str, Enum):
    PERMISSION = "permission"
    ROLE = "role"


class GrantKind(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    PASSWORD = "password"  # noqa: S105 -- grant type name, not a password
    REFRESH_TOKEN = "refresh_token"  # noqa: S105
    CLIENT_CREDENTIALS = "client_credentials"

    @classmethod
    def parse(cls, value: str | None) -> "GrantKind | None":
        try:
            return cls(value)
        except ValueError:
            return None


class AuditEventKind(str, Enum):
    LOGIN = "Login"
    TOKEN = "Token"


def normalize_name(value: str) -> str:
    """Canonical form used for case-insensitive uniqueness (logins, roles, permissions)."""
    return value.strip().upper()


@dataclass
class Principal:
    """A tenant-scoped user that can authenticate.

    login is the identifier the user types (usually an email). normalized_login
    is its uppercase form and is unique within a tenant. Principals are never
    hard-deleted: deleted_at marks a soft delete and such rows are invisible to
    lookups.
    """

    tenant_id: int
    login: str
    email: str
    id: int | None = None
    password_hash: str | None = None
    active: ActiveFlag = ActiveFlag.ACTIVE
    first_name: str | None = None
    last_name: str | None = None
    profile: str | None = None  # value-list key, e.g. "agent" or "admin"
    created_at: str | None = None
    deleted_at: str | None = None

    @property
    def normalized_login(self) -> str:
        return normalize_name(self.login)

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.login

    @property
    def is_active(self) -> bool:
        return self.active is ActiveFlag.ACTIVE


@dataclass
class Role:
    tenant_id: int
    name: str
    id: int | None = None

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)


@dataclass(frozen=True)
class RoleClaim:
    """One claim granted by a role. Only PERMISSION claims feed the claim set."""

    kind: ClaimKind
    value: str


@dataclass
class Permission:
    """A named capability. tenant_id None means a global permission."""

    name: str
    tenant_id: int | None = None
    id: int | None = None

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)


@dataclass
class Client:
    """A registered OAuth client application.

    secret_hash is None for public clients (SPAs, mobile apps) which must use
    PKCE on the authorization-code flow instead of a secret.
    """

    client_id: str
    display_name: str
    redirect_uris: list[str] = field(default_factory=list)
    grant_types: set[GrantKind] = field(default_factory=set)
    scopes: set[str] = field(default_factory=set)
    secret_hash: str | None = None
    id: int | None = None

    @property
    def is_confidential(self) -> bool:
        return self.secret_hash is not None


@dataclass(frozen=True)
class ClaimSet:
    """Identity, tenant, roles and aggregated permissions for one issuance.

    Rebuilt from storage for every token; never cached or persisted.
    """

    subject_id: int
    tenant_id: int
    display_name: str
    email: str
    profile: str | None
    roles: frozenset[str]
    permissions: frozenset[str]


@dataclass
class RefreshTokenRecord:
    """One issued refresh credential. Only the HMAC hash of the secret is kept.

    A record with used_counter >= 1 or used_at set has already been redeemed;
    presenting it again is a reuse signal.
    """

    principal_id: int
    tenant_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    client_id: str | None = None
    scopes: tuple[str, ...] = ()
    id: int | None = None
    used_at: datetime | None = None
    used_counter: int = 0
    revoked_at: datetime | None = None
    replaced_by_id: int | None = None
    device: str | None = None
    ip_address: str | None = None

    @property
    def is_consumed(self) -> bool:
        return self.used_counter >= 1 or self.used_at is not None

    def is_expired(self, now: datetime) -> bool:
        # Expiry is exclusive of the current instant.
        return now >= self.expires_at


@dataclass
class AuthorizationCode:
    """A short-lived, single-use code from the authorize leg of the code flow."""

    client_id: str
    principal_id: int
    tenant_id: int
    code_hash: str
    redirect_uri: str
    scopes: tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    nonce: str | None = None
    id: int | None = None
    consumed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class IssuedRefreshToken:
    """Return value of minting: the stored record plus the plaintext, shown once."""

    record: RefreshTokenRecord
    secret: str


@dataclass
class IssuedTokens:
    access_token: str
    expires_in: int
    scopes: tuple[str, ...]
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    id_token: str | None = None


@dataclass
class AuditEvent:
    kind: AuditEventKind
    principal_id: int | None
    tenant_id: int | None
    source_ip: str
    detail: str
    id: int | None = None
    created_at: str | None = None
