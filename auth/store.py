"""
auth/store.py -- SQLAlchemy Core schema and the identity repository.

Pattern: Repository + Data Mapper. IdentityStore is the repository for
principals, roles, role claims, permissions and clients; the _row_to_*
functions are the mappers. Refresh tokens, authorization codes and audit
events have their own repositories (auth/refresh.py, auth/codes.py,
auth/audit.py) on the same MetaData and engine.

The permissions table is a standalone catalogue of known capability names for
administration screens. Role claims carry their permission value as free
text and are not checked against it; claim assembly reads role_claims only.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Logins, role names and permission names are matched on their normalized
  (uppercase) form so lookups are case-insensitive and uniqueness holds
  regardless of the casing a user typed.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import json

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import (
    ActiveFlag,
    ClaimKind,
    Client,
    GrantKind,
    Permission,
    Principal,
    Role,
    RoleClaim,
    normalize_name,
)
from core.clock import to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

principals = Table(
    "principals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, nullable=False),
    Column("login", String(255), nullable=False),
    Column("normalized_login", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text),
    Column("is_active", String(1), nullable=False, server_default="Y"),
    Column("first_name", String(30)),
    Column("last_name", String(30)),
    Column("profile", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
    UniqueConstraint("tenant_id", "normalized_login", name="uq_principals_tenant_login"),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, nullable=False),
    Column("name", String(100), nullable=False),
    Column("normalized_name", String(100), nullable=False),
    UniqueConstraint("tenant_id", "normalized_name", name="uq_roles_tenant_name"),
)

principal_roles = Table(
    "principal_roles",
    metadata,
    Column("principal_id", Integer, ForeignKey("principals.id"), primary_key=True),
    Column("role_id", Integer, primary_key=True),
)

role_claims = Table(
    "role_claims",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("claim_type", String(30), nullable=False),  # "permission" | "role"
    Column("claim_value", String(100), nullable=False),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer),  # NULL = global permission
    Column("name", String(50), nullable=False),
    Column("normalized_name", String(50), nullable=False),
    UniqueConstraint("tenant_id", "normalized_name", name="uq_permissions_tenant_name"),
)

clients = Table(
    "clients",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", String(100), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False),
    Column("secret_hash", String(64)),  # NULL = public client
    Column("redirect_uris", Text, nullable=False, server_default="[]"),  # JSON list
    Column("grant_types", Text, nullable=False, server_default="[]"),  # JSON list
    Column("scopes", Text, nullable=False, server_default="[]"),  # JSON list
)


def init_schema(engine: Engine) -> None:
    """Create every auth table that does not exist yet. Idempotent."""
    # The token, code and audit tables are declared next to their repositories.
    import auth.audit  # noqa: F401
    import auth.codes  # noqa: F401
    import auth.refresh  # noqa: F401

    metadata.create_all(engine)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for principals, roles, permissions and clients.

    Usage:
        engine = create_db_engine(settings.database_url)
        init_schema(engine)
        store = IdentityStore(engine)
        pid = store.create_principal(Principal(tenant_id=1, login="alice@example.com", ...))
        principal = store.get_principal_by_login(1, "ALICE@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> int:
        """Insert a principal and return its id.

        Raises sqlalchemy.exc.IntegrityError if the login already exists in the tenant.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                principals.insert().values(
                    tenant_id=principal.tenant_id,
                    login=principal.login,
                    normalized_login=principal.normalized_login,
                    email=principal.email,
                    password_hash=principal.password_hash,
                    is_active=principal.active.value,
                    first_name=principal.first_name,
                    last_name=principal.last_name,
                    profile=principal.profile,
                    created_at=to_iso(utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_principal(self, principal_id: int) -> Principal | None:
        """Fresh read by primary key. Soft-deleted principals are not returned."""
        with self.engine.connect() as conn:
            row = conn.execute(
                principals.select().where((principals.c.id == principal_id) & principals.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_principal_by_login(self, tenant_id: int, login: str) -> Principal | None:
        """Case-insensitive lookup of a login within one tenant."""
        with self.engine.connect() as conn:
            row = conn.execute(
                principals.select().where(
                    (principals.c.tenant_id == tenant_id)
                    & (principals.c.normalized_login == normalize_name(login))
                    & principals.c.deleted_at.is_(None)
                )
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def set_active(self, principal_id: int, active: ActiveFlag) -> bool:
        """Activate or deactivate a principal. Returns False if it does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                principals.update().where(principals.c.id == principal_id).values(is_active=active.value)
            )
            conn.commit()
        return result.rowcount > 0

    def soft_delete_principal(self, principal_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                principals.update()
                .where((principals.c.id == principal_id) & principals.c.deleted_at.is_(None))
                .values(deleted_at=to_iso(utcnow()), is_active=ActiveFlag.INACTIVE.value)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and role claims
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                roles.insert().values(
                    tenant_id=role.tenant_id,
                    name=role.name,
                    normalized_name=role.normalized_name,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def delete_role(self, role_id: int) -> bool:
        """Delete a role and its claims. Principal assignments are left dangling."""
        with self.engine.connect() as conn:
            conn.execute(role_claims.delete().where(role_claims.c.role_id == role_id))
            result = conn.execute(roles.delete().where(roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    def assign_role(self, principal_id: int, role_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(principal_roles.insert().values(principal_id=principal_id, role_id=role_id))
            conn.commit()

    def unassign_role(self, principal_id: int, role_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                principal_roles.delete().where(
                    (principal_roles.c.principal_id == principal_id) & (principal_roles.c.role_id == role_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def add_role_claim(self, role_id: int, claim: RoleClaim) -> int:
        with self.engine.connect() as conn:
            tenant_id = conn.execute(select(roles.c.tenant_id).where(roles.c.id == role_id)).scalar_one()
            result = conn.execute(
                role_claims.insert().values(
                    tenant_id=tenant_id,
                    role_id=role_id,
                    claim_type=claim.kind.value,
                    claim_value=claim.value,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def remove_role_claim(self, role_id: int, claim: RoleClaim) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                role_claims.delete().where(
                    (role_claims.c.role_id == role_id)
                    & (role_claims.c.claim_type == claim.kind.value)
                    & (role_claims.c.claim_value == claim.value)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def get_role_names(self, principal_id: int) -> list[str]:
        """Names of the roles currently assigned to a principal.

        Assignments pointing at a deleted role are dropped by the join.
        """
        query = (
            select(roles.c.name)
            .select_from(principal_roles.join(roles, principal_roles.c.role_id == roles.c.id))
            .where(principal_roles.c.principal_id == principal_id)
            .order_by(roles.c.name)
        )
        with self.engine.connect() as conn:
            return [row.name for row in conn.execute(query)]

    def get_role_claims(self, tenant_id: int, role_name: str) -> list[RoleClaim] | None:
        """All claims of a role, or None if no such role exists in the tenant."""
        with self.engine.connect() as conn:
            role_id = conn.execute(
                select(roles.c.id).where(
                    (roles.c.tenant_id == tenant_id) & (roles.c.normalized_name == normalize_name(role_name))
                )
            ).scalar_one_or_none()
            if role_id is None:
                return None
            rows = conn.execute(
                select(role_claims.c.claim_type, role_claims.c.claim_value).where(role_claims.c.role_id == role_id)
            ).fetchall()
        result: list[RoleClaim] = []
        for row in rows:
            try:
                kind = ClaimKind(row.claim_type.lower())
            except ValueError:
                continue
            result.append(RoleClaim(kind=kind, value=row.claim_value))
        return result

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> int:
        """Register a permission name in the catalogue.

        Raises IntegrityError on a case-insensitive duplicate. Role claims are
        not tied to this table.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                permissions.insert().values(
                    tenant_id=permission.tenant_id,
                    name=permission.name,
                    normalized_name=permission.normalized_name,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_permissions(self, tenant_id: int) -> list[Permission]:
        """Global permissions plus those defined by the tenant, ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                permissions.select()
                .where(permissions.c.tenant_id.is_(None) | (permissions.c.tenant_id == tenant_id))
                .order_by(permissions.c.normalized_name)
            ).fetchall()
        return [Permission(id=r.id, tenant_id=r.tenant_id, name=r.name) for r in rows]

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, client: Client) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                clients.insert().values(
                    client_id=client.client_id,
                    display_name=client.display_name,
                    secret_hash=client.secret_hash,
                    redirect_uris=json.dumps(list(client.redirect_uris)),
                    grant_types=json.dumps(sorted(g.value for g in client.grant_types)),
                    scopes=json.dumps(sorted(client.scopes)),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_client(self, client_id: str) -> Client | None:
        with self.engine.connect() as conn:
            row = conn.execute(clients.select().where(clients.c.client_id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        tenant_id=row.tenant_id,
        login=row.login,
        email=row.email,
        password_hash=row.password_hash,
        active=ActiveFlag.from_wire(row.is_active),
        first_name=row.first_name,
        last_name=row.last_name,
        profile=row.profile,
        created_at=row.created_at,
        deleted_at=row.deleted_at,
    )


def _row_to_client(row) -> Client:
    grant_types: set[GrantKind] = set()
    for value in json.loads(row.grant_types or "[]"):
        kind = GrantKind.parse(value)
        if kind is not None:
            grant_types.add(kind)
    return Client(
        id=row.id,
        client_id=row.client_id,
        display_name=row.display_name,
        secret_hash=row.secret_hash,
        redirect_uris=list(json.loads(row.redirect_uris or "[]")),
        grant_types=grant_types,
        scopes=set(json.loads(row.scopes or "[]")),
    )
