"""
auth/claims.py -- Claim set assembly from the current role/permission graph.

Two layers:
  aggregate_permissions() / build_claim_set() are pure functions over
  snapshots. They are commutative in role order and idempotent: permission
  names are merged case-insensitively and, where two roles spell the same
  permission differently, the lexicographically smallest spelling wins, so the
  result never depends on which role was read first.

  ClaimsAssembler fetches the snapshots from the directory on every call. There
  is no cache: a revoked role or permission disappears from the very next token.

A role name that no longer resolves (deleted between assignment lookup and
claim lookup, or a dangling assignment) is skipped, never fatal.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Protocol

from auth.models import ClaimKind, ClaimSet, Principal, RoleClaim, normalize_name

logger = logging.getLogger("deskgate.auth.claims")


class RoleDirectory(Protocol):
    def get_role_names(self, principal_id: int) -> list[str]: ...

    def get_role_claims(self, tenant_id: int, role_name: str) -> list[RoleClaim] | None: ...


def aggregate_permissions(claims_by_role: Mapping[str, Iterable[RoleClaim] | None]) -> frozenset[str]:
    """Merge the permission claims of every role into one case-insensitive set."""
    chosen: dict[str, str] = {}
    for role_name, claims in claims_by_role.items():
        if claims is None:
            continue
        for claim in claims:
            if claim.kind is not ClaimKind.PERMISSION:
                continue
            value = claim.value.strip()
            if not value:
                continue
            key = normalize_name(value)
            current = chosen.get(key)
            if current is None or value < current:
                chosen[key] = value
    return frozenset(chosen.values())


def build_claim_set(
    principal: Principal,
    role_names: Iterable[str],
    claims_by_role: Mapping[str, Iterable[RoleClaim] | None],
) -> ClaimSet:
    """Pure assembly of a ClaimSet from a principal and role/permission snapshots.

    Only roles that resolved (claims_by_role value is not None) are emitted.
    """
    resolved_roles = frozenset(name for name in role_names if claims_by_role.get(name) is not None)
    return ClaimSet(
        subject_id=principal.id,
        tenant_id=principal.tenant_id,
        display_name=principal.display_name,
        email=principal.email,
        profile=principal.profile,
        roles=resolved_roles,
        permissions=aggregate_permissions({name: claims_by_role.get(name) for name in resolved_roles}),
    )


class ClaimsAssembler:
    def __init__(self, directory: RoleDirectory) -> None:
        self.directory = directory

    def assemble(self, principal: Principal) -> ClaimSet:
        role_names = self.directory.get_role_names(principal.id)
        claims_by_role: dict[str, list[RoleClaim] | None] = {}
        for name in role_names:
            claims = self.directory.get_role_claims(principal.tenant_id, name)
            if claims is None:
                logger.warning("Role %r of principal %s no longer exists; skipping", name, principal.id)
            claims_by_role[name] = claims
        claim_set = build_claim_set(principal, role_names, claims_by_role)
        logger.debug(
            "Assembled claims for principal %s: %d role(s), %d permission(s)",
            principal.id,
            len(claim_set.roles),
            len(claim_set.permissions),
        )
        return claim_set
