"""
tests/test_claims.py -- Unit and store-backed tests for claim set assembly.

Covers:
  - support-agent with {ticket:read, ticket:write} yields exactly those two permissions
  - aggregation is commutative over role order and idempotent
  - permission names are deduplicated case-insensitively with a stable spelling
  - role-type claims never leak into permissions
  - dangling / deleted roles are skipped, not fatal
  - revoking a permission shows up on the very next assembly
"""

from __future__ import annotations

import itertools

from auth.claims import ClaimsAssembler, aggregate_permissions, build_claim_set
from auth.models import ClaimKind, Principal, Role, RoleClaim

PERM = ClaimKind.PERMISSION


def _claims(*values: str) -> list[RoleClaim]:
    return [RoleClaim(PERM, v) for v in values]


class TestAggregatePermissions:
    def test_commutative_over_role_order(self) -> None:
        roles = {
            "agent": _claims("ticket:read", "Ticket:Reply"),
            "lead": _claims("TICKET:READ", "report:view"),
            "admin": _claims("ticket:reply", "settings:edit"),
        }
        results = {
            aggregate_permissions(dict(order))
            for order in itertools.permutations(roles.items())
        }
        assert len(results) == 1

    def test_idempotent(self) -> None:
        roles = {"agent": _claims("ticket:read", "ticket:reply")}
        assert aggregate_permissions(roles) == aggregate_permissions(roles)

    def test_case_insensitive_dedup_keeps_smallest_spelling(self) -> None:
        result = aggregate_permissions({"a": _claims("ticket:read"), "b": _claims("TICKET:READ")})
        assert result == frozenset({"TICKET:READ"})

    def test_role_claims_are_not_permissions(self) -> None:
        result = aggregate_permissions({"a": [RoleClaim(ClaimKind.ROLE, "supervisor"), RoleClaim(PERM, "x")]})
        assert result == frozenset({"x"})

    def test_missing_role_is_skipped(self) -> None:
        assert aggregate_permissions({"gone": None, "a": _claims("x")}) == frozenset({"x"})

    def test_blank_values_ignored(self) -> None:
        assert aggregate_permissions({"a": _claims("  ", "y")}) == frozenset({"y"})


class TestBuildClaimSet:
    def test_identity_fields(self) -> None:
        principal = Principal(
            id=5, tenant_id=3, login="a@x.io", email="a@x.io", first_name="Ann", last_name="Lee", profile="admin"
        )
        claim_set = build_claim_set(principal, ["agent"], {"agent": _claims("ticket:read")})
        assert claim_set.subject_id == 5
        assert claim_set.tenant_id == 3
        assert claim_set.display_name == "Ann Lee"
        assert claim_set.profile == "admin"
        assert claim_set.roles == frozenset({"agent"})

    def test_unresolved_role_not_emitted(self) -> None:
        principal = Principal(id=1, tenant_id=1, login="a", email="a")
        claim_set = build_claim_set(principal, ["agent", "ghost"], {"agent": _claims("p"), "ghost": None})
        assert claim_set.roles == frozenset({"agent"})


class TestClaimsAssembler:
    def test_support_agent_gets_exactly_two_permissions(self, identity, seed) -> None:
        carol = identity.get_principal(seed.carol_id)
        claim_set = ClaimsAssembler(identity).assemble(carol)
        assert claim_set.roles == frozenset({"support-agent"})
        assert claim_set.permissions == frozenset({"ticket:read", "ticket:write"})

    def test_assembly_twice_is_identical(self, identity, seed) -> None:
        assembler = ClaimsAssembler(identity)
        alice = identity.get_principal(seed.alice_id)
        assert assembler.assemble(alice) == assembler.assemble(alice)

    def test_overlapping_roles_merge(self, identity, seed) -> None:
        identity.assign_role(seed.alice_id, seed.support_role_id)
        claim_set = ClaimsAssembler(identity).assemble(identity.get_principal(seed.alice_id))
        assert claim_set.permissions == frozenset({"ticket:read", "ticket:reply", "ticket:write"})

    def test_deleted_role_is_skipped(self, identity, seed) -> None:
        temp_role = identity.create_role(Role(tenant_id=1, name="temp"))
        identity.add_role_claim(temp_role, RoleClaim(PERM, "temp:perm"))
        identity.assign_role(seed.carol_id, temp_role)
        identity.delete_role(temp_role)

        claim_set = ClaimsAssembler(identity).assemble(identity.get_principal(seed.carol_id))
        assert claim_set.roles == frozenset({"support-agent"})
        assert "temp:perm" not in claim_set.permissions

    def test_missing_role_lookup_is_not_fatal(self, identity, seed) -> None:
        class Directory:
            def get_role_names(self, principal_id):
                return ["support-agent", "vanished"]

            def get_role_claims(self, tenant_id, role_name):
                return identity.get_role_claims(tenant_id, role_name)

        claim_set = ClaimsAssembler(Directory()).assemble(identity.get_principal(seed.carol_id))
        assert claim_set.roles == frozenset({"support-agent"})

    def test_revoked_permission_disappears_next_time(self, identity, seed) -> None:
        assembler = ClaimsAssembler(identity)
        carol = identity.get_principal(seed.carol_id)
        assert "ticket:write" in assembler.assemble(carol).permissions
        identity.remove_role_claim(seed.support_role_id, RoleClaim(PERM, "ticket:write"))
        assert assembler.assemble(carol).permissions == frozenset({"ticket:read"})
