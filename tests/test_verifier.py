"""
tests/test_verifier.py -- Unit tests for CredentialVerifier.

The verifier is exercised against an in-memory directory so no database is
involved. Covers:
  - correct password for an active principal returns the principal
  - wrong password, unknown login and password-less principals -> InvalidCredentials
  - inactive principal -> AccountInactive even with the correct password or no password
  - login lookup is case-insensitive within the tenant and isolated across tenants
  - bcrypt runs on the unknown-login path (timing equalization)
"""

from __future__ import annotations

import pytest

import auth.verifier as verifier_module
from auth.errors import AccountInactive, InvalidCredentials
from auth.models import ActiveFlag, Principal, normalize_name
from auth.tokens import hash_password
from auth.verifier import CredentialVerifier

_HASH = hash_password("P@ss1")


class FakeDirectory:
    def __init__(self, *principals: Principal) -> None:
        self._by_key = {(p.tenant_id, p.normalized_login): p for p in principals}

    def get_principal_by_login(self, tenant_id: int, login: str) -> Principal | None:
        return self._by_key.get((tenant_id, normalize_name(login)))


@pytest.fixture
def verifier() -> CredentialVerifier:
    return CredentialVerifier(
        FakeDirectory(
            Principal(id=1, tenant_id=1, login="alice@example.com", email="alice@example.com", password_hash=_HASH),
            Principal(
                id=2,
                tenant_id=1,
                login="bob@example.com",
                email="bob@example.com",
                password_hash=_HASH,
                active=ActiveFlag.INACTIVE,
            ),
            Principal(id=3, tenant_id=1, login="sso-only@example.com", email="sso-only@example.com"),
            Principal(
                id=4,
                tenant_id=1,
                login="sso-disabled@example.com",
                email="sso-disabled@example.com",
                active=ActiveFlag.INACTIVE,
            ),
        )
    )


class TestVerify:
    def test_correct_password_returns_principal(self, verifier: CredentialVerifier) -> None:
        principal = verifier.verify("alice@example.com", "P@ss1", 1)
        assert principal.id == 1

    def test_login_is_case_insensitive(self, verifier: CredentialVerifier) -> None:
        assert verifier.verify("  ALICE@Example.com ", "P@ss1", 1).id == 1

    def test_wrong_password(self, verifier: CredentialVerifier) -> None:
        with pytest.raises(InvalidCredentials) as exc_info:
            verifier.verify("alice@example.com", "wrong", 1)
        assert exc_info.value.principal_id == 1

    def test_unknown_login_has_no_principal_id(self, verifier: CredentialVerifier) -> None:
        with pytest.raises(InvalidCredentials) as exc_info:
            verifier.verify("mallory@example.com", "P@ss1", 1)
        assert exc_info.value.principal_id is None

    def test_other_tenant_is_unknown(self, verifier: CredentialVerifier) -> None:
        with pytest.raises(InvalidCredentials):
            verifier.verify("alice@example.com", "P@ss1", 2)

    def test_principal_without_password_is_rejected(self, verifier: CredentialVerifier) -> None:
        with pytest.raises(InvalidCredentials) as exc_info:
            verifier.verify("sso-only@example.com", "", 1)
        assert exc_info.value.principal_id == 3


class TestInactive:
    def test_inactive_with_correct_password(self, verifier: CredentialVerifier) -> None:
        """A deactivated principal is rejected even when the password matches."""
        with pytest.raises(AccountInactive) as exc_info:
            verifier.verify("bob@example.com", "P@ss1", 1)
        assert exc_info.value.principal_id == 2

    def test_inactive_with_wrong_password_reports_inactive(self, verifier: CredentialVerifier) -> None:
        with pytest.raises(AccountInactive):
            verifier.verify("bob@example.com", "nope", 1)

    def test_inactive_without_password_reports_inactive(self, verifier: CredentialVerifier, monkeypatch) -> None:
        calls: list[str] = []
        monkeypatch.setattr(verifier_module, "burn_password_check", lambda plain: calls.append(plain))
        with pytest.raises(AccountInactive) as exc_info:
            verifier.verify("sso-disabled@example.com", "guess", 1)
        assert exc_info.value.principal_id == 4
        assert calls == ["guess"]

    def test_inactive_is_distinct_from_invalid_credentials(self) -> None:
        assert not issubclass(AccountInactive, InvalidCredentials)


class TestTimingEqualization:
    def test_unknown_login_still_runs_bcrypt(self, verifier: CredentialVerifier, monkeypatch) -> None:
        calls: list[str] = []
        monkeypatch.setattr(verifier_module, "burn_password_check", lambda plain: calls.append(plain))
        with pytest.raises(InvalidCredentials):
            verifier.verify("ghost@example.com", "guess", 1)
        assert calls == ["guess"]

    def test_inactive_checks_real_hash(self, verifier: CredentialVerifier, monkeypatch) -> None:
        calls: list[str] = []

        def fake_verify(plain: str, hashed: str) -> bool:
            calls.append(hashed)
            return True

        monkeypatch.setattr(verifier_module, "verify_password", fake_verify)
        with pytest.raises(AccountInactive):
            verifier.verify("bob@example.com", "P@ss1", 1)
        assert calls == [_HASH]
