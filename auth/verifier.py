"""
auth/verifier.py -- Credential verification with timing equalization.

verify() either returns the Principal or raises one of:
  InvalidCredentials -- unknown login, principal without a local password,
                        or wrong password. principal_id is set when a
                        principal was found, so callers can audit it.
  AccountInactive    -- principal exists but its active flag is not ACTIVE.
                        Raised even when the password is correct, and
                        ahead of the missing-password check.

Auditing is the caller's job. This module does no I/O beyond the principal
lookup so it stays unit-testable with a fake directory.

Timing [C1]: bcrypt runs exactly once on every path. Unknown logins are
checked against the dummy hash and inactive accounts still have their real
hash checked, so response time does not separate the three outcomes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.errors import AccountInactive, InvalidCredentials
from auth.models import Principal
from auth.tokens import burn_password_check, verify_password

logger = logging.getLogger("deskgate.auth.verifier")


class PrincipalDirectory(Protocol):
    def get_principal_by_login(self, tenant_id: int, login: str) -> Principal | None: ...


class CredentialVerifier:
    def __init__(self, directory: PrincipalDirectory) -> None:
        self.directory = directory

    def verify(self, login: str, password: str, tenant_id: int) -> Principal:
        principal = self.directory.get_principal_by_login(tenant_id, login)
        if principal is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            burn_password_check(password)
            logger.info("Credential check failed: unknown login in tenant %s", tenant_id)
            raise InvalidCredentials("unknown login")

        if principal.password_hash is None:
            burn_password_check(password)
            password_ok = False
        else:
            password_ok = verify_password(password, principal.password_hash)
        if not principal.is_active:
            logger.info("Credential check failed: principal %s is not active", principal.id)
            raise AccountInactive("account not active", principal_id=principal.id)
        if principal.password_hash is None:
            logger.info("Credential check failed: principal %s has no local password", principal.id)
            raise InvalidCredentials("no local password", principal_id=principal.id)
        if not password_ok:
            logger.info("Credential check failed: wrong password for principal %s", principal.id)
            raise InvalidCredentials("password mismatch", principal_id=principal.id)
        return principal
