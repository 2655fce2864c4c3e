"""
auth/errors.py -- Exception taxonomy for the authentication core.

Two layers:

  AuthError subclasses carry full internal detail (which principal, which
  failure kind). They are raised by the verifier, rotator and code store and
  are logged / audited with that detail.

  OAuthError is the boundary type. Grant handlers translate every AuthError
  into one of three wire codes. All GrantError kinds collapse to invalid_grant
  with a per-flow generic description so an attacker cannot tell an unknown
  login from a deactivated one, or an expired refresh token from a replayed one.

Layer rule: no imports from api/.
"""

from __future__ import annotations

INVALID_GRANT = "invalid_grant"
INVALID_CLIENT = "invalid_client"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"


class AuthError(Exception):
    """Base class for every failure raised inside the auth core."""

    error_code: str = INVALID_GRANT

    def __init__(self, message: str = "", *, principal_id: int | None = None, tenant_id: int | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.principal_id = principal_id
        self.tenant_id = tenant_id


class GrantError(AuthError):
    """A grant could not be satisfied. Always surfaces as invalid_grant."""


class InvalidCredentials(GrantError):
    pass


class AccountInactive(GrantError):
    pass


class PrincipalNotFound(GrantError):
    pass


class TokenNotFound(GrantError):
    pass


class TokenExpired(GrantError):
    pass


class TokenReused(GrantError):
    pass


class TokenRevoked(GrantError):
    pass


class AuthorizationCodeInvalid(GrantError):
    pass


class UnknownClient(AuthError):
    error_code = INVALID_CLIENT


class UnsupportedGrant(AuthError):
    error_code = UNSUPPORTED_GRANT_TYPE


_STATUS_BY_CODE: dict[str, int] = {
    INVALID_GRANT: 400,
    INVALID_CLIENT: 401,
    UNSUPPORTED_GRANT_TYPE: 400,
}

_CLIENT_DESCRIPTION = "The specified client is not registered."
_UNSUPPORTED_DESCRIPTION = "The specified grant type is not supported."


class OAuthError(Exception):
    """Externally visible grant failure: {"error": ..., "error_description": ...}."""

    def __init__(self, error: str, description: str) -> None:
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description

    @property
    def status_code(self) -> int:
        return _STATUS_BY_CODE.get(self.error, 400)

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}

    @classmethod
    def from_auth_error(cls, exc: AuthError, grant_description: str) -> "OAuthError":
        """Collapse an internal error to its wire form.

        grant_description is the flow's generic invalid_grant message; it is
        used for every GrantError regardless of the concrete subclass.
        """
        if isinstance(exc, UnknownClient):
            return cls(INVALID_CLIENT, _CLIENT_DESCRIPTION)
        if isinstance(exc, UnsupportedGrant):
            return cls(UNSUPPORTED_GRANT_TYPE, _UNSUPPORTED_DESCRIPTION)
        return cls(INVALID_GRANT, grant_description)
