"""
auth/tokens.py -- JWT, password hashing, and opaque secret utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry the claim set plus iss/aud/exp. Expiry lives inside the token;
       nothing about access tokens is tracked server-side. Verification
       returns None on any failure -- the dependency layer turns that into 401.

  Passwords: bcrypt, used directly. Bcrypt's cost factor makes brute-force
       expensive for low-entropy secrets. _DUMMY_HASH enables timing
       equalization in the credential verifier so response time does not
       reveal whether a login exists [C1].

  Refresh tokens, authorization codes, client secrets: secrets.token_urlsafe
       gives 256 bits of entropy. We store HMAC-SHA256(SECRET_KEY, raw) so a
       lookup is a single indexed equality match on the hash -- the plaintext
       is never stored or compared.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("deskgate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A malformed stored hash is
    treated as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("deskgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt check against the dummy hash and discard the result [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Opaque secrets (refresh tokens, authorization codes, client secrets)
# ---------------------------------------------------------------------------


def generate_secret(prefix: str) -> str:
    """Generate a new opaque secret in the format <prefix>_<43 url-safe chars>."""
    return f"{prefix}_{secrets.token_urlsafe(32)}"


def hash_secret(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Deterministic, so the store can look a record up by hash. An attacker
    holding only the database cannot forge a matching secret without SECRET_KEY.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


def secret_matches(raw: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_secret(raw), stored_hash)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def encode_jwt(claims: dict, issued_at: datetime, lifetime_seconds: int) -> str:
    """Sign claims, stamping iss, iat, exp and a unique jti."""
    payload = dict(claims)
    payload.setdefault("iss", _settings.jwt_issuer)
    payload["iat"] = issued_at
    payload["exp"] = issued_at + timedelta(seconds=lifetime_seconds)
    payload["jti"] = uuid.uuid4().hex
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access token. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            audience=_settings.jwt_audience,
            issuer=_settings.jwt_issuer,
        )
    except JWTError:
        return None
    if "sub" not in payload or "tenant_id" not in payload:
        return None
    return payload
