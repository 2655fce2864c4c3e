"""
tests/test_config.py -- Settings validation.

Covers:
  - production mode refuses to start without SECRET_KEY
  - dev mode generates a key
  - short keys are rejected
  - access tokens must expire before refresh tokens
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

_KEY = "k" * 40


def test_production_requires_secret_key():
    with pytest.raises(ValidationError):
        Settings(debug=False, secret_key="")


def test_debug_generates_secret_key():
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_short_secret_key_rejected():
    with pytest.raises(ValidationError):
        Settings(debug=True, secret_key="too-short")


def test_default_lifetimes():
    settings = Settings(secret_key=_KEY)
    assert settings.access_token_expire_seconds == 600
    assert settings.refresh_token_expire_seconds == 4 * 3600


def test_access_lifetime_must_be_shorter_than_refresh():
    with pytest.raises(ValidationError):
        Settings(secret_key=_KEY, access_token_expire_seconds=7200, refresh_token_expire_seconds=3600)
