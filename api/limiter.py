"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/oauth.py (to apply per-route limits with @limiter.limit()).

A single shared instance means every route shares one in-memory counter
store; separate instances per module would each count on their own and the
limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def token_rate_limit() -> str:
    """Limit string for the token and authorize endpoints, read from settings."""
    return get_settings().token_rate_limit
