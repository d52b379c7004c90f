"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. Separate instances per module would each keep their own
counters and the limits would never trigger.

The per-account lockout in auth/lockout.py is the real brute-force defense;
this per-IP limit only slows down spraying across many accounts.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Resolve the login limit lazily so importing routes does not build Settings."""
    return get_settings().login_rate_limit
