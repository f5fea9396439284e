"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/sessions.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. The key is the client address, which is the resolved address
when TRUST_PROXY enables uvicorn's ProxyHeadersMiddleware.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def refresh_rate_limit() -> str:
    """Limit string for POST /refresh, read lazily so tests can override REFRESH_RATE_LIMIT."""
    return get_settings().refresh_rate_limit
