"""
api/limiter.py -- Shared slowapi rate limiter instance.

A coarse per-IP ceiling (API_RATE_LIMIT, default 120/minute) applied by
SlowAPIMiddleware to every route that is not explicitly exempted. The
per-identity login and registration budgets live in auth/limiter.py; this one
only keeps a single client from flooding the service.

Import this in api/main.py, which mounts the middleware and exempts health.
Using a single shared instance means all routes share one counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings


def _api_limit() -> str:
    return get_settings().api_rate_limit


limiter = Limiter(key_func=get_remote_address, default_limits=[_api_limit], storage_uri="memory://")
