"""
api/limiter.py -- The one slowapi Limiter for the process.

api/main.py mounts it (SlowAPIMiddleware reads app.state.limiter) and
api/routes/auth.py decorates login and register with it. Counters live in
memory, so limits are per process. RATE_LIMIT_ENABLED=false turns every
limit off.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)
