"""
api/limiter.py -- Shared slowapi rate limiter for the credential endpoints.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/v1/auth.py applies it to POST /auth/login and POST /auth/otp [H2].
Limit strings are resolved per request from LOGIN_RATE_LIMIT / OTP_RATE_LIMIT.

One module-level instance so every route shares the same counter store;
per-module limiters would each count separately and never trip. Counters
live in process memory and reset on restart.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", headers_enabled=False)
