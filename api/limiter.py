"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()). A single shared instance
means all routes share the same in-memory counter store.

Limits are given as callables reading Settings at request time, so a test
or deployment can change LOGIN_RATE_LIMIT / OTP_RATE_LIMIT through the
environment without re-importing the routes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def otp_limit() -> str:
    return get_settings().otp_rate_limit
