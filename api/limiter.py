"""
api/limiter.py -- The one slowapi Limiter every route module decorates with.

Limited routes: POST /auth/login (LOGIN_LIMIT), POST /auth/signup and
POST /organizations/signup (SIGNUP_LIMIT), GET /dashboard. Counters live in
process memory, keyed by client address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# LOGIN_RATE_LIMIT / SIGNUP_RATE_LIMIT; the test suite raises both.
LOGIN_LIMIT = get_settings().login_rate_limit
SIGNUP_LIMIT = get_settings().signup_rate_limit
