"""
auth/tokens.py -- JWT and password hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, email, role, and expiry. Verification returns None on any
       failure -- the dependency layer turns that into a 401.

       The role claim is informational only. Every request re-reads the user
       row, so a role change, suspension or rejection takes effect on the next
       request instead of when the token expires.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup.

Layer rule: no imports from api/ or portal/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("vaptportal.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt raises ValueError above 72 bytes; request models and the CLI
    reject such passwords before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB -- treat as a mismatch.
        return False


# Timing equalization dummy hash.
_DUMMY_HASH: str = hash_password("vaptportal_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, email: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT with user identity and expiry.

    Args:
        user_id:        Numeric user ID stored in the DB.
        email:          Login email, stored as the JWT subject claim.
        role:           Portal role at issue time.
        expire_seconds: Session duration in seconds. 0 (default) uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": email,
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the account exists. Returns the User on
    a password match regardless of approval state -- the caller decides what
    to do with pending or suspended accounts (see login_block_reason).
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


def login_block_reason(user: User) -> str | None:
    """Return an error code if this account may not start a session, else None.

    Suspension wins over approval state: a suspended account reports
    "suspended" even if it was never approved.
    """
    if user.suspended:
        return "suspended"
    if user.status == "rejected":
        return "rejected"
    if user.status != "approved":
        return "pending_approval"
    return None


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True keeps the token away from page scripts. samesite="lax"
    withholds it from cross-site POSTs. secure follows SECURE_COOKIES.
    max_age matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
