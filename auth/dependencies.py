"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_roles(...) builds a dependency that also raises HTTP 403 when the
user's role is not in the allowed set.

A valid token for an account that is no longer allowed to log in (pending,
rejected or suspended) is treated exactly like a missing token.

Layer rule: no imports from api/ or portal/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import ADMIN_ROLES, SUPER_ADMIN, User
from auth.tokens import decode_access_token


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises.
    """
    user_store = request.app.state.user_store

    token: str | None = request.cookies.get("access_token")

    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if not token:
        return None

    payload = decode_access_token(token)
    if not payload:
        return None
    user = user_store.get_by_id(payload["user_id"])
    if user is None or not user.can_login:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_roles(*roles: str) -> Callable[[Request], User]:
    """Return a dependency that admits only users holding one of ``roles``."""
    allowed = frozenset(roles)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if user.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Requires role: {', '.join(sorted(allowed))}."},
            )
        return user

    return dependency


require_admin = require_roles(*ADMIN_ROLES)
require_super_admin = require_roles(SUPER_ADMIN)
