"""
api/routes/v1/auth.py -- Authentication and self-service profile endpoints.

Routes:
  POST  /api/v1/auth/login   -- password login; sets JWT cookie
  POST  /api/v1/auth/logout  -- clears cookie; 200
  GET   /api/v1/auth/me      -- current user profile (requires auth)
  PATCH /api/v1/auth/me      -- update own full_name / designation (requires auth)
  POST  /api/v1/auth/signup  -- staff self-registration (Admin or Security-team, pending approval)

Security:
  POST /login and POST /signup are rate-limited per IP.
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
  Accounts that are pending, rejected or suspended get a distinct 403 code on
  login, but only after the password has been verified -- an unknown email and
  a wrong password stay indistinguishable.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import LOGIN_LIMIT, SIGNUP_LIMIT, limiter
from api.models import LoginRequest, LoginResponse, ProfileUpdate, StaffSignupRequest, UserResponse
from auth.dependencies import get_current_user
from auth.models import PENDING, User
from auth.store import UserStore
from auth.tokens import authenticate_user, create_access_token, hash_password, login_block_reason, set_auth_cookie
from core.config import get_settings
from portal.models import Notification
from portal.store import PortalStore

logger = logging.getLogger("vaptportal.api")

_BLOCK_MESSAGES = {
    "pending_approval": "Your account is awaiting admin approval.",
    "suspended": "Your account has been suspended. Contact an administrator.",
    "rejected": "Your account request was rejected.",
}

# Auth policy:
# - POST  /api/v1/auth/login:   public -- login endpoint must be unauthenticated
# - POST  /api/v1/auth/logout:  public -- clearing a cookie needs no prior auth
# - POST  /api/v1/auth/signup:  public -- gated by self-registration settings
# - GET   /api/v1/auth/me:      requires auth (get_current_user)
# - PATCH /api/v1/auth/me:      requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # keep ABOVE @router
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Returns the same generic error for unknown email and wrong password
    ("bad_credentials") to avoid leaking which emails are registered.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        return _no_store(
            JSONResponse(
                status_code=401,
                content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
            )
        )

    reason = login_block_reason(user)
    if reason is not None:
        logger.info("Login refused for user %d: %s", user.id, reason)
        return _no_store(
            JSONResponse(
                status_code=403,
                content={"error": {"code": reason, "message": _BLOCK_MESSAGES[reason]}},
            )
        )

    user_store.update_last_login(user.id)
    expires_in = get_settings().token_expire_seconds
    token = create_access_token(user.id, user.email, user.role)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            user_id=user.id,
            email=user.email,
            role=user.role,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    return _no_store(resp)


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@limiter.limit(SIGNUP_LIMIT)
@router.post("/auth/signup", response_model=UserResponse, status_code=201)
def staff_signup(request: Request, body: StaffSignupRequest) -> UserResponse:
    """Register an Admin or Security-team account awaiting approval.

    Disabled when either the SELF_REGISTRATION_ENABLED deployment setting or
    the runtime app setting is off. Admins are told via a user_signup
    broadcast notification.
    """
    user_store: UserStore = request.app.state.user_store
    portal_store: PortalStore = request.app.state.portal_store

    if not (get_settings().self_registration_enabled and user_store.get_app_settings()["self_registration_enabled"]):
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )

    new_user = User(
        email=body.email,
        role=body.role.value,
        full_name=body.full_name,
        designation=body.designation,
        hashed_password=hash_password(body.password),
        status=PENDING,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc

    portal_store.create_notification(
        Notification(
            type="user_signup",
            actor_id=user_id,
            payload={
                "user_id": user_id,
                "email": new_user.email.lower(),
                "full_name": body.full_name,
                "role": body.role.value,
            },
        )
    )
    logger.info("Staff signup: user %d requested role %s", user_id, body.role.value)
    return UserResponse.from_domain(user_store.get_by_id(user_id))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the currently authenticated user."""
    return UserResponse.from_domain(current_user)


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Update the caller's own full_name and designation.

    ProfileUpdate forbids extra fields; role, status and organization change
    only through the admin endpoints.
    """
    user_store: UserStore = request.app.state.user_store
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    user_store.update_user(current_user.id, **updates)
    return UserResponse.from_domain(user_store.get_by_id(current_user.id))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp
