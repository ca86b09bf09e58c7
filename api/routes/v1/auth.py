"""
api/routes/v1/auth.py -- Session endpoints: register, login, logout, profile.

Routes:
  POST /api/v1/auth/register            -- create an account, returns a token
  POST /api/v1/auth/login               -- password login, returns a token
  GET  /api/v1/auth/profile             -- current principal + token permissions
  PUT  /api/v1/auth/profile             -- update own name / email
  PUT  /api/v1/auth/change-password     -- change password; revokes the token
  POST /api/v1/auth/logout              -- revoke the presenting token
  POST /api/v1/auth/logout-all          -- revoke with reason force_logout
  POST /api/v1/auth/permissions/check   -- live recheck against current roles

Security:
  - register and login are rate-limited per client IP (LOGIN_RATE_LIMIT).
  - AuthService.login runs a dummy bcrypt check for unknown emails.
  - Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    ProfileUpdate,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_auth_context, request_origin
from auth.gate import AuthContext, AuthorizationGate
from auth.models import User
from auth.service import AuthService
from auth.store import UserStore

# Auth policy:
# - POST /auth/register, /auth/login:   public, rate limited
# - everything else:                     authenticated (get_auth_context)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _user_response(store: UserStore, user: User) -> UserResponse:
    return UserResponse.from_user(user, store.get_roles([user.role_id, *user.additional_role_ids]))


def _token_response(request: Request, response: Response, user: User, token: str) -> TokenResponse:
    response.headers["Cache-Control"] = "no-store"
    return TokenResponse(
        access_token=token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=request.app.state.codec.expire_seconds,
        user=_user_response(request.app.state.user_store, user),
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
@limiter.limit(login_rate_limit)
def register(request: Request, response: Response, body: RegisterRequest) -> TokenResponse:
    """Create an account with the default role (or a role at or below it)."""
    user, token = _service(request).register(
        body.name, body.email, body.password, body.role, request_origin(request)
    )
    return _token_response(request, response, user, token)


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, response: Response, body: LoginRequest) -> TokenResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same "bad_credentials" 401.
    A locked account returns 423 ACCOUNT_LOCKED even when the password is
    right.
    """
    user, token = _service(request).login(body.email, body.password, request_origin(request))
    return _token_response(request, response, user, token)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/profile", response_model=MeResponse)
def profile(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return the current principal and the permission snapshot in their token."""
    return MeResponse(
        user=_user_response(request.app.state.user_store, ctx.user),
        permissions=sorted(ctx.permissions),
    )


@router.put("/auth/profile", response_model=UserResponse)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    ctx: AuthContext = Depends(get_auth_context),
) -> UserResponse:
    user = _service(request).update_profile(ctx, body.name, body.email, request_origin(request))
    return _user_response(request.app.state.user_store, user)


@router.put("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> MessageResponse:
    """Change the password. The presenting token is revoked; log in again."""
    _service(request).change_password(ctx, body.current_password, body.new_password, request_origin(request))
    return MessageResponse(message="Password changed. Please log in again.")


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> MessageResponse:
    _service(request).logout(ctx, request_origin(request))
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> MessageResponse:
    """Revoke the presenting token with reason force_logout."""
    _service(request).force_logout(ctx, request_origin(request))
    return MessageResponse(message="Session terminated.")


@router.post("/auth/permissions/check", response_model=PermissionCheckResponse)
def check_permissions(
    request: Request,
    body: PermissionCheckRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> PermissionCheckResponse:
    """Evaluate permissions against the principal's CURRENT roles.

    Route authorization uses the token snapshot, which can be stale after a
    role change. This endpoint shows both sides so a client can tell when a
    fresh login would change the outcome.
    """
    gate: AuthorizationGate = request.app.state.gate
    allowed, missing = gate.recheck(ctx, body.permissions, body.mode)
    return PermissionCheckResponse(
        allowed=allowed,
        mode=body.mode,
        missing=missing,
        token_permissions=sorted(ctx.permissions),
        live_permissions=sorted(gate.live_permissions(ctx.user)),
    )
