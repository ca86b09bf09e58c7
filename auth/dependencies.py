"""
auth/dependencies.py -- FastAPI Depends() helpers around the authorization gate.

Every helper funnels into authorize(), which runs AuthorizationGate.check()
once per request -- so each protected request produces exactly one gate
audit record. Use ONE of these per route; stacking two would run the gate
twice.

  get_auth_context        -- any authenticated, active, unlocked principal
  get_current_user        -- same, returns only the User
  require_permission(p)   -- p in the token's permission snapshot
  require_any_permission  -- at least one of the listed permissions
  require_all_permissions -- every listed permission
  restrict_to(*roles)     -- legacy: primary role name in an allow-list
  require_super_admin     -- primary role level >= 90

On success the context is also stored on request.state.auth; logout and
password change read the raw token from it to revoke it.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.gate import (
    AuthContext,
    AuthorizationGate,
    RequireAllPermissions,
    RequireAnyPermission,
    RequirePermission,
    Requirement,
    RequireSuperAdmin,
    RestrictToRoles,
)
from auth.models import RequestOrigin, User


def bearer_token(request: Request) -> str | None:
    """Return the token from "Authorization: Bearer <token>", or None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def request_origin(request: Request) -> RequestOrigin:
    return RequestOrigin(
        ip_address=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("User-Agent", "unknown"),
    )


def authorize(request: Request, requirement: Requirement | None = None) -> AuthContext:
    """Run the gate for this request. Raises AuthorizationError on denial."""
    gate: AuthorizationGate = request.app.state.gate
    ctx = gate.check(
        bearer_token(request),
        request_origin(request),
        requirement,
        resource=f"{request.method} {request.url.path}",
    )
    request.state.auth = ctx
    return ctx


def get_auth_context(request: Request) -> AuthContext:
    """Require authentication. Use as a FastAPI dependency:

    @router.post("/auth/logout")
    def logout(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    return authorize(request)


def get_current_user(request: Request) -> User:
    return authorize(request).user


def require_permission(permission: str) -> Callable[[Request], AuthContext]:
    def dependency(request: Request) -> AuthContext:
        return authorize(request, RequirePermission(permission))

    return dependency


def require_any_permission(*permissions: str) -> Callable[[Request], AuthContext]:
    def dependency(request: Request) -> AuthContext:
        return authorize(request, RequireAnyPermission(tuple(permissions)))

    return dependency


def require_all_permissions(*permissions: str) -> Callable[[Request], AuthContext]:
    def dependency(request: Request) -> AuthContext:
        return authorize(request, RequireAllPermissions(tuple(permissions)))

    return dependency


def restrict_to(*roles: str) -> Callable[[Request], AuthContext]:
    """Legacy role allow-list, kept for routes that predate permissions."""

    def dependency(request: Request) -> AuthContext:
        return authorize(request, RestrictToRoles(tuple(roles)))

    return dependency


def require_super_admin(request: Request) -> AuthContext:
    return authorize(request, RequireSuperAdmin())


# Shorthands matching the original route policies.
admin_only = require_permission("system:manage")
admin_or_moderator = require_any_permission("system:manage", "user:manage")
