"""
auth/gate.py -- Authorization gate: the single composition point in front of
every privileged operation.

Pipeline (fail closed at every step):
  1. bearer token present
  2. TokenCodec.verify        -> TOKEN_EXPIRED / TOKEN_INVALID
  3. RevocationLedger lookup  -> TOKEN_BLACKLISTED
  4. principal still exists   -> 401
  5. status == "active"       -> 401
  6. not locked               -> 423 ACCOUNT_LOCKED
  7. requirement predicate    -> 403 INSUFFICIENT_PERMISSIONS / INSUFFICIENT_ROLE /
                                 REQUIRES_SUPER_ADMIN

Permission requirements are evaluated against the token's frozen snapshot,
not the live role graph. Role-name and level requirements read the
principal's current primary role. recheck() is the explicit live variant.

Every call to check() emits exactly one audit record: access_granted on
success, access_denied with the denial reason otherwise. The 403 response
names the missing permission(s) -- verbose on purpose, to keep denials
debuggable.

This module is framework-free; auth/dependencies.py adapts it to FastAPI.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from auth.lockout import is_locked
from auth.models import SUPER_ADMIN_LEVEL, RequestOrigin, Role, TokenClaims, User
from auth.permissions import PermissionResolver, has_all_permissions, has_any_permission, missing_permissions
from auth.tokens import TokenError

if TYPE_CHECKING:
    from audit.sink import AuditSink
    from auth.revocation import RevocationLedger
    from auth.store import UserStore
    from auth.tokens import TokenCodec

# Machine-readable denial codes returned to clients.
TOKEN_BLACKLISTED = "TOKEN_BLACKLISTED"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
TOKEN_INVALID = "TOKEN_INVALID"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
REQUIRES_SUPER_ADMIN = "REQUIRES_SUPER_ADMIN"


class AuthorizationError(Exception):
    """A fail-closed gate decision.

    status_code/code/message/required form the client response. reason,
    severity, user_id and details only feed the audit record.
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        code: str | None = None,
        required: Any = None,
        reason: str = "unauthorized",
        severity: str = "medium",
        user_id: int | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.required = required
        self.reason = reason
        self.severity = severity
        self.user_id = user_id
        self.details = details or {}


@dataclass(frozen=True)
class AuthContext:
    """What a route handler receives after the gate lets a request through."""

    user: User
    token: str
    claims: TokenClaims
    role: Role | None = None

    @property
    def permissions(self) -> frozenset[str]:
        return self.claims.permissions


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Requirement:
    """Base requirement: authentication only."""

    needs_role = False

    def check(self, ctx: AuthContext) -> AuthorizationError | None:
        return None


@dataclass(frozen=True)
class RequirePermission(Requirement):
    permission: str

    def check(self, ctx: AuthContext) -> AuthorizationError | None:
        if self.permission in ctx.permissions:
            return None
        return _insufficient(ctx, self.permission, "required_permission")


@dataclass(frozen=True)
class RequireAnyPermission(Requirement):
    permissions: tuple[str, ...]

    def check(self, ctx: AuthContext) -> AuthorizationError | None:
        if has_any_permission(ctx.permissions, self.permissions):
            return None
        return _insufficient(ctx, list(self.permissions), "required_permissions")


@dataclass(frozen=True)
class RequireAllPermissions(Requirement):
    permissions: tuple[str, ...]

    def check(self, ctx: AuthContext) -> AuthorizationError | None:
        if has_all_permissions(ctx.permissions, self.permissions):
            return None
        missing = missing_permissions(ctx.permissions, self.permissions)
        err = _insufficient(ctx, list(self.permissions), "required_permissions")
        err.details["missing_permissions"] = missing
        return err


@dataclass(frozen=True)
class RestrictToRoles(Requirement):
    """Legacy allow-list of primary role names."""

    roles: tuple[str, ...]
    needs_role = True

    def check(self, ctx: AuthContext) -> AuthorizationError | None:
        role_name = ctx.role.name if ctx.role else None
        if role_name in self.roles:
            return None
        return AuthorizationError(
            403,
            "Forbidden",
            code=INSUFFICIENT_ROLE,
            reason="insufficient_role",
            severity="high",
            user_id=ctx.user.id,
            details={"required_roles": list(self.roles), "user_role": role_name},
        )


@dataclass(frozen=True)
class RequireSuperAdmin(Requirement):
    min_level: int = SUPER_ADMIN_LEVEL
    needs_role = True

    def check(self, ctx: AuthContext) -> AuthorizationError | None:
        level = ctx.role.level if ctx.role else 0
        if level >= self.min_level:
            return None
        return AuthorizationError(
            403,
            "Super admin access required",
            code=REQUIRES_SUPER_ADMIN,
            reason="requires_super_admin",
            severity="critical",
            user_id=ctx.user.id,
            details={"user_level": level},
        )


def _insufficient(ctx: AuthContext, required: Any, key: str) -> AuthorizationError:
    return AuthorizationError(
        403,
        "Forbidden",
        code=INSUFFICIENT_PERMISSIONS,
        required=required,
        reason="insufficient_permissions",
        severity="high",
        user_id=ctx.user.id,
        details={key: required, "user_permissions": sorted(ctx.permissions)},
    )


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class AuthorizationGate:
    def __init__(
        self,
        codec: TokenCodec,
        store: UserStore,
        ledger: RevocationLedger,
        audit: AuditSink,
    ) -> None:
        self._codec = codec
        self._store = store
        self._ledger = ledger
        self._audit = audit
        self._resolver = PermissionResolver(store)

    def check(
        self,
        token: str | None,
        origin: RequestOrigin | None = None,
        requirement: Requirement | None = None,
        resource: str | None = None,
        now: datetime | None = None,
    ) -> AuthContext:
        """Run the full pipeline. Returns the context or raises AuthorizationError.

        Exactly one audit record is emitted per call.
        """
        requirement = requirement or Requirement()
        try:
            ctx = self._authenticate(token, requirement.needs_role, now)
            denial = requirement.check(ctx)
            if denial is not None:
                raise denial
        except AuthorizationError as exc:
            details = {"reason": exc.reason, **exc.details}
            if resource:
                details["attempted_resource"] = resource
            self._audit.record(exc.user_id, "access_denied", "auth", details, origin, "failure", exc.severity)
            raise

        details = {"requirement": _describe(requirement)}
        if resource:
            details["resource"] = resource
        self._audit.record(ctx.user.id, "access_granted", "auth", details, origin, "success", "low")
        return ctx

    def recheck(self, ctx: AuthContext, permissions: Iterable[str], mode: str = "all") -> tuple[bool, list[str]]:
        """Evaluate permissions against a LIVE recomputation of the effective set.

        Returns (allowed, missing). mode is "all" or "any".
        """
        live = self._resolver.resolve(ctx.user)
        permissions = list(permissions)
        missing = missing_permissions(live, permissions)
        if mode == "any":
            return has_any_permission(live, permissions), missing
        return not missing, missing

    def live_permissions(self, user: User) -> frozenset[str]:
        return self._resolver.resolve(user)

    def _authenticate(self, token: str | None, needs_role: bool, now: datetime | None) -> AuthContext:
        if not token:
            raise AuthorizationError(401, "Authentication required.", reason="missing_token", severity="low")

        try:
            claims = self._codec.verify(token)
        except TokenError as exc:
            raise AuthorizationError(
                401,
                str(exc),
                code=exc.code,
                reason=exc.code.lower(),
                severity="medium",
            ) from exc

        if self._ledger.is_revoked(token):
            raise AuthorizationError(
                401,
                "Token has been invalidated",
                code=TOKEN_BLACKLISTED,
                reason="token_blacklisted",
                severity="medium",
                user_id=claims.user_id,
            )

        user = self._store.get_by_id(claims.user_id)
        if user is None:
            raise AuthorizationError(
                401,
                "Authentication required.",
                reason="user_not_found",
                severity="high",
                details={"token_user_id": claims.user_id},
            )

        if user.status != "active":
            raise AuthorizationError(
                401,
                "Authentication required.",
                reason="account_inactive",
                severity="medium",
                user_id=user.id,
                details={"status": user.status},
            )

        if is_locked(user, now or datetime.now(timezone.utc)):
            raise AuthorizationError(
                423,
                "Account temporarily locked due to too many failed login attempts",
                code=ACCOUNT_LOCKED,
                reason="account_locked",
                severity="medium",
                user_id=user.id,
                details={"lock_until": user.lock_until.isoformat()},
            )

        role = self._resolver.primary_role(user) if needs_role else None
        return AuthContext(user=user, token=token, claims=claims, role=role)


def _describe(requirement: Requirement) -> str:
    if isinstance(requirement, RequirePermission):
        return f"permission:{requirement.permission}"
    if isinstance(requirement, RequireAnyPermission):
        return "any:" + ",".join(requirement.permissions)
    if isinstance(requirement, RequireAllPermissions):
        return "all:" + ",".join(requirement.permissions)
    if isinstance(requirement, RestrictToRoles):
        return "roles:" + ",".join(requirement.roles)
    if isinstance(requirement, RequireSuperAdmin):
        return f"level>={requirement.min_level}"
    return "authenticated"
