"""
auth/service.py -- Credential flows: register, login, logout, password change.

Each flow is a short sequence over the store, the lockout guard, the
revocation ledger and the token codec, with audit records emitted through
the sink. Domain failures raise ServiceError; the HTTP layer turns them into
the standard error envelope.

Login order matters:
  unknown email   -> dummy bcrypt run (timing equalization), 401
  locked          -> 423 before any password comparison
  not active      -> 401
  wrong password  -> lockout guard failure, 401 (account_locked record when
                     this attempt locked the account)
  success         -> lockout guard reset, token with a freshly resolved
                     permission snapshot

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.lockout import LockoutGuard, is_locked
from auth.models import RequestOrigin, User
from auth.permissions import PermissionResolver
from auth.revocation import RevocationLedger
from auth.tokens import TokenCodec, burn_password_check, hash_password, verify_password

if TYPE_CHECKING:
    from audit.sink import AuditSink
    from auth.gate import AuthContext
    from auth.store import UserStore

logger = logging.getLogger("admingate.auth")


class ServiceError(Exception):
    """A synchronous input/authentication failure reported to the caller."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class AuthService:
    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        ledger: RevocationLedger,
        lockout: LockoutGuard,
        audit: AuditSink,
        bcrypt_rounds: int = 12,
        default_role: str = "user",
    ) -> None:
        self._store = store
        self._codec = codec
        self._ledger = ledger
        self._lockout = lockout
        self._audit = audit
        self._resolver = PermissionResolver(store)
        self._rounds = bcrypt_rounds
        self._default_role = default_role

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def issue_token(self, user: User) -> str:
        """Resolve the live effective set and freeze it into a new token."""
        roles = self._resolver.roles_for(user)
        primary = roles.get(user.role_id)
        permissions = self._resolver.resolve(user)
        return self._codec.issue(user, primary.name if primary else "", permissions)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        email: str,
        password: str,
        role: int | str | None = None,
        origin: RequestOrigin | None = None,
    ) -> tuple[User, str]:
        """Create a self-registered account and return it with a session token.

        role may be a role id or name; it defaults to the configured default
        role. Self-registration cannot pick a role above the default role's
        level -- higher roles are assigned by an operator.
        """
        if self._store.email_taken(email):
            raise ServiceError(400, "email_exists", "A user with that email already exists.")

        default = self._store.get_role_by_name(self._default_role)
        if role is None or role == "":
            chosen = default
            if chosen is None:
                raise ServiceError(500, "default_role_missing", "Default user role not found. Run the seeder first.")
        else:
            chosen = self._find_role(role)
            if chosen is None:
                raise ServiceError(400, "invalid_role", "Invalid role. Role not found.")
            if default is not None and chosen.level > default.level:
                raise ServiceError(403, "role_not_allowed", "That role cannot be chosen at registration.")

        try:
            user_id = self._store.create_user(
                User(
                    name=name,
                    email=email,
                    hashed_password=hash_password(password, self._rounds),
                    role_id=chosen.id,
                )
            )
        except IntegrityError as exc:
            raise ServiceError(400, "email_exists", "A user with that email already exists.") from exc

        user = self._store.get_by_id(user_id)
        token = self.issue_token(user)
        self._audit.record(
            user.id,
            "register",
            "user",
            {"email": user.email, "role": chosen.name, "registration_method": "standard"},
            origin,
            "success",
            "low",
        )
        return user, token

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, origin: RequestOrigin | None = None) -> tuple[User, str]:
        now = datetime.now(timezone.utc)
        user = self._store.get_by_email(email)
        if user is None:
            burn_password_check(password)
            self._audit.record(
                None, "failed_login", "auth", {"email": email, "reason": "user_not_found"}, origin, "failure", "medium"
            )
            raise ServiceError(401, "bad_credentials", "Invalid email or password.")

        if is_locked(user, now):
            self._audit.record(
                user.id,
                "failed_login",
                "auth",
                {"reason": "account_locked", "lock_until": user.lock_until.isoformat()},
                origin,
                "failure",
                "medium",
            )
            raise ServiceError(423, "ACCOUNT_LOCKED", "Account temporarily locked due to too many failed login attempts.")

        if user.status != "active":
            self._audit.record(
                user.id,
                "failed_login",
                "auth",
                {"reason": "account_inactive", "status": user.status},
                origin,
                "failure",
                "medium",
            )
            raise ServiceError(401, "account_inactive", "Account is not active.")

        if not verify_password(password, user.hashed_password or ""):
            state = self._lockout.register_failure(user, now)
            self._audit.record(
                user.id,
                "failed_login",
                "auth",
                {"reason": "invalid_password", "attempts": state.attempts},
                origin,
                "failure",
                "high" if state.attempts > 3 else "medium",
            )
            if state.locked:
                self._audit.record(
                    user.id,
                    "account_locked",
                    "auth",
                    {"attempts": state.attempts, "lock_until": state.lock_until.isoformat()},
                    origin,
                    "warning",
                    "critical",
                )
            raise ServiceError(401, "bad_credentials", "Invalid email or password.")

        self._lockout.register_success(user, now)
        token = self.issue_token(user)
        self._audit.record(
            user.id,
            "login",
            "auth",
            {
                "login_method": "password",
                "last_login": user.last_login.isoformat() if user.last_login else None,
            },
            origin,
            "success",
            "low",
        )
        return self._store.get_by_id(user.id) or user, token

    def logout(self, ctx: AuthContext, origin: RequestOrigin | None = None) -> None:
        """Revoke the presenting token."""
        self._ledger.revoke(ctx.token, ctx.user.id, ctx.claims.expires_at, "logout", origin)
        self._audit.record(
            ctx.user.id,
            "logout",
            "auth",
            {"logout_method": "manual", "token_expires_at": ctx.claims.expires_at.isoformat()},
            origin,
            "success",
            "low",
        )

    def force_logout(self, ctx: AuthContext, origin: RequestOrigin | None = None) -> None:
        """Revoke the presenting token with reason force_logout.

        Tokens are stateless and not enumerable, so only the presenting token
        can be revoked; other live tokens of the same principal expire on
        their own.
        """
        self._ledger.revoke(ctx.token, ctx.user.id, ctx.claims.expires_at, "force_logout", origin)
        self._audit.record(
            ctx.user.id,
            "force_logout",
            "auth",
            {"logout_method": "force_all_sessions", "initiated_by": "user"},
            origin,
            "success",
            "medium",
        )

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        origin: RequestOrigin | None = None,
    ) -> None:
        user = self._store.get_by_id(ctx.user.id)
        if user is None:
            raise ServiceError(404, "not_found", "User not found.")
        if not verify_password(current_password, user.hashed_password or ""):
            self._audit.record(
                user.id,
                "password_change",
                "auth",
                {"reason": "incorrect_current_password"},
                origin,
                "failure",
                "high",
            )
            raise ServiceError(400, "incorrect_password", "Current password is incorrect.")

        self._store.update_user(user.id, hashed_password=hash_password(new_password, self._rounds))
        self._ledger.revoke(ctx.token, user.id, ctx.claims.expires_at, "password_change", origin)
        self._audit.record(
            user.id,
            "password_change",
            "auth",
            {"method": "self_change", "tokens_invalidated": True},
            origin,
            "success",
            "medium",
        )

    def update_profile(
        self,
        ctx: AuthContext,
        name: str | None = None,
        email: str | None = None,
        origin: RequestOrigin | None = None,
    ) -> User:
        old = self._store.get_by_id(ctx.user.id)
        if old is None:
            raise ServiceError(404, "not_found", "User not found.")
        if email and self._store.email_taken(email, exclude_user_id=old.id):
            raise ServiceError(400, "email_exists", "A user with that email already exists.")

        try:
            self._store.update_user(old.id, name=name, email=email)
        except IntegrityError as exc:
            raise ServiceError(400, "email_exists", "A user with that email already exists.") from exc

        updated = self._store.get_by_id(old.id)
        changes = {}
        if name is not None and name != old.name:
            changes["name"] = {"from": old.name, "to": name}
        if email is not None and updated.email != old.email:
            changes["email"] = {"from": old.email, "to": updated.email}
        self._audit.record(
            old.id, "profile_update", "user", {"changes": changes, "updated_by": "self"}, origin, "success", "low"
        )
        return updated

    def _find_role(self, role: int | str):
        if isinstance(role, int) or (isinstance(role, str) and role.isdigit()):
            return self._store.get_role(int(role))
        return self._store.get_role_by_name(role)
