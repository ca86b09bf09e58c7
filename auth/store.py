"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository for principals,
roles, permissions and revocation entries; the _row_to_* functions are the
mappers. Route, gate and service code never touches SQL directly.

Finds are plain: loading a user returns role ids, never populated roles.
Composing roles into an effective permission set is the resolver's job
(auth/permissions.py), so the dependency stays visible.

Concurrency:
  Every mutation the request path performs is a single atomic statement
  (or one short transaction touching one principal):
    - login_attempts is incremented relative to its stored value
      (SET login_attempts = login_attempts + 1), never read-modify-written.
    - lock transitions are conditional UPDATEs (WHERE lock_until ...), so two
      racing failures cannot both lock or both restart a cycle.
    - revocations rely on UNIQUE(token); a duplicate insert is absorbed.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as fixed-width ISO 8601 UTC strings (microsecond
precision) so string comparison in SQL matches chronological order.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Permission, RevokedToken, Role, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'admingate_auth.db'}"

# Columns callers may sort user listings by. Anything else falls back to created_at.
_USER_SORT_COLUMNS = ("created_at", "name", "email", "status", "last_login")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

# Ids are never reused. Tokens and audit records refer to principals by id.
_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("role_id", Integer, nullable=False, index=True),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(40)),
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    sqlite_autoincrement=True,
)

# Additional roles. id doubles as insertion order.
_user_roles = Table(
    "user_additional_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, nullable=False, index=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_additional_role"),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("level", Integer, nullable=False, server_default="1"),
    Column("is_system_role", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("color", String(20), nullable=False, server_default="#6B7280"),
    Column("icon", String(50), nullable=False, server_default="user"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    sqlite_autoincrement=True,
)

_permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("category", String(20), nullable=False, server_default="system"),
    Column("resource", String(50), nullable=False),
    Column("action", String(20), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("resource", "action", name="uq_permission_resource_action"),
    sqlite_autoincrement=True,
)

_role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", Integer, primary_key=True),
    Column("permission_id", Integer, primary_key=True),
)

_revoked_tokens = Table(
    "revoked_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, nullable=False, unique=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("reason", String(30), nullable=False, server_default="logout"),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width ISO 8601 UTC string; lexicographic order == time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_iso() -> str:
    return to_iso(_utcnow())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for principals, roles, permissions and revoked tokens.

    Usage:
        store = UserStore()
        role_id = store.create_role(Role(name="user", display_name="User"))
        user_id = store.create_user(User(name="Ada", email="ada@example.com",
                                         role_id=role_id, hashed_password=...))
        user = store.get_by_email("ADA@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1)).scalar()
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user (and its additional roles); return the new id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as "email taken" -- it also covers the race where
        two registrations pass the existence check concurrently.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    name=user.name,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role_id=user.role_id,
                    status=user.status,
                    login_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
            for role_id in dict.fromkeys(user.additional_role_ids):
                if role_id == user.role_id:
                    continue
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
        return user_id

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._additional_roles(conn, [row.id]).get(row.id, []))

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive email lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._additional_roles(conn, [row.id]).get(row.id, []))

    def email_taken(self, email: str, exclude_user_id: int | None = None) -> bool:
        query = select(func.count()).select_from(_users).where(_users.c.email == email.strip().lower())
        if exclude_user_id is not None:
            query = query.where(_users.c.id != exclude_user_id)
        with self.engine.connect() as conn:
            return (conn.execute(query).scalar() or 0) > 0

    def list_users(
        self,
        status: str | None = None,
        role_id: int | None = None,
        search: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[User], int]:
        """Return one page of users plus the total matching count."""
        conditions = []
        if status:
            conditions.append(_users.c.status == status)
        if role_id is not None:
            conditions.append(_users.c.role_id == role_id)
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(_users.c.name.ilike(pattern), _users.c.email.ilike(pattern)))
        where = and_(*conditions) if conditions else None

        column = _users.c[sort_by] if sort_by in _USER_SORT_COLUMNS else _users.c.created_at
        order = column.asc() if sort_order == "asc" else column.desc()

        query = _users.select()
        count_query = select(func.count()).select_from(_users)
        if where is not None:
            query = query.where(where)
            count_query = count_query.where(where)
        query = query.order_by(order, _users.c.id).offset((page - 1) * limit).limit(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
            extra = self._additional_roles(conn, [r.id for r in rows])
        return [_row_to_user(r, extra.get(r.id, [])) for r in rows], total

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields: name, email, status, hashed_password.

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError if a changed email collides with another user.
        """
        if "email" in fields and fields["email"] is not None:
            fields["email"] = fields["email"].strip().lower()
        fields = {k: v for k, v in fields.items() if v is not None}
        if not fields:
            return self.get_by_id(user_id) is not None
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def set_primary_role(self, user_id: int, role_id: int) -> bool:
        """Replace the primary role. Drops the role from the additional list if present."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(role_id=role_id, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
        return True

    def add_additional_role(self, user_id: int, role_id: int) -> bool:
        """Append an additional role. Returns False if it was already assigned."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
                conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=_now_iso()))
        except IntegrityError:
            return False
        return True

    def remove_additional_role(self, user_id: int, role_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
            if result.rowcount:
                conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=_now_iso()))
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Audit records are left untouched."""
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def count_users_with_role(self, role_id: int) -> int:
        """Number of principals referencing role_id, as primary or additional role."""
        holders = select(_user_roles.c.user_id).where(_user_roles.c.role_id == role_id)
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(or_(_users.c.role_id == role_id, _users.c.id.in_(holders)))
            ).scalar()
        return result or 0

    def user_stats(self) -> dict:
        """Totals per status plus the primary-role distribution."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.status, func.count()).group_by(_users.c.status)).fetchall()
            distribution = conn.execute(
                select(_roles.c.display_name, _roles.c.color, func.count(_users.c.id).label("count"))
                .select_from(_users.join(_roles, _users.c.role_id == _roles.c.id))
                .group_by(_roles.c.id, _roles.c.display_name, _roles.c.color)
                .order_by(func.count(_users.c.id).desc())
            ).fetchall()
        by_status = {status: count for status, count in rows}
        return {
            "total_users": sum(by_status.values()),
            "active_users": by_status.get("active", 0),
            "inactive_users": by_status.get("inactive", 0),
            "suspended_users": by_status.get("suspended", 0),
            "role_distribution": [{"role": r.display_name, "count": r.count, "color": r.color} for r in distribution],
        }

    # ------------------------------------------------------------------
    # Lockout counters -- atomic single-row statements
    # ------------------------------------------------------------------

    def increment_login_attempts(self, user_id: int) -> int:
        """Relative increment of the failure counter. Returns the new value."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(login_attempts=_users.c.login_attempts + 1)
            )
            value = conn.execute(select(_users.c.login_attempts).where(_users.c.id == user_id)).scalar()
        return value or 0

    def lock_account(self, user_id: int, until: datetime, now: datetime) -> bool:
        """Set lock_until unless a lock is already in force. Returns True if this call locked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .where(or_(_users.c.lock_until.is_(None), _users.c.lock_until <= to_iso(now)))
                .values(lock_until=to_iso(until))
            )
        return result.rowcount > 0

    def restart_login_attempts(self, user_id: int, now: datetime) -> bool:
        """Start a fresh failure cycle (counter = 1, lock cleared) after an expired lock.

        Conditional on the lock still being set and expired, so only one of
        several concurrent failures performs the restart.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .where(_users.c.lock_until.is_not(None))
                .where(_users.c.lock_until <= to_iso(now))
                .values(login_attempts=1, lock_until=None)
            )
        return result.rowcount > 0

    def reset_login_attempts(self, user_id: int, last_login: datetime) -> None:
        """Clear the counter and lock unconditionally and stamp last_login."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(login_attempts=0, lock_until=None, last_login=to_iso(last_login))
            )

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role with its permission set. Raises IntegrityError on duplicate name."""
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name.strip().lower(),
                    display_name=role.display_name,
                    description=role.description,
                    level=role.level,
                    is_system_role=1 if role.is_system_role else 0,
                    is_active=1 if role.is_active else 0,
                    color=role.color,
                    icon=role.icon,
                    created_at=now,
                    updated_at=now,
                )
            )
            role_id = result.inserted_primary_key[0]
            _replace_role_permissions(conn, role_id, role.permission_ids)
        return role_id

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            return _row_to_role(row, _role_permissions_for(conn, [row.id]).get(row.id, ([], [])))

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name.strip().lower())).fetchone()
            if row is None:
                return None
            return _row_to_role(row, _role_permissions_for(conn, [row.id]).get(row.id, ([], [])))

    def get_roles(self, role_ids: list[int]) -> dict[int, Role]:
        """Bulk load roles by id. Missing ids are simply absent from the result."""
        if not role_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.id.in_(set(role_ids)))).fetchall()
            perms = _role_permissions_for(conn, [r.id for r in rows])
        return {r.id: _row_to_role(r, perms.get(r.id, ([], []))) for r in rows}

    def list_roles(
        self,
        is_active: bool | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Role], int]:
        """One page of roles ordered by level (highest first) then name."""
        conditions = []
        if is_active is not None:
            conditions.append(_roles.c.is_active == (1 if is_active else 0))
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    _roles.c.name.ilike(pattern),
                    _roles.c.display_name.ilike(pattern),
                    _roles.c.description.ilike(pattern),
                )
            )
        query = _roles.select()
        count_query = select(func.count()).select_from(_roles)
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))
        query = query.order_by(_roles.c.level.desc(), _roles.c.name).offset((page - 1) * limit).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
            perms = _role_permissions_for(conn, [r.id for r in rows])
        return [_row_to_role(r, perms.get(r.id, ([], []))) for r in rows], total

    def update_role(self, role_id: int, **fields) -> bool:
        """Update role attributes; permission_ids, when given, replaces the whole set."""
        permission_ids = fields.pop("permission_ids", None)
        for flag in ("is_active", "is_system_role"):
            if flag in fields and fields[flag] is not None:
                fields[flag] = 1 if fields[flag] else 0
        fields = {k: v for k, v in fields.items() if v is not None}
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
            if result.rowcount and permission_ids is not None:
                _replace_role_permissions(conn, role_id, permission_ids)
        return result.rowcount > 0

    def set_role_permissions(self, role_id: int, permission_ids: list[int]) -> bool:
        return self.update_role(role_id, permission_ids=permission_ids)

    def delete_role(self, role_id: int) -> bool:
        """Delete a role, its permission links and any leftover additional-role links.

        Guards (system role, users still assigned) are the caller's
        responsibility -- the store only performs the mutation.
        """
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
        return result.rowcount > 0

    def role_stats(self) -> dict:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    func.count().label("total"),
                    func.coalesce(func.sum(_roles.c.is_active), 0).label("active"),
                    func.coalesce(func.sum(_roles.c.is_system_role), 0).label("system"),
                    func.avg(_roles.c.level).label("avg_level"),
                )
            ).fetchone()
            top = conn.execute(
                select(_permissions.c.name, func.count(_role_permissions.c.role_id).label("role_count"))
                .select_from(_role_permissions.join(_permissions, _role_permissions.c.permission_id == _permissions.c.id))
                .group_by(_permissions.c.id, _permissions.c.name)
                .order_by(func.count(_role_permissions.c.role_id).desc(), _permissions.c.name)
                .limit(10)
            ).fetchall()
        return {
            "total_roles": row.total or 0,
            "active_roles": int(row.active or 0),
            "system_roles": int(row.system or 0),
            "average_level": float(row.avg_level or 0),
            "top_permissions": [{"permission": t.name, "role_count": t.role_count} for t in top],
        }

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> int:
        """Insert a permission. Raises IntegrityError on a duplicate name or (resource, action)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _permissions.insert().values(
                    name=permission.name.strip().lower(),
                    display_name=permission.display_name,
                    description=permission.description,
                    category=permission.category,
                    resource=permission.resource,
                    action=permission.action,
                    is_active=1 if permission.is_active else 0,
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_permission(self, permission_id: int) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.id == permission_id)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_permission_by_name(self, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name.strip().lower())).fetchone()
        return _row_to_permission(row) if row is not None else None

    def existing_permission_ids(self, permission_ids: list[int]) -> set[int]:
        """Subset of permission_ids that exist. Used to reject unknown references."""
        if not permission_ids:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(select(_permissions.c.id).where(_permissions.c.id.in_(set(permission_ids)))).fetchall()
        return {r.id for r in rows}

    def list_permissions(
        self,
        category: str | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Permission], int]:
        conditions = []
        if category:
            conditions.append(_permissions.c.category == category)
        if is_active is not None:
            conditions.append(_permissions.c.is_active == (1 if is_active else 0))
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    _permissions.c.name.ilike(pattern),
                    _permissions.c.display_name.ilike(pattern),
                    _permissions.c.description.ilike(pattern),
                )
            )
        query = _permissions.select()
        count_query = select(func.count()).select_from(_permissions)
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))
        query = query.order_by(_permissions.c.category, _permissions.c.name).offset((page - 1) * limit).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_permission(r) for r in rows], total

    def update_permission(self, permission_id: int, **fields) -> bool:
        """Update display_name, description, category or is_active. name/resource/action are fixed."""
        if "is_active" in fields and fields["is_active"] is not None:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields = {k: v for k, v in fields.items() if v is not None}
        if not fields:
            return self.get_permission(permission_id) is not None
        with self.engine.begin() as conn:
            result = conn.execute(_permissions.update().where(_permissions.c.id == permission_id).values(**fields))
        return result.rowcount > 0

    def delete_permission(self, permission_id: int) -> bool:
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.permission_id == permission_id))
            result = conn.execute(_permissions.delete().where(_permissions.c.id == permission_id))
        return result.rowcount > 0

    def permission_categories(self) -> list[dict]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.category, func.count().label("count"))
                .group_by(_permissions.c.category)
                .order_by(_permissions.c.category)
            ).fetchall()
        return [{"category": r.category, "count": r.count} for r in rows]

    # ------------------------------------------------------------------
    # Revoked tokens
    # ------------------------------------------------------------------

    def add_revoked_token(self, entry: RevokedToken) -> bool:
        """Insert a revocation entry. Returns False if the token was already revoked."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _revoked_tokens.insert().values(
                        token=entry.token,
                        user_id=entry.user_id,
                        reason=entry.reason,
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent,
                        created_at=_now_iso(),
                        expires_at=to_iso(entry.expires_at),
                    )
                )
        except IntegrityError:
            return False
        return True

    def is_token_revoked(self, token: str) -> bool:
        """Point lookup on the UNIQUE token index."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_revoked_tokens.c.id).where(_revoked_tokens.c.token == token)).fetchone()
        return row is not None

    def get_revoked_token(self, token: str) -> RevokedToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_revoked_tokens.select().where(_revoked_tokens.c.token == token)).fetchone()
        return _row_to_revoked(row) if row is not None else None

    def purge_revoked_tokens(self, now: datetime) -> int:
        """Delete entries whose token would have expired anyway. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_revoked_tokens.delete().where(_revoked_tokens.c.expires_at <= to_iso(now)))
        return result.rowcount

    def clear_all(self) -> None:
        """Delete every row from every auth table. Used by `main.py seed --reset`."""
        with self.engine.begin() as conn:
            for table in reversed(metadata.sorted_tables):
                conn.execute(table.delete())

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _additional_roles(conn: Connection, user_ids: list[int]) -> dict[int, list[int]]:
        if not user_ids:
            return {}
        rows = conn.execute(
            select(_user_roles.c.user_id, _user_roles.c.role_id)
            .where(_user_roles.c.user_id.in_(set(user_ids)))
            .order_by(_user_roles.c.id)
        ).fetchall()
        result: dict[int, list[int]] = {}
        for row in rows:
            result.setdefault(row.user_id, []).append(row.role_id)
        return result


def _replace_role_permissions(conn: Connection, role_id: int, permission_ids: list[int]) -> None:
    conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
    for permission_id in dict.fromkeys(permission_ids):
        conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))


def _role_permissions_for(conn: Connection, role_ids: list[int]) -> dict[int, tuple[list[int], list[str]]]:
    """Map role id -> (all permission ids, names of active permissions)."""
    if not role_ids:
        return {}
    rows = conn.execute(
        select(_role_permissions.c.role_id, _permissions.c.id, _permissions.c.name, _permissions.c.is_active)
        .select_from(_role_permissions.join(_permissions, _role_permissions.c.permission_id == _permissions.c.id))
        .where(_role_permissions.c.role_id.in_(set(role_ids)))
        .order_by(_permissions.c.name)
    ).fetchall()
    result: dict[int, tuple[list[int], list[str]]] = {}
    for row in rows:
        ids, names = result.setdefault(row.role_id, ([], []))
        ids.append(row.id)
        if row.is_active:
            names.append(row.name)
    return result


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, additional_role_ids: list[int]) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        role_id=row.role_id,
        additional_role_ids=list(additional_role_ids),
        status=row.status,
        login_attempts=row.login_attempts or 0,
        lock_until=from_iso(row.lock_until),
        last_login=from_iso(row.last_login),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_role(row, permissions: tuple[list[int], list[str]]) -> Role:
    permission_ids, permission_names = permissions
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        level=row.level,
        permission_ids=list(permission_ids),
        permission_names=list(permission_names),
        is_system_role=bool(row.is_system_role),
        is_active=bool(row.is_active),
        color=row.color,
        icon=row.icon,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        category=row.category,
        resource=row.resource,
        action=row.action,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_revoked(row) -> RevokedToken:
    return RevokedToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        reason=row.reason,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        expires_at=from_iso(row.expires_at),
    )
