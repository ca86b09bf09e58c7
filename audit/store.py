"""
audit/store.py -- SQLAlchemy Core persistence for audit records.

Pattern: Repository + Data Mapper, same as auth/store.py. Writes are
insert-only; the only deletion is retention pruning by age
(purge_older_than). Reads see every row that has been durably written.

details is a JSON object serialized to TEXT. Timestamps are fixed-width
ISO 8601 UTC strings so date-range filters compare correctly as strings.

Usage:
    store = AuditStore()
    store.insert(AuditRecord(action="login", resource="auth", ...))
    records, total = store.list_records(action="login", page=1, limit=50)
    store.purge_older_than(days=90)
    store.close()
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, and_, create_engine, event, func, or_, select
from sqlalchemy.engine import Engine

from audit.models import RETENTION_DAYS, SECURITY_ACTIONS, AuditRecord

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'admingate_audit.db'}"

_SORT_COLUMNS = ("created_at", "action", "severity", "status", "user_id")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_audit = Table(
    "audit_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),  # NULL for pre-authentication events
    Column("action", String(50), nullable=False, index=True),
    Column("resource", String(20), nullable=False),
    Column("resource_id", String(64)),
    Column("details", Text, nullable=False, server_default="{}"),
    Column("ip_address", String(64), nullable=False, index=True),
    Column("user_agent", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="success"),
    Column("severity", String(20), nullable=False, server_default="low"),
    Column("created_at", String(40), nullable=False, index=True),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


class AuditStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def insert(self, record: AuditRecord) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit.insert().values(
                    user_id=record.user_id,
                    action=record.action,
                    resource=record.resource,
                    resource_id=record.resource_id,
                    details=json.dumps(record.details, default=str),
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    status=record.status,
                    severity=record.severity,
                    created_at=record.created_at or now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_records(
        self,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        ip_address: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[AuditRecord], int]:
        """Filtered, paginated view of the trail. Returns (records, total matching)."""
        conditions = []
        if user_id is not None:
            conditions.append(_audit.c.user_id == user_id)
        if action:
            conditions.append(_audit.c.action == action)
        if resource:
            conditions.append(_audit.c.resource == resource)
        if status:
            conditions.append(_audit.c.status == status)
        if severity:
            conditions.append(_audit.c.severity == severity)
        if ip_address:
            conditions.append(_audit.c.ip_address == ip_address)
        if date_from is not None:
            conditions.append(_audit.c.created_at >= _iso(date_from))
        if date_to is not None:
            conditions.append(_audit.c.created_at <= _iso(date_to))

        column = _audit.c[sort_by] if sort_by in _SORT_COLUMNS else _audit.c.created_at
        order = column.asc() if sort_order == "asc" else column.desc()
        return self._page(and_(*conditions) if conditions else None, order, page, limit)

    def security_events(self, page: int = 1, limit: int = 20) -> tuple[list[AuditRecord], int]:
        """Security-relevant actions, any failure, and anything high or critical."""
        where = or_(
            _audit.c.action.in_(SECURITY_ACTIONS),
            _audit.c.status == "failure",
            _audit.c.severity.in_(("high", "critical")),
        )
        return self._page(where, _audit.c.created_at.desc(), page, limit)

    def user_activity(
        self, user_id: int, action: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> tuple[list[AuditRecord], int]:
        return self.list_records(user_id=user_id, action=action, page=page, limit=limit)

    def count(self, **filters) -> int:
        return self.list_records(limit=1, **filters)[1]

    def purge_older_than(self, days: int = RETENTION_DAYS, now: Optional[datetime] = None) -> int:
        """Delete records past the retention horizon. Returns rows removed."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        with self.engine.begin() as conn:
            result = conn.execute(_audit.delete().where(_audit.c.created_at < _iso(cutoff)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    def _page(self, where, order, page: int, limit: int) -> tuple[list[AuditRecord], int]:
        query = _audit.select()
        count_query = select(func.count()).select_from(_audit)
        if where is not None:
            query = query.where(where)
            count_query = count_query.where(where)
        query = query.order_by(order, _audit.c.id.desc()).offset((page - 1) * limit).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_record(r) for r in rows], total


def _row_to_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        details=json.loads(row.details or "{}"),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        status=row.status,
        severity=row.severity,
        created_at=row.created_at,
    )
