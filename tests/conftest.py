"""
tests/conftest.py -- Shared test fixtures for AdminGate unit and integration tests.

This module provides:
  - make_stores(): isolated named shared-memory DBs for auth + audit
  - make_user(): create a principal with a given primary / additional roles
  - FailingStore: an audit store whose every insert raises
  - _patch_lifespan(): wires test stores into app.state via api.main.init_state
  - user_store / seeded_store / audit_store: function-scoped unit fixtures
  - api_client: TestClient + super admin token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and the audit sink
writes from its own thread. Plain :memory: DBs are per-connection and would
present a blank schema to each thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any auth/core import so get_settings() sees
it: DEBUG auto-generates SECRET_KEY, BCRYPT_ROUNDS keeps hashing fast,
ALLOWED_HOSTS admits TestClient's "testserver" host, and LOGIN_RATE_LIMIT is
raised so lockout tests are not throttled first.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_state
from audit.sink import AuditSink
from audit.store import AuditStore
from auth.models import User
from auth.seed import seed
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

TEST_PASSWORD = "Passw0rd!"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def make_stores(db_suffix: str) -> tuple[UserStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'lockout').
    """
    user_store = UserStore(db_url=_memory_url(f"test_auth_{db_suffix}"))
    audit_store = AuditStore(db_url=_memory_url(f"test_audit_{db_suffix}"))
    return user_store, audit_store


def make_user(
    store: UserStore,
    email: str,
    role: str = "user",
    additional: tuple[str, ...] = (),
    password: str = TEST_PASSWORD,
    status: str = "active",
) -> int:
    """Create a principal whose roles are given by name. Returns the new id."""
    primary = store.get_role_by_name(role)
    extra = [store.get_role_by_name(name).id for name in additional]
    return store.create_user(
        User(
            name=email.split("@")[0],
            email=email,
            hashed_password=hash_password(password, rounds=4),
            role_id=primary.id,
            additional_role_ids=extra,
            status=status,
        )
    )


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class FailingStore:
    """Stands in for an audit store whose database is unavailable."""

    def insert(self, record) -> int:
        raise RuntimeError("database is gone")


def _patch_lifespan(user_store: UserStore, audit_store: AuditStore):
    """Return an async context manager that replaces the real lifespan.

    Runs the production wiring (init_state) over the test stores, so routes
    see the same gate, sink and service objects they do in production.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, user_store, audit_store, get_settings())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        app.state.audit.close()

    return test_lifespan


# ---------------------------------------------------------------------------
# Function-scoped unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    """An empty auth store on a private in-memory database."""
    store = UserStore(db_url=_memory_url(f"unit_auth_{uuid.uuid4().hex}"))
    yield store
    store.close()


@pytest.fixture
def seeded_store(user_store: UserStore) -> UserStore:
    """An auth store holding the default permissions and system roles."""
    seed(user_store, bcrypt_rounds=4)
    return user_store


@pytest.fixture
def audit_store() -> Generator[AuditStore, None, None]:
    store = AuditStore(db_url=_memory_url(f"unit_audit_{uuid.uuid4().hex}"))
    yield store
    store.close()


@pytest.fixture
def audit_sink(audit_store: AuditStore) -> Generator[AuditSink, None, None]:
    sink = AuditSink(audit_store)
    sink.start()
    yield sink
    sink.close()


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. The
    stores are seeded with the default roles; the yielded principal is a
    super admin and the token carries the full permission set.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, audit_store = make_stores(suffix)
    seed(user_store, bcrypt_rounds=4)
    uid = make_user(user_store, f"root@{suffix}.test", role="super_admin")

    app.router.lifespan_context = _patch_lifespan(user_store, audit_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        token = app.state.auth_service.issue_token(user_store.get_by_id(uid))
        yield client, token, uid

    user_store.close()
    audit_store.close()
