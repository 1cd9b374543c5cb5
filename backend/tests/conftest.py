"""Pytest configuration and fixtures."""

import copy
import os
import secrets
import sys

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# For unit tests, set mock values ONLY if not running integration tests
if not os.environ.get("RUN_INTEGRATION"):
    os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
    os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
    os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
    os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
else:
    # For integration tests, load from .env
    from pathlib import Path

    from dotenv import load_dotenv

    env_path = Path(__file__).parent.parent / ".env"

    # Safety check: require explicit confirmation for integration tests
    if not os.environ.get("CONFIRM_INTEGRATION_CREDENTIALS"):
        print("\n" + "=" * 70, file=sys.stderr)
        print("⚠️  WARNING: Integration tests will use REAL credentials from .env", file=sys.stderr)
        print("   Set CONFIRM_INTEGRATION_CREDENTIALS=yes to proceed.", file=sys.stderr)
        print("=" * 70 + "\n", file=sys.stderr)
        pytest.exit("Integration tests require CONFIRM_INTEGRATION_CREDENTIALS=yes", returncode=1)

    load_dotenv(env_path, override=True)

from app import database  # noqa: E402
from app.main import app  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from postgrest.exceptions import APIError  # noqa: E402

# =============================================================================
# In-memory Supabase
# =============================================================================

UNIQUE_KEYS = {
    database.RECORDS_TABLE: ("owner_id", "record_type", "record_id", "encrypted"),
    database.VAULTS_TABLE: ("owner_id",),
    database.SYNC_SETTINGS_TABLE: ("owner_id",),
}


class FakeResult:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """Chainable subset of the postgrest query builder used by app.database."""

    def __init__(self, store: "FakeSupabase", table: str):
        self.store = store
        self.table = table
        self.action = "select"
        self.payload = None
        self.count_mode = None
        self.on_conflict = None
        self.filters = []
        self.orders = []
        self.limit_n = None
        self.range_bounds = None

    # --- actions ---
    def select(self, columns="*", count=None):
        self.action, self.count_mode = "select", count
        return self

    def insert(self, row):
        self.action, self.payload = "insert", row
        return self

    def update(self, values):
        self.action, self.payload = "update", values
        return self

    def upsert(self, row, on_conflict=None):
        self.action, self.payload, self.on_conflict = "upsert", row, on_conflict
        return self

    def delete(self):
        self.action = "delete"
        return self

    # --- filters / modifiers ---
    def eq(self, column, value):
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def gt(self, column, value):
        self.filters.append(lambda r: r.get(column) is not None and r.get(column) > value)
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def range(self, start, end):
        self.range_bounds = (start, end)
        return self

    # --- execution ---
    def _matching(self):
        rows = self.store.tables.setdefault(self.table, [])
        return [r for r in rows if all(f(r) for f in self.filters)]

    def _check_unique(self, row):
        keys = UNIQUE_KEYS.get(self.table)
        if not keys:
            return
        for other in self.store.tables.setdefault(self.table, []):
            if all(other.get(k) == row.get(k) for k in keys):
                raise APIError(
                    {"code": "23505", "message": "duplicate key value violates unique constraint",
                     "details": None, "hint": None}
                )

    def execute(self):
        self.store.calls.append((self.table, self.action))
        rows = self.store.tables.setdefault(self.table, [])

        if self.action == "select":
            data = self._matching()
            for column, desc in reversed(self.orders):
                data.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
            total = len(data)
            if self.range_bounds is not None:
                start, end = self.range_bounds
                data = data[start : end + 1]
            if self.limit_n is not None:
                data = data[: self.limit_n]
            return FakeResult(copy.deepcopy(data), total if self.count_mode == "exact" else None)

        if self.action == "insert":
            row = copy.deepcopy(self.payload)
            self._check_unique(row)
            rows.append(row)
            return FakeResult([copy.deepcopy(row)])

        if self.action == "update":
            updated = []
            for row in self._matching():
                row.update(copy.deepcopy(self.payload))
                updated.append(copy.deepcopy(row))
            return FakeResult(updated)

        if self.action == "upsert":
            row = copy.deepcopy(self.payload)
            keys = (self.on_conflict or "id").split(",")
            for existing in rows:
                if all(existing.get(k) == row.get(k) for k in keys):
                    existing.update(row)
                    return FakeResult([copy.deepcopy(existing)])
            rows.append(row)
            return FakeResult([copy.deepcopy(row)])

        if self.action == "delete":
            doomed = self._matching()
            self.store.tables[self.table] = [r for r in rows if not any(r is d for d in doomed)]
            return FakeResult(copy.deepcopy(doomed))

        raise AssertionError(f"unsupported action {self.action}")


class FakeSupabase:
    """Just enough of supabase.Client for the backend routes."""

    def __init__(self):
        self.tables = {}
        self.calls = []

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name, **match):
        return [r for r in self.tables.get(name, []) if all(r.get(k) == v for k, v in match.items())]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_db(monkeypatch):
    """Route every database access through an in-memory Supabase."""
    fake = FakeSupabase()
    app.dependency_overrides[database.get_db] = lambda: fake
    monkeypatch.setattr(database, "_supabase_client", fake)
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client(fake_db):
    """Create a test client."""
    return TestClient(app)


def make_token(owner_id: str) -> str:
    from app.auth import create_access_token
    from app.config import get_settings

    return create_access_token(owner_id, get_settings())


@pytest.fixture
def auth_headers():
    """Create auth headers with a test token."""
    # Use clearly invalid test ID that cannot collide with production IDs
    return {"Authorization": f"Bearer {make_token('own_TEST_ONLY_000000')}"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": f"Bearer {make_token('own_TEST_ONLY_111111')}"}


@pytest.fixture
def token_factory():
    return make_token
