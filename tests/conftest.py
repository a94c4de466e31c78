"""Shared fixtures: an in-memory Supabase double and test-speed settings."""

import itertools
import operator
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet


# ─── In-memory Supabase ────────────────────────────────────────

def _coerce(value):
    """ISO strings compare as datetimes so 'Z' and '+00:00' forms agree."""
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return value


def _compare(op, left, right):
    if left is None or right is None:
        return False
    left, right = _coerce(left), _coerce(right)
    try:
        return op(left, right)
    except TypeError:
        return op(str(left), str(right))


class FakeResult:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.action = "select"
        self.payload = None
        self.on_conflict = None
        self.ignore_duplicates = False
        self.count = None
        self.filters = []
        self.ordering = []
        self.row_limit = None
        self.row_range = None

    # actions
    def select(self, columns="*", count=None):
        self.count = count
        return self

    def insert(self, rows):
        self.action, self.payload = "insert", rows
        return self

    def upsert(self, rows, on_conflict=None, ignore_duplicates=False):
        self.action, self.payload = "upsert", rows
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def update(self, fields):
        self.action, self.payload = "update", fields
        return self

    def delete(self):
        self.action = "delete"
        return self

    # filters
    def _filter(self, predicate):
        self.filters.append(predicate)
        return self

    def eq(self, column, value):
        return self._filter(lambda r: r.get(column) == value)

    def neq(self, column, value):
        return self._filter(lambda r: r.get(column) != value)

    def gt(self, column, value):
        return self._filter(lambda r: _compare(operator.gt, r.get(column), value))

    def gte(self, column, value):
        return self._filter(lambda r: _compare(operator.ge, r.get(column), value))

    def lt(self, column, value):
        return self._filter(lambda r: _compare(operator.lt, r.get(column), value))

    def lte(self, column, value):
        return self._filter(lambda r: _compare(operator.le, r.get(column), value))

    def in_(self, column, values):
        values = list(values)
        return self._filter(lambda r: r.get(column) in values)

    def is_(self, column, value):
        if value in (None, "null"):
            return self._filter(lambda r: r.get(column) is None)
        return self._filter(lambda r: r.get(column) == value)

    # modifiers
    def order(self, column, desc=False):
        self.ordering.append((column, desc))
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    def range(self, start, end):
        self.row_range = (start, end)
        return self

    # execution
    def _matching(self):
        return [r for r in self.db.rows(self.table) if all(f(r) for f in self.filters)]

    def execute(self):
        if self.table in self.db.fail_tables:
            raise RuntimeError(f"simulated failure on {self.table}")
        return getattr(self, f"_exec_{self.action}")()

    def _exec_select(self):
        rows = self._matching()
        total = len(rows)
        for column, desc in reversed(self.ordering):
            rows.sort(
                key=lambda r: (r.get(column) is None, _coerce(r.get(column))),
                reverse=desc,
            )
        if self.row_range:
            rows = rows[self.row_range[0]: self.row_range[1] + 1]
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return FakeResult([dict(r) for r in rows], total if self.count else None)

    def _exec_insert(self):
        rows = self.payload if isinstance(self.payload, list) else [self.payload]
        return FakeResult([dict(self.db.add(self.table, row)) for row in rows])

    def _exec_upsert(self):
        rows = self.payload if isinstance(self.payload, list) else [self.payload]
        keys = (self.on_conflict or "id").split(",")
        written = []
        for row in rows:
            existing = None
            if all(k in row for k in keys):
                existing = next(
                    (r for r in self.db.rows(self.table)
                     if all(r.get(k) == row.get(k) for k in keys)),
                    None,
                )
            if existing is None:
                written.append(dict(self.db.add(self.table, row)))
            elif not self.ignore_duplicates:
                existing.update(row)
                written.append(dict(existing))
        return FakeResult(written)

    def _exec_update(self):
        rows = self._matching()
        for row in rows:
            row.update(self.payload)
        return FakeResult([dict(r) for r in rows])

    def _exec_delete(self):
        doomed = self._matching()
        self.db.tables[self.table] = [
            r for r in self.db.rows(self.table) if not any(r is d for d in doomed)
        ]
        return FakeResult([dict(r) for r in doomed])


class FakeRpc:
    def __init__(self, db, name, data):
        self.db = db
        self.name = name
        self.data = data

    def execute(self):
        if self.name in self.db.fail_tables:
            raise RuntimeError(f"simulated failure on {self.name}")
        return FakeResult(self.data)


class FakeSupabase:
    """Just enough of the supabase-py query builder for the sync engines."""

    def __init__(self):
        self.tables = {}
        self.fail_tables = set()
        self.rpc_results = {}
        self.rpc_calls = []
        self._ids = itertools.count(1)

    def rpc(self, name, params=None):
        self.rpc_calls.append((name, params or {}))
        return FakeRpc(self, name, self.rpc_results.get(name))

    def rows(self, table):
        return self.tables.setdefault(table, [])

    def add(self, table, row):
        stored = dict(row)
        stored.setdefault("id", next(self._ids))
        self.rows(table).append(stored)
        return stored

    def seed(self, table, *rows):
        return [self.add(table, row) for row in rows]

    def table(self, name):
        return FakeQuery(self, name)


# ─── Fixtures ──────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No pacing sleeps, no retry waits, fresh breakers and limiter."""
    monkeypatch.setenv("SYNC_PAUSE_SCALE", "0")
    monkeypatch.setenv("HTTP_BACKOFF_BASE", "0")
    monkeypatch.setenv("CREDENTIALS_ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.delenv("CALENDLY_WEBHOOK_SIGNING_KEY", raising=False)

    import scripts.lib.credentials as credentials
    from scripts.lib.circuit_breaker import CircuitBreaker
    from scripts.tracking.ingest import secure_rate_limiter

    monkeypatch.setattr(credentials, "_cipher", None)
    CircuitBreaker.reset_all()
    secure_rate_limiter.reset()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture
def db(monkeypatch):
    """FakeSupabase installed as the process-wide Supabase client."""
    import scripts.lib.supabase_client as supabase_client

    fake = FakeSupabase()
    monkeypatch.setattr(supabase_client, "_client", fake)
    return fake


@pytest.fixture
def connect(db):
    """Store a connected integration with (encrypted) credentials."""
    from scripts.sync import oauth_store

    def _connect(project_id, platform, data=None, data_platform=None, **fields):
        db.add("project_integrations", {
            "project_id": project_id,
            "platform": platform,
            "is_connected": True,
            **fields,
        })
        if data is not None:
            oauth_store.save_integration_data(project_id, data_platform or platform, data)

    return _connect
