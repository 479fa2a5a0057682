import copy
import itertools
import re
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import PoolSettings  # noqa: E402
from persistence.events import BufferedEventSink  # noqa: E402
from persistence.models import RequestContext  # noqa: E402
from persistence.monitor import QueryPerformanceMonitor  # noqa: E402
from persistence.pool import ConnectionPool  # noqa: E402
from persistence.store import EntityStore  # noqa: E402
from persistence.tenant_guard import TenantIsolationGuard  # noqa: E402


class FakeDatabaseError(Exception):
    """Stands in for a server-side error raised by the driver."""


_INSERT = re.compile(r"^INSERT INTO (\w+) \((.+?)\) VALUES \((.+?)\)( RETURNING \*)?$")
_SELECT = re.compile(
    r"^SELECT \* FROM (\w+)(?: WHERE (.+?))?(?: ORDER BY (.+?))?"
    r"(?: LIMIT \$(\d+))?(?: OFFSET \$(\d+))?$"
)
_UPDATE = re.compile(r"^UPDATE (\w+) SET (.+?) WHERE (.+?)( RETURNING \*)?$")
_DELETE = re.compile(r"^DELETE FROM (\w+) WHERE (.+)$")
_CREATE_TABLE = re.compile(r"^CREATE TABLE (IF NOT EXISTS )?(\w+)", re.IGNORECASE)
_DROP_TABLE = re.compile(r"^DROP TABLE (IF EXISTS )?(\w+)", re.IGNORECASE)
_EQ = re.compile(r"^(\w+) = \$(\d+)$")
_INCREMENT = re.compile(r"^(\w+) = (\w+) \+ 1$")
_IS_NULL = re.compile(r"^(\w+) IS NULL$")
_IS_NOT_NULL = re.compile(r"^(\w+) IS NOT NULL$")


def _normalize(sql: str) -> str:
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    return " ".join(" ".join(lines).split())


class FakeDatabase:
    """
    In-memory stand-in for PostgreSQL that understands the statement
    shapes the persistence core issues. Transactions snapshot the tables
    and restore them on rollback.
    """

    def __init__(self, tables: Optional[List[str]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in (tables or [])}
        self.statements: List[str] = []
        self.fail_on: Optional[str] = None
        self.fail_error: type = FakeDatabaseError
        self.fail_count: Optional[int] = None
        self.advisory_locks: Dict[int, "FakeConnection"] = {}
        self.connections: List["FakeConnection"] = []
        self.connect_failures = 0
        self.unhealthy_connections = 0
        # Columns filled from a sequence when an INSERT omits them, like BIGSERIAL
        self.serial_columns: Dict[str, str] = {"audit_records": "seq"}
        self._serial = itertools.count(1)

    async def connect(self) -> "FakeConnection":
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionRefusedError("fake database refused the connection")
        conn = FakeConnection(self)
        if self.unhealthy_connections > 0:
            self.unhealthy_connections -= 1
            conn.healthy = False
        self.connections.append(conn)
        return conn

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table]

    # ── Statement execution ─────────────────────────────────────────────

    def run(self, conn: "FakeConnection", sql: str, args: tuple) -> List[Dict[str, Any]]:
        statement = _normalize(sql)
        self.statements.append(statement)
        self._maybe_fail(statement)

        if statement == "SELECT 1":
            if not conn.healthy:
                raise ConnectionResetError("connection reset by peer")
            return [{"?column?": 1}]
        if statement.startswith("SELECT set_config("):
            conn.settings[statement.split("'")[1]] = args[0]
            return [{"set_config": args[0]}]
        if statement == "SELECT pg_try_advisory_lock($1)":
            holder = self.advisory_locks.get(args[0])
            if holder is None or holder is conn:
                self.advisory_locks[args[0]] = conn
                return [{"pg_try_advisory_lock": True}]
            return [{"pg_try_advisory_lock": False}]
        if statement == "SELECT pg_advisory_unlock($1)":
            released = self.advisory_locks.get(args[0]) is conn
            if released:
                del self.advisory_locks[args[0]]
            return [{"pg_advisory_unlock": released}]

        match = _INSERT.match(statement)
        if match:
            return self._insert(match, args)
        match = _SELECT.match(statement)
        if match:
            return self._select(match, args)
        match = _UPDATE.match(statement)
        if match:
            return self._update(match, args)
        match = _DELETE.match(statement)
        if match:
            table = self._table(match.group(1))
            keep = [r for r in table if not self._matches(r, match.group(2), args)]
            removed = len(table) - len(keep)
            table[:] = keep
            return [{"deleted": removed}]
        raise FakeDatabaseError(f"fake database cannot run: {statement}")

    def run_script(self, sql: str) -> None:
        uncommented = "\n".join(
            line for line in sql.splitlines() if not line.strip().startswith("--")
        )
        for raw in uncommented.split(";"):
            statement = _normalize(raw)
            if not statement:
                continue
            self.statements.append(statement)
            self._maybe_fail(statement)
            created = _CREATE_TABLE.match(statement)
            if created:
                name = created.group(2)
                if name in self.tables and not created.group(1):
                    raise FakeDatabaseError(f'relation "{name}" already exists')
                self.tables.setdefault(name, [])
                continue
            dropped = _DROP_TABLE.match(statement)
            if dropped:
                name = dropped.group(2)
                if name not in self.tables and not dropped.group(1):
                    raise FakeDatabaseError(f'table "{name}" does not exist')
                self.tables.pop(name, None)

    def _maybe_fail(self, statement: str) -> None:
        if not self.fail_on or self.fail_on not in statement:
            return
        if self.fail_count is not None:
            if self.fail_count <= 0:
                return
            self.fail_count -= 1
        raise self.fail_error(f"forced failure on: {self.fail_on}")

    def _table(self, name: str) -> List[Dict[str, Any]]:
        if name not in self.tables:
            raise FakeDatabaseError(f'relation "{name}" does not exist')
        return self.tables[name]

    def _insert(self, match, args):
        table = self._table(match.group(1))
        columns = [c.strip() for c in match.group(2).split(",")]
        placeholders = [p.strip() for p in match.group(3).split(",")]
        row = {col: args[int(p.lstrip("$")) - 1] for col, p in zip(columns, placeholders)}
        serial = self.serial_columns.get(match.group(1))
        if serial is not None and serial not in row:
            row[serial] = next(self._serial)
        if "id" in row and any(r.get("id") == row["id"] for r in table):
            raise FakeDatabaseError("duplicate key value violates unique constraint")
        table.append(row)
        return [dict(row)] if match.group(4) else []

    def _select(self, match, args):
        table = self._table(match.group(1))
        rows = [dict(r) for r in table if self._matches(r, match.group(2), args)]
        if match.group(3):
            for part in reversed(match.group(3).split(", ")):
                column, _, direction = part.partition(" ")
                rows.sort(key=lambda r: _sort_key(r.get(column)), reverse=direction == "DESC")
        offset = args[int(match.group(5)) - 1] if match.group(5) else 0
        rows = rows[offset:]
        if match.group(4):
            rows = rows[: args[int(match.group(4)) - 1]]
        return rows

    def _update(self, match, args):
        table = self._table(match.group(1))
        updated = []
        for row in table:
            if not self._matches(row, match.group(3), args):
                continue
            for assignment in match.group(2).split(", "):
                eq = _EQ.match(assignment)
                if eq:
                    row[eq.group(1)] = args[int(eq.group(2)) - 1]
                    continue
                inc = _INCREMENT.match(assignment)
                if inc:
                    row[inc.group(1)] = row[inc.group(2)] + 1
                    continue
                raise FakeDatabaseError(f"unsupported assignment: {assignment}")
            updated.append(dict(row))
        return updated if match.group(4) else [{"updated": len(updated)}]

    def _matches(self, row, where, args) -> bool:
        if not where:
            return True
        for condition in where.split(" AND "):
            eq = _EQ.match(condition)
            if eq:
                if row.get(eq.group(1)) != args[int(eq.group(2)) - 1]:
                    return False
                continue
            if _IS_NULL.match(condition):
                if row.get(_IS_NULL.match(condition).group(1)) is not None:
                    return False
                continue
            if _IS_NOT_NULL.match(condition):
                if row.get(_IS_NOT_NULL.match(condition).group(1)) is None:
                    return False
                continue
            raise FakeDatabaseError(f"unsupported condition: {condition}")
        return True


def _sort_key(value):
    return (value is not None, str(value) if isinstance(value, uuid.UUID) else value)


class FakeTransaction:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn

    async def __aenter__(self):
        conn = self._conn
        if conn.tx_depth == 0:
            conn.snapshot = copy.deepcopy(conn.db.tables)
        conn.tx_depth += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        conn = self._conn
        conn.tx_depth -= 1
        if conn.tx_depth == 0:
            if exc_type is not None:
                conn.db.tables = conn.snapshot
                conn.rollbacks += 1
            else:
                conn.commits += 1
            conn.snapshot = None
            conn.settings.clear()
        return False


class FakeConnection:
    """Implements the subset of asyncpg.Connection the core uses."""

    def __init__(self, db: FakeDatabase):
        self.db = db
        self.id = uuid.uuid4()
        self.healthy = True
        self.closed = False
        self.tx_depth = 0
        self.snapshot = None
        self.commits = 0
        self.rollbacks = 0
        self.settings: Dict[str, Any] = {}

    def _check(self):
        if self.closed:
            raise ConnectionResetError("connection is closed")

    def is_closed(self) -> bool:
        return self.closed

    def is_in_transaction(self) -> bool:
        return self.tx_depth > 0

    async def close(self):
        self.closed = True
        for key, holder in list(self.db.advisory_locks.items()):
            if holder is self:
                del self.db.advisory_locks[key]

    def transaction(self):
        self._check()
        return FakeTransaction(self)

    async def execute(self, sql: str, *args):
        self._check()
        if not args:
            self.db.run_script(sql)
            return "OK"
        self.db.run(self, sql, args)
        return "OK"

    async def fetch(self, sql: str, *args):
        self._check()
        return self.db.run(self, sql, args)

    async def fetchrow(self, sql: str, *args):
        self._check()
        rows = self.db.run(self, sql, args)
        return rows[0] if rows else None

    async def fetchval(self, sql: str, *args, column: int = 0):
        self._check()
        rows = self.db.run(self, sql, args)
        if not rows:
            return None
        return list(rows[0].values())[column]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def pool_settings(**overrides) -> PoolSettings:
    values = dict(
        min_size=1,
        max_size=4,
        acquire_timeout_ms=500,
        idle_timeout_ms=0,
        probe_attempts=3,
        probe_retry_delay_ms=1,
        high_utilization_threshold=0.8,
    )
    values.update(overrides)
    return PoolSettings(**values)


@pytest.fixture
def tenant_ids():
    return {
        "tenant_a": uuid.UUID("51e728c5-94e8-4ae0-8a0a-6a08d1fb3457"),
        "tenant_b": uuid.UUID("a17d1f59-7baf-4350-b0c1-1ea6ae2fbd2a"),
    }


@pytest.fixture
def ctx_a(tenant_ids):
    return RequestContext(actor_id=uuid.uuid4(), tenant_id=tenant_ids["tenant_a"], roles={"clinician"})


@pytest.fixture
def ctx_b(tenant_ids):
    return RequestContext(actor_id=uuid.uuid4(), tenant_id=tenant_ids["tenant_b"], roles={"clinician"})


@pytest.fixture
def system_ctx():
    return RequestContext.system(actor_id=uuid.uuid4())


@pytest.fixture
def events():
    return BufferedEventSink()


@pytest.fixture
def fake_db():
    return FakeDatabase(tables=["patients", "audit_records", "tenants"])


@pytest_asyncio.fixture
async def pool(fake_db, events):
    pool = ConnectionPool(pool_settings(), fake_db.connect, events=events)
    await pool.initialize()
    try:
        yield pool
    finally:
        await pool.close()


@pytest.fixture
def monitor(pool, events):
    return QueryPerformanceMonitor(slow_threshold_ms=100, events=events, pool=pool)


@pytest.fixture
def store(pool, events, monitor):
    return EntityStore(pool, guard=TenantIsolationGuard(events=events), monitor=monitor)


@pytest_asyncio.fixture
async def make_pool(fake_db, events):
    """Factory for pools with custom settings; every pool is closed on teardown."""
    created = []

    async def factory(clock=None, **overrides):
        kwargs = {"events": events}
        if clock is not None:
            kwargs["clock"] = clock
        new_pool = ConnectionPool(pool_settings(**overrides), fake_db.connect, **kwargs)
        await new_pool.initialize()
        created.append(new_pool)
        return new_pool

    try:
        yield factory
    finally:
        for created_pool in created:
            await created_pool.close()
