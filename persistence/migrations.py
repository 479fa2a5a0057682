"""
Schema Migration Engine
=======================

Versioned SQL migrations, applied and reverted one transaction per
version. The script and its ``migrations`` row change together, so a
failing script leaves the version exactly where it was.

On-disk layout (``MIGRATIONS_PATH``)::

    0001_base_schema.up.sql
    0001_base_schema.down.sql      # optional; without it the version is irreversible
    20250301120000_add_allergies.up.sql

Only one engine run may be in progress across all processes: every run
takes a PostgreSQL advisory lock before it reads the applied versions.
"""

import asyncio
import hashlib
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from config import config as app_config
from persistence.audit import insert_sql
from persistence.errors import (
    IrreversibleMigrationError,
    MigrationDriftError,
    MigrationError,
    MigrationFailedError,
    MigrationIntegrityError,
    MigrationLockError,
)
from persistence.events import EventSeverity, EventSink, EventType, default_sink, emit_event
from persistence.models import MigrationRecord, utcnow
from persistence.monitor import QueryPerformanceMonitor
from persistence.pool import ConnectionPool

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "migrations"
MIGRATION_COLUMNS = ("version", "name", "applied_at", "checksum")
# Advisory lock key shared by every process running migrations
MIGRATION_LOCK_KEY = 7_204_118_551

CREATE_MIGRATIONS_TABLE = (
    f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} ("
    "version BIGINT PRIMARY KEY, "
    "name TEXT NOT NULL, "
    "applied_at TIMESTAMPTZ NOT NULL, "
    "checksum TEXT NOT NULL)"
)

_FILENAME = re.compile(r"^(?P<version>\d+)_(?P<name>[A-Za-z0-9_]+)\.(?P<direction>up|down)\.sql$")


def checksum(script: str) -> str:
    return hashlib.sha256(script.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    up_sql: str
    down_sql: Optional[str] = None

    @property
    def checksum(self) -> str:
        return checksum(self.up_sql)

    @property
    def reversible(self) -> bool:
        return bool(self.down_sql and self.down_sql.strip())

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"


@dataclass
class MigrationStatus:
    applied: List[MigrationRecord] = field(default_factory=list)
    pending: List[Migration] = field(default_factory=list)

    @property
    def current_version(self) -> Optional[int]:
        return self.applied[-1].version if self.applied else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_version": self.current_version,
            "applied": [r.version for r in self.applied],
            "pending": [m.version for m in self.pending],
        }


def load_migrations(path: Union[str, Path]) -> List[Migration]:
    """Read ``<version>_<name>.up.sql`` / ``.down.sql`` pairs from ``path``."""
    directory = Path(path)
    if not directory.is_dir():
        raise MigrationIntegrityError(f"Migrations path {directory} is not a directory")

    found: Dict[int, Dict[str, Any]] = {}
    for file in sorted(directory.glob("*.sql")):
        match = _FILENAME.match(file.name)
        if not match:
            raise MigrationIntegrityError(f"Unrecognised migration file name: {file.name}")
        version = int(match.group("version"))
        name = match.group("name")
        entry = found.setdefault(version, {"name": name})
        if entry["name"] != name:
            raise MigrationIntegrityError(
                f"Version {version} is claimed by both {entry['name']} and {name}"
            )
        direction = match.group("direction")
        if direction in entry:
            raise MigrationIntegrityError(f"Duplicate {direction} script for version {version}")
        entry[direction] = file.read_text(encoding="utf-8")

    migrations = []
    for version in sorted(found):
        entry = found[version]
        if "up" not in entry:
            raise MigrationIntegrityError(f"Version {version} has a down script but no up script")
        migrations.append(Migration(version, entry["name"], entry["up"], entry.get("down")))
    return migrations


class MigrationEngine:
    """Applies and reverts migrations; see the module docstring for guarantees."""

    def __init__(
        self,
        pool: ConnectionPool,
        migrations: Iterable[Migration],
        *,
        events: Optional[EventSink] = None,
        monitor: Optional[QueryPerformanceMonitor] = None,
        lock_timeout: float = 30.0,
        lock_poll_interval: float = 0.5,
        acquire_timeout: Optional[float] = None,
    ) -> None:
        ordered = sorted(migrations, key=lambda m: m.version)
        versions = [m.version for m in ordered]
        if len(set(versions)) != len(versions):
            raise MigrationIntegrityError("Duplicate migration versions registered")
        self._pool = pool
        self._migrations: Dict[int, Migration] = {m.version: m for m in ordered}
        self._events = events if events is not None else default_sink()
        self._monitor = monitor or QueryPerformanceMonitor(events=self._events, pool=pool)
        self._lock_timeout = lock_timeout
        self._lock_poll_interval = lock_poll_interval
        self._acquire_timeout = acquire_timeout

    @classmethod
    def from_path(
        cls,
        pool: ConnectionPool,
        path: Optional[Union[str, Path]] = None,
        **kwargs: Any,
    ) -> "MigrationEngine":
        """Engine over the scripts in ``path``, by default ``MIGRATIONS_PATH``."""
        if path is None:
            path = app_config.migrations_path
        return cls(pool, load_migrations(path), **kwargs)

    @property
    def migrations(self) -> List[Migration]:
        return list(self._migrations.values())

    # ── Public operations ───────────────────────────────────────────────

    async def status(self) -> MigrationStatus:
        async with self._locked("status") as conn:
            applied = await self._applied(conn)
            return MigrationStatus(applied=applied, pending=self._verify(applied))

    async def apply_all(self) -> List[MigrationRecord]:
        """
        Apply every pending migration in ascending order.

        Stops at the first failing version and raises MigrationFailedError;
        versions applied earlier in the same call stay committed.
        """
        applied_now: List[MigrationRecord] = []
        async with self._locked("apply_all") as conn:
            pending = self._verify(await self._applied(conn))
            if not pending:
                logger.info("Schema is up to date; no migrations to apply")
                return applied_now

            for migration in pending:
                logger.info("Applying migration %s", migration.label)
                try:
                    async with conn.transaction():
                        await conn.execute(migration.up_sql)
                        row = await conn.fetchrow(
                            insert_sql(MIGRATIONS_TABLE, MIGRATION_COLUMNS),
                            migration.version,
                            migration.name,
                            utcnow(),
                            migration.checksum,
                        )
                except Exception as exc:
                    self._report_failure("apply", migration, exc)
                    raise MigrationFailedError(
                        f"Migration {migration.label} failed and was rolled back ({type(exc).__name__})",
                        version=migration.version,
                        applied=applied_now,
                        context={"error": str(exc)},
                    ) from exc

                record = MigrationRecord(**dict(row))
                applied_now.append(record)
                emit_event(
                    self._events,
                    EventType.MIGRATION_APPLIED,
                    version=migration.version,
                    name=migration.name,
                    checksum=migration.checksum,
                )

        logger.info("Applied %s migration(s): %s", len(applied_now), [r.version for r in applied_now])
        return applied_now

    async def revert_last(self) -> Optional[MigrationRecord]:
        """Revert exactly the highest applied version. None when nothing is applied."""
        async with self._locked("revert_last") as conn:
            applied = await self._applied(conn)
            self._verify(applied)
            if not applied:
                logger.info("No applied migrations to revert")
                return None

            last = applied[-1]
            migration = self._migrations[last.version]
            if not migration.reversible:
                raise IrreversibleMigrationError(
                    f"Migration {migration.label} has no backward script",
                    version=migration.version,
                )

            logger.info("Reverting migration %s", migration.label)
            try:
                async with conn.transaction():
                    await conn.execute(migration.down_sql)
                    await conn.execute(
                        f"DELETE FROM {MIGRATIONS_TABLE} WHERE version = $1", migration.version,
                    )
            except Exception as exc:
                self._report_failure("revert", migration, exc)
                raise MigrationFailedError(
                    f"Reverting {migration.label} failed and was rolled back ({type(exc).__name__})",
                    version=migration.version,
                    context={"error": str(exc)},
                ) from exc

            emit_event(
                self._events,
                EventType.MIGRATION_REVERTED,
                version=migration.version,
                name=migration.name,
            )
            return last

    # ── Internals ───────────────────────────────────────────────────────

    def _verify(self, applied: List[MigrationRecord]) -> List[Migration]:
        """Check applied history against the registered set; return what is pending."""
        applied_versions = set()
        for record in applied:
            migration = self._migrations.get(record.version)
            if migration is None:
                raise MigrationIntegrityError(
                    f"Applied version {record.version} ({record.name}) has no migration definition"
                )
            if migration.checksum != record.checksum:
                raise MigrationDriftError(
                    f"Migration {migration.label} changed after it was applied "
                    f"(recorded {record.checksum[:12]}, on disk {migration.checksum[:12]})",
                    version=record.version,
                )
            applied_versions.add(record.version)

        highest = max(applied_versions) if applied_versions else None
        pending = [m for v, m in sorted(self._migrations.items()) if v not in applied_versions]
        if highest is not None:
            gaps = [m.version for m in pending if m.version < highest]
            if gaps:
                raise MigrationIntegrityError(
                    f"Unapplied migrations {gaps} sit below applied version {highest}; "
                    "history was edited",
                    context={"gaps": gaps, "highest_applied": highest},
                )
        return pending

    async def _applied(self, conn: Any) -> List[MigrationRecord]:
        await conn.execute(CREATE_MIGRATIONS_TABLE)
        rows = await conn.fetch(f"SELECT * FROM {MIGRATIONS_TABLE} ORDER BY version ASC")
        return [MigrationRecord(**dict(row)) for row in rows]

    @asynccontextmanager
    async def _locked(self, operation: str):
        """Time the whole run, advisory lock wait included."""
        async with self._monitor.track(f"migrations.{operation}"):
            async with _AdvisoryLock(self) as conn:
                yield conn

    def _report_failure(self, direction: str, migration: Migration, exc: Exception) -> None:
        logger.error("Migration %s (%s) failed: %s", migration.label, direction, exc)
        emit_event(
            self._events,
            EventType.MIGRATION_FAILED,
            EventSeverity.CRITICAL,
            version=migration.version,
            name=migration.name,
            direction=direction,
            error=type(exc).__name__,
        )


class _AdvisoryLock:
    """Lease a connection and hold the migration advisory lock on it."""

    def __init__(self, engine: MigrationEngine) -> None:
        self._engine = engine
        self._handle = None
        self._locked = False

    async def __aenter__(self) -> Any:
        engine = self._engine
        self._handle = await engine._pool.acquire(engine._acquire_timeout)
        conn = self._handle.connection
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + engine._lock_timeout
            while not await conn.fetchval("SELECT pg_try_advisory_lock($1)", MIGRATION_LOCK_KEY):
                if loop.time() >= deadline:
                    raise MigrationLockError(
                        f"Another migration run holds the lock (waited {engine._lock_timeout:.1f}s)"
                    )
                logger.debug("Migration lock held elsewhere, waiting...")
                await asyncio.sleep(engine._lock_poll_interval)
            self._locked = True
        except BaseException:
            await engine._pool.release(self._handle)
            raise
        return conn

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        conn = self._handle.connection
        try:
            if self._locked:
                await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)
        except Exception:
            # The lock is session-scoped; closing the session drops it.
            logger.warning("Failed to release migration advisory lock", exc_info=True)
            try:
                await conn.close()
            except Exception:
                logger.debug("Failed to close connection holding the migration lock", exc_info=True)
        finally:
            await self._engine._pool.release(self._handle)
        return False


__all__ = [
    "Migration",
    "MigrationEngine",
    "MigrationError",
    "MigrationStatus",
    "checksum",
    "load_migrations",
]
