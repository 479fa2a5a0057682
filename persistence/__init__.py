"""Persistence core for the clinic records platform

POOL USAGE POLICY:
  - EntityStore(pool, ...)   - REQUIRED for all entity reads and mutations.
    Every call is tenant-checked, audited (mutations) and timed.
  - pool.lease()             - System-level only (health checks, migrations,
    schema introspection). Not for tenant-scoped entity access.
"""

from .errors import (
    ConcurrentModificationError,
    CrossTenantAccessDenied,
    InvalidEntityError,
    IrreversibleMigrationError,
    MigrationDriftError,
    MigrationError,
    MigrationFailedError,
    MigrationIntegrityError,
    MigrationLockError,
    NotFoundError,
    PersistenceError,
    PoolClosedError,
    PoolExhausted,
    PoolTimeout,
    StorageError,
    UnsafeStatementError,
)
from .events import (
    BufferedEventSink,
    EventSeverity,
    EventSink,
    EventType,
    LoggingEventSink,
    ObservabilityEvent,
)
from .models import (
    PATIENT,
    AuditAction,
    AuditRecord,
    Entity,
    EntityType,
    MigrationRecord,
    Page,
    RequestContext,
    Tenant,
    TenantMode,
)
from .pool import ConnectionPool, PooledConnection, PoolStats
from .connection import init_pool, get_pool, close_pool, asyncpg_connector
from .monitor import QueryPerformance, QueryPerformanceMonitor
from .tenant_guard import TenantIsolationGuard
from .store import EntityStore
from .tenants import TenantDirectory
from .migrations import Migration, MigrationEngine, MigrationStatus, load_migrations

__all__ = [
    "AuditAction",
    "AuditRecord",
    "BufferedEventSink",
    "ConcurrentModificationError",
    "ConnectionPool",
    "CrossTenantAccessDenied",
    "Entity",
    "EntityStore",
    "EntityType",
    "EventSeverity",
    "EventSink",
    "EventType",
    "InvalidEntityError",
    "IrreversibleMigrationError",
    "LoggingEventSink",
    "Migration",
    "MigrationDriftError",
    "MigrationEngine",
    "MigrationError",
    "MigrationFailedError",
    "MigrationIntegrityError",
    "MigrationLockError",
    "MigrationRecord",
    "MigrationStatus",
    "NotFoundError",
    "ObservabilityEvent",
    "PATIENT",
    "Page",
    "PersistenceError",
    "PoolClosedError",
    "PoolExhausted",
    "PoolStats",
    "PoolTimeout",
    "PooledConnection",
    "QueryPerformance",
    "QueryPerformanceMonitor",
    "RequestContext",
    "StorageError",
    "Tenant",
    "TenantDirectory",
    "TenantIsolationGuard",
    "TenantMode",
    "UnsafeStatementError",
    "asyncpg_connector",
    "close_pool",
    "get_pool",
    "init_pool",
    "load_migrations",
]
