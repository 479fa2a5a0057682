"""
Persistence Core - Error Taxonomy
Every failure the core surfaces to callers is one of these kinds.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class PersistenceError(Exception):
    """Base exception for the persistence core"""

    error_type = "persistence_error"
    retryable = False

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.detail)


# =============================================================================
# CONNECTION POOL
# =============================================================================

class PoolTimeout(PersistenceError):
    """No connection became free before the acquire timeout. Retry with backoff."""

    error_type = "pool_timeout"
    retryable = True


class PoolExhausted(PersistenceError):
    """Liveness probing could not produce a healthy connection. Retry with backoff."""

    error_type = "pool_exhausted"
    retryable = True


class PoolClosedError(PersistenceError):
    error_type = "pool_closed"


# =============================================================================
# ENTITY STORE
# =============================================================================

class NotFoundError(PersistenceError):
    """The target entity does not exist in the caller's scope"""

    error_type = "not_found"


class ConcurrentModificationError(PersistenceError):
    """A stale write lost the optimistic-concurrency race. Reload, then retry."""

    error_type = "concurrent_modification"
    retryable = True

    def __init__(
        self,
        detail: str,
        expected_version: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.expected_version = expected_version
        super().__init__(detail, context)


class InvalidEntityError(PersistenceError):
    """Caller supplied server-owned or undeclared fields"""

    error_type = "invalid_entity"


class StorageError(PersistenceError):
    """The database rejected or failed an operation"""

    error_type = "storage_error"


# =============================================================================
# TENANT ISOLATION
# =============================================================================

class CrossTenantAccessDenied(PersistenceError):
    """
    The caller's tenant scope does not cover the target row.
    Fatal to the request and never retried.
    """

    error_type = "cross_tenant_access_denied"


class UnsafeStatementError(PersistenceError):
    """A statement failed tenant-safety validation before reaching the database"""

    error_type = "unsafe_statement"


# =============================================================================
# MIGRATIONS
# =============================================================================

class MigrationError(PersistenceError):
    """Base for migration failures; these require operator intervention"""

    error_type = "migration_error"


class MigrationIntegrityError(MigrationError):
    """Applied history does not line up with the on-disk migration set"""

    error_type = "migration_integrity_error"


class MigrationDriftError(MigrationError):
    """An applied migration's script changed after it was applied"""

    error_type = "migration_drift_error"

    def __init__(self, detail: str, version: int, context: Optional[Dict[str, Any]] = None):
        self.version = version
        super().__init__(detail, context)


class IrreversibleMigrationError(MigrationError):
    error_type = "irreversible_migration_error"

    def __init__(self, detail: str, version: int, context: Optional[Dict[str, Any]] = None):
        self.version = version
        super().__init__(detail, context)


class MigrationFailedError(MigrationError):
    """A forward or backward script failed; its transaction was rolled back"""

    error_type = "migration_failed"

    def __init__(
        self,
        detail: str,
        version: int,
        applied: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.version = version
        self.applied = list(applied or [])
        super().__init__(detail, context)


class MigrationLockError(MigrationError):
    """Another process holds the migration advisory lock"""

    error_type = "migration_lock_error"
