"""
Audit-trailed entity store.

Generic CRUD + soft delete over any EntityType. Every operation runs in
one transaction on a leased connection, with the caller's tenant bound for
RLS and every statement checked by the tenant guard. Mutations go through
``audited`` primitives, so a row change and its AuditRecord always commit
or roll back together.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import asyncpg

from persistence.audit import (
    MutationResult,
    audit_trail_sql,
    audited,
    insert_sql,
    records_from_rows,
)
from persistence.errors import (
    ConcurrentModificationError,
    InvalidEntityError,
    NotFoundError,
    PersistenceError,
    StorageError,
)
from persistence.models import (
    BASE_COLUMNS,
    AuditAction,
    AuditRecord,
    Entity,
    EntityType,
    Page,
    RequestContext,
    utcnow,
)
from persistence.monitor import QueryPerformanceMonitor
from persistence.pool import ConnectionPool
from persistence.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)

Mutation = Union[Mapping[str, Any], Callable[[Dict[str, Any]], Mapping[str, Any]]]

# Failures worth retrying for reads; writes are never retried blindly.
TRANSIENT_ERRORS = (
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.InterfaceError,
    asyncpg.InternalClientError,
    asyncpg.PostgresConnectionError,
    ConnectionError,
)


def _as_uuid(value: Any, field: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidEntityError(f"{field} must be a UUID")


class EntityStore:
    """Tenant-scoped, audit-trailed access to entity tables."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        guard: Optional[TenantIsolationGuard] = None,
        monitor: Optional[QueryPerformanceMonitor] = None,
        acquire_timeout: Optional[float] = None,
        read_retries: int = 2,
    ) -> None:
        self._pool = pool
        self._guard = guard or TenantIsolationGuard()
        self._monitor = monitor or QueryPerformanceMonitor(pool=pool)
        self._acquire_timeout = acquire_timeout
        self._read_retries = read_retries

    # ── Public operations ───────────────────────────────────────────────

    async def create(
        self,
        entity_type: EntityType,
        data: Mapping[str, Any],
        ctx: RequestContext,
    ) -> Entity:
        """Insert a new row. id, timestamps, actors and version are server-assigned."""
        payload = dict(data)
        requested = payload.pop("tenant_id", None)
        requested = _as_uuid(requested, "tenant_id") if requested is not None else None
        self._check_fields(entity_type, payload)
        tenant_id = self._guard.resolve_tenant(
            ctx, requested, operation="create", entity_type=entity_type.name,
        )

        async with self._transaction("create", entity_type, tenant_id) as conn:
            result = await self._insert(conn, entity_type, tenant_id, payload, ctx=ctx)
        return result.subject

    async def find_by_id(
        self,
        entity_type: EntityType,
        entity_id: Any,
        ctx: RequestContext,
        *,
        include_deleted: bool = False,
    ) -> Optional[Entity]:
        """The entity, or None when it does not exist in the caller's scope."""
        entity_id = _as_uuid(entity_id)
        conditions = ["id = $1"]
        args: List[Any] = [entity_id]
        if not ctx.is_system:
            conditions.append("tenant_id = $2")
            args.append(ctx.tenant_id)
        if not include_deleted:
            conditions.append("deleted_at IS NULL")
        sql = f"SELECT * FROM {entity_type.table} WHERE {' AND '.join(conditions)}"

        row = await self._read(
            "find_by_id", entity_type, ctx.tenant_id,
            lambda conn: self._fetchrow(conn, sql, *args),
        )
        return Entity.from_row(entity_type, row) if row is not None else None

    async def update(
        self,
        entity_type: EntityType,
        entity_id: Any,
        mutation: Mutation,
        ctx: RequestContext,
        *,
        expected_version: Optional[int] = None,
    ) -> Entity:
        """
        Apply ``mutation`` (a mapping of changes, or a callable that receives
        the current data and returns changes). A write based on a stale
        version raises ConcurrentModificationError.
        """
        entity_id = _as_uuid(entity_id)
        async with self._transaction("update", entity_type, ctx.tenant_id) as conn:
            current = await self._load_for_write(conn, entity_type, entity_id, ctx, "update")
            changes = mutation(dict(current.data)) if callable(mutation) else mutation
            changes = dict(changes or {})
            self._check_fields(entity_type, changes)
            result = await self._apply_update(
                conn, entity_type, current, changes, ctx=ctx, expected_version=expected_version,
            )
        return result.subject

    async def soft_delete(
        self,
        entity_type: EntityType,
        entity_id: Any,
        ctx: RequestContext,
        *,
        expected_version: Optional[int] = None,
    ) -> None:
        entity_id = _as_uuid(entity_id)
        async with self._transaction("soft_delete", entity_type, ctx.tenant_id) as conn:
            current = await self._load_for_write(conn, entity_type, entity_id, ctx, "soft_delete")
            await self._mark_deleted(conn, entity_type, current, ctx=ctx, expected_version=expected_version)

    async def restore(self, entity_type: EntityType, entity_id: Any, ctx: RequestContext) -> None:
        """
        Clear ``deleted_at`` on a soft-deleted entity.

        Data, tenant and creation fields come back exactly as they were
        before the delete. ``updated_at``/``updated_by`` record the restore,
        and ``version`` keeps counting: delete and restore are writes, so a
        version-1 entity is at version 3 after a delete/restore pair.
        """
        entity_id = _as_uuid(entity_id)
        async with self._transaction("restore", entity_type, ctx.tenant_id) as conn:
            current = await self._load_for_write(
                conn, entity_type, entity_id, ctx, "restore", deleted=True,
            )
            await self._clear_deleted(conn, entity_type, current, ctx=ctx)

    async def list_by_tenant(
        self,
        entity_type: EntityType,
        tenant_id: Any,
        ctx: RequestContext,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        page: Optional[Page] = None,
        include_deleted: bool = False,
    ) -> List[Entity]:
        """One tenant's entities, oldest first. There is no cross-tenant listing."""
        if tenant_id is None:
            raise InvalidEntityError("list_by_tenant requires an explicit tenant")
        tenant_id = _as_uuid(tenant_id, "tenant_id")
        self._guard.authorize(ctx, tenant_id, operation="list", entity_type=entity_type.name)

        filters = dict(filters or {})
        unknown = set(filters) - set(entity_type.fields)
        if unknown:
            raise InvalidEntityError(
                f"Cannot filter {entity_type.name} on undeclared fields: {sorted(unknown)}"
            )
        page = page or Page()

        conditions = ["tenant_id = $1"]
        args: List[Any] = [tenant_id]
        if not include_deleted:
            conditions.append("deleted_at IS NULL")
        for column, value in filters.items():
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                args.append(value)
                conditions.append(f"{column} = ${len(args)}")
        args.extend([page.limit, page.offset])
        sql = (
            f"SELECT * FROM {entity_type.table} WHERE {' AND '.join(conditions)} "
            f"ORDER BY created_at ASC, id ASC LIMIT ${len(args) - 1} OFFSET ${len(args)}"
        )

        rows = await self._read(
            "list_by_tenant", entity_type, tenant_id,
            lambda conn: self._fetch(conn, sql, *args),
        )
        return [Entity.from_row(entity_type, row) for row in rows]

    async def audit_trail(
        self,
        entity_type: EntityType,
        entity_id: Any,
        ctx: RequestContext,
    ) -> List[AuditRecord]:
        """Audit records for one entity, oldest first, within the caller's scope."""
        entity_id = _as_uuid(entity_id)
        scoped = not ctx.is_system
        args: List[Any] = [entity_type.name, entity_id]
        if scoped:
            args.append(ctx.tenant_id)
        sql = audit_trail_sql(scoped)

        rows = await self._read(
            "audit_trail", entity_type, ctx.tenant_id,
            lambda conn: self._fetch(conn, sql, *args),
        )
        return records_from_rows(rows)

    # ── Audited mutation primitives ─────────────────────────────────────

    @audited(AuditAction.CREATE)
    async def _insert(
        self,
        conn: Any,
        entity_type: EntityType,
        tenant_id: uuid.UUID,
        payload: Dict[str, Any],
        *,
        ctx: RequestContext,
    ) -> MutationResult:
        now = utcnow()
        values: Dict[str, Any] = {
            "id": uuid.uuid4(),
            "tenant_id": tenant_id,
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
            "created_by": ctx.actor_id,
            "updated_by": ctx.actor_id,
            "version": 1,
        }
        values.update(payload)
        row = await self._fetchrow(conn, insert_sql(entity_type.table, tuple(values)), *values.values())
        return MutationResult(before=None, after=Entity.from_row(entity_type, row))

    @audited(AuditAction.UPDATE)
    async def _apply_update(
        self,
        conn: Any,
        entity_type: EntityType,
        current: Entity,
        changes: Dict[str, Any],
        *,
        ctx: RequestContext,
        expected_version: Optional[int] = None,
    ) -> MutationResult:
        return await self._write(conn, entity_type, current, changes, ctx, expected_version)

    @audited(AuditAction.SOFT_DELETE)
    async def _mark_deleted(
        self,
        conn: Any,
        entity_type: EntityType,
        current: Entity,
        *,
        ctx: RequestContext,
        expected_version: Optional[int] = None,
    ) -> MutationResult:
        return await self._write(
            conn, entity_type, current, {}, ctx, expected_version, deleted=True,
        )

    @audited(AuditAction.RESTORE)
    async def _clear_deleted(
        self,
        conn: Any,
        entity_type: EntityType,
        current: Entity,
        *,
        ctx: RequestContext,
    ) -> MutationResult:
        return await self._write(conn, entity_type, current, {}, ctx, None, deleted=False)

    async def _write(
        self,
        conn: Any,
        entity_type: EntityType,
        current: Entity,
        changes: Dict[str, Any],
        ctx: RequestContext,
        expected_version: Optional[int],
        deleted: Optional[bool] = None,
    ) -> MutationResult:
        """Compare-and-swap on ``version``; zero rows updated means we lost the race."""
        version = current.version if expected_version is None else expected_version
        if version != current.version:
            raise self._conflict(entity_type, current, version)

        # Never let updated_at fall behind what is already stored.
        now = max(utcnow(), current.updated_at)
        assignments = dict(changes)
        if deleted is not None:
            assignments["deleted_at"] = now if deleted else None
        assignments["updated_at"] = now
        assignments["updated_by"] = ctx.actor_id

        set_parts = [f"{column} = ${i}" for i, column in enumerate(assignments, 1)]
        set_parts.append("version = version + 1")
        args = list(assignments.values())
        n = len(args)
        args.extend([current.id, current.tenant_id, version])
        sql = (
            f"UPDATE {entity_type.table} SET {', '.join(set_parts)} "
            f"WHERE id = ${n + 1} AND tenant_id = ${n + 2} AND version = ${n + 3} RETURNING *"
        )

        row = await self._fetchrow(conn, sql, *args)
        if row is None:
            raise self._conflict(entity_type, current, version)
        return MutationResult(before=current, after=Entity.from_row(entity_type, row))

    # ── Helpers ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(
        self,
        operation: str,
        entity_type: EntityType,
        tenant_id: Optional[uuid.UUID],
    ):
        """Time, lease, open a transaction and bind the tenant; wrap driver failures."""
        name = f"{entity_type.name}.{operation}"
        try:
            async with self._monitor.track(name, tenant_id):
                async with self._pool.lease(self._acquire_timeout) as conn:
                    async with conn.transaction():
                        if tenant_id is not None:
                            await self._guard.bind(conn, tenant_id)
                        yield conn
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("%s failed: %s", name, exc)
            raise StorageError(
                f"{name} failed ({type(exc).__name__})",
                context={"operation": name},
            ) from exc

    async def _read(
        self,
        operation: str,
        entity_type: EntityType,
        tenant_id: Optional[uuid.UUID],
        query: Callable[[Any], Awaitable[Any]],
    ) -> Any:
        for attempt in range(self._read_retries + 1):
            try:
                async with self._transaction(operation, entity_type, tenant_id) as conn:
                    return await query(conn)
            except StorageError as exc:
                transient = isinstance(exc.__cause__, TRANSIENT_ERRORS)
                if not transient or attempt >= self._read_retries:
                    raise
                logger.warning(
                    "Connection error on %s.%s (attempt %d/%d): %s",
                    entity_type.name, operation, attempt + 1, self._read_retries + 1, exc.__cause__,
                )
                await asyncio.sleep(0.1 * (attempt + 1))
        raise RuntimeError(f"Unexpected state: {operation} failed without error")

    async def _load_for_write(
        self,
        conn: Any,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        ctx: RequestContext,
        operation: str,
        deleted: bool = False,
    ) -> Entity:
        row = await self._fetchrow(conn, f"SELECT * FROM {entity_type.table} WHERE id = $1", entity_id)
        if row is None:
            raise NotFoundError(f"{entity_type.name} {entity_id} not found")
        entity = Entity.from_row(entity_type, row)
        self._guard.authorize(
            ctx, entity.tenant_id, operation=operation, entity_type=entity_type.name, entity_id=entity_id,
        )
        if deleted and not entity.is_deleted:
            raise NotFoundError(f"{entity_type.name} {entity_id} is not soft-deleted")
        if not deleted and entity.is_deleted:
            raise NotFoundError(f"{entity_type.name} {entity_id} not found")
        return entity

    def _check_fields(self, entity_type: EntityType, values: Mapping[str, Any]) -> None:
        server_owned = sorted(set(values) & set(BASE_COLUMNS))
        if server_owned:
            raise InvalidEntityError(
                f"Server-assigned fields cannot be supplied: {server_owned}",
                context={"fields": server_owned},
            )
        unknown = sorted(set(values) - set(entity_type.fields))
        if unknown:
            raise InvalidEntityError(
                f"{entity_type.name} has no fields {unknown}",
                context={"fields": unknown},
            )

    def _conflict(self, entity_type: EntityType, current: Entity, version: int) -> ConcurrentModificationError:
        logger.info(
            "Optimistic concurrency conflict on %s %s (expected version %s)",
            entity_type.name, current.id, version,
        )
        return ConcurrentModificationError(
            f"{entity_type.name} {current.id} was modified concurrently; reload and retry",
            expected_version=version,
            context={"entity_id": str(current.id)},
        )

    def _validate_statement(self, sql: str) -> None:
        self._guard.validate(sql)

    async def _fetchrow(self, conn: Any, sql: str, *args: Any) -> Any:
        self._validate_statement(sql)
        return await conn.fetchrow(sql, *args)

    async def _fetch(self, conn: Any, sql: str, *args: Any) -> List[Any]:
        self._validate_statement(sql)
        return await conn.fetch(sql, *args)
