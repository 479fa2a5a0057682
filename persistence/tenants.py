"""
Tenant (clinic) directory.

Tenants are referenced by entities through ``tenant_id`` only; a Tenant
never holds its entities. Registering and (de)activating clinics is an
administrator action and requires the system scope.
"""
import logging
import uuid
from typing import Any, Optional

from persistence.audit import insert_sql
from persistence.errors import CrossTenantAccessDenied, NotFoundError, PersistenceError, StorageError
from persistence.events import EventSeverity, EventSink, EventType, default_sink, emit_event
from persistence.models import RequestContext, Tenant, TenantMode, utcnow
from persistence.monitor import QueryPerformanceMonitor
from persistence.pool import ConnectionPool

logger = logging.getLogger(__name__)

TENANT_TABLE = "tenants"
TENANT_COLUMNS = ("id", "name", "mode", "is_active", "created_at")


def _tenant_from_row(row: Any) -> Tenant:
    return Tenant(**dict(row))


class TenantDirectory:
    def __init__(
        self,
        pool: ConnectionPool,
        acquire_timeout: Optional[float] = None,
        *,
        events: Optional[EventSink] = None,
        monitor: Optional[QueryPerformanceMonitor] = None,
    ) -> None:
        self._pool = pool
        self._acquire_timeout = acquire_timeout
        self._events = events if events is not None else default_sink()
        self._monitor = monitor or QueryPerformanceMonitor(events=self._events, pool=pool)

    async def register(
        self,
        name: str,
        ctx: RequestContext,
        mode: TenantMode = TenantMode.SINGLE_PROVIDER,
    ) -> Tenant:
        self._require_system(ctx, "register")
        tenant = Tenant(id=uuid.uuid4(), name=name, mode=mode, is_active=True, created_at=utcnow())
        values = tenant.model_dump()
        values["mode"] = tenant.mode.value
        row = await self._run(
            "register",
            lambda conn: conn.fetchrow(
                insert_sql(TENANT_TABLE, TENANT_COLUMNS), *(values[c] for c in TENANT_COLUMNS)
            ),
        )
        logger.info("Registered tenant %s (%s)", tenant.id, tenant.mode.value)
        return _tenant_from_row(row)

    async def get(self, tenant_id: uuid.UUID, ctx: RequestContext) -> Optional[Tenant]:
        """A tenant-scoped caller may only read its own clinic."""
        if not ctx.is_system and ctx.tenant_id != tenant_id:
            return None
        row = await self._run(
            "get",
            lambda conn: conn.fetchrow(f"SELECT * FROM {TENANT_TABLE} WHERE id = $1", tenant_id),
        )
        return _tenant_from_row(row) if row is not None else None

    async def set_active(self, tenant_id: uuid.UUID, is_active: bool, ctx: RequestContext) -> Tenant:
        self._require_system(ctx, "set_active")
        row = await self._run(
            "set_active",
            lambda conn: conn.fetchrow(
                f"UPDATE {TENANT_TABLE} SET is_active = $1 WHERE id = $2 RETURNING *",
                is_active,
                tenant_id,
            ),
        )
        if row is None:
            raise NotFoundError(f"tenant {tenant_id} not found")
        logger.info("Tenant %s %s", tenant_id, "activated" if is_active else "deactivated")
        return _tenant_from_row(row)

    def _require_system(self, ctx: RequestContext, operation: str) -> None:
        if ctx.is_system:
            return
        logger.warning("SECURITY: tenant %s attempted by non-system actor %s", operation, ctx.actor_id)
        emit_event(
            self._events,
            EventType.TENANT_ISOLATION_VIOLATION,
            EventSeverity.CRITICAL,
            operation=operation,
            entity_type=TENANT_TABLE,
            actor_id=ctx.actor_id,
            caller_tenant_id=ctx.tenant_id,
        )
        raise CrossTenantAccessDenied(f"Tenant {operation} requires the system scope")

    async def _run(self, operation: str, query):
        try:
            async with self._monitor.track(f"tenant.{operation}"):
                async with self._pool.lease(self._acquire_timeout) as conn:
                    async with conn.transaction():
                        return await query(conn)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("tenant.%s failed: %s", operation, exc)
            raise StorageError(f"tenant.{operation} failed ({type(exc).__name__})") from exc
