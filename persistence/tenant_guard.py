import logging
import uuid
from typing import Any, Optional

from persistence.errors import CrossTenantAccessDenied
from persistence.events import EventSeverity, EventSink, EventType, default_sink, emit_event
from persistence.models import RequestContext
from persistence.sql_guard import SqlStatementGuard

logger = logging.getLogger(__name__)

TENANT_SETTING = "app.current_tenant_id"


class TenantIsolationGuard:
    """
    Enforces tenant isolation at BOTH the application layer (scope checks
    and SQL validation) AND the database layer (transaction-local
    ``app.current_tenant_id`` for RLS policies).

    The system scope bypasses scope checks only when the caller built it
    explicitly with ``RequestContext.system()``; each bypass is logged.
    """

    def __init__(
        self,
        events: Optional[EventSink] = None,
        statement_guard: Optional[SqlStatementGuard] = None,
    ) -> None:
        self._events = events if events is not None else default_sink()
        self._statements = statement_guard or SqlStatementGuard("tenant_id")

    def authorize(
        self,
        ctx: RequestContext,
        row_tenant_id: Optional[uuid.UUID],
        *,
        operation: str,
        entity_type: str,
        entity_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Raise CrossTenantAccessDenied unless ``ctx`` may touch the row's tenant."""
        if ctx.is_system:
            logger.info(
                "System scope bypassing tenant check: %s %s %s (actor=%s)",
                operation, entity_type, entity_id, ctx.actor_id,
            )
            return

        if row_tenant_id is not None and row_tenant_id == ctx.tenant_id:
            return

        logger.warning(
            "SECURITY: cross-tenant %s on %s %s denied (actor=%s, scope=%s, target=%s)",
            operation, entity_type, entity_id, ctx.actor_id, ctx.tenant_id, row_tenant_id,
        )
        emit_event(
            self._events,
            EventType.TENANT_ISOLATION_VIOLATION,
            EventSeverity.CRITICAL,
            operation=operation,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=ctx.actor_id,
            caller_tenant_id=ctx.tenant_id,
            target_tenant_id=row_tenant_id,
        )
        # The message names only what the caller already knows.
        raise CrossTenantAccessDenied(
            f"Access denied: {operation} on {entity_type} is outside the caller's tenant scope",
            context={"entity_type": entity_type, "entity_id": str(entity_id) if entity_id else None},
        )

    def resolve_tenant(
        self,
        ctx: RequestContext,
        requested: Optional[uuid.UUID],
        *,
        operation: str,
        entity_type: str,
    ) -> uuid.UUID:
        """Tenant an operation acts on: the requested one if authorized, else the caller's."""
        tenant_id = requested if requested is not None else ctx.tenant_id
        if tenant_id is None:
            raise CrossTenantAccessDenied(
                f"{operation} on {entity_type} requires an explicit tenant for the system scope",
            )
        self.authorize(ctx, tenant_id, operation=operation, entity_type=entity_type)
        return tenant_id

    def validate(self, sql: str) -> None:
        self._statements.validate(sql)

    async def bind(self, conn: Any, tenant_id: uuid.UUID) -> None:
        """Set the tenant for RLS; transaction-local, so it reverts on commit/rollback."""
        await conn.execute(
            f"SELECT set_config('{TENANT_SETTING}', $1, true)",
            str(tenant_id),
        )
