"""
Audit capture for entity mutations.

``audited(action)`` wraps a mutation primitive. The primitive performs the
row change on the connection it is given and returns a MutationResult; the
wrapper then writes exactly one AuditRecord on the same connection. Both
statements therefore commit or roll back together with the caller's
transaction.
"""
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from persistence.models import AuditAction, AuditRecord, Entity, EntityType, RequestContext

logger = logging.getLogger(__name__)

AUDIT_TABLE = "audit_records"
AUDIT_COLUMNS = (
    "id",
    "tenant_id",
    "entity_type",
    "entity_id",
    "action",
    "before_state",
    "after_state",
    "actor_id",
    "occurred_at",
)

F = TypeVar("F", bound=Callable[..., Awaitable["MutationResult"]])


@dataclass
class MutationResult:
    before: Optional[Entity]
    after: Optional[Entity]

    @property
    def subject(self) -> Entity:
        entity = self.after or self.before
        if entity is None:
            raise RuntimeError("Mutation primitive returned neither a before nor an after state")
        return entity


def insert_sql(table: str, columns: tuple) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *"


AUDIT_INSERT_SQL = insert_sql(AUDIT_TABLE, AUDIT_COLUMNS)


def build_audit_record(
    action: AuditAction,
    result: MutationResult,
    ctx: RequestContext,
) -> AuditRecord:
    # CREATE has no before state; SOFT_DELETE has no after state.
    before = None if action is AuditAction.CREATE else result.before
    after = None if action is AuditAction.SOFT_DELETE else result.after
    subject = result.subject
    return AuditRecord(
        tenant_id=subject.tenant_id,
        entity_type=subject.entity_type,
        entity_id=subject.id,
        action=action,
        before_state=before.snapshot() if before is not None else None,
        after_state=after.snapshot() if after is not None else None,
        actor_id=ctx.actor_id,
        occurred_at=subject.updated_at,
    )


async def write_audit_record(conn: Any, record: AuditRecord) -> AuditRecord:
    values = record.to_db_record()
    await conn.fetchrow(AUDIT_INSERT_SQL, *(values[c] for c in AUDIT_COLUMNS))
    return record


def audited(action: AuditAction) -> Callable[[F], F]:
    """
    Decorate ``async def primitive(self, conn, entity_type, ..., ctx=...)``.

    The decorated call refuses to run outside a transaction; an audit row
    that could commit separately from its mutation is never written.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(
            self,
            conn: Any,
            entity_type: EntityType,
            *args: Any,
            ctx: RequestContext,
            **kwargs: Any,
        ):
            if not conn.is_in_transaction():
                raise RuntimeError(f"{func.__name__} must run inside a transaction")

            result: MutationResult = await func(self, conn, entity_type, *args, ctx=ctx, **kwargs)
            record = build_audit_record(action, result, ctx)
            validate = getattr(self, "_validate_statement", None)
            if validate is not None:
                validate(AUDIT_INSERT_SQL)
            await write_audit_record(conn, record)
            logger.debug(
                "Audit %s %s %s by %s", action.value, entity_type.name, record.entity_id, ctx.actor_id,
            )
            return result

        return wrapper  # type: ignore[return-value]

    return decorator


def audit_trail_sql(include_tenant: bool) -> str:
    conditions = ["entity_type = $1", "entity_id = $2"]
    if include_tenant:
        conditions.append("tenant_id = $3")
    return (
        f"SELECT * FROM {AUDIT_TABLE} WHERE {' AND '.join(conditions)} "
        "ORDER BY occurred_at ASC, seq ASC"
    )


def records_from_rows(rows: List[Any]) -> List[AuditRecord]:
    return [AuditRecord.from_row(row) for row in rows]
