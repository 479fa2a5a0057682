"""
Database connection wiring - asyncpg connector and the process-wide pool
"""
import logging
import ssl
from typing import Any, Optional

import asyncpg

from config import DatabaseConfig, PoolSettings, config
from persistence.events import EventSink
from persistence.pool import ConnectionPool, Connector

logger = logging.getLogger(__name__)


def _ssl_context(db: DatabaseConfig) -> Optional[ssl.SSLContext]:
    if not db.ssl:
        return None
    ctx = ssl.create_default_context()
    if not db.ssl_verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


def asyncpg_connector(db: Optional[DatabaseConfig] = None) -> Connector:
    """Return a coroutine factory that opens one asyncpg connection."""
    db = db or config.database
    if not db.is_complete:
        raise RuntimeError(
            "Database configuration is incomplete. "
            "Ensure DB_HOST, DB_NAME, DB_USER, and DB_PASSWORD are set."
        )
    ssl_context = _ssl_context(db)

    async def connect() -> Any:
        return await asyncpg.connect(
            host=db.host,
            port=db.port,
            user=db.user,
            password=db.password,
            database=db.database,
            timeout=db.connect_timeout,
            command_timeout=db.command_timeout,
            ssl=ssl_context,
            statement_cache_size=0,  # Disable statement cache to avoid session mode issues
        )

    return connect


# Global pool instance
_pool: Optional[ConnectionPool] = None


async def init_pool(
    settings: Optional[PoolSettings] = None,
    connect: Optional[Connector] = None,
    events: Optional[EventSink] = None,
) -> ConnectionPool:
    """Initialize the global connection pool"""
    global _pool
    if _pool is not None:
        return _pool

    settings = settings or config.pool
    pool = ConnectionPool(settings, connect or asyncpg_connector(), events=events)
    await pool.initialize()
    _pool = pool
    logger.info("Database pool ready (%s)", settings.to_dict())
    return _pool


def get_pool() -> ConnectionPool:
    """Get the global connection pool"""
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return _pool


async def close_pool() -> None:
    """Close the global connection pool"""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
