"""
Bounded Async Connection Pool
=============================
ALL persistence operations lease their connection from this pool.
Do NOT open asyncpg connections directly!

Usage:
    async with pool.lease() as conn:
        await conn.fetchval("SELECT 1")
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

from config import PoolSettings
from persistence.errors import PoolClosedError, PoolExhausted, PoolTimeout
from persistence.events import EventSeverity, EventSink, EventType, default_sink, emit_event

logger = logging.getLogger(__name__)

Connector = Callable[[], Awaitable[Any]]

PROBE_QUERY = "SELECT 1"
PROBE_TIMEOUT = 5.0


@dataclass
class PoolStats:
    """Point-in-time pool counters"""
    active: int
    idle: int
    waiting: int
    size: int
    min_size: int
    max_size: int

    @property
    def utilization(self) -> float:
        return self.active / self.max_size if self.max_size else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "idle": self.idle,
            "waiting": self.waiting,
            "size": self.size,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "utilization": round(self.utilization, 4),
        }


@dataclass
class _IdleEntry:
    connection: Any
    idle_since: float


class PooledConnection:
    """Exclusive lease of one physical connection."""

    __slots__ = ("connection", "acquired_at", "_pool", "_released")

    def __init__(self, pool: "ConnectionPool", connection: Any, acquired_at: float) -> None:
        self._pool = pool
        self.connection = connection
        self.acquired_at = acquired_at
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        await self._pool.release(self)

    def __repr__(self) -> str:
        state = "released" if self._released else "active"
        return f"PooledConnection({state}, conn={self.connection!r})"


def _is_closed(conn: Any) -> bool:
    is_closed = getattr(conn, "is_closed", None)
    if callable(is_closed):
        try:
            return bool(is_closed())
        except Exception:
            return True
    return False


async def _close_quietly(conn: Any) -> None:
    try:
        await conn.close()
    except Exception:
        logger.debug("Failed to close connection", exc_info=True)


class ConnectionPool:
    """
    Bounded pool of live connections with liveness probing and back-pressure.

    ``size`` counts every connection the pool is responsible for: idle ones,
    leased ones and ones being opened. It never exceeds ``max_size``.
    """

    def __init__(
        self,
        settings: PoolSettings,
        connect: Connector,
        *,
        events: Optional[EventSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._connect = connect
        self._events = events if events is not None else default_sink()
        self._clock = clock

        self._idle: Deque[_IdleEntry] = deque()
        self._active: Set[PooledConnection] = set()
        self._size = 0
        self._waiting = 0
        self._cond = asyncio.Condition()
        self._closed = False
        self._high_utilization = False
        self._reaper: Optional[asyncio.Task] = None
        self._last_error: Optional[str] = None
        self._initialized = False

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Pre-create the warm minimum and start the idle reaper."""
        if self._initialized:
            return
        self._initialized = True

        for _ in range(self.settings.min_size):
            conn = await self._open()
            if conn is None:
                continue
            async with self._cond:
                self._idle.append(_IdleEntry(conn, self._clock()))
                self._size += 1

        if self._reaper is None and self.settings.idle_timeout > 0:
            self._reaper = asyncio.create_task(self._reap_loop())

        logger.info(
            "Connection pool initialized (size=%s, min=%s, max=%s)",
            self._size, self.settings.min_size, self.settings.max_size,
        )

    async def close(self) -> None:
        """Close idle connections now and leased ones as they come back."""
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        async with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._size -= len(idle)
            self._cond.notify_all()

        for entry in idle:
            await _close_quietly(entry.connection)
        logger.info("Connection pool closed (%s still leased)", len(self._active))

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Acquisition ─────────────────────────────────────────────────────

    async def acquire(self, timeout: Optional[float] = None) -> PooledConnection:
        """
        Lease a probed, healthy connection.

        Raises PoolTimeout when no slot frees up within ``timeout`` seconds
        and PoolExhausted when no healthy connection can be produced.
        """
        if timeout is None:
            timeout = self.settings.acquire_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        entry: Optional[_IdleEntry] = None
        async with self._cond:
            self._waiting += 1
            try:
                while True:
                    if self._closed:
                        raise PoolClosedError("Connection pool is closed")
                    if self._idle:
                        entry = self._idle.pop()
                        break
                    if self._size < self.settings.max_size:
                        # Reserve the slot before opening outside the lock.
                        self._size += 1
                        break

                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        self._raise_timeout(timeout)
                    try:
                        async with asyncio.timeout(remaining):
                            await self._cond.wait()
                    except TimeoutError:
                        # Pass on a wakeup we may have swallowed.
                        self._cond.notify(1)
                        self._raise_timeout(timeout)
                    except asyncio.CancelledError:
                        # A cancelled waiter never takes the slot it was woken for.
                        self._cond.notify(1)
                        raise
            finally:
                self._waiting -= 1

        try:
            conn = await self._checkout(entry.connection if entry else None)
        except BaseException:
            async with self._cond:
                self._size -= 1
                self._cond.notify(1)
            raise

        handle = PooledConnection(self, conn, self._clock())
        self._active.add(handle)
        self._check_utilization()
        return handle

    def _raise_timeout(self, timeout: float) -> None:
        stats = self.health_check()
        logger.error(
            "Connection pool exhausted - all %s connections in use (waited %.3fs, %s waiting)",
            stats.max_size, timeout, stats.waiting,
        )
        emit_event(
            self._events,
            EventType.POOL_EXHAUSTED,
            EventSeverity.WARNING,
            active=stats.active,
            max_size=stats.max_size,
            waiting=stats.waiting,
            timeout_ms=int(timeout * 1000),
        )
        raise PoolTimeout(
            f"Timed out after {timeout:.3f}s waiting for a database connection",
            context=stats.to_dict(),
        )

    async def _checkout(self, conn: Optional[Any]) -> Any:
        """Probe ``conn`` (or open one), substituting fresh connections on failure."""
        attempts = self.settings.probe_attempts
        for attempt in range(1, attempts + 1):
            if conn is None:
                conn = await self._open()
            if conn is not None:
                try:
                    if await self._probe(conn):
                        return conn
                except BaseException:
                    await _close_quietly(conn)
                    raise
                await _close_quietly(conn)
                emit_event(
                    self._events,
                    EventType.POOL_CONNECTION_DISCARDED,
                    EventSeverity.WARNING,
                    attempt=attempt,
                    reason=self._last_error,
                )
                conn = None
            if attempt < attempts:
                await asyncio.sleep(self.settings.probe_retry_delay)

        raise PoolExhausted(
            f"No healthy database connection after {attempts} attempts",
            context={"last_error": self._last_error},
        )

    async def _probe(self, conn: Any) -> bool:
        if _is_closed(conn):
            self._last_error = "connection closed"
            return False
        try:
            async with asyncio.timeout(PROBE_TIMEOUT):
                result = await conn.fetchval(PROBE_QUERY)
            return result == 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._last_error = str(exc) or type(exc).__name__
            logger.debug("Connection check failed; recreating connection: %s", exc, exc_info=True)
            return False

    async def _open(self) -> Optional[Any]:
        try:
            return await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._last_error = str(exc) or type(exc).__name__
            logger.error("Failed to create connection: %s", exc)
            return None

    # ── Release ─────────────────────────────────────────────────────────

    async def release(self, handle: PooledConnection) -> None:
        """Return a leased connection. Releasing twice is a no-op."""
        if handle.released:
            return
        handle._released = True
        self._active.discard(handle)
        conn = handle.connection

        discard = self._closed or _is_closed(conn) or _in_transaction(conn)
        async with self._cond:
            if discard:
                self._size -= 1
            else:
                self._idle.append(_IdleEntry(conn, self._clock()))
            self._cond.notify(1)
        if discard:
            await _close_quietly(conn)
        self._check_utilization()

    @asynccontextmanager
    async def lease(self, timeout: Optional[float] = None):
        """Acquire a connection and release it on every exit path."""
        handle = await self.acquire(timeout)
        try:
            yield handle.connection
        finally:
            await self.release(handle)

    # ── Idle management ─────────────────────────────────────────────────

    async def reap_idle(self) -> int:
        """Close idle connections past the idle timeout, keeping min_size warm."""
        now = self._clock()
        expired = []
        async with self._cond:
            keep: Deque[_IdleEntry] = deque()
            # Oldest entries sit at the left.
            for entry in self._idle:
                spare = self._size - len(expired) > self.settings.min_size
                if spare and now - entry.idle_since >= self.settings.idle_timeout:
                    expired.append(entry)
                else:
                    keep.append(entry)
            self._idle = keep
            self._size -= len(expired)
            if expired:
                self._cond.notify(len(expired))

        for entry in expired:
            await _close_quietly(entry.connection)
        if expired:
            logger.debug("Reaped %s idle connections", len(expired))
        return len(expired)

    async def _reap_loop(self) -> None:
        interval = max(self.settings.idle_timeout / 2, 1.0)
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle()
            except Exception:
                logger.warning("Idle connection reaping failed", exc_info=True)

    # ── Introspection ───────────────────────────────────────────────────

    def health_check(self) -> PoolStats:
        return PoolStats(
            active=len(self._active),
            idle=len(self._idle),
            waiting=self._waiting,
            size=self._size,
            min_size=self.settings.min_size,
            max_size=self.settings.max_size,
        )

    @property
    def utilization(self) -> float:
        return self.health_check().utilization

    def get_status(self) -> Dict[str, Any]:
        status = self.health_check().to_dict()
        status["closed"] = self._closed
        status["last_error"] = self._last_error
        return status

    def _check_utilization(self) -> None:
        stats = self.health_check()
        threshold = self.settings.high_utilization_threshold
        if stats.utilization >= threshold:
            if not self._high_utilization:
                self._high_utilization = True
                logger.warning(
                    "Connection pool utilization %.0f%% crossed %.0f%% (%s/%s active)",
                    stats.utilization * 100, threshold * 100, stats.active, stats.max_size,
                )
                emit_event(
                    self._events,
                    EventType.POOL_HIGH_UTILIZATION,
                    EventSeverity.WARNING,
                    utilization=round(stats.utilization, 4),
                    threshold=threshold,
                    active=stats.active,
                    max_size=stats.max_size,
                    waiting=stats.waiting,
                )
        elif self._high_utilization:
            self._high_utilization = False
            logger.info("Connection pool utilization back below %.0f%%", threshold * 100)


def _in_transaction(conn: Any) -> bool:
    """A connection returned mid-transaction cannot be safely reused."""
    check = getattr(conn, "is_in_transaction", None)
    if callable(check):
        try:
            return bool(check())
        except Exception:
            return True
    return False
