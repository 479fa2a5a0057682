"""
Query performance monitoring for the persistence core.

Provides:
- QueryPerformanceMonitor: rolling per-operation latency tracking with
  quantiles, slow-operation events and pool utilization reporting
"""

from __future__ import annotations

import logging
import statistics
import time
import uuid
from collections import Counter, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Optional

from config import config as app_config
from persistence.events import EventSeverity, EventSink, EventType, default_sink, emit_event

logger = logging.getLogger(__name__)


class QueryPerformance(Enum):
    """Operation latency classification"""
    EXCELLENT = "excellent"  # < 10ms
    GOOD = "good"            # 10ms - slow threshold
    SLOW = "slow"            # slow threshold - 10x slow threshold
    CRITICAL = "critical"    # > 10x slow threshold


@dataclass
class OperationSample:
    """Single database operation observation."""

    operation: str
    tenant_id: Optional[str]
    duration_ms: float
    ok: bool
    timestamp: float


class QueryPerformanceMonitor:
    """Times every database operation; observes, never interferes."""

    def __init__(
        self,
        slow_threshold_ms: Optional[float] = None,
        *,
        events: Optional[EventSink] = None,
        pool: Any = None,
        window: int = 500,
    ) -> None:
        if slow_threshold_ms is None:
            slow_threshold_ms = app_config.slow_query_threshold_ms
        self.slow_threshold_ms = slow_threshold_ms
        self._events = events if events is not None else default_sink()
        self._pool = pool
        self._samples: Deque[OperationSample] = deque(maxlen=window)
        self._counters: Counter = Counter()
        self._slow_count = 0
        self._error_count = 0

    def attach_pool(self, pool: Any) -> None:
        self._pool = pool

    def classify(self, duration_ms: float) -> QueryPerformance:
        if duration_ms < 10:
            return QueryPerformance.EXCELLENT
        if duration_ms <= self.slow_threshold_ms:
            return QueryPerformance.GOOD
        if duration_ms <= self.slow_threshold_ms * 10:
            return QueryPerformance.SLOW
        return QueryPerformance.CRITICAL

    @asynccontextmanager
    async def track(self, operation: str, tenant_id: Optional[uuid.UUID] = None):
        """Time the wrapped block. Exceptions pass through untouched."""
        started = time.perf_counter()
        ok = False
        try:
            yield
            ok = True
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            self.record(operation, duration_ms, tenant_id=tenant_id, ok=ok)

    def record(
        self,
        operation: str,
        duration_ms: float,
        *,
        tenant_id: Optional[uuid.UUID] = None,
        ok: bool = True,
    ) -> None:
        try:
            tenant = str(tenant_id) if tenant_id is not None else None
            self._samples.append(
                OperationSample(
                    operation=operation,
                    tenant_id=tenant,
                    duration_ms=duration_ms,
                    ok=ok,
                    timestamp=time.time(),
                )
            )
            self._counters[operation] += 1
            if not ok:
                self._error_count += 1
            if duration_ms > self.slow_threshold_ms:
                self._slow_count += 1
                logger.warning(
                    "Slow database operation %s took %.1fms (threshold %.0fms, tenant=%s)",
                    operation, duration_ms, self.slow_threshold_ms, tenant,
                )
                emit_event(
                    self._events,
                    EventType.SLOW_OPERATION,
                    EventSeverity.WARNING,
                    operation=operation,
                    duration_ms=round(duration_ms, 3),
                    threshold_ms=self.slow_threshold_ms,
                    tenant_id=tenant,
                    classification=self.classify(duration_ms),
                    ok=ok,
                    occurred_at=datetime.now(timezone.utc),
                )
        except Exception:
            logger.warning("Failed to record timing for %s", operation, exc_info=True)

    def pool_utilization(self) -> Optional[Dict[str, Any]]:
        if self._pool is None:
            return None
        try:
            return self._pool.health_check().to_dict()
        except Exception:
            logger.debug("Pool stats unavailable", exc_info=True)
            return None

    def snapshot(self) -> Dict[str, Any]:
        """Return aggregated metrics over the rolling window."""
        samples = list(self._samples)
        durations = [s.duration_ms for s in samples]
        count = len(samples)

        def _quantile(values: list[float], q: float) -> float:
            if not values:
                return 0.0
            if len(values) == 1:
                return values[0]
            try:
                return statistics.quantiles(values, n=100)[int(q * 100) - 1]
            except statistics.StatisticsError:
                return statistics.mean(values)

        hot = [
            {"operation": operation, "calls": calls}
            for operation, calls in self._counters.most_common(5)
        ]

        return {
            "sample_size": count,
            "error_rate": (sum(1 for s in samples if not s.ok) / count) if count else 0.0,
            "latency_ms": {
                "avg": (sum(durations) / count) if count else 0.0,
                "p50": _quantile(durations, 0.50),
                "p95": _quantile(durations, 0.95),
                "p99": _quantile(durations, 0.99),
            },
            "slow_operations": self._slow_count,
            "errors": self._error_count,
            "slow_threshold_ms": self.slow_threshold_ms,
            "hot_operations": hot,
            "pool": self.pool_utilization(),
        }
