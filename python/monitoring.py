"""
Metrics and timing for sdnscore

Prometheus counters cover ingestion and batch scoring. Store calls go
through query_timer(), which feeds a histogram, keeps per-operation
stats in process and logs slow operations.

Usage:
    from monitoring import query_timer, get_store_metrics

    with query_timer("insert_score_if_absent"):
        store.insert_score_if_absent(...)
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

# Store calls slower than this are logged as warnings
SLOW_OPERATION_MS = 1000.0


# ============================================
# PROMETHEUS METRICS
# ============================================

store_operation_duration = Histogram(
    'sdnscore_store_operation_duration_seconds',
    'Store operation duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

ingestions_total = Counter(
    'sdnscore_ingestions_total',
    'Watchlist ingestion attempts by outcome',
    ['status']
)

scores_written_total = Counter(
    'sdnscore_scores_written_total',
    'Score record writes by outcome',
    ['outcome']
)

customer_failures_total = Counter(
    'sdnscore_customer_failures_total',
    'Customers recorded as failed after all retries',
    ['kind']
)

batch_duration = Histogram(
    'sdnscore_batch_duration_seconds',
    'Time to screen and persist one customer batch',
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)
)

runs_finished_total = Counter(
    'sdnscore_runs_finished_total',
    'Score runs reaching a terminal state',
    ['state']
)

runs_in_progress = Gauge(
    'sdnscore_runs_in_progress',
    'Score runs currently executing'
)


def record_ingestion(status: str) -> None:
    ingestions_total.labels(status=status).inc()


def record_score_write(outcome: str) -> None:
    scores_written_total.labels(outcome=outcome).inc()


def record_customer_failure(kind: str) -> None:
    customer_failures_total.labels(kind=kind).inc()


def observe_batch(duration_seconds: float) -> None:
    batch_duration.observe(duration_seconds)


def record_run_finished(state: str) -> None:
    runs_finished_total.labels(state=state).inc()


# ============================================
# IN-PROCESS STORE STATS
# ============================================

@dataclass
class OperationStats:
    """Running totals for one store operation"""
    count: int = 0
    errors: int = 0
    slow: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'errors': self.errors,
            'slow': self.slow,
            'avg_ms': round(self.total_ms / self.count, 2) if self.count else 0.0,
            'max_ms': round(self.max_ms, 2),
        }


_stats: Dict[str, OperationStats] = {}
_stats_lock = threading.Lock()


def _record(operation: str, duration_ms: float, error: bool) -> bool:
    slow = duration_ms > SLOW_OPERATION_MS
    with _stats_lock:
        stats = _stats.setdefault(operation, OperationStats())
        stats.count += 1
        stats.total_ms += duration_ms
        stats.max_ms = max(stats.max_ms, duration_ms)
        stats.errors += int(error)
        stats.slow += int(slow)
    return slow


def get_store_metrics(operation: Optional[str] = None) -> Dict[str, Any]:
    """
    Snapshot of the in-process store stats.

    Args:
        operation: Restrict to one operation name

    Returns:
        Stats for that operation (empty if never called), or all of them
        keyed by operation name
    """
    with _stats_lock:
        if operation is not None:
            stats = _stats.get(operation)
            return stats.to_dict() if stats else {}
        return {name: stats.to_dict() for name, stats in _stats.items()}


def reset_metrics() -> None:
    with _stats_lock:
        _stats.clear()


@contextmanager
def query_timer(operation: str):
    """Time one store call; errors still count and still propagate."""
    started = time.perf_counter()
    error = False
    try:
        yield
    except Exception:
        error = True
        raise
    finally:
        duration = time.perf_counter() - started
        store_operation_duration.labels(
            operation=operation,
            status="error" if error else "success"
        ).observe(duration)
        if _record(operation, duration * 1000, error):
            logger.warning(f"⚠ Slow store operation: {operation} took {duration * 1000:.0f}ms")


# ============================================
# HEALTH CHECK
# ============================================

@dataclass
class HealthStatus:
    """Result of one store probe"""
    healthy: bool
    latency_ms: float
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=datetime.now)


def check_health(probe: Callable[[], Any]) -> HealthStatus:
    """
    Run a store probe and time it.

    Args:
        probe: Callable that raises when the store is unreachable
    """
    started = time.perf_counter()
    try:
        probe()
    except Exception as e:
        logger.error(f"✗ Store health check failed: {e}")
        return HealthStatus(
            healthy=False,
            latency_ms=(time.perf_counter() - started) * 1000,
            error=str(e)
        )
    return HealthStatus(healthy=True, latency_ms=(time.perf_counter() - started) * 1000)
