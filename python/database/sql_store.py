"""
SQLAlchemy-backed ScoreStore

Each store operation runs in its own short session_scope() transaction.
SQLAlchemy errors are translated at this boundary into the store error
hierarchy the coordinator understands:

- IntegrityError on a score insert -> InsertOutcome.ALREADY_EXISTS
- IntegrityError on publish -> DuplicateSnapshotError
- OperationalError -> TransientStoreError
- DisconnectionError / InterfaceError / invalidated connection -> StoreUnavailableError
"""

import logging
import threading
from datetime import date
from functools import wraps
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy import text
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from database.connection import DatabaseSessionProvider
from database.repositories import RunRepository, ScoreRepository, SnapshotRepository
from monitoring import HealthStatus, check_health, query_timer
from store import (
    DuplicateSnapshotError,
    ScoreStore,
    StoreError,
    StoreUnavailableError,
    TransientStoreError,
)
from watchlist import (
    CurrentSnapshotRegistry,
    CustomerFailure,
    InsertOutcome,
    ScoreRecord,
    ScoreRun,
    WatchlistSnapshot,
)

logger = logging.getLogger(__name__)


def store_operation(operation: str) -> Callable:
    """Time a store method and translate SQLAlchemy errors"""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                try:
                    return func(*args, **kwargs)
                except (DisconnectionError, InterfaceError) as e:
                    raise StoreUnavailableError(f"{operation}: {e}") from e
                except OperationalError as e:
                    if e.connection_invalidated:
                        raise StoreUnavailableError(f"{operation}: {e}") from e
                    raise TransientStoreError(f"{operation}: {e}") from e
                except SQLAlchemyError as e:
                    raise StoreError(f"{operation}: {e}") from e
        return wrapper
    return decorator


class SqlAlchemyStore(ScoreStore):
    """ScoreStore over PostgreSQL (or SQLite in tests)"""

    def __init__(self, provider: DatabaseSessionProvider):
        """
        Args:
            provider: Initialized session provider
        """
        self.provider = provider
        self._registry = CurrentSnapshotRegistry()
        self._snapshot_cache: Dict[date, WatchlistSnapshot] = {}
        self._cache_lock = threading.Lock()

    def ping(self) -> bool:
        return self.health().healthy

    def health(self) -> HealthStatus:
        """Timed SELECT 1 against the database"""
        def probe():
            with self.provider.session_scope() as session:
                session.execute(text("SELECT 1"))
        return check_health(probe)

    # Snapshots

    @store_operation("publish_snapshot")
    def publish_snapshot(self, snapshot: WatchlistSnapshot) -> str:
        try:
            with self.provider.session_scope() as session:
                SnapshotRepository(session).publish(snapshot)
        except IntegrityError as e:
            raise DuplicateSnapshotError(
                f"Snapshot already published for {snapshot.list_date.isoformat()}"
            ) from e

        with self._cache_lock:
            self._snapshot_cache[snapshot.list_date] = snapshot
        self._registry.swap(snapshot)

        logger.info(
            f"Published snapshot {snapshot.snapshot_id} "
            f"({snapshot.entry_count} entries, list date {snapshot.list_date.isoformat()})"
        )
        return snapshot.snapshot_id

    @store_operation("current_snapshot")
    def current_snapshot(self) -> Optional[WatchlistSnapshot]:
        current = self._registry.get()
        if current is not None:
            return current

        with self.provider.session_scope() as session:
            row = SnapshotRepository(session).get_current()
            snapshot = row.to_snapshot() if row is not None else None
        if snapshot is not None:
            # Another writer may have published in the meantime; keep the newer pointer
            if self._registry.get() is None:
                self._registry.swap(snapshot)
            return self._registry.get()
        return None

    @store_operation("get_snapshot")
    def get_snapshot(self, list_date: date) -> Optional[WatchlistSnapshot]:
        with self._cache_lock:
            cached = self._snapshot_cache.get(list_date)
        if cached is not None:
            return cached

        with self.provider.session_scope() as session:
            row = SnapshotRepository(session).get_by_list_date(list_date)
            snapshot = row.to_snapshot() if row is not None else None
        if snapshot is not None:
            with self._cache_lock:
                self._snapshot_cache[list_date] = snapshot
        return snapshot

    # Score records

    @store_operation("insert_score_if_absent")
    def insert_score_if_absent(
        self,
        customer_id: str,
        list_date: date,
        score: int,
        matched_entry_ref: Optional[str],
        matched_name: Optional[str] = None
    ) -> InsertOutcome:
        try:
            with self.provider.session_scope() as session:
                ScoreRepository(session).add(
                    customer_id, list_date, score, matched_entry_ref, matched_name
                )
        except IntegrityError:
            return InsertOutcome.ALREADY_EXISTS
        return InsertOutcome.INSERTED

    @store_operation("scores_for_date")
    def scores_for_date(self, list_date: date) -> Iterator[ScoreRecord]:
        with self.provider.session_scope() as session:
            records = [row.to_record() for row in ScoreRepository(session).iter_for_date(list_date)]
        return iter(records)

    @store_operation("scores_page")
    def scores_page(
        self,
        list_date: date,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[ScoreRecord], int]:
        with self.provider.session_scope() as session:
            rows, total = ScoreRepository(session).page(list_date, offset, limit)
            return [row.to_record() for row in rows], total

    @store_operation("existing_customer_ids")
    def existing_customer_ids(self, list_date: date, customer_ids: Iterable[str]) -> Set[str]:
        with self.provider.session_scope() as session:
            return ScoreRepository(session).existing_customer_ids(list_date, customer_ids)

    @store_operation("count_scores")
    def count_scores(self, list_date: date) -> int:
        with self.provider.session_scope() as session:
            return ScoreRepository(session).count(list_date)

    @store_operation("list_dates")
    def list_dates(self) -> List[date]:
        with self.provider.session_scope() as session:
            return ScoreRepository(session).distinct_list_dates()

    # Run bookkeeping

    @store_operation("get_run")
    def get_run(self, list_date: date) -> Optional[ScoreRun]:
        with self.provider.session_scope() as session:
            row = RunRepository(session).get(list_date)
            return row.to_run() if row is not None else None

    @store_operation("save_run")
    def save_run(self, run: ScoreRun) -> None:
        with self.provider.session_scope() as session:
            RunRepository(session).save(run)

    @store_operation("record_failure")
    def record_failure(self, failure: CustomerFailure) -> None:
        with self.provider.session_scope() as session:
            RunRepository(session).record_failure(failure)

    @store_operation("clear_failure")
    def clear_failure(self, list_date: date, customer_id: str) -> None:
        with self.provider.session_scope() as session:
            RunRepository(session).clear_failure(list_date, customer_id)

    @store_operation("failures_for_date")
    def failures_for_date(self, list_date: date) -> List[CustomerFailure]:
        with self.provider.session_scope() as session:
            return [row.to_failure() for row in RunRepository(session).failures_for_date(list_date)]
