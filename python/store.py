"""
Score/Snapshot store interface

The coordinator and ingestor depend only on ScoreStore. Two
implementations exist: InMemoryStore below (thread-safe, used for local
runs and tests) and database.store.SqlAlchemyStore for PostgreSQL.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from watchlist import (
    CurrentSnapshotRegistry,
    CustomerFailure,
    InsertOutcome,
    ScoreRecord,
    ScoreRun,
    WatchlistSnapshot,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for store errors."""
    pass


class TransientStoreError(StoreError):
    """A single operation failed but the store is still reachable."""
    pass


class StoreUnavailableError(StoreError):
    """The store cannot be reached at all."""
    pass


class DuplicateSnapshotError(StoreError):
    """A snapshot for the list date has already been published."""
    pass


class ScoreStore(ABC):
    """Durable storage for snapshots, score records and run bookkeeping"""

    @abstractmethod
    def ping(self) -> bool:
        """Return True when the store is reachable"""

    # Snapshots

    @abstractmethod
    def publish_snapshot(self, snapshot: WatchlistSnapshot) -> str:
        """Atomically persist a snapshot and make it current

        Raises:
            DuplicateSnapshotError: If the list date already has a snapshot
        """

    @abstractmethod
    def current_snapshot(self) -> Optional[WatchlistSnapshot]:
        """Most recently published snapshot, or None before first ingestion"""

    @abstractmethod
    def get_snapshot(self, list_date: date) -> Optional[WatchlistSnapshot]:
        """Published snapshot for a list date"""

    # Score records

    @abstractmethod
    def insert_score_if_absent(
        self,
        customer_id: str,
        list_date: date,
        score: int,
        matched_entry_ref: Optional[str],
        matched_name: Optional[str] = None
    ) -> InsertOutcome:
        """Insert a score unless (customer_id, list_date) already has one"""

    @abstractmethod
    def scores_for_date(self, list_date: date) -> Iterator[ScoreRecord]:
        """All score records for a list date, in no particular order"""

    @abstractmethod
    def scores_page(
        self,
        list_date: date,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[ScoreRecord], int]:
        """Score records sorted by score descending, with the total count"""

    @abstractmethod
    def existing_customer_ids(self, list_date: date, customer_ids: Iterable[str]) -> Set[str]:
        """Subset of customer_ids that already have a score for the date"""

    @abstractmethod
    def count_scores(self, list_date: date) -> int:
        """Number of score records for a list date"""

    @abstractmethod
    def list_dates(self) -> List[date]:
        """Distinct list dates that have score records, newest first"""

    # Run bookkeeping

    @abstractmethod
    def get_run(self, list_date: date) -> Optional[ScoreRun]:
        """Score run for a list date"""

    @abstractmethod
    def save_run(self, run: ScoreRun) -> None:
        """Create or replace the run for run.list_date"""

    @abstractmethod
    def record_failure(self, failure: CustomerFailure) -> None:
        """Create or replace the failure for (list_date, customer_id)"""

    @abstractmethod
    def clear_failure(self, list_date: date, customer_id: str) -> None:
        """Remove a recorded failure after the customer was scored"""

    @abstractmethod
    def failures_for_date(self, list_date: date) -> List[CustomerFailure]:
        """Recorded failures for a list date, ordered by customer id"""


def sort_for_listing(records: Iterable[ScoreRecord]) -> List[ScoreRecord]:
    """Order used by paginated listings: score descending, then customer id"""
    return sorted(records, key=lambda r: (-r.score, r.customer_id))


class InMemoryStore(ScoreStore):
    """Thread-safe in-process store

    Mirrors the uniqueness semantics of the database store: the
    (customer_id, list_date) key is checked and written under one lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._registry = CurrentSnapshotRegistry()
        self._snapshots: Dict[date, WatchlistSnapshot] = {}
        self._scores: Dict[date, Dict[str, ScoreRecord]] = {}
        self._runs: Dict[date, ScoreRun] = {}
        self._failures: Dict[date, Dict[str, CustomerFailure]] = {}

    def ping(self) -> bool:
        return True

    def publish_snapshot(self, snapshot: WatchlistSnapshot) -> str:
        with self._lock:
            if snapshot.list_date in self._snapshots:
                raise DuplicateSnapshotError(
                    f"Snapshot already published for {snapshot.list_date.isoformat()}"
                )
            self._snapshots[snapshot.list_date] = snapshot
            self._registry.swap(snapshot)
        logger.info(
            f"Published snapshot {snapshot.snapshot_id} "
            f"({snapshot.entry_count} entries, list date {snapshot.list_date.isoformat()})"
        )
        return snapshot.snapshot_id

    def current_snapshot(self) -> Optional[WatchlistSnapshot]:
        return self._registry.get()

    def get_snapshot(self, list_date: date) -> Optional[WatchlistSnapshot]:
        with self._lock:
            return self._snapshots.get(list_date)

    def insert_score_if_absent(
        self,
        customer_id: str,
        list_date: date,
        score: int,
        matched_entry_ref: Optional[str],
        matched_name: Optional[str] = None
    ) -> InsertOutcome:
        with self._lock:
            by_customer = self._scores.setdefault(list_date, {})
            if customer_id in by_customer:
                return InsertOutcome.ALREADY_EXISTS
            by_customer[customer_id] = ScoreRecord(
                customer_id=customer_id,
                list_date=list_date,
                score=score,
                matched_entry_id=matched_entry_ref,
                matched_name=matched_name,
                scored_at=datetime.now(timezone.utc),
            )
            return InsertOutcome.INSERTED

    def scores_for_date(self, list_date: date) -> Iterator[ScoreRecord]:
        with self._lock:
            records = list(self._scores.get(list_date, {}).values())
        return iter(records)

    def scores_page(
        self,
        list_date: date,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[ScoreRecord], int]:
        records = sort_for_listing(self.scores_for_date(list_date))
        return records[offset:offset + limit], len(records)

    def existing_customer_ids(self, list_date: date, customer_ids: Iterable[str]) -> Set[str]:
        with self._lock:
            scored = self._scores.get(list_date, {})
            return {cid for cid in customer_ids if cid in scored}

    def count_scores(self, list_date: date) -> int:
        with self._lock:
            return len(self._scores.get(list_date, {}))

    def list_dates(self) -> List[date]:
        with self._lock:
            return sorted((d for d, recs in self._scores.items() if recs), reverse=True)

    def get_run(self, list_date: date) -> Optional[ScoreRun]:
        with self._lock:
            return self._runs.get(list_date)

    def save_run(self, run: ScoreRun) -> None:
        with self._lock:
            self._runs[run.list_date] = run

    def record_failure(self, failure: CustomerFailure) -> None:
        if failure.recorded_at is None:
            failure = replace(failure, recorded_at=datetime.now(timezone.utc))
        with self._lock:
            self._failures.setdefault(failure.list_date, {})[failure.customer_id] = failure

    def clear_failure(self, list_date: date, customer_id: str) -> None:
        with self._lock:
            self._failures.get(list_date, {}).pop(customer_id, None)

    def failures_for_date(self, list_date: date) -> List[CustomerFailure]:
        with self._lock:
            failures = list(self._failures.get(list_date, {}).values())
        return sorted(failures, key=lambda f: f.customer_id)
