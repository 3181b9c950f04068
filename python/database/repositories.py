"""
Repository Pattern for sdnscore Database Operations

Provides a clean data access layer over the ORM models. Repositories
work on a caller-owned session and never commit; transaction boundaries
belong to the caller (session_scope).
"""

import logging
from datetime import date
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from database.models import (
    CustomerFailureRow,
    ScoreRecordRow,
    ScoreRunRow,
    WatchlistSnapshotRow,
)
from watchlist import CustomerFailure, ScoreRun, WatchlistSnapshot

logger = logging.getLogger(__name__)

# Keeps IN (...) lists below SQLite's bound-parameter limit
IN_CLAUSE_CHUNK = 500


# ============================================
# SNAPSHOT REPOSITORY
# ============================================

class SnapshotRepository:
    """Repository for watchlist snapshots."""

    def __init__(self, session: Session):
        self.session = session

    def publish(self, snapshot: WatchlistSnapshot) -> WatchlistSnapshotRow:
        """
        Insert a snapshot with its entries and mark it current.

        Must run inside one transaction so the previous current flag and
        the new rows change together.

        Raises:
            IntegrityError: If a snapshot already exists for the list date
        """
        self.session.execute(
            update(WatchlistSnapshotRow)
            .where(WatchlistSnapshotRow.is_current.is_(True))
            .values(is_current=False)
        )
        row = WatchlistSnapshotRow.from_snapshot(snapshot)
        self.session.add(row)
        self.session.flush()

        logger.debug(f"Inserted snapshot {row.id} with {row.entry_count} entries")
        return row

    def get_current(self) -> Optional[WatchlistSnapshotRow]:
        query = select(WatchlistSnapshotRow).where(WatchlistSnapshotRow.is_current.is_(True))
        return self.session.execute(query).scalars().first()

    def get_by_list_date(self, list_date: date) -> Optional[WatchlistSnapshotRow]:
        query = select(WatchlistSnapshotRow).where(WatchlistSnapshotRow.list_date == list_date)
        return self.session.execute(query).scalar_one_or_none()


# ============================================
# SCORE REPOSITORY
# ============================================

class ScoreRepository:
    """Repository for score records."""

    def __init__(self, session: Session):
        self.session = session

    def add(
        self,
        customer_id: str,
        list_date: date,
        score: int,
        matched_entry_ref: Optional[str],
        matched_name: Optional[str] = None
    ) -> ScoreRecordRow:
        """
        Insert a score record.

        Raises:
            IntegrityError: If (customer_id, list_date) already has a score
        """
        row = ScoreRecordRow(
            customer_id=customer_id,
            list_date=list_date,
            score=score,
            matched_entry_ref=matched_entry_ref,
            matched_name=matched_name,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def iter_for_date(self, list_date: date) -> Iterator[ScoreRecordRow]:
        query = select(ScoreRecordRow).where(ScoreRecordRow.list_date == list_date)
        return iter(self.session.execute(query).scalars().all())

    def page(
        self,
        list_date: date,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[ScoreRecordRow], int]:
        """
        Score records for a date, highest score first.

        Args:
            list_date: List version date
            offset: Number of records to skip
            limit: Maximum records to return

        Returns:
            Tuple of (records, total_count)
        """
        total = self.count(list_date)
        query = (
            select(ScoreRecordRow)
            .where(ScoreRecordRow.list_date == list_date)
            .order_by(ScoreRecordRow.score.desc(), ScoreRecordRow.customer_id.asc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all()), total

    def existing_customer_ids(self, list_date: date, customer_ids: Iterable[str]) -> Set[str]:
        ids = list(dict.fromkeys(customer_ids))
        found: Set[str] = set()
        for start in range(0, len(ids), IN_CLAUSE_CHUNK):
            chunk = ids[start:start + IN_CLAUSE_CHUNK]
            query = select(ScoreRecordRow.customer_id).where(
                ScoreRecordRow.list_date == list_date,
                ScoreRecordRow.customer_id.in_(chunk)
            )
            found.update(self.session.execute(query).scalars().all())
        return found

    def count(self, list_date: date) -> int:
        query = select(func.count(ScoreRecordRow.id)).where(ScoreRecordRow.list_date == list_date)
        return self.session.execute(query).scalar() or 0

    def distinct_list_dates(self) -> List[date]:
        query = select(ScoreRecordRow.list_date).distinct().order_by(ScoreRecordRow.list_date.desc())
        return list(self.session.execute(query).scalars().all())


# ============================================
# RUN REPOSITORY
# ============================================

class RunRepository:
    """Repository for score run and customer failure bookkeeping."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, list_date: date) -> Optional[ScoreRunRow]:
        return self.session.get(ScoreRunRow, list_date)

    def save(self, run: ScoreRun) -> ScoreRunRow:
        """Create or replace the run row for run.list_date"""
        row = self.get(run.list_date)
        if row is None:
            row = ScoreRunRow(list_date=run.list_date)
            self.session.add(row)
        row.apply(run)
        self.session.flush()
        return row

    def record_failure(self, failure: CustomerFailure) -> CustomerFailureRow:
        """Create or replace the failure for (list_date, customer_id)"""
        query = select(CustomerFailureRow).where(
            CustomerFailureRow.list_date == failure.list_date,
            CustomerFailureRow.customer_id == failure.customer_id
        )
        row = self.session.execute(query).scalar_one_or_none()
        if row is None:
            row = CustomerFailureRow(list_date=failure.list_date, customer_id=failure.customer_id)
            self.session.add(row)
        row.kind = failure.kind
        row.message = failure.message
        row.attempts = failure.attempts
        if failure.recorded_at is not None:
            row.recorded_at = failure.recorded_at
        self.session.flush()
        return row

    def clear_failure(self, list_date: date, customer_id: str) -> int:
        result = self.session.execute(
            delete(CustomerFailureRow).where(
                CustomerFailureRow.list_date == list_date,
                CustomerFailureRow.customer_id == customer_id
            )
        )
        return result.rowcount or 0

    def failures_for_date(self, list_date: date) -> List[CustomerFailureRow]:
        query = (
            select(CustomerFailureRow)
            .where(CustomerFailureRow.list_date == list_date)
            .order_by(CustomerFailureRow.customer_id)
        )
        return list(self.session.execute(query).scalars().all())
