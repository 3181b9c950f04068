"""
SQLAlchemy ORM Models for the sdnscore watchlist scoring system

Tables:
1. watchlist_snapshots - One published, immutable list version per list date
2. watchlist_entries - Deduplicated entries of a snapshot
3. score_records - One score per (customer_id, list_date)
4. score_runs - Run bookkeeping per list date
5. customer_failures - Customers that could not be scored after retries

Rows never leave the store: every model converts to and from the frozen
value types in watchlist.py.
"""

import uuid
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship
from sqlalchemy.sql import func

from watchlist import (
    CustomerFailure,
    EntryCategory,
    FailureKind,
    RunState,
    ScoreRecord,
    ScoreRun,
    WatchlistEntry,
    WatchlistSnapshot,
)

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# WATCHLIST TABLES
# ============================================

class WatchlistSnapshotRow(Base, TimestampMixin):
    """
    A published watchlist version.

    Rows are inserted together with all their entries in one transaction
    and never updated afterwards, except for the is_current flag which
    moves to the newest snapshot on publish.
    """
    __tablename__ = "watchlist_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    list_date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    source_checksum: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    entries: Mapped[List["WatchlistEntryRow"]] = relationship(
        "WatchlistEntryRow",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="WatchlistEntryRow.position",
        lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint('list_date', name='uq_snapshot_list_date'),
        CheckConstraint('entry_count >= 0', name='ck_snapshot_entry_count'),
    )

    @classmethod
    def from_snapshot(cls, snapshot: WatchlistSnapshot) -> 'WatchlistSnapshotRow':
        row = cls(
            id=uuid.UUID(snapshot.snapshot_id),
            list_date=snapshot.list_date,
            name=snapshot.name,
            source_checksum=snapshot.source_checksum,
            entry_count=snapshot.entry_count,
            ingested_at=snapshot.ingested_at,
            is_current=True,
        )
        row.entries = [
            WatchlistEntryRow.from_entry(entry, position)
            for position, entry in enumerate(snapshot.entries)
        ]
        return row

    def to_snapshot(self) -> WatchlistSnapshot:
        return WatchlistSnapshot(
            snapshot_id=str(self.id),
            list_date=self.list_date,
            name=self.name,
            entries=tuple(row.to_entry() for row in self.entries),
            source_checksum=self.source_checksum,
            ingested_at=self.ingested_at,
        )

    def __repr__(self) -> str:
        return f"<WatchlistSnapshotRow(id={self.id}, list_date={self.list_date}, entries={self.entry_count})>"


class WatchlistEntryRow(Base):
    """A deduplicated watchlist entry, original and normalized forms side by side"""
    __tablename__ = "watchlist_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    snapshot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("watchlist_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_ref: Mapped[str] = mapped_column(String(32), nullable=False)
    category: Mapped[EntryCategory] = mapped_column(Enum(EntryCategory), nullable=False)

    primary_name: Mapped[str] = mapped_column(String(500), nullable=False)
    alt_names: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    street: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    normalized_primary_name: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_alt_names: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    normalized_street: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    normalized_city: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    normalized_country: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    snapshot: Mapped["WatchlistSnapshotRow"] = relationship(
        "WatchlistSnapshotRow",
        back_populates="entries"
    )

    __table_args__ = (
        UniqueConstraint('snapshot_id', 'entry_ref', name='uq_entry_snapshot_ref'),
        Index('ix_entry_normalized_name', 'normalized_primary_name'),
    )

    @classmethod
    def from_entry(cls, entry: WatchlistEntry, position: int) -> 'WatchlistEntryRow':
        return cls(
            position=position,
            entry_ref=entry.entry_id,
            category=entry.category,
            primary_name=entry.primary_name,
            alt_names=list(entry.alt_names),
            street=entry.street,
            city=entry.city,
            country=entry.country,
            remarks=entry.remarks,
            normalized_primary_name=entry.normalized_primary_name,
            normalized_alt_names=list(entry.normalized_alt_names),
            normalized_street=entry.normalized_street,
            normalized_city=entry.normalized_city,
            normalized_country=entry.normalized_country,
        )

    def to_entry(self) -> WatchlistEntry:
        return WatchlistEntry(
            entry_id=self.entry_ref,
            primary_name=self.primary_name,
            category=self.category,
            alt_names=tuple(self.alt_names or ()),
            street=self.street,
            city=self.city,
            country=self.country,
            remarks=self.remarks,
            normalized_primary_name=self.normalized_primary_name,
            normalized_alt_names=tuple(self.normalized_alt_names or ()),
            normalized_street=self.normalized_street or "",
            normalized_city=self.normalized_city or "",
            normalized_country=self.normalized_country or "",
        )

    def __repr__(self) -> str:
        return f"<WatchlistEntryRow(ref={self.entry_ref}, name='{self.primary_name}')>"


# ============================================
# SCORING TABLES
# ============================================

class ScoreRecordRow(Base):
    """
    Score of one customer for one list date.

    The (customer_id, list_date) unique constraint is what makes score
    writes idempotent and runs resumable.
    """
    __tablename__ = "score_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    list_date: Mapped[date] = mapped_column(Date, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    matched_entry_ref: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    matched_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    scored_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint('customer_id', 'list_date', name='uq_score_customer_date'),
        Index('ix_score_date_score', 'list_date', 'score'),
        CheckConstraint('score >= 0 AND score <= 100', name='ck_score_range'),
    )

    def to_record(self) -> ScoreRecord:
        return ScoreRecord(
            customer_id=self.customer_id,
            list_date=self.list_date,
            score=self.score,
            matched_entry_id=self.matched_entry_ref,
            matched_name=self.matched_name,
            scored_at=self.scored_at,
        )

    def __repr__(self) -> str:
        return f"<ScoreRecordRow(customer_id={self.customer_id}, list_date={self.list_date}, score={self.score})>"


class ScoreRunRow(Base, TimestampMixin):
    """Run bookkeeping, one row per list date"""
    __tablename__ = "score_runs"

    list_date: Mapped[date] = mapped_column(Date, primary_key=True)
    snapshot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("watchlist_snapshots.id"),
        nullable=False
    )
    state: Mapped[RunState] = mapped_column(Enum(RunState), nullable=False, index=True)
    total_customers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failed_customer_ids: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)

    def apply(self, run: ScoreRun) -> None:
        """Copy run bookkeeping onto this row"""
        self.snapshot_id = uuid.UUID(run.snapshot_id)
        self.state = run.state
        self.total_customers = run.total_customers
        self.completed_count = run.completed_count
        self.failed_count = run.failed_count
        self.started_at = run.started_at
        self.finished_at = run.finished_at
        self.failure_reason = run.failure_reason
        self.failed_customer_ids = list(run.failed_customer_ids)

    def to_run(self) -> ScoreRun:
        return ScoreRun(
            list_date=self.list_date,
            snapshot_id=str(self.snapshot_id),
            state=self.state,
            total_customers=self.total_customers,
            completed_count=self.completed_count,
            failed_count=self.failed_count,
            started_at=self.started_at,
            finished_at=self.finished_at,
            failure_reason=self.failure_reason,
            failed_customer_ids=tuple(self.failed_customer_ids or ()),
        )

    def __repr__(self) -> str:
        return f"<ScoreRunRow(list_date={self.list_date}, state='{self.state}')>"


class CustomerFailureRow(Base):
    """A customer that exhausted its retries during a run"""
    __tablename__ = "customer_failures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    list_date: Mapped[date] = mapped_column(Date, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[FailureKind] = mapped_column(Enum(FailureKind), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint('list_date', 'customer_id', name='uq_failure_date_customer'),
    )

    def to_failure(self) -> CustomerFailure:
        return CustomerFailure(
            list_date=self.list_date,
            customer_id=self.customer_id,
            kind=self.kind,
            message=self.message or "",
            attempts=self.attempts,
            recorded_at=self.recorded_at,
        )

    def __repr__(self) -> str:
        return f"<CustomerFailureRow(customer_id={self.customer_id}, kind='{self.kind}')>"
