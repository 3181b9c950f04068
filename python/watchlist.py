"""
Value types shared by ingestion, matching and batch scoring

Everything in this module is an immutable value: snapshots are never
mutated once built, and ORM rows are converted to these types at the
store boundary so no session state leaks into scoring workers.
"""

import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple


class EntryCategory(str, Enum):
    """Kind of sanctioned party"""
    INDIVIDUAL = "individual"
    ENTITY = "entity"
    VESSEL = "vessel"
    AIRCRAFT = "aircraft"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'EntryCategory':
        """Map free-form source categories onto the known set"""
        if not value:
            return cls.OTHER
        key = value.strip().lower()
        aliases = {
            'person': cls.INDIVIDUAL,
            'organization': cls.ENTITY,
            'organisation': cls.ENTITY,
            'company': cls.ENTITY,
        }
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            return cls.OTHER


class RunState(str, Enum):
    """Lifecycle of a score run"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_COMPLETED = "partially_completed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.PARTIALLY_COMPLETED)


class FailureKind(str, Enum):
    """Per-customer screening failure kinds"""
    MALFORMED_IDENTITY = "malformed_identity"
    TIMEOUT = "timeout"
    TRANSIENT_STORE_ERROR = "transient_store_error"


class InsertOutcome(str, Enum):
    """Result of an insert-if-absent score write"""
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class RawListRecord:
    """One decoded record as delivered by a list source provider"""
    primary_name: str
    alt_names: Tuple[str, ...] = ()
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    category: Optional[str] = None
    remarks: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RawListRecord':
        alt_names = data.get('alt_names') or data.get('altNames') or ()
        if isinstance(alt_names, str):
            alt_names = (alt_names,)
        return cls(
            primary_name=data.get('primary_name') or data.get('primaryName') or '',
            alt_names=tuple(alt_names),
            address=data.get('address'),
            city=data.get('city'),
            country=data.get('country'),
            category=data.get('category'),
            remarks=data.get('remarks'),
        )


@dataclass(frozen=True)
class WatchlistEntry:
    """A deduplicated sanctioned party with display and matching forms"""
    entry_id: str
    primary_name: str
    category: EntryCategory
    alt_names: Tuple[str, ...] = ()
    street: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    remarks: Optional[str] = None
    normalized_primary_name: str = ""
    normalized_alt_names: Tuple[str, ...] = ()
    normalized_street: str = ""
    normalized_city: str = ""
    normalized_country: str = ""

    def iter_normalized_names(self) -> Iterator[str]:
        """Primary name first, then alternate names in source order"""
        if self.normalized_primary_name:
            yield self.normalized_primary_name
        for name in self.normalized_alt_names:
            if name:
                yield name

    @property
    def has_location_data(self) -> bool:
        return bool(self.normalized_city or self.normalized_country or self.normalized_street)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': self.entry_id,
            'primary_name': self.primary_name,
            'alt_names': list(self.alt_names),
            'category': self.category.value,
            'street': self.street,
            'city': self.city,
            'country': self.country,
            'remarks': self.remarks,
        }


@dataclass(frozen=True)
class WatchlistSnapshot:
    """Immutable, dated collection of watchlist entries"""
    snapshot_id: str
    list_date: date
    name: str
    entries: Tuple[WatchlistEntry, ...]
    source_checksum: str
    ingested_at: datetime

    @property
    def entry_count(self) -> int:
        return len(self.entries)

    def get_entry(self, entry_id: str) -> Optional[WatchlistEntry]:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def to_summary(self) -> Dict[str, Any]:
        return {
            'snapshot_id': self.snapshot_id,
            'list_date': self.list_date.isoformat(),
            'name': self.name,
            'entry_count': self.entry_count,
            'source_checksum': self.source_checksum,
            'ingested_at': self.ingested_at.isoformat(),
        }


@dataclass(frozen=True)
class CustomerIdentity:
    """Read-only projection of a customer from the system of record"""
    customer_id: str
    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class ScoreRecord:
    """Score of one customer against one list version"""
    customer_id: str
    list_date: date
    score: int
    matched_entry_id: Optional[str] = None
    matched_name: Optional[str] = None
    scored_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'customer_id': self.customer_id,
            'list_date': self.list_date.isoformat(),
            'score': self.score,
            'matched_entry_id': self.matched_entry_id,
            'matched_name': self.matched_name,
            'scored_at': self.scored_at.isoformat() if self.scored_at else None,
        }


@dataclass(frozen=True)
class CustomerFailure:
    """A customer that could not be scored after all retries"""
    list_date: date
    customer_id: str
    kind: FailureKind
    message: str = ""
    attempts: int = 0
    recorded_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScoreRun:
    """Bookkeeping for scoring one list date"""
    list_date: date
    snapshot_id: str
    state: RunState = RunState.PENDING
    total_customers: int = 0
    completed_count: int = 0
    failed_count: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failed_customer_ids: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def progress(self) -> float:
        """Fraction of customers accounted for (0.0 - 1.0)"""
        if self.total_customers <= 0:
            return 0.0
        done = self.completed_count + self.failed_count
        return min(1.0, done / self.total_customers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'list_date': self.list_date.isoformat(),
            'snapshot_id': self.snapshot_id,
            'state': self.state.value,
            'total_customers': self.total_customers,
            'completed_count': self.completed_count,
            'failed_count': self.failed_count,
            'progress': round(self.progress, 4),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'failure_reason': self.failure_reason,
            'failed_customer_ids': list(self.failed_customer_ids),
        }


class CurrentSnapshotRegistry:
    """
    Process-wide pointer to the current watchlist snapshot.

    Starts empty, is swapped only by a store's atomic publish, and is read
    by scoring runs at start. A run keeps the snapshot object it read, so a
    later swap never changes the data an in-flight run compares against.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot: Optional[WatchlistSnapshot] = None

    def get(self) -> Optional[WatchlistSnapshot]:
        with self._lock:
            return self._snapshot

    def swap(self, snapshot: WatchlistSnapshot) -> Optional[WatchlistSnapshot]:
        """Install a new current snapshot, returning the previous one"""
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
            return previous

    def reset(self) -> None:
        with self._lock:
            self._snapshot = None
