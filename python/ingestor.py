"""
Watchlist Ingestion

Consumes decoded records from a list source provider, normalizes and
deduplicates them, and publishes the result as a new immutable
WatchlistSnapshot. The snapshot is assembled completely before the store
publishes it in one atomic step; a failed ingestion never leaves a
partially built snapshot visible.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from config_manager import ConfigManager, get_config
from monitoring import record_ingestion
from normalization import normalize_text, sanitize_for_logging
from sources import ListSourceError
from store import DuplicateSnapshotError, ScoreStore
from watchlist import EntryCategory, RawListRecord, WatchlistEntry, WatchlistSnapshot

logger = logging.getLogger(__name__)


class IngestErrorCode(str, Enum):
    """Reasons an ingestion is rejected"""
    EMPTY_SOURCE = "EMPTY_SOURCE"
    SOURCE_UNREACHABLE = "SOURCE_UNREACHABLE"
    BELOW_MINIMUM_ENTRY_COUNT = "BELOW_MINIMUM_ENTRY_COUNT"
    LIST_DATE_CONFLICT = "LIST_DATE_CONFLICT"


class IngestError(Exception):
    """Raised when ingestion cannot produce a publishable snapshot

    Attributes:
        code: IngestErrorCode for programmatic handling
        details: Extra context (counts, list date)
    """
    def __init__(self, message: str, code: IngestErrorCode, details: Optional[Dict] = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


@dataclass
class IngestStats:
    """Counters collected while building a snapshot"""
    records_read: int = 0
    malformed_records: int = 0
    duplicates_merged: int = 0
    entries_built: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'records_read': self.records_read,
            'malformed_records': self.malformed_records,
            'duplicates_merged': self.duplicates_merged,
            'entries_built': self.entries_built,
        }


DedupKey = Tuple[str, str, str, str, str]


@dataclass
class _EntryBuilder:
    """Mutable accumulator for one dedup key, frozen into a WatchlistEntry"""
    key: DedupKey
    primary_name: str
    category: EntryCategory
    street: Optional[str]
    city: Optional[str]
    country: Optional[str]
    alt_names: List[str] = field(default_factory=list)
    normalized_alt_names: List[str] = field(default_factory=list)
    remarks: List[str] = field(default_factory=list)

    def add_alt_name(self, name: Optional[str]) -> None:
        normalized = normalize_text(name)
        if not normalized or normalized == self.key[0]:
            return
        if normalized in self.normalized_alt_names:
            return
        self.alt_names.append(name.strip())
        self.normalized_alt_names.append(normalized)

    def add_remarks(self, remarks: Optional[str]) -> None:
        text = (remarks or '').strip()
        if text and text not in self.remarks:
            self.remarks.append(text)

    def build(self) -> WatchlistEntry:
        normalized_name, _, street, city, country = self.key
        return WatchlistEntry(
            entry_id=entry_id_for(self.key),
            primary_name=self.primary_name,
            category=self.category,
            alt_names=tuple(self.alt_names),
            street=self.street,
            city=self.city,
            country=self.country,
            remarks='; '.join(self.remarks) or None,
            normalized_primary_name=normalized_name,
            normalized_alt_names=tuple(self.normalized_alt_names),
            normalized_street=street,
            normalized_city=city,
            normalized_country=country,
        )


def entry_id_for(key: DedupKey) -> str:
    """Stable entry reference derived from the dedup key"""
    return hashlib.sha1('|'.join(key).encode('utf-8')).hexdigest()[:16]


def compute_checksum(entries: Iterable[WatchlistEntry]) -> str:
    """SHA-256 over the canonical form of a snapshot's entries

    Independent of source record order, so re-ingesting the same list
    yields the same checksum.
    """
    sha256 = hashlib.sha256()
    for entry in sorted(entries, key=lambda e: e.entry_id):
        line = '\x1f'.join([
            entry.entry_id,
            entry.primary_name,
            ';'.join(entry.normalized_alt_names),
            entry.remarks or '',
        ])
        sha256.update(line.encode('utf-8'))
        sha256.update(b'\n')
    return sha256.hexdigest()


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or '').strip()
    return value or None


class ListIngestor:
    """Builds and publishes watchlist snapshots"""

    def __init__(self, store: ScoreStore, config: Optional[ConfigManager] = None):
        """Initialize ingestor

        Args:
            store: Store the snapshot is published to
            config: Configuration manager instance
        """
        self.store = store
        self.config = config or get_config()
        self.last_stats: Optional[IngestStats] = None

    def ingest(
        self,
        raw_records: Iterable[RawListRecord],
        list_date: Optional[date] = None,
        name: Optional[str] = None
    ) -> WatchlistSnapshot:
        """Normalize, deduplicate and atomically publish a new snapshot

        Args:
            raw_records: Lazy sequence of decoded list records
            list_date: Version date of the list (defaults to today, UTC)
            name: Display name of the snapshot

        Returns:
            The published snapshot, or the existing one when the content is
            unchanged and no other list date was requested

        Raises:
            IngestError: If the source is empty, unreachable, too small,
                or conflicts with an existing snapshot for the list date
        """
        requested_date = list_date
        list_date = list_date or datetime.now(timezone.utc).date()
        name = name or f"watchlist-{list_date.isoformat()}"

        try:
            entries, stats = self._build_entries(raw_records)
        except IngestError as e:
            record_ingestion(e.code.value)
            raise
        self.last_stats = stats

        if stats.records_read == 0:
            record_ingestion(IngestErrorCode.EMPTY_SOURCE.value)
            raise IngestError(
                "List source delivered no records",
                code=IngestErrorCode.EMPTY_SOURCE,
                details=stats.to_dict()
            )

        minimum = self.config.ingestion.min_entry_count
        if len(entries) < minimum:
            record_ingestion(IngestErrorCode.BELOW_MINIMUM_ENTRY_COUNT.value)
            raise IngestError(
                f"Only {len(entries)} entries built, minimum is {minimum}",
                code=IngestErrorCode.BELOW_MINIMUM_ENTRY_COUNT,
                details=stats.to_dict()
            )

        checksum = compute_checksum(entries)

        current = self.store.current_snapshot()
        same_date = requested_date is None or (current is not None and current.list_date == requested_date)
        if current is not None and current.source_checksum == checksum and same_date:
            logger.info(
                f"Watchlist unchanged (checksum {checksum[:12]}), "
                f"keeping snapshot {current.snapshot_id}"
            )
            record_ingestion('unchanged')
            return current

        existing = self.store.get_snapshot(list_date)
        if existing is not None:
            if existing.source_checksum == checksum:
                record_ingestion('unchanged')
                return existing
            record_ingestion(IngestErrorCode.LIST_DATE_CONFLICT.value)
            raise IngestError(
                f"A different snapshot is already published for {list_date.isoformat()}",
                code=IngestErrorCode.LIST_DATE_CONFLICT,
                details={'list_date': list_date.isoformat(), 'existing_checksum': existing.source_checksum}
            )

        if current is not None:
            self._check_variance(current.entry_count, len(entries))

        snapshot = WatchlistSnapshot(
            snapshot_id=str(uuid.uuid4()),
            list_date=list_date,
            name=name,
            entries=tuple(entries),
            source_checksum=checksum,
            ingested_at=datetime.now(timezone.utc),
        )

        try:
            self.store.publish_snapshot(snapshot)
        except DuplicateSnapshotError as e:
            record_ingestion(IngestErrorCode.LIST_DATE_CONFLICT.value)
            raise IngestError(
                str(e),
                code=IngestErrorCode.LIST_DATE_CONFLICT,
                details={'list_date': list_date.isoformat()}
            ) from e

        record_ingestion('published')
        logger.info(
            f"✓ Ingested {stats.records_read} records into {len(entries)} entries "
            f"({stats.duplicates_merged} merged, {stats.malformed_records} malformed)"
        )
        return snapshot

    def _build_entries(self, raw_records: Iterable[RawListRecord]) -> Tuple[List[WatchlistEntry], IngestStats]:
        """Consume the source and fold records into deduplicated entries"""
        stats = IngestStats()
        builders: Dict[DedupKey, _EntryBuilder] = {}

        iterator = iter(raw_records)
        while True:
            try:
                record = next(iterator)
            except StopIteration:
                break
            except (ListSourceError, OSError) as e:
                raise IngestError(
                    f"List source failed after {stats.records_read} records: {e}",
                    code=IngestErrorCode.SOURCE_UNREACHABLE,
                    details=stats.to_dict()
                ) from e

            stats.records_read += 1
            normalized_name = normalize_text(record.primary_name)
            if not normalized_name:
                stats.malformed_records += 1
                logger.warning(f"Skipping record #{stats.records_read} without a primary name")
                continue

            category = EntryCategory.parse(record.category)
            key: DedupKey = (
                normalized_name,
                category.value,
                normalize_text(record.address),
                normalize_text(record.city),
                normalize_text(record.country),
            )

            builder = builders.get(key)
            if builder is None:
                builder = _EntryBuilder(
                    key=key,
                    primary_name=record.primary_name.strip(),
                    category=category,
                    street=_clean(record.address),
                    city=_clean(record.city),
                    country=_clean(record.country),
                )
                builders[key] = builder
            else:
                stats.duplicates_merged += 1
                logger.debug(f"Merging duplicate record for {sanitize_for_logging(record.primary_name)}")

            for alt_name in record.alt_names or ():
                builder.add_alt_name(alt_name)
            builder.add_remarks(record.remarks)

        entries = [b.build() for b in builders.values()]
        stats.entries_built = len(entries)
        return entries, stats

    def _check_variance(self, previous_count: int, new_count: int) -> None:
        """Warn when the list size swings more than the configured fraction"""
        if previous_count <= 0:
            return
        variance = abs(new_count - previous_count) / previous_count
        threshold = self.config.ingestion.entry_count_variance_threshold
        if variance > threshold:
            logger.warning(
                f"⚠ Entry count changed by {variance:.0%} "
                f"({previous_count} → {new_count}), threshold {threshold:.0%}"
            )
