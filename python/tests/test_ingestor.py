"""
Unit tests for watchlist ingestion into snapshots
"""

import logging
from datetime import date

import pytest

from config_manager import ConfigManager, ScoringConfig
from coordinator import BatchScoringCoordinator
from ingestor import IngestError, IngestErrorCode, ListIngestor, compute_checksum
from sources import IterableCustomerSource, ListSourceError
from watchlist import CustomerIdentity, EntryCategory, RawListRecord, RunState


D1 = date(2024, 3, 1)
D2 = date(2024, 3, 2)


def records(*names, **fields):
    return [RawListRecord(primary_name=n, **fields) for n in names]


@pytest.fixture
def ingestor(store, config):
    return ListIngestor(store, config)


class TestIngestion:
    """Tests for building and publishing snapshots"""

    def test_publishes_snapshot(self, ingestor, store):
        """A new list becomes the current snapshot"""
        snapshot = ingestor.ingest(records("Juan Pérez", "Acme Trading", "Viktor Petrov"), list_date=D1)

        assert snapshot.entry_count == 3
        assert snapshot.list_date == D1
        assert store.current_snapshot() is snapshot
        assert store.get_snapshot(D1) is snapshot

    def test_entries_carry_normalized_forms(self, ingestor):
        """Entries keep originals and normalized forms"""
        snapshot = ingestor.ingest([
            RawListRecord(primary_name="Juan Pérez", city="Caracas", country="ve", category="person")
        ], list_date=D1)

        entry = snapshot.entries[0]
        assert entry.primary_name == "Juan Pérez"
        assert entry.normalized_primary_name == "JUAN PEREZ"
        assert entry.normalized_city == "CARACAS"
        assert entry.normalized_country == "VE"
        assert entry.category == EntryCategory.INDIVIDUAL

    def test_duplicates_merged(self, ingestor):
        """Duplicate records merge their alternate names"""
        snapshot = ingestor.ingest([
            RawListRecord(primary_name="Juan Pérez", alt_names=("Juanito",), country="VE"),
            RawListRecord(primary_name="JUAN PEREZ", alt_names=("El Flaco", "Juanito"), country="VE"),
        ], list_date=D1)

        assert snapshot.entry_count == 1
        assert snapshot.entries[0].alt_names == ("Juanito", "El Flaco")
        assert ingestor.last_stats.duplicates_merged == 1

    def test_same_name_different_location_kept_apart(self, ingestor):
        """Same name in different countries stays two entries"""
        snapshot = ingestor.ingest([
            RawListRecord(primary_name="Juan Pérez", country="VE"),
            RawListRecord(primary_name="Juan Pérez", country="CO"),
        ], list_date=D1)

        assert snapshot.entry_count == 2
        assert len({e.entry_id for e in snapshot.entries}) == 2

    def test_malformed_records_skipped(self, ingestor):
        """Blank names are skipped and counted"""
        snapshot = ingestor.ingest(records("Juan Pérez", "", "   "), list_date=D1)

        assert snapshot.entry_count == 1
        assert ingestor.last_stats.malformed_records == 2
        assert ingestor.last_stats.records_read == 3

    def test_old_snapshot_untouched_by_new_one(self, ingestor, store):
        """Publishing a new date leaves the old snapshot intact"""
        first = ingestor.ingest(records("Juan Pérez"), list_date=D1)
        second = ingestor.ingest(records("Juan Pérez", "Viktor Petrov"), list_date=D2)

        assert store.current_snapshot() is second
        assert store.get_snapshot(D1).entry_count == 1
        assert store.get_snapshot(D1).snapshot_id == first.snapshot_id

    def test_unchanged_list_same_date_returns_current(self, ingestor, store):
        """Re-ingesting identical content for the same date publishes nothing"""
        first = ingestor.ingest(records("Juan Pérez", "Viktor Petrov"), list_date=D1)
        again = ingestor.ingest(records("Viktor Petrov", "Juan Pérez"), list_date=D1)

        assert again.snapshot_id == first.snapshot_id
        assert store.current_snapshot().snapshot_id == first.snapshot_id

    def test_unchanged_list_without_date_returns_current(self, ingestor, store):
        """Without a requested date an unchanged list keeps the current snapshot"""
        first = ingestor.ingest(records("Juan Pérez"), list_date=D1)
        again = ingestor.ingest(records("Juan Pérez"))

        assert again.snapshot_id == first.snapshot_id

    def test_unchanged_list_new_date_is_published(self, ingestor, store):
        """An unchanged daily list still gets a snapshot for its own date"""
        first = ingestor.ingest(records("Juan Pérez", "Viktor Petrov"), list_date=D1)
        second = ingestor.ingest(records("Viktor Petrov", "Juan Pérez"), list_date=D2)

        assert second.snapshot_id != first.snapshot_id
        assert second.source_checksum == first.source_checksum
        assert store.get_snapshot(D2).snapshot_id == second.snapshot_id
        assert store.current_snapshot().snapshot_id == second.snapshot_id
        assert store.get_snapshot(D1).snapshot_id == first.snapshot_id

    def test_unchanged_list_new_date_can_be_scored(self, ingestor, store):
        """Scoring the new date finds its snapshot"""
        ingestor.ingest(records("Juan Pérez"), list_date=D1)
        ingestor.ingest(records("Juan Pérez"), list_date=D2)

        handle = BatchScoringCoordinator(store, config=ScoringConfig(max_workers=1)).run_for_date(
            D2, IterableCustomerSource([CustomerIdentity(customer_id="C-1", name="Juan Perez")])
        )

        assert handle.state == RunState.COMPLETED
        assert next(store.scores_for_date(D2)).score == 100

    def test_default_list_date_is_today(self, ingestor):
        """List date defaults to today"""
        snapshot = ingestor.ingest(records("Juan Pérez"))

        assert isinstance(snapshot.list_date, date)
        assert snapshot.name == f"watchlist-{snapshot.list_date.isoformat()}"


class TestIngestionErrors:
    """Tests for rejected ingestions"""

    def test_empty_source(self, ingestor, store):
        """An empty source is EMPTY_SOURCE"""
        with pytest.raises(IngestError) as exc_info:
            ingestor.ingest([], list_date=D1)

        assert exc_info.value.code == IngestErrorCode.EMPTY_SOURCE
        assert store.current_snapshot() is None

    def test_empty_source_keeps_current_snapshot(self, ingestor, store):
        """A failed ingestion keeps the current snapshot"""
        current = ingestor.ingest(records("Juan Pérez"), list_date=D1)

        with pytest.raises(IngestError):
            ingestor.ingest([], list_date=D2)

        assert store.current_snapshot() is current

    def test_only_malformed_records(self, ingestor):
        """Only blank names falls below the minimum count"""
        with pytest.raises(IngestError) as exc_info:
            ingestor.ingest(records("", "  "), list_date=D1)

        assert exc_info.value.code == IngestErrorCode.BELOW_MINIMUM_ENTRY_COUNT

    def test_below_minimum_entry_count(self, store, tmp_path):
        """Too few entries is BELOW_MINIMUM_ENTRY_COUNT"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("ingestion:\n  min_entry_count: 5\n")
        ingestor = ListIngestor(store, ConfigManager(str(config_file)))

        with pytest.raises(IngestError) as exc_info:
            ingestor.ingest(records("A One", "B Two", "C Three"), list_date=D1)

        assert exc_info.value.code == IngestErrorCode.BELOW_MINIMUM_ENTRY_COUNT
        assert exc_info.value.details['entries_built'] == 3
        assert store.current_snapshot() is None

    def test_source_failure_mid_stream(self, ingestor, store):
        """A source failing mid-stream publishes nothing"""
        current = ingestor.ingest(records("Juan Pérez"), list_date=D1)

        def broken_source():
            yield RawListRecord(primary_name="Viktor Petrov")
            raise ListSourceError("connection reset")

        with pytest.raises(IngestError) as exc_info:
            ingestor.ingest(broken_source(), list_date=D2)

        assert exc_info.value.code == IngestErrorCode.SOURCE_UNREACHABLE
        assert store.current_snapshot() is current
        assert store.get_snapshot(D2) is None

    def test_list_date_conflict(self, ingestor, store):
        """Different content for a published date is a conflict"""
        ingestor.ingest(records("Juan Pérez"), list_date=D1)
        ingestor.ingest(records("Viktor Petrov"), list_date=D2)

        with pytest.raises(IngestError) as exc_info:
            ingestor.ingest(records("Acme Trading"), list_date=D1)

        assert exc_info.value.code == IngestErrorCode.LIST_DATE_CONFLICT
        assert store.get_snapshot(D1).entries[0].primary_name == "Juan Pérez"

    def test_variance_warning(self, ingestor, caplog):
        """Large entry count swings are logged"""
        ingestor.ingest(records("A One", "B Two", "C Three", "D Four"), list_date=D1)

        with caplog.at_level(logging.WARNING, logger="ingestor"):
            ingestor.ingest(records("A One"), list_date=D2)

        assert any("Entry count changed" in r.message for r in caplog.records)


class TestChecksum:

    def test_order_independent(self, ingestor, store):
        """Checksum ignores entry order"""
        a = ingestor.ingest(records("Juan Pérez", "Viktor Petrov"), list_date=D1)
        assert compute_checksum(reversed(a.entries)) == a.source_checksum

    def test_content_sensitive(self, entry_factory):
        """Checksum changes with alternate names"""
        assert compute_checksum([entry_factory("Juan Perez")]) != \
            compute_checksum([entry_factory("Juan Perez", alt_names=["Juanito"])])
