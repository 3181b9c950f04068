"""
Tests for the SQLAlchemy-backed score store.

Runs against a file-based SQLite database so that several sessions (and
the scoring worker thread) share the same data.
"""

import uuid
from dataclasses import replace
from datetime import date, datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from config_manager import DatabaseConfig, ScoringConfig
from coordinator import BatchScoringCoordinator
from database import (
    DatabaseSessionProvider,
    DatabaseSettings,
    ScoreRecordRow,
    SqlAlchemyStore,
    create_test_provider,
)
from database.sql_store import store_operation
from ingestor import ListIngestor
from monitoring import get_store_metrics, reset_metrics
from sources import IterableCustomerSource
from store import DuplicateSnapshotError, StoreError, StoreUnavailableError, TransientStoreError
from watchlist import (
    CustomerFailure,
    CustomerIdentity,
    FailureKind,
    InsertOutcome,
    RawListRecord,
    RunState,
    ScoreRun,
)


D1 = date(2024, 3, 1)
D2 = date(2024, 3, 2)


@pytest.fixture
def provider(tmp_path):
    provider = create_test_provider(settings=DatabaseSettings(url=f"sqlite:///{tmp_path / 'scores.db'}"))
    provider.create_tables()
    yield provider
    provider.close()


@pytest.fixture
def sql_store(provider):
    return SqlAlchemyStore(provider)


class TestDatabaseSettings:
    """Tests for connection settings"""

    def test_postgres_url_from_parts(self):
        """PostgreSQL URL is built from its parts"""
        settings = DatabaseSettings(host="db", port=5433, database="scores", user="u", password="p")
        assert settings.get_url() == "postgresql+psycopg2://u:p@db:5433/scores"

    def test_explicit_url_wins(self):
        """An explicit URL overrides the parts"""
        assert DatabaseSettings(url="sqlite://").get_url() == "sqlite://"

    def test_sqlite_skips_pool_options(self):
        """SQLite gets no pool sizing options"""
        options = DatabaseSettings(url="sqlite://").engine_options()
        assert "pool_size" not in options

    def test_postgres_pool_options(self):
        """PostgreSQL gets pool sizing options"""
        options = DatabaseSettings(pool_size=7).engine_options()
        assert options["pool_size"] == 7

    def test_from_env(self, monkeypatch):
        """Settings read DATABASE_URL and DB_* variables"""
        monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
        monkeypatch.setenv("DB_POOL_SIZE", "9")
        settings = DatabaseSettings.from_env()
        assert settings.get_url() == "sqlite:///env.db"
        assert settings.pool_size == 9

    def test_from_config(self, monkeypatch):
        """Settings read the database config section"""
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = DatabaseSettings.from_config(DatabaseConfig(host="pg", name="scoring"))
        assert settings.get_url().endswith("@pg:5432/scoring")

    def test_backend(self):
        """Backend name comes from the URL"""
        assert DatabaseSettings(url="sqlite://").backend == "sqlite"
        assert DatabaseSettings().backend == "postgresql"


class TestSessionProvider:
    """Tests for connecting and transactions"""

    def test_connect_gives_up_after_attempts(self, tmp_path):
        """Connection errors propagate once attempts run out"""
        settings = DatabaseSettings(
            url=f"sqlite:///{tmp_path / 'missing' / 'scores.db'}",
            connect_attempts=1,
        )
        provider = DatabaseSessionProvider(settings=settings)

        with pytest.raises(OperationalError):
            provider.init()

    def test_session_scope_rolls_back(self, provider):
        """An exception inside session_scope rolls back"""
        with pytest.raises(RuntimeError):
            with provider.session_scope() as session:
                session.add(ScoreRecordRow(customer_id="C-1", list_date=D1, score=5))
                session.flush()
                raise RuntimeError("abort")

        with provider.session_scope() as session:
            assert session.query(ScoreRecordRow).count() == 0


class TestSnapshots:
    """Tests for snapshot persistence"""

    def test_publish_and_reload(self, provider, sql_store, caracas_snapshot):
        """Published snapshots survive a fresh store"""
        sql_store.publish_snapshot(caracas_snapshot)

        fresh = SqlAlchemyStore(provider)
        loaded = fresh.get_snapshot(caracas_snapshot.list_date)

        assert loaded.snapshot_id == caracas_snapshot.snapshot_id
        assert loaded.entries == caracas_snapshot.entries
        assert loaded.source_checksum == caracas_snapshot.source_checksum
        assert fresh.current_snapshot().snapshot_id == caracas_snapshot.snapshot_id

    def test_current_moves_to_newest_publish(self, provider, sql_store, snapshot_factory, entry_factory):
        """The newest publish becomes current"""
        first = snapshot_factory([entry_factory("Juan Perez")], list_date=D1)
        second = snapshot_factory([entry_factory("Viktor Petrov")], list_date=D2)
        sql_store.publish_snapshot(first)
        sql_store.publish_snapshot(second)

        assert sql_store.current_snapshot().snapshot_id == second.snapshot_id
        assert SqlAlchemyStore(provider).current_snapshot().snapshot_id == second.snapshot_id
        assert SqlAlchemyStore(provider).get_snapshot(D1).entries == first.entries

    def test_duplicate_list_date(self, sql_store, snapshot_factory, entry_factory):
        """A second snapshot for a date is rejected"""
        sql_store.publish_snapshot(snapshot_factory([entry_factory("Juan Perez")], list_date=D1))

        with pytest.raises(DuplicateSnapshotError):
            sql_store.publish_snapshot(snapshot_factory([entry_factory("Other")], list_date=D1))

        assert sql_store.get_snapshot(D1).entries[0].primary_name == "Juan Perez"

    def test_missing_snapshot(self, sql_store):
        """Unknown dates have no snapshot"""
        assert sql_store.get_snapshot(D1) is None
        assert sql_store.current_snapshot() is None


class TestScores:
    """Tests for score records"""

    def test_insert_if_absent(self, sql_store):
        """Only the first score per customer and date is kept"""
        assert sql_store.insert_score_if_absent("C-1", D1, 80, "abc", "Juan") == InsertOutcome.INSERTED
        assert sql_store.insert_score_if_absent("C-1", D1, 10, None) == InsertOutcome.ALREADY_EXISTS
        assert sql_store.insert_score_if_absent("C-1", D2, 10, None) == InsertOutcome.INSERTED

        record = next(sql_store.scores_for_date(D1))
        assert record.score == 80
        assert record.matched_entry_id == "abc"
        assert record.matched_name == "Juan"

    def test_page_ordering(self, sql_store):
        """Pages sort by score descending then customer id"""
        for customer_id, score in [("C-1", 10), ("C-2", 90), ("C-3", 90), ("C-4", 50)]:
            sql_store.insert_score_if_absent(customer_id, D1, score, None)

        first_page, total = sql_store.scores_page(D1, offset=0, limit=2)
        second_page, _ = sql_store.scores_page(D1, offset=2, limit=2)

        assert total == 4
        assert [r.customer_id for r in first_page] == ["C-2", "C-3"]
        assert [r.customer_id for r in second_page] == ["C-4", "C-1"]

    def test_list_dates_newest_first(self, sql_store):
        """Distinct dates come back newest first"""
        sql_store.insert_score_if_absent("C-1", D1, 10, None)
        sql_store.insert_score_if_absent("C-1", D2, 10, None)
        sql_store.insert_score_if_absent("C-2", D2, 10, None)

        assert sql_store.list_dates() == [D2, D1]

    def test_existing_customer_ids_large_batch(self, sql_store):
        """Existing ids are found across query chunks"""
        for i in range(0, 1200, 100):
            sql_store.insert_score_if_absent(f"C-{i}", D1, 1, None)

        found = sql_store.existing_customer_ids(D1, [f"C-{i}" for i in range(1200)])

        assert found == {f"C-{i}" for i in range(0, 1200, 100)}
        assert sql_store.count_scores(D1) == 12


class TestRunBookkeeping:
    """Tests for runs and customer failures"""

    def test_save_and_update_run(self, sql_store):
        """Saving a run twice updates it"""
        run = ScoreRun(
            list_date=D1,
            snapshot_id=str(uuid.uuid4()),
            state=RunState.RUNNING,
            started_at=datetime.now(timezone.utc),
        )
        sql_store.save_run(run)
        sql_store.save_run(replace(
            run,
            state=RunState.PARTIALLY_COMPLETED,
            total_customers=3,
            completed_count=2,
            failed_count=1,
            failed_customer_ids=("C-9",),
        ))

        loaded = sql_store.get_run(D1)
        assert loaded.state == RunState.PARTIALLY_COMPLETED
        assert loaded.completed_count == 2
        assert loaded.failed_customer_ids == ("C-9",)
        assert sql_store.get_run(D2) is None

    def test_failures(self, sql_store):
        """Failures are upserted, listed and cleared"""
        sql_store.record_failure(CustomerFailure(D1, "C-2", FailureKind.TIMEOUT, "slow", 1))
        sql_store.record_failure(CustomerFailure(D1, "C-1", FailureKind.TIMEOUT, "slow", 1))
        sql_store.record_failure(CustomerFailure(D1, "C-2", FailureKind.MALFORMED_IDENTITY, "bad", 3))

        failures = sql_store.failures_for_date(D1)
        assert [f.customer_id for f in failures] == ["C-1", "C-2"]
        assert failures[1].kind == FailureKind.MALFORMED_IDENTITY
        assert failures[1].attempts == 3

        sql_store.clear_failure(D1, "C-2")
        assert [f.customer_id for f in sql_store.failures_for_date(D1)] == ["C-1"]


class TestStoreErrors:
    """Tests for SQLAlchemy error translation"""

    def _failing(self, exc):
        @store_operation("test_operation")
        def operation():
            raise exc
        return operation

    def test_operational_error_is_transient(self):
        """OperationalError maps to TransientStoreError"""
        exc = OperationalError("INSERT", {}, Exception("database is locked"))
        with pytest.raises(TransientStoreError):
            self._failing(exc)()

    def test_invalidated_connection_is_unavailable(self):
        """A dropped connection maps to StoreUnavailableError"""
        exc = OperationalError("SELECT 1", {}, Exception("server closed"), connection_invalidated=True)
        with pytest.raises(StoreUnavailableError):
            self._failing(exc)()

    def test_error_hierarchy(self):
        """Store errors share one base class"""
        assert issubclass(TransientStoreError, StoreError)
        assert issubclass(StoreUnavailableError, StoreError)

    def test_operations_are_timed(self, sql_store):
        """Store calls are recorded in the store metrics"""
        reset_metrics()
        sql_store.count_scores(D1)

        stats = get_store_metrics("count_scores")
        assert stats["count"] == 1
        assert stats["errors"] == 0

    def test_ping(self, sql_store):
        """SELECT 1 succeeds on a live database"""
        assert sql_store.ping() is True
        assert sql_store.health().healthy is True


class TestEndToEnd:

    def test_ingest_and_score(self, sql_store, config):
        """Ingest, score and rerun against SQLite"""
        ListIngestor(sql_store, config).ingest([
            RawListRecord(primary_name="Juan Pérez", city="Caracas", country="VE"),
            RawListRecord(primary_name="Viktor Petrov"),
        ], list_date=D1)
        coordinator = BatchScoringCoordinator(
            sql_store, config=ScoringConfig(batch_size=2, max_workers=1, retry_backoff_seconds=0)
        )
        population = [
            CustomerIdentity(customer_id="C-1", name="Juan Perez", city="Caracas", country="VE"),
            CustomerIdentity(customer_id="C-2", name="Maria Lopez", city="Lima", country="PE"),
            CustomerIdentity(customer_id="C-3", name="Viktor Petrov"),
        ]

        handle = coordinator.run_for_date(D1, IterableCustomerSource(population))
        rerun = coordinator.run_for_date(D1, IterableCustomerSource(population))

        assert handle.state == RunState.COMPLETED
        assert rerun.reused is True
        scores = {r.customer_id: r.score for r in sql_store.scores_for_date(D1)}
        assert scores["C-1"] == 100
        assert scores["C-2"] < 10
        assert scores["C-3"] == 100
        assert sql_store.get_run(D1).state == RunState.COMPLETED
