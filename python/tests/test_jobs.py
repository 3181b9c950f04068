"""
Tests for the in-process job scheduler
"""

import threading
from datetime import date

import pytest

from config_manager import JobsConfig, ScoringConfig
from coordinator import BatchScoringCoordinator
from ingestor import IngestError, IngestErrorCode, ListIngestor
from jobs import InProcessJobScheduler, IngestionTask, JobState, Task
from sources import IterableCustomerSource, IterableListSource, ListSourceError, ListSourceProvider
from watchlist import CustomerIdentity, RawListRecord, RunState


D1 = date(2024, 3, 1)

RECORDS = [
    RawListRecord(primary_name="Juan Pérez", city="Caracas", country="VE"),
    RawListRecord(primary_name="Viktor Petrov"),
]

POPULATION = [
    CustomerIdentity(customer_id="C-1", name="Juan Perez", city="Caracas", country="VE"),
    CustomerIdentity(customer_id="C-2", name="Maria Lopez"),
]


class FlakyListSource(ListSourceProvider):
    """Unreachable for the first `failures` calls"""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def records(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ListSourceError("upstream timed out")
        return iter(RECORDS)


class BlockingTask(Task):
    def __init__(self, release):
        self.release = release

    @property
    def key(self):
        return "blocking"

    def run(self):
        self.release.wait(timeout=5)
        return "done"


@pytest.fixture
def make_scheduler(store, config):
    created = []

    def factory(list_source=None, customer_source=None, jobs_config=None):
        ingestor = ListIngestor(store, config)
        coordinator = BatchScoringCoordinator(
            store, config=ScoringConfig(batch_size=1, max_workers=1, retry_backoff_seconds=0)
        )
        scheduler = InProcessJobScheduler(
            ingestor,
            coordinator,
            list_source or IterableListSource(RECORDS),
            customer_source or IterableCustomerSource(POPULATION),
            jobs_config or JobsConfig(max_attempts=3, max_workers=2, retry_backoff_seconds=0),
        )
        created.append(scheduler)
        return scheduler

    yield factory
    for scheduler in created:
        scheduler.shutdown()


class TestJobScheduler:
    """Tests for enqueuing ingestion and scoring"""

    def test_ingestion_then_scoring(self, make_scheduler, store):
        """Queued ingestion then scoring both succeed"""
        scheduler = make_scheduler()

        ingestion = scheduler.wait(scheduler.enqueue_ingestion(D1), timeout=10)
        scoring = scheduler.wait(scheduler.enqueue_scoring(D1), timeout=10)

        assert ingestion.state == JobState.SUCCEEDED
        assert ingestion.result.list_date == D1
        assert scoring.state == JobState.SUCCEEDED
        assert scoring.result.state == RunState.COMPLETED
        assert store.count_scores(D1) == 2

    def test_enqueue_scoring_twice_is_idempotent(self, make_scheduler, store):
        """Running scoring twice writes each score once"""
        scheduler = make_scheduler()
        scheduler.wait(scheduler.enqueue_ingestion(D1), timeout=10)

        scheduler.wait(scheduler.enqueue_scoring(D1), timeout=10)
        again = scheduler.wait(scheduler.enqueue_scoring(D1), timeout=10)

        assert again.state == JobState.SUCCEEDED
        assert again.result.reused is True
        assert store.count_scores(D1) == 2

    def test_unreachable_source_is_retried(self, make_scheduler, store):
        """An unreachable list source is retried"""
        source = FlakyListSource(failures=1)
        scheduler = make_scheduler(list_source=source)

        job = scheduler.wait(scheduler.enqueue_ingestion(D1), timeout=10)

        assert job.state == JobState.SUCCEEDED
        assert job.attempts == 2
        assert store.get_snapshot(D1) is not None

    def test_retries_are_bounded(self, make_scheduler):
        """Retries stop at max_attempts"""
        source = FlakyListSource(failures=10)
        scheduler = make_scheduler(list_source=source)

        job = scheduler.wait(scheduler.enqueue_ingestion(D1), timeout=10)

        assert job.state == JobState.FAILED
        assert job.attempts == 3
        assert "upstream timed out" in job.error

    def test_permanent_error_not_retried(self, make_scheduler):
        """Permanent errors fail on the first attempt"""
        scheduler = make_scheduler(list_source=IterableListSource([]))

        job = scheduler.wait(scheduler.enqueue_ingestion(D1), timeout=10)

        assert job.state == JobState.FAILED
        assert job.attempts == 1

    def test_scoring_without_snapshot_fails_without_retry(self, make_scheduler):
        """NO_WATCHLIST is not retried"""
        scheduler = make_scheduler()

        job = scheduler.wait(scheduler.enqueue_scoring(D1), timeout=10)

        assert job.state == JobState.FAILED
        assert job.attempts == 1

    def test_active_job_is_coalesced(self, make_scheduler):
        """Enqueueing an active task returns the same job"""
        scheduler = make_scheduler()
        release = threading.Event()

        first = scheduler.submit(BlockingTask(release))
        second = scheduler.submit(BlockingTask(release))
        release.set()

        assert first == second
        assert scheduler.wait(first, timeout=10).result == "done"
        assert len(scheduler.jobs()) == 1

    def test_job_record_to_dict(self, make_scheduler):
        """Job records serialize their status"""
        scheduler = make_scheduler()
        job = scheduler.wait(scheduler.enqueue_ingestion(D1), timeout=10)

        data = scheduler.get(job.job_id).to_dict()

        assert data['key'] == "ingestion:2024-03-01"
        assert data['state'] == "succeeded"
        assert data['finished_at'] is not None


class TestTaskRetryPolicy:

    def test_ingestion_task_retry_policy(self, store, config):
        """Ingestion retries only source outages"""
        task = IngestionTask(ListIngestor(store, config), IterableListSource(RECORDS))

        assert task.key == "ingestion:latest"
        assert task.should_retry(ListSourceError("down")) is True
        assert task.should_retry(
            IngestError("empty", code=IngestErrorCode.EMPTY_SOURCE)
        ) is False
