"""
Job scheduling for ingestion and scoring

Ingestion and scoring are both resumable, idempotent units of work
(Task). A JobScheduler guarantees every enqueued task runs at least once;
re-running a task is always safe because ingestion skips unchanged lists
and scoring skips customers that already have a score for the date.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config_manager import JobsConfig
from coordinator import (
    BatchScoringCoordinator,
    CancellationToken,
    CoordinatorError,
    CoordinatorErrorCode,
)
from ingestor import IngestError, IngestErrorCode, ListIngestor
from sources import CustomerSource, ListSourceProvider

logger = logging.getLogger(__name__)


class Task(ABC):
    """A resumable, idempotent unit of work"""

    @property
    @abstractmethod
    def key(self) -> str:
        """Identity used to coalesce duplicate enqueues"""

    @abstractmethod
    def run(self) -> Any:
        """Execute the task; safe to call more than once"""

    def should_retry(self, exc: BaseException) -> bool:
        """Whether a failed attempt is worth repeating"""
        return True


class IngestionTask(Task):
    """Pull records from the list source and publish a snapshot"""

    def __init__(
        self,
        ingestor: ListIngestor,
        source: ListSourceProvider,
        list_date: Optional[date] = None,
        name: Optional[str] = None
    ):
        self.ingestor = ingestor
        self.source = source
        self.list_date = list_date
        self.name = name

    @property
    def key(self) -> str:
        suffix = self.list_date.isoformat() if self.list_date else "latest"
        return f"ingestion:{suffix}"

    def run(self):
        return self.ingestor.ingest(self.source.records(), list_date=self.list_date, name=self.name)

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, IngestError):
            return exc.code == IngestErrorCode.SOURCE_UNREACHABLE
        return True


class ScoringTask(Task):
    """Score the customer population against the snapshot of a list date"""

    def __init__(
        self,
        coordinator: BatchScoringCoordinator,
        list_date: date,
        customers: CustomerSource,
        cancel_token: Optional[CancellationToken] = None
    ):
        self.coordinator = coordinator
        self.list_date = list_date
        self.customers = customers
        self.cancel_token = cancel_token or CancellationToken()

    @property
    def key(self) -> str:
        return f"scoring:{self.list_date.isoformat()}"

    def run(self):
        return self.coordinator.run_for_date(self.list_date, self.customers, self.cancel_token)

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, CoordinatorError):
            return exc.code == CoordinatorErrorCode.STORE_UNAVAILABLE
        return True


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobRecord:
    """Scheduler-side view of one enqueued task"""
    job_id: str
    key: str
    state: JobState = JobState.QUEUED
    attempts: int = 0
    result: Any = None
    error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'key': self.key,
            'state': self.state.value,
            'attempts': self.attempts,
            'error': self.error,
            'enqueued_at': self.enqueued_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class JobScheduler(ABC):
    """Accepts ingestion and scoring work with at-least-once execution"""

    @abstractmethod
    def enqueue_ingestion(self, list_date: Optional[date] = None) -> str:
        """Queue an ingestion; returns a job id"""

    @abstractmethod
    def enqueue_scoring(self, list_date: date) -> str:
        """Queue a score run for a list date; returns a job id"""


class InProcessJobScheduler(JobScheduler):
    """
    Runs tasks on a small thread pool inside the current process.

    A task that raises is re-run (up to ``jobs.max_attempts`` attempts)
    unless it reports the error as permanent. Enqueuing a task whose key is
    already queued or running returns the existing job instead of
    starting a second copy.
    """

    def __init__(
        self,
        ingestor: ListIngestor,
        coordinator: BatchScoringCoordinator,
        list_source: ListSourceProvider,
        customer_source: CustomerSource,
        config: Optional[JobsConfig] = None
    ):
        self.ingestor = ingestor
        self.coordinator = coordinator
        self.list_source = list_source
        self.customer_source = customer_source
        self.config = config or JobsConfig()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="jobs"
        )
        self._lock = threading.Lock()
        self._jobs: Dict[str, JobRecord] = {}
        self._futures: Dict[str, Future] = {}
        self._active_by_key: Dict[str, str] = {}

    def enqueue_ingestion(self, list_date: Optional[date] = None) -> str:
        return self.submit(IngestionTask(self.ingestor, self.list_source, list_date=list_date))

    def enqueue_scoring(self, list_date: date) -> str:
        return self.submit(ScoringTask(self.coordinator, list_date, self.customer_source))

    def submit(self, task: Task) -> str:
        """Queue an arbitrary task, coalescing with an active one of the same key"""
        with self._lock:
            active_id = self._active_by_key.get(task.key)
            if active_id is not None:
                logger.info(f"Job {task.key} already active as {active_id}")
                return active_id

            job = JobRecord(job_id=str(uuid.uuid4()), key=task.key)
            self._jobs[job.job_id] = job
            self._active_by_key[task.key] = job.job_id
            self._futures[job.job_id] = self._executor.submit(self._run, job, task)

        logger.info(f"Enqueued job {job.job_id} ({task.key})")
        return job.job_id

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> List[JobRecord]:
        with self._lock:
            return list(self._jobs.values())

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobRecord:
        """Block until the job finishes (successfully or not)"""
        future = self._futures[job_id]
        future.result(timeout=timeout)
        return self._jobs[job_id]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> 'InProcessJobScheduler':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown(wait=True)

    def _run(self, job: JobRecord, task: Task) -> None:
        retryer = Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.retry_backoff_seconds, max=60),
            retry=retry_if_exception(task.should_retry),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        def attempt():
            job.attempts += 1
            job.state = JobState.RUNNING
            return task.run()

        try:
            job.result = retryer(attempt)
            job.state = JobState.SUCCEEDED
            logger.info(f"✓ Job {job.job_id} ({job.key}) succeeded after {job.attempts} attempt(s)")
        except Exception as e:
            job.state = JobState.FAILED
            job.error = str(e)
            logger.error(f"✗ Job {job.job_id} ({job.key}) failed after {job.attempts} attempt(s): {e}")
        finally:
            job.finished_at = datetime.now(timezone.utc)
            with self._lock:
                if self._active_by_key.get(job.key) == job.job_id:
                    del self._active_by_key[job.key]
