"""
Batch Scoring Coordinator

Runs one ScoreRun for one pinned watchlist snapshot: the customer
population is consumed in fixed-size batches, batches are screened
concurrently on a bounded thread pool, and every result is written with
an insert-if-absent on (customer_id, list_date). That uniqueness key is
the only progress marker, so an interrupted or cancelled run resumes by
skipping customers that already have a score for the date.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config_manager import ScoringConfig
from monitoring import (
    observe_batch,
    record_customer_failure,
    record_run_finished,
    record_score_write,
    runs_in_progress,
)
from normalization import sanitize_for_logging
from screening_engine import ScreeningEngine, ScreeningTimeout
from sources import CustomerSource
from store import ScoreStore, StoreError, StoreUnavailableError, TransientStoreError
from watchlist import (
    CustomerFailure,
    CustomerIdentity,
    FailureKind,
    InsertOutcome,
    RunState,
    ScoreRun,
    WatchlistSnapshot,
)

logger = logging.getLogger(__name__)

MISSING_CUSTOMER_ID = "<missing>"


class CoordinatorErrorCode(str, Enum):
    """Reasons a score run cannot start or had to stop"""
    NO_WATCHLIST = "NO_WATCHLIST"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class CoordinatorError(Exception):
    """Raised when a score run cannot start, or on fatal store loss

    Attributes:
        code: CoordinatorErrorCode for programmatic handling
        run: Run bookkeeping at the time of failure, if one was started
    """
    def __init__(self, message: str, code: CoordinatorErrorCode, run: Optional[ScoreRun] = None):
        self.code = code
        self.run = run
        super().__init__(message)


class ScreeningFailure(Exception):
    """A single customer could not be screened or persisted

    Attributes:
        kind: FailureKind
        retryable: False when another attempt cannot change the outcome
    """
    def __init__(self, message: str, kind: FailureKind, retryable: bool = True):
        self.kind = kind
        self.retryable = retryable
        super().__init__(message)


class CancellationToken:
    """Cooperative cancellation flag checked between batches"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ScoreRunHandle:
    """Result of start_run: the run bookkeeping as it ended"""
    run: ScoreRun
    reused: bool = False

    @property
    def list_date(self) -> date:
        return self.run.list_date

    @property
    def state(self) -> RunState:
        return self.run.state

    @property
    def failed_customer_ids(self) -> Tuple[str, ...]:
        return self.run.failed_customer_ids


class _RunProgress:
    """Counters shared by the batch workers of one run"""

    def __init__(self, store_failure_threshold: int):
        self._lock = threading.Lock()
        self._abort = threading.Event()
        self.store_failure_threshold = store_failure_threshold
        self.total = 0
        self.completed = 0
        self.inserted = 0
        self.already_scored = 0
        self.failed_ids: Set[str] = set()
        self.fatal: Optional[BaseException] = None
        self._consecutive_store_failures = 0

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self, exc: BaseException) -> None:
        with self._lock:
            if self.fatal is None:
                self.fatal = exc
        self._abort.set()

    def mark_skipped(self) -> None:
        with self._lock:
            self.completed += 1
            self.already_scored += 1

    def mark_scored(self, customer_id: str, outcome: InsertOutcome) -> None:
        with self._lock:
            self.completed += 1
            if outcome == InsertOutcome.INSERTED:
                self.inserted += 1
            else:
                self.already_scored += 1
            self.failed_ids.discard(customer_id)
            self._consecutive_store_failures = 0

    def mark_failed(self, customer_id: str, kind: FailureKind) -> bool:
        """Record a failed customer; returns True when the store looks lost"""
        with self._lock:
            self.failed_ids.add(customer_id)
            if kind == FailureKind.TRANSIENT_STORE_ERROR:
                self._consecutive_store_failures += 1
            else:
                self._consecutive_store_failures = 0
            return self._consecutive_store_failures >= self.store_failure_threshold


class BatchScoringCoordinator:
    """Drives score runs against a pinned snapshot"""

    def __init__(
        self,
        store: ScoreStore,
        engine: Optional[ScreeningEngine] = None,
        config: Optional[ScoringConfig] = None
    ):
        """Initialize coordinator

        Args:
            store: Score/snapshot store
            engine: Screening engine shared by all workers
            config: Batch scoring settings
        """
        self.store = store
        self.engine = engine or ScreeningEngine()
        self.config = config or ScoringConfig()
        self._backoff = wait_exponential(
            multiplier=self.config.retry_backoff_seconds,
            max=self.config.retry_backoff_max_seconds
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_for_date(
        self,
        list_date: date,
        customer_source: CustomerSource,
        cancel_token: Optional[CancellationToken] = None
    ) -> ScoreRunHandle:
        """Look up the published snapshot for a list date and score it"""
        try:
            snapshot = self.store.get_snapshot(list_date)
        except StoreError as e:
            raise CoordinatorError(
                f"Store unavailable while loading snapshot: {e}",
                code=CoordinatorErrorCode.STORE_UNAVAILABLE
            ) from e
        return self.start_run(snapshot, customer_source, cancel_token)

    def start_run(
        self,
        snapshot: Optional[WatchlistSnapshot],
        customer_source: CustomerSource,
        cancel_token: Optional[CancellationToken] = None
    ) -> ScoreRunHandle:
        """Score every customer against the snapshot

        Args:
            snapshot: Published snapshot to pin for the whole run
            customer_source: Restartable customer population
            cancel_token: Checked between batches

        Returns:
            ScoreRunHandle with the final run bookkeeping

        Raises:
            CoordinatorError: NO_WATCHLIST when no published snapshot is given,
                STORE_UNAVAILABLE when the store is unreachable or is lost mid-run
        """
        self._check_preconditions(snapshot)
        list_date = snapshot.list_date

        try:
            existing = self.store.get_run(list_date)
            if existing is not None and existing.state == RunState.COMPLETED:
                logger.info(f"Score run for {list_date.isoformat()} already completed, nothing to do")
                return ScoreRunHandle(run=existing, reused=True)

            if existing is not None:
                logger.info(
                    f"Resuming score run for {list_date.isoformat()} "
                    f"(previous state: {existing.state.value})"
                )

            run = ScoreRun(
                list_date=list_date,
                snapshot_id=snapshot.snapshot_id,
                state=RunState.RUNNING,
                started_at=datetime.now(timezone.utc),
            )
            self._save_run(run)
            previous_failures = {f.customer_id for f in self.store.failures_for_date(list_date)}
        except StoreError as e:
            raise CoordinatorError(
                f"Store unavailable while preparing run: {e}",
                code=CoordinatorErrorCode.STORE_UNAVAILABLE
            ) from e

        runs_in_progress.inc()
        try:
            return self._execute(
                run, snapshot, customer_source,
                cancel_token or CancellationToken(), previous_failures
            )
        finally:
            runs_in_progress.dec()

    # ------------------------------------------------------------------
    # Run execution
    # ------------------------------------------------------------------

    def _check_preconditions(self, snapshot: Optional[WatchlistSnapshot]) -> None:
        if snapshot is None:
            raise CoordinatorError(
                "No watchlist has been ingested yet",
                code=CoordinatorErrorCode.NO_WATCHLIST
            )

        try:
            healthy = self.store.ping()
            published = self.store.get_snapshot(snapshot.list_date) if healthy else None
        except StoreError as e:
            raise CoordinatorError(
                f"Store unavailable: {e}",
                code=CoordinatorErrorCode.STORE_UNAVAILABLE
            ) from e

        if not healthy:
            raise CoordinatorError(
                "Store did not answer the health check",
                code=CoordinatorErrorCode.STORE_UNAVAILABLE
            )
        if published is None or published.snapshot_id != snapshot.snapshot_id:
            raise CoordinatorError(
                f"Snapshot for {snapshot.list_date.isoformat()} has not been published",
                code=CoordinatorErrorCode.NO_WATCHLIST
            )

    def _execute(
        self,
        run: ScoreRun,
        snapshot: WatchlistSnapshot,
        customer_source: CustomerSource,
        cancel_token: CancellationToken,
        previous_failures: Set[str]
    ) -> ScoreRunHandle:
        workers = self.config.worker_count
        max_in_flight = workers * 2
        progress = _RunProgress(self.config.store_failure_threshold)
        cancelled = False

        logger.info(
            f"Starting score run for {run.list_date.isoformat()} against snapshot "
            f"{snapshot.snapshot_id} ({snapshot.entry_count} entries, {workers} workers)"
        )

        in_flight: Set[Future] = set()
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scoring") as executor:
            try:
                for batch in customer_source.batches(self.config.batch_size):
                    if cancel_token.cancelled:
                        cancelled = True
                        break
                    if progress.aborted:
                        break
                    progress.total += len(batch)
                    in_flight.add(executor.submit(
                        self._process_batch, batch, snapshot, progress, previous_failures
                    ))
                    if len(in_flight) >= max_in_flight:
                        done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                        run = self._collect(done, run, progress)
            except Exception as e:
                logger.error(f"Customer source failed during run {run.list_date.isoformat()}: {e}")
                progress.abort(e)
                wait(in_flight)
                self._finish(run, progress, RunState.FAILED, "customer_source_error")
                raise

            if in_flight:
                done, _ = wait(in_flight)
                run = self._collect(done, run, progress)

        if progress.fatal is not None:
            final = self._finish(run, progress, RunState.FAILED, "store_unavailable")
            raise CoordinatorError(
                f"Store became unavailable during run for {run.list_date.isoformat()}: {progress.fatal}",
                code=CoordinatorErrorCode.STORE_UNAVAILABLE,
                run=final
            ) from progress.fatal

        if cancelled:
            logger.warning(f"⚠ Score run for {run.list_date.isoformat()} cancelled")
            return ScoreRunHandle(run=self._finish(run, progress, RunState.FAILED, "cancelled"))

        state = RunState.PARTIALLY_COMPLETED if progress.failed_ids else RunState.COMPLETED
        final = self._finish(run, progress, state, None)
        if state == RunState.COMPLETED:
            logger.info(
                f"✓ Score run for {run.list_date.isoformat()} completed: "
                f"{progress.inserted} scored, {progress.already_scored} already scored"
            )
        else:
            logger.warning(
                f"⚠ Score run for {run.list_date.isoformat()} partially completed: "
                f"{len(progress.failed_ids)} customers failed"
            )
        return ScoreRunHandle(run=final)

    def _collect(self, done: Set[Future], run: ScoreRun, progress: _RunProgress) -> ScoreRun:
        """Surface worker exceptions and checkpoint counters after batches finish"""
        for future in done:
            exc = future.exception()
            if exc is not None:
                logger.error(f"Batch aborted: {exc}")
                progress.abort(exc)

        run = replace(
            run,
            total_customers=progress.total,
            completed_count=progress.completed,
            failed_count=len(progress.failed_ids),
        )
        if not progress.aborted:
            try:
                self._save_run(run)
            except StoreError as e:
                progress.abort(e)
        return run

    def _finish(
        self,
        run: ScoreRun,
        progress: _RunProgress,
        state: RunState,
        reason: Optional[str]
    ) -> ScoreRun:
        final = replace(
            run,
            state=state,
            total_customers=progress.total,
            completed_count=progress.completed,
            failed_count=len(progress.failed_ids),
            finished_at=datetime.now(timezone.utc),
            failure_reason=reason,
            failed_customer_ids=tuple(sorted(progress.failed_ids)),
        )
        try:
            self._save_run(final)
        except StoreError as e:
            logger.error(f"Could not save final state of run {run.list_date.isoformat()}: {e}")
        record_run_finished(state.value)
        return final

    # ------------------------------------------------------------------
    # Batch and customer processing (worker threads)
    # ------------------------------------------------------------------

    def _process_batch(
        self,
        batch: List[CustomerIdentity],
        snapshot: WatchlistSnapshot,
        progress: _RunProgress,
        previous_failures: Set[str]
    ) -> None:
        started = time.perf_counter()
        list_date = snapshot.list_date
        ids = [c.customer_id for c in batch if c.customer_id]

        try:
            already = self._with_store_retry(self.store.existing_customer_ids, list_date, ids)
        except TransientStoreError as e:
            raise StoreUnavailableError(f"Cannot read existing scores: {e}") from e

        for customer in batch:
            if progress.aborted:
                return
            if customer.customer_id and customer.customer_id in already:
                progress.mark_skipped()
                continue
            self._score_customer(customer, snapshot, progress, previous_failures)

        observe_batch(time.perf_counter() - started)

    def _score_customer(
        self,
        customer: CustomerIdentity,
        snapshot: WatchlistSnapshot,
        progress: _RunProgress,
        previous_failures: Set[str]
    ) -> None:
        customer_id = customer.customer_id or MISSING_CUSTOMER_ID
        attempts = 0

        def attempt() -> InsertOutcome:
            nonlocal attempts
            attempts += 1
            return self._attempt(customer, snapshot)

        try:
            outcome = self._retrying()(attempt)
        except ScreeningFailure as failure:
            self._record_failure(customer_id, snapshot.list_date, failure, attempts, progress)
            return

        record_score_write(outcome.value)
        progress.mark_scored(customer_id, outcome)
        if customer_id in previous_failures:
            self._with_store_retry(self.store.clear_failure, snapshot.list_date, customer_id)

    def _attempt(self, customer: CustomerIdentity, snapshot: WatchlistSnapshot) -> InsertOutcome:
        """One screening attempt: score and persist"""
        if not customer.customer_id or not isinstance(customer.name, str):
            raise ScreeningFailure(
                "Customer identity has no id or no name",
                kind=FailureKind.MALFORMED_IDENTITY
            )

        deadline = time.monotonic() + self.config.customer_timeout_seconds
        try:
            result = self.engine.score(customer, snapshot, deadline=deadline)
        except ScreeningTimeout as e:
            raise ScreeningFailure(str(e), kind=FailureKind.TIMEOUT) from e
        except (TypeError, ValueError, AttributeError) as e:
            raise ScreeningFailure(
                f"Malformed identity: {e}",
                kind=FailureKind.MALFORMED_IDENTITY
            ) from e
        except Exception as e:
            logger.exception(f"Screening raised unexpectedly for {sanitize_for_logging(customer.customer_id)}")
            raise ScreeningFailure(
                f"Screening error: {e}",
                kind=FailureKind.MALFORMED_IDENTITY,
                retryable=False
            ) from e

        try:
            return self.store.insert_score_if_absent(
                customer.customer_id,
                snapshot.list_date,
                result.score,
                result.matched_entry_id,
                result.matched_name,
            )
        except StoreUnavailableError:
            raise
        except TransientStoreError as e:
            raise ScreeningFailure(str(e), kind=FailureKind.TRANSIENT_STORE_ERROR) from e
        except StoreError as e:
            # Rejected row (value too long, constraint violation)
            raise ScreeningFailure(
                f"Score write rejected: {e}",
                kind=FailureKind.MALFORMED_IDENTITY,
                retryable=False
            ) from e

    def _record_failure(
        self,
        customer_id: str,
        list_date: date,
        failure: ScreeningFailure,
        attempts: int,
        progress: _RunProgress
    ) -> None:
        logger.warning(
            f"Customer {sanitize_for_logging(customer_id)} failed after {attempts} attempts "
            f"({failure.kind.value}): {sanitize_for_logging(str(failure))}"
        )
        record_customer_failure(failure.kind.value)
        store_lost = progress.mark_failed(customer_id, failure.kind)

        try:
            self._with_store_retry(self.store.record_failure, CustomerFailure(
                list_date=list_date,
                customer_id=customer_id,
                kind=failure.kind,
                message=str(failure)[:500],
                attempts=attempts,
            ))
        except (StoreUnavailableError, TransientStoreError):
            raise
        except StoreError as e:
            # Still listed in the run's failed_customer_ids
            logger.error(f"✗ Could not record failure for {sanitize_for_logging(customer_id)}: {e}")

        if store_lost:
            raise StoreUnavailableError(
                f"{self.config.store_failure_threshold} consecutive customers "
                f"failed with store errors"
            )

    # ------------------------------------------------------------------
    # Retry helpers
    # ------------------------------------------------------------------

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._wait_for,
            retry=retry_if_exception(lambda e: isinstance(e, ScreeningFailure) and e.retryable),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )

    def _wait_for(self, retry_state) -> float:
        """Back off exponentially only when the store is the problem"""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ScreeningFailure) and exc.kind == FailureKind.TRANSIENT_STORE_ERROR:
            return self._backoff(retry_state)
        return 0.0

    def _with_store_retry(self, func: Callable, *args):
        retryer = Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._backoff,
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(func, *args)

    def _save_run(self, run: ScoreRun) -> None:
        self._with_store_retry(self.store.save_run, run)
