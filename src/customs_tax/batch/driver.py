"""
Bounded-concurrency batch driver.

Runs a unit processor (usually the per-quote tax calculation) over a
worklist on a fixed-size thread pool. Each unit is retried independently
with an increasing delay; a unit that exhausts its retries is recorded as
failed without touching its siblings.

Lifecycle per run: IDLE -> RUNNING -> COMPLETED | CANCELLED | FAILED.
Only one run may be in flight per driver.

Progress snapshots are pushed onto a queue and delivered to listeners by a
dispatcher thread, so a slow listener never stalls scheduling. Callers can
also poll :meth:`BatchProcessingDriver.progress`.
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_incrementing,
)

from ..tax_calculation.errors import BatchAlreadyRunning
from ..tax_calculation.models import ItemTaxResult, QuoteTaxSummary
from ..utils.config import Config
from ..utils.logging import get_logger

logger = get_logger(__name__)


class BatchState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchOptions:
    concurrency: int = 50
    retry_attempts: int = 2  # retries after the first attempt
    retry_delay: float = 1.0  # seconds; the n-th retry waits n * retry_delay

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts cannot be negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")

    @classmethod
    def from_config(cls, config: Config) -> "BatchOptions":
        return cls(
            concurrency=config.get("batch_concurrency", 50),
            retry_attempts=config.get("batch_retry_attempts", 2),
            retry_delay=config.get("batch_retry_delay", 1.0),
        )


@dataclass(frozen=True)
class BatchProgress:
    total_units: int
    processed_units: int
    successful_units: int
    time_elapsed: float
    current_phase: BatchState
    failed_units: int = 0
    current_unit_id: Optional[str] = None
    processing_speed: float = 0.0  # units per minute
    estimated_time_remaining: float = 0.0  # seconds


@dataclass(frozen=True)
class BatchUnitResult:
    unit_id: str
    success: bool
    items_processed: int = 0
    items_successful: int = 0
    error: Optional[str] = None
    attempts: int = 1
    processing_time: float = 0.0
    summary: Optional[QuoteTaxSummary] = None
    item_results: Tuple[ItemTaxResult, ...] = ()


ProgressListener = Callable[[BatchProgress], None]
UnitProcessor = Callable[[Any], BatchUnitResult]


class ProgressChannel:
    """Non-blocking hand-off of progress snapshots to listeners."""

    _CLOSE = object()

    def __init__(self, listeners: Iterable[ProgressListener]) -> None:
        self._listeners = list(listeners)
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        if self._listeners:
            self._thread = threading.Thread(target=self._dispatch, name="batch-progress", daemon=True)
            self._thread.start()

    def send(self, snapshot: BatchProgress) -> None:
        if self._thread is not None:
            self._queue.put_nowait(snapshot)

    def close(self) -> None:
        """Deliver everything already sent, then stop the dispatcher."""
        if self._thread is not None:
            self._queue.put_nowait(self._CLOSE)
            self._thread.join()
            self._thread = None

    def _dispatch(self) -> None:
        while True:
            snapshot = self._queue.get()
            if snapshot is self._CLOSE:
                return
            for listener in self._listeners:
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("Progress listener raised; continuing")


class BatchProcessingDriver:
    """Runs a unit processor over many work units concurrently.

    Work units only need a ``unit_id`` attribute. The processor returns a
    :class:`BatchUnitResult` or raises to request a retry.
    """

    def __init__(
        self,
        processor: UnitProcessor,
        options: Optional[BatchOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.processor = processor
        self.options = options or BatchOptions()
        self._clock = clock
        self._listeners: List[ProgressListener] = []

        self._state = BatchState.IDLE
        self._state_lock = threading.Lock()
        self._cancel_event = threading.Event()

        self._progress_lock = threading.Lock()
        self._results: List[BatchUnitResult] = []
        self._total = 0
        self._successful = 0
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None
        self._last_unit_id: Optional[str] = None

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is BatchState.RUNNING

    @property
    def results(self) -> List[BatchUnitResult]:
        """Results of the current (or last) run, in completion order."""
        with self._progress_lock:
            return list(self._results)

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.remove(listener)

    def progress(self) -> BatchProgress:
        """Snapshot of the current run's progress."""
        with self._progress_lock:
            processed = len(self._results)
            end = self._finished_at if self._finished_at is not None else self._clock()
            elapsed = max(0.0, end - self._started_at) if self._started_at is not None else 0.0
            speed = processed / (elapsed / 60) if elapsed > 0 else 0.0
            remaining = (self._total - processed) / (speed / 60) if speed > 0 else 0.0
            return BatchProgress(
                total_units=self._total,
                processed_units=processed,
                successful_units=self._successful,
                failed_units=processed - self._successful,
                time_elapsed=elapsed,
                current_phase=self._state,
                current_unit_id=self._last_unit_id,
                processing_speed=speed,
                estimated_time_remaining=max(0.0, remaining),
            )

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop scheduling new units; in-flight attempts run to completion."""
        if self._state is not BatchState.RUNNING:
            logger.debug("Cancel requested with no batch running")
            return
        logger.info("Cancelling batch processing...")
        self._cancel_event.set()

    def start(
        self,
        work_units: Iterable[Any],
        options: Optional[BatchOptions] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> List[BatchUnitResult]:
        """Process every unit and return the results in completion order.

        Raises:
            BatchAlreadyRunning: If another run is in flight.
        """
        options = options or self.options
        with self._state_lock:
            if self._state is BatchState.RUNNING:
                raise BatchAlreadyRunning()
            self._reset()
            self._state = BatchState.RUNNING

        listeners = list(self._listeners)
        if on_progress is not None:
            listeners.append(on_progress)
        channel = ProgressChannel(listeners)

        try:
            units = list(work_units)
            with self._progress_lock:
                self._total = len(units)

            if not units:
                self._finish(BatchState.COMPLETED)
                channel.send(self.progress())
                return []

            logger.info(
                f"Starting batch processing of {len(units)} units with concurrency: {options.concurrency}"
            )
            self._run(units, options, channel)
        except Exception:
            self._finish(BatchState.FAILED)
            logger.exception("Batch processing failed")
            raise
        finally:
            channel.close()

        # A cancel that lands after the last unit finished skipped nothing.
        if self._cancel_event.is_set() and len(self._results) < self._total:
            self._finish(BatchState.CANCELLED)
            logger.info(f"Batch processing cancelled after {len(self._results)}/{self._total} units")
        else:
            self._finish(BatchState.COMPLETED)
            logger.info(
                f"Batch processing completed. {self._successful}/{len(self._results)} units successful"
            )
        return self.results

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _reset(self) -> None:
        self._cancel_event = threading.Event()
        with self._progress_lock:
            self._results = []
            self._total = 0
            self._successful = 0
            self._started_at = self._clock()
            self._finished_at = None
            self._last_unit_id = None

    def _finish(self, state: BatchState) -> None:
        with self._progress_lock:
            self._finished_at = self._clock()
        with self._state_lock:
            self._state = state

    def _run(self, units: List[Any], options: BatchOptions, channel: ProgressChannel) -> None:
        workers = min(options.concurrency, len(units))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch") as executor:
            pending: Dict[Future, Any] = {
                executor.submit(self._run_unit, unit, options): unit for unit in units
            }
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    pending.pop(future)
                    if future.cancelled():
                        continue
                    result = future.result()
                    if result is not None:
                        self._record(result)
                        channel.send(self.progress())
                if self._cancel_event.is_set():
                    # Queued units never start; running ones are still awaited.
                    for future in pending:
                        future.cancel()

    def _record(self, result: BatchUnitResult) -> None:
        with self._progress_lock:
            self._results.append(result)
            self._last_unit_id = result.unit_id
            if result.success:
                self._successful += 1

    def _run_unit(self, unit: Any, options: BatchOptions) -> Optional[BatchUnitResult]:
        if self._cancel_event.is_set():
            return None

        unit_id = str(unit.unit_id)
        started = self._clock()
        attempts = 0
        cancel_event = self._cancel_event

        def attempt() -> BatchUnitResult:
            nonlocal attempts
            attempts += 1
            return self.processor(unit)

        def before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Unit {unit_id} failed attempt {retry_state.attempt_number}/{options.retry_attempts + 1}: "
                f"{retry_state.outcome.exception()}"
            )

        def exhausted(retry_state: RetryCallState) -> BatchUnitResult:
            error = retry_state.outcome.exception()
            logger.error(f"Unit {unit_id} failed after {attempts} attempt(s): {error}")
            return BatchUnitResult(
                unit_id=unit_id,
                success=False,
                error=str(error) or type(error).__name__,
                attempts=attempts,
                processing_time=self._clock() - started,
            )

        retrying = Retrying(
            stop=stop_after_attempt(options.retry_attempts + 1) | stop_when_event_set(cancel_event),
            wait=wait_incrementing(start=options.retry_delay, increment=options.retry_delay),
            retry=retry_if_exception_type(Exception),
            sleep=cancel_event.wait,
            before_sleep=before_sleep,
            retry_error_callback=exhausted,
        )
        result = retrying(attempt)
        return replace(result, attempts=attempts, processing_time=self._clock() - started)
