"""
Batch GPA recomputation.

A run snapshots the ids of active students once and walks them in chunks of
bounded size through the same alerting pipeline as interactive writes.
Per-student failures are recorded and skipped. Only loss of the record store
fails the whole run. Re-running after a failure is safe because alerts are
edge-triggered on the stored GPA.

    Idle -> Running -> (Finished | Failed) -> Idle
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import islice
from typing import Iterator, List, Optional, Sequence

import config
from errors import BatchAbort, BatchAlreadyRunning, DataError, RecordStoreUnavailable

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    FINISHED = "Finished"
    FAILED = "Failed"


@dataclass(frozen=True)
class StudentFailure:
    student_id: int
    stage: str
    error: str
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class BatchResult:
    run_id: str
    started_at: datetime
    state: BatchState = BatchState.RUNNING
    finished_at: Optional[datetime] = None
    snapshot_size: int = 0
    processed: int = 0
    alerts: int = 0
    chunks: int = 0
    cancelled: bool = False
    error: Optional[str] = None
    failures: List[StudentFailure] = field(default_factory=list)

    @property
    def failed_student_ids(self) -> List[int]:
        return [failure.student_id for failure in self.failures]

    @property
    def partial(self) -> bool:
        return self.state == BatchState.FINISHED and (bool(self.failures) or self.cancelled)


def chunked(items: Sequence[int], size: int) -> Iterator[List[int]]:
    iterator = iter(items)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


class BatchScheduler:
    def __init__(self, store, alerting, channel=None,
                 chunk_size: int = config.BATCH_CHUNK_SIZE,
                 chunk_pause: float = config.BATCH_CHUNK_PAUSE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.store = store
        self.alerting = alerting
        self.channel = channel
        self.chunk_size = chunk_size
        self.chunk_pause = chunk_pause

        self._state = BatchState.IDLE
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._timer_thread: Optional[threading.Thread] = None
        self._timer_stop = threading.Event()

        self.transitions: List[BatchState] = [BatchState.IDLE]
        self.last_result: Optional[BatchResult] = None

    @property
    def state(self) -> BatchState:
        with self._lock:
            return self._state

    def _transition(self, new_state: BatchState):
        logger.info(f"Batch scheduler {self._state.value} -> {new_state.value}")
        self._state = new_state
        self.transitions.append(new_state)

    def _begin(self) -> BatchResult:
        with self._lock:
            if self._state == BatchState.RUNNING:
                raise BatchAlreadyRunning("A recomputation batch is already running")
            self._cancel.clear()
            self._transition(BatchState.RUNNING)
            result = BatchResult(run_id=str(uuid.uuid4()), started_at=datetime.utcnow())
            self.last_result = result
            return result

    # ============= RUNNING =============

    def run(self) -> BatchResult:
        """Run one batch in the calling thread"""
        return self._run(self._begin())

    def trigger(self) -> bool:
        """Start a batch in the background. Returns False if one is already running."""
        try:
            result = self._begin()
        except BatchAlreadyRunning:
            logger.warning("Batch trigger ignored: a run is already in progress")
            return False
        self._thread = threading.Thread(
            target=self._run_in_background, args=(result,), name="gpa-batch", daemon=True
        )
        self._thread.start()
        return True

    def _run_in_background(self, result: BatchResult):
        try:
            self._run(result)
        except Exception as e:
            logger.error(f"Batch {result.run_id} crashed: {str(e)}", exc_info=True)

    def _run(self, result: BatchResult) -> BatchResult:
        logger.info(f"Batch {result.run_id} started")
        try:
            self._execute(result)
            result.state = BatchState.FINISHED
        except BatchAbort as e:
            result.state = BatchState.FAILED
            result.error = str(e)
            logger.error(f"Batch {result.run_id} aborted after {result.processed} students: {str(e)}")
        except Exception as e:
            result.state = BatchState.FAILED
            result.error = str(e)
            raise
        finally:
            result.finished_at = datetime.utcnow()
            with self._lock:
                self._transition(result.state)
                self._transition(BatchState.IDLE)

        logger.info(
            f"Batch {result.run_id} {result.state.value}: {result.processed}/{result.snapshot_size} "
            f"students, {result.alerts} alerts, {len(result.failures)} failures"
            + (" (cancelled)" if result.cancelled else "")
        )
        return result

    def _execute(self, result: BatchResult):
        try:
            student_ids = self.store.get_active_student_ids()
        except RecordStoreUnavailable as e:
            raise BatchAbort(f"Could not snapshot active students: {str(e)}") from e

        result.snapshot_size = len(student_ids)
        logger.info(f"Batch {result.run_id} snapshot holds {len(student_ids)} students")

        for chunk in chunked(student_ids, self.chunk_size):
            if self._cancel.is_set():
                result.cancelled = True
                logger.info(f"Batch {result.run_id} cancelled before chunk {result.chunks + 1}")
                break
            self._process_chunk(chunk, result)
            result.chunks += 1
            if self.chunk_pause:
                time.sleep(self.chunk_pause)

    def _process_chunk(self, chunk: List[int], result: BatchResult):
        for student_id in chunk:
            try:
                outcome = self.alerting.recompute(student_id, source="batch")
            except RecordStoreUnavailable as e:
                raise BatchAbort(f"Record store lost at student {student_id}: {str(e)}") from e
            except DataError as e:
                self._record_failure(result, student_id, e.stage or "recompute", e)
            except Exception as e:
                self._record_failure(result, student_id, "recompute", e, exc_info=True)
            else:
                result.processed += 1
                if outcome.alert is not None:
                    result.alerts += 1

    def _record_failure(self, result: BatchResult, student_id: int, stage: str, error: Exception,
                        exc_info: bool = False):
        failure = StudentFailure(student_id=student_id, stage=stage, error=str(error))
        result.failures.append(failure)
        logger.error(
            f"Batch {result.run_id} failed student {student_id} at stage {stage} "
            f"({failure.timestamp.isoformat()}): {str(error)}",
            exc_info=exc_info,
        )

    # ============= CONTROL =============

    def cancel(self) -> bool:
        """Stop scheduling further chunks. The chunk in flight finishes."""
        with self._lock:
            if self._state != BatchState.RUNNING:
                return False
            self._cancel.set()
        logger.info("Batch cancellation requested")
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def tick(self) -> bool:
        """Timer callback: redeliver deferred alerts, then start a batch"""
        if self.channel is not None:
            self.channel.retry_pending()
        return self.trigger()

    def start_timer(self, interval: float):
        if self._timer_thread is not None and self._timer_thread.is_alive():
            return
        self._timer_stop.clear()

        def loop():
            while not self._timer_stop.wait(interval):
                self.tick()

        self._timer_thread = threading.Thread(target=loop, name="gpa-batch-timer", daemon=True)
        self._timer_thread.start()
        logger.info(f"Batch timer started with interval {interval}s")

    def stop_timer(self):
        self._timer_stop.set()
        if self._timer_thread is not None:
            self._timer_thread.join()
            self._timer_thread = None
