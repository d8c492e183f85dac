"""
Worker Pool and Job Dispatcher.

The pool runs at most `capacity` jobs at once, each start-to-finish on one
thread. The dispatcher only takes a message off the queue after it holds a
free slot, so the process never holds more jobs than it can run.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol, Union

from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import InvalidJobError, QueueError
from app.core.metrics import metrics
from app.core.queue import parse_job, preview
from app.core.status import StatusTracker
from app.schemas.deployment import DeploymentJob, Phase

logger = logging.getLogger(__name__)


class JobSource(Protocol):
    def pop(self, timeout: float) -> Optional[Union[str, bytes]]: ...


class WorkerPool:
    """Fixed-size pool of build workers with in-flight duplicate detection."""

    def __init__(self, handler: Callable[[DeploymentJob], Any], capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._handler = handler
        self._capacity = capacity
        self._slots = threading.BoundedSemaphore(capacity)
        self._executor = ThreadPoolExecutor(max_workers=capacity, thread_name_prefix="build-worker")
        self._idle = threading.Condition()
        self._in_flight: set[str] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def active_count(self) -> int:
        with self._idle:
            return len(self._in_flight)

    def acquire_slot(self, timeout: Optional[float] = None) -> bool:
        """Reserve a worker slot. Returns False if none freed up in time."""
        return self._slots.acquire(timeout=timeout)

    def release_slot(self) -> None:
        self._slots.release()

    def submit(self, job: DeploymentJob) -> bool:
        """
        Run `job` on a worker. The caller must hold a slot from acquire_slot;
        ownership of that slot passes to the pool in every case.

        Returns False (slot released) if the same deployment is still running.

        Raises:
            RuntimeError: If the pool has been shut down (slot released)
        """
        with self._idle:
            if job.deployment_id in self._in_flight:
                duplicate = True
            else:
                duplicate = False
                self._in_flight.add(job.deployment_id)

        if duplicate:
            self._slots.release()
            metrics.inc("jobs_duplicate_total")
            logger.warning(f"job_duplicate deployment_id={job.deployment_id}")
            return False

        try:
            self._executor.submit(self._run, job)
        except RuntimeError:
            self._finish(job.deployment_id)
            raise
        return True

    def _run(self, job: DeploymentJob) -> None:
        try:
            self._handler(job)
        except Exception:
            logger.exception(f"worker_error deployment_id={job.deployment_id}")
        finally:
            self._finish(job.deployment_id)

    def _finish(self, deployment_id: str) -> None:
        with self._idle:
            self._in_flight.discard(deployment_id)
            self._idle.notify_all()
        self._slots.release()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout=timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting jobs. With `wait`, running jobs get up to `timeout`
        seconds to finish. Returns True if the pool drained.
        """
        drained = self.wait_idle(timeout) if wait else self.active_count == 0
        self._executor.shutdown(wait=wait and drained)
        if not drained:
            logger.warning(f"pool_shutdown_with_running_jobs active={self.active_count}")
        return drained


class JobDispatcher:
    """Moves messages from the queue into the worker pool."""

    def __init__(
        self,
        job_queue: JobSource,
        pool: WorkerPool,
        tracker: StatusTracker,
        poll_timeout: float = 2,
        error_backoff: float = 5,
    ):
        self._queue = job_queue
        self._pool = pool
        self._tracker = tracker
        self._poll_timeout = poll_timeout
        self._error_backoff = error_backoff
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def dispatch_once(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for a free slot, then for one message, and hand it to the pool.

        Returns True if a message was consumed.

        Raises:
            QueueError: If the queue backend is unavailable
        """
        timeout = self._poll_timeout if timeout is None else timeout
        if not self._pool.acquire_slot(timeout=timeout):
            return False

        slot_handed_over = False
        try:
            raw = self._queue.pop(timeout)
            if raw is None:
                return False
            metrics.inc("jobs_received_total")

            try:
                job = parse_job(raw)
            except InvalidJobError as e:
                self._reject(raw, e)
                return True

            slot_handed_over = True
            try:
                self._pool.submit(job)
            except RuntimeError as e:
                self._record_failure(
                    job.deployment_id,
                    f"Failed to schedule build: {e}",
                    project_id=job.project_id,
                )
            return True
        finally:
            if not slot_handed_over:
                self._pool.release_slot()

    def _reject(self, raw: Union[str, bytes], error: InvalidJobError) -> None:
        metrics.inc("jobs_rejected_total")
        if error.deployment_id:
            logger.error(f"job_invalid deployment_id={error.deployment_id} error={error.message}")
            self._record_failure(error.deployment_id, error.message)
        else:
            logger.error(f"job_invalid error={error.message} message={preview(raw)!r}")

    def _record_failure(self, deployment_id: str, message: str, project_id: Optional[str] = None) -> None:
        try:
            self._tracker.mark_failed(deployment_id, Phase.QUEUED, message, project_id=project_id)
        except SQLAlchemyError as e:
            logger.error(f"status_record_failed deployment_id={deployment_id} error={type(e).__name__}")

    def run_forever(self) -> None:
        """Dispatch until stop() is called."""
        logger.info(f"dispatcher_started capacity={self._pool.capacity}")
        while not self._stop.is_set():
            try:
                self.dispatch_once()
            except QueueError as e:
                logger.error(f"queue_error error={e} retry_in_s={self._error_backoff}")
                self._stop.wait(self._error_backoff)
        logger.info("dispatcher_stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="job-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
