"""Background worker for the ``clinic-reports`` lane."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional, Union

from sqlalchemy.orm import sessionmaker

from clinicore.config import QUEUE_NAMES, QUEUE_SETTINGS
from clinicore.database import SessionLocal
from clinicore.integrations.email import Mailer, SmtpMailer
from clinicore.jobs.redis_store import RedisJobStore
from clinicore.jobs.report_handlers import ReportJobProcessor
from clinicore.jobs.report_queue import ReportQueue
from clinicore.jobs.store import InMemoryJobStore, Job, JobState, JobStore, JobStoreError, lock_duration_ms
from clinicore.utils import get_logger
from clinicore.utils.time import format_elapsed, utc_now

logger = get_logger(__name__)

JobProcessor = Callable[[Job, Callable[[int], None]], Any]

WORKER_EVENTS = ("completed", "failed", "error")


class ReportWorker:
    def __init__(
        self,
        store: JobStore,
        processor: JobProcessor,
        *,
        lane: Optional[str] = None,
        concurrency: Optional[int] = None,
        poll_timeout: Optional[float] = None,
        lease_renew_interval: Optional[float] = None,
    ):
        self.store = store
        self.processor = processor
        self.lane = lane or QUEUE_NAMES["CLINIC_REPORTS"]
        self.concurrency = int(concurrency or QUEUE_SETTINGS.get("worker_concurrency", 5))  # type: ignore[arg-type]
        self.poll_timeout = float(poll_timeout or QUEUE_SETTINGS.get("poll_timeout_seconds", 1.0))  # type: ignore[arg-type]
        self.lease_renew_interval = float(lease_renew_interval or lock_duration_ms() / 2000.0)
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._listeners: dict[str, list[Callable[..., None]]] = {event: [] for event in WORKER_EVENTS}

    def on(self, event: str, listener: Callable[..., None]) -> None:
        """Register a listener.

        ``completed`` receives ``(job, result)``, ``failed`` receives
        ``(job, exception)`` and ``error`` receives ``(exception,)`` for
        failures outside any job (e.g. the store going away).
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown worker event: {event}")
        self._listeners[event].append(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in self._listeners[event]:
            try:
                listener(*args)
            except Exception as e:
                logger.error("Worker event listener failed", event=event, error=str(e), exc_info=True)

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.is_running:  # pragma: no cover
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"report-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Report worker started", lane=self.lane, concurrency=self.concurrency)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop taking jobs and wait for in-flight ones to finish."""
        self._stop_event.set()
        logger.info("Report worker stop requested", lane=self.lane)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Report worker stopped", lane=self.lane)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.store.fetch_next(self.lane, timeout=self.poll_timeout)
                if job is None:
                    continue
                self.process(job)
            except Exception as e:
                logger.error("Worker loop error", lane=self.lane, error=str(e), exc_info=True)
                self._emit("error", e)
                time.sleep(1)

    def _keep_lease(self, job: Job, done: threading.Event) -> None:
        while not done.wait(self.lease_renew_interval):
            try:
                if not self.store.extend_lease(job):
                    logger.warning("Lease lost for running job", job_id=job.id, name=job.name)
                    return
            except JobStoreError as e:
                logger.warning("Lease renewal failed", job_id=job.id, name=job.name, error=str(e))

    def _run_processor(self, job: Job) -> Any:
        done = threading.Event()
        renewer = threading.Thread(target=self._keep_lease, args=(job, done), name=f"lease-{job.id}", daemon=True)
        renewer.start()
        try:
            return self.processor(job, lambda progress: self.store.update_progress(job, progress))
        finally:
            done.set()
            renewer.join()

    def process(self, job: Job) -> JobState:
        """Run one active job through the processor and record the outcome.

        The job's lease is renewed in the background while the processor runs.
        If the outcome cannot be written the job stays active; once its lease
        lapses the next fetch counts the attempt as stalled and retries it.
        """
        started = utc_now()
        logger.info("Processing report job", job_id=job.id, name=job.name, attempt=job.attempts_started)
        try:
            result = self._run_processor(job)
        except Exception as e:
            try:
                state = self.store.fail(job, str(e) or type(e).__name__)
            except JobStoreError as store_error:
                logger.error("Could not record job failure", job_id=job.id, name=job.name, error=str(store_error))
                self._emit("error", store_error)
                return JobState.ACTIVE
            logger.error(
                "Report job failed",
                job_id=job.id,
                name=job.name,
                attempt=job.attempts_started,
                will_retry=state != JobState.FAILED,
                error=str(e),
                exc_info=True,
            )
            self._emit("failed", job, e)
            return state

        try:
            self.store.complete(job, result)
        except JobStoreError as e:
            logger.error("Could not record job completion", job_id=job.id, name=job.name, error=str(e))
            self._emit("error", e)
            return JobState.ACTIVE
        logger.info("Report job completed", job_id=job.id, name=job.name, duration=format_elapsed(started))
        self._emit("completed", job, result)
        return JobState.COMPLETED

    def run_once(self) -> Optional[Job]:
        """Process the next ready job on the calling thread, if any."""
        job = self.store.fetch_next(self.lane, block=False)
        if job is None:
            return None
        self.process(job)
        return job

    def drain(self, max_jobs: int = 1000) -> int:
        """Process ready jobs until none are left (or ``max_jobs`` is hit)."""
        processed = 0
        while processed < max_jobs and self.run_once() is not None:
            processed += 1
        return processed


def create_job_store() -> Union[InMemoryJobStore, RedisJobStore]:
    """Create and return the appropriate job store based on configuration."""
    use_redis = QUEUE_SETTINGS.get("use_redis", False)

    if use_redis:
        try:
            redis_store = RedisJobStore()
            if redis_store.health_check():
                logger.info("Using Redis-backed job store")
                return redis_store
            logger.warning("REDIS CONNECTION FAILED: Redis server is not reachable. Using in-memory job store.")
        except Exception as e:
            logger.warning("Error initializing Redis job store, falling back to in-memory store", error=str(e))

    logger.info("Using in-memory job store")
    return InMemoryJobStore()


def create_report_worker(
    store: JobStore,
    *,
    session_factory: sessionmaker = SessionLocal,
    mailer: Optional[Mailer] = None,
    concurrency: Optional[int] = None,
) -> ReportWorker:
    """Wire a worker for the report lane around ``store``."""
    report_queue = ReportQueue(store)
    processor = ReportJobProcessor(session_factory, mailer or SmtpMailer(), report_queue)
    return ReportWorker(store, processor, lane=report_queue.lane, concurrency=concurrency)


__all__ = ["ReportWorker", "WORKER_EVENTS", "create_job_store", "create_report_worker"]
