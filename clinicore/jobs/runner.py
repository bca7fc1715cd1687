"""Standalone report worker process: ``python -m clinicore.jobs.runner``."""
from __future__ import annotations

import os
import signal
import threading

from clinicore.database import Base, engine
from clinicore.jobs.report_queue import ReportQueue
from clinicore.jobs.schedule import InvalidRepeatPattern
from clinicore.jobs.store import JobStoreError
from clinicore.jobs.worker import create_job_store, create_report_worker
from clinicore.utils import get_logger, setup_logging

logger = get_logger(__name__)


def main() -> None:
    setup_logging(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE", "logs/worker.log"),
        enable_console=True,
    )
    Base.metadata.create_all(bind=engine)

    store = create_job_store()
    worker = create_report_worker(store)
    worker.on("completed", lambda job, result: logger.info("Job completed", job_id=job.id, name=job.name))
    worker.on("failed", lambda job, err: logger.warning("Job failed", job_id=job.id, name=job.name, error=str(err)))
    worker.on("error", lambda err: logger.error("Worker error", error=str(err)))

    stop_event = threading.Event()

    def _request_shutdown(signum, _frame):
        logger.info("Shutdown signal received", signal=signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_shutdown)
    signal.signal(signal.SIGINT, _request_shutdown)

    worker.start()
    report_queue = ReportQueue(store)
    try:
        report_queue.setup_recurring_report_schedule()
        logger.info("Initial queue stats", **report_queue.get_queue_stats())
    except (JobStoreError, InvalidRepeatPattern) as e:
        logger.error("Failed to set up recurring report schedule", error=str(e), exc_info=True)

    logger.info("Report worker listening", lane=report_queue.lane)
    while not stop_event.wait(1.0):
        pass

    worker.shutdown()
    store.close()
    logger.info("Report worker exited")


if __name__ == "__main__":
    main()
