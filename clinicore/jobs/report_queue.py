"""Producer side of the ``clinic-reports`` lane.

``ReportQueue`` is constructed explicitly around a job store (no module-level
queue singleton) and exposes:

- ``add_report_job``  - one organization's report, id ``report-{org}-{epoch_ms}``
- ``schedule_all_reports`` - the fan-out trigger, id ``schedule-all-{epoch_ms}``
- ``setup_recurring_report_schedule`` - (re)register the daily fan-out trigger
- ``get_queue_stats`` - waiting/active/completed/failed/delayed counts

Report job ids embed the enqueue time, so two fan-outs running close together
can both queue the same organization; the report handler tolerates re-runs.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from clinicore.config import QUEUE_NAMES, REPORT_SETTINGS
from clinicore.jobs.job_types import ClinicReportJob, ScheduleAllReportsJob
from clinicore.jobs.schedule import cron_trigger
from clinicore.jobs.store import JobHandle, JobOptions, JobStore, RepeatOptions
from clinicore.utils import get_logger
from clinicore.utils.time import epoch_ms, utc_now

logger = get_logger(__name__)


class ReportQueue:
    def __init__(self, store: JobStore, *, lane: Optional[str] = None, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.lane = lane or QUEUE_NAMES["CLINIC_REPORTS"]
        self._clock = clock

    def add_report_job(self, job: ClinicReportJob) -> JobHandle:
        job_id = f"report-{job.organization_id}-{epoch_ms(self._clock())}"
        handle = self.store.add(
            self.lane,
            f"report-{job.organization_id}",
            job.to_payload(),
            JobOptions.defaults(job_id=job_id),
        )
        logger.info(
            "Enqueued clinic report job",
            job_id=handle.id,
            organization_id=job.organization_id,
            period_days=job.period_days,
        )
        return handle

    def schedule_all_reports(self) -> JobHandle:
        job_id = f"schedule-all-{epoch_ms(self._clock())}"
        handle = self.store.add(
            self.lane,
            "schedule-all-reports",
            ScheduleAllReportsJob().to_payload(),
            JobOptions.defaults(job_id=job_id),
        )
        logger.info("Enqueued schedule-all reports job", job_id=handle.id)
        return handle

    def setup_recurring_report_schedule(self) -> JobHandle:
        """Replace any existing daily trigger with a fresh registration.

        Safe to call on every worker start. Replicas starting at the same moment
        may briefly race; the registration key is deterministic so they converge.
        """
        name = str(REPORT_SETTINGS["recurring_job_name"])
        pattern = str(REPORT_SETTINGS["recurring_pattern"])
        cron_trigger(pattern)  # reject a bad pattern before dropping the current registration
        removed = 0
        for repeatable in self.store.get_repeatable_jobs(self.lane):
            if repeatable.name == name and self.store.remove_repeatable_by_key(self.lane, repeatable.key):
                removed += 1
        handle = self.store.add(
            self.lane,
            name,
            ScheduleAllReportsJob().to_payload(),
            JobOptions.defaults(job_id=name, repeat=RepeatOptions(pattern=pattern)),
        )
        logger.info("Recurring report schedule configured", name=name, pattern=pattern, replaced=removed)
        return handle

    def get_queue_stats(self) -> dict[str, int]:
        return self.store.get_counts(self.lane)


__all__ = ["ReportQueue"]
