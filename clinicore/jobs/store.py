"""Job Store contract + in-memory implementation (single-process).

A job store holds named lanes of jobs. Each job moves through

    WAITING -> ACTIVE -> COMPLETED
                      -> FAILED -> WAITING | DELAYED   (attempts_made < attempts)
                      -> FAILED                         (terminal)

Features:
- Explicit ``job_id`` deduplication: adding an id that already exists returns the
  existing job untouched.
- Retry with exponential (or fixed) backoff; a zero delay re-enters WAITING directly.
- Retention of finished jobs (``remove_on_complete`` / ``remove_on_fail``) by count and age.
- Repeatable registrations keyed by ``name:job_id:::pattern``; the next instance of a
  repeatable job always sits in DELAYED until its fire time.
- Single delivery: a job attempt is handed to exactly one ``fetch_next`` caller.
- Leases: an ACTIVE job is held for ``lock_duration_ms``. ``extend_lease`` and
  ``update_progress`` renew it; once it lapses the next ``fetch_next`` counts a
  failed attempt and re-queues the job (or fails it terminally).

The in-memory store keeps a ready deque and a delayed heap per lane behind one
condition variable, mirroring the Redis-backed store's list + sorted set layout.
"""
from __future__ import annotations

import enum
import heapq
import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from clinicore.config import DEFAULT_JOB_OPTIONS, QUEUE_SETTINGS
from clinicore.jobs.schedule import next_fire_time
from clinicore.utils import get_logger
from clinicore.utils.backoff import compute_backoff_seconds
from clinicore.utils.time import epoch_ms, utc_now

logger = get_logger(__name__)

STALLED_REASON = "job stalled more than allowable limit"


class JobStoreError(RuntimeError):
    """Base error for job store failures."""


class JobStoreUnavailable(JobStoreError):
    """Broker unreachable or store already closed."""


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


@dataclass(slots=True)
class BackoffOptions:
    type: str = "exponential"
    delay_ms: int = 1000


@dataclass(slots=True)
class RetentionOptions:
    count: Optional[int] = None
    age_seconds: Optional[int] = None


@dataclass(slots=True)
class RepeatOptions:
    pattern: str


@dataclass(slots=True)
class JobOptions:
    attempts: int = 1
    backoff: BackoffOptions = field(default_factory=BackoffOptions)
    remove_on_complete: RetentionOptions = field(default_factory=RetentionOptions)
    remove_on_fail: RetentionOptions = field(default_factory=RetentionOptions)
    repeat: Optional[RepeatOptions] = None
    job_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobOptions":
        backoff = data.get("backoff") or {}
        repeat = data.get("repeat")
        return cls(
            attempts=int(data.get("attempts", 1)),
            backoff=BackoffOptions(**backoff) if backoff else BackoffOptions(),
            remove_on_complete=RetentionOptions(**(data.get("remove_on_complete") or {})),
            remove_on_fail=RetentionOptions(**(data.get("remove_on_fail") or {})),
            repeat=RepeatOptions(**repeat) if repeat else None,
            job_id=data.get("job_id"),
        )

    @classmethod
    def defaults(cls, **overrides: Any) -> "JobOptions":
        """Lane defaults from configuration, with per-call overrides applied."""
        return replace(cls.from_dict(DEFAULT_JOB_OPTIONS), **overrides)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": {"type": self.backoff.type, "delay_ms": self.backoff.delay_ms},
            "remove_on_complete": {"count": self.remove_on_complete.count, "age_seconds": self.remove_on_complete.age_seconds},
            "remove_on_fail": {"count": self.remove_on_fail.count, "age_seconds": self.remove_on_fail.age_seconds},
            "repeat": {"pattern": self.repeat.pattern} if self.repeat else None,
            "job_id": self.job_id,
        }


@dataclass(slots=True)
class JobHandle:
    id: str
    name: str
    lane: str


@dataclass(slots=True)
class Job:
    id: str
    name: str
    lane: str
    payload: dict[str, Any]
    options: JobOptions
    state: JobState
    timestamp_ms: int
    progress: int = 0
    attempts_made: int = 0
    attempts_started: int = 0
    ready_at_ms: Optional[int] = None
    processed_on_ms: Optional[int] = None
    finished_on_ms: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Any = None
    repeat_key: Optional[str] = None
    state_history: list[JobState] = field(default_factory=list)

    # ----------------------------- transitions ----------------------------- #
    def _transition(self, state: JobState) -> None:
        self.state = state
        self.state_history.append(state)

    def mark_active(self, now_ms: int) -> None:
        self._transition(JobState.ACTIVE)
        self.attempts_started += 1
        self.processed_on_ms = now_ms
        self.ready_at_ms = None

    def mark_completed(self, now_ms: int, return_value: Any) -> None:
        self._transition(JobState.COMPLETED)
        self.return_value = return_value
        self.finished_on_ms = now_ms

    def mark_failed(self, now_ms: int, reason: str) -> Optional[int]:
        """Record a failed attempt. Returns the retry delay in ms, or None when terminal."""
        self.attempts_made += 1
        self.failed_reason = reason
        self._transition(JobState.FAILED)
        if self.attempts_made >= self.options.attempts:
            self.finished_on_ms = now_ms
            return None
        delay_ms = retry_delay_ms(self.options.backoff, self.attempts_made)
        if delay_ms > 0:
            self._transition(JobState.DELAYED)
            self.ready_at_ms = now_ms + delay_ms
        else:
            self._transition(JobState.WAITING)
        return delay_ms

    def mark_waiting(self) -> None:
        self._transition(JobState.WAITING)
        self.ready_at_ms = None

    def handle(self) -> JobHandle:
        return JobHandle(id=self.id, name=self.name, lane=self.lane)

    # ---------------------------- serialisation ---------------------------- #
    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "lane": self.lane,
            "payload": self.payload,
            "options": self.options.to_dict(),
            "state": self.state.value,
            "timestamp_ms": self.timestamp_ms,
            "progress": self.progress,
            "attempts_made": self.attempts_made,
            "attempts_started": self.attempts_started,
            "ready_at_ms": self.ready_at_ms,
            "processed_on_ms": self.processed_on_ms,
            "finished_on_ms": self.finished_on_ms,
            "failed_reason": self.failed_reason,
            "return_value": self.return_value,
            "repeat_key": self.repeat_key,
            "state_history": [s.value for s in self.state_history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            name=data["name"],
            lane=data["lane"],
            payload=data.get("payload") or {},
            options=JobOptions.from_dict(data.get("options") or {}),
            state=JobState(data["state"]),
            timestamp_ms=int(data["timestamp_ms"]),
            progress=int(data.get("progress", 0)),
            attempts_made=int(data.get("attempts_made", 0)),
            attempts_started=int(data.get("attempts_started", 0)),
            ready_at_ms=data.get("ready_at_ms"),
            processed_on_ms=data.get("processed_on_ms"),
            finished_on_ms=data.get("finished_on_ms"),
            failed_reason=data.get("failed_reason"),
            return_value=data.get("return_value"),
            repeat_key=data.get("repeat_key"),
            state_history=[JobState(s) for s in data.get("state_history", [])],
        )


@dataclass(slots=True)
class RepeatableJob:
    key: str
    name: str
    lane: str
    pattern: str
    job_id: Optional[str]
    payload: dict[str, Any]
    options: dict[str, Any]
    next_run_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "lane": self.lane,
            "pattern": self.pattern,
            "job_id": self.job_id,
            "payload": self.payload,
            "options": self.options,
            "next_run_ms": self.next_run_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepeatableJob":
        return cls(**data)


# ------------------------------ shared helpers ------------------------------ #
def retry_delay_ms(backoff: BackoffOptions, attempts_made: int) -> int:
    if backoff.type == "fixed":
        return max(0, int(backoff.delay_ms))
    seconds = compute_backoff_seconds(attempts_made, base=backoff.delay_ms / 1000.0)
    return int(round(seconds * 1000))


def repeat_key(name: str, job_id: Optional[str], pattern: str) -> str:
    return f"{name}:{job_id or ''}:::{pattern}"


def new_repeatable(lane: str, name: str, payload: dict[str, Any], options: JobOptions, now: datetime) -> RepeatableJob:
    assert options.repeat is not None
    pattern = options.repeat.pattern
    return RepeatableJob(
        key=repeat_key(name, options.job_id, pattern),
        name=name,
        lane=lane,
        pattern=pattern,
        job_id=options.job_id,
        payload=payload,
        options=replace(options, repeat=None, job_id=None).to_dict(),
        next_run_ms=epoch_ms(next_fire_time(pattern, now)),
    )


def repeat_instance(rep: RepeatableJob, now_ms: int) -> Job:
    """Delayed job that fires at ``rep.next_run_ms``; its id is unique per fire time."""
    job_id = f"repeat:{rep.key}:{rep.next_run_ms}"
    job = Job(
        id=job_id,
        name=rep.name,
        lane=rep.lane,
        payload=dict(rep.payload),
        options=JobOptions.from_dict(rep.options),
        state=JobState.DELAYED,
        timestamp_ms=now_ms,
        ready_at_ms=rep.next_run_ms,
        repeat_key=rep.key,
    )
    job.state_history.append(JobState.DELAYED)
    return job


def advance_repeatable(rep: RepeatableJob, now: datetime) -> None:
    rep.next_run_ms = epoch_ms(next_fire_time(rep.pattern, now))


def lock_duration_ms() -> int:
    return int(QUEUE_SETTINGS.get("lock_duration_ms") or 30000)  # type: ignore[arg-type]


def retention_victims(finished: list[tuple[int, str]], retention: RetentionOptions, now_ms: int) -> list[str]:
    """Ids to drop from a (finished_on_ms, id) list ordered oldest first."""
    victims: list[str] = []
    keep = list(finished)
    if retention.age_seconds is not None:
        cutoff = now_ms - retention.age_seconds * 1000
        victims.extend(job_id for ts, job_id in keep if ts < cutoff)
        keep = [(ts, job_id) for ts, job_id in keep if ts >= cutoff]
    if retention.count is not None and len(keep) > retention.count:
        excess = len(keep) - retention.count
        victims.extend(job_id for _, job_id in keep[:excess])
    return victims


class JobStore(Protocol):
    def add(self, lane: str, name: str, payload: dict[str, Any], options: Optional[JobOptions] = None) -> JobHandle: ...
    def fetch_next(self, lane: str, *, block: bool = True, timeout: Optional[float] = None) -> Optional[Job]: ...
    def update_progress(self, job: Job, progress: int) -> None: ...
    def extend_lease(self, job: Job) -> bool: ...
    def complete(self, job: Job, return_value: Any = None) -> None: ...
    def fail(self, job: Job, reason: str) -> JobState: ...
    def get_job(self, lane: str, job_id: str) -> Optional[Job]: ...
    def get_counts(self, lane: str) -> dict[str, int]: ...
    def get_repeatable_jobs(self, lane: str) -> list[RepeatableJob]: ...
    def remove_repeatable_by_key(self, lane: str, key: str) -> bool: ...
    def snapshot(self) -> dict: ...
    def close(self) -> None: ...


# ------------------------------ in-memory store ----------------------------- #
@dataclass
class _Lane:
    ready: deque[str] = field(default_factory=deque)
    delayed: list[tuple[int, int, str]] = field(default_factory=list)  # (ready_at_ms, seq, job_id)
    active: dict[str, int] = field(default_factory=dict)               # job_id -> lease expiry ms
    completed: list[tuple[int, str]] = field(default_factory=list)     # (finished_on_ms, job_id)
    failed: list[tuple[int, str]] = field(default_factory=list)
    repeatables: dict[str, RepeatableJob] = field(default_factory=dict)


class InMemoryJobStore:
    def __init__(self, *, clock: Callable[[], datetime] = utc_now, lock_ms: Optional[int] = None) -> None:
        self._clock = clock
        self._lock_ms = int(lock_ms or lock_duration_ms())
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._lanes: dict[str, _Lane] = {}
        self._jobs: dict[tuple[str, str], Job] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)
        self._closed = False

    # ----------------------------- internal helpers ----------------------------- #
    def _lane(self, lane: str) -> _Lane:
        return self._lanes.setdefault(lane, _Lane())

    def _now_ms(self) -> int:
        return epoch_ms(self._clock())

    def _push_delayed(self, state: _Lane, job: Job) -> None:
        heapq.heappush(state.delayed, (int(job.ready_at_ms or 0), next(self._seq), job.id))

    def _promote_delayed(self, lane: str, state: _Lane) -> None:
        now_ms = self._now_ms()
        while state.delayed and state.delayed[0][0] <= now_ms:
            _, _, job_id = heapq.heappop(state.delayed)
            job = self._jobs.get((lane, job_id))
            if job is None or job.state != JobState.DELAYED:
                continue
            job.mark_waiting()
            state.ready.append(job_id)

    def _requeue_failed(self, lane: str, state: _Lane, job: Job, delay_ms: Optional[int], now_ms: int) -> None:
        if delay_ms is None:
            state.failed.append((now_ms, job.id))
            self._trim(lane, state.failed, job.options.remove_on_fail)
        elif job.state == JobState.DELAYED:
            self._push_delayed(state, job)
        else:
            state.ready.append(job.id)

    def _recover_stalled(self, lane: str, state: _Lane) -> None:
        now_ms = self._now_ms()
        stalled = [job_id for job_id, expires_ms in state.active.items() if expires_ms <= now_ms]
        for job_id in stalled:
            del state.active[job_id]
            job = self._jobs.get((lane, job_id))
            if job is None:
                continue
            delay_ms = job.mark_failed(now_ms, STALLED_REASON)
            self._requeue_failed(lane, state, job, delay_ms, now_ms)
            logger.warning("Recovered stalled job", lane=lane, job_id=job_id, attempts_made=job.attempts_made, state=job.state.value)

    def _seconds_until_next_due(self, state: _Lane) -> Optional[float]:
        """Seconds until the next delayed job is ready or the next lease lapses."""
        due = [state.delayed[0][0]] if state.delayed else []
        due.extend(state.active.values())
        if not due:
            return None
        return max(0.0, (min(due) - self._now_ms()) / 1000.0)

    def _trim(self, lane: str, finished: list[tuple[int, str]], retention: RetentionOptions) -> None:
        victims = set(retention_victims(finished, retention, self._now_ms()))
        if not victims:
            return
        finished[:] = [(ts, job_id) for ts, job_id in finished if job_id not in victims]
        for job_id in victims:
            self._jobs.pop((lane, job_id), None)

    def _ensure_open(self) -> None:
        if self._closed:
            raise JobStoreUnavailable("Job store closed")

    # ----------------------------- public API ----------------------------- #
    def add(self, lane: str, name: str, payload: dict[str, Any], options: Optional[JobOptions] = None) -> JobHandle:
        options = options or JobOptions.defaults()
        with self._lock:
            self._ensure_open()
            state = self._lane(lane)
            now_ms = self._now_ms()
            if options.repeat is not None:
                return self._add_repeatable(lane, state, name, payload, options, now_ms)
            job_id = options.job_id or str(next(self._ids))
            existing = self._jobs.get((lane, job_id))
            if existing is not None:
                logger.debug("Duplicate job id ignored", lane=lane, job_id=job_id)
                return existing.handle()
            job = Job(
                id=job_id,
                name=name,
                lane=lane,
                payload=dict(payload),
                options=options,
                state=JobState.WAITING,
                timestamp_ms=now_ms,
            )
            job.state_history.append(JobState.WAITING)
            self._jobs[(lane, job_id)] = job
            state.ready.append(job_id)
            self._cv.notify()
            return job.handle()

    def _add_repeatable(self, lane: str, state: _Lane, name: str, payload: dict[str, Any], options: JobOptions, now_ms: int) -> JobHandle:
        rep = new_repeatable(lane, name, payload, options, self._clock())
        rep = state.repeatables.setdefault(rep.key, rep)
        job = repeat_instance(rep, now_ms)
        if (lane, job.id) not in self._jobs:
            self._jobs[(lane, job.id)] = job
            self._push_delayed(state, job)
            self._cv.notify()
        return job.handle()

    def fetch_next(self, lane: str, *, block: bool = True, timeout: Optional[float] = None) -> Optional[Job]:
        """Activate the next ready job. Returns None if non-blocking and empty, on timeout, or once closed."""
        end_time = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            state = self._lane(lane)
            while True:
                if self._closed:
                    return None
                self._recover_stalled(lane, state)
                self._promote_delayed(lane, state)
                if state.ready:
                    job_id = state.ready.popleft()
                    job = self._jobs[(lane, job_id)]
                    now_ms = self._now_ms()
                    job.mark_active(now_ms)
                    state.active[job_id] = now_ms + self._lock_ms
                    if job.repeat_key and job.repeat_key in state.repeatables:
                        rep = state.repeatables[job.repeat_key]
                        advance_repeatable(rep, self._clock())
                        self._add_repeatable_instance(lane, state, rep)
                    return Job.from_dict(job.to_dict())
                if not block:
                    return None
                remaining = None if end_time is None else max(0.0, end_time - time.monotonic())
                if end_time is not None and remaining == 0:
                    return None
                wait_for = self._seconds_until_next_due(state)
                if remaining is not None:
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cv.wait(timeout=wait_for)

    def _add_repeatable_instance(self, lane: str, state: _Lane, rep: RepeatableJob) -> None:
        job = repeat_instance(rep, self._now_ms())
        if (lane, job.id) not in self._jobs:
            self._jobs[(lane, job.id)] = job
            self._push_delayed(state, job)

    def update_progress(self, job: Job, progress: int) -> None:
        with self._lock:
            job.progress = max(0, min(100, int(progress)))
            stored = self._jobs.get((job.lane, job.id))
            if stored is not None and self.extend_lease(job):
                stored.progress = job.progress

    def _holds(self, state: _Lane, job: Job) -> Optional[Job]:
        """Stored record when ``job`` is still the active attempt, else None."""
        stored = self._jobs.get((job.lane, job.id))
        if stored is None or job.id not in state.active or stored.attempts_started != job.attempts_started:
            return None
        return stored

    def extend_lease(self, job: Job) -> bool:
        """Push the active job's lease forward. False once the job is no longer held."""
        with self._lock:
            state = self._lane(job.lane)
            if self._holds(state, job) is None:
                return False
            state.active[job.id] = self._now_ms() + self._lock_ms
            return True

    def complete(self, job: Job, return_value: Any = None) -> None:
        with self._lock:
            state = self._lane(job.lane)
            stored = self._holds(state, job)
            if stored is None:
                raise JobStoreError(f"Job {job.id} is not active")
            del state.active[job.id]
            now_ms = self._now_ms()
            stored.mark_completed(now_ms, return_value)
            state.completed.append((now_ms, job.id))
            self._trim(job.lane, state.completed, stored.options.remove_on_complete)

    def fail(self, job: Job, reason: str) -> JobState:
        with self._lock:
            state = self._lane(job.lane)
            stored = self._holds(state, job)
            if stored is None:
                raise JobStoreError(f"Job {job.id} is not active")
            del state.active[job.id]
            now_ms = self._now_ms()
            delay_ms = stored.mark_failed(now_ms, reason)
            self._requeue_failed(job.lane, state, stored, delay_ms, now_ms)
            self._cv.notify()
            return stored.state

    def get_job(self, lane: str, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get((lane, job_id))
            return Job.from_dict(job.to_dict()) if job else None

    def get_counts(self, lane: str) -> dict[str, int]:
        with self._lock:
            state = self._lane(lane)
            return {
                "waiting": len(state.ready),
                "active": len(state.active),
                "completed": len(state.completed),
                "failed": len(state.failed),
                "delayed": len(state.delayed),
            }

    def get_repeatable_jobs(self, lane: str) -> list[RepeatableJob]:
        with self._lock:
            reps = self._lane(lane).repeatables.values()
            return sorted((RepeatableJob.from_dict(r.to_dict()) for r in reps), key=lambda r: r.next_run_ms)

    def remove_repeatable_by_key(self, lane: str, key: str) -> bool:
        with self._lock:
            state = self._lane(lane)
            if state.repeatables.pop(key, None) is None:
                return False
            pending = []
            for _, _, job_id in state.delayed:
                job = self._jobs.get((lane, job_id))
                if job is not None and job.repeat_key == key:
                    pending.append(job_id)
            if pending:
                state.delayed = [entry for entry in state.delayed if entry[2] not in pending]
                heapq.heapify(state.delayed)
                for job_id in pending:
                    self._jobs.pop((lane, job_id), None)
            return True

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._cv.notify_all()

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Drop every lane and job. Intended for test isolation only."""
        with self._lock:
            self._lanes.clear()
            self._jobs.clear()
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def snapshot(self) -> dict:
        with self._lock:
            return {
                "backend": "memory",
                "closed": self._closed,
                "lanes": {name: self.get_counts(name) for name in self._lanes},
            }


__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "Job",
    "JobHandle",
    "JobOptions",
    "JobState",
    "BackoffOptions",
    "RetentionOptions",
    "RepeatOptions",
    "RepeatableJob",
    "JobStoreError",
    "JobStoreUnavailable",
    "retry_delay_ms",
    "repeat_key",
    "retention_victims",
    "lock_duration_ms",
    "STALLED_REASON",
]
