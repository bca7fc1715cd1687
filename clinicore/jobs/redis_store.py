"""Redis-backed job store.

Persistence across process restarts and shared by every worker process that
points at the same Redis database.

Data structures per lane (``{prefix}:{lane}:*``):
 1. Hash   jobs       - job id -> serialized job record
 2. List   wait       - ids ready to execute (FIFO)
 3. ZSet   delayed    - score=ready_at_ms, retries in backoff + next repeat instances
 4. ZSet   active     - score=lease expiry ms, ids currently held by a worker
 5. ZSet   completed  - score=finished_on_ms
 6. ZSet   failed     - score=finished_on_ms (terminal failures only)
 7. Hash   repeat     - repeat key -> serialized registration
 8. String id         - counter for generated job ids

Every state transition runs as one WATCH/MULTI/EXEC transaction, so a job is
always in exactly one of wait, delayed, active, completed or failed even if the
process dies mid-transition. A conflicting write from another process makes
redis-py re-run the transition against fresh data.

On fetch:
  - Active ids whose lease has lapsed are stalled: the attempt counts as
    failed and the job goes back to wait / delayed (or to failed when out of
    attempts).
  - Delayed ids whose score <= now are promoted to wait.
  - The head of wait is claimed: removed from wait and leased in active.

Redis errors are surfaced as ``JobStoreUnavailable``; callers decide whether to
retry. Falling back to the in-memory store is only done at startup by
``create_job_store``.
"""
from __future__ import annotations

import json
import threading
import time
from datetime import datetime
from typing import Any, Callable, Optional

import redis

from clinicore.config import QUEUE_SETTINGS
from clinicore.jobs.store import (
    STALLED_REASON,
    Job,
    JobHandle,
    JobOptions,
    JobState,
    JobStoreError,
    JobStoreUnavailable,
    RepeatableJob,
    RetentionOptions,
    advance_repeatable,
    lock_duration_ms,
    new_repeatable,
    repeat_instance,
    retention_victims,
)
from clinicore.utils import get_logger
from clinicore.utils.time import epoch_ms, utc_now

logger = get_logger(__name__)

LANE_SUFFIXES = ("jobs", "wait", "delayed", "active", "completed", "failed", "repeat", "id")


class RedisJobStore:
    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        lock_ms: Optional[int] = None,
    ) -> None:
        self._prefix: str = str(QUEUE_SETTINGS.get("key_prefix", "clinicore"))
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._poll_interval = float(QUEUE_SETTINGS.get("redis_poll_interval_seconds", 0.2))  # type: ignore[arg-type]
        self._lock_ms = int(lock_ms or lock_duration_ms())
        self._clock = clock
        self._lock = threading.RLock()
        self._closed = False
        self._client: redis.Redis = client if client is not None else self._connect()

    def _connect(self) -> redis.Redis:
        host = str(QUEUE_SETTINGS.get("redis_host", "localhost"))
        port = int(QUEUE_SETTINGS.get("redis_port", 6379))  # type: ignore[arg-type]
        logger.info("Connecting to Redis", host=host, port=port)
        return redis.Redis(
            host=host,
            port=port,
            db=int(QUEUE_SETTINGS.get("redis_db", 0)),  # type: ignore[arg-type]
            password=QUEUE_SETTINGS.get("redis_password") or None,  # type: ignore[arg-type]
            socket_connect_timeout=self._health_check_timeout,
            decode_responses=True,
        )

    # ----------------------------- internal helpers ----------------------------- #
    def _key(self, lane: str, suffix: str) -> str:
        return f"{self._prefix}:{lane}:{suffix}"

    def _now_ms(self) -> int:
        return epoch_ms(self._clock())

    def _ensure_open(self) -> None:
        if self._closed:
            raise JobStoreUnavailable("Job store closed")

    def _transaction(self, fn: Callable[[Any], Any], *watch_keys: str) -> Any:
        """Run ``fn`` under WATCH; reads before ``pipe.multi()`` are immediate, writes after it are atomic."""
        return self._client.transaction(fn, *watch_keys, value_from_callable=True)

    def _load(self, lane: str, job_id: str, reader: Any = None) -> Optional[Job]:
        raw = (reader or self._client).hget(self._key(lane, "jobs"), job_id)
        if raw is None:
            return None
        return Job.from_dict(json.loads(raw))

    def _finished(self, reader: Any, lane: str, suffix: str) -> list[tuple[int, str]]:
        entries = reader.zrange(self._key(lane, suffix), 0, -1, withscores=True)
        return [(int(score), job_id) for job_id, score in entries or []]

    def _held(self, pipe: Any, job: Job) -> Optional[Job]:
        """Stored record when ``job`` is still the active attempt, else None."""
        if pipe.zscore(self._key(job.lane, "active"), job.id) is None:
            return None
        stored = self._load(job.lane, job.id, pipe)
        if stored is None or stored.attempts_started != job.attempts_started:
            return None
        return stored

    def _queue_save(self, pipe: Any, job: Job) -> None:
        pipe.hset(self._key(job.lane, "jobs"), job.id, json.dumps(job.to_dict()))

    def _queue_trim(
        self,
        pipe: Any,
        lane: str,
        suffix: str,
        finished: list[tuple[int, str]],
        retention: RetentionOptions,
        now_ms: int,
    ) -> None:
        for job_id in retention_victims(sorted(finished), retention, now_ms):
            pipe.zrem(self._key(lane, suffix), job_id)
            pipe.hdel(self._key(lane, "jobs"), job_id)

    def _queue_failed(self, pipe: Any, job: Job, delay_ms: Optional[int], now_ms: int, failed: list[tuple[int, str]]) -> None:
        """Queue the writes that route a job after ``mark_failed``."""
        self._queue_save(pipe, job)
        if delay_ms is None:
            pipe.zadd(self._key(job.lane, "failed"), {job.id: now_ms})
            self._queue_trim(pipe, job.lane, "failed", failed + [(now_ms, job.id)], job.options.remove_on_fail, now_ms)
        elif job.state == JobState.DELAYED:
            pipe.zadd(self._key(job.lane, "delayed"), {job.id: int(job.ready_at_ms or now_ms)})
        else:
            pipe.rpush(self._key(job.lane, "wait"), job.id)

    def _recover_stalled(self, lane: str) -> None:
        active_key = self._key(lane, "active")
        now_ms = self._now_ms()
        for job_id in self._client.zrangebyscore(active_key, 0, now_ms) or []:

            def _recover(pipe: Any, job_id: str = job_id) -> Optional[Job]:
                expires_ms = pipe.zscore(active_key, job_id)
                if expires_ms is None or expires_ms > now_ms:
                    return None  # finished or renewed since the scan
                job = self._load(lane, job_id, pipe)
                failed = self._finished(pipe, lane, "failed")
                pipe.multi()
                pipe.zrem(active_key, job_id)
                if job is None:
                    return None
                delay_ms = job.mark_failed(now_ms, STALLED_REASON)
                self._queue_failed(pipe, job, delay_ms, now_ms, failed)
                return job

            job = self._transaction(_recover, active_key, self._key(lane, "jobs"), self._key(lane, "failed"))
            if job is not None:
                logger.warning(
                    "Recovered stalled job",
                    lane=lane,
                    job_id=job.id,
                    attempts_made=job.attempts_made,
                    state=job.state.value,
                )

    def _promote_delayed(self, lane: str) -> None:
        delayed_key = self._key(lane, "delayed")
        promoted = 0
        for job_id in self._client.zrangebyscore(delayed_key, 0, self._now_ms()) or []:

            def _promote(pipe: Any, job_id: str = job_id) -> bool:
                if pipe.zscore(delayed_key, job_id) is None:
                    return False  # another process promoted it
                job = self._load(lane, job_id, pipe)
                pipe.multi()
                pipe.zrem(delayed_key, job_id)
                if job is None:
                    return False
                job.mark_waiting()
                self._queue_save(pipe, job)
                pipe.rpush(self._key(lane, "wait"), job_id)
                return True

            if self._transaction(_promote, delayed_key, self._key(lane, "jobs")):
                promoted += 1
        if promoted:
            logger.debug("Promoted delayed jobs", lane=lane, count=promoted)

    def _claim(self, lane: str) -> tuple[Optional[str], Optional[Job]]:
        """Move the head of wait into active. Returns ``(job_id, job)``; both None when wait is empty."""
        wait_key = self._key(lane, "wait")
        jobs_key = self._key(lane, "jobs")
        repeat_hash = self._key(lane, "repeat")

        def _take(pipe: Any) -> tuple[Optional[str], Optional[Job]]:
            job_id = pipe.lindex(wait_key, 0)
            if job_id is None:
                return None, None
            job = self._load(lane, job_id, pipe)
            rep = None
            next_instance = None
            if job is not None and job.repeat_key:
                raw = pipe.hget(repeat_hash, job.repeat_key)
                if raw is not None:
                    rep = RepeatableJob.from_dict(json.loads(raw))
                    advance_repeatable(rep, self._clock())
                    next_instance = repeat_instance(rep, self._now_ms())
                    if pipe.hexists(jobs_key, next_instance.id):
                        next_instance = None
            pipe.multi()
            pipe.lpop(wait_key)
            if job is None:
                return job_id, None
            now_ms = self._now_ms()
            job.mark_active(now_ms)
            self._queue_save(pipe, job)
            pipe.zadd(self._key(lane, "active"), {job_id: now_ms + self._lock_ms})
            if rep is not None:
                pipe.hset(repeat_hash, rep.key, json.dumps(rep.to_dict()))
            if next_instance is not None:
                self._queue_save(pipe, next_instance)
                pipe.zadd(self._key(lane, "delayed"), {next_instance.id: int(next_instance.ready_at_ms or 0)})
            return job_id, job

        return self._transaction(_take, wait_key, jobs_key, repeat_hash)

    # ----------------------------- public API ----------------------------- #
    def health_check(self) -> bool:
        try:
            self._client.ping()
            return True
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    def add(self, lane: str, name: str, payload: dict[str, Any], options: Optional[JobOptions] = None) -> JobHandle:
        options = options or JobOptions.defaults()
        with self._lock:
            self._ensure_open()
            try:
                if options.repeat is not None:
                    return self._add_repeatable(lane, name, payload, options)
                job_id = options.job_id or str(self._client.incr(self._key(lane, "id")))
                job = Job(
                    id=job_id,
                    name=name,
                    lane=lane,
                    payload=dict(payload),
                    options=options,
                    state=JobState.WAITING,
                    timestamp_ms=self._now_ms(),
                )
                job.state_history.append(JobState.WAITING)
                jobs_key = self._key(lane, "jobs")

                def _insert(pipe: Any) -> bool:
                    if pipe.hexists(jobs_key, job_id):
                        return False
                    pipe.multi()
                    self._queue_save(pipe, job)
                    pipe.rpush(self._key(lane, "wait"), job_id)
                    return True

                if not self._transaction(_insert, jobs_key):
                    logger.debug("Duplicate job id ignored", lane=lane, job_id=job_id)
                return job.handle()
            except redis.RedisError as e:
                logger.error("Redis error during add", lane=lane, name=name, error=str(e))
                raise JobStoreUnavailable(f"Failed to enqueue job on lane '{lane}'") from e

    def _add_repeatable(self, lane: str, name: str, payload: dict[str, Any], options: JobOptions) -> JobHandle:
        candidate = new_repeatable(lane, name, payload, options, self._clock())
        repeat_hash = self._key(lane, "repeat")
        jobs_key = self._key(lane, "jobs")

        def _register(pipe: Any) -> JobHandle:
            raw = pipe.hget(repeat_hash, candidate.key)
            rep = RepeatableJob.from_dict(json.loads(raw)) if raw is not None else candidate
            instance = repeat_instance(rep, self._now_ms())
            exists = pipe.hexists(jobs_key, instance.id)
            pipe.multi()
            if raw is None:
                pipe.hset(repeat_hash, rep.key, json.dumps(rep.to_dict()))
            if not exists:
                self._queue_save(pipe, instance)
                pipe.zadd(self._key(lane, "delayed"), {instance.id: int(instance.ready_at_ms or 0)})
            return instance.handle()

        return self._transaction(_register, repeat_hash, jobs_key)

    def fetch_next(self, lane: str, *, block: bool = True, timeout: Optional[float] = None) -> Optional[Job]:
        """Activate the next ready job, or None on timeout / non-blocking empty."""
        if self._closed:
            return None
        end_time = None if timeout is None else time.monotonic() + timeout
        try:
            while not self._closed:
                self._recover_stalled(lane)
                self._promote_delayed(lane)
                job_id, job = self._claim(lane)
                if job is not None:
                    return job
                if job_id is not None:
                    logger.warning("Job record missing for queued id", lane=lane, job_id=job_id)
                    continue
                if not block:
                    return None
                remaining = None if end_time is None else end_time - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                time.sleep(self._poll_interval if remaining is None else min(self._poll_interval, remaining))
            return None
        except redis.RedisError as e:
            logger.error("Redis error during fetch", lane=lane, error=str(e))
            raise JobStoreUnavailable(f"Failed to fetch job from lane '{lane}'") from e

    def update_progress(self, job: Job, progress: int) -> None:
        job.progress = max(0, min(100, int(progress)))
        active_key = self._key(job.lane, "active")

        def _progress(pipe: Any) -> bool:
            stored = self._held(pipe, job)
            if stored is None:
                return False
            stored.progress = job.progress
            pipe.multi()
            self._queue_save(pipe, stored)
            pipe.zadd(active_key, {job.id: self._now_ms() + self._lock_ms})
            return True

        try:
            self._transaction(_progress, active_key, self._key(job.lane, "jobs"))
        except redis.RedisError as e:
            raise JobStoreUnavailable(f"Failed to update progress for job {job.id}") from e

    def extend_lease(self, job: Job) -> bool:
        """Push the active job's lease forward. False once the job is no longer held."""
        active_key = self._key(job.lane, "active")

        def _extend(pipe: Any) -> bool:
            if self._held(pipe, job) is None:
                return False
            pipe.multi()
            pipe.zadd(active_key, {job.id: self._now_ms() + self._lock_ms})
            return True

        try:
            return bool(self._transaction(_extend, active_key, self._key(job.lane, "jobs")))
        except redis.RedisError as e:
            raise JobStoreUnavailable(f"Failed to extend lease for job {job.id}") from e

    def complete(self, job: Job, return_value: Any = None) -> None:
        active_key = self._key(job.lane, "active")
        completed_key = self._key(job.lane, "completed")

        def _complete(pipe: Any) -> None:
            stored = self._held(pipe, job)
            if stored is None:
                raise JobStoreError(f"Job {job.id} is not active")
            finished = self._finished(pipe, job.lane, "completed")
            now_ms = self._now_ms()
            stored.mark_completed(now_ms, return_value)
            pipe.multi()
            pipe.zrem(active_key, job.id)
            self._queue_save(pipe, stored)
            pipe.zadd(completed_key, {job.id: now_ms})
            self._queue_trim(pipe, job.lane, "completed", finished + [(now_ms, job.id)], stored.options.remove_on_complete, now_ms)

        try:
            self._transaction(_complete, active_key, self._key(job.lane, "jobs"), completed_key)
        except redis.RedisError as e:
            raise JobStoreUnavailable(f"Failed to complete job {job.id}") from e

    def fail(self, job: Job, reason: str) -> JobState:
        active_key = self._key(job.lane, "active")

        def _fail(pipe: Any) -> JobState:
            stored = self._held(pipe, job)
            if stored is None:
                raise JobStoreError(f"Job {job.id} is not active")
            failed = self._finished(pipe, job.lane, "failed")
            now_ms = self._now_ms()
            delay_ms = stored.mark_failed(now_ms, reason)
            pipe.multi()
            pipe.zrem(active_key, job.id)
            self._queue_failed(pipe, stored, delay_ms, now_ms, failed)
            return stored.state

        try:
            return self._transaction(_fail, active_key, self._key(job.lane, "jobs"), self._key(job.lane, "failed"))
        except redis.RedisError as e:
            raise JobStoreUnavailable(f"Failed to record failure for job {job.id}") from e

    def get_job(self, lane: str, job_id: str) -> Optional[Job]:
        try:
            return self._load(lane, job_id)
        except redis.RedisError as e:
            raise JobStoreUnavailable(f"Failed to load job {job_id}") from e

    def get_counts(self, lane: str) -> dict[str, int]:
        try:
            return {
                "waiting": int(self._client.llen(self._key(lane, "wait")) or 0),
                "active": int(self._client.zcard(self._key(lane, "active")) or 0),
                "completed": int(self._client.zcard(self._key(lane, "completed")) or 0),
                "failed": int(self._client.zcard(self._key(lane, "failed")) or 0),
                "delayed": int(self._client.zcard(self._key(lane, "delayed")) or 0),
            }
        except redis.RedisError as e:
            logger.error("Error getting queue counts", lane=lane, error=str(e))
            raise JobStoreUnavailable(f"Failed to read counts for lane '{lane}'") from e

    def get_repeatable_jobs(self, lane: str) -> list[RepeatableJob]:
        try:
            raw = self._client.hgetall(self._key(lane, "repeat")) or {}
        except redis.RedisError as e:
            raise JobStoreUnavailable(f"Failed to list repeatable jobs for lane '{lane}'") from e
        reps = [RepeatableJob.from_dict(json.loads(value)) for value in raw.values()]
        return sorted(reps, key=lambda r: r.next_run_ms)

    def remove_repeatable_by_key(self, lane: str, key: str) -> bool:
        repeat_hash = self._key(lane, "repeat")
        delayed_key = self._key(lane, "delayed")
        instance_prefix = f"repeat:{key}:"

        def _remove(pipe: Any) -> bool:
            if not pipe.hexists(repeat_hash, key):
                return False
            pending = [job_id for job_id in pipe.zrange(delayed_key, 0, -1) or [] if job_id.startswith(instance_prefix)]
            pipe.multi()
            pipe.hdel(repeat_hash, key)
            for job_id in pending:
                pipe.zrem(delayed_key, job_id)
                pipe.hdel(self._key(lane, "jobs"), job_id)
            return True

        try:
            return bool(self._transaction(_remove, repeat_hash, delayed_key))
        except redis.RedisError as e:
            raise JobStoreUnavailable(f"Failed to remove repeatable job '{key}'") from e

    def purge(self, lane: str) -> None:
        """Remove every key of a lane (for testing)."""
        with self._lock:
            self._client.delete(*(self._key(lane, suffix) for suffix in LANE_SUFFIXES))
            logger.info("Redis lane purged", lane=lane)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        try:
            self._client.close()
        except redis.RedisError as e:  # pragma: no cover
            logger.warning("Error closing Redis client", error=str(e))

    def snapshot(self) -> dict:
        return {
            "backend": "redis",
            "closed": self._closed,
            "redis_active": self.health_check(),
        }


__all__ = ["RedisJobStore"]
