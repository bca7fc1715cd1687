"""Tests for the Redis-backed job store against a mocked Redis client.

The mock keeps hashes, lists and sorted sets in plain dicts so the store's key
layout and state transitions can be checked without a server. Transactions are
emulated like redis-py pipelines: commands before ``multi()`` run immediately,
commands after it are buffered and applied on ``execute()``. Setting
``mock_client.fail_exec`` makes the next EXEC drop the connection with nothing
applied.
"""
import pytest
import redis
from unittest.mock import MagicMock, patch

from clinicore.config import QUEUE_SETTINGS
from clinicore.jobs.redis_store import RedisJobStore
from clinicore.jobs.report_queue import ReportQueue
from clinicore.jobs.store import BackoffOptions, JobOptions, JobState, JobStoreError, JobStoreUnavailable, STALLED_REASON
from clinicore.jobs.worker import create_job_store
from clinicore.jobs.store import InMemoryJobStore

from conftest import FrozenClock

LANE = "clinic-reports"
KEY = "clinicore:clinic-reports"


class FakePipeline:
    def __init__(self, client):
        self._client = client
        self._queued = []
        self._in_multi = False

    def watch(self, *keys):
        return True

    def multi(self):
        self._in_multi = True

    def execute(self):
        queued, self._queued, self._in_multi = self._queued, [], False
        if self._client.fail_exec:
            self._client.fail_exec = False
            raise redis.ConnectionError("Connection closed by server")
        return [getattr(self._client, name)(*args, **kwargs) for name, args, kwargs in queued]

    def __getattr__(self, name):
        command = getattr(self._client, name)

        def call(*args, **kwargs):
            if self._in_multi:
                self._queued.append((name, args, kwargs))
                return self
            return command(*args, **kwargs)

        return call


@pytest.fixture
def mock_redis():
    """MagicMock Redis client whose commands operate on in-process dicts."""
    hashes: dict[str, dict[str, str]] = {}
    lists: dict[str, list[str]] = {}
    zsets: dict[str, dict[str, float]] = {}
    counters: dict[str, int] = {}

    def hget(key, field):
        return hashes.get(key, {}).get(field)

    def hset(key, field, value):
        hashes.setdefault(key, {})[field] = value
        return 1

    def hexists(key, field):
        return field in hashes.get(key, {})

    def hdel(key, field):
        return 1 if hashes.get(key, {}).pop(field, None) is not None else 0

    def hgetall(key):
        return dict(hashes.get(key, {}))

    def incr(key):
        counters[key] = counters.get(key, 0) + 1
        return counters[key]

    def rpush(key, value):
        lists.setdefault(key, []).append(value)
        return len(lists[key])

    def lpop(key):
        items = lists.get(key) or []
        return items.pop(0) if items else None

    def lindex(key, index):
        items = lists.get(key) or []
        return items[index] if -len(items) <= index < len(items) else None

    def llen(key):
        return len(lists.get(key, []))

    def zadd(key, mapping, xx=False):
        bucket = zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if xx and member not in bucket:
                continue
            added += member not in bucket
            bucket[member] = float(score)
        return added

    def zscore(key, member):
        return zsets.get(key, {}).get(member)

    def zrangebyscore(key, min_score, max_score):
        items = sorted(zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return [member for member, score in items if min_score <= score <= max_score]

    def zrange(key, start, end, withscores=False):
        items = sorted(zsets.get(key, {}).items(), key=lambda kv: kv[1])
        if withscores:
            return [(member, float(score)) for member, score in items]
        return [member for member, _ in items]

    def zrem(key, member):
        return 1 if zsets.get(key, {}).pop(member, None) is not None else 0

    def zcard(key):
        return len(zsets.get(key, {}))

    def delete(*keys):
        for key in keys:
            for store in (hashes, lists, zsets, counters):
                store.pop(key, None)
        return len(keys)

    def transaction(func, *watches, value_from_callable=False, **kwargs):
        pipe = FakePipeline(mock_client)
        pipe.watch(*watches)
        value = func(pipe)
        results = pipe.execute()
        return value if value_from_callable else results

    mock_client = MagicMock()
    mock_client.ping.return_value = True
    mock_client.fail_exec = False
    for name, fn in {
        "hget": hget, "hset": hset, "hexists": hexists, "hdel": hdel, "hgetall": hgetall,
        "incr": incr, "rpush": rpush, "lpop": lpop, "lindex": lindex, "llen": llen,
        "zadd": zadd, "zscore": zscore, "zrangebyscore": zrangebyscore, "zrange": zrange, "zrem": zrem,
        "zcard": zcard, "delete": delete, "transaction": transaction,
    }.items():
        getattr(mock_client, name).side_effect = fn
    mock_client.data = {"hashes": hashes, "lists": lists, "zsets": zsets}
    return mock_client


@pytest.fixture
def redis_store(mock_redis, clock):
    return RedisJobStore(mock_redis, clock=clock)


def test_add_uses_prefixed_lane_keys(redis_store, mock_redis):
    handle = redis_store.add(LANE, "schedule-all-reports", {"type": "schedule-all"}, JobOptions.defaults(job_id="schedule-all-1"))
    assert handle.id == "schedule-all-1"
    assert mock_redis.data["lists"]["clinicore:clinic-reports:wait"] == ["schedule-all-1"]
    assert "schedule-all-1" in mock_redis.data["hashes"]["clinicore:clinic-reports:jobs"]


def test_duplicate_job_id_is_not_requeued(redis_store):
    options = JobOptions.defaults(job_id="report-org-1-1")
    redis_store.add(LANE, "report-org-1", {}, options)
    redis_store.add(LANE, "report-org-1", {}, options)
    assert redis_store.get_counts(LANE)["waiting"] == 1


def test_fetch_complete_cycle(redis_store):
    redis_store.add(LANE, "a", {"type": "schedule-all"}, JobOptions.defaults(job_id="a"))
    job = redis_store.fetch_next(LANE, block=False)
    assert job.state == JobState.ACTIVE
    assert redis_store.get_counts(LANE)["active"] == 1

    redis_store.complete(job, {"jobsQueued": 0})
    stored = redis_store.get_job(LANE, "a")
    assert stored.state == JobState.COMPLETED
    assert stored.return_value == {"jobsQueued": 0}
    assert redis_store.get_counts(LANE) == {"waiting": 0, "active": 0, "completed": 1, "failed": 0, "delayed": 0}


def test_blocking_fetch_returns_waiting_job(redis_store):
    redis_store.add(LANE, "a", {}, JobOptions.defaults(job_id="a"))
    job = redis_store.fetch_next(LANE, timeout=1.0)
    assert job is not None and job.id == "a"


def test_failed_attempt_is_delayed_then_promoted(redis_store, clock):
    redis_store.add(LANE, "flaky", {}, JobOptions.defaults(job_id="flaky"))
    job = redis_store.fetch_next(LANE, block=False)
    assert redis_store.fail(job, "smtp down") == JobState.DELAYED
    assert redis_store.get_counts(LANE)["delayed"] == 1
    assert redis_store.fetch_next(LANE, block=False) is None

    clock.advance(seconds=1)
    retried = redis_store.fetch_next(LANE, block=False)
    assert retried.id == "flaky"
    assert retried.attempts_made == 1
    assert retried.failed_reason == "smtp down"


def test_terminal_failure_after_attempts_exhausted(redis_store):
    redis_store.add(LANE, "doomed", {}, JobOptions.defaults(job_id="doomed", backoff=BackoffOptions(delay_ms=0)))
    for expected in (JobState.WAITING, JobState.WAITING, JobState.FAILED):
        assert redis_store.fail(redis_store.fetch_next(LANE, block=False), "boom") == expected
    assert redis_store.get_counts(LANE)["failed"] == 1


def test_recurring_schedule_replaces_registration(redis_store, clock):
    queue = ReportQueue(redis_store, clock=clock)
    queue.setup_recurring_report_schedule()
    queue.setup_recurring_report_schedule()
    repeatables = redis_store.get_repeatable_jobs(LANE)
    assert [r.name for r in repeatables] == ["daily-report-check"]
    assert redis_store.get_counts(LANE)["delayed"] == 1


def test_redis_errors_surface_as_unavailable(redis_store, mock_redis):
    mock_redis.transaction.side_effect = redis.ConnectionError("Connection refused")
    with pytest.raises(JobStoreUnavailable):
        redis_store.add(LANE, "a", {}, JobOptions.defaults(job_id="a"))

    mock_redis.llen.side_effect = redis.ConnectionError("Connection refused")
    with pytest.raises(JobStoreUnavailable):
        redis_store.get_counts(LANE)


def test_health_check_reports_ping_failures(redis_store, mock_redis):
    assert redis_store.health_check() is True
    mock_redis.ping.side_effect = redis.ConnectionError("Connection refused")
    assert redis_store.health_check() is False


def test_create_job_store_falls_back_to_memory_when_unreachable(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    with patch("clinicore.jobs.redis_store.redis.Redis") as redis_cls:
        redis_cls.return_value.ping.side_effect = redis.ConnectionError("Connection refused")
        store = create_job_store()
    assert isinstance(store, InMemoryJobStore)


def test_create_job_store_uses_redis_when_reachable(monkeypatch, mock_redis):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    with patch("clinicore.jobs.redis_store.redis.Redis", return_value=mock_redis):
        store = create_job_store()
    assert isinstance(store, RedisJobStore)


def test_create_job_store_defaults_to_memory(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", False)
    assert isinstance(create_job_store(), InMemoryJobStore)


def test_purge_removes_lane_keys(redis_store, mock_redis):
    redis_store.add(LANE, "a", {}, JobOptions.defaults(job_id="a"))
    redis_store.purge(LANE)
    assert "clinicore:clinic-reports:wait" not in mock_redis.data["lists"]
    assert redis_store.get_counts(LANE)["waiting"] == 0


def test_stalled_job_is_redelivered_by_another_worker(mock_redis, clock):
    crashed = RedisJobStore(mock_redis, clock=clock)
    crashed.add(LANE, "report-org-1", {}, JobOptions.defaults(job_id="report-org-1", backoff=BackoffOptions(delay_ms=0)))
    abandoned = crashed.fetch_next(LANE, block=False)
    assert abandoned is not None

    later = FrozenClock(clock.now)
    later.advance(hours=1)
    survivor = RedisJobStore(mock_redis, clock=later)
    job = survivor.fetch_next(LANE, block=False)

    assert job is not None and job.id == "report-org-1"
    assert job.attempts_made == 1
    assert job.attempts_started == 2
    assert job.failed_reason == STALLED_REASON
    assert survivor.get_counts(LANE)["waiting"] == 0
    assert survivor.get_counts(LANE)["active"] == 1
    with pytest.raises(JobStoreError):
        crashed.complete(abandoned, "late")
    assert crashed.extend_lease(abandoned) is False


def test_progress_renews_the_lease(redis_store, mock_redis, clock):
    redis_store.add(LANE, "slow", {}, JobOptions.defaults(job_id="slow"))
    job = redis_store.fetch_next(LANE, block=False)
    clock.advance(seconds=25)
    redis_store.update_progress(job, 40)
    clock.advance(seconds=25)

    assert redis_store.fetch_next(LANE, block=False) is None
    assert mock_redis.data["zsets"][f"{KEY}:active"]["slow"] == redis_store._now_ms() + 5000
    assert redis_store.get_job(LANE, "slow").progress == 40


def test_stall_with_attempts_exhausted_fails_terminally(redis_store, clock):
    redis_store.add(LANE, "doomed", {}, JobOptions.defaults(job_id="doomed", attempts=1))
    redis_store.fetch_next(LANE, block=False)
    clock.advance(minutes=1)

    assert redis_store.fetch_next(LANE, block=False) is None
    job = redis_store.get_job(LANE, "doomed")
    assert job.state == JobState.FAILED
    assert job.failed_reason == STALLED_REASON
    assert redis_store.get_counts(LANE) == {"waiting": 0, "active": 0, "completed": 0, "failed": 1, "delayed": 0}


def test_connection_lost_during_complete_leaves_job_active(redis_store, mock_redis):
    redis_store.add(LANE, "a", {}, JobOptions.defaults(job_id="a"))
    job = redis_store.fetch_next(LANE, block=False)

    mock_redis.fail_exec = True
    with pytest.raises(JobStoreUnavailable):
        redis_store.complete(job, {"ok": True})

    assert redis_store.get_counts(LANE) == {"waiting": 0, "active": 1, "completed": 0, "failed": 0, "delayed": 0}
    assert redis_store.get_job(LANE, "a").state == JobState.ACTIVE
    redis_store.complete(job, {"ok": True})
    assert redis_store.get_job(LANE, "a").state == JobState.COMPLETED


def test_connection_lost_during_promotion_keeps_job_delayed(redis_store, mock_redis, clock):
    redis_store.add(LANE, "flaky", {}, JobOptions.defaults(job_id="flaky"))
    redis_store.fail(redis_store.fetch_next(LANE, block=False), "smtp down")
    clock.advance(seconds=1)

    mock_redis.fail_exec = True
    with pytest.raises(JobStoreUnavailable):
        redis_store.fetch_next(LANE, block=False)

    counts = redis_store.get_counts(LANE)
    assert (counts["delayed"], counts["waiting"]) == (1, 0)
    assert redis_store.get_job(LANE, "flaky").state == JobState.DELAYED
    assert redis_store.fetch_next(LANE, block=False).id == "flaky"


def test_connection_lost_during_claim_keeps_job_waiting(redis_store, mock_redis):
    redis_store.add(LANE, "a", {}, JobOptions.defaults(job_id="a"))

    mock_redis.fail_exec = True
    with pytest.raises(JobStoreUnavailable):
        redis_store.fetch_next(LANE, block=False)

    assert mock_redis.data["lists"][f"{KEY}:wait"] == ["a"]
    assert redis_store.get_counts(LANE)["active"] == 0
    assert redis_store.get_job(LANE, "a").attempts_started == 0
