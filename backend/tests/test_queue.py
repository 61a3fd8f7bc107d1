"""
Tests for the ingestion queue.

Uses the in-process backend and a fake clock so retries and backoff can
be stepped through deterministically.
"""
import json

import pytest
import redis
from unittest.mock import MagicMock

from apps.indexing.errors import (
    EmbeddingProviderError,
    EmbeddingQuotaExceeded,
    InvalidInput,
    StoreUnavailable,
)
from apps.indexing.jobs import EnqueueResult, Job, JobKind, JobStatus, QueueMode
from apps.indexing.queue import (
    CLAIM_SCRIPT,
    HEARTBEAT_SCRIPT,
    RECOVER_SCRIPT,
    SETTLE_SCRIPT,
    IngestionQueue,
    LeaseLost,
    LocalJobBackend,
    QueueBackendUnavailable,
    RedisJobBackend,
)


RETRY_CONFIG = {
    'max_attempts': 3,
    'initial_backoff': 1.0,
    'backoff_multiplier': 2.0,
    'max_backoff': 30.0,
    'jitter_percent': 0.0,
}


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FlakyExecutor:
    """Raises the given errors in order, then succeeds."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = []

    def __call__(self, job):
        self.calls.append(job.id)
        if self.errors:
            raise self.errors.pop(0)


class UnreachableBackend(LocalJobBackend):
    def add(self, job):
        raise QueueBackendUnavailable("Redis enqueue failed: connection refused")

    def ping(self):
        return False


@pytest.fixture
def clock():
    return FakeClock()


def make_queue(executor, clock, backend=None, listeners=None, sleep=None):
    return IngestionQueue(
        backend=backend,
        executor=executor,
        config=RETRY_CONFIG,
        listeners=listeners,
        clock=clock,
        sleep=sleep or clock.advance,
    )


# ============================================================================
# Durable Mode Tests
# ============================================================================

class TestDurableQueue:
    """Tests for the queue with a reachable backend."""

    def test_enqueue_returns_queued(self, clock):
        backend = LocalJobBackend()
        executor = FlakyExecutor()
        queue = make_queue(executor, clock, backend)

        result = queue.enqueue("doc-1", JobKind.INGEST, {"text": "hi"})

        assert isinstance(result, EnqueueResult)
        assert result.mode == QueueMode.DURABLE
        assert result.status == JobStatus.QUEUED
        assert executor.calls == []
        assert backend.get(result.job_id).status == JobStatus.QUEUED

    def test_run_next_completes_job(self, clock):
        backend = LocalJobBackend()
        queue = make_queue(FlakyExecutor(), clock, backend)
        result = queue.enqueue("doc-1")

        job = queue.run_next()

        assert job.id == result.job_id
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 0
        assert backend.get(job.id) is None
        assert queue.run_next() is None

    def test_transient_failure_requeues_with_backoff(self, clock):
        backend = LocalJobBackend()
        queue = make_queue(FlakyExecutor(EmbeddingProviderError("503")), clock, backend)
        queue.enqueue("doc-1")

        job = queue.run_next()

        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert job.last_error == "503"
        assert job.available_at == clock.now + 1.0
        # Not due yet
        assert queue.run_next() is None

        clock.advance(1.0)
        job = queue.run_next()
        assert job.status == JobStatus.COMPLETED

    def test_backoff_doubles(self, clock):
        backend = LocalJobBackend()
        executor = FlakyExecutor(StoreUnavailable("down"), StoreUnavailable("down"))
        queue = make_queue(executor, clock, backend)
        queue.enqueue("doc-1")

        first = queue.run_next()
        delay_one = first.available_at - clock.now
        clock.advance(delay_one)
        second = queue.run_next()
        delay_two = second.available_at - clock.now

        assert delay_one == pytest.approx(1.0)
        assert delay_two == pytest.approx(2.0)

    def test_retries_exhausted_fails_job(self, clock):
        backend = LocalJobBackend()
        errors = [StoreUnavailable(f"down {n}") for n in range(3)]
        queue = make_queue(FlakyExecutor(*errors), clock, backend)
        queue.enqueue("doc-1")

        job = None
        for _ in range(3):
            clock.advance(60)
            job = queue.run_next()

        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert job.last_error == "down 2"
        assert [j.id for j in queue.failed_jobs()] == [job.id]

    def test_fatal_failure_is_not_retried(self, clock):
        backend = LocalJobBackend()
        executor = FlakyExecutor(EmbeddingQuotaExceeded("quota"))
        queue = make_queue(executor, clock, backend)
        queue.enqueue("doc-1")

        job = queue.run_next()

        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert len(executor.calls) == 1

    def test_jobs_claimed_in_order(self, clock):
        backend = LocalJobBackend()
        queue = make_queue(FlakyExecutor(), clock, backend)
        first = queue.enqueue("doc-1")
        second = queue.enqueue("doc-2")

        assert queue.run_next().id == first.job_id
        assert queue.run_next().id == second.job_id

    def test_listeners_see_every_transition(self, clock):
        seen = []
        backend = LocalJobBackend()
        queue = make_queue(
            FlakyExecutor(), clock, backend,
            listeners=[lambda job, mode: seen.append((job.status, mode))],
        )
        queue.enqueue("doc-1")
        queue.run_next()

        assert seen == [
            (JobStatus.QUEUED, QueueMode.DURABLE),
            (JobStatus.ACTIVE, QueueMode.DURABLE),
            (JobStatus.COMPLETED, QueueMode.DURABLE),
        ]

    def test_failing_listener_does_not_break_queue(self, clock):
        def broken(job, mode):
            raise RuntimeError("listener down")

        queue = make_queue(FlakyExecutor(), clock, LocalJobBackend(), listeners=[broken])
        queue.enqueue("doc-1")

        assert queue.run_next().status == JobStatus.COMPLETED

    def test_recover_stale_requeues_orphans(self, clock):
        backend = LocalJobBackend()
        queue = make_queue(FlakyExecutor(), clock, backend)
        queue.enqueue("doc-1")
        orphan = queue.claim()

        clock.advance(10)
        assert queue.recover_stale(stale_after=60) == 0
        clock.advance(60)
        assert queue.recover_stale(stale_after=60) == 1

        assert queue.run_next().id == orphan.id


# ============================================================================
# Lease Tests
# ============================================================================

class TestLeases:
    """Only the worker holding a job's lease may run and settle it."""

    def test_claim_hands_out_a_lease(self, clock):
        backend = LocalJobBackend()
        queue = make_queue(FlakyExecutor(), clock, backend)
        queue.enqueue("doc-1")

        job = queue.claim()

        assert job.lease
        assert backend.get(job.id).status == JobStatus.ACTIVE
        assert backend.get(job.id).lease is None

    def test_heartbeat_keeps_long_job_from_recovery(self, clock):
        backend = LocalJobBackend()
        queue = make_queue(FlakyExecutor(), clock, backend)
        queue.enqueue("doc-1")
        job = queue.claim()

        for _ in range(5):
            clock.advance(50)
            queue.heartbeat(job)
            assert queue.recover_stale(stale_after=60) == 0

        assert queue.claim() is None
        assert backend.complete(job) is True

    def test_recovered_job_is_not_held_by_two_workers(self, clock):
        backend = LocalJobBackend()
        queue = make_queue(FlakyExecutor(), clock, backend)
        queue.enqueue("doc-1")
        first = queue.claim()

        clock.advance(16 * 60)
        assert queue.recover_stale(stale_after=15 * 60) == 1
        second = queue.claim()

        assert second.id == first.id
        assert second.lease != first.lease
        with pytest.raises(LeaseLost):
            queue.heartbeat(first)
        assert backend.complete(first) is False
        assert backend.requeue(first) is False
        assert backend.fail(first) is False
        assert backend.get(first.id).status == JobStatus.ACTIVE

        assert queue.process(second).status == JobStatus.COMPLETED
        assert backend.get(second.id) is None

    def test_settle_after_lost_lease_is_dropped(self, clock):
        seen = []
        backend = LocalJobBackend()
        taken = []

        def slow_executor(job):
            if not taken:
                clock.advance(120)
                queue.recover_stale(stale_after=60)
                taken.append(queue.claim())

        queue = make_queue(
            slow_executor, clock, backend,
            listeners=[lambda job, mode: seen.append(job.status)],
        )
        queue.enqueue("doc-1")

        first = queue.run_next()

        assert first.id == taken[0].id
        assert backend.get(first.id).status == JobStatus.ACTIVE
        assert seen == [JobStatus.QUEUED, JobStatus.ACTIVE, JobStatus.ACTIVE]

        assert queue.process(taken[0]).status == JobStatus.COMPLETED
        assert seen[-1] == JobStatus.COMPLETED

    def test_executor_stops_when_lease_is_lost(self, clock):
        backend = LocalJobBackend()

        def executor(job):
            clock.advance(120)
            queue.recover_stale(stale_after=60)
            queue.heartbeat(job)

        queue = make_queue(executor, clock, backend)
        queue.enqueue("doc-1")

        job = queue.run_next()

        assert job.attempts == 0
        assert job.last_error is None
        assert backend.get(job.id).status == JobStatus.QUEUED
        assert queue.failed_jobs() == []

    def test_heartbeat_ignores_inline_jobs(self, clock):
        queue = make_queue(FlakyExecutor(), clock, backend=None)
        queue.heartbeat(Job(document_id="doc-1"))

    def test_unreachable_backend_does_not_abort_heartbeat(self, clock):
        backend = MagicMock()
        backend.heartbeat.side_effect = QueueBackendUnavailable("down")
        queue = make_queue(FlakyExecutor(), clock, backend)

        queue.heartbeat(Job(document_id="doc-1", lease="abc"))

        backend.heartbeat.assert_called_once()


# ============================================================================
# Inline Fallback Tests
# ============================================================================

class TestInlineFallback:
    """Tests for running jobs in the caller when no backend is reachable."""

    def test_no_backend_runs_inline(self, clock):
        executor = FlakyExecutor()
        queue = make_queue(executor, clock, backend=None)

        result = queue.enqueue("doc-1")

        assert result.mode == QueueMode.INLINE
        assert result.status == JobStatus.COMPLETED
        assert len(executor.calls) == 1
        assert queue.mode == QueueMode.INLINE

    def test_unreachable_backend_falls_back(self, clock):
        executor = FlakyExecutor()
        queue = make_queue(executor, clock, UnreachableBackend())

        result = queue.enqueue("doc-1")

        assert result.mode == QueueMode.INLINE
        assert result.status == JobStatus.COMPLETED
        assert queue.mode == QueueMode.INLINE

    def test_inline_retries_then_succeeds(self, clock):
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            clock.advance(seconds)

        executor = FlakyExecutor(EmbeddingProviderError("timeout"))
        queue = make_queue(executor, clock, backend=None, sleep=sleep)

        result = queue.enqueue("doc-1")

        assert result.status == JobStatus.COMPLETED
        assert result.attempts == 1
        assert sleeps == [pytest.approx(1.0)]
        assert len(executor.calls) == 2

    def test_inline_failure_reported_to_caller(self, clock):
        queue = make_queue(FlakyExecutor(InvalidInput("no text")), clock, backend=None)

        result = queue.enqueue("doc-1")

        assert result.status == JobStatus.FAILED
        assert result.error == "no text"
        assert queue.failed_jobs()[0].id == result.job_id

    def test_mode_recovers_when_backend_returns(self, clock):
        backend = UnreachableBackend()
        queue = make_queue(FlakyExecutor(), clock, backend)
        queue.enqueue("doc-1")
        assert queue.mode == QueueMode.INLINE

        backend.add = LocalJobBackend.add.__get__(backend)
        result = queue.enqueue("doc-2")

        assert result.mode == QueueMode.DURABLE
        assert queue.mode == QueueMode.DURABLE

    def test_failed_retention_is_bounded(self, clock):
        queue = IngestionQueue(
            backend=None,
            executor=FlakyExecutor(*[InvalidInput("bad")] * 5),
            config=RETRY_CONFIG,
            clock=clock,
            sleep=clock.advance,
            failed_retention=2,
        )
        for n in range(5):
            queue.enqueue(f"doc-{n}")

        assert len(queue.failed_jobs()) == 2


# ============================================================================
# Job Record Tests
# ============================================================================

class TestJob:
    """Tests for Job serialization and EnqueueResult."""

    def test_from_dict_restores_job(self):
        job = Job(document_id="doc-1", kind=JobKind.DELETE, payload={"owner_id": "u1"}, attempts=2)
        restored = Job.from_dict(json.loads(json.dumps(job.to_dict())))

        assert restored == job

    def test_enqueue_result_to_dict(self):
        result = EnqueueResult(job_id="abc", mode=QueueMode.INLINE, status=JobStatus.FAILED, attempts=1, error="x")
        assert result.to_dict() == {
            'jobId': 'abc', 'mode': 'inline', 'status': 'failed', 'attempts': 1, 'error': 'x'
        }


# ============================================================================
# Redis Backend Tests
# ============================================================================

def redis_backend(**kwargs):
    """A RedisJobBackend on a mocked client, with one mock per Lua script."""
    client = MagicMock()
    scripts = {}

    def register_script(source):
        scripts[source] = MagicMock(name="script")
        return scripts[source]

    client.register_script.side_effect = register_script
    return RedisJobBackend(client, **kwargs), client, scripts


class TestRedisJobBackend:
    """Tests for RedisJobBackend against a mocked client."""

    def test_add_writes_record_and_schedules(self):
        backend, client, _ = redis_backend(prefix='test')
        job = Job(document_id="doc-1", available_at=42.0)

        backend.add(job)

        pipe = client.pipeline.return_value
        key, raw = pipe.set.call_args.args
        assert key == f"test:job:{job.id}"
        assert json.loads(raw)['document_id'] == "doc-1"
        pipe.zadd.assert_called_once_with("test:queued", {job.id: 42.0})
        pipe.execute.assert_called_once()

    def test_claim_is_one_script_call_with_a_lease(self):
        backend, _, scripts = redis_backend()
        stored = Job(document_id="doc-2", status=JobStatus.ACTIVE)
        scripts[CLAIM_SCRIPT].return_value = json.dumps(stored.to_dict())

        job = backend.claim(now=100.0)

        assert job.id == stored.id
        assert job.status == JobStatus.ACTIVE
        call = scripts[CLAIM_SCRIPT].call_args
        assert call.kwargs['keys'] == ["ingest:queued", "ingest:active", "ingest:leases"]
        now, lease, job_prefix, _ = call.kwargs['args']
        assert now == 100.0
        assert lease == job.lease
        assert job_prefix == "ingest:job:"

    def test_claim_nothing_due(self):
        backend, _, scripts = redis_backend()
        scripts[CLAIM_SCRIPT].return_value = None

        assert backend.claim(now=100.0) is None

    def test_each_claim_gets_a_new_lease(self):
        backend, _, scripts = redis_backend()
        scripts[CLAIM_SCRIPT].return_value = json.dumps(Job(document_id="doc-1").to_dict())

        assert backend.claim(now=1.0).lease != backend.claim(now=2.0).lease

    def test_heartbeat_sends_lease(self):
        backend, _, scripts = redis_backend()
        scripts[HEARTBEAT_SCRIPT].return_value = 1
        job = Job(document_id="doc-1", lease="abc")

        assert backend.heartbeat(job, now=50.0) is True
        assert scripts[HEARTBEAT_SCRIPT].call_args.kwargs['args'] == [job.id, "abc", 50.0]

    def test_heartbeat_on_lost_lease(self):
        backend, _, scripts = redis_backend()
        scripts[HEARTBEAT_SCRIPT].return_value = 0

        assert backend.heartbeat(Job(document_id="doc-1", lease="abc"), now=50.0) is False

    def test_settle_refused_without_lease(self):
        backend, _, scripts = redis_backend()
        scripts[SETTLE_SCRIPT].return_value = 0

        assert backend.complete(Job(document_id="doc-1", lease="old")) is False

    def test_requeue_schedules_at_available_at(self):
        backend, _, scripts = redis_backend()
        scripts[SETTLE_SCRIPT].return_value = 1
        job = Job(document_id="doc-1", lease="abc", available_at=77.0)

        assert backend.requeue(job) is True

        args = scripts[SETTLE_SCRIPT].call_args.kwargs['args']
        assert args[:3] == [job.id, "abc", "requeue"]
        assert args[5] == 77.0

    def test_fail_trims_failed_list_and_sets_ttl(self):
        backend, _, scripts = redis_backend(failed_retention=5, failed_ttl=3600)
        scripts[SETTLE_SCRIPT].return_value = 1
        job = Job(document_id="doc-1", status=JobStatus.FAILED, lease="abc")

        backend.fail(job)

        call = scripts[SETTLE_SCRIPT].call_args
        assert call.kwargs['keys'] == [
            "ingest:active", "ingest:leases", f"ingest:job:{job.id}", "ingest:queued", "ingest:failed",
        ]
        job_id, lease, action, raw, ttl, _, retention = call.kwargs['args']
        assert (job_id, lease, action, ttl, retention) == (job.id, "abc", "fail", 3600, 5)
        assert json.loads(raw)['status'] == JobStatus.FAILED

    def test_recover_stale_uses_heartbeat_cutoff(self):
        backend, _, scripts = redis_backend()
        scripts[RECOVER_SCRIPT].return_value = 2

        assert backend.recover_stale(now=1000.0, stale_after=60) == 2
        assert scripts[RECOVER_SCRIPT].call_args.kwargs['args'] == [940.0, 1000.0]

    def test_redis_errors_become_backend_unavailable(self):
        backend, client, scripts = redis_backend()
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("refused")
        scripts[CLAIM_SCRIPT].side_effect = redis.ConnectionError("refused")

        with pytest.raises(QueueBackendUnavailable):
            backend.add(Job(document_id="doc-1"))
        with pytest.raises(QueueBackendUnavailable):
            backend.claim(now=1.0)

    def test_ping_false_when_unreachable(self):
        backend, client, _ = redis_backend()
        client.ping.side_effect = redis.ConnectionError("refused")
        assert backend.ping() is False
