"""
Ingestion queue.

Schedules chunk -> embed -> store jobs per document with bounded retries
and exponential backoff.

Backends:
- RedisJobBackend: durable, shared by every worker process
- LocalJobBackend: in-process, thread-safe, lost on restart (dev, tests)

A claimed job is held under a lease: a token handed to the claiming worker
plus a heartbeat timestamp the worker renews while it runs. Only the lease
holder can settle the job. A job whose heartbeat is older than the stale
window is assumed orphaned by a dead worker and goes back to the queue,
which voids the old lease.

When the backend is missing or unreachable at enqueue time, the job is
run synchronously in the caller's process instead (inline mode). Inline
jobs go through the same state machine, including retries, but are not
persisted: a crash during inline execution loses the job.
"""
import collections
import dataclasses
import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

import redis

from apps.indexing.jobs import EnqueueResult, Job, JobKind, JobStatus, QueueMode
from apps.indexing.retry import backoff_for, ingestion_retry_config, is_retriable_error

logger = logging.getLogger(__name__)

DEFAULT_FAILED_RETENTION = 50
DEFAULT_FAILED_TTL = 24 * 60 * 60  # seconds

# Active jobs whose lease was not renewed within this window are assumed
# orphaned by a dead worker
DEFAULT_STALE_AFTER = 15 * 60  # seconds


class QueueBackendUnavailable(Exception):
    """The job backend could not be reached."""
    pass


class LeaseLost(Exception):
    """The job was handed to another worker while this one still ran it."""
    pass


def new_lease() -> str:
    return uuid.uuid4().hex


class JobBackend(ABC):
    """Storage and claiming of job records."""

    @abstractmethod
    def add(self, job: Job) -> None:
        pass

    @abstractmethod
    def claim(self, now: float) -> Optional[Job]:
        """
        Atomically take the oldest queued job that is due, marking it active.

        The returned job carries a fresh lease token in `job.lease`.
        """
        pass

    @abstractmethod
    def heartbeat(self, job: Job, now: float) -> bool:
        """Renew the lease on an active job. False if the lease is no longer held."""
        pass

    @abstractmethod
    def complete(self, job: Job) -> bool:
        """Discard a completed job. False if the lease is no longer held."""
        pass

    @abstractmethod
    def requeue(self, job: Job) -> bool:
        """Put an active job back in the queue, due at job.available_at."""
        pass

    @abstractmethod
    def fail(self, job: Job) -> bool:
        """Move an active job to the bounded failed set."""
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def failed_jobs(self, limit: int = DEFAULT_FAILED_RETENTION) -> List[Job]:
        """Most recently failed jobs first."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass

    @abstractmethod
    def recover_stale(self, now: float, stale_after: float = DEFAULT_STALE_AFTER) -> int:
        """
        Requeue active jobs whose lease was last renewed before now - stale_after.

        Returns how many were moved.
        """
        pass


# =============================================================================
# Redis backend
# =============================================================================

@contextmanager
def redis_errors(operation: str):
    """Translate redis-py errors into QueueBackendUnavailable."""
    try:
        yield
    except redis.RedisError as e:
        raise QueueBackendUnavailable(f"Redis {operation} failed: {e}") from e


# KEYS: queued, active, leases
# ARGV: now, lease token, job key prefix, scan limit
CLAIM_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[4]))
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    local key = ARGV[3] .. id
    local raw = redis.call('GET', key)
    if raw then
        local job = cjson.decode(raw)
        job['status'] = 'active'
        job['updated_at'] = tonumber(ARGV[1])
        raw = cjson.encode(job)
        redis.call('SET', key, raw)
        redis.call('ZADD', KEYS[2], ARGV[1], id)
        redis.call('HSET', KEYS[3], id, ARGV[2])
        return raw
    end
end
return false
"""

# KEYS: active, leases
# ARGV: job id, lease token, now
HEARTBEAT_SCRIPT = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[3], ARGV[1])
return 1
"""

# KEYS: active, leases, job record, queued, failed
# ARGV: job id, lease token, action, record, failed ttl, available_at, retention
SETTLE_SCRIPT = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('ZREM', KEYS[1], ARGV[1])
if ARGV[3] == 'complete' then
    redis.call('DEL', KEYS[3])
elseif ARGV[3] == 'requeue' then
    redis.call('SET', KEYS[3], ARGV[4])
    redis.call('ZADD', KEYS[4], ARGV[6], ARGV[1])
else
    redis.call('SET', KEYS[3], ARGV[4], 'EX', ARGV[5])
    redis.call('LPUSH', KEYS[5], ARGV[1])
    redis.call('LTRIM', KEYS[5], 0, tonumber(ARGV[7]) - 1)
end
return 1
"""

# KEYS: active, leases, queued
# ARGV: cutoff, now
RECOVER_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('HDEL', KEYS[2], id)
    redis.call('ZADD', KEYS[3], ARGV[2], id)
end
return #ids
"""


class RedisJobBackend(JobBackend):
    """
    Durable job backend on Redis.

    Layout (prefix defaults to 'ingest'):
        {prefix}:job:{id}   JSON job record
        {prefix}:queued     sorted set of job ids scored by available_at
        {prefix}:active     sorted set of job ids scored by last heartbeat
        {prefix}:leases     hash of job id -> lease token of the holder
        {prefix}:failed     list of failed job ids, newest first, trimmed

    Claiming, heartbeats, settling and stale recovery each run as one Lua
    script, so a job is always in exactly one of queued/active (or gone),
    and a settle from a worker whose lease was voided changes nothing.
    """

    CLAIM_SCAN = 10

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = 'ingest',
        failed_retention: int = DEFAULT_FAILED_RETENTION,
        failed_ttl: int = DEFAULT_FAILED_TTL,
    ):
        self.client = client
        self.prefix = prefix
        self.failed_retention = failed_retention
        self.failed_ttl = failed_ttl
        self._claim_script = client.register_script(CLAIM_SCRIPT)
        self._heartbeat_script = client.register_script(HEARTBEAT_SCRIPT)
        self._settle_script = client.register_script(SETTLE_SCRIPT)
        self._recover_script = client.register_script(RECOVER_SCRIPT)

    @classmethod
    def from_url(cls, url: str, connect_timeout: float = 2.0, **kwargs) -> 'RedisJobBackend':
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )
        return cls(client, **kwargs)

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    @property
    def _queued_key(self) -> str:
        return f"{self.prefix}:queued"

    @property
    def _active_key(self) -> str:
        return f"{self.prefix}:active"

    @property
    def _leases_key(self) -> str:
        return f"{self.prefix}:leases"

    @property
    def _failed_key(self) -> str:
        return f"{self.prefix}:failed"

    @staticmethod
    def _record(job: Job) -> str:
        job.updated_at = time.time()
        return json.dumps(job.to_dict())

    def add(self, job: Job) -> None:
        with redis_errors('enqueue'):
            pipe = self.client.pipeline()
            pipe.set(self._job_key(job.id), self._record(job))
            pipe.zadd(self._queued_key, {job.id: job.available_at})
            pipe.execute()

    def claim(self, now: float) -> Optional[Job]:
        lease = new_lease()
        with redis_errors('claim'):
            raw = self._claim_script(
                keys=[self._queued_key, self._active_key, self._leases_key],
                args=[now, lease, self._job_key(''), self.CLAIM_SCAN],
            )
        if not raw:
            return None
        job = Job.from_dict(json.loads(raw))
        job.lease = lease
        return job

    def heartbeat(self, job: Job, now: float) -> bool:
        with redis_errors('heartbeat'):
            held = self._heartbeat_script(
                keys=[self._active_key, self._leases_key],
                args=[job.id, job.lease or '', now],
            )
        return bool(held)

    def _settle(self, job: Job, action: str) -> bool:
        with redis_errors(action):
            settled = self._settle_script(
                keys=[
                    self._active_key,
                    self._leases_key,
                    self._job_key(job.id),
                    self._queued_key,
                    self._failed_key,
                ],
                args=[
                    job.id,
                    job.lease or '',
                    action,
                    self._record(job),
                    self.failed_ttl,
                    job.available_at,
                    self.failed_retention,
                ],
            )
        return bool(settled)

    def complete(self, job: Job) -> bool:
        return self._settle(job, 'complete')

    def requeue(self, job: Job) -> bool:
        return self._settle(job, 'requeue')

    def fail(self, job: Job) -> bool:
        return self._settle(job, 'fail')

    def get(self, job_id: str) -> Optional[Job]:
        with redis_errors('get'):
            raw = self.client.get(self._job_key(job_id))
        return Job.from_dict(json.loads(raw)) if raw else None

    def failed_jobs(self, limit: int = DEFAULT_FAILED_RETENTION) -> List[Job]:
        with redis_errors('failed_jobs'):
            job_ids = self.client.lrange(self._failed_key, 0, limit - 1)
            if not job_ids:
                return []
            raws = self.client.mget([self._job_key(job_id) for job_id in job_ids])
        return [Job.from_dict(json.loads(raw)) for raw in raws if raw]

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis job backend unreachable: {e}")
            return False

    def recover_stale(self, now: float, stale_after: float = DEFAULT_STALE_AFTER) -> int:
        with redis_errors('recover_stale'):
            moved = int(self._recover_script(
                keys=[self._active_key, self._leases_key, self._queued_key],
                args=[now - stale_after, now],
            ))
        if moved:
            logger.warning(f"Requeued {moved} active jobs whose lease expired")
        return moved


# =============================================================================
# In-process backend
# =============================================================================

class LocalJobBackend(JobBackend):
    """
    Thread-safe in-process backend.

    Shares the Redis backend's semantics but lives in memory, so jobs do
    not survive a restart and are only visible to threads in this process.
    Claimed jobs are copies; the stored record only changes when the lease
    holder settles.
    """

    def __init__(self, failed_retention: int = DEFAULT_FAILED_RETENTION):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._queued: Dict[str, float] = {}
        # job id -> last heartbeat
        self._active: Dict[str, float] = {}
        self._leases: Dict[str, str] = {}
        self._failed = collections.deque(maxlen=failed_retention)
        self._sequence = 0
        self._order: Dict[str, int] = {}

    def add(self, job: Job) -> None:
        with self._lock:
            self._sequence += 1
            self._order[job.id] = self._sequence
            self._jobs[job.id] = dataclasses.replace(job, lease=None)
            self._queued[job.id] = job.available_at

    def claim(self, now: float) -> Optional[Job]:
        with self._lock:
            due = [job_id for job_id, at in self._queued.items() if at <= now]
            if not due:
                return None
            job_id = min(due, key=lambda j: (self._queued[j], self._order[j]))
            del self._queued[job_id]
            stored = self._jobs[job_id]
            stored.status = JobStatus.ACTIVE
            stored.updated_at = now
            self._active[job_id] = now
            self._leases[job_id] = new_lease()
            return dataclasses.replace(stored, lease=self._leases[job_id])

    def heartbeat(self, job: Job, now: float) -> bool:
        with self._lock:
            if job.lease is None or self._leases.get(job.id) != job.lease:
                return False
            self._active[job.id] = now
            return True

    def _release(self, job: Job) -> bool:
        # Caller holds the lock
        if job.lease is None or self._leases.get(job.id) != job.lease:
            return False
        del self._leases[job.id]
        self._active.pop(job.id, None)
        return True

    def complete(self, job: Job) -> bool:
        with self._lock:
            if not self._release(job):
                return False
            self._jobs.pop(job.id, None)
            self._order.pop(job.id, None)
            return True

    def requeue(self, job: Job) -> bool:
        with self._lock:
            if not self._release(job):
                return False
            self._jobs[job.id] = dataclasses.replace(job, lease=None)
            self._queued[job.id] = job.available_at
            return True

    def fail(self, job: Job) -> bool:
        with self._lock:
            if not self._release(job):
                return False
            self._jobs.pop(job.id, None)
            self._order.pop(job.id, None)
            self._failed.appendleft(dataclasses.replace(job, lease=None))
            return True

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                job = next((j for j in self._failed if j.id == job_id), None)
            return dataclasses.replace(job) if job is not None else None

    def failed_jobs(self, limit: int = DEFAULT_FAILED_RETENTION) -> List[Job]:
        with self._lock:
            return list(self._failed)[:limit]

    def ping(self) -> bool:
        return True

    def recover_stale(self, now: float, stale_after: float = DEFAULT_STALE_AFTER) -> int:
        with self._lock:
            stale = [job_id for job_id, at in self._active.items() if at <= now - stale_after]
            for job_id in stale:
                del self._active[job_id]
                self._leases.pop(job_id, None)
                self._jobs[job_id].status = JobStatus.QUEUED
                self._queued[job_id] = now
        if stale:
            logger.warning(f"Requeued {len(stale)} active jobs whose lease expired")
        return len(stale)


# =============================================================================
# Queue
# =============================================================================

JobListener = Callable[[Job, str], None]


class IngestionQueue:
    """
    Runs ingestion jobs through the queued/active/completed/failed state machine.

    Args:
        backend: Durable job backend, or None to always run inline
        executor: Callable doing the work for one job; raises on failure
        config: Retry policy (max_attempts, initial_backoff, ...)
        listeners: Callables notified as listener(job, mode) on every transition
        clock: Time source (seconds)
        sleep: Used between inline retries
    """

    def __init__(
        self,
        backend: Optional[JobBackend],
        executor: Callable[[Job], None],
        config: Optional[dict] = None,
        listeners: Optional[List[JobListener]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        failed_retention: int = DEFAULT_FAILED_RETENTION,
    ):
        self.backend = backend
        self.executor = executor
        self.config = config or ingestion_retry_config()
        self.listeners: List[JobListener] = list(listeners or [])
        self.clock = clock
        self.sleep = sleep
        self._mode = QueueMode.DURABLE if backend is not None else QueueMode.INLINE
        self._inline_failed = collections.deque(maxlen=failed_retention)

    @property
    def mode(self) -> str:
        """DURABLE while the backend accepts jobs, INLINE after it last refused one."""
        return self._mode

    @property
    def max_attempts(self) -> int:
        return self.config['max_attempts']

    def add_listener(self, listener: JobListener) -> None:
        self.listeners.append(listener)

    def _notify(self, job: Job, mode: str) -> None:
        for listener in self.listeners:
            try:
                listener(job, mode)
            except Exception:
                logger.exception(f"Job listener failed for job {job.id} ({job.status})")

    def _set_mode(self, mode: str) -> None:
        if mode != self._mode:
            if mode == QueueMode.INLINE:
                logger.warning(
                    "Ingestion queue backend unavailable, running jobs inline. "
                    "Inline jobs are not persisted and are lost if the process dies."
                )
            else:
                logger.info("Ingestion queue backend reachable again, back to durable mode")
        self._mode = mode

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        document_id: str,
        kind: str = JobKind.INGEST,
        payload: Optional[dict] = None,
    ) -> EnqueueResult:
        """
        Submit a job for a document.

        Returns immediately with status 'queued' in durable mode. In inline
        mode the job runs to a terminal state before this returns.
        """
        now = self.clock()
        job = Job(
            document_id=str(document_id),
            kind=kind,
            payload=payload or {},
            available_at=now,
            created_at=now,
            updated_at=now,
        )

        if self.backend is not None:
            try:
                self.backend.add(job)
            except QueueBackendUnavailable as e:
                logger.warning(f"Could not enqueue job {job.id} for document {document_id}: {e}")
                self._set_mode(QueueMode.INLINE)
            else:
                self._set_mode(QueueMode.DURABLE)
                logger.info(f"Queued {kind} job {job.id} for document {document_id}")
                self._notify(job, QueueMode.DURABLE)
                return EnqueueResult(job_id=job.id, mode=QueueMode.DURABLE, status=job.status)

        logger.warning(f"Running {kind} job {job.id} for document {document_id} inline")
        self._notify(job, QueueMode.INLINE)
        self.run_inline(job)
        return EnqueueResult(
            job_id=job.id,
            mode=QueueMode.INLINE,
            status=job.status,
            attempts=job.attempts,
            error=job.last_error,
        )

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    def claim(self) -> Optional[Job]:
        """Claim the next due job from the backend, if any."""
        if self.backend is None:
            return None
        job = self.backend.claim(self.clock())
        if job is not None:
            logger.info(
                f"Claimed job {job.id} for document {job.document_id} "
                f"(attempt {job.attempts + 1}/{self.max_attempts})"
            )
            self._notify(job, QueueMode.DURABLE)
        return job

    def run_next(self) -> Optional[Job]:
        """Claim and process one job. Returns the job, or None if nothing was due."""
        job = self.claim()
        if job is None:
            return None
        return self.process(job)

    def recover_stale(self, stale_after: float = DEFAULT_STALE_AFTER) -> int:
        if self.backend is None:
            return 0
        return self.backend.recover_stale(self.clock(), stale_after)

    def heartbeat(self, job: Job) -> None:
        """
        Renew the lease on a claimed job while it runs.

        Does nothing for inline jobs. A backend that cannot be reached is
        only logged; the lease check at settle time still applies.

        Raises:
            LeaseLost: The job was recovered and handed to another worker
        """
        if self.backend is None or job.lease is None:
            return
        try:
            held = self.backend.heartbeat(job, self.clock())
        except QueueBackendUnavailable as e:
            logger.warning(f"Could not renew lease on job {job.id}: {e}")
            return
        if not held:
            raise LeaseLost(f"Job {job.id} is no longer held by this worker")

    def _settle(self, job: Job, settle: Callable[[Job], bool]) -> bool:
        if settle(job):
            return True
        logger.warning(
            f"Job {job.id} for document {job.document_id} lost its lease, "
            f"leaving it ({job.status}) to the worker that holds it now"
        )
        return False

    def process(self, job: Job, durable: bool = True) -> Job:
        """
        Execute one claimed job and settle its next state.

        Success completes the job. A retriable failure requeues it with
        backoff until max_attempts executions have failed; any other
        failure fails it immediately. A durable job whose lease was lost
        is left alone and listeners are not told about it.
        """
        mode = QueueMode.DURABLE if durable else QueueMode.INLINE
        job.status = JobStatus.ACTIVE
        started = self.clock()

        try:
            self.executor(job)
        except LeaseLost as e:
            logger.warning(f"Abandoning job {job.id} for document {job.document_id}: {e}")
            return job
        except Exception as e:
            job.attempts += 1
            job.last_error = str(e) or e.__class__.__name__
            job.updated_at = self.clock()

            retriable = is_retriable_error(e)
            if retriable and job.attempts < self.max_attempts:
                delay = backoff_for(job.attempts, self.config)
                job.status = JobStatus.QUEUED
                job.available_at = self.clock() + delay
                logger.warning(
                    f"Job {job.id} for document {job.document_id} failed "
                    f"(attempt {job.attempts}/{self.max_attempts}): {job.last_error}. "
                    f"Retrying in {delay:.2f}s"
                )
                if durable and not self._settle(job, self.backend.requeue):
                    return job
            else:
                job.status = JobStatus.FAILED
                reason = "attempts exhausted" if retriable else "not retriable"
                logger.error(
                    f"Job {job.id} for document {job.document_id} failed permanently "
                    f"after {job.attempts} attempt(s), {reason}: {job.last_error}"
                )
                if not durable:
                    self._inline_failed.appendleft(job)
                elif not self._settle(job, self.backend.fail):
                    return job
        else:
            job.status = JobStatus.COMPLETED
            job.last_error = None
            job.updated_at = self.clock()
            logger.info(
                f"Job {job.id} for document {job.document_id} completed "
                f"in {job.updated_at - started:.2f}s"
            )
            if durable and not self._settle(job, self.backend.complete):
                return job

        self._notify(job, mode)
        return job

    def run_inline(self, job: Job) -> Job:
        """Run a job in this thread until it reaches a terminal state."""
        while True:
            self.process(job, durable=False)
            if job.is_terminal:
                return job
            wait = job.available_at - self.clock()
            if wait > 0:
                self.sleep(wait)

    def failed_jobs(self, limit: int = DEFAULT_FAILED_RETENTION) -> List[Job]:
        """Failed jobs kept for diagnostics, newest first."""
        jobs = list(self._inline_failed)
        if self.backend is not None:
            try:
                jobs.extend(self.backend.failed_jobs(limit))
            except QueueBackendUnavailable as e:
                logger.warning(f"Could not list failed jobs: {e}")
        jobs.sort(key=lambda j: j.updated_at, reverse=True)
        return jobs[:limit]
