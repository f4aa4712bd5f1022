"""
Durable at-least-once job queue backed by Redis

All coordination between competing consumers happens through Redis atomic
operations, so any number of worker processes can share one queue.

Keys for a queue called <name>:
    <prefix>:<name>:wait        list, new ids pushed on the left, claimed from the right
    <prefix>:<name>:active      list of ids owned by a worker
    <prefix>:<name>:delayed     zset id -> epoch ms when the retry becomes visible
    <prefix>:<name>:failed      zset id -> epoch ms of the final failure (dead-letter)
    <prefix>:<name>:completed   zset id -> epoch ms of completion, trimmed
    <prefix>:<name>:stalled     set of lockless active ids seen by the last stall check
    <prefix>:<name>:job:<id>    hash with payload, attempt bookkeeping and the current claim token
    <prefix>:<name>:lock:<id>   claim lock, expires if its owner dies
"""
import json
import uuid
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis

from .error_handling import EnqueueFailed
from .retry import RetryConfig, calculate_delay

logger = logging.getLogger(__name__)

class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"

@dataclass
class JobOptions:
    """Per-job retry and timeout policy"""
    attempts: int = 3
    backoff_ms: int = 1000
    timeout_ms: int = 10000

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig.from_millis(self.attempts, self.backoff_ms)

    @classmethod
    def from_settings(cls, settings) -> "JobOptions":
        return cls(
            attempts=settings.job_attempts,
            backoff_ms=settings.job_backoff_ms,
            timeout_ms=settings.job_timeout_ms,
        )

@dataclass
class JobHandle:
    id: str
    queue_name: str
    duplicate: bool = False

@dataclass
class Job:
    id: str
    data: Dict[str, Any]
    options: JobOptions
    attempts_made: int = 0
    timestamp: int = 0
    state: JobState = JobState.WAITING
    failed_reason: Optional[str] = None
    token: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def timeout(self) -> float:
        """Execution timeout in seconds"""
        return self.options.timeout_ms / 1000.0

class JobQueue:
    """Redis-backed FIFO work queue with retries and a dead-letter set"""

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        default_options: Optional[JobOptions] = None,
        prefix: str = "giving",
        lock_grace_ms: int = 5000,
        keep_completed: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.name = name
        self.default_options = default_options or JobOptions()
        self.prefix = prefix
        self.lock_grace_ms = lock_grace_ms
        self.keep_completed = keep_completed
        self.clock = clock

        base = f"{prefix}:{name}"
        self.wait_key = f"{base}:wait"
        self.active_key = f"{base}:active"
        self.delayed_key = f"{base}:delayed"
        self.failed_key = f"{base}:failed"
        self.completed_key = f"{base}:completed"
        self.stalled_key = f"{base}:stalled"
        self._job_prefix = f"{base}:job:"
        self._lock_prefix = f"{base}:lock:"

    def _job_key(self, job_id: str) -> str:
        return self._job_prefix + job_id

    def _lock_key(self, job_id: str) -> str:
        return self._lock_prefix + job_id

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _job_from_hash(self, job_id: str, raw: Dict[str, str]) -> Job:
        """Raises ValueError when the hash is not a complete job"""
        known = {"data", "attempts", "backoff_ms", "timeout_ms", "attempts_made",
                 "timestamp", "state", "failed_reason", "token"}
        try:
            return Job(
                id=job_id,
                data=json.loads(raw["data"]),
                options=JobOptions(
                    attempts=int(raw["attempts"]),
                    backoff_ms=int(raw["backoff_ms"]),
                    timeout_ms=int(raw["timeout_ms"]),
                ),
                attempts_made=int(raw.get("attempts_made", 0)),
                timestamp=int(raw.get("timestamp", 0)),
                state=JobState(raw.get("state", JobState.WAITING.value)),
                failed_reason=raw.get("failed_reason"),
                token=raw.get("token"),
                extra={k: v for k, v in raw.items() if k not in known},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"job {job_id} has unreadable data: {e!r}") from e

    def _owns(self, pipe, job: Job) -> bool:
        """True while `job` is the current claim of an active id; call on a watching pipeline"""
        token, state = pipe.hmget(self._job_key(job.id), "token", "state")
        return token == job.token and state == JobState.ACTIVE.value

    def _dead_letter_unreadable(self, job_id: str, reason: str) -> None:
        now = self._now_ms()
        pipe = self.client.pipeline()
        pipe.lrem(self.active_key, 1, job_id)
        pipe.delete(self._lock_key(job_id))
        pipe.hset(self._job_key(job_id), mapping={
            "state": JobState.FAILED.value,
            "failed_reason": reason,
            "finished_on": now,
        })
        pipe.hdel(self._job_key(job_id), "token")
        pipe.zadd(self.failed_key, {job_id: now})
        pipe.execute()
        logger.error(f"Job {job_id} dead-lettered in {self.name}: {reason}")

    def claim(self, worker_name: str) -> Optional[Job]:
        """Move the oldest waiting job to active and lock it for this worker.

        Each claim gets a fresh token; only the holder of the current token
        can complete or fail the job.
        """
        while True:
            job_id = self.client.lmove(self.wait_key, self.active_key, "RIGHT", "LEFT")
            if job_id is None:
                return None

            raw = self.client.hgetall(self._job_key(job_id))
            try:
                job = self._job_from_hash(job_id, raw)
            except ValueError as e:
                self._dead_letter_unreadable(job_id, str(e))
                continue

            job.token = uuid.uuid4().hex
            pipe = self.client.pipeline()
            pipe.set(self._lock_key(job_id), worker_name, px=job.options.timeout_ms + self.lock_grace_ms)
            pipe.hset(self._job_key(job_id), mapping={
                "state": JobState.ACTIVE.value,
                "processed_on": self._now_ms(),
                "worker": worker_name,
                "token": job.token,
            })
            pipe.execute()
            job.state = JobState.ACTIVE
            return job

    def complete(self, job: Job, result: Any = None) -> bool:
        """Acknowledge a job: its data is removed and its id remembered as completed.

        Returns False without touching the queue when this claim is no longer
        current, e.g. the job was already recovered as stalled.
        """
        job_key = self._job_key(job.id)

        def ack(pipe) -> bool:
            if not self._owns(pipe, job):
                return False
            now = self._now_ms()
            pipe.multi()
            pipe.lrem(self.active_key, 1, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.delete(job_key)
            pipe.zadd(self.completed_key, {job.id: now})
            pipe.zremrangebyrank(self.completed_key, 0, -self.keep_completed - 1)
            return True

        if not self.client.transaction(ack, job_key, value_from_callable=True):
            logger.warning(f"Job {job.id} is no longer held by this claim in {self.name}, completion ignored")
            return False
        job.state = JobState.COMPLETED
        logger.info(f"Job {job.id} completed.")
        return True

    def fail(self, job: Job, error: BaseException) -> JobState:
        """Record a failed attempt; returns DELAYED while retries remain, else FAILED"""
        state = self._record_failure(job, f"{type(error).__name__}: {error}")
        if state is None:
            logger.warning(f"Job {job.id} is no longer held by this claim in {self.name}, failure not recorded")
            return self.get_state(job.id)
        return state

    def _record_failure(self, job: Job, reason: str, stalled: bool = False) -> Optional[JobState]:
        """Move an active job to delayed or failed in one transaction.

        Returns None when the claim is not current, or for a stall check when
        the lock came back.
        """
        job_key = self._job_key(job.id)
        lock_key = self._lock_key(job.id)
        outcome = {}

        def record(pipe) -> Optional[JobState]:
            if not self._owns(pipe, job):
                return None
            if stalled and pipe.exists(lock_key):
                return None
            attempts_made = int(pipe.hget(job_key, "attempts_made") or 0) + 1
            now = self._now_ms()
            pipe.multi()
            pipe.lrem(self.active_key, 1, job.id)
            pipe.delete(lock_key)
            pipe.hdel(job_key, "token")
            outcome["attempts_made"] = attempts_made
            if attempts_made < job.options.attempts:
                delay = calculate_delay(attempts_made, job.options.retry_config)
                outcome["delay"] = delay
                pipe.hset(job_key, mapping={
                    "attempts_made": attempts_made,
                    "state": JobState.DELAYED.value,
                    "failed_reason": reason,
                })
                pipe.zadd(self.delayed_key, {job.id: now + int(delay * 1000)})
                return JobState.DELAYED
            pipe.hset(job_key, mapping={
                "attempts_made": attempts_made,
                "state": JobState.FAILED.value,
                "failed_reason": reason,
                "finished_on": now,
            })
            pipe.zadd(self.failed_key, {job.id: now})
            return JobState.FAILED

        state = self.client.transaction(record, job_key, lock_key, value_from_callable=True)
        if state is None:
            return None

        attempts_made = outcome["attempts_made"]
        if state == JobState.DELAYED:
            logger.warning(
                f"Job {job.id} attempt {attempts_made}/{job.options.attempts} failed: {reason}. "
                f"Retrying in {outcome['delay']:.2f}s"
            )
        else:
            logger.error(f"Job {job.id} failed permanently after {attempts_made} attempts: {reason}")
        job.attempts_made = attempts_made
        job.state = state
        job.failed_reason = reason
        job.token = None
        return state

    def promote_delayed(self) -> int:
        """Make retries whose backoff has elapsed visible again"""
        due = self.client.zrangebyscore(self.delayed_key, "-inf", self._now_ms())
        promoted = 0
        for job_id in due:
            job_key = self._job_key(job_id)

            def move(pipe, job_id=job_id, job_key=job_key) -> bool:
                if pipe.zscore(self.delayed_key, job_id) is None:
                    return False
                pipe.multi()
                pipe.zrem(self.delayed_key, job_id)
                pipe.hset(job_key, "state", JobState.WAITING.value)
                pipe.lpush(self.wait_key, job_id)
                return True

            if not self.client.exists(job_key):
                # acknowledged while its retry was pending
                self.client.zrem(self.delayed_key, job_id)
                logger.warning(f"Delayed job {job_id} has no data in {self.name}, dropped from the delayed set")
                continue
            if self.client.transaction(move, self.delayed_key, job_key, value_from_callable=True):
                promoted += 1
        return promoted

    def recover_stalled(self) -> int:
        """Fail active jobs whose lock expired on two consecutive checks"""
        suspects = self.client.smembers(self.stalled_key)
        self.client.delete(self.stalled_key)
        recovered = 0
        for job_id in self.client.lrange(self.active_key, 0, -1):
            if self.client.exists(self._lock_key(job_id)):
                continue
            if job_id not in suspects:
                self.client.sadd(self.stalled_key, job_id)
                continue

            raw = self.client.hgetall(self._job_key(job_id))
            try:
                job = self._job_from_hash(job_id, raw)
            except ValueError as e:
                self._dead_letter_unreadable(job_id, str(e))
                recovered += 1
                continue

            if self._record_failure(job, "job stalled", stalled=True) is not None:
                logger.warning(f"Job {job_id} stalled in {self.name}, its worker stopped responding")
                recovered += 1
        return recovered

    def retry_failed(self, job_id: str) -> bool:
        """Send a dead-lettered job back to waiting with a fresh attempt budget"""
        job_key = self._job_key(job_id)

        def redrive(pipe) -> bool:
            if pipe.zscore(self.failed_key, job_id) is None:
                return False
            pipe.multi()
            pipe.zrem(self.failed_key, job_id)
            pipe.hset(job_key, mapping={"state": JobState.WAITING.value, "attempts_made": 0})
            pipe.hdel(job_key, "failed_reason", "finished_on")
            pipe.lpush(self.wait_key, job_id)
            return True

        redriven = self.client.transaction(redrive, self.failed_key, value_from_callable=True)
        if redriven:
            logger.info(f"Job {job_id} re-driven from the failed set of {self.name}")
        return redriven

    def get_state(self, job_id: str) -> JobState:
        state = self.client.hget(self._job_key(job_id), "state")
        if state:
            return JobState(state)
        if self.client.zscore(self.completed_key, job_id) is not None:
            return JobState.COMPLETED
        return JobState.UNKNOWN

    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self.client.hgetall(self._job_key(job_id))
        if not raw:
            return None
        try:
            return self._job_from_hash(job_id, raw)
        except ValueError:
            # dead-lettered without a readable payload
            return Job(
                id=job_id,
                data={},
                options=self.default_options,
                attempts_made=int(raw.get("attempts_made") or 0),
                state=JobState.FAILED,
                failed_reason=raw.get("failed_reason"),
            )

    def failed_jobs(self, limit: int = 100) -> List[Job]:
        """Dead-lettered jobs, oldest failure first"""
        jobs = []
        for job_id in self.client.zrange(self.failed_key, 0, limit - 1):
            job = self.get_job(job_id)
            if job:
                jobs.append(job)
        return jobs

    def counts(self) -> Dict[str, int]:
        pipe = self.client.pipeline()
        pipe.llen(self.wait_key)
        pipe.llen(self.active_key)
        pipe.zcard(self.delayed_key)
        pipe.zcard(self.completed_key)
        pipe.zcard(self.failed_key)
        waiting, active, delayed, completed, failed = pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
        }
