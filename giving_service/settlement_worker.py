"""
Competing consumers that drain the settlement queue into the donation table
"""
import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, List, Optional

import redis

from common.error_handling import JobTimeout
from common.job_queue import Job, JobQueue, JobState
from common.schemas import JobPayload
from common.tracing import settlement_tracer
from .repository import DonationRepository

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Any]
CompletedListener = Callable[[Job, Any], None]
FailedListener = Callable[[Job, BaseException, JobState], None]

POLL_INTERVAL = 0.5
STALLED_CHECK_INTERVAL = 30.0

def process_settlement(repository: DonationRepository) -> Processor:
    """Processing function shared by every worker: one job, one insert"""
    def settle(job: Job):
        payload = JobPayload.model_validate(job.data)
        inserted = repository.persist_one(payload.givingData)
        return {"success": True, "inserted": inserted}
    return settle

class SettlementWorker(threading.Thread):
    """One consumer, one job in flight at a time"""

    def __init__(self, name: str, queue: JobQueue, processor: Processor, pool: "WorkerPool" = None,
                 poll_interval: float = POLL_INTERVAL, stalled_interval: float = STALLED_CHECK_INTERVAL):
        super().__init__(name=name, daemon=True)
        self.queue = queue
        self.processor = processor
        self.pool = pool
        self.poll_interval = poll_interval
        self.stalled_interval = stalled_interval
        self._stop_event = threading.Event()
        self._executor = self._new_executor()
        self._last_stalled_check = time.monotonic()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-attempt")

    def stop(self):
        self._stop_event.set()

    def run(self):
        logger.info(f"Worker {self.name} started on queue {self.queue.name}")
        while not self._stop_event.is_set():
            try:
                job = self.run_once()
            except redis.RedisError as e:
                logger.error(f"Worker {self.name} cannot reach the queue store: {e}")
                job = None
            except Exception:
                logger.exception(f"Worker {self.name} hit an unexpected error, continuing")
                job = None
            if job is None:
                self._stop_event.wait(self.poll_interval)
        self._executor.shutdown(wait=False)
        logger.info(f"Worker {self.name} stopped")

    def run_once(self) -> Optional[Job]:
        """Housekeeping plus at most one job; returns the job it handled"""
        self.queue.promote_delayed()
        if time.monotonic() - self._last_stalled_check >= self.stalled_interval:
            self._last_stalled_check = time.monotonic()
            self.queue.recover_stalled()

        job = self.queue.claim(self.name)
        if job is None:
            return None
        self.process(job)
        return job

    def process(self, job: Job) -> None:
        with settlement_tracer.start_job_span(job.id, job.attempts_made + 1, self.name) as span:
            future = self._executor.submit(self.processor, job)
            try:
                result = future.result(timeout=job.timeout)
            except FutureTimeout:
                # the attempt thread cannot be interrupted, abandon it with its executor
                self._executor.shutdown(wait=False)
                self._executor = self._new_executor()
                error = JobTimeout(f"Job {job.id} timed out after {job.timeout:.1f}s")
                span.set_error(error)
                self._fail(job, error)
                return
            except Exception as e:
                span.set_error(e)
                self._fail(job, e)
                return

        if self.queue.complete(job, result) and self.pool:
            self.pool._emit_completed(job, result)

    def _fail(self, job: Job, error: BaseException) -> None:
        logger.error(f"Job {job.id} failed with error: {error}")
        state = self.queue.fail(job, error)
        if self.pool:
            self.pool._emit_failed(job, error, state)

class WorkerPool:
    """A fixed set of SettlementWorkers competing for the same queue"""

    def __init__(self, queue: JobQueue, processor: Processor, size: int = 5,
                 poll_interval: float = POLL_INTERVAL, stalled_interval: float = STALLED_CHECK_INTERVAL):
        if size < 1:
            raise ValueError("worker pool needs at least one worker")
        self.queue = queue
        self.processor = processor
        self.size = size
        self.poll_interval = poll_interval
        self.stalled_interval = stalled_interval
        self.workers: List[SettlementWorker] = []
        self._completed_listeners: List[CompletedListener] = []
        self._failed_listeners: List[FailedListener] = []

    def on_completed(self, listener: CompletedListener) -> None:
        self._completed_listeners.append(listener)

    def on_failed(self, listener: FailedListener) -> None:
        """Listener sees every failed attempt; state is FAILED once the job is dead-lettered"""
        self._failed_listeners.append(listener)

    def _emit_completed(self, job: Job, result: Any) -> None:
        for listener in self._completed_listeners:
            try:
                listener(job, result)
            except Exception:
                logger.exception(f"Completed listener raised for job {job.id}")

    def _emit_failed(self, job: Job, error: BaseException, state: JobState) -> None:
        for listener in self._failed_listeners:
            try:
                listener(job, error, state)
            except Exception:
                logger.exception(f"Failed listener raised for job {job.id}")

    @property
    def running(self) -> bool:
        return any(worker.is_alive() for worker in self.workers)

    def start(self) -> None:
        if self.running:
            return
        self.workers = [
            SettlementWorker(
                name=f"settlement-worker-{i}",
                queue=self.queue,
                processor=self.processor,
                pool=self,
                poll_interval=self.poll_interval,
                stalled_interval=self.stalled_interval,
            )
            for i in range(self.size)
        ]
        for worker in self.workers:
            worker.start()
        logger.info(f"Started {self.size} settlement workers on queue {self.queue.name}")

    def stop(self, timeout: float = 15.0) -> None:
        """Signal every worker and wait for in-flight jobs to finish"""
        for worker in self.workers:
            worker.stop()
        deadline = time.monotonic() + timeout
        for worker in self.workers:
            worker.join(max(0.0, deadline - time.monotonic()))
        logger.info(f"Settlement workers on queue {self.queue.name} stopped")

def run():
    """Run a standalone worker process against the shared queue"""
    from common.redis_client import create_redis
    from common.job_queue import JobOptions
    from common.settings import settings
    from .db import create_db_engine, create_session_factory
    from .models import Base

    logging.basicConfig(level=settings.log_level)

    engine = create_db_engine()
    Base.metadata.create_all(bind=engine)
    repository = DonationRepository(create_session_factory(engine))
    queue = JobQueue(create_redis(), settings.queue_name, JobOptions.from_settings(settings))
    pool = WorkerPool(queue, process_settlement(repository), size=settings.workers,
                      poll_interval=settings.worker_poll_interval)

    stopped = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stopped.set())
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())

    pool.start()
    stopped.wait()
    pool.stop()

if __name__ == "__main__":
    run()
