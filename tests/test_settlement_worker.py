"""
Worker pool behaviour: completion, retries, timeouts, competing consumers
"""
import threading
import time
import unittest

from common.error_handling import JobTimeout
from common.job_queue import JobOptions, JobState
from giving_service.models import Donation
from giving_service.settlement_worker import SettlementWorker, WorkerPool, process_settlement
from support import FakeClock, SqliteDatabase, make_queue, make_record

def payload_for(record):
    return {"givingData": record.to_wire()}

def wait_until(predicate, timeout=10.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()

class TestSettlementWorker(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.queue = make_queue(JobOptions(attempts=3, backoff_ms=1000, timeout_ms=10000), clock=self.clock)
        self.db = SqliteDatabase()
        self.completed = []
        self.failed = []
        self.pool = WorkerPool(self.queue, process_settlement(self.db.repository), size=1)
        self.pool.on_completed(lambda job, result: self.completed.append((job.id, result)))
        self.pool.on_failed(lambda job, error, state: self.failed.append((job.id, type(error), state)))

    def tearDown(self):
        self.db.close()

    def _worker(self, processor=None):
        return SettlementWorker("settlement-worker-test", self.queue,
                                processor or self.pool.processor, pool=self.pool)

    def test_job_is_persisted_and_acknowledged(self):
        self.queue.enqueue("giving-T123", payload_for(make_record()))

        job = self._worker().run_once()

        self.assertEqual(job.id, "giving-T123")
        self.assertEqual(self.queue.get_state("giving-T123"), JobState.COMPLETED)
        self.assertEqual(self.db.count(Donation.tp_trade_id == "T123", Donation.is_success.is_(True)), 1)
        self.assertEqual(self.completed, [("giving-T123", {"success": True, "inserted": True})])

    def test_idle_worker_returns_none(self):
        self.assertIsNone(self._worker().run_once())

    def test_failing_job_is_attempted_three_times_then_dead_lettered(self):
        calls = []

        def broken(job):
            calls.append(self.clock.now)
            raise RuntimeError("database unavailable")

        worker = self._worker(broken)
        self.queue.enqueue("giving-T1", payload_for(make_record(tp_trade_id="T1")))

        worker.run_once()
        self.clock.advance(1)
        worker.run_once()
        self.clock.advance(2)
        worker.run_once()
        self.clock.advance(60)
        self.assertIsNone(worker.run_once())

        self.assertEqual(len(calls), 3)
        gaps = [b - a for a, b in zip(calls, calls[1:])]
        self.assertEqual(gaps, [1, 2])
        self.assertEqual([state for _, _, state in self.failed],
                         [JobState.DELAYED, JobState.DELAYED, JobState.FAILED])
        self.assertEqual(self.queue.get_state("giving-T1"), JobState.FAILED)
        self.assertEqual([j.id for j in self.queue.failed_jobs()], ["giving-T1"])

    def test_retry_succeeds_after_transient_failure(self):
        attempts = []

        def flaky(job):
            attempts.append(job.attempts_made)
            if len(attempts) == 1:
                raise RuntimeError("deadlock")
            return "ok"

        worker = self._worker(flaky)
        self.queue.enqueue("giving-T1", payload_for(make_record(tp_trade_id="T1")))

        worker.run_once()
        self.clock.advance(1)
        worker.run_once()

        self.assertEqual(attempts, [0, 1])
        self.assertEqual(self.queue.get_state("giving-T1"), JobState.COMPLETED)

    def test_attempt_past_timeout_counts_as_failure(self):
        release = threading.Event()
        self.queue.enqueue("giving-slow", payload_for(make_record()),
                           JobOptions(attempts=3, backoff_ms=1000, timeout_ms=100))

        worker = self._worker(lambda job: release.wait(5))
        try:
            worker.run_once()
        finally:
            release.set()

        self.assertEqual(self.failed, [("giving-slow", JobTimeout, JobState.DELAYED)])
        self.assertIn("timed out", self.queue.get_job("giving-slow").failed_reason)

    def test_identical_payloads_under_distinct_ids_are_both_processed(self):
        """The queue never compares payloads, so each id is its own job"""
        seen = []
        record = make_record()
        self.queue.enqueue("job-a", payload_for(record))
        self.queue.enqueue("job-b", payload_for(record))

        worker = self._worker(lambda job: seen.append(job.data))
        worker.run_once()
        worker.run_once()

        self.assertEqual(seen, [payload_for(record), payload_for(record)])

    def test_repeat_of_settled_charge_is_absorbed_by_storage(self):
        """Both jobs run and complete; the unique trade id keeps a single row"""
        record = make_record()
        self.queue.enqueue("job-a", payload_for(record))
        self.queue.enqueue("job-b", payload_for(record))

        worker = self._worker()
        worker.run_once()
        worker.run_once()

        self.assertEqual(self.db.count(), 1)
        self.assertEqual(self.queue.counts()["completed"], 2)

    def test_malformed_payload_fails_the_attempt(self):
        self.queue.enqueue("giving-bad", {"givingData": {"amount": 100}})

        self._worker().run_once()

        self.assertEqual(self.queue.get_state("giving-bad"), JobState.DELAYED)
        self.assertEqual(self.db.count(), 0)

class TestWorkerPool(unittest.TestCase):

    def setUp(self):
        self.queue = make_queue(JobOptions(attempts=3, backoff_ms=10, timeout_ms=5000))
        self.db = SqliteDatabase()

    def tearDown(self):
        self.db.close()

    def test_competing_workers_drain_queue_once_each(self):
        handled = []
        lock = threading.Lock()
        settle = process_settlement(self.db.repository)

        def recording(job):
            with lock:
                handled.append(job.id)
            return settle(job)

        pool = WorkerPool(self.queue, recording, size=3, poll_interval=0.01)
        for i in range(12):
            self.queue.enqueue(f"giving-T{i}", payload_for(make_record(tp_trade_id=f"T{i}")))

        pool.start()
        try:
            drained = wait_until(lambda: self.queue.counts()["completed"] == 12)
        finally:
            pool.stop()

        self.assertTrue(drained)
        self.assertEqual(sorted(handled), sorted(f"giving-T{i}" for i in range(12)))
        self.assertEqual(self.db.count(), 12)
        self.assertFalse(pool.running)

    def test_pool_retries_until_success(self):
        failures = {"left": 2}
        lock = threading.Lock()

        def flaky(job):
            with lock:
                if failures["left"]:
                    failures["left"] -= 1
                    raise RuntimeError("transient")
            return "ok"

        pool = WorkerPool(self.queue, flaky, size=2, poll_interval=0.01)
        self.queue.enqueue("giving-T1", {"givingData": {}})

        pool.start()
        try:
            done = wait_until(lambda: self.queue.get_state("giving-T1") == JobState.COMPLETED)
        finally:
            pool.stop()

        self.assertTrue(done)

    def test_worker_keeps_running_past_an_unreadable_job(self):
        self.queue.client.hset(self.queue._job_key("broken"), mapping={"state": "waiting"})
        self.queue.client.rpush(self.queue.wait_key, "broken")
        self.queue.enqueue("giving-T1", payload_for(make_record(tp_trade_id="T1")))

        pool = WorkerPool(self.queue, process_settlement(self.db.repository), size=1, poll_interval=0.01)
        pool.start()
        try:
            done = wait_until(lambda: self.queue.get_state("giving-T1") == JobState.COMPLETED)
            alive = pool.running
        finally:
            pool.stop()

        self.assertTrue(done)
        self.assertTrue(alive)
        self.assertEqual(self.queue.get_state("broken"), JobState.FAILED)
        self.assertEqual(self.db.count(), 1)

    def test_worker_survives_unexpected_error_in_housekeeping(self):
        promote = self.queue.promote_delayed
        calls = []

        def flaky_promote():
            calls.append(1)
            if len(calls) == 1:
                raise KeyError("data")
            return promote()

        self.queue.promote_delayed = flaky_promote
        self.queue.enqueue("giving-T1", payload_for(make_record(tp_trade_id="T1")))

        pool = WorkerPool(self.queue, lambda job: "ok", size=1, poll_interval=0.01)
        with self.assertLogs("giving_service.settlement_worker", level="ERROR"):
            pool.start()
            try:
                done = wait_until(lambda: self.queue.get_state("giving-T1") == JobState.COMPLETED)
                alive = pool.running
            finally:
                pool.stop()

        self.assertTrue(done)
        self.assertTrue(alive)

    def test_pool_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            WorkerPool(self.queue, lambda job: None, size=0)

if __name__ == "__main__":
    unittest.main()
