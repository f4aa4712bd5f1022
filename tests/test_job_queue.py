"""
Unit tests for the Redis-backed settlement queue
"""
import unittest
from unittest.mock import MagicMock, patch

import redis

from common.error_handling import EnqueueFailed
from common.job_queue import JobOptions, JobQueue, JobState
from support import FakeClock, make_queue

PAYLOAD = {"givingData": {"amount": 100, "tpTradeID": "T123"}}

class TestEnqueue(unittest.TestCase):

    def setUp(self):
        self.queue = make_queue()

    def test_enqueue_makes_job_waiting(self):
        handle = self.queue.enqueue("giving-T123", PAYLOAD)

        self.assertEqual(handle.id, "giving-T123")
        self.assertFalse(handle.duplicate)
        self.assertEqual(self.queue.get_state("giving-T123"), JobState.WAITING)
        self.assertEqual(self.queue.counts()["waiting"], 1)

    def test_same_id_collapses_into_one_job(self):
        self.queue.enqueue("giving-T123", PAYLOAD)
        second = self.queue.enqueue("giving-T123", {"givingData": {"amount": 999}})

        self.assertTrue(second.duplicate)
        self.assertEqual(self.queue.counts()["waiting"], 1)
        self.assertEqual(self.queue.get_job("giving-T123").data, PAYLOAD)

    def test_distinct_ids_with_identical_payloads_are_independent(self):
        self.queue.enqueue("job-a", PAYLOAD)
        self.queue.enqueue("job-b", PAYLOAD)

        first = self.queue.claim("w1")
        second = self.queue.claim("w2")

        self.assertEqual({first.id, second.id}, {"job-a", "job-b"})
        self.assertEqual(first.data, second.data)

    def test_claim_is_fifo(self):
        for job_id in ("first", "second", "third"):
            self.queue.enqueue(job_id, PAYLOAD)

        claimed = [self.queue.claim("w").id for _ in range(3)]

        self.assertEqual(claimed, ["first", "second", "third"])
        self.assertIsNone(self.queue.claim("w"))

    def test_claimed_job_is_invisible_to_other_workers(self):
        self.queue.enqueue("only", PAYLOAD)

        job = self.queue.claim("w1")

        self.assertIsNone(self.queue.claim("w2"))
        self.assertEqual(job.state, JobState.ACTIVE)
        self.assertEqual(self.queue.get_state("only"), JobState.ACTIVE)

    def test_enqueue_requires_an_id(self):
        with self.assertRaises(ValueError):
            self.queue.enqueue("", PAYLOAD)

    def test_unreachable_store_raises_enqueue_failed(self):
        client = MagicMock()
        client.transaction.side_effect = redis.ConnectionError("connection refused")
        queue = JobQueue(client, "tappay-payments")

        with self.assertRaises(EnqueueFailed) as ctx:
            queue.enqueue("giving-T123", PAYLOAD)
        self.assertIsInstance(ctx.exception.original_error, redis.ConnectionError)

    def test_default_options_are_three_attempts_one_second_ten_seconds(self):
        options = JobOptions()
        self.assertEqual(options.attempts, 3)
        self.assertEqual(options.backoff_ms, 1000)
        self.assertEqual(options.timeout_ms, 10000)

        job = self.queue.get_job(self.queue.enqueue("x", PAYLOAD).id)
        self.assertEqual(job.options, options)
        self.assertEqual(job.timeout, 10.0)

class TestCompletion(unittest.TestCase):

    def setUp(self):
        self.queue = make_queue()

    def test_complete_removes_job_data(self):
        self.queue.enqueue("giving-T1", PAYLOAD)
        job = self.queue.claim("w1")

        self.queue.complete(job, {"success": True})

        self.assertIsNone(self.queue.get_job("giving-T1"))
        self.assertEqual(self.queue.get_state("giving-T1"), JobState.COMPLETED)
        counts = self.queue.counts()
        self.assertEqual(counts["active"], 0)
        self.assertEqual(counts["completed"], 1)

    def test_completed_id_is_not_enqueued_again(self):
        self.queue.enqueue("giving-T1", PAYLOAD)
        self.queue.complete(self.queue.claim("w1"))

        handle = self.queue.enqueue("giving-T1", PAYLOAD)

        self.assertTrue(handle.duplicate)
        self.assertIsNone(self.queue.claim("w1"))

class TestRetries(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.queue = make_queue(JobOptions(attempts=3, backoff_ms=1000, timeout_ms=10000), clock=self.clock)
        self.queue.enqueue("giving-T1", PAYLOAD)

    def _due_in_ms(self, job_id):
        score = self.queue.client.zscore(self.queue.delayed_key, job_id)
        return int(score) - int(self.clock.now * 1000)

    def test_backoff_doubles_and_job_dead_letters_after_three_attempts(self):
        delays = []

        job = self.queue.claim("w1")
        self.assertEqual(self.queue.fail(job, RuntimeError("db down")), JobState.DELAYED)
        delays.append(self._due_in_ms("giving-T1"))

        # not visible before the backoff elapses
        self.clock.advance(0.5)
        self.assertEqual(self.queue.promote_delayed(), 0)
        self.assertIsNone(self.queue.claim("w1"))
        self.clock.advance(0.5)
        self.assertEqual(self.queue.promote_delayed(), 1)

        job = self.queue.claim("w1")
        self.assertEqual(job.attempts_made, 1)
        self.assertEqual(self.queue.fail(job, RuntimeError("db down")), JobState.DELAYED)
        delays.append(self._due_in_ms("giving-T1"))

        self.clock.advance(2)
        self.queue.promote_delayed()
        job = self.queue.claim("w1")
        self.assertEqual(self.queue.fail(job, RuntimeError("db down")), JobState.FAILED)

        self.assertEqual(delays, [1000, 2000])
        self.assertEqual(self.queue.get_state("giving-T1"), JobState.FAILED)

        # terminal: nothing ever comes back
        self.clock.advance(3600)
        self.assertEqual(self.queue.promote_delayed(), 0)
        self.assertIsNone(self.queue.claim("w1"))

        dead = self.queue.failed_jobs()
        self.assertEqual([j.id for j in dead], ["giving-T1"])
        self.assertEqual(dead[0].attempts_made, 3)
        self.assertIn("db down", dead[0].failed_reason)

    def test_failed_id_is_not_enqueued_again(self):
        queue = make_queue(JobOptions(attempts=1), clock=self.clock)
        queue.enqueue("giving-T9", PAYLOAD)
        queue.fail(queue.claim("w1"), RuntimeError("boom"))

        self.assertTrue(queue.enqueue("giving-T9", PAYLOAD).duplicate)

    def test_retry_failed_redrives_with_fresh_budget(self):
        queue = make_queue(JobOptions(attempts=1), clock=self.clock)
        queue.enqueue("giving-T9", PAYLOAD)
        queue.fail(queue.claim("w1"), RuntimeError("boom"))

        self.assertTrue(queue.retry_failed("giving-T9"))
        self.assertFalse(queue.retry_failed("giving-T9"))

        job = queue.claim("w1")
        self.assertEqual(job.id, "giving-T9")
        self.assertEqual(job.attempts_made, 0)
        self.assertIsNone(job.failed_reason)
        self.assertEqual(queue.counts()["failed"], 0)

    def test_failure_of_a_job_no_longer_active_is_ignored(self):
        job = self.queue.claim("w1")
        self.queue.complete(job)

        self.assertEqual(self.queue.fail(job, RuntimeError("late")), JobState.COMPLETED)
        self.assertEqual(self.queue.counts()["delayed"], 0)

class TestStalledJobs(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.queue = make_queue(clock=self.clock)
        self.queue.enqueue("giving-T1", PAYLOAD)

    def test_job_with_expired_lock_is_retried(self):
        self.queue.claim("crashed-worker")
        self.queue.client.delete(self.queue._lock_key("giving-T1"))

        # first check only marks the suspect
        self.assertEqual(self.queue.recover_stalled(), 0)
        self.assertEqual(self.queue.recover_stalled(), 1)

        self.assertEqual(self.queue.get_state("giving-T1"), JobState.DELAYED)
        self.assertEqual(self.queue.get_job("giving-T1").attempts_made, 1)
        self.assertEqual(self.queue.counts()["active"], 0)

    def test_locked_job_is_left_alone(self):
        self.queue.claim("live-worker")

        self.assertEqual(self.queue.recover_stalled(), 0)
        self.assertEqual(self.queue.recover_stalled(), 0)
        self.assertEqual(self.queue.get_state("giving-T1"), JobState.ACTIVE)

    def test_late_completion_after_stall_recovery_is_ignored(self):
        job = self.queue.claim("slow-worker")
        self.queue.client.delete(self.queue._lock_key("giving-T1"))
        self.queue.recover_stalled()
        self.queue.recover_stalled()

        self.assertFalse(self.queue.complete(job, {"success": True}))

        self.assertEqual(self.queue.get_state("giving-T1"), JobState.DELAYED)
        self.clock.advance(5)
        self.assertEqual(self.queue.promote_delayed(), 1)
        retried = self.queue.claim("w2")
        self.assertEqual(retried.data, PAYLOAD)
        self.assertEqual(retried.attempts_made, 1)

    def test_stale_claim_cannot_settle_a_newer_claim(self):
        stale = self.queue.claim("slow-worker")
        self.queue.client.delete(self.queue._lock_key("giving-T1"))
        self.queue.recover_stalled()
        self.queue.recover_stalled()
        self.clock.advance(5)
        self.queue.promote_delayed()
        current = self.queue.claim("w2")

        self.assertFalse(self.queue.complete(stale))
        self.assertEqual(self.queue.fail(stale, RuntimeError("late")), JobState.ACTIVE)
        self.assertEqual(self.queue.get_job("giving-T1").attempts_made, 1)

        self.assertTrue(self.queue.complete(current))
        self.assertEqual(self.queue.get_state("giving-T1"), JobState.COMPLETED)

    def test_store_error_during_failure_leaves_job_recoverable(self):
        job = self.queue.claim("w1")

        with patch.object(self.queue.client, "transaction", side_effect=redis.ConnectionError("reset")):
            with self.assertRaises(redis.ConnectionError):
                self.queue.fail(job, RuntimeError("db down"))

        self.assertEqual(self.queue.get_state("giving-T1"), JobState.ACTIVE)
        self.assertEqual(self.queue.counts()["active"], 1)

        self.queue.client.delete(self.queue._lock_key("giving-T1"))
        self.queue.recover_stalled()
        self.assertEqual(self.queue.recover_stalled(), 1)
        self.assertEqual(self.queue.get_state("giving-T1"), JobState.DELAYED)
        self.assertEqual(self.queue.counts()["delayed"], 1)

class TestUnreadableJobs(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.queue = make_queue(clock=self.clock)

    def _plant(self, job_id, fields, key=None):
        self.queue.client.hset(self.queue._job_key(job_id), mapping=fields)
        self.queue.client.rpush(key or self.queue.wait_key, job_id)

    def test_claim_dead_letters_job_without_data_and_moves_on(self):
        self.queue.enqueue("giving-T1", PAYLOAD)
        self._plant("broken", {"state": "waiting"})

        job = self.queue.claim("w1")

        self.assertEqual(job.id, "giving-T1")
        self.assertEqual(self.queue.get_state("broken"), JobState.FAILED)
        [dead] = self.queue.failed_jobs()
        self.assertEqual(dead.id, "broken")
        self.assertIn("unreadable", dead.failed_reason)
        self.assertEqual(self.queue.counts()["active"], 1)

    def test_stall_check_dead_letters_unreadable_active_job(self):
        self._plant("broken", {"data": "{not json", "state": "active"}, key=self.queue.active_key)

        self.queue.recover_stalled()
        self.assertEqual(self.queue.recover_stalled(), 1)

        self.assertEqual(self.queue.counts()["active"], 0)
        self.assertEqual(self.queue.get_state("broken"), JobState.FAILED)

    def test_delayed_id_without_data_is_not_promoted(self):
        self.queue.client.zadd(self.queue.delayed_key, {"ghost": 0})

        self.assertEqual(self.queue.promote_delayed(), 0)

        self.assertEqual(self.queue.counts()["delayed"], 0)
        self.assertIsNone(self.queue.claim("w1"))

if __name__ == "__main__":
    unittest.main()
