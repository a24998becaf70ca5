"""
Tests for job_queue.py and the job primitives in database.py

Covers:
    - idempotent enqueue per (target, type)
    - FIFO claiming and exclusive claims under concurrent callers
    - retry bookkeeping: requeue, terminal failure, manual retry
    - status reporting
"""

import threading
from unittest.mock import patch

import pytest

from database import Database
from job_queue import MAX_RETRIES, JobQueue
from models import JobStatus, JobType


class TestEnqueue:

    def test_enqueue_twice_returns_same_id(self, queue, make_lead):
        lead_id = make_lead()
        for job_type in JobType:
            first = queue.enqueue(lead_id, job_type)
            second = queue.enqueue(lead_id, job_type)
            assert first == second

    def test_different_types_get_different_jobs(self, queue, make_lead):
        lead_id = make_lead()
        ids = {queue.enqueue(lead_id, t) for t in JobType}
        assert len(ids) == 3

    def test_running_job_is_reused(self, queue, make_lead):
        lead_id = make_lead()
        job_id = queue.enqueue(lead_id, JobType.EMAIL_SCRAPING)
        claimed = queue.claim_next()
        assert claimed.id == job_id
        assert queue.enqueue(lead_id, JobType.EMAIL_SCRAPING) == job_id

    def test_new_job_after_terminal_state(self, queue, make_lead):
        lead_id = make_lead()
        job_id = queue.enqueue(lead_id, JobType.WEBSITE_VALIDATION)
        queue.claim_next()
        queue.mark_success(job_id)
        assert queue.enqueue(lead_id, JobType.WEBSITE_VALIDATION) != job_id

    def test_enqueue_batch_preserves_order(self, queue, make_lead):
        a, b = make_lead(name="A"), make_lead(name="B")
        ids = queue.enqueue_batch([(a, JobType.WEBSITE_VALIDATION), (b, JobType.WEBSITE_VALIDATION),
                                   (a, JobType.WEBSITE_VALIDATION)])
        assert ids[0] == ids[2]
        assert ids[0] != ids[1]

    def test_new_job_fields(self, queue, db, make_lead):
        lead_id = make_lead()
        job = db.get_job(queue.enqueue(lead_id, JobType.SOCIAL_SCRAPING))
        assert job["status"] == "queued"
        assert job["retry_count"] == 0
        assert job["last_error"] is None
        assert job["started_at"] is None
        assert job["completed_at"] is None
        assert job["created_at"]


class TestClaim:

    def test_empty_queue_returns_none(self, queue):
        assert queue.claim_next() is None

    def test_claim_is_fifo_by_creation(self, queue, make_lead):
        ids = [queue.enqueue(make_lead(name=f"Lead {i}"), JobType.WEBSITE_VALIDATION) for i in range(4)]
        claimed = [queue.claim_next().id for _ in range(4)]
        assert claimed == ids
        assert queue.claim_next() is None

    def test_claim_sets_running_and_started_at(self, queue, db, make_lead):
        job_id = queue.enqueue(make_lead(), JobType.WEBSITE_VALIDATION)
        job = queue.claim_next()
        assert job.status == JobStatus.RUNNING
        assert job.started_at
        stored = db.get_job(job_id)
        assert stored["status"] == "running"
        assert stored["started_at"] == job.started_at

    def test_storage_error_is_swallowed(self, queue):
        with patch.object(queue.db, "claim_next_job", side_effect=RuntimeError("disk I/O error")):
            assert queue.claim_next() is None

    def test_concurrent_claims_never_share_a_job(self, make_lead, db):
        for i in range(12):
            JobQueue(db).enqueue(make_lead(name=f"Lead {i}"), JobType.WEBSITE_VALIDATION)

        # two handles on the same file, like two separate invocations
        other = Database(db.path).open()
        queues = [JobQueue(db), JobQueue(other)]
        claimed = []
        claimed_lock = threading.Lock()

        def worker(q):
            while True:
                job = q.claim_next()
                if job is None:
                    return
                with claimed_lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=worker, args=(queues[i % 2],)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        other.close()

        assert len(claimed) == 12
        assert len(set(claimed)) == 12


class TestFailureAndRetry:

    def _fail_once(self, queue, job_id, error="boom"):
        job = queue.claim_next()
        assert job.id == job_id
        queue.mark_failure(job_id, error)

    def test_failure_requeues_below_limit(self, queue, db, make_lead):
        job_id = queue.enqueue(make_lead(), JobType.EMAIL_SCRAPING)
        self._fail_once(queue, job_id, "Lead not found")
        job = db.get_job(job_id)
        assert job["status"] == "queued"
        assert job["retry_count"] == 1
        assert job["last_error"] == "Lead not found"
        assert job["started_at"] is None
        assert job["completed_at"] is None

    def test_failure_becomes_terminal_at_max_retries(self, queue, db, make_lead):
        job_id = queue.enqueue(make_lead(), JobType.EMAIL_SCRAPING)
        seen = []
        for attempt in range(MAX_RETRIES):
            self._fail_once(queue, job_id, f"attempt {attempt}")
            seen.append(db.get_job(job_id)["retry_count"])

        assert seen == sorted(seen)
        job = db.get_job(job_id)
        assert job["status"] == "failure"
        assert job["retry_count"] == MAX_RETRIES
        assert job["completed_at"]
        assert queue.claim_next() is None

    def test_requeued_job_keeps_its_place(self, queue, make_lead):
        first = queue.enqueue(make_lead(name="First"), JobType.WEBSITE_VALIDATION)
        second = queue.enqueue(make_lead(name="Second"), JobType.WEBSITE_VALIDATION)
        self._fail_once(queue, first)
        assert queue.claim_next().id == first
        assert queue.claim_next().id == second

    def test_mark_success_clears_error(self, queue, db, make_lead):
        job_id = queue.enqueue(make_lead(), JobType.WEBSITE_VALIDATION)
        self._fail_once(queue, job_id)
        queue.claim_next()
        queue.mark_success(job_id)
        queue.mark_success(job_id)
        job = db.get_job(job_id)
        assert job["status"] == "success"
        assert job["last_error"] is None
        assert job["completed_at"]

    def test_manual_retry_only_from_failure(self, queue, db, make_lead):
        job_id = queue.enqueue(make_lead(), JobType.WEBSITE_VALIDATION)
        assert queue.retry(job_id) is False

        for _ in range(MAX_RETRIES):
            self._fail_once(queue, job_id)
        assert queue.retry(job_id) is True

        job = db.get_job(job_id)
        assert job["status"] == "queued"
        assert job["retry_count"] == 0
        assert job["last_error"] is None
        assert job["completed_at"] is None
        assert queue.retry(job_id) is False

    def test_retry_unknown_job(self, queue):
        assert queue.retry("missing") is False

    def test_mark_failure_unknown_job_is_noop(self, queue):
        queue.mark_failure("missing", "boom")


class TestReporting:

    def test_pending_count_includes_running(self, queue, make_lead):
        lead_id = make_lead()
        for t in JobType:
            queue.enqueue(lead_id, t)
        queue.claim_next()
        assert queue.pending_count() == 3

    def test_status_summary(self, queue, make_lead):
        lead_id = make_lead(name="Broken Biz")
        ok = queue.enqueue(lead_id, JobType.WEBSITE_VALIDATION)
        bad = queue.enqueue(lead_id, JobType.EMAIL_SCRAPING)
        queue.enqueue(lead_id, JobType.SOCIAL_SCRAPING)

        queue.claim_next()
        queue.mark_success(ok)
        for _ in range(MAX_RETRIES):
            assert queue.claim_next().id == bad
            queue.mark_failure(bad, "HTTP 500")

        summary = queue.status_summary()
        assert summary.success == 1
        assert summary.failure == 1
        assert summary.queued == 1
        assert summary.total == 3
        assert summary.pending_count == 1
        assert len(summary.recent_failures) == 1
        failure = summary.recent_failures[0]
        assert failure.id == bad
        assert failure.lead_name == "Broken Biz"
        assert failure.retry_count == MAX_RETRIES
        assert failure.last_error == "HTTP 500"

    def test_get_job_includes_lead(self, queue, make_lead):
        job_id = queue.enqueue(make_lead(name="Joined"), JobType.WEBSITE_VALIDATION)
        job = queue.get_job(job_id)
        assert job["lead_name"] == "Joined"
        assert job["website_status"] == "unknown"
