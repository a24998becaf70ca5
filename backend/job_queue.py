"""
Durable enrichment job queue.

Jobs move queued -> running -> success | queued (retry) | failure.
A failed attempt goes straight back to the pool, ordered by its original
created_at; after MAX_RETRIES attempts it stops in failure until someone
retries it by hand.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from database import Database, now_iso
from models import (
    ACTIVE_JOB_STATUSES,
    EnrichmentJob,
    FailedJobSummary,
    JobStatus,
    JobType,
    QueueStatusResponse,
)

logger = logging.getLogger("QUEUE")

MAX_RETRIES = 3
RECENT_FAILURES_LIMIT = 5


class JobQueue:
    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, target_id: str, job_type: JobType) -> str:
        """Create a queued job, or return the id of the active one for this pair."""
        job_id, created = self.db.create_job_if_absent(target_id, job_type)
        if created:
            logger.info(f"[Job {job_id}] Enqueued {JobType(job_type).value} for lead {target_id}")
        else:
            logger.debug(f"[Job {job_id}] Already active for lead {target_id}, reusing")
        return job_id

    def enqueue_batch(self, jobs: Iterable[Tuple[str, JobType]]) -> List[str]:
        return [self.enqueue(target_id, job_type) for target_id, job_type in jobs]

    def claim_next(self) -> Optional[EnrichmentJob]:
        try:
            row = self.db.claim_next_job(MAX_RETRIES)
        except Exception as e:
            logger.error(f"Error claiming next job: {e}", exc_info=True)
            return None

        if row is None:
            return None

        job = EnrichmentJob(**row)
        logger.info(f"[Job {job.id}] Claimed {job.job_type.value} for lead {job.target_id} (attempt {job.retry_count + 1})")
        return job

    def mark_success(self, job_id: str):
        self.db.update_job(
            job_id,
            status=JobStatus.SUCCESS,
            completed_at=now_iso(),
            last_error=None,
        )
        logger.info(f"[Job {job_id}] SUCCESS")

    def mark_failure(self, job_id: str, error: str):
        job = self.db.get_job(job_id)
        if not job:
            logger.warning(f"[Job {job_id}] Cannot record failure, job not found")
            return

        retry_count = job["retry_count"] + 1
        should_retry = retry_count < MAX_RETRIES

        self.db.update_job(
            job_id,
            status=JobStatus.QUEUED if should_retry else JobStatus.FAILURE,
            retry_count=retry_count,
            last_error=error,
            started_at=None,
            completed_at=None if should_retry else now_iso(),
        )

        if should_retry:
            logger.warning(f"[Job {job_id}] Attempt {retry_count}/{MAX_RETRIES} failed, requeued: {error}")
        else:
            logger.error(f"[Job {job_id}] FAILED after {retry_count} attempts: {error}")

    def retry(self, job_id: str) -> bool:
        """Manually requeue a job that ended in failure."""
        job = self.db.get_job(job_id)
        if not job or job["status"] != JobStatus.FAILURE.value:
            return False

        self.db.update_job(
            job_id,
            status=JobStatus.QUEUED,
            retry_count=0,
            last_error=None,
            started_at=None,
            completed_at=None,
        )
        logger.info(f"[Job {job_id}] Manually requeued")
        return True

    def pending_count(self) -> int:
        return self.db.count_jobs(ACTIVE_JOB_STATUSES)

    def get_job(self, job_id: str) -> Optional[dict]:
        return self.db.get_job(job_id)

    def status_summary(self) -> QueueStatusResponse:
        counts = self.db.count_jobs_by_status()
        failures = self.db.get_recent_failures(RECENT_FAILURES_LIMIT)
        return QueueStatusResponse(
            queued=counts[JobStatus.QUEUED.value],
            running=counts[JobStatus.RUNNING.value],
            success=counts[JobStatus.SUCCESS.value],
            failure=counts[JobStatus.FAILURE.value],
            total=sum(counts.values()),
            pending_count=counts[JobStatus.QUEUED.value] + counts[JobStatus.RUNNING.value],
            recent_failures=[
                FailedJobSummary(
                    id=f["id"],
                    job_type=f["job_type"],
                    target_id=f["target_id"],
                    lead_name=f.get("lead_name"),
                    retry_count=f["retry_count"],
                    last_error=f.get("last_error"),
                    completed_at=f.get("completed_at"),
                )
                for f in failures
            ],
        )
