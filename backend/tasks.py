import threading
import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from job_queue import JobQueue
from processor import JobProcessor

logger = logging.getLogger("JOBS")


@dataclass
class BatchSummary:
    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    pending_count: int = 0
    processing_time_ms: int = 0


class JobRunner:
    """Claims and processes jobs until a job count or time budget runs out."""

    def __init__(self, queue: JobQueue, processor: JobProcessor):
        self.queue = queue
        self.processor = processor

    def run_batch(self, max_jobs: int = 10, timeout_s: float = 25.0,
                  stop_flag: Optional[threading.Event] = None) -> BatchSummary:
        """
        A claimed job always runs to completion and is marked; stop_flag and the
        time budget are only checked before the next claim.
        """
        summary = BatchSummary()
        start = time.monotonic()

        while len(summary.processed) + len(summary.failed) < max_jobs:
            if stop_flag is not None and stop_flag.is_set():
                logger.info("Stop requested, not claiming further jobs")
                break
            if time.monotonic() - start > timeout_s:
                logger.info(f"Batch time budget of {timeout_s}s used up, stopping")
                break

            job = self.queue.claim_next()
            if job is None:
                break

            try:
                result = self.processor.process(job.target_id, job.job_type)
                if result.success:
                    self.queue.mark_success(job.id)
                    summary.processed.append(job.id)
                else:
                    self.queue.mark_failure(job.id, result.error or "Unknown error")
                    summary.failed.append(job.id)
            except Exception as e:
                logger.error(f"[Job {job.id}] Unexpected error: {e}", exc_info=True)
                self.queue.mark_failure(job.id, str(e) or "Unknown error")
                summary.failed.append(job.id)

        summary.pending_count = self.queue.pending_count()
        summary.processing_time_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Batch done: {len(summary.processed)} ok, {len(summary.failed)} failed, "
            f"{summary.pending_count} pending, {summary.processing_time_ms}ms"
        )
        return summary


class JobScheduler:
    """Background thread that runs a batch every interval_s seconds."""

    def __init__(self, runner: JobRunner, interval_s: float, max_jobs: int = 10, timeout_s: float = 25.0):
        self.runner = runner
        self.interval_s = interval_s
        self.max_jobs = max_jobs
        self.timeout_s = timeout_s
        self.stop_flag = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def start(self) -> bool:
        if self.thread and self.thread.is_alive():
            logger.warning("Scheduler already running, ignoring start request")
            return False

        self.stop_flag.clear()
        self.thread = threading.Thread(target=self._run, daemon=True, name="job-scheduler")
        self.thread.start()
        logger.info(f"Scheduler STARTED, every {self.interval_s}s (max {self.max_jobs} jobs / {self.timeout_s}s)")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Signal the loop and wait for the in-flight job, if any, to be marked.

        Returns False when the thread is still alive after timeout.
        """
        self.stop_flag.set()
        if self.thread:
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f"Scheduler still finishing a job after {timeout}s")
                return False
            self.thread = None
        logger.info("Scheduler STOPPED")
        return True

    def is_running(self) -> bool:
        return bool(self.thread and self.thread.is_alive())

    def _run(self):
        while not self.stop_flag.is_set():
            try:
                self.runner.run_batch(max_jobs=self.max_jobs, timeout_s=self.timeout_s, stop_flag=self.stop_flag)
            except Exception as e:
                logger.error(f"Scheduled batch failed: {e}", exc_info=True)
            self.stop_flag.wait(self.interval_s)
