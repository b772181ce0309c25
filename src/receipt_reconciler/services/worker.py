"""
Job worker.

Single consumer loop for the search job queue. Claims pending jobs and
dispatches them by scope to the search pipeline or the sync processor.
"""

import logging
from dataclasses import dataclass

from receipt_reconciler.schemas.models import JobScope, SearchJob
from receipt_reconciler.services.exceptions import ERROR_SOURCE_UNAVAILABLE, ReconcilerError
from receipt_reconciler.services.job_queue import SearchJobQueueService
from receipt_reconciler.services.mailbox_sync import MailboxSyncProcessor
from receipt_reconciler.services.search_pipeline import SearchPipeline

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    """Counts from one run_pending call."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    stale: int = 0


class JobWorker:
    """Consumes search and sync jobs."""

    def __init__(
        self,
        queue: SearchJobQueueService,
        pipeline: SearchPipeline,
        sync_processor: MailboxSyncProcessor | None = None,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.sync_processor = sync_processor

    def process_job(self, job: SearchJob) -> bool:
        """
        Claim and run one job.

        Returns:
            True if the job completed, False if it failed or was not claimed
        """
        if not self.queue.claim(job.id):
            return False

        logger.info(f"Processing {job.scope.value} job #{job.id}")
        try:
            if job.scope == JobScope.SINGLE_TRANSACTION:
                return self.pipeline.run(job).success
            if self.sync_processor is None:
                self.queue.fail(job.id, "No mailbox configured for sync jobs", ERROR_SOURCE_UNAVAILABLE)
                return False
            return self.sync_processor.process(job).success
        except Exception as e:
            logger.exception(f"Job #{job.id} crashed: {e}")
            self.queue.fail(job.id, f"Unexpected error: {e}", ReconcilerError.code)
            return False

    def run_pending(self, batch_size: int = 10) -> WorkerRunStats:
        """Sweep stale jobs, then process up to batch_size pending jobs."""
        stats = WorkerRunStats(stale=len(self.queue.sweep_stale()))

        for job in self.queue.next_pending(batch_size):
            stats.processed += 1
            if self.process_job(job):
                stats.succeeded += 1
            else:
                stats.failed += 1

        if stats.processed:
            logger.info(
                f"Worker run: {stats.succeeded}/{stats.processed} jobs succeeded, "
                f"{stats.stale} stale"
            )
        return stats
