"""
Search Job Queue Service.

Provides creation, polling and housekeeping of search jobs.

Features:
- One active job per transaction and per source
- Validation before any job is created
- Stale sweep for jobs whose worker died
- Retry of failed jobs up to max_retries
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from receipt_reconciler.config import Config
from receipt_reconciler.schemas.models import (
    DateRange,
    JobScope,
    JobStatus,
    SearchJob,
    utc_now,
)
from receipt_reconciler.services.exceptions import ERROR_STALE, InvalidSearchRequest
from receipt_reconciler.services.search_pipeline import DEFAULT_STRATEGIES
from receipt_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)

STALE_ERROR_MESSAGE = "Sync timed out (stale queue item)"


class SearchJobQueueService:
    """
    Service for managing the search job queue.

    Jobs are created here, consumed by JobWorker and polled through
    get_status. Only the consumer moves a job out of processing.
    """

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        known_strategies: list[str] | None = None,
    ):
        """
        Initialize the queue service.

        Args:
            state_store: State store for job persistence
            config: Application configuration
            known_strategies: Strategy names accepted in requests
        """
        self.store = state_store
        self.config = config
        self.known_strategies = list(known_strategies or DEFAULT_STRATEGIES)

    def enqueue_transaction_search(
        self,
        transaction_id: str,
        strategies: list[str] | None = None,
        triggered_by: str = "manual",
    ) -> SearchJob | None:
        """
        Create a single-transaction search job.

        Args:
            transaction_id: Transaction to find documents for
            strategies: Ordered strategy names (config default if None)
            triggered_by: Who requested the search

        Returns:
            The new job, or None if a job for the transaction is already active

        Raises:
            InvalidSearchRequest: Missing or unknown transaction, unknown strategy
        """
        if not transaction_id:
            raise InvalidSearchRequest("transaction_id is required")
        if self.store.get_transaction(transaction_id) is None:
            raise InvalidSearchRequest(f"Transaction {transaction_id} not found")

        names = list(strategies) if strategies else list(self.config.search.default_strategies)
        unknown = [s for s in names if s not in self.known_strategies]
        if unknown:
            raise InvalidSearchRequest(f"Unknown strategies: {', '.join(unknown)}")

        active = self.store.get_active_search_job(
            JobScope.SINGLE_TRANSACTION, transaction_id=transaction_id
        )
        if active:
            logger.debug(f"Search job #{active.id} already active for transaction {transaction_id}")
            return None

        job = self.store.create_search_job(
            SearchJob(
                scope=JobScope.SINGLE_TRANSACTION,
                transaction_id=transaction_id,
                strategies=names,
                max_retries=self.config.search.max_retries,
                triggered_by=triggered_by,
            )
        )
        logger.info(
            f"Scheduled search job #{job.id} for transaction {transaction_id} "
            f"(triggered_by={triggered_by})"
        )
        return job

    def enqueue_sync_range(
        self,
        source_id: int,
        date_range: DateRange,
        triggered_by: str = "manual",
    ) -> SearchJob:
        """
        Create a sync_range job for a source.

        Exclusivity is checked by the caller (the sync scheduler), which
        enqueues all gap ranges of one trigger together.
        """
        job = self.store.create_search_job(
            SearchJob(
                scope=JobScope.SYNC_RANGE,
                source_id=source_id,
                date_from=date_range.start,
                date_to=date_range.end,
                max_retries=self.config.search.max_retries,
                triggered_by=triggered_by,
            )
        )
        logger.info(
            f"Scheduled sync job #{job.id} for source {source_id} "
            f"{date_range.start} to {date_range.end} (triggered_by={triggered_by})"
        )
        return job

    def next_pending(self, batch_size: int = 1) -> list[SearchJob]:
        """Get the next pending jobs in FIFO order."""
        return self.store.get_next_pending_jobs(limit=batch_size)

    def claim(self, job_id: int) -> bool:
        """Move a job to processing; False if someone else got it first."""
        claimed = self.store.claim_search_job(job_id)
        if not claimed:
            logger.warning(f"Could not claim job #{job_id} - may already be processing")
        return claimed

    def complete(self, job_id: int, **fields: Any) -> bool:
        return self.store.complete_search_job(job_id, **fields)

    def fail(self, job_id: int, error: str, error_code: str | None = None) -> bool:
        return self.store.fail_search_job(job_id, error, error_code)

    def get_status(self, job_id: int) -> dict[str, Any] | None:
        """
        Poll a job.

        Returns:
            Dict with status, currentStrategyIndex, progress, filesConnected
            and errors, or None for an unknown job
        """
        job = self.store.get_search_job(job_id)
        return job.status_view() if job else None

    def list_active(self, source_id: int | None = None) -> list[SearchJob]:
        """Pending and processing jobs, newest first."""
        return self.store.list_search_jobs(active_only=True, source_id=source_id)

    def sweep_stale(self, now: datetime | None = None) -> list[int]:
        """
        Fail processing jobs whose worker stopped reporting.

        Returns:
            Ids of the jobs that were failed
        """
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self.config.sync.stale_after_minutes)
        swept: list[int] = []
        for job in self.store.find_stale_search_jobs(cutoff):
            if self.store.fail_search_job(job.id, STALE_ERROR_MESSAGE, ERROR_STALE):
                swept.append(job.id)
        if swept:
            logger.warning(f"Failed {len(swept)} stale jobs: {swept}")
        return swept

    def retry_failed(self, job_id: int) -> SearchJob | None:
        """
        Re-enqueue a failed job as a new job.

        Returns:
            The new job, or None if the job cannot be retried
        """
        job = self.store.get_search_job(job_id)
        if not job or job.status != JobStatus.FAILED:
            return None
        if not job.can_retry:
            logger.info(f"Job #{job_id} reached max retries ({job.max_retries})")
            return None

        if job.scope == JobScope.SINGLE_TRANSACTION:
            active = self.store.get_active_search_job(job.scope, transaction_id=job.transaction_id)
        else:
            active = self.store.get_active_search_job(job.scope, source_id=job.source_id)
        if active:
            return None

        retry = self.store.create_search_job(
            SearchJob(
                scope=job.scope,
                transaction_id=job.transaction_id,
                source_id=job.source_id,
                strategies=list(job.strategies),
                date_from=job.date_from,
                date_to=job.date_to,
                processed_message_ids=list(job.processed_message_ids),
                retry_count=job.retry_count + 1,
                max_retries=job.max_retries,
                triggered_by="retry",
            )
        )
        logger.info(f"Retrying job #{job_id} as #{retry.id} (attempt {retry.retry_count})")
        return retry

    def get_queue_stats(self) -> dict[str, int]:
        """Get queue statistics."""
        return self.store.get_search_job_stats()

    def cleanup_old_jobs(self, days: int = 30) -> int:
        """Remove old completed/failed jobs."""
        count = self.store.cleanup_old_search_jobs(days)
        if count:
            logger.info(f"Cleaned up {count} old search jobs")
        return count
