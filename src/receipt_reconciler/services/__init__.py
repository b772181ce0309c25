"""Reconciliation services: job queue, search pipeline, sync and source lifecycle."""

from receipt_reconciler.services.exceptions import (
    InvalidSearchRequest,
    JobTimeout,
    ReauthRequired,
    ReconcilerError,
    SourceNotFound,
    SourceUnavailable,
    SyncAlreadyRunning,
    SyncRateLimited,
)
from receipt_reconciler.services.job_queue import SearchJobQueueService
from receipt_reconciler.services.mailbox_sync import MailboxSyncProcessor
from receipt_reconciler.services.search_pipeline import SearchPipeline, Strategy
from receipt_reconciler.services.source_lifecycle import SourceLifecycleManager
from receipt_reconciler.services.sync_scheduler import SyncScheduler, compute_gaps
from receipt_reconciler.services.worker import JobWorker

__all__ = [
    "InvalidSearchRequest",
    "JobTimeout",
    "JobWorker",
    "MailboxSyncProcessor",
    "ReauthRequired",
    "ReconcilerError",
    "SearchJobQueueService",
    "SearchPipeline",
    "SourceLifecycleManager",
    "SourceNotFound",
    "SourceUnavailable",
    "Strategy",
    "SyncAlreadyRunning",
    "SyncRateLimited",
    "SyncScheduler",
    "compute_gaps",
]
