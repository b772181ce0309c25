"""
Mailbox Sync Processor.

Consumes sync_range jobs: searches one source for receipt-like messages
within the job's date range and downloads their attachments as
documents. Nothing is connected here; connecting is left to searches.

On success the source's synced range is widened to cover the job range
when the two touch or overlap.
Partial ranges are never merged; a failed job leaves coverage unchanged
apart from the message ids it already processed.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from receipt_reconciler.config import Config
from receipt_reconciler.mailbox_client import MailboxAuthError, MailboxClient, MailboxError
from receipt_reconciler.schemas.models import JobScope, SearchJob, to_timestamp, utc_now
from receipt_reconciler.services.attachments import AttachmentFetcher, receipt_attachments
from receipt_reconciler.services.exceptions import (
    ERROR_REAUTH_REQUIRED,
    ERROR_SOURCE_UNAVAILABLE,
    ERROR_SYNC_FAILED,
    ERROR_TIMEOUT,
    InvalidSearchRequest,
    JobTimeout,
)
from receipt_reconciler.services.search_pipeline import Deadline
from receipt_reconciler.services.source_lifecycle import SourceLifecycleManager
from receipt_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)

# Free-text mailbox query for receipt-like messages
SYNC_QUERY = "has:attachment (rechnung OR invoice OR receipt OR beleg OR quittung OR bestellung)"

SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_PARTIAL = "partial"
SYNC_STATUS_FAILED = "failed"

# Progress is persisted every this many messages
PROGRESS_EVERY = 10


@dataclass
class SyncResult:
    """Summary of one sync_range job."""

    job_id: int
    success: bool
    messages_seen: int = 0
    files_created: int = 0
    files_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    error_code: str | None = None


class MailboxSyncProcessor:
    """Processes sync_range jobs against one mailbox source."""

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        mailbox_client: MailboxClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the processor.

        Args:
            state_store: Store for jobs, sources and documents
            config: Application configuration
            mailbox_client: Mailbox handle used for search and download
            clock: Monotonic clock used for the execution ceiling
        """
        self.store = state_store
        self.config = config
        self.client = mailbox_client
        self.clock = clock
        self.fetcher = AttachmentFetcher(state_store, mailbox_client, config.documents_dir)
        self.lifecycle = SourceLifecycleManager(state_store, config)

    def process(self, job: SearchJob) -> SyncResult:
        """
        Run a claimed (processing) sync_range job.

        Returns:
            SyncResult; the job itself is completed or failed in the store
        """
        if job.scope != JobScope.SYNC_RANGE or job.id is None or job.date_range is None:
            raise InvalidSearchRequest(f"Cannot sync job #{job.id}: not a dated sync_range job")

        result = SyncResult(job_id=job.id, success=False)
        source = self.store.get_source(job.source_id) if job.source_id is not None else None
        if source is None or not source.is_usable:
            state = source.state.value if source else "missing"
            return self._fail(job, result, f"Source {job.source_id} is {state}", ERROR_SOURCE_UNAVAILABLE)

        date_range = job.date_range
        deadline = Deadline(self.config.search.job_timeout_seconds, self.clock)
        account = source.external_account_id
        logger.info(
            f"Sync job #{job.id}: source {source.id} ({account}) "
            f"{date_range.start} to {date_range.end}"
        )

        try:
            message_ids = self.client.search_messages(
                account,
                SYNC_QUERY,
                date_range.start,
                date_range.end,
                max_results=self.config.sync.max_messages,
            )
        except MailboxAuthError as e:
            return self._reauth(job, result, str(e))
        except MailboxError as e:
            return self._fail(job, result, f"Mailbox search failed: {e}", ERROR_SYNC_FAILED)

        already_processed = set(source.processed_message_ids) | set(job.processed_message_ids)
        processed = list(job.processed_message_ids)

        for message_id in message_ids:
            if message_id in already_processed:
                continue
            result.messages_seen += 1

            try:
                deadline.check()
                message = self.client.fetch_message(account, message_id)
                for attachment in receipt_attachments(message):
                    outcome = self.fetcher.fetch_attachment(source, message, attachment)
                    if outcome.created:
                        result.files_created += 1
                    else:
                        result.files_skipped += 1
            except JobTimeout as e:
                self.store.update_search_job(job.id, processed_message_ids=processed)
                return self._fail(job, result, str(e), ERROR_TIMEOUT)
            except MailboxAuthError as e:
                self.store.update_search_job(job.id, processed_message_ids=processed)
                return self._reauth(job, result, str(e))
            except MailboxError as e:
                logger.warning(f"Sync job #{job.id}: message {message_id} failed: {e}")
                result.errors.append(f"{message_id}: {e}")
                continue

            processed.append(message_id)
            already_processed.add(message_id)
            if result.messages_seen % PROGRESS_EVERY == 0:
                self.store.update_search_job(
                    job.id,
                    processed_message_ids=processed,
                    emails_processed=result.messages_seen,
                    files_connected=result.files_created,
                    attachments_skipped=result.files_skipped,
                    progress=min(99, int(result.messages_seen * 100 / max(len(message_ids), 1))),
                )

        status = SYNC_STATUS_PARTIAL if result.errors else SYNC_STATUS_SUCCESS
        self._widen_coverage(source.id, job, processed, result.files_created, status)
        self.store.complete_search_job(
            job.id,
            progress=100,
            processed_message_ids=processed,
            emails_processed=result.messages_seen,
            files_connected=result.files_created,
            attachments_skipped=result.files_skipped,
            errors=result.errors,
        )
        result.success = True
        logger.info(
            f"Sync job #{job.id} completed ({status}): {result.messages_seen} messages, "
            f"{result.files_created} new files, {result.files_skipped} skipped"
        )
        return result

    def _widen_coverage(
        self, source_id: int, job: SearchJob, processed: list[str], file_count: int, status: str
    ) -> None:
        # Re-read: the source may have been synced by another job meanwhile
        source = self.store.get_source(source_id)
        if source is None:
            return
        date_range = job.date_range
        synced = source.synced_range
        if synced is None:
            synced_from, synced_to = date_range.start, date_range.end
        elif (
            date_range.start > synced.end + timedelta(days=1)
            or date_range.end < synced.start - timedelta(days=1)
        ):
            # Merging would mark the dates in between as synced
            logger.warning(
                f"Sync job #{job.id}: range {date_range.start} to {date_range.end} does not "
                f"touch synced range {synced.start} to {synced.end}; coverage unchanged"
            )
            synced_from, synced_to = synced.start, synced.end
        else:
            synced_from = min(synced.start, date_range.start)
            synced_to = max(synced.end, date_range.end)
        merged = list(source.processed_message_ids)
        merged.extend(m for m in processed if m not in set(merged))

        self.store.update_source(
            source_id,
            synced_date_from=synced_from,
            synced_date_to=synced_to,
            processed_message_ids=merged,
            last_sync_at=to_timestamp(utc_now()),
            last_sync_status=status,
            last_sync_file_count=file_count,
        )

    def _reauth(self, job: SearchJob, result: SyncResult, error: str) -> SyncResult:
        message = f"Mailbox credential rejected: {error}"
        self.lifecycle.mark_needs_reauth(job.source_id, message)
        return self._fail(job, result, message, ERROR_REAUTH_REQUIRED)

    def _fail(self, job: SearchJob, result: SyncResult, error: str, code: str) -> SyncResult:
        logger.error(f"Sync job #{job.id} failed ({code}): {error}")
        self.store.fail_search_job(
            job.id,
            error,
            code,
            errors=result.errors,
            emails_processed=result.messages_seen,
            files_connected=result.files_created,
            attachments_skipped=result.files_skipped,
        )
        if job.source_id is not None and code != ERROR_SOURCE_UNAVAILABLE:
            self.store.update_source(job.source_id, last_sync_status=SYNC_STATUS_FAILED)
        result.success = False
        result.error_code = code
        result.errors = [*result.errors, error]
        return result
