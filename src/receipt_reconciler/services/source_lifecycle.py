"""
Source Lifecycle Manager.

States of a mailbox source:

    active -> (pause) -> paused -> (resume) -> active
    active -> (disconnect) -> disconnected -> (reconnect) -> active
    active -> (auth error) -> needs_reauth -> (authorize) -> active

Sources are never deleted. A disconnect tombstones the source and its
unconnected documents; a reconnect with the same external account id
restores both and keeps the sync history, so the next gap computation
resumes where the source left off.
"""

import logging
from dataclasses import dataclass

from receipt_reconciler.config import Config
from receipt_reconciler.mailbox_client import MailboxClient, MailboxError
from receipt_reconciler.schemas.models import Source, SourceState, to_timestamp, utc_now
from receipt_reconciler.services.exceptions import ERROR_SOURCE_UNAVAILABLE, SourceNotFound
from receipt_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)

PAUSED_ERROR_MESSAGE = "paused"


@dataclass
class DisconnectResult:
    """What a disconnect changed."""

    source_id: int
    credential_revoked: bool
    jobs_removed: int
    message_ids_salvaged: int
    documents_soft_deleted: int
    partners_updated: int


@dataclass
class ReconnectResult:
    """What a reconnect restored."""

    source: Source
    documents_restored: int
    created: bool = False


class SourceLifecycleManager:
    """Connects, pauses, disconnects and reconnects mailbox sources."""

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        mailbox_client: MailboxClient | None = None,
    ):
        """
        Initialize the manager.

        Args:
            state_store: Store for sources, jobs, documents and partners
            config: Application configuration
            mailbox_client: Used to revoke credentials on disconnect
        """
        self.store = state_store
        self.config = config
        self.client = mailbox_client

    def _require(self, source_id: int) -> Source:
        source = self.store.get_source(source_id)
        if source is None:
            raise SourceNotFound(f"Source {source_id} not found")
        return source

    def connect(
        self,
        external_account_id: str,
        email: str | None = None,
        credential: str | None = None,
    ) -> ReconnectResult:
        """
        Handle a successful authorization.

        Re-authorizes a connected source, reconnects the most recently
        disconnected one with the same external account id, or creates a
        new active source.
        """
        existing = self.store.find_source_by_external_account_id(external_account_id)

        if existing and existing.state != SourceState.DISCONNECTED:
            self.authorize(existing.id, credential)
            if email and email != existing.email:
                self.store.update_source(existing.id, email=email)
            return ReconnectResult(source=self._require(existing.id), documents_restored=0)

        if existing:
            result = self.reconnect(external_account_id, credential)
            if email and email != result.source.email:
                self.store.update_source(result.source.id, email=email)
                result.source = self._require(result.source.id)
            return result

        source = self.store.create_source(Source(external_account_id=external_account_id, email=email))
        if credential:
            self.store.save_credential(source.id, credential)
        logger.info(f"Connected new source {source.id} ({external_account_id})")
        return ReconnectResult(source=source, documents_restored=0, created=True)

    def authorize(self, source_id: int, credential: str | None = None) -> Source:
        """Store a fresh credential and clear any reauth state."""
        self._require(source_id)
        if credential:
            self.store.save_credential(source_id, credential)
        return self.clear_reauth(source_id)

    def pause(self, source_id: int) -> Source:
        """
        Pause a source.

        Active jobs of the source are failed with reason "paused" after
        their processed message ids are saved to the source.
        """
        source = self._require(source_id)
        salvaged = self._salvage_message_ids(source)
        for job in self.store.list_search_jobs(active_only=True, source_id=source_id):
            self.store.fail_search_job(job.id, PAUSED_ERROR_MESSAGE, ERROR_SOURCE_UNAVAILABLE)

        self.store.update_source(source_id, is_paused=True, paused_at=to_timestamp(utc_now()))
        logger.info(f"Paused source {source_id} ({salvaged} message ids salvaged)")
        return self._require(source_id)

    def resume(self, source_id: int) -> Source:
        """Resume a paused source."""
        self._require(source_id)
        self.store.update_source(source_id, is_paused=False, paused_at=None)
        logger.info(f"Resumed source {source_id}")
        return self._require(source_id)

    def mark_needs_reauth(self, source_id: int, error: str) -> Source:
        """Flag a source whose credential was rejected; blocks new jobs."""
        self._require(source_id)
        self.store.mark_source_needs_reauth(source_id, error)
        logger.warning(f"Source {source_id} needs re-authorization: {error}")
        return self._require(source_id)

    def clear_reauth(self, source_id: int) -> Source:
        """Clear needs_reauth and last_error after a successful authorization."""
        self._require(source_id)
        self.store.update_source(source_id, needs_reauth=False, last_error=None)
        return self._require(source_id)

    def disconnect(self, source_id: int) -> DisconnectResult:
        """
        Disconnect a source.

        Steps:
        1. Revoke the external credential (best effort)
        2. Delete the stored credential
        3. Save processed message ids of active jobs, then delete the jobs
        4. Soft delete documents of the source not connected to a transaction
        5. Remove the source from learned partner patterns
        6. Mark the source disconnected

        Raises:
            SourceNotFound: Unknown source
        """
        source = self._require(source_id)

        revoked = False
        if self.client is not None:
            try:
                self.client.revoke_credential(
                    source.external_account_id, self.store.get_credential(source_id)
                )
                revoked = True
            except MailboxError as e:
                logger.warning(f"Could not revoke credential of source {source_id}: {e}")
        self.store.delete_credential(source_id)

        salvaged = self._salvage_message_ids(source)
        jobs_removed = self.store.delete_active_search_jobs_for_source(source_id)
        soft_deleted = self.store.soft_delete_documents(source_id, unconnected_only=True)
        partners_updated = self.store.remove_source_from_partner_patterns(source_id)

        self.store.update_source(
            source_id,
            is_active=False,
            disconnected_at=to_timestamp(utc_now()),
        )
        logger.info(
            f"Disconnected source {source_id}: {jobs_removed} jobs removed, "
            f"{soft_deleted} documents soft-deleted, {partners_updated} partners updated"
        )
        return DisconnectResult(
            source_id=source_id,
            credential_revoked=revoked,
            jobs_removed=jobs_removed,
            message_ids_salvaged=salvaged,
            documents_soft_deleted=soft_deleted,
            partners_updated=partners_updated,
        )

    def reconnect(self, external_account_id: str, credential: str | None = None) -> ReconnectResult:
        """
        Reconnect the most recently disconnected source of an account.

        Soft-deleted documents are restored. Sync coverage and processed
        message ids are kept.

        Raises:
            SourceNotFound: No disconnected source for the account
        """
        source = self.store.find_source_by_external_account_id(
            external_account_id, disconnected_only=True
        )
        if source is None:
            raise SourceNotFound(f"No disconnected source for account {external_account_id}")

        restored = self.store.restore_documents(source.id)
        self.store.update_source(
            source.id,
            is_active=True,
            disconnected_at=None,
            needs_reauth=False,
            last_error=None,
        )
        if credential:
            self.store.save_credential(source.id, credential)

        logger.info(f"Reconnected source {source.id} ({external_account_id}): {restored} documents restored")
        return ReconnectResult(source=self._require(source.id), documents_restored=restored)

    def _salvage_message_ids(self, source: Source) -> int:
        """Merge processed message ids of active jobs into the source."""
        known = list(source.processed_message_ids)
        seen = set(known)
        for job in self.store.list_search_jobs(active_only=True, source_id=source.id):
            for message_id in job.processed_message_ids:
                if message_id not in seen:
                    seen.add(message_id)
                    known.append(message_id)

        added = len(known) - len(source.processed_message_ids)
        if added:
            self.store.update_source(source.id, processed_message_ids=known)
        return added
