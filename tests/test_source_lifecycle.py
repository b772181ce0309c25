"""
Tests for the mailbox source lifecycle.
"""

from datetime import date
from unittest.mock import MagicMock

import pytest

from receipt_reconciler.mailbox_client import MailboxConnectionError
from receipt_reconciler.schemas.models import (
    DateRange,
    JobScope,
    JobStatus,
    Partner,
    SearchJob,
    SourceState,
)
from receipt_reconciler.services.exceptions import ERROR_SOURCE_UNAVAILABLE, SourceNotFound
from receipt_reconciler.services.source_lifecycle import (
    PAUSED_ERROR_MESSAGE,
    SourceLifecycleManager,
)


@pytest.fixture
def mailbox():
    return MagicMock()


@pytest.fixture
def manager(store, config, mailbox):
    return SourceLifecycleManager(store, config, mailbox)


def _sync_job(store, source_id, processed=None) -> SearchJob:
    return store.create_search_job(
        SearchJob(
            scope=JobScope.SYNC_RANGE,
            source_id=source_id,
            date_from=date(2026, 1, 1),
            date_to=date(2026, 1, 31),
            processed_message_ids=processed or [],
        )
    )


class TestConnect:
    """Test authorization handling."""

    def test_connect_new(self, store, manager):
        """Test a new account creates an active source with its credential."""
        result = manager.connect("acct-new", "new@example.com", "secret")

        assert result.created
        assert result.source.state == SourceState.ACTIVE
        assert store.get_credential(result.source.id) == "secret"

    def test_mark_needs_reauth(self, store, manager, source):
        """Test a rejected credential flags the source and records the error."""
        flagged = manager.mark_needs_reauth(source.id, "token expired")

        assert flagged.state == SourceState.NEEDS_REAUTH
        assert flagged.last_error == "token expired"
        assert store.get_source(source.id).needs_reauth

    def test_mark_needs_reauth_unknown_source(self, manager):
        """Test flagging an unknown source raises."""
        with pytest.raises(SourceNotFound):
            manager.mark_needs_reauth(999, "token expired")

    def test_connect_existing_clears_reauth(self, store, manager, source):
        """Test authorizing a flagged source clears the flag."""
        manager.mark_needs_reauth(source.id, "expired")

        result = manager.connect("acct-1", credential="fresh")

        assert not result.created
        assert result.source.id == source.id
        assert result.source.state == SourceState.ACTIVE
        assert result.source.last_error is None
        assert store.get_credential(source.id) == "fresh"

    def test_connect_after_disconnect_reconnects(self, store, manager, source):
        """Test authorizing a disconnected account reuses the old source."""
        manager.disconnect(source.id)

        result = manager.connect("acct-1", credential="again")

        assert not result.created
        assert result.source.id == source.id
        assert result.source.state == SourceState.ACTIVE


class TestPauseResume:
    """Test pausing and resuming."""

    def test_pause_fails_active_jobs_and_salvages_ids(self, store, manager, source):
        """Test pausing saves processed ids and fails the source's jobs."""
        job = _sync_job(store, source.id, processed=["m1", "m2"])
        store.claim_search_job(job.id)

        paused = manager.pause(source.id)

        assert paused.state == SourceState.PAUSED
        assert paused.processed_message_ids == ["m1", "m2"]
        failed = store.get_search_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.errors == [PAUSED_ERROR_MESSAGE]
        assert failed.error_code == ERROR_SOURCE_UNAVAILABLE

    def test_resume(self, manager, source):
        """Test resuming makes the source active again."""
        manager.pause(source.id)

        resumed = manager.resume(source.id)

        assert resumed.state == SourceState.ACTIVE
        assert resumed.paused_at is None

    def test_unknown_source(self, manager):
        """Test operations on unknown sources raise."""
        with pytest.raises(SourceNotFound):
            manager.pause(999)


class TestDisconnectReconnect:
    """Test disconnect tombstoning and reconnect restore."""

    @pytest.fixture
    def populated(self, store, source, make_txn, make_doc):
        """Source with one connected and one unconnected document."""
        store.upsert_transaction(make_txn())
        store.create_document(make_doc(id="linked", source_id=source.id))
        store.create_document(make_doc(id="loose", source_id=source.id))
        store.connect_document("linked", "txn-1")
        store.update_source(
            source.id,
            synced_date_from=date(2026, 1, 1),
            synced_date_to=date(2026, 2, 1),
            processed_message_ids=["m0"],
        )
        store.upsert_partner(Partner(id="p1", name="Shop", pattern_source_ids=[source.id]))
        store.save_credential(source.id, "secret")
        return source

    def test_disconnect(self, store, manager, mailbox, populated):
        """Test disconnect revokes, removes jobs and soft deletes loose documents."""
        job = _sync_job(store, populated.id, processed=["m1"])

        result = manager.disconnect(populated.id)

        assert result.credential_revoked
        mailbox.revoke_credential.assert_called_once_with("acct-1", "secret")
        assert store.get_credential(populated.id) is None
        assert result.jobs_removed == 1
        assert store.get_search_job(job.id) is None
        assert result.documents_soft_deleted == 1
        assert store.get_document("loose") is None
        assert store.get_document("linked") is not None
        assert result.partners_updated == 1
        assert store.get_partner("p1").pattern_source_ids == []

        disconnected = store.get_source(populated.id)
        assert disconnected.state == SourceState.DISCONNECTED
        assert disconnected.processed_message_ids == ["m0", "m1"]

    def test_disconnect_survives_revoke_failure(self, store, manager, mailbox, populated):
        """Test a failed revoke still disconnects the source."""
        mailbox.revoke_credential.side_effect = MailboxConnectionError("down")

        result = manager.disconnect(populated.id)

        assert not result.credential_revoked
        assert store.get_credential(populated.id) is None
        assert store.get_source(populated.id).state == SourceState.DISCONNECTED

    def test_reconnect_restores(self, store, manager, populated):
        """Test reconnect restores documents and keeps sync history."""
        manager.disconnect(populated.id)

        result = manager.reconnect("acct-1", "new-secret")

        assert result.documents_restored == 1
        assert store.get_document("loose") is not None
        assert store.get_document("linked").transaction_ids == ["txn-1"]
        restored = result.source
        assert restored.id == populated.id
        assert restored.state == SourceState.ACTIVE
        assert restored.synced_range == DateRange(date(2026, 1, 1), date(2026, 2, 1))
        assert restored.processed_message_ids == ["m0"]
        assert store.get_credential(populated.id) == "new-secret"

    def test_reconnect_unknown_account(self, manager):
        """Test reconnecting an account with no disconnected source raises."""
        with pytest.raises(SourceNotFound):
            manager.reconnect("acct-unknown")

    def test_reconnect_connected_account(self, manager, source):
        """Test reconnect only considers disconnected sources."""
        with pytest.raises(SourceNotFound):
            manager.reconnect("acct-1")
