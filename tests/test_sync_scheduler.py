"""
Tests for sync gap computation and sync triggers.
"""

from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from receipt_reconciler.schemas.models import (
    DateRange,
    JobScope,
    Source,
    to_timestamp,
    utc_now,
)
from receipt_reconciler.services.exceptions import (
    ReauthRequired,
    SourceNotFound,
    SourceUnavailable,
    SyncAlreadyRunning,
    SyncRateLimited,
)
from receipt_reconciler.services.job_queue import SearchJobQueueService
from receipt_reconciler.services.mailbox_sync import SYNC_QUERY, MailboxSyncProcessor
from receipt_reconciler.services.sync_scheduler import SyncScheduler, compute_gaps

LEDGER = DateRange(date(2026, 1, 1), date(2026, 4, 11))
DESIRED = DateRange(date(2025, 12, 25), date(2026, 4, 18))


def _source(start=None, end=None) -> Source:
    return Source(external_account_id="acct", synced_date_from=start, synced_date_to=end)


class TestComputeGaps:
    """Test uncovered range computation."""

    def test_never_synced(self):
        """Test an unsynced source needs the whole buffered ledger span."""
        assert compute_gaps(_source(), LEDGER) == [DESIRED]

    def test_fully_covered(self):
        """Test no gaps when the synced range contains the desired range."""
        source = _source(date(2025, 12, 1), date(2026, 5, 1))

        assert compute_gaps(source, LEDGER) == []

    def test_exact_cover(self):
        """Test the buffer boundaries are inclusive."""
        assert compute_gaps(_source(DESIRED.start, DESIRED.end), LEDGER) == []

    def test_gaps_before_and_after(self):
        """Test both ends are reported, in order."""
        source = _source(date(2026, 1, 10), date(2026, 3, 1))

        assert compute_gaps(source, LEDGER) == [
            DateRange(date(2025, 12, 25), date(2026, 1, 9)),
            DateRange(date(2026, 3, 2), date(2026, 4, 18)),
        ]

    def test_gap_after_only(self):
        """Test new transactions extend coverage forward."""
        source = _source(date(2025, 12, 1), date(2026, 3, 1))

        assert compute_gaps(source, LEDGER) == [DateRange(date(2026, 3, 2), date(2026, 4, 18))]

    def test_synced_range_after_ledger(self):
        """Test coverage beyond the ledger yields one gap that runs up to the synced start."""
        source = _source(date(2026, 5, 1), date(2026, 6, 1))

        assert compute_gaps(source, LEDGER) == [DateRange(DESIRED.start, date(2026, 4, 30))]

    def test_synced_range_before_ledger(self):
        """Test coverage older than the ledger yields one gap starting right after it."""
        source = _source(date(2025, 6, 1), date(2025, 7, 1))

        assert compute_gaps(source, LEDGER) == [DateRange(date(2025, 7, 2), DESIRED.end)]

    def test_empty_ledger(self):
        """Test an empty ledger asks for the trailing lookback window."""
        gaps = compute_gaps(_source(), None, today=date(2026, 10, 17), lookback_days=90)

        assert gaps == [DateRange(date(2026, 7, 19), date(2026, 10, 17))]

    def test_custom_buffer(self):
        """Test the buffer widens both ends."""
        gaps = compute_gaps(_source(), LEDGER, buffer_days=0)

        assert gaps == [LEDGER]


class TestSyncScheduler:
    """Test trigger validation and job creation."""

    @pytest.fixture
    def queue(self, store, config):
        return SearchJobQueueService(store, config)

    @pytest.fixture
    def scheduler(self, store, config, queue, make_txn):
        store.upsert_transaction(make_txn(id="first", date=LEDGER.start))
        store.upsert_transaction(make_txn(id="last", date=LEDGER.end))
        return SyncScheduler(store, config, queue)

    def test_trigger_enqueues_gap_jobs(self, store, scheduler, source):
        """Test one sync job is queued per gap."""
        store.update_source(
            source.id, synced_date_from=date(2026, 1, 10), synced_date_to=date(2026, 3, 1)
        )

        result = scheduler.trigger_sync(source.id)

        assert len(result.jobs) == 2
        assert [j.date_range for j in result.jobs] == result.gaps
        assert all(j.scope == JobScope.SYNC_RANGE for j in result.jobs)
        assert all(j.triggered_by == "manual" for j in result.jobs)
        assert not result.up_to_date

    def test_up_to_date(self, store, scheduler, source):
        """Test a covered source gets no jobs."""
        store.update_source(
            source.id, synced_date_from=DESIRED.start, synced_date_to=DESIRED.end
        )

        result = scheduler.trigger_sync(source.id)

        assert result.up_to_date
        assert result.jobs == []
        assert result.message == "Already up to date"
        assert store.list_search_jobs() == []

    def test_unknown_source(self, scheduler):
        """Test triggering an unknown source raises."""
        with pytest.raises(SourceNotFound):
            scheduler.trigger_sync(999)

    def test_needs_reauth(self, store, scheduler, source):
        """Test a source needing reauth cannot sync."""
        store.mark_source_needs_reauth(source.id, "expired")

        with pytest.raises(ReauthRequired) as exc_info:
            scheduler.trigger_sync(source.id)
        assert exc_info.value.source_id == source.id

    def test_paused(self, store, scheduler, source):
        """Test a paused source cannot sync."""
        store.update_source(source.id, is_paused=True)

        with pytest.raises(SourceUnavailable):
            scheduler.trigger_sync(source.id)

    def test_manual_rate_limit(self, store, scheduler, source):
        """Test a manual trigger inside the window is refused with a retry hint."""
        now = utc_now()
        store.update_source(source.id, last_sync_at=to_timestamp(now - timedelta(minutes=2)))

        with pytest.raises(SyncRateLimited) as exc_info:
            scheduler.trigger_sync(source.id, now=now)
        assert exc_info.value.retry_after_seconds == 181

    def test_auto_trigger_not_rate_limited(self, store, scheduler, source):
        """Test automatic triggers skip the rate limit."""
        now = utc_now()
        store.update_source(source.id, last_sync_at=to_timestamp(now - timedelta(minutes=2)))

        result = scheduler.trigger_sync(source.id, manual=False, now=now)

        assert [j.triggered_by for j in result.jobs] == ["auto"]

    def test_already_running(self, scheduler, queue, source):
        """Test a second trigger while a sync job is active is refused."""
        first = scheduler.trigger_sync(source.id)

        with pytest.raises(SyncAlreadyRunning) as exc_info:
            scheduler.trigger_sync(source.id)
        assert exc_info.value.job_id == first.jobs[0].id

    def test_stale_job_is_swept(self, store, scheduler, queue, source):
        """Test a stuck processing job does not block a new trigger."""
        stuck = scheduler.trigger_sync(source.id).jobs[0]
        queue.claim(stuck.id)

        result = scheduler.trigger_sync(source.id, now=utc_now() + timedelta(minutes=31))

        assert len(result.jobs) == 1
        assert store.get_search_job(stuck.id).error_code == "STALE"

    def test_trigger_all_reports_skipped_sources(self, store, scheduler, source):
        """Test trigger_all returns a result for every source, including refused ones."""
        paused = store.create_source(Source(external_account_id="acct-2", is_paused=True))
        busy = store.create_source(Source(external_account_id="acct-3"))
        running = scheduler.trigger_sync(busy.id).jobs[0]

        results = {r.source_id: r for r in scheduler.trigger_all()}

        assert set(results) == {source.id, paused.id, busy.id}
        assert len(results[source.id].jobs) == 1
        assert results[source.id].error_code is None

        assert results[busy.id].jobs == []
        assert results[busy.id].error_code == "SYNC_IN_PROGRESS"
        assert results[busy.id].message == f"Already syncing (job #{running.id})"
        assert not results[busy.id].up_to_date

        assert results[paused.id].error_code == "SOURCE_UNAVAILABLE"
        assert results[paused.id].message.startswith("Skipped:")

    def test_trigger_all_skips_disconnected(self, store, scheduler, source):
        """Test disconnected sources are not synced at all."""
        store.update_source(source.id, is_active=False)

        assert scheduler.trigger_all() == []


class TestGapCoverageAfterSync:
    """Test that processed gaps never mark unsearched dates as synced."""

    @pytest.fixture
    def mailbox(self):
        client = MagicMock()
        client.search_messages.return_value = []
        return client

    def test_gap_job_joins_detached_synced_range(self, store, config, mailbox, source, make_txn):
        """Test a ledger far before the synced range is synced up to its edge."""
        store.update_source(
            source.id, synced_date_from=date(2026, 5, 1), synced_date_to=date(2026, 6, 1)
        )
        store.upsert_transaction(make_txn(id="jan-10", date=date(2026, 1, 10)))
        store.upsert_transaction(make_txn(id="jan-20", date=date(2026, 1, 20)))
        queue = SearchJobQueueService(store, config)
        scheduler = SyncScheduler(store, config, queue)

        result = scheduler.trigger_sync(source.id)

        assert result.gaps == [DateRange(date(2026, 1, 3), date(2026, 4, 30))]
        job = result.jobs[0]
        queue.claim(job.id)
        MailboxSyncProcessor(store, config, mailbox).process(store.get_search_job(job.id))

        mailbox.search_messages.assert_called_once_with(
            "acct-1",
            SYNC_QUERY,
            date(2026, 1, 3),
            date(2026, 4, 30),
            max_results=config.sync.max_messages,
        )
        updated = store.get_source(source.id)
        assert updated.synced_range == DateRange(date(2026, 1, 3), date(2026, 6, 1))

        # March was searched, so a new transaction there needs no gap
        store.upsert_transaction(make_txn(id="mar-15", date=date(2026, 3, 15)))
        assert compute_gaps(updated, store.get_transaction_date_range()) == []

        # A transaction after the synced range opens a gap right after it
        store.upsert_transaction(make_txn(id="sep-01", date=date(2026, 9, 1)))
        assert compute_gaps(updated, store.get_transaction_date_range()) == [
            DateRange(date(2026, 6, 2), date(2026, 9, 8))
        ]
