"""
Tests for the search strategy pipeline.
"""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from receipt_reconciler.mailbox_client import (
    AttachmentContent,
    MailboxAttachment,
    MailboxAuthError,
    MailboxMessage,
)
from receipt_reconciler.matching import MatchResult
from receipt_reconciler.schemas.models import JobScope, JobStatus, SearchJob
from receipt_reconciler.services.exceptions import (
    ERROR_ALL_STRATEGIES_FAILED,
    ERROR_REAUTH_REQUIRED,
    ERROR_TIMEOUT,
    InvalidSearchRequest,
    JobTimeout,
    ReauthRequired,
)
from receipt_reconciler.services.search_pipeline import (
    Deadline,
    ScoredCandidate,
    SearchPipeline,
    Strategy,
    build_search_queries,
)


class FakeClock:
    """Monotonic clock moved by hand."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _stub(name, scores, calls, store, raises=None):
    """Strategy returning stored documents with fixed scores."""

    def supplier(ctx):
        calls.append(name)
        if raises:
            raise raises
        candidates = []
        for doc_id, score in scores:
            doc = store.get_document(doc_id)
            candidates.append(
                ScoredCandidate(doc, MatchResult(ctx.transaction.id, doc.id, score))
            )
        return candidates

    return Strategy(name, supplier)


@pytest.fixture
def txn(store, make_txn):
    txn = make_txn(partner_id="partner-rewe", counterparty="REWE Markt")
    store.upsert_transaction(txn)
    return txn


@pytest.fixture
def pipeline(store, config):
    return SearchPipeline(store, config)


def _job(store, strategies, transaction_id="txn-1") -> SearchJob:
    job = store.create_search_job(
        SearchJob(
            scope=JobScope.SINGLE_TRANSACTION,
            transaction_id=transaction_id,
            strategies=strategies,
        )
    )
    store.claim_search_job(job.id)
    return store.get_search_job(job.id)


def _docs(store, make_doc, *ids):
    for doc_id in ids:
        store.create_document(make_doc(id=doc_id))


class TestBuildSearchQueries:
    """Test mailbox query derivation."""

    def test_name_amount_and_reference(self, make_txn, rewe_partner):
        """Test queries go from most to least specific."""
        txn = make_txn(reference="INV-2026-17")

        queries = build_search_queries(txn, rewe_partner)

        assert queries == ["rewe 45,23", "rewe", "INV-2026-17"]

    def test_limit_and_dedup(self, make_txn, rewe_partner):
        """Test duplicate names collapse and the limit applies."""
        txn = make_txn(counterparty="REWE", reference="X1")

        assert build_search_queries(txn, rewe_partner, limit=2) == ["rewe 45,23", "rewe"]

    def test_no_name(self, make_txn):
        """Test a transaction without names yields only its reference."""
        assert build_search_queries(make_txn(reference="R-1"), None) == ["R-1"]
        assert build_search_queries(make_txn(), None) == []


class TestDeadline:
    """Test the execution ceiling."""

    def test_check(self):
        """Test check raises only after the ceiling."""
        clock = FakeClock()
        deadline = Deadline(10, clock)

        clock.now = 10
        deadline.check()

        clock.now = 10.5
        with pytest.raises(JobTimeout) as exc_info:
            deadline.check()
        assert exc_info.value.code == ERROR_TIMEOUT


class TestSearchPipelineFlow:
    """Test connecting, early exit and failure handling."""

    def test_early_exit_after_great_matches(self, store, pipeline, txn, make_doc):
        """Test later strategies are skipped once enough great matches connect."""
        _docs(store, make_doc, "d1", "d2")
        calls = []
        pipeline.register_strategy(_stub("s1", [("d1", 90), ("d2", 80)], calls, store))
        pipeline.register_strategy(_stub("s2", [], calls, store))

        result = pipeline.run(_job(store, ["s1", "s2"]))

        assert result.success
        assert calls == ["s1"]
        assert result.strategies_skipped == ["s2"]
        assert result.files_connected == 2
        job = store.get_search_job(result.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.files_connected == 2
        assert sorted(store.get_transaction("txn-1").connected_document_ids) == ["d1", "d2"]

    def test_threshold(self, store, pipeline, txn, make_doc):
        """Test only candidates at or above the auto-connect threshold connect."""
        _docs(store, make_doc, "d1", "d2")
        calls = []
        pipeline.register_strategy(_stub("s1", [("d1", 74), ("d2", 75)], calls, store))

        result = pipeline.run(_job(store, ["s1"]))

        assert result.files_connected == 1
        assert store.get_transaction("txn-1").connected_document_ids == ["d2"]

    def test_great_match_cap_inside_strategy(self, store, pipeline, txn, make_doc):
        """Test connecting stops at the great match count, best first."""
        _docs(store, make_doc, "d1", "d2", "d3")
        calls = []
        pipeline.register_strategy(
            _stub("s1", [("d3", 85), ("d1", 95), ("d2", 90)], calls, store)
        )

        result = pipeline.run(_job(store, ["s1"]))

        assert result.files_connected == 2
        assert sorted(store.get_transaction("txn-1").connected_document_ids) == ["d1", "d2"]

    def test_connect_is_idempotent(self, store, pipeline, txn, make_doc):
        """Test an already connected document is not counted again."""
        _docs(store, make_doc, "d1")
        store.connect_document("d1", "txn-1", 90)
        calls = []
        pipeline.register_strategy(_stub("s1", [("d1", 90)], calls, store))

        result = pipeline.run(_job(store, ["s1"]))

        assert result.success
        assert result.files_connected == 0
        assert store.get_transaction("txn-1").connected_document_ids == ["d1"]

    def test_rejected_document_skipped(self, store, pipeline, make_txn, make_doc):
        """Test documents the user rejected are never connected."""
        store.upsert_transaction(make_txn(rejected_document_ids=["d1"]))
        _docs(store, make_doc, "d1")
        calls = []
        pipeline.register_strategy(_stub("s1", [("d1", 95)], calls, store))

        result = pipeline.run(_job(store, ["s1"]))

        assert result.files_connected == 0

    def test_strategy_failure_is_recorded(self, store, pipeline, txn, make_doc):
        """Test a failing strategy does not stop the next one."""
        _docs(store, make_doc, "d1")
        calls = []
        pipeline.register_strategy(_stub("s1", [], calls, store, raises=RuntimeError("boom")))
        pipeline.register_strategy(_stub("s2", [("d1", 80)], calls, store))

        result = pipeline.run(_job(store, ["s1", "s2"]))

        assert result.success
        assert calls == ["s1", "s2"]
        job = store.get_search_job(result.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.errors == ["s1: boom"]
        assert job.files_connected == 1

    def test_unknown_strategy_is_a_failure(self, store, pipeline, txn):
        """Test an unknown strategy name is recorded as a strategy error."""
        calls = []
        pipeline.register_strategy(_stub("s1", [], calls, store))

        result = pipeline.run(_job(store, ["nope", "s1"]))

        assert result.success
        assert result.errors == ["nope: Unknown strategy 'nope'"]

    def test_all_strategies_failed(self, store, pipeline, txn):
        """Test the job fails when every strategy raised."""
        calls = []
        pipeline.register_strategy(_stub("s1", [], calls, store, raises=RuntimeError("a")))
        pipeline.register_strategy(_stub("s2", [], calls, store, raises=ValueError("b")))

        result = pipeline.run(_job(store, ["s1", "s2"]))

        assert not result.success
        assert result.error_code == ERROR_ALL_STRATEGIES_FAILED
        job = store.get_search_job(result.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_code == ERROR_ALL_STRATEGIES_FAILED
        assert job.errors == ["s1: a", "s2: b", "All strategies failed"]

    def test_reauth_fails_job_and_flags_source(self, store, pipeline, txn, source):
        """Test a credential error stops the job and blocks the source."""
        calls = []
        pipeline.register_strategy(
            _stub("s1", [], calls, store, raises=ReauthRequired(source.id, "token expired"))
        )
        pipeline.register_strategy(_stub("s2", [], calls, store))

        result = pipeline.run(_job(store, ["s1", "s2"]))

        assert calls == ["s1"]
        assert result.error_code == ERROR_REAUTH_REQUIRED
        assert store.get_search_job(result.job_id).status == JobStatus.FAILED
        flagged = store.get_source(source.id)
        assert flagged.needs_reauth
        assert flagged.last_error == "token expired"

    def test_timeout(self, store, config, txn):
        """Test the job fails once the execution ceiling passes."""
        clock = FakeClock()
        pipeline = SearchPipeline(store, config, clock=clock)
        calls = []

        def slow(ctx):
            calls.append("slow")
            clock.now += config.search.job_timeout_seconds + 1
            return []

        pipeline.register_strategy(Strategy("slow", slow))
        pipeline.register_strategy(_stub("s2", [], calls, store))

        result = pipeline.run(_job(store, ["slow", "s2"]))

        assert calls == ["slow"]
        assert result.error_code == ERROR_TIMEOUT
        assert store.get_search_job(result.job_id).error_code == ERROR_TIMEOUT

    def test_progress_reports_strategy_index(self, store, pipeline, txn):
        """Test the job records the strategy being run."""
        seen = []

        def record(ctx):
            seen.append(store.get_search_job(ctx.job.id).current_strategy_index)
            return []

        pipeline.register_strategy(Strategy("a", record))
        pipeline.register_strategy(Strategy("b", record))

        pipeline.run(_job(store, ["a", "b"]))

        assert seen == [0, 1]

    def test_missing_transaction(self, store, pipeline):
        """Test a job for an unknown transaction fails as invalid."""
        result = pipeline.run(_job(store, ["partner_files"], transaction_id="ghost"))

        assert not result.success
        assert result.error_code == InvalidSearchRequest.code

    def test_rejects_sync_job(self, store, pipeline, source):
        """Test sync jobs cannot run through the pipeline."""
        job = store.create_search_job(
            SearchJob(
                scope=JobScope.SYNC_RANGE,
                source_id=source.id,
                date_from=date(2026, 1, 1),
                date_to=date(2026, 1, 2),
            )
        )

        with pytest.raises(InvalidSearchRequest):
            pipeline.run(job)


class TestLocalStrategies:
    """Test strategies over stored documents."""

    def test_partner_files(self, store, pipeline, txn, rewe_partner, make_doc):
        """Test a matching partner document is connected."""
        store.upsert_partner(rewe_partner)
        store.create_document(
            make_doc(
                id="rewe-1",
                partner_id="partner-rewe",
                extracted_partner="REWE",
                extracted_amount=4523,
                extracted_date=date(2026, 1, 15),
            )
        )
        store.create_document(make_doc(id="other", partner_id="partner-aldi", extracted_amount=4523))

        result = pipeline.run(_job(store, ["partner_files"]))

        assert result.success
        assert store.get_transaction("txn-1").connected_document_ids == ["rewe-1"]

    def test_partner_files_without_partner(self, store, pipeline, make_txn, make_doc):
        """Test a transaction without partner finds nothing."""
        store.upsert_transaction(make_txn())
        store.create_document(make_doc(id="d", partner_id="partner-rewe", extracted_amount=4523))

        result = pipeline.run(_job(store, ["partner_files"]))

        assert result.success
        assert result.files_connected == 0

    def test_amount_files_skip_far_dates(self, store, pipeline, make_txn, make_doc):
        """Test documents outside the local date window are not considered."""
        store.upsert_transaction(make_txn(counterparty="REWE"))
        store.create_document(
            make_doc(
                id="far",
                extracted_amount=4523,
                extracted_partner="REWE",
                extracted_date=date(2024, 1, 15),
            )
        )

        result = pipeline.run(_job(store, ["amount_files"]))

        assert result.files_connected == 0

    def test_learns_partner_source(self, store, pipeline, txn, rewe_partner, make_doc, source):
        """Test connecting a mailbox document records the source for the partner."""
        store.upsert_partner(rewe_partner)
        store.create_document(make_doc(id="d1", source_id=source.id))
        calls = []
        pipeline.register_strategy(_stub("s1", [("d1", 90)], calls, store))

        pipeline.run(_job(store, ["s1"]))

        assert store.get_partner("partner-rewe").pattern_source_ids == [source.id]


class TestMailboxStrategies:
    """Test strategies that search the mailbox before downloading."""

    SENT = datetime(2026, 1, 14, 18, 0, tzinfo=timezone.utc)

    @pytest.fixture
    def mailbox(self):
        client = MagicMock()
        client.fetch_attachment.return_value = AttachmentContent(
            data=b"%PDF-1.4 rewe", mime_type="application/pdf", size=13
        )
        return client

    @pytest.fixture
    def ranker(self):
        ranker = MagicMock()
        ranker.scorer.score.side_effect = lambda txn, doc, partner=None: MatchResult(
            txn.id, doc.key, 90
        )
        return ranker

    def test_without_mailbox_finds_nothing(self, store, pipeline, txn, source):
        """Test mailbox strategies are empty, not failing, when no mailbox is configured."""
        result = pipeline.run(_job(store, ["email_attachment", "email_invoice"]))

        assert result.success
        assert result.errors == []
        assert result.strategies_run == ["email_attachment", "email_invoice"]
        assert store.get_transaction(txn.id).connected_document_ids == []

    def _pdf_message(self, message_id="m1"):
        return MailboxMessage(
            id=message_id,
            subject="Danke für Ihren Einkauf",
            sender="REWE <info@rewe.de>",
            date=self.SENT,
            attachments=[
                MailboxAttachment(id="a1", filename="scan.pdf", mime_type="application/pdf"),
                MailboxAttachment(id="a2", filename="terms.txt", mime_type="text/plain"),
            ],
        )

    def test_email_attachment_downloads_and_connects(
        self, store, config, txn, rewe_partner, source, mailbox, ranker
    ):
        """Test a high scoring attachment is downloaded and connected."""
        store.upsert_partner(rewe_partner)
        mailbox.search_attachments.return_value = [self._pdf_message()]
        pipeline = SearchPipeline(store, config, mailbox_client=mailbox, ranker=ranker)

        result = pipeline.run(_job(store, ["email_attachment"]))

        assert result.success
        assert result.files_connected == 1
        mailbox.fetch_attachment.assert_called_once_with("acct-1", "m1", "a1")
        doc = store.get_document(store.get_transaction("txn-1").connected_document_ids[0])
        assert doc.message_id == "m1"
        assert doc.source_id == source.id
        job = store.get_search_job(result.job_id)
        assert job.emails_processed == 1
        assert job.attachments_skipped == 1
        assert store.get_partner("partner-rewe").pattern_source_ids == [source.id]

    def test_low_score_is_not_downloaded(self, store, config, txn, source, mailbox):
        """Test attachments are scored on metadata and weak ones never downloaded."""
        mailbox.search_attachments.return_value = [self._pdf_message()]
        pipeline = SearchPipeline(store, config, mailbox_client=mailbox)

        result = pipeline.run(_job(store, ["email_attachment"]))

        assert result.success
        assert result.files_connected == 0
        mailbox.fetch_attachment.assert_not_called()

    def test_messages_outside_window_are_dropped(
        self, store, config, txn, source, mailbox, ranker
    ):
        """Test messages far from the transaction date are ignored."""
        message = self._pdf_message()
        message.date = datetime(2020, 1, 1, tzinfo=timezone.utc)
        mailbox.search_attachments.return_value = [message]
        pipeline = SearchPipeline(store, config, mailbox_client=mailbox, ranker=ranker)

        result = pipeline.run(_job(store, ["email_attachment"]))

        assert result.files_connected == 0
        ranker.scorer.score.assert_not_called()

    def test_auth_error_requires_reauth(self, store, config, txn, source, mailbox):
        """Test a rejected credential fails the job and flags the source."""
        mailbox.search_attachments.side_effect = MailboxAuthError(401, "Unauthorized")
        pipeline = SearchPipeline(store, config, mailbox_client=mailbox)

        result = pipeline.run(_job(store, ["email_attachment", "email_invoice"]))

        assert result.error_code == ERROR_REAUTH_REQUIRED
        assert store.get_source(source.id).needs_reauth
        mailbox.search_messages.assert_not_called()

    def test_paused_source_not_searched(self, store, config, txn, source, mailbox):
        """Test paused sources are skipped by mailbox strategies."""
        store.update_source(source.id, is_paused=True)
        pipeline = SearchPipeline(store, config, mailbox_client=mailbox)

        result = pipeline.run(_job(store, ["email_attachment"]))

        assert result.success
        mailbox.search_attachments.assert_not_called()

    def test_email_invoice_stores_body(self, store, config, txn, source, mailbox, ranker):
        """Test an order confirmation without PDF is stored as the document."""
        mailbox.search_messages.return_value = ["m2"]
        mailbox.fetch_message.return_value = MailboxMessage(
            id="m2",
            subject="Order confirmation #991",
            sender="shop@example.com",
            date=self.SENT,
            body="<p>Total: 45,23 EUR</p>",
        )
        pipeline = SearchPipeline(store, config, mailbox_client=mailbox, ranker=ranker)

        result = pipeline.run(_job(store, ["email_invoice"]))

        assert result.files_connected == 1
        doc = store.get_document(store.get_transaction("txn-1").connected_document_ids[0])
        assert doc.attachment_id == "body"
        assert doc.mime_type == "text/html"
        mailbox.fetch_attachment.assert_not_called()

    def test_email_invoice_ignores_pdf_mail(self, store, config, txn, source, mailbox, ranker):
        """Test emails with a PDF are left to the attachment strategy."""
        mailbox.search_messages.return_value = ["m1"]
        mailbox.fetch_message.return_value = self._pdf_message()
        pipeline = SearchPipeline(store, config, mailbox_client=mailbox, ranker=ranker)

        result = pipeline.run(_job(store, ["email_invoice"]))

        assert result.files_connected == 0
        ranker.scorer.score.assert_not_called()
