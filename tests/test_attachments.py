"""
Tests for attachment download and dedup.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from receipt_reconciler.mailbox_client import AttachmentContent, MailboxAttachment, MailboxMessage
from receipt_reconciler.schemas.dedupe import (
    attachment_key,
    compute_content_hash,
)
from receipt_reconciler.services.attachments import (
    EMAIL_BODY_ATTACHMENT_ID,
    AttachmentFetcher,
    candidate_from_message,
    receipt_attachments,
)

PDF_BYTES = b"%PDF-1.4 test receipt"


def _message(message_id: str = "m1", attachments=None) -> MailboxMessage:
    return MailboxMessage(
        id=message_id,
        subject="Your receipt",
        sender="shop@example.com",
        date=datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc),
        body="<p>Total 45,23 EUR</p>",
        attachments=attachments or [],
    )


def _pdf(attachment_id: str = "a1", filename: str = "receipt.pdf") -> MailboxAttachment:
    return MailboxAttachment(id=attachment_id, filename=filename, mime_type="application/pdf")


@pytest.fixture
def mailbox():
    client = MagicMock()
    client.fetch_attachment.return_value = AttachmentContent(
        data=PDF_BYTES, mime_type="application/pdf", size=len(PDF_BYTES)
    )
    return client


@pytest.fixture
def fetcher(store, mailbox, tmp_path):
    return AttachmentFetcher(store, mailbox, documents_dir=tmp_path / "docs")


class TestDedupeKeys:
    """Test dedupe key helpers."""

    def test_content_hash(self):
        """Test hash is 64 lowercase hex chars and stable."""
        digest = compute_content_hash(PDF_BYTES)
        assert len(digest) == 64
        assert digest == digest.lower()
        assert digest == compute_content_hash(PDF_BYTES)
        assert digest != compute_content_hash(PDF_BYTES + b" ")

    def test_synthetic_keys(self):
        """Test synthetic candidate ids."""
        assert attachment_key("m1", "a1") == "m1:a1"
        assert attachment_key("m1", EMAIL_BODY_ATTACHMENT_ID) == "m1:body"


class TestAttachmentSelection:
    """Test attachment filtering and candidate building."""

    def test_receipt_attachments_pdf_first(self):
        """Test images follow PDFs and other files are dropped."""
        message = _message(
            attachments=[
                MailboxAttachment(id="img", filename="photo.jpg", mime_type="image/jpeg"),
                MailboxAttachment(id="zip", filename="data.zip", mime_type="application/zip"),
                _pdf("pdf"),
            ]
        )

        assert [a.id for a in receipt_attachments(message)] == ["pdf", "img"]

    def test_candidate_from_message(self, source):
        """Test an undownloaded candidate carries email metadata."""
        candidate = candidate_from_message(source, _message(), _pdf())

        assert candidate.id is None
        assert candidate.key == "m1:a1"
        assert candidate.email_from == "shop@example.com"
        assert candidate.source_account_id == "acct-1"
        assert candidate.source_id == source.id

    def test_candidate_for_email_body(self, source):
        """Test the email body candidate uses the body attachment id."""
        candidate = candidate_from_message(source, _message())

        assert candidate.attachment_id == EMAIL_BODY_ATTACHMENT_ID
        assert candidate.mime_type == "text/html"
        assert candidate.key == "m1:body"


class TestAttachmentFetcher:
    """Test download with dedup."""

    def test_downloads_new_attachment(self, fetcher, mailbox, store, source, tmp_path):
        """Test a new attachment becomes a stored document."""
        outcome = fetcher.fetch_attachment(source, _message(attachments=[_pdf()]), _pdf(), "p1")

        assert outcome.created
        doc = store.get_document(outcome.document.id)
        assert doc.content_hash == compute_content_hash(PDF_BYTES)
        assert doc.partner_id == "p1"
        assert doc.message_id == "m1"
        assert (tmp_path / "docs" / f"{doc.content_hash}.pdf").read_bytes() == PDF_BYTES
        mailbox.fetch_attachment.assert_called_once_with("acct-1", "m1", "a1")

    def test_known_attachment_not_downloaded(self, fetcher, mailbox, source):
        """Test the message/attachment pair is checked before download."""
        first = fetcher.fetch_attachment(source, _message(), _pdf())
        second = fetcher.fetch_attachment(source, _message(), _pdf())

        assert not second.created
        assert second.reason == "duplicate_attachment"
        assert second.document.id == first.document.id
        assert mailbox.fetch_attachment.call_count == 1

    def test_same_content_other_message(self, fetcher, mailbox, source):
        """Test equal bytes from another message reuse the document."""
        first = fetcher.fetch_attachment(source, _message("m1"), _pdf())
        second = fetcher.fetch_attachment(source, _message("m2"), _pdf())

        assert not second.created
        assert second.reason == "duplicate_content"
        assert second.document.id == first.document.id
        assert mailbox.fetch_attachment.call_count == 2

    def test_soft_deleted_is_skipped(self, fetcher, mailbox, store, source):
        """Test a soft-deleted document is neither returned nor re-downloaded."""
        fetcher.fetch_attachment(source, _message(), _pdf())
        store.soft_delete_documents(source.id)

        outcome = fetcher.fetch_attachment(source, _message(), _pdf())

        assert outcome.document is None
        assert outcome.reason == "deleted"
        assert mailbox.fetch_attachment.call_count == 1

    def test_octet_stream_pdf_normalized(self, fetcher, source):
        """Test a .pdf sent as octet-stream is stored as application/pdf."""
        attachment = MailboxAttachment(
            id="a1", filename="Invoice.PDF", mime_type="application/octet-stream"
        )

        outcome = fetcher.fetch_attachment(source, _message(), attachment)

        assert outcome.document.mime_type == "application/pdf"

    def test_store_email_body(self, fetcher, mailbox, store, source):
        """Test the email body is stored once without a download."""
        outcome = fetcher.store_email_body(source, _message(), "p1")
        again = fetcher.store_email_body(source, _message())

        assert outcome.created
        assert outcome.document.filename == "email-m1.html"
        assert outcome.document.attachment_id == EMAIL_BODY_ATTACHMENT_ID
        assert not again.created
        assert again.document.id == outcome.document.id
        mailbox.fetch_attachment.assert_not_called()

    def test_no_documents_dir(self, store, mailbox, source):
        """Test without a documents dir no file is written."""
        fetcher = AttachmentFetcher(store, mailbox)

        outcome = fetcher.fetch_attachment(source, _message(), _pdf())

        assert outcome.document.storage_path is None
