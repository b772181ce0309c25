"""
Attachment download with dedup.

Shared by the search pipeline and the mailbox sync processor. Before a
download the (message id, attachment id) pair is checked; after it the
SHA256 of the bytes is checked. Both lookups see soft-deleted documents,
so a document removed with its source is never fetched again.
"""

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

from receipt_reconciler.mailbox_client import MailboxAttachment, MailboxClient, MailboxMessage
from receipt_reconciler.matching.scorer import RECEIPT_MIME_TYPES
from receipt_reconciler.schemas.dedupe import EMAIL_BODY_ATTACHMENT_ID, compute_content_hash
from receipt_reconciler.schemas.models import CandidateDocument, Source
from receipt_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)

EMAIL_BODY_MIME_TYPE = "text/html"


@dataclass
class FetchOutcome:
    """Result of fetching one attachment.

    document is None when the attachment was skipped entirely (it belongs
    to a soft-deleted document).
    """

    document: CandidateDocument | None
    created: bool
    reason: str | None = None


def is_receipt_attachment(attachment: MailboxAttachment) -> bool:
    """True for PDFs and images that may be receipts."""
    return attachment.is_pdf or attachment.mime_type in RECEIPT_MIME_TYPES


def receipt_attachments(message: MailboxMessage) -> list[MailboxAttachment]:
    """Receipt-like attachments of a message, PDFs first."""
    candidates = [a for a in message.attachments if is_receipt_attachment(a)]
    return sorted(candidates, key=lambda a: 0 if a.is_pdf else 1)


def candidate_from_message(
    source: Source,
    message: MailboxMessage,
    attachment: MailboxAttachment | None = None,
) -> CandidateDocument:
    """Build an undownloaded candidate from mailbox metadata."""
    if attachment is None:
        return CandidateDocument(
            mime_type=EMAIL_BODY_MIME_TYPE,
            email_subject=message.subject,
            email_from=message.sender,
            email_snippet=message.snippet,
            email_body=message.body,
            email_date=message.date,
            source_account_id=source.external_account_id,
            source_id=source.id,
            message_id=message.id,
            attachment_id=EMAIL_BODY_ATTACHMENT_ID,
        )
    return CandidateDocument(
        mime_type=attachment.mime_type,
        filename=attachment.filename,
        email_subject=message.subject,
        email_from=message.sender,
        email_snippet=message.snippet,
        email_body=message.body,
        email_date=message.date,
        source_account_id=source.external_account_id,
        source_id=source.id,
        message_id=message.id,
        attachment_id=attachment.id,
    )


class AttachmentFetcher:
    """Downloads mailbox attachments into documents, skipping duplicates."""

    def __init__(
        self,
        state_store: StateStore,
        mailbox_client: MailboxClient,
        documents_dir: Path | None = None,
    ):
        """
        Initialize the fetcher.

        Args:
            state_store: Store for document persistence and dedup lookups
            mailbox_client: Client used for downloads
            documents_dir: Where file bytes are written (None keeps no copy)
        """
        self.store = state_store
        self.client = mailbox_client
        self.documents_dir = documents_dir

    def fetch_attachment(
        self,
        source: Source,
        message: MailboxMessage,
        attachment: MailboxAttachment,
        partner_id: str | None = None,
    ) -> FetchOutcome:
        """
        Download an attachment unless an equal document already exists.

        Returns:
            FetchOutcome; created is True only for a new document
        """
        existing = self.store.find_document_by_attachment(message.id, attachment.id)
        if existing:
            if existing.is_deleted:
                return FetchOutcome(None, False, "deleted")
            return FetchOutcome(existing, False, "duplicate_attachment")

        content = self.client.fetch_attachment(
            source.external_account_id, message.id, attachment.id
        )
        content_hash = compute_content_hash(content.data)

        duplicate = self.store.find_document_by_hash(content_hash)
        if duplicate:
            logger.debug(
                f"Attachment {attachment.id} of message {message.id} duplicates "
                f"document {duplicate.id}"
            )
            if duplicate.is_deleted:
                return FetchOutcome(None, False, "deleted")
            return FetchOutcome(duplicate, False, "duplicate_content")

        mime_type = attachment.mime_type
        if mime_type == "application/octet-stream" and attachment.is_pdf:
            mime_type = "application/pdf"

        candidate = candidate_from_message(source, message, attachment)
        candidate.mime_type = mime_type
        candidate.content_hash = content_hash
        candidate.partner_id = partner_id
        candidate.storage_path = self._save(content_hash, attachment.filename, mime_type, content.data)

        document = self.store.create_document(candidate)
        logger.info(
            f"Stored attachment '{attachment.filename}' from message {message.id} "
            f"as document {document.id}"
        )
        return FetchOutcome(document, True)

    def store_email_body(
        self,
        source: Source,
        message: MailboxMessage,
        partner_id: str | None = None,
    ) -> FetchOutcome:
        """Store the email itself as a document (for mail invoices)."""
        existing = self.store.find_document_by_attachment(message.id, EMAIL_BODY_ATTACHMENT_ID)
        if existing:
            if existing.is_deleted:
                return FetchOutcome(None, False, "deleted")
            return FetchOutcome(existing, False, "duplicate_attachment")

        body = message.body.encode("utf-8")
        candidate = candidate_from_message(source, message)
        candidate.filename = f"email-{message.id}.html"
        candidate.content_hash = compute_content_hash(body)
        candidate.partner_id = partner_id
        candidate.storage_path = self._save(
            candidate.content_hash, candidate.filename, EMAIL_BODY_MIME_TYPE, body
        )

        document = self.store.create_document(candidate)
        logger.info(f"Stored email {message.id} as document {document.id}")
        return FetchOutcome(document, True)

    def _save(self, content_hash: str, filename: str, mime_type: str, data: bytes) -> str | None:
        if self.documents_dir is None:
            return None
        suffix = Path(filename).suffix or mimetypes.guess_extension(mime_type) or ""
        path = self.documents_dir / f"{content_hash}{suffix.lower()}"
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return str(path)
