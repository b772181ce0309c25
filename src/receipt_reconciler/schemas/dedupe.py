"""
Dedupe keys for downloaded documents.

A mailbox attachment is identified twice:
1. By (message_id, attachment_id), before anything is downloaded
2. By SHA256 of the file bytes, after download (the same PDF is often
   attached to several emails)

Both lookups must include soft-deleted documents so that a disconnected
source never causes re-downloads after reconnect.
"""

import hashlib
import uuid

ATTACHMENT_KEY_SEPARATOR = ":"
# Attachment id of documents whose content is the email body
EMAIL_BODY_ATTACHMENT_ID = "body"


def compute_content_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of file bytes.

    Args:
        file_bytes: Raw file content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()


def attachment_key(message_id: str, attachment_id: str) -> str:
    """Synthetic candidate id for a mailbox attachment that is not downloaded yet."""
    return f"{message_id}{ATTACHMENT_KEY_SEPARATOR}{attachment_id}"


def new_document_id() -> str:
    """Generate an id for a newly created document."""
    return uuid.uuid4().hex
