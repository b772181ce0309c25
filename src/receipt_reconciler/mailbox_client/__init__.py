"""
Mailbox API Client.

Provides:
- Message search per account with date bounds
- Message metadata and attachment download
- Credential revocation
- Retry/backoff for transient network failures and request pacing
"""

from .client import (
    AttachmentContent,
    MailboxAPIError,
    MailboxAttachment,
    MailboxAuthError,
    MailboxClient,
    MailboxConnectionError,
    MailboxError,
    MailboxMessage,
)

__all__ = [
    "AttachmentContent",
    "MailboxAPIError",
    "MailboxAttachment",
    "MailboxAuthError",
    "MailboxClient",
    "MailboxConnectionError",
    "MailboxError",
    "MailboxMessage",
]
