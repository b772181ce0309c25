"""
SSOT (Single Source of Truth) schemas for the reconciler.

These canonical schemas are the ONLY models used across all modules.
"""

from .dedupe import (
    EMAIL_BODY_ATTACHMENT_ID,
    attachment_key,
    compute_content_hash,
    new_document_id,
)
from .models import (
    CandidateDocument,
    DateRange,
    JobScope,
    JobStatus,
    Partner,
    SearchJob,
    Source,
    SourceState,
    Transaction,
    parse_date,
    parse_timestamp,
    to_timestamp,
    utc_now,
)

__all__ = [
    # Dedupe
    "EMAIL_BODY_ATTACHMENT_ID",
    "attachment_key",
    "compute_content_hash",
    "new_document_id",
    # Models
    "CandidateDocument",
    "DateRange",
    "JobScope",
    "JobStatus",
    "Partner",
    "SearchJob",
    "Source",
    "SourceState",
    "Transaction",
    "parse_date",
    "parse_timestamp",
    "to_timestamp",
    "utc_now",
]
