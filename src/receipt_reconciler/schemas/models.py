"""
Canonical domain models.

These are the ONLY models passed between the scorer, the pipeline, the
scheduler and the state store. Amounts are signed integer minor units.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from .dedupe import attachment_key


class JobStatus(str, Enum):
    """Status of a search job. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)


class JobScope(str, Enum):
    """What a search job covers."""

    SINGLE_TRANSACTION = "single_transaction"
    SYNC_RANGE = "sync_range"


class SourceState(str, Enum):
    """Derived lifecycle state of a connected source."""

    ACTIVE = "active"
    PAUSED = "paused"
    NEEDS_REAUTH = "needs_reauth"
    DISCONNECTED = "disconnected"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO timestamp with a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO timestamp (Z suffix allowed) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: str | date | datetime | None) -> date | None:
    """Parse an ISO date (or the date part of a timestamp)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def _iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_timestamp(value)
    return value.isoformat()


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar days."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"DateRange end {self.end} is before start {self.start}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class Transaction:
    """Ledger entry. Read-only here apart from its connected documents."""

    id: str
    date: date
    amount: int
    currency: str = "EUR"
    description: str = ""
    counterparty: str | None = None
    counterparty_iban: str | None = None
    reference: str | None = None
    partner_id: str | None = None
    connected_document_ids: list[str] = field(default_factory=list)
    # Documents the user disconnected by hand; never auto-connected again
    rejected_document_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        return cls(
            id=str(data["id"]),
            date=parse_date(data["date"]),
            amount=int(data["amount"]),
            currency=(data.get("currency") or "EUR").upper(),
            description=data.get("description") or "",
            counterparty=data.get("counterparty"),
            counterparty_iban=data.get("counterparty_iban"),
            reference=data.get("reference"),
            partner_id=data.get("partner_id"),
            connected_document_ids=list(data.get("connected_document_ids") or []),
            rejected_document_ids=list(data.get("rejected_document_ids") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "amount": self.amount,
            "currency": self.currency,
            "description": self.description,
            "counterparty": self.counterparty,
            "counterparty_iban": self.counterparty_iban,
            "reference": self.reference,
            "partner_id": self.partner_id,
            "connected_document_ids": list(self.connected_document_ids),
            "rejected_document_ids": list(self.rejected_document_ids),
        }


@dataclass
class CandidateDocument:
    """A file or mailbox attachment evaluated against a transaction.

    Extracted fields are present only for downloaded documents. Mailbox
    candidates that have not been downloaded yet carry no id; they are
    identified by their message and attachment ids instead.
    """

    id: str | None = None
    mime_type: str | None = None
    filename: str | None = None

    # Extracted fields
    extracted_amount: int | None = None
    extracted_currency: str | None = None
    extracted_date: date | None = None
    extracted_partner: str | None = None
    extracted_iban: str | None = None
    extracted_text: str | None = None
    partner_id: str | None = None

    # Email metadata
    email_subject: str | None = None
    email_from: str | None = None
    email_snippet: str | None = None
    email_body: str | None = None
    email_date: datetime | None = None
    source_account_id: str | None = None

    # Provenance
    source_id: int | None = None
    message_id: str | None = None
    attachment_id: str | None = None
    content_hash: str | None = None
    storage_path: str | None = None

    transaction_ids: list[str] = field(default_factory=list)
    created_at: str | None = None
    deleted_at: str | None = None

    @property
    def key(self) -> str:
        """Stable id: the document id, or a synthetic message:attachment id."""
        if self.id:
            return self.id
        return attachment_key(self.message_id or "", self.attachment_id or "")

    @property
    def is_connected(self) -> bool:
        return bool(self.transaction_ids)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CandidateDocument:
        amount = data.get("extracted_amount")
        source_id = data.get("source_id")
        return cls(
            id=str(data["id"]) if data.get("id") is not None else None,
            mime_type=data.get("mime_type"),
            filename=data.get("filename"),
            extracted_amount=int(amount) if amount is not None else None,
            extracted_currency=data.get("extracted_currency"),
            extracted_date=parse_date(data.get("extracted_date")),
            extracted_partner=data.get("extracted_partner"),
            extracted_iban=data.get("extracted_iban"),
            extracted_text=data.get("extracted_text"),
            partner_id=data.get("partner_id"),
            email_subject=data.get("email_subject"),
            email_from=data.get("email_from"),
            email_snippet=data.get("email_snippet"),
            email_body=data.get("email_body"),
            email_date=parse_timestamp(data.get("email_date")),
            source_account_id=data.get("source_account_id"),
            source_id=int(source_id) if source_id is not None else None,
            message_id=data.get("message_id"),
            attachment_id=data.get("attachment_id"),
            content_hash=data.get("content_hash"),
            storage_path=data.get("storage_path"),
            transaction_ids=list(data.get("transaction_ids") or []),
            created_at=data.get("created_at"),
            deleted_at=data.get("deleted_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "extracted_amount": self.extracted_amount,
            "extracted_currency": self.extracted_currency,
            "extracted_date": _iso(self.extracted_date),
            "extracted_partner": self.extracted_partner,
            "extracted_iban": self.extracted_iban,
            "partner_id": self.partner_id,
            "email_subject": self.email_subject,
            "email_from": self.email_from,
            "email_date": _iso(self.email_date),
            "source_id": self.source_id,
            "message_id": self.message_id,
            "attachment_id": self.attachment_id,
            "content_hash": self.content_hash,
            "transaction_ids": list(self.transaction_ids),
            "deleted_at": self.deleted_at,
        }


@dataclass
class Partner:
    """A resolved counterparty with learned identification hints."""

    id: str
    name: str
    aliases: list[str] = field(default_factory=list)
    email_domains: list[str] = field(default_factory=list)
    # Sources whose mailbox has produced documents for this partner before
    pattern_source_ids: list[int] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [n for n in [self.name, *self.aliases] if n]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Partner:
        return cls(
            id=str(data["id"]),
            name=data["name"],
            aliases=list(data.get("aliases") or []),
            email_domains=[d.lower() for d in data.get("email_domains") or []],
            pattern_source_ids=[int(s) for s in data.get("pattern_source_ids") or []],
        )


@dataclass
class SearchJob:
    """Queue record for one search or sync request.

    Created by a trigger, mutated only by its consumer, read by pollers.
    """

    scope: JobScope
    status: JobStatus = JobStatus.PENDING
    id: int | None = None
    transaction_id: str | None = None
    source_id: int | None = None
    strategies: list[str] = field(default_factory=list)
    current_strategy_index: int = 0
    progress: int = 0
    files_connected: int = 0
    attachments_skipped: int = 0
    emails_processed: int = 0
    errors: list[str] = field(default_factory=list)
    error_code: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    date_from: date | None = None
    date_to: date | None = None
    processed_message_ids: list[str] = field(default_factory=list)
    triggered_by: str = "manual"
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def date_range(self) -> DateRange | None:
        if self.date_from is None or self.date_to is None:
            return None
        return DateRange(self.date_from, self.date_to)

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and self.retry_count < self.max_retries

    def status_view(self) -> dict[str, Any]:
        """The read-only surface exposed to pollers."""
        return {
            "status": self.status.value,
            "currentStrategyIndex": self.current_strategy_index,
            "progress": self.progress,
            "filesConnected": self.files_connected,
            "errors": list(self.errors),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "scope": self.scope.value,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "source_id": self.source_id,
            "strategies": list(self.strategies),
            "current_strategy_index": self.current_strategy_index,
            "progress": self.progress,
            "files_connected": self.files_connected,
            "attachments_skipped": self.attachments_skipped,
            "emails_processed": self.emails_processed,
            "errors": list(self.errors),
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "date_from": _iso(self.date_from),
            "date_to": _iso(self.date_to),
            "triggered_by": self.triggered_by,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class Source:
    """A connected mailbox integration."""

    external_account_id: str
    id: int | None = None
    email: str | None = None
    is_active: bool = True
    is_paused: bool = False
    paused_at: str | None = None
    needs_reauth: bool = False
    last_error: str | None = None
    disconnected_at: str | None = None
    synced_date_from: date | None = None
    synced_date_to: date | None = None
    processed_message_ids: list[str] = field(default_factory=list)
    last_sync_at: str | None = None
    last_sync_status: str | None = None
    last_sync_file_count: int = 0
    created_at: str | None = None

    @property
    def state(self) -> SourceState:
        if self.disconnected_at is not None or not self.is_active:
            return SourceState.DISCONNECTED
        if self.needs_reauth:
            return SourceState.NEEDS_REAUTH
        if self.is_paused:
            return SourceState.PAUSED
        return SourceState.ACTIVE

    @property
    def is_usable(self) -> bool:
        """True if jobs may run against this source."""
        return self.state == SourceState.ACTIVE

    @property
    def synced_range(self) -> DateRange | None:
        if self.synced_date_from is None or self.synced_date_to is None:
            return None
        return DateRange(self.synced_date_from, self.synced_date_to)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_account_id": self.external_account_id,
            "email": self.email,
            "state": self.state.value,
            "needs_reauth": self.needs_reauth,
            "last_error": self.last_error,
            "disconnected_at": self.disconnected_at,
            "synced_date_from": _iso(self.synced_date_from),
            "synced_date_to": _iso(self.synced_date_to),
            "processed_message_count": len(self.processed_message_ids),
            "last_sync_at": self.last_sync_at,
            "last_sync_status": self.last_sync_status,
            "last_sync_file_count": self.last_sync_file_count,
        }
