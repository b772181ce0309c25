"""
SQLite-based state store implementation.

Tables:
- transactions: Ledger entries (read-only apart from rejections)
- partners: Resolved counterparties with learned hints
- documents: Local files and downloaded mailbox attachments
- document_links: Document <-> transaction connections
- search_jobs: Search/sync job queue (migration 001)
- sources, source_credentials: Mailbox integrations (migration 002)
"""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..schemas.dedupe import new_document_id
from ..schemas.models import (
    CandidateDocument,
    DateRange,
    JobScope,
    JobStatus,
    Partner,
    SearchJob,
    Source,
    Transaction,
    parse_date,
    parse_timestamp,
    to_timestamp,
)


def _now() -> str:
    return to_timestamp(datetime.now(timezone.utc))


def _json_list(value: str | None) -> list:
    return json.loads(value) if value else []


def _date_str(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _transaction_from_row(row: sqlite3.Row, connected_ids: list[str]) -> Transaction:
    return Transaction(
        id=row["id"],
        date=parse_date(row["date"]),
        amount=row["amount"],
        currency=row["currency"],
        description=row["description"] or "",
        counterparty=row["counterparty"],
        counterparty_iban=row["counterparty_iban"],
        reference=row["reference"],
        partner_id=row["partner_id"],
        connected_document_ids=connected_ids,
        rejected_document_ids=_json_list(row["rejected_document_ids"]),
    )


def _partner_from_row(row: sqlite3.Row) -> Partner:
    return Partner(
        id=row["id"],
        name=row["name"],
        aliases=_json_list(row["aliases"]),
        email_domains=_json_list(row["email_domains"]),
        pattern_source_ids=_json_list(row["pattern_source_ids"]),
    )


def _document_from_row(row: sqlite3.Row, transaction_ids: list[str]) -> CandidateDocument:
    keys = row.keys()
    return CandidateDocument(
        id=row["id"],
        mime_type=row["mime_type"],
        filename=row["filename"],
        extracted_amount=row["extracted_amount"],
        extracted_currency=row["extracted_currency"],
        extracted_date=parse_date(row["extracted_date"]),
        extracted_partner=row["extracted_partner"],
        extracted_iban=row["extracted_iban"],
        extracted_text=row["extracted_text"],
        partner_id=row["partner_id"],
        email_subject=row["email_subject"],
        email_from=row["email_from"],
        email_snippet=row["email_snippet"],
        email_body=row["email_body"],
        email_date=parse_timestamp(row["email_date"]),
        source_account_id=row["source_account_id"],
        source_id=row["source_id"],
        message_id=row["message_id"],
        attachment_id=row["attachment_id"],
        content_hash=row["content_hash"],
        storage_path=row["storage_path"],
        transaction_ids=transaction_ids,
        created_at=row["created_at"],
        deleted_at=row["deleted_at"] if "deleted_at" in keys else None,
    )


def _job_from_row(row: sqlite3.Row) -> SearchJob:
    return SearchJob(
        id=row["id"],
        scope=JobScope(row["scope"]),
        status=JobStatus(row["status"]),
        transaction_id=row["transaction_id"],
        source_id=row["source_id"],
        strategies=_json_list(row["strategies"]),
        current_strategy_index=row["current_strategy_index"],
        progress=row["progress"],
        files_connected=row["files_connected"],
        attachments_skipped=row["attachments_skipped"],
        emails_processed=row["emails_processed"],
        errors=_json_list(row["errors"]),
        error_code=row["error_code"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        date_from=parse_date(row["date_from"]),
        date_to=parse_date(row["date_to"]),
        processed_message_ids=_json_list(row["processed_message_ids"]),
        triggered_by=row["triggered_by"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _source_from_row(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        external_account_id=row["external_account_id"],
        email=row["email"],
        is_active=bool(row["is_active"]),
        is_paused=bool(row["is_paused"]),
        paused_at=row["paused_at"],
        needs_reauth=bool(row["needs_reauth"]),
        last_error=row["last_error"],
        disconnected_at=row["disconnected_at"],
        synced_date_from=parse_date(row["synced_date_from"]),
        synced_date_to=parse_date(row["synced_date_to"]),
        processed_message_ids=_json_list(row["processed_message_ids"]),
        last_sync_at=row["last_sync_at"],
        last_sync_status=row["last_sync_status"],
        last_sync_file_count=row["last_sync_file_count"],
        created_at=row["created_at"],
    )


def _encode_value(value: Any) -> Any:
    """Encode a python value for a SQLite column."""
    if isinstance(value, (JobStatus, JobScope)):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, tuple, set)):
        return json.dumps(list(value))
    if isinstance(value, datetime):
        return to_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


class StateStore:
    """
    SQLite-based state store for the reconciler.

    Provides persistent tracking of:
    - Transactions and partners (ledger snapshot)
    - Documents and their transaction connections
    - Search/sync jobs
    - Mailbox sources and their credentials

    Thread-safe for single-writer scenarios.
    """

    SCHEMA_VERSION = 1

    # Columns that may be patched through update_search_job/update_source
    JOB_COLUMNS = frozenset(
        {
            "status",
            "strategies",
            "current_strategy_index",
            "progress",
            "files_connected",
            "attachments_skipped",
            "emails_processed",
            "errors",
            "error_code",
            "retry_count",
            "max_retries",
            "date_from",
            "date_to",
            "processed_message_ids",
            "started_at",
            "completed_at",
        }
    )
    SOURCE_COLUMNS = frozenset(
        {
            "email",
            "is_active",
            "is_paused",
            "paused_at",
            "needs_reauth",
            "last_error",
            "disconnected_at",
            "synced_date_from",
            "synced_date_to",
            "processed_message_ids",
            "last_sync_at",
            "last_sync_status",
            "last_sync_file_count",
        }
    )

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    date TEXT NOT NULL,
                    amount INTEGER NOT NULL,  -- Signed minor units
                    currency TEXT NOT NULL DEFAULT 'EUR',
                    description TEXT,
                    counterparty TEXT,
                    counterparty_iban TEXT,
                    reference TEXT,
                    partner_id TEXT,
                    rejected_document_ids TEXT,  -- JSON array
                    updated_at TEXT NOT NULL
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS partners (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    aliases TEXT,  -- JSON array
                    email_domains TEXT,  -- JSON array
                    pattern_source_ids TEXT  -- JSON array of source ids
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    mime_type TEXT,
                    filename TEXT,
                    extracted_amount INTEGER,
                    extracted_currency TEXT,
                    extracted_date TEXT,
                    extracted_partner TEXT,
                    extracted_iban TEXT,
                    extracted_text TEXT,
                    partner_id TEXT,
                    email_subject TEXT,
                    email_from TEXT,
                    email_snippet TEXT,
                    email_body TEXT,
                    email_date TEXT,
                    source_account_id TEXT,
                    source_id INTEGER,
                    message_id TEXT,
                    attachment_id TEXT,
                    content_hash TEXT,
                    storage_path TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_source ON documents(source_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_attachment "
                "ON documents(message_id, attachment_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_hash ON documents(content_hash)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_links (
                    document_id TEXT NOT NULL,
                    transaction_id TEXT NOT NULL,
                    score INTEGER,
                    connected_at TEXT NOT NULL,
                    PRIMARY KEY (document_id, transaction_id)
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_document_links_txn "
                "ON document_links(transaction_id)"
            )

            row = conn.execute("SELECT version FROM schema_version").fetchone()
            if not row:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
                )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Transaction methods

    def upsert_transaction(self, txn: Transaction) -> None:
        """Insert or update a ledger transaction (connections are kept)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO transactions
                (id, date, amount, currency, description, counterparty, counterparty_iban,
                 reference, partner_id, rejected_document_ids, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    date = excluded.date,
                    amount = excluded.amount,
                    currency = excluded.currency,
                    description = excluded.description,
                    counterparty = excluded.counterparty,
                    counterparty_iban = excluded.counterparty_iban,
                    reference = excluded.reference,
                    partner_id = excluded.partner_id,
                    rejected_document_ids = excluded.rejected_document_ids,
                    updated_at = excluded.updated_at
            """,
                (
                    txn.id,
                    txn.date.isoformat(),
                    txn.amount,
                    txn.currency.upper(),
                    txn.description,
                    txn.counterparty,
                    txn.counterparty_iban,
                    txn.reference,
                    txn.partner_id,
                    json.dumps(txn.rejected_document_ids),
                    _now(),
                ),
            )
            for doc_id in txn.connected_document_ids:
                self._link(conn, doc_id, txn.id, None)

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        """Get a transaction with its connected document ids."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            if not row:
                return None
            links = self._links_by_transaction(conn, [transaction_id])
            return _transaction_from_row(row, links.get(transaction_id, []))

    def list_transactions(
        self,
        partner_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Transaction]:
        """List transactions, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if partner_id is not None:
            clauses.append("partner_id = ?")
            params.append(partner_id)
        if date_from is not None:
            clauses.append("date >= ?")
            params.append(date_from.isoformat())
        if date_to is not None:
            clauses.append("date <= ?")
            params.append(date_to.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions {where} ORDER BY date, id", params
            ).fetchall()
            links = self._links_by_transaction(conn, [r["id"] for r in rows])
            return [_transaction_from_row(r, links.get(r["id"], [])) for r in rows]

    def get_transaction_date_range(self) -> DateRange | None:
        """Earliest and latest transaction date, or None for an empty ledger."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT MIN(date) AS first, MAX(date) AS last FROM transactions"
            ).fetchone()
            if not row or row["first"] is None:
                return None
            return DateRange(parse_date(row["first"]), parse_date(row["last"]))

    def reject_document(self, transaction_id: str, document_id: str) -> bool:
        """
        Disconnect a document from a transaction and remember the rejection.

        Returns True if the transaction exists.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT rejected_document_ids FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            if not row:
                return False
            rejected = _json_list(row["rejected_document_ids"])
            if document_id not in rejected:
                rejected.append(document_id)
            conn.execute(
                "UPDATE transactions SET rejected_document_ids = ?, updated_at = ? WHERE id = ?",
                (json.dumps(rejected), _now(), transaction_id),
            )
            conn.execute(
                "DELETE FROM document_links WHERE document_id = ? AND transaction_id = ?",
                (document_id, transaction_id),
            )
            return True

    # Partner methods

    def upsert_partner(self, partner: Partner) -> None:
        """Insert or update a partner."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO partners (id, name, aliases, email_domains, pattern_source_ids)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    aliases = excluded.aliases,
                    email_domains = excluded.email_domains,
                    pattern_source_ids = excluded.pattern_source_ids
            """,
                (
                    partner.id,
                    partner.name,
                    json.dumps(partner.aliases),
                    json.dumps([d.lower() for d in partner.email_domains]),
                    json.dumps(partner.pattern_source_ids),
                ),
            )

    def get_partner(self, partner_id: str) -> Partner | None:
        """Get a partner by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM partners WHERE id = ?", (partner_id,)).fetchone()
            return _partner_from_row(row) if row else None

    def list_partners(self) -> list[Partner]:
        """List all partners."""
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM partners ORDER BY name").fetchall()
            return [_partner_from_row(r) for r in rows]

    def add_partner_pattern_source(self, partner_id: str, source_id: int) -> bool:
        """Record that a source supplied documents for a partner."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT pattern_source_ids FROM partners WHERE id = ?", (partner_id,)
            ).fetchone()
            if not row:
                return False
            ids = _json_list(row["pattern_source_ids"])
            if source_id in ids:
                return False
            ids.append(source_id)
            conn.execute(
                "UPDATE partners SET pattern_source_ids = ? WHERE id = ?",
                (json.dumps(ids), partner_id),
            )
            return True

    def remove_source_from_partner_patterns(self, source_id: int) -> int:
        """
        Remove a source from every partner's learned patterns.

        Returns:
            Count of partners updated
        """
        updated = 0
        with self._transaction() as conn:
            rows = conn.execute("SELECT id, pattern_source_ids FROM partners").fetchall()
            for row in rows:
                ids = _json_list(row["pattern_source_ids"])
                if source_id not in ids:
                    continue
                remaining = [i for i in ids if i != source_id]
                conn.execute(
                    "UPDATE partners SET pattern_source_ids = ? WHERE id = ?",
                    (json.dumps(remaining), row["id"]),
                )
                updated += 1
        return updated

    # Document methods

    def create_document(self, doc: CandidateDocument) -> CandidateDocument:
        """
        Persist a new document.

        Assigns an id if the document has none.

        Returns:
            The stored document
        """
        doc_id = doc.id or new_document_id()
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents
                (id, mime_type, filename, extracted_amount, extracted_currency, extracted_date,
                 extracted_partner, extracted_iban, extracted_text, partner_id,
                 email_subject, email_from, email_snippet, email_body, email_date,
                 source_account_id, source_id, message_id, attachment_id, content_hash,
                 storage_path, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    doc_id,
                    doc.mime_type,
                    doc.filename,
                    doc.extracted_amount,
                    doc.extracted_currency,
                    _date_str(doc.extracted_date),
                    doc.extracted_partner,
                    doc.extracted_iban,
                    doc.extracted_text,
                    doc.partner_id,
                    doc.email_subject,
                    doc.email_from,
                    doc.email_snippet,
                    doc.email_body,
                    to_timestamp(doc.email_date) if doc.email_date else None,
                    doc.source_account_id,
                    doc.source_id,
                    doc.message_id,
                    doc.attachment_id,
                    doc.content_hash,
                    doc.storage_path,
                    now,
                ),
            )
            for txn_id in doc.transaction_ids:
                self._link(conn, doc_id, txn_id, None)

            # Read back in the same transaction so the row is always present
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (doc_id,)).fetchone()
            links = self._links_by_document(conn, [doc_id])
            return _document_from_row(row, links.get(doc_id, []))

    def get_document(self, document_id: str, include_deleted: bool = False) -> CandidateDocument | None:
        """Get a document by ID."""
        query = "SELECT * FROM documents WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._transaction() as conn:
            row = conn.execute(query, (document_id,)).fetchone()
            if not row:
                return None
            links = self._links_by_document(conn, [document_id])
            return _document_from_row(row, links.get(document_id, []))

    def list_documents(
        self,
        source_id: int | None = None,
        partner_id: str | None = None,
        unconnected_only: bool = False,
        date_from: date | None = None,
        date_to: date | None = None,
        include_deleted: bool = False,
    ) -> list[CandidateDocument]:
        """
        List documents by filter.

        Args:
            source_id: Only documents fetched from this source
            partner_id: Only documents assigned to this partner
            unconnected_only: Skip documents connected to any transaction
            date_from: Minimum extracted date
            date_to: Maximum extracted date
            include_deleted: Include soft-deleted documents
        """
        clauses: list[str] = []
        params: list[Any] = []
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if partner_id is not None:
            clauses.append("partner_id = ?")
            params.append(partner_id)
        if unconnected_only:
            clauses.append(
                "NOT EXISTS (SELECT 1 FROM document_links l WHERE l.document_id = documents.id)"
            )
        if date_from is not None:
            clauses.append("extracted_date >= ?")
            params.append(date_from.isoformat())
        if date_to is not None:
            clauses.append("extracted_date <= ?")
            params.append(date_to.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM documents {where} ORDER BY created_at, id", params
            ).fetchall()
            links = self._links_by_document(conn, [r["id"] for r in rows])
            return [_document_from_row(r, links.get(r["id"], [])) for r in rows]

    def connect_document(
        self, document_id: str, transaction_id: str, score: int | None = None
    ) -> bool:
        """
        Connect a document to a transaction.

        Idempotent: connecting an already connected pair is a no-op.

        Returns:
            True if a new connection was created
        """
        with self._transaction() as conn:
            return self._link(conn, document_id, transaction_id, score)

    def soft_delete_documents(self, source_id: int, unconnected_only: bool = True) -> int:
        """
        Soft delete documents of a source by setting deleted_at.

        Documents connected to a transaction are kept unless
        unconnected_only is False.

        Returns:
            Count of soft-deleted documents
        """
        now = _now()
        query = "UPDATE documents SET deleted_at = ? WHERE source_id = ? AND deleted_at IS NULL"
        if unconnected_only:
            query += (
                " AND NOT EXISTS (SELECT 1 FROM document_links l WHERE l.document_id = documents.id)"
            )
        with self._transaction() as conn:
            cursor = conn.execute(query, (now, source_id))
            return cursor.rowcount

    def restore_documents(self, source_id: int) -> int:
        """
        Restore soft-deleted documents of a source.

        Returns:
            Count of restored documents
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE documents SET deleted_at = NULL WHERE source_id = ? AND deleted_at IS NOT NULL",
                (source_id,),
            )
            return cursor.rowcount

    def find_document_by_attachment(
        self, message_id: str, attachment_id: str
    ) -> CandidateDocument | None:
        """Find a document by mailbox message and attachment id (soft-deleted included)."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM documents WHERE message_id = ? AND attachment_id = ?
                ORDER BY created_at LIMIT 1
            """,
                (message_id, attachment_id),
            ).fetchone()
            if not row:
                return None
            links = self._links_by_document(conn, [row["id"]])
            return _document_from_row(row, links.get(row["id"], []))

    def find_document_by_hash(self, content_hash: str) -> CandidateDocument | None:
        """Find a document by content hash (soft-deleted included)."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE content_hash = ? ORDER BY created_at LIMIT 1",
                (content_hash,),
            ).fetchone()
            if not row:
                return None
            links = self._links_by_document(conn, [row["id"]])
            return _document_from_row(row, links.get(row["id"], []))

    def _link(
        self, conn: sqlite3.Connection, document_id: str, transaction_id: str, score: int | None
    ) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO document_links (document_id, transaction_id, score, connected_at)
            VALUES (?, ?, ?, ?)
        """,
            (document_id, transaction_id, score, _now()),
        )
        return cursor.rowcount > 0

    def _links_by_document(
        self, conn: sqlite3.Connection, document_ids: list[str]
    ) -> dict[str, list[str]]:
        if not document_ids:
            return {}
        placeholders = ",".join("?" * len(document_ids))
        rows = conn.execute(
            f"""
            SELECT document_id, transaction_id FROM document_links
            WHERE document_id IN ({placeholders}) ORDER BY connected_at
        """,
            document_ids,
        ).fetchall()
        links: dict[str, list[str]] = {}
        for row in rows:
            links.setdefault(row["document_id"], []).append(row["transaction_id"])
        return links

    def _links_by_transaction(
        self, conn: sqlite3.Connection, transaction_ids: list[str]
    ) -> dict[str, list[str]]:
        if not transaction_ids:
            return {}
        placeholders = ",".join("?" * len(transaction_ids))
        rows = conn.execute(
            f"""
            SELECT document_id, transaction_id FROM document_links
            WHERE transaction_id IN ({placeholders}) ORDER BY connected_at
        """,
            transaction_ids,
        ).fetchall()
        links: dict[str, list[str]] = {}
        for row in rows:
            links.setdefault(row["transaction_id"], []).append(row["document_id"])
        return links

    # Search job methods

    def create_search_job(self, job: SearchJob) -> SearchJob:
        """Persist a new search job and return it with its id."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO search_jobs
                (scope, status, transaction_id, source_id, strategies, current_strategy_index,
                 progress, files_connected, attachments_skipped, emails_processed, errors,
                 error_code, retry_count, max_retries, date_from, date_to,
                 processed_message_ids, triggered_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    job.scope.value,
                    job.status.value,
                    job.transaction_id,
                    job.source_id,
                    json.dumps(job.strategies),
                    job.current_strategy_index,
                    job.progress,
                    job.files_connected,
                    job.attachments_skipped,
                    job.emails_processed,
                    json.dumps(job.errors),
                    job.error_code,
                    job.retry_count,
                    job.max_retries,
                    _date_str(job.date_from),
                    _date_str(job.date_to),
                    json.dumps(job.processed_message_ids),
                    job.triggered_by,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM search_jobs WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return _job_from_row(row)

    def get_search_job(self, job_id: int) -> SearchJob | None:
        """Get a search job by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM search_jobs WHERE id = ?", (job_id,)).fetchone()
            return _job_from_row(row) if row else None

    def update_search_job(self, job_id: int, **fields: Any) -> bool:
        """
        Patch columns of a search job.

        Raises:
            ValueError: If an unknown column is given
        """
        return self._update("search_jobs", self.JOB_COLUMNS, job_id, fields)

    def list_search_jobs(
        self,
        status: JobStatus | None = None,
        scope: JobScope | None = None,
        source_id: int | None = None,
        transaction_id: str | None = None,
        active_only: bool = False,
        limit: int | None = None,
    ) -> list[SearchJob]:
        """List search jobs, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if active_only:
            clauses.append("status IN ('pending', 'processing')")
        if scope is not None:
            clauses.append("scope = ?")
            params.append(JobScope(scope).value)
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if transaction_id is not None:
            clauses.append("transaction_id = ?")
            params.append(transaction_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM search_jobs {where} ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_job_from_row(r) for r in rows]

    def delete_search_job(self, job_id: int) -> bool:
        """Delete a search job record."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM search_jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def get_active_search_job(
        self,
        scope: JobScope,
        transaction_id: str | None = None,
        source_id: int | None = None,
    ) -> SearchJob | None:
        """Get the pending or processing job for a transaction or source."""
        if transaction_id is None and source_id is None:
            raise ValueError("transaction_id or source_id is required")

        clauses = ["scope = ?", "status IN ('pending', 'processing')"]
        params: list[Any] = [JobScope(scope).value]
        if transaction_id is not None:
            clauses.append("transaction_id = ?")
            params.append(transaction_id)
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)

        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM search_jobs WHERE {' AND '.join(clauses)} ORDER BY id LIMIT 1",
                params,
            ).fetchone()
            return _job_from_row(row) if row else None

    def get_next_pending_jobs(self, limit: int = 1) -> list[SearchJob]:
        """
        Get pending jobs in FIFO order.

        Jobs whose source or transaction already has a processing job are
        held back so one owner never runs two jobs at once.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM search_jobs j
                WHERE j.status = 'pending'
                  AND NOT EXISTS (
                    SELECT 1 FROM search_jobs p
                    WHERE p.status = 'processing'
                      AND p.scope = j.scope
                      AND (
                        (j.source_id IS NOT NULL AND p.source_id = j.source_id)
                        OR (j.transaction_id IS NOT NULL AND p.transaction_id = j.transaction_id)
                      )
                  )
                ORDER BY j.id
                LIMIT ?
            """,
                (limit,),
            ).fetchall()
            return [_job_from_row(r) for r in rows]

    def claim_search_job(self, job_id: int) -> bool:
        """
        Move a job from pending to processing.

        Returns:
            True if this caller claimed the job, False if it was not pending
        """
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE search_jobs
                SET status = 'processing', started_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
            """,
                (now, now, job_id),
            )
            return cursor.rowcount > 0

    def complete_search_job(self, job_id: int, **fields: Any) -> bool:
        """
        Mark a processing job completed, patching final counters.

        Returns:
            False if the job was not processing (terminal states are final)
        """
        fields = {**fields, "status": JobStatus.COMPLETED, "completed_at": _now()}
        return self._update(
            "search_jobs", self.JOB_COLUMNS, job_id, fields, where="status = 'processing'"
        )

    def fail_search_job(
        self,
        job_id: int,
        error: str,
        error_code: str | None = None,
        **fields: Any,
    ) -> bool:
        """
        Mark an active job failed and append the error.

        Returns:
            False if the job was already completed or failed
        """
        job = self.get_search_job(job_id)
        if not job or not job.status.is_active:
            return False
        errors = list(fields.pop("errors", job.errors))
        if error and error not in errors:
            errors.append(error)
        fields.update(
            {
                "status": JobStatus.FAILED,
                "errors": errors,
                "error_code": error_code,
                "completed_at": _now(),
            }
        )
        return self._update(
            "search_jobs",
            self.JOB_COLUMNS,
            job_id,
            fields,
            where="status IN ('pending', 'processing')",
        )

    def find_stale_search_jobs(self, started_before: datetime) -> list[SearchJob]:
        """Processing jobs that started before the given time."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM search_jobs
                WHERE status = 'processing' AND started_at IS NOT NULL AND started_at < ?
                ORDER BY id
            """,
                (to_timestamp(started_before),),
            ).fetchall()
            return [_job_from_row(r) for r in rows]

    def delete_active_search_jobs_for_source(self, source_id: int) -> int:
        """Delete pending/processing jobs of a source."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM search_jobs
                WHERE source_id = ? AND status IN ('pending', 'processing')
            """,
                (source_id,),
            )
            return cursor.rowcount

    def cleanup_old_search_jobs(self, days: int = 30) -> int:
        """Remove completed/failed jobs older than the given age."""
        cutoff = to_timestamp(datetime.now(timezone.utc) - timedelta(days=days))
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM search_jobs
                WHERE status IN ('completed', 'failed') AND completed_at < ?
            """,
                (cutoff,),
            )
            return cursor.rowcount

    def get_search_job_stats(self) -> dict[str, int]:
        """Count jobs per status."""
        stats = {s.value: 0 for s in JobStatus}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM search_jobs GROUP BY status"
            ).fetchall()
            for row in rows:
                stats[row["status"]] = row["count"]
        return stats

    # Source methods

    def create_source(self, source: Source) -> Source:
        """Persist a new source and return it with its id."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sources
                (external_account_id, email, is_active, is_paused, needs_reauth, last_error,
                 synced_date_from, synced_date_to, processed_message_ids, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    source.external_account_id,
                    source.email,
                    int(source.is_active),
                    int(source.is_paused),
                    int(source.needs_reauth),
                    source.last_error,
                    _date_str(source.synced_date_from),
                    _date_str(source.synced_date_to),
                    json.dumps(source.processed_message_ids),
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return _source_from_row(row)

    def get_source(self, source_id: int) -> Source | None:
        """Get a source by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
            return _source_from_row(row) if row else None

    def list_sources(self, active_only: bool = False) -> list[Source]:
        """List sources."""
        query = "SELECT * FROM sources"
        if active_only:
            query += " WHERE is_active = 1 AND disconnected_at IS NULL"
        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id").fetchall()
            return [_source_from_row(r) for r in rows]

    def update_source(self, source_id: int, **fields: Any) -> bool:
        """
        Patch columns of a source.

        Raises:
            ValueError: If an unknown column is given
        """
        return self._update("sources", self.SOURCE_COLUMNS, source_id, fields)

    def find_source_by_external_account_id(
        self, external_account_id: str, disconnected_only: bool = False
    ) -> Source | None:
        """
        Find a source by its stable external account id.

        Prefers the connected source; otherwise returns the most recently
        disconnected one.
        """
        query = "SELECT * FROM sources WHERE external_account_id = ?"
        if disconnected_only:
            query += " AND disconnected_at IS NOT NULL"
        query += " ORDER BY (disconnected_at IS NULL) DESC, disconnected_at DESC, id DESC LIMIT 1"
        with self._transaction() as conn:
            row = conn.execute(query, (external_account_id,)).fetchone()
            return _source_from_row(row) if row else None

    def mark_source_needs_reauth(self, source_id: int, error: str) -> bool:
        """Flag a source whose credential was rejected."""
        return self.update_source(source_id, needs_reauth=True, last_error=error)

    def save_credential(self, source_id: int, credential: str) -> None:
        """Store (or replace) the credential of a source."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO source_credentials (source_id, credential, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    credential = excluded.credential,
                    updated_at = excluded.updated_at
            """,
                (source_id, credential, _now()),
            )

    def get_credential(self, source_id: int) -> str | None:
        """Get the credential of a source."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT credential FROM source_credentials WHERE source_id = ?", (source_id,)
            ).fetchone()
            return row["credential"] if row else None

    def delete_credential(self, source_id: int) -> bool:
        """Delete the credential record of a source."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM source_credentials WHERE source_id = ?", (source_id,)
            )
            return cursor.rowcount > 0

    # Helpers

    def _update(
        self,
        table: str,
        allowed: Iterable[str],
        row_id: int,
        fields: dict[str, Any],
        where: str | None = None,
    ) -> bool:
        if not fields:
            return False
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown {table} columns: {sorted(unknown)}")

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_encode_value(v) for v in fields.values()]
        query = f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?"
        if where:
            query += f" AND {where}"

        with self._transaction() as conn:
            cursor = conn.execute(query, [*params, _now(), row_id])
            return cursor.rowcount > 0

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        with self._transaction() as conn:
            stats = {
                "transactions": conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0],
                "documents": conn.execute(
                    "SELECT COUNT(*) FROM documents WHERE deleted_at IS NULL"
                ).fetchone()[0],
                "documents_deleted": conn.execute(
                    "SELECT COUNT(*) FROM documents WHERE deleted_at IS NOT NULL"
                ).fetchone()[0],
                "connections": conn.execute("SELECT COUNT(*) FROM document_links").fetchone()[0],
                "sources": conn.execute(
                    "SELECT COUNT(*) FROM sources WHERE disconnected_at IS NULL"
                ).fetchone()[0],
            }
        stats["jobs"] = self.get_search_job_stats()
        return stats
