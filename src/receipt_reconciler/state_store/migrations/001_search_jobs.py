"""
Migration 001: Add search job queue table.

One row per search (single transaction) or sync (date range of a source)
request. The row is the whole queue state: there is no in-memory queue.

Status flow: pending -> processing -> completed | failed (terminal).
At most one pending/processing job per (transaction, scope) or
(source, scope); enforced by the trigger, not by a constraint.
"""

import sqlite3

VERSION = 1
NAME = "search_jobs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the search_jobs table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS search_jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scope TEXT NOT NULL,  -- single_transaction, sync_range
            status TEXT NOT NULL DEFAULT 'pending',

            transaction_id TEXT,
            source_id INTEGER,

            -- Strategy progress
            strategies TEXT NOT NULL DEFAULT '[]',  -- JSON array of names
            current_strategy_index INTEGER NOT NULL DEFAULT 0,
            progress INTEGER NOT NULL DEFAULT 0,

            -- Counters
            files_connected INTEGER NOT NULL DEFAULT 0,
            attachments_skipped INTEGER NOT NULL DEFAULT 0,
            emails_processed INTEGER NOT NULL DEFAULT 0,

            errors TEXT NOT NULL DEFAULT '[]',  -- JSON array
            error_code TEXT,

            -- Retry tracking
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,

            -- Sync scope
            date_from TEXT,
            date_to TEXT,
            processed_message_ids TEXT NOT NULL DEFAULT '[]',  -- JSON array

            triggered_by TEXT NOT NULL DEFAULT 'manual',
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_search_jobs_status
        ON search_jobs (status, id)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_search_jobs_transaction
        ON search_jobs (transaction_id, scope, status)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_search_jobs_source
        ON search_jobs (source_id, scope, status)
    """)


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the search_jobs table."""
    conn.execute("DROP INDEX IF EXISTS idx_search_jobs_source")
    conn.execute("DROP INDEX IF EXISTS idx_search_jobs_transaction")
    conn.execute("DROP INDEX IF EXISTS idx_search_jobs_status")
    conn.execute("DROP TABLE IF EXISTS search_jobs")
