"""
Migration 002: Add mailbox sources and credentials.

A source is never deleted on disconnect: disconnected_at is set and the
sync coverage (synced_date_from/to, processed_message_ids) is kept so a
reconnect resumes where the last sync stopped.

Credentials live in their own table so a disconnect can delete them
without touching the source record.
"""

import sqlite3

VERSION = 2
NAME = "sources"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create sources and source_credentials tables."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS sources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_account_id TEXT NOT NULL,
            email TEXT,

            is_active INTEGER NOT NULL DEFAULT 1,
            is_paused INTEGER NOT NULL DEFAULT 0,
            paused_at TEXT,
            needs_reauth INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            disconnected_at TEXT,

            -- Sync coverage (inclusive dates)
            synced_date_from TEXT,
            synced_date_to TEXT,
            processed_message_ids TEXT NOT NULL DEFAULT '[]',  -- JSON array

            last_sync_at TEXT,
            last_sync_status TEXT,  -- success, partial, failed
            last_sync_file_count INTEGER NOT NULL DEFAULT 0,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sources_external ON sources(external_account_id)"
    )

    conn.execute("""
        CREATE TABLE IF NOT EXISTS source_credentials (
            source_id INTEGER PRIMARY KEY,
            credential TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop sources and source_credentials tables."""
    conn.execute("DROP TABLE IF EXISTS source_credentials")
    conn.execute("DROP INDEX IF EXISTS idx_sources_external")
    conn.execute("DROP TABLE IF EXISTS sources")
